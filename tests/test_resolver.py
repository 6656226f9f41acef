from sqlalchemy.exc import OperationalError

from paybord.resolver import ContextResolver


def test_explicit_business_id_wins(db, directory):
    resolver = ContextResolver(db)
    assert resolver.resolve({"business_id": "biz_7", "payment_link_id": "pl_abc"}) == "biz_7"


def test_payment_link_resolves_to_its_business(db, directory):
    assert ContextResolver(db).resolve({"payment_link_id": "pl_abc"}) == "biz_1"


def test_storefront_resolves_to_its_business(db, directory):
    assert ContextResolver(db).resolve({"storefront_id": "sf_1"}) == "biz_2"


def test_unknown_link_falls_back_to_storefront(db, directory):
    resolver = ContextResolver(db)
    assert resolver.resolve({"payment_link_id": "pl_missing", "storefront_id": "sf_1"}) == "biz_2"


def test_nothing_to_go_on(db, directory):
    resolver = ContextResolver(db)
    assert resolver.resolve({}) is None
    assert resolver.resolve(None) is None
    assert resolver.resolve({"payment_link_id": "pl_missing"}) is None


def test_lookup_failure_is_treated_as_unresolved(db, mocker):
    mocker.patch.object(db, "query", side_effect=OperationalError("SELECT", {}, Exception("db down")))
    assert ContextResolver(db).resolve({"payment_link_id": "pl_abc"}) is None
