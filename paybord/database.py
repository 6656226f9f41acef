from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from paybord import config


def make_engine(url):
    """Engine for ``url``; SQLite connections are shared with worker threads."""
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    if url.startswith("sqlite"):
        # webhook reconciliation runs in the threadpool on the request's session
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
