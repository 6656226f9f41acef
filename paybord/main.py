import asyncio
import json

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from paybord import config
from paybord.auth import user_from_token
from paybord.database import Base, engine
from paybord.dependencies import get_db, get_notifier, get_verifier
from paybord.errors import AuthenticationError, MalformedEventError, register_exception_handlers
from paybord.events import event_type_of, normalize
from paybord.intents import settle_processing_intent
from paybord.logging_utils import CorrelationIdMiddleware, configure_logging, get_logger, log_webhook_event
from paybord.notifier import BroadcastNotifier
from paybord.reconcile import PaymentReconciler
from paybord.routes import router
from paybord.signatures import STRIPE

logger = get_logger(__name__)

webhook_router = APIRouter()


@webhook_router.post("/webhooks")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db=Depends(get_db),
    verifier=Depends(get_verifier),
    notifier=Depends(get_notifier),
):
    # Signature is checked against the raw bytes, before anything is parsed.
    payload = await request.body()
    try:
        channel = verifier.verify(payload, request.headers)
    except AuthenticationError as exc:
        log_webhook_event(logger, "unverified", None, result="rejected", error=exc.message)
        raise

    try:
        event_body = json.loads(payload)
    except ValueError:
        log_webhook_event(logger, channel, None, result="rejected", error="invalid JSON")
        raise MalformedEventError("Invalid JSON payload")

    event_type = event_type_of(event_body, channel) if isinstance(event_body, dict) else None
    try:
        event = normalize(event_body, channel)
    except MalformedEventError as exc:
        log_webhook_event(logger, channel, event_type, result="rejected", error=exc.message)
        raise

    if event is None:
        log_webhook_event(logger, channel, event_type, result="ignored")
        return {"received": True}

    await run_in_threadpool(_reconcile, db, notifier, event, channel, event_type, background_tasks)
    return {"received": True}


def _reconcile(db, notifier, event, channel, event_type, background_tasks):
    # blocking database work, kept off the event loop
    result = PaymentReconciler(db, notifier).reconcile(event, background_tasks=background_tasks)
    if result.created:
        outcome = "recorded"
    elif result.completed:
        outcome = "completed"
    else:
        outcome = "duplicate"
    log_webhook_event(
        logger, channel, event_type,
        reference=event.provider_reference,
        result=outcome,
        transaction_id=result.transaction.transaction_id,
    )

    payment_intent_id = event.metadata.get("payment_intent_id")
    if event.provider == STRIPE and payment_intent_id:
        settle_processing_intent(db, payment_intent_id, event.provider_reference)


async def _forward(websocket: WebSocket, queue):
    while True:
        await websocket.send_json(await queue.get())


async def _receive(websocket: WebSocket):
    # reading keeps the socket alive and surfaces client disconnects
    while True:
        if await websocket.receive_text() == "ping":
            await websocket.send_text("pong")


@webhook_router.websocket("/ws/transactions")
async def transaction_stream(websocket: WebSocket, token: str = ""):
    if not user_from_token(token):
        await websocket.close(code=1008)
        return

    notifier = websocket.app.state.notifier
    queue = notifier.subscribe()
    tasks = []
    try:
        await websocket.accept()
        tasks = [
            asyncio.create_task(_forward(websocket, queue)),
            asyncio.create_task(_receive(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        error = next(iter(done)).exception()
        if isinstance(error, WebSocketDisconnect):
            logger.info("Dashboard disconnected")
        else:
            logger.warning("Dashboard stream failed, closing: %s", error)
            try:
                await websocket.close(code=1011)
            except Exception as exc:
                logger.info("Dashboard socket already gone: %s", exc)
    finally:
        for task in tasks:
            task.cancel()
        notifier.unsubscribe(queue)


def create_app(notifier=None) -> FastAPI:
    configure_logging(config.LOG_LEVEL)

    app = FastAPI(title="Paybord Payment Reconciliation Service")
    app.state.notifier = notifier or BroadcastNotifier(config.NOTIFIER_QUEUE_SIZE)
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app)

    app.include_router(webhook_router)
    app.include_router(router)

    Base.metadata.create_all(bind=engine)
    return app


app = create_app()
