"""Best-effort fan-out of new ledger rows to connected dashboards.

There is no replay buffer and no delivery guarantee: a slow or disconnected
dashboard loses messages and is expected to catch up by polling
``GET /transactions``.
"""

import asyncio
import threading
from abc import ABC, abstractmethod

from paybord.logging_utils import get_logger
from paybord.schemas import transaction_to_dict

logger = get_logger(__name__)

PAYMENT_UPDATE = "payment_update"


class Notifier(ABC):
    @abstractmethod
    def publish(self, transaction) -> None:
        """Queue ``transaction`` for every subscriber. Must never raise."""

    @abstractmethod
    def subscribe(self) -> asyncio.Queue:
        ...

    @abstractmethod
    def unsubscribe(self, queue: asyncio.Queue) -> None:
        ...


class BroadcastNotifier(Notifier):
    """In-process broadcaster; one bounded queue per WebSocket session.

    ``publish`` may be called from worker threads (sync route handlers and
    background tasks), so messages are handed to each subscriber's event
    loop with ``call_soon_threadsafe``.
    """

    def __init__(self, queue_size=100):
        self.queue_size = queue_size
        self._subscribers = {}
        self._lock = threading.Lock()

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.queue_size)
        with self._lock:
            self._subscribers[queue] = asyncio.get_running_loop()
        logger.info("Dashboard subscribed (%d connected)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.pop(queue, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, transaction) -> None:
        try:
            payload = transaction if isinstance(transaction, dict) else transaction_to_dict(transaction)
            message = {"event": PAYMENT_UPDATE, "type": "new_payment", "transaction": payload}
            with self._lock:
                subscribers = list(self._subscribers.items())
            for queue, loop in subscribers:
                try:
                    loop.call_soon_threadsafe(self._offer, queue, message)
                except RuntimeError:
                    # loop already closed; the session is gone
                    self.unsubscribe(queue)
        except Exception:
            logger.exception("Broadcasting transaction update failed")

    @staticmethod
    def _offer(queue: asyncio.Queue, message: dict) -> None:
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Dashboard queue full, dropping %s",
                           message["transaction"].get("transaction_id"))
