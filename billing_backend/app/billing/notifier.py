"""Fire-and-forget notification channel for billing events."""
from __future__ import annotations

import logging
from queue import Empty, Full, Queue
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .models import NotificationEvent, NotificationMessage

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify(self, event: NotificationEvent, payload: Mapping[str, Any]) -> None:
        ...


def notify_safely(notifier: Notifier, event: NotificationEvent, payload: Mapping[str, Any]) -> None:
    """Hand an event to the notifier; failures are logged and discarded."""

    try:
        notifier.notify(event, payload)
    except Exception:
        logger.exception("Billing notification %s could not be dispatched", event.value)


class LoggingNotifier:
    """Delivery sink that records notifications to the application logger."""

    def notify(self, event: NotificationEvent, payload: Mapping[str, Any]) -> None:
        logger.info("Billing notification %s payload=%s", event.value, dict(payload))


class RecordingNotifier:
    """Keeps every notification in memory; used by local tooling and tests."""

    def __init__(self) -> None:
        self.messages: List[NotificationMessage] = []
        self._lock = Lock()

    def notify(self, event: NotificationEvent, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self.messages.append(NotificationMessage(event=event, payload=dict(payload)))

    def events(self) -> List[NotificationEvent]:
        with self._lock:
            return [message.event for message in self.messages]


class _NotificationWorker(Thread):
    def __init__(self, notifier: "QueuedNotifier", *, poll_interval: float) -> None:
        super().__init__(daemon=True, name="billing-notifier")
        self._notifier = notifier
        self._poll_interval = max(0.01, poll_interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        while not self._stop_event.is_set():
            self._notifier.deliver_next(timeout=self._poll_interval)


class QueuedNotifier:
    """Notifier that enqueues messages for a background worker to deliver."""

    def __init__(self, sink: Notifier, *, maxsize: int = 1000, poll_interval: float = 0.5) -> None:
        self._sink = sink
        self._queue: "Queue[NotificationMessage]" = Queue(maxsize=max(1, maxsize))
        self._poll_interval = poll_interval
        self._closed = False
        self._worker: Optional[_NotificationWorker] = None
        self._lock = Lock()
        self._stats: Dict[str, int] = {"enqueued": 0, "delivered": 0, "failed": 0, "dropped": 0}

    def notify(self, event: NotificationEvent, payload: Mapping[str, Any]) -> None:
        if self._closed:
            logger.warning("Notifier is closed; dropping %s", event.value)
            self._count("dropped")
            return
        message = NotificationMessage(event=event, payload=dict(payload))
        try:
            self._queue.put_nowait(message)
        except Full:
            logger.warning("Notification queue is full; dropping %s", event.value)
            self._count("dropped")
            return
        self._count("enqueued")

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._closed = False
            self._worker = _NotificationWorker(self, poll_interval=self._poll_interval)
            self._worker.start()
        logger.info("Billing notifier worker started")

    def close(self, *, timeout: float = 1.0) -> None:
        with self._lock:
            self._closed = True
            worker, self._worker = self._worker, None
        if worker is not None:
            worker.stop()
            worker.join(timeout=timeout)
        logger.info("Billing notifier worker stopped", extra={"pending": self.pending})

    def deliver_next(self, *, timeout: Optional[float] = None) -> bool:
        """Deliver one queued message, waiting up to ``timeout`` for it."""

        try:
            message = self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except Empty:
            return False
        try:
            self._sink.notify(message.event, message.payload)
        except Exception:
            logger.exception("Billing notification %s delivery failed", message.event.value)
            self._count("failed")
        else:
            self._count("delivered")
        finally:
            self._queue.task_done()
        return True

    def flush(self) -> int:
        """Synchronously deliver everything currently queued."""

        processed = 0
        while self.deliver_next():
            processed += 1
        return processed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1


__all__ = [
    "LoggingNotifier",
    "Notifier",
    "QueuedNotifier",
    "RecordingNotifier",
    "notify_safely",
]
