# core/notifications.py - Background delivery of owner and player notifications
import threading
import queue
import time
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class NotificationRefused(Exception):
    """The recipient does not accept notifications (opted out, blocked, unknown)."""


class LoggingSink:
    """Default sink: writes notifications to the log instead of delivering them."""

    def send(self, recipient_id: str, notification: Dict[str, Any]):
        logger.info(f"Notification for {recipient_id}: [{notification.get('type')}] "
                    f"{notification.get('description', '')[:200]}")


class WebhookSink:
    """POSTs each notification as JSON to the chat platform adapter."""

    def __init__(self, url: str, timeout: float = 10.0, api_key: Optional[str] = None):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key

    def send(self, recipient_id: str, notification: Dict[str, Any]):
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        response = requests.post(
            self.url,
            json={"recipient_id": recipient_id, "notification": notification},
            headers=headers,
            timeout=self.timeout
        )
        # 403/404: the adapter could not reach this user, nothing we can fix here
        if response.status_code in (403, 404):
            raise NotificationRefused(f"Recipient {recipient_id} refused notification ({response.status_code})")
        response.raise_for_status()


class NotificationDispatcher:
    """
    Fire-and-forget notification queue with one worker thread.

    dispatch() never raises and never waits for delivery. Failures of the sink
    are logged by the worker and dropped.
    """

    def __init__(self, sink=None, max_queue: int = 1000):
        self.sink = sink or LoggingSink()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._running = False
        self._delivered = 0
        self._failed = 0

    def start(self):
        with self._lock:
            if self._running:
                return
            self._running = True
            self._worker = threading.Thread(target=self._run, name="notification-dispatcher", daemon=True)
            self._worker.start()
        logger.info(f"Notification dispatcher started (sink={type(self.sink).__name__})")

    def stop(self, timeout: float = 5.0):
        with self._lock:
            if not self._running:
                return
            self._running = False
            worker = self._worker
            self._worker = None
        self._queue.put(None)
        if worker:
            worker.join(timeout=timeout)
        logger.info("Notification dispatcher stopped")

    def dispatch(self, recipient_id: str, notification: Dict[str, Any]) -> bool:
        """Queue a notification. Returns False if it had to be dropped."""
        if not self._running:
            self.start()
        try:
            self._queue.put_nowait((recipient_id, notification, time.time()))
            return True
        except queue.Full:
            logger.warning(f"Notification queue full, dropping notification for {recipient_id}")
            return False

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Block until every queued notification was handled. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stats(self) -> Dict[str, int]:
        return {"queued": self._queue.qsize(), "delivered": self._delivered, "failed": self._failed}

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                recipient_id, notification, _queued_at = item
                self._deliver(recipient_id, notification)
            finally:
                self._queue.task_done()

    def _deliver(self, recipient_id: str, notification: Dict[str, Any]):
        try:
            self.sink.send(recipient_id, notification)
            self._delivered += 1
        except NotificationRefused as e:
            # User-side setting, not an error on our side
            logger.debug(f"Notification not accepted: {e}")
        except Exception as e:
            self._failed += 1
            logger.error(f"Failed to deliver notification '{notification.get('type')}' to {recipient_id}: {e}")
