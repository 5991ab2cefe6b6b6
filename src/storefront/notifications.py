"""Order notifications.

Delivery happens on a background worker so that a slow or failing mail path
never delays or fails checkout. Errors are logged and dropped.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Protocol

from .errors import NotificationError
from .models import Order

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
ORDER_STATUS_UPDATE = "order_status_update"


class Notifier(Protocol):
    """A sink that actually delivers messages (SMTP, provider API, ...)."""

    def send_order_confirmation(self, email: str, order: Order) -> None: ...

    def send_order_status_update(
        self, email: str, order: Order, admin_message: str | None = None
    ) -> None: ...


class LoggingNotifier:
    """Development sink: logs what would have been sent."""

    def send_order_confirmation(self, email: str, order: Order) -> None:
        logger.info(
            "Order confirmation #%s to %s: %d item(s), total %.2f %s",
            order.order_number,
            email,
            len(order.items),
            order.total,
            order.currency,
        )

    def send_order_status_update(
        self, email: str, order: Order, admin_message: str | None = None
    ) -> None:
        logger.info(
            "Order update #%s to %s: status %s%s",
            order.order_number,
            email,
            order.status.value,
            f" ({admin_message})" if admin_message else "",
        )


@dataclass
class Notification:
    kind: str
    email: str
    order: Order
    admin_message: str | None = None


_STOP = object()


class NotificationDispatcher:
    """Hands notifications to a worker thread and returns immediately."""

    def __init__(self, notifier: Notifier | None = None):
        self.notifier = notifier or LoggingNotifier()
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        # guards _closed together with the queue puts
        self._state_lock = threading.Lock()
        self._worker = threading.Thread(
            target=self._run, name="notification-dispatcher", daemon=True
        )
        self._worker.start()

    def dispatch_order_confirmation(self, email: str, order: Order) -> None:
        self._enqueue(Notification(ORDER_CONFIRMATION, email, order))

    def dispatch_order_status_update(
        self, email: str, order: Order, admin_message: str | None = None
    ) -> None:
        self._enqueue(Notification(ORDER_STATUS_UPDATE, email, order, admin_message))

    def _enqueue(self, notification: Notification) -> None:
        with self._state_lock:
            if not self._closed:
                self._queue.put(notification)
                return
        logger.warning(
            "Dispatcher closed; dropping %s for order %s",
            notification.kind,
            notification.order.id,
        )

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, notification: Notification) -> None:
        try:
            if notification.kind == ORDER_CONFIRMATION:
                self.notifier.send_order_confirmation(notification.email, notification.order)
            else:
                self.notifier.send_order_status_update(
                    notification.email, notification.order, notification.admin_message
                )
        except Exception as e:
            error = NotificationError(notification.kind, notification.email, str(e))
            logger.error("%s", error, exc_info=True)

    def flush(self) -> None:
        """Block until every queued notification has been attempted."""
        self._queue.join()

    def close(self) -> None:
        """Drain the queue and stop the worker."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._worker.join()
