# escrowguard/notifications.py
import logging
from typing import Protocol
from uuid import UUID

from escrowguard.metrics import notifications_failed_total
from escrowguard.throttling import Deduplicator

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify_item_added_to_cart(self, buyer_id: UUID, listing_id: UUID, quantity: int) -> None: ...
    def notify_item_removed_from_cart(self, buyer_id: UUID, listing_id: UUID) -> None: ...
    def notify_cart_cleared(self, buyer_id: UUID) -> None: ...
    def notify_order_placed(self, buyer_id: UUID, order_id: UUID) -> None: ...
    def notify_return_requested(self, seller_id: UUID, refund_id: UUID, order_id: UUID) -> None: ...
    def notify_return_rejected(self, buyer_id: UUID, refund_id: UUID, order_id: UUID) -> None: ...
    def notify_refund_completed(self, buyer_id: UUID, refund_id: UUID, amount_cents: int, currency: str) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes each event to the log. Delivery is someone else's job."""

    def _emit(self, event: str, **fields) -> None:
        rendered = " ".join(f"{k}={v}" for k, v in fields.items())
        logger.info(f"notification {event} {rendered}")

    def notify_item_added_to_cart(self, buyer_id, listing_id, quantity):
        self._emit("item_added_to_cart", buyer_id=buyer_id, listing_id=listing_id, quantity=quantity)

    def notify_item_removed_from_cart(self, buyer_id, listing_id):
        self._emit("item_removed_from_cart", buyer_id=buyer_id, listing_id=listing_id)

    def notify_cart_cleared(self, buyer_id):
        self._emit("cart_cleared", buyer_id=buyer_id)

    def notify_order_placed(self, buyer_id, order_id):
        self._emit("order_placed", buyer_id=buyer_id, order_id=order_id)

    def notify_return_requested(self, seller_id, refund_id, order_id):
        self._emit("return_requested", seller_id=seller_id, refund_id=refund_id, order_id=order_id)

    def notify_return_rejected(self, buyer_id, refund_id, order_id):
        self._emit("return_rejected", buyer_id=buyer_id, refund_id=refund_id, order_id=order_id)

    def notify_refund_completed(self, buyer_id, refund_id, amount_cents, currency):
        self._emit("refund_completed", buyer_id=buyer_id, refund_id=refund_id,
                   amount_cents=amount_cents, currency=currency)


class DedupNotificationSink:
    """
    Drops an event whose (name, args) was already delivered within the dedup window.

    Events keyed by an order or refund id happen once per id, so a repeat is a
    retry. Cart events are buyer actions that legitimately repeat with the same
    arguments and always pass through.
    """

    REPEATABLE = frozenset({"notify_item_added_to_cart", "notify_item_removed_from_cart", "notify_cart_cleared"})

    def __init__(self, inner: NotificationSink, dedup: Deduplicator):
        self.inner = inner
        self.dedup = dedup

    def __getattr__(self, name: str):
        target = getattr(self.inner, name)
        if not name.startswith("notify_") or name in self.REPEATABLE:
            return target

        def _call(*args, **kwargs):
            key = f"{name}:{args}:{sorted(kwargs.items())}"
            if self.dedup.seen(key):
                logger.debug(f"notification {name} suppressed as duplicate")
                return None
            return target(*args, **kwargs)

        return _call


def fire_and_forget(sink: NotificationSink, event: str, **kwargs) -> None:
    """Call sink.notify_<event>; failures are logged and counted, never raised."""
    try:
        getattr(sink, f"notify_{event}")(**kwargs)
    except Exception:
        notifications_failed_total.labels(event).inc()
        logger.warning(f"notification {event} failed; continuing", exc_info=True)
