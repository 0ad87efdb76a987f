"""
Best-effort push notifications to admin users.

Delivery itself belongs to an external push service; `Notifier.send` is the
seam. Failures are logged per token and never reach the caller.
"""
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class Notifier:
    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Default notifier: records the message instead of delivering it."""

    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        logger.info("push to %s: %s - %s %s", token[:8], title, body, data or {})


def notify_admins(db, notifier: Notifier, order: dict) -> int:
    """Send a 'new order' message to every admin with a push token; returns the number delivered."""
    admins = list(db["user"].find({"role": "admin", "fcm_token": {"$exists": True, "$ne": None}}))
    sent = 0
    for admin in admins:
        try:
            notifier.send(
                admin["fcm_token"],
                "New Order Placed!",
                f"Order #{order['order_id']} placed by {order['name']}",
                {"order_id": str(order["_id"]), "type": "order_placed"},
            )
            sent += 1
        except Exception as e:
            logger.warning("push notification to admin %s failed: %s", admin.get("_id"), e)
    return sent
