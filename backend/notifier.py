# notifier.py
"""Order event notifications, delivered as Telegram messages.

Sending is best effort: failures are logged and never undo the state change
that triggered the event.
"""
import logging

import requests

import config

logger = logging.getLogger(__name__)


def send_message(text: str) -> bool:
    if not config.TELEGRAM_BOT_TOKEN or not config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram keys missing, skipping notification")
        return False

    url = f"https://api.telegram.org/bot{config.TELEGRAM_BOT_TOKEN}/sendMessage"
    payload = {"chat_id": config.TELEGRAM_CHAT_ID, "text": text, "parse_mode": "Markdown"}
    try:
        response = requests.post(url, json=payload, timeout=config.NOTIFY_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        logger.warning("Telegram connection error: %s", e)
        return False
    # Check if Telegram actually accepted it
    if not response.ok:
        logger.warning("Telegram error response: %s", response.text)
        return False
    return True


def _render(event: str, order, extra: dict) -> str:
    lines = [f"*{event.replace('_', ' ').upper()}*", f"Order #{order.id}"]
    lines.append(f"Status: {order.order_status} | Payment: {order.payment_status}")
    lines.append(f"Total: ₹{order.total_amount:.2f} (medicines ₹{order.medicine_total:.2f}"
                 f" + delivery ₹{order.delivery_charges:.2f})")
    lines.append(f"Contact: {order.contact_number}")
    if order.pickup_code and event == "ready_for_pickup":
        lines.append(f"Pickup code: {order.pickup_code}")
    for key, value in extra.items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


class Notifier:
    """Turns order events into messages. Swap ``send`` to change the channel."""

    def __init__(self, send=send_message):
        self.send = send

    def emit(self, event: str, order, **extra) -> None:
        try:
            self.send(_render(event, order, extra))
        except Exception:
            logger.exception("Notification %s for order %s failed", event, getattr(order, "id", None))


notifier = Notifier()
