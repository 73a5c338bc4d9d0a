"""
Fire-and-forget notifications for reservation events.

Events are POSTed as JSON to NOTIFY_WEBHOOK_URL; the receiving service owns
delivery (email, push, messenger). Called after the transaction committed,
so nothing here may raise.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

import httpx

from farmslot.app.core.logging import get_logger
from farmslot.app.core.settings import get_settings

logger = get_logger(__name__)

NOTIFY_TIMEOUT_SECONDS = 10.0

EVENT_BOOKING_CREATED = "booking.created"
EVENT_BOOKING_CANCELLED = "booking.cancelled"
EVENT_ORDER_CONFIRMED = "order.confirmed"


async def _post_event(event: str, payload: Dict[str, Any]) -> bool:
    """
    Send one event to the webhook. Returns True if it was accepted.
    """
    url = get_settings().NOTIFY_WEBHOOK_URL
    if not url:
        logger.debug("NOTIFY_WEBHOOK_URL not set, skip notification", notify_event=event)
        return False
    body = {"event": event, **payload}
    try:
        async with httpx.AsyncClient(timeout=NOTIFY_TIMEOUT_SECONDS) as client:
            r = await client.post(url, json=body)
            if r.is_success:
                return True
            logger.warning(
                "Notification webhook rejected event",
                notify_event=event,
                status=r.status_code,
                body=r.text[:500],
            )
            return False
    except Exception:
        logger.exception("Notification webhook call failed", notify_event=event)
        return False


async def notify_booking_created(
    user_id: int,
    booking_id: int,
    order_id: int,
    slot_date: datetime,
    quantity: Decimal,
    expires_at: Optional[datetime],
) -> bool:
    """Tell the client their hold exists and when it lapses."""
    return await _post_event(EVENT_BOOKING_CREATED, {
        "user_id": user_id,
        "booking_id": booking_id,
        "order_id": order_id,
        "delivery_date": slot_date.isoformat(),
        "quantity": str(quantity),
        "expires_at": expires_at.isoformat() if expires_at else None,
    })


async def notify_booking_cancelled(user_id: int, booking_id: int, order_id: int, reason: str) -> bool:
    return await _post_event(EVENT_BOOKING_CANCELLED, {
        "user_id": user_id,
        "booking_id": booking_id,
        "order_id": order_id,
        "reason": reason,
    })


async def notify_order_confirmed(user_id: int, order_id: int, total: Decimal) -> bool:
    return await _post_event(EVENT_ORDER_CONFIRMED, {
        "user_id": user_id,
        "order_id": order_id,
        "total": str(total),
    })
