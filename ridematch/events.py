"""Fire-and-forget domain events over Redis pub/sub.

Publishing happens after the owning transaction commits. Delivery is
at-least-once from the consumers' point of view and nothing here deduplicates,
so a publish failure is logged and never undoes the committed change.
"""
import json
import logging
from .config import settings
from .cache import redis_client

logger = logging.getLogger(__name__)

BID_ACCEPTED = "bid.accepted"
RIDE_ACCEPTED = "ride.accepted"
RIDE_STARTED = "ride.started"
RIDE_COMPLETED = "ride.completed"
RIDE_CANCELLED = "ride.cancelled"
RIDE_NO_SHOW = "ride.no_show"
PAYMENT_PROCESSED = "payment.processed"
PAYMENT_TIP_PROCESSED = "payment.tip.processed"
PAYMENT_REFUNDED = "payment.refunded"
VOUCHER_REDEEMED = "promotion.voucher.redeemed"


async def publish(event: str, payload: dict) -> bool:
    channel = f"{settings.EVENTS_CHANNEL_PREFIX}{event}"
    message = json.dumps({"event": event, **payload}, default=str)
    try:
        await redis_client.publish(channel, message)
    except Exception as e:
        logger.warning("publish_failed: event=%s payload=%s error=%s", event, payload, e)
        return False
    logger.info("event_published: event=%s payload=%s", event, payload)
    return True
