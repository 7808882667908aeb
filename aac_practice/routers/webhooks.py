# aac_practice/routers/webhooks.py
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..config import get_settings
from ..database import get_db

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


class SignatureError(Exception):
    pass


def verify_stripe_signature(payload: bytes, header: Optional[str], secret: str, tolerance: int,
                            now: Optional[float] = None) -> None:
    """Check a ``Stripe-Signature`` header (``t=<ts>,v1=<hex>``) against the raw body."""
    if not header:
        raise SignatureError("Missing signature header")
    parts: Dict[str, list] = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        parts.setdefault(key, []).append(value)
    try:
        timestamp = int(parts["t"][0])
    except (KeyError, ValueError):
        raise SignatureError("Malformed signature header")
    signatures = parts.get("v1", [])
    if not signatures:
        raise SignatureError("No v1 signature in header")

    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise SignatureError("Signature mismatch")
    current = now if now is not None else time.time()
    if abs(current - timestamp) > tolerance:
        raise SignatureError("Timestamp outside tolerance")


def handle_subscription_event(db: Session, event_type: str, data: Dict[str, Any]) -> models.Subscription:
    """Upsert the local subscription row from a customer.subscription.* event."""
    subscription_id = data.get("id")
    if not subscription_id:
        raise ValueError("Subscription event without an id")

    subscription = db.query(models.Subscription).filter(
        models.Subscription.subscription_id == subscription_id
    ).first()
    if subscription is None:
        subscription = models.Subscription(subscription_id=subscription_id)
        db.add(subscription)

    items = (data.get("items") or {}).get("data") or []
    plan = data.get("plan") or (items[0].get("plan") if items else None) or {}
    period_end = data.get("current_period_end")

    subscription.customer_id = data.get("customer")
    subscription.status = "canceled" if event_type == "customer.subscription.deleted" else data.get("status", "unknown")
    subscription.plan = plan.get("nickname") or plan.get("id")
    subscription.current_period_end = (
        datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None
    )
    db.commit()
    return subscription


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """
    Receive payment-provider events. Only subscription lifecycle events change state.
    """
    settings = get_settings()
    payload = await request.body()
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook not configured")
    try:
        verify_stripe_signature(payload, stripe_signature, settings.stripe_webhook_secret,
                                settings.stripe_webhook_tolerance)
        event = json.loads(payload)
    except (SignatureError, ValueError) as e:
        logger.warning(f"Rejected Stripe webhook: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    if not isinstance(event, dict):
        logger.warning("Rejected Stripe webhook: payload is not a JSON object")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    event_type = event.get("type", "")
    logger.info(f"Stripe event {event.get('id')} of type {event_type}")
    if event_type.startswith("customer.subscription."):
        try:
            handle_subscription_event(db, event_type, (event.get("data") or {}).get("object") or {})
        except (SQLAlchemyError, ValueError, TypeError) as e:
            db.rollback()
            logger.error(f"Error handling Stripe event {event_type}: {e}", exc_info=True)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook handler failed")
    return {"received": True}
