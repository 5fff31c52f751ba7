"""Turns verified Stripe events into ledger writes.

Stripe may redeliver an event, and may send ``checkout.session.completed``
and ``checkout.session.async_payment_succeeded`` for the same session in
either order. Both paths go through :func:`order_fields_from_session` and
the same upsert, so any sequence of deliveries ends with one row.
"""
import enum
import logging
import math
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from kinddraw import ledger
from kinddraw.errors import PersistenceError
from kinddraw.ledger import OrderFields
from kinddraw.stripe_service import StripeGateway
from kinddraw.webhooks import WebhookEvent

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
REFUND_EVENTS = ("charge.refunded", "refund.created")
SETTLED_STATUSES = ("paid", "no_payment_required")


class ReconcileOutcome(enum.Enum):
    UPSERTED = "upserted"
    SKIPPED = "skipped"            # nothing usable to write
    PENDING = "pending"            # completed, payment not settled yet
    IGNORED = "ignored"
    REFUNDED = "refunded"
    LINKAGE_MISS = "linkage_miss"
    FAILED = "failed"


def _positive_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number <= 0:
        return 0
    return math.floor(number)


def _discount_fields(session: Dict[str, Any]) -> tuple:
    total_details = session.get("total_details") or {}
    amount_discount = total_details.get("amount_discount")
    discount_cents = amount_discount if isinstance(amount_discount, int) and amount_discount > 0 else None

    breakdown = total_details.get("breakdown") or {}
    discounts = breakdown.get("discounts") or []
    promo_code_id = None
    if discounts:
        discount = (discounts[0] or {}).get("discount") or {}
        promo_code_id = discount.get("promotion_code") or discount.get("id")
        if discount_cents is None and isinstance(discounts[0].get("amount"), int):
            discount_cents = discounts[0]["amount"] or None
    return discount_cents, promo_code_id


def order_fields_from_session(session: Dict[str, Any]) -> Optional[OrderFields]:
    """Derive the ledger row for a checkout session.

    Returns None when the session has no campaign or no positive entry count.
    """
    metadata = session.get("metadata") or {}
    campaign_id = metadata.get("campaign") or metadata.get("campaignId") or "default"
    page_id = metadata.get("page_id") or metadata.get("campaignId") or None

    amount_total = session.get("amount_total")
    amount_cents = amount_total if isinstance(amount_total, int) and not isinstance(amount_total, bool) else 0

    # $1 buys one entry when the session carries no pack metadata
    entries = _positive_int(metadata.get("packEntries")) or max(0, amount_cents // 100)

    currency = (session.get("currency") or "usd").lower()

    payment_status = session.get("payment_status")
    if payment_status in SETTLED_STATUSES:
        status = payment_status
    else:
        status = payment_status or "completed"

    discount_cents, promo_code_id = _discount_fields(session)

    if not session.get("id") or not campaign_id or entries <= 0:
        logger.warning(
            "Skipping order for session %s: campaign_id=%r entries=%s amount_cents=%s",
            session.get("id"), campaign_id, entries, amount_cents,
        )
        return None

    return OrderFields(
        stripe_session_id=session["id"],
        campaign_id=str(campaign_id),
        entries=entries,
        amount_cents=amount_cents,
        currency=currency,
        status=status,
        discount_cents=discount_cents,
        promo_code_id=promo_code_id,
        page_id=str(page_id) if page_id else None,
    )


def upsert_from_session(db: Session, session: Dict[str, Any]) -> ReconcileOutcome:
    fields = order_fields_from_session(session)
    if fields is None:
        return ReconcileOutcome.SKIPPED
    try:
        ledger.upsert_order(db, fields)
    except PersistenceError as exc:
        logger.error("Order upsert failed for session %s: %s", fields.stripe_session_id, exc)
        return ReconcileOutcome.FAILED
    logger.info(
        "Order for session %s recorded: campaign=%s entries=%s amount_cents=%s status=%s",
        fields.stripe_session_id, fields.campaign_id, fields.entries, fields.amount_cents, fields.status,
    )
    return ReconcileOutcome.UPSERTED


def handle_refund(db: Session, gateway: StripeGateway, obj: Dict[str, Any]) -> ReconcileOutcome:
    """Mark the order behind a refunded payment intent as refunded."""
    payment_intent = obj.get("payment_intent")
    if not payment_intent:
        logger.warning("Refund event %s has no payment_intent", obj.get("id"))
        return ReconcileOutcome.LINKAGE_MISS

    try:
        session_id = gateway.session_id_for_payment_intent(payment_intent)
    except stripe.StripeError as exc:
        logger.error("Session lookup for payment intent %s failed: %s", payment_intent, exc)
        return ReconcileOutcome.FAILED
    if not session_id:
        logger.warning("No checkout session found for payment intent %s", payment_intent)
        return ReconcileOutcome.LINKAGE_MISS

    try:
        updated = ledger.mark_refunded(db, session_id)
    except PersistenceError as exc:
        logger.error("Refund update failed for session %s: %s", session_id, exc)
        return ReconcileOutcome.FAILED
    if not updated:
        logger.warning("No order recorded yet for session %s, refund not applied", session_id)
        return ReconcileOutcome.LINKAGE_MISS

    logger.info("Order for session %s marked refunded", session_id)
    return ReconcileOutcome.REFUNDED


def reconcile(db: Session, gateway: StripeGateway, event: WebhookEvent) -> ReconcileOutcome:
    obj = event.data_object

    if event.type == SESSION_COMPLETED:
        if obj.get("payment_status") in SETTLED_STATUSES:
            return upsert_from_session(db, obj)
        logger.info("Session %s completed but not settled yet: %s", obj.get("id"), obj.get("payment_status"))
        return ReconcileOutcome.PENDING

    if event.type == ASYNC_PAYMENT_SUCCEEDED:
        return upsert_from_session(db, obj)

    if event.type in REFUND_EVENTS:
        return handle_refund(db, gateway, obj)

    logger.debug("Ignoring event %s of type %s", event.id, event.type)
    return ReconcileOutcome.IGNORED
