"""Writes and reads against the ``orders`` ledger.

Every write is keyed on ``stripe_session_id``. The upsert is a single
``INSERT ... ON CONFLICT DO UPDATE`` so concurrent deliveries of the same
session resolve inside the database rather than in this process.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kinddraw.errors import PersistenceError
from kinddraw.models import Order

logger = logging.getLogger(__name__)

REFUNDED = "refunded"


@dataclass
class OrderFields:
    stripe_session_id: str
    campaign_id: str
    entries: int
    amount_cents: int
    currency: str
    status: str
    discount_cents: Optional[int] = None
    promo_code_id: Optional[str] = None
    page_id: Optional[str] = None

    def as_row(self) -> dict:
        return asdict(self)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(f"Upsert not supported on dialect {dialect!r}")
    return insert


def upsert_order(db: Session, fields: OrderFields) -> None:
    """Insert the order or overwrite the existing row for its session id.

    A row already marked refunded keeps that status when a payment event for
    the same session is redelivered.
    """
    insert = _insert_for(db)
    row = fields.as_row()
    stmt = insert(Order).values(**row)
    excluded = stmt.excluded
    overwrite = {
        name: getattr(excluded, name)
        for name in row
        if name not in ("stripe_session_id", "status")
    }
    overwrite["status"] = case(
        (Order.status == REFUNDED, Order.status),
        else_=excluded.status,
    )
    overwrite["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(
        index_elements=[Order.stripe_session_id],
        set_=overwrite,
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Order upsert failed: {exc}") from exc


def mark_refunded(db: Session, stripe_session_id: str) -> int:
    """Set status to refunded. Returns the number of rows touched."""
    stmt = (
        update(Order)
        .where(Order.stripe_session_id == stripe_session_id)
        .values(status=REFUNDED, updated_at=func.now())
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Refund update failed: {exc}") from exc
    return result.rowcount


def campaign_totals(db: Session, campaign_id: str) -> dict:
    """Entries sold and cents raised for a campaign, refunds excluded."""
    stmt = select(
        func.coalesce(func.sum(Order.entries), 0),
        func.coalesce(func.sum(Order.amount_cents), 0),
    ).where(Order.campaign_id == campaign_id, Order.status != REFUNDED)
    try:
        entries, amount_cents = db.execute(stmt).one()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Totals query failed: {exc}") from exc
    return {"entries": int(entries), "amount_cents": int(amount_cents)}
