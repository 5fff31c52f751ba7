import logging
import math
import time
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kinddraw import ledger
from kinddraw.auth import verify_token
from kinddraw.checkout import create_checkout_session
from kinddraw.config import Settings, get_settings
from kinddraw.database import get_db, get_read_db, session_factory
from kinddraw.errors import InvalidInput, PersistenceError
from kinddraw.ledger import OrderFields
from kinddraw.models import Comment, Lead
from kinddraw.stripe_service import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)

router = APIRouter()

LEAD_REQUIRED_FIELDS = (
    "full_name", "email", "campaign_name", "beneficiary",
    "winner_share_pct", "price_per_entry", "entry_cap_total", "amoe_address",
)
LEAD_OPTIONAL_FIELDS = (
    "phone", "purpose", "start_et", "end_et", "state_exclusions",
    "packs_displayed", "amoe_pacing", "story_short", "photo_url", "source",
)

DEFAULT_WINNER_SHARE_PCT = 50
DEFAULT_PRICE_PER_ENTRY = 1
DEFAULT_ENTRY_CAP = 700
DEFAULT_PACKS = [
    {"price": 10, "entries": 10},
    {"price": 20, "entries": 25},
    {"price": 50, "entries": 62},
    {"price": 100, "entries": 130},
    {"price": 500, "entries": 700},
]


class CheckoutRequest(BaseModel):
    # Loosely typed: numeric strings are accepted and range checks return 400
    campaignId: Any = None
    packPrice: Any = None
    packEntries: Any = None
    promo: Any = None


class CommentRequest(BaseModel):
    display_name: str = ""
    body: str = ""


@router.post("/create-checkout-session")
def create_checkout_session_api(
    body: CheckoutRequest,
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    origin = f"{request.url.scheme}://{request.url.netloc}"
    url = create_checkout_session(
        gateway,
        origin,
        body.campaignId,
        body.packPrice,
        body.packEntries,
        promo=body.promo,
    )
    return {"url": url}


def _number(body: dict, key: str, cast=float):
    value = body.get(key)
    if value is None or value == "":
        return None
    try:
        number = cast(float(value))
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid number for field: {key}")
    if isinstance(number, float) and not math.isfinite(number):
        raise InvalidInput(f"Invalid number for field: {key}")
    return number


@router.post("/leads")
def create_lead(
    request: Request,
    body: dict = Body(...),
    dry: Optional[str] = None,
    db: Session = Depends(get_db),
):
    for key in LEAD_REQUIRED_FIELDS:
        if not body.get(key) and body.get(key) != 0:
            raise InvalidInput(f"Missing field: {key}")

    if dry == "1":
        return {"ok": True, "mode": "dry", "echo": body}

    lead = Lead(
        id=uuid.uuid4().hex,
        full_name=body["full_name"],
        email=body["email"],
        campaign_name=body["campaign_name"],
        beneficiary=body["beneficiary"],
        winner_share_pct=_number(body, "winner_share_pct"),
        price_per_entry=_number(body, "price_per_entry"),
        entry_cap_total=_number(body, "entry_cap_total", int),
        amoe_address=body["amoe_address"],
        user_agent=request.headers.get("user-agent"),
        ip=request.headers.get("x-forwarded-for"),
    )
    for key in LEAD_OPTIONAL_FIELDS:
        setattr(lead, key, body.get(key))
    lead.goal_usd = _number(body, "goal_usd")

    try:
        db.add(lead)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Lead insert failed: %s", exc)
        raise PersistenceError(str(exc)) from exc

    logger.info("Campaign %s submitted: %s", lead.id, lead.campaign_name)
    return {"ok": True, "id": lead.id}


@router.get("/campaigns/{campaign_id}")
def get_campaign(campaign_id: str, db: Session = Depends(get_read_db)):
    lead = db.get(Lead, campaign_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Campaign not found")

    totals = ledger.campaign_totals(db, campaign_id)
    raised = totals["amount_cents"] / 100
    goal = lead.goal_usd or 0
    prize_pct = lead.winner_share_pct or DEFAULT_WINNER_SHARE_PCT
    progress = min(100, round(raised / goal * 100)) if goal > 0 else 0

    return {
        "id": lead.id,
        "campaign_name": lead.campaign_name or "Campaign",
        "beneficiary": lead.beneficiary or "",
        "story_short": lead.story_short or "",
        "photo_url": lead.photo_url or "",
        "goal_usd": goal,
        "winner_share_pct": prize_pct,
        "price_per_entry": lead.price_per_entry or DEFAULT_PRICE_PER_ENTRY,
        "entry_cap_total": lead.entry_cap_total or DEFAULT_ENTRY_CAP,
        "packs_displayed": lead.packs_displayed or DEFAULT_PACKS,
        "start_et": lead.start_et,
        "end_et": lead.end_et,
        "amoe_address": lead.amoe_address,
        "amoe_pacing": lead.amoe_pacing,
        "entries_sold": totals["entries"],
        "raised_usd": raised,
        "estimated_prize_usd": math.floor(prize_pct / 100 * raised),
        "progress_pct": progress,
    }


@router.get("/campaigns/{campaign_id}/totals")
def get_campaign_totals(campaign_id: str, db: Session = Depends(get_read_db)):
    return ledger.campaign_totals(db, campaign_id)


@router.get("/campaigns/{campaign_id}/comments")
def list_comments(campaign_id: str, db: Session = Depends(get_read_db)):
    comments = (
        db.query(Comment)
        .filter_by(campaign_id=campaign_id)
        .order_by(Comment.created_at.desc(), Comment.id.desc())
        .all()
    )
    return [
        {
            "id": c.id,
            "campaign_id": c.campaign_id,
            "display_name": c.display_name,
            "body": c.body,
            "created_at": c.created_at.isoformat() if c.created_at else None,
        }
        for c in comments
    ]


@router.post("/campaigns/{campaign_id}/comments", status_code=201)
def add_comment(campaign_id: str, request: CommentRequest, db: Session = Depends(get_db)):
    name = request.display_name.strip()
    body = request.body.strip()
    if not name or not body:
        raise InvalidInput("Please enter your name and a comment.")

    comment = Comment(campaign_id=campaign_id, display_name=name, body=body)
    try:
        db.add(comment)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(str(exc)) from exc
    return {"ok": True, "id": comment.id}


@router.post("/admin/orders")
def create_manual_order(
    campaign: Optional[str] = None,
    entries: int = 0,
    cents: int = 0,
    auth=Depends(verify_token),
    db: Session = Depends(get_db),
):
    """Record an order that did not go through Stripe (offline sales, testing)."""
    if not campaign or entries <= 0:
        raise InvalidInput("campaign and entries required")

    fields = OrderFields(
        stripe_session_id=f"manual_{int(time.time() * 1000)}",
        campaign_id=campaign,
        entries=entries,
        amount_cents=max(0, cents),
        currency="usd",
        status="paid" if cents > 0 else "no_payment_required",
    )
    ledger.upsert_order(db, fields)
    logger.info("Manual order %s recorded for campaign %s", fields.stripe_session_id, campaign)
    return {"ok": True, "inserted": fields.as_row()}


@router.get("/health")
def health(ping: Optional[str] = None, settings: Settings = Depends(get_settings)):
    missing = settings.missing()

    if ping == "1":
        try:
            db = session_factory(settings.require_database_url())()
            try:
                db.execute(text("select 1"))
            finally:
                db.close()
        except SQLAlchemyError as exc:
            logger.error("Database ping failed: %s", exc)
            return JSONResponse({"ok": False, "stage": "ping", "error": str(exc)}, status_code=500)
        return {"ok": True, "stage": "ping"}

    db_host = make_url(settings.database_url).host if settings.database_url else None
    return {"ok": True, "env_ok": not missing, "missing": missing, "db_host": db_host}
