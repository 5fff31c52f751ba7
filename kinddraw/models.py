from sqlalchemy import Column, DateTime, Float, Integer, JSON, String, Text, func
from kinddraw.database import Base


class Lead(Base):
    """A campaign as submitted by its organizer."""

    __tablename__ = "leads"

    id = Column(String, primary_key=True)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String)
    purpose = Column(String)
    campaign_name = Column(String, nullable=False)
    beneficiary = Column(String, nullable=False)
    goal_usd = Column(Float)
    start_et = Column(String)
    end_et = Column(String)
    state_exclusions = Column(String)
    winner_share_pct = Column(Float, nullable=False)
    price_per_entry = Column(Float, nullable=False)
    packs_displayed = Column(JSON)                 # [{"price": 10, "entries": 10}, ...]
    entry_cap_total = Column(Integer, nullable=False)
    amoe_address = Column(Text, nullable=False)
    amoe_pacing = Column(String)
    story_short = Column(Text)
    photo_url = Column(String)
    source = Column(String)
    user_agent = Column(String)
    ip = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_session_id = Column(String, unique=True, index=True, nullable=False)
    campaign_id = Column(String, index=True, nullable=False)
    entries = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False)        # paid | no_payment_required | completed | refunded
    discount_cents = Column(Integer)
    promo_code_id = Column(String)
    page_id = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(String, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
