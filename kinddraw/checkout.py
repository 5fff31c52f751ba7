import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Tuple
from urllib.parse import quote

from kinddraw.errors import InvalidInput
from kinddraw.stripe_service import StripeGateway

logger = logging.getLogger(__name__)

CURRENCY = "usd"


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_pack(campaign_id: Any, pack_price: Any, pack_entries: Any) -> Tuple[str, float, int]:
    """Return (campaign_id, price, entries) or raise InvalidInput.

    Entries are floor-truncated before the positivity check.
    """
    price = _to_number(pack_price)
    entries = _to_number(pack_entries)
    entries = math.floor(entries) if entries is not None else None
    if not campaign_id or price is None or price <= 0 or entries is None or entries <= 0:
        raise InvalidInput("Invalid input")
    return str(campaign_id), price, entries


def price_to_cents(price: float) -> int:
    cents = (Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def return_urls(origin: str, campaign_id: str) -> Tuple[str, str]:
    page = f"{origin.rstrip('/')}/c/{quote(campaign_id, safe='')}"
    return f"{page}?checkout=success", f"{page}?canceled=1"


def create_checkout_session(
    gateway: StripeGateway,
    origin: str,
    campaign_id: Any,
    pack_price: Any,
    pack_entries: Any,
    promo: Any = None,
) -> str:
    """Create a hosted Checkout session for one entry pack and return its URL."""
    campaign_id, price, entries = normalize_pack(campaign_id, pack_price, pack_entries)
    success_url, cancel_url = return_urls(origin, campaign_id)
    promo = str(promo) if promo else None

    discounts = None
    if promo:
        lookup = gateway.find_promotion_code(promo)
        if lookup.error:
            logger.warning("Promotion code lookup failed, continuing without discount: %s", lookup.error)
        elif lookup.promotion_code_id:
            discounts = [{"promotion_code": lookup.promotion_code_id}]
        else:
            logger.info("No active promotion code matches %r", promo)

    metadata = {
        "campaign": campaign_id,
        "page_id": campaign_id,
        "campaignId": campaign_id,
        "packEntries": entries,
        "packPrice": price,
    }
    if promo:
        metadata["promo"] = promo

    params = {
        "mode": "payment",
        "success_url": success_url,
        "cancel_url": cancel_url,
        "line_items": [
            {
                "quantity": 1,
                "price_data": {
                    "currency": CURRENCY,
                    "unit_amount": price_to_cents(price),
                    "product_data": {
                        "name": f"KindDraw: {entries} entries",
                        "metadata": {
                            "campaignId": campaign_id,
                            "packEntries": entries,
                            "packPrice": price,
                        },
                    },
                },
            }
        ],
        "metadata": metadata,
    }
    # Stripe refuses allow_promotion_codes together with discounts
    if discounts:
        params["discounts"] = discounts
    else:
        params["allow_promotion_codes"] = True

    session = gateway.create_checkout_session(**params)
    logger.info("Checkout session %s created for campaign %s (%s entries)", session.id, campaign_id, entries)
    return session.url
