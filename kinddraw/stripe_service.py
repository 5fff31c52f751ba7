from dataclasses import dataclass
from typing import Optional

import stripe
from fastapi import Depends

from kinddraw.config import Settings, get_settings


@dataclass
class PromotionLookup:
    promotion_code_id: Optional[str] = None
    error: Optional[str] = None


class StripeGateway:
    """Stripe calls made by this service, bound to one secret key.

    The key is passed per request instead of being assigned to the global
    ``stripe.api_key``.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key

    def find_promotion_code(self, code: str) -> PromotionLookup:
        try:
            found = stripe.PromotionCode.list(
                code=str(code),
                active=True,
                limit=1,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            return PromotionLookup(error=str(exc))
        if found.data:
            return PromotionLookup(promotion_code_id=found.data[0].id)
        return PromotionLookup()

    def create_checkout_session(self, **params):
        return stripe.checkout.Session.create(api_key=self.api_key, **params)

    def session_id_for_payment_intent(self, payment_intent: str) -> Optional[str]:
        """Most recent checkout session created for a payment intent."""
        sessions = stripe.checkout.Session.list(
            payment_intent=payment_intent,
            limit=1,
            api_key=self.api_key,
        )
        if sessions.data:
            return sessions.data[0].id
        return None


def get_stripe_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway(settings.require_stripe_key())
