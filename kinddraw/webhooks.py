import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from kinddraw.errors import SignatureInvalid

logger = logging.getLogger(__name__)


@dataclass
class WebhookEvent:
    id: Optional[str]
    type: str
    data_object: Dict[str, Any] = field(default_factory=dict)


def verify_event(payload: bytes, signature: Optional[str], secret: str) -> WebhookEvent:
    """Authenticate a Stripe callback and parse it.

    ``payload`` must be the request body exactly as received.
    """
    if not signature:
        logger.warning("Stripe webhook received without a signature header")
        raise SignatureInvalid("Bad signature")
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as exc:
        logger.warning("Stripe webhook payload is not valid JSON")
        raise SignatureInvalid("Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        # Never log the signature or the payload
        logger.warning("Stripe signature verification failed")
        raise SignatureInvalid("Bad signature") from exc

    # Plain dicts from here on, so the reconciler never depends on StripeObject
    body = event.to_dict()
    data = body.get("data") or {}
    return WebhookEvent(
        id=body.get("id"),
        type=body.get("type") or "",
        data_object=data.get("object") or {},
    )
