import logging
from typing import Optional, Sequence, Tuple

import stripe
from fastapi.concurrency import run_in_threadpool

from ..errors import PaymentProviderError, SignatureVerificationFailure
from . import CreateSessionResult, PaymentAdapter, SessionLine

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
COMPLETED_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


def _get(obj, *path):
    # stripe objects and plain dicts both support item access
    for key in path:
        try:
            obj = obj[key]
        except (KeyError, TypeError):
            return None
        if obj is None:
            return None
    return obj


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret

    async def create_session(
        self,
        *,
        lines: Sequence[SessionLine],
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        customer_email: Optional[str] = None,
    ) -> CreateSessionResult:
        params = dict(
            mode="payment",
            line_items=[
                {
                    "quantity": line.qty,
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": line.description},
                        "unit_amount": line.unit_amount,
                    },
                }
                for line in lines
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            # one session per order, even if the create call is retried
            idempotency_key=f"checkout-{metadata['order_id']}",
        )
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create, **params
            )
        except stripe.StripeError as e:
            log.error("stripe session create failed for order %s: %s",
                      metadata.get("order_id"), e)
            raise PaymentProviderError("payment provider unavailable")
        return {"payment_session_id": session.id, "redirect_url": session.url}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig:
            raise SignatureVerificationFailure("Missing signature")
        try:
            return stripe.Webhook.construct_event(
                payload, sig, self.webhook_secret
            )
        except ValueError:
            raise SignatureVerificationFailure("Invalid payload")
        except stripe.SignatureVerificationError:
            raise SignatureVerificationFailure("Invalid signature")

    def is_payment_completed(self, event: dict) -> bool:
        kind = _get(event, "type")
        if kind not in COMPLETED_TYPES:
            return False
        # delayed methods complete the session before the money arrives;
        # async_payment_succeeded follows for those
        status = _get(event, "data", "object", "payment_status")
        return status in (None, "paid", "no_payment_required")

    def event_ids(self, event: dict) -> Tuple[Optional[str], Optional[str]]:
        return (
            _get(event, "data", "object", "metadata", "order_id"),
            _get(event, "id"),
        )
