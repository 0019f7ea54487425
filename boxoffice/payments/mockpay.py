from typing import Optional, Sequence, Tuple
import base64
import hashlib
import hmac
import json
import time
import uuid

from ..errors import SignatureVerificationFailure
from . import CreateSessionResult, PaymentAdapter, SessionLine

SIGNATURE_HEADER = "x-mockpay-signature"
COMPLETED = "payment.succeeded"


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for a hosted checkout. The "provider" is the
    /mockpay/{psid} endpoint of this service, which signs events with the
    shared secret and posts them to the webhook.
    """
    name = "mock"

    def __init__(self, secret: str) -> None:
        self.secret = secret

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
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, *, kind: str, psid: str, order_id: str,
                    amount: int, currency: str,
                    idempotency_key: Optional[str] = None) -> bytes:
        event = {
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "metadata": {"order_id": order_id},
            "amount": amount,
            "currency": currency,
            "created_at": int(time.time()),
            "idempotency_key": idempotency_key or f"evt_{uuid.uuid4().hex}",
        }
        return json.dumps(event).encode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise SignatureVerificationFailure("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise SignatureVerificationFailure("Invalid JSON")
        if not isinstance(event, dict):
            raise SignatureVerificationFailure("Invalid JSON")
        return event

    def is_payment_completed(self, event: dict) -> bool:
        return event.get("type") == COMPLETED

    def event_ids(self, event: dict) -> Tuple[Optional[str], Optional[str]]:
        meta = event.get("metadata") or {}
        return meta.get("order_id"), event.get("idempotency_key")
