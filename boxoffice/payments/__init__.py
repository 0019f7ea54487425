# payments/__init__.py
from abc import ABC, abstractmethod
from typing import NamedTuple, Optional, Sequence, Tuple, TypedDict

from .. import config


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class SessionLine(NamedTuple):
    unit_amount: int
    qty: int
    description: str


class PaymentAdapter(ABC):
    name: str

    @abstractmethod
    async def create_session(
        self,
        *,
        lines: Sequence[SessionLine],
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        customer_email: Optional[str] = None,
    ) -> CreateSessionResult: ...

    # raises SignatureVerificationFailure
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    @abstractmethod
    def is_payment_completed(self, event: dict) -> bool: ...

    # (order_id, provider event id)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[Optional[str], Optional[str]]:
        ...


def new_adapter(provider: Optional[str] = None) -> PaymentAdapter:
    provider = (provider or config.PAYMENT_PROVIDER).lower()
    if provider == "stripe":
        from .stripepay import StripePay
        return StripePay(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        )
    if provider == "mock":
        from .mockpay import MockPay
        return MockPay(secret=config.MOCK_SECRET)
    raise RuntimeError(f"unknown PAYMENT_PROVIDER: {provider}")


__all__ = [
    "PaymentAdapter", "CreateSessionResult", "SessionLine", "new_adapter",
]
