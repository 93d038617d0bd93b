"""Request/response schemas for the orchestrator and its HTTP surface."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from onetouch.common.errors import OneTouchError, ProviderError
from onetouch.common.signing import CONTROL_CHARS_RE


class OrderContext(BaseModel):
    """What the hosting order system hands over to start a payment."""

    order_ref: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    description: str = Field(min_length=1)
    reason: str = "Online purchase"
    # Bump to start a fresh attempt for the same order; same value = same attempt.
    attempt: int = Field(default=1, ge=1)
    payment_id: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_-]{1,64}$")
    pin_id: str | None = None
    expected_total: Decimal | None = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("order_ref", "description", "reason")
    @classmethod
    def _no_control_chars(cls, value: str) -> str:
        if CONTROL_CHARS_RE.search(value):
            raise ValueError("must not contain control characters")
        return value

    @property
    def idempotency_key(self) -> str:
        return f"{self.order_ref}:{self.attempt}"


class PaymentView(BaseModel):
    """Read model of a payment handed back to the host."""

    payment_id: str
    order_ref: str
    flow: str
    status: str
    provider_payment_id: str | None = None
    amount_minor: int
    currency: str
    fee_minor: int | None = None
    total_minor: int | None = None
    transaction_no: str | None = None
    failure_reason: str | None = None
    redirect_url: str | None = None
    card_saved: bool = False

    @classmethod
    def from_model(cls, payment) -> "PaymentView":
        return cls(
            payment_id=payment.payment_id,
            order_ref=payment.order_ref,
            flow=payment.flow,
            status=payment.status,
            provider_payment_id=payment.provider_payment_id,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            fee_minor=payment.fee_minor,
            total_minor=payment.total_minor,
            transaction_no=payment.transaction_no,
            failure_reason=payment.failure_reason,
            redirect_url=payment.redirect_url,
            card_saved=payment.saved_token is not None,
        )


class PaymentError(BaseModel):
    """Structured failure reason for the host; never formatted for display."""

    code: str
    message: str
    payment_id: str | None = None
    provider_code: str | None = None
    retryable: bool = False
    # True when money may have moved: reconcile with a status poll, never resend.
    outcome_unknown: bool = False

    @classmethod
    def from_exception(
        cls, exc: OneTouchError, payment_id: str | None = None, outcome_unknown: bool = False
    ) -> "PaymentError":
        return cls(
            code=exc.error_code,
            message=exc.message,
            payment_id=payment_id,
            provider_code=exc.code if isinstance(exc, ProviderError) else None,
            retryable=exc.retryable and not outcome_unknown,
            outcome_unknown=outcome_unknown,
        )


class RefundResult(BaseModel):
    refund_id: str
    payment_id: str
    amount_minor: int
    currency: str
    status: str
    provider_refund_id: str | None = None


class StartPaymentRequest(OrderContext):
    flow: Literal["token", "anonymous"] = "token"


class StartPaymentResponse(BaseModel):
    flow: str
    redirect_url: str | None = None
    payment: PaymentView | None = None


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str = Field(default="", max_length=255)


class CallbackResponse(BaseModel):
    payment_id: str
    status: str
