"""OneTouch payment orchestration.

Drives both payment flows through their state machines, persists every step
before the next network call, and records a timeline row plus a state-change
outbox event for each transition.

Token flow:     CREATED -> INITIALIZED -> DETAILS_CHECKED -> SENT -> provider states
No-reg flow:    CREATED -> REDIRECT_ISSUED -> provider states

The money-moving call (payment/send/user) is made at most once per payment.
If its outcome is unknown the payment stays in SENT and only a status poll can
move it forward.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from onetouch.common.config import CommonSettings, settings
from onetouch.common.errors import (
    HttpStatusError,
    InvalidInputError,
    MalformedResponseError,
    NoTokenAvailableError,
    OneTouchError,
    PaymentValidationError,
    ProviderError,
    RefundError,
    TransportError,
    UnknownPaymentError,
)
from onetouch.common.events import KafkaBus
from onetouch.common.logging import logger, payment_id_ctx
from onetouch.common.metrics import duplicate_callbacks_total, payment_transitions_total, refunds_total
from onetouch.common.money import to_minor_units
from onetouch.common.outbox import enqueue_state_change, publish_pending
from onetouch.common.result import Err, Ok, Result
from onetouch.common.state_machine import (
    TERMINAL_STATES,
    Flow,
    PaymentState,
    is_forward,
    map_provider_state,
    validate_transition,
)
from onetouch.services.orchestrator.models import OutboxEvent, Payment, PaymentRefund, PaymentTimeline
from onetouch.services.orchestrator.schemas import OrderContext, PaymentError, PaymentView, RefundResult
from onetouch.services.provider_adapter.client import ProtocolClient
from onetouch.services.provider_adapter.endpoints import (
    NOREG_SEND,
    NOREG_STATUS,
    PAYMENT_CHECK,
    PAYMENT_INIT,
    PAYMENT_SEND,
    PAYMENT_STATUS,
    REFUND,
)
from onetouch.services.provider_adapter.schemas import DeviceIdentity, Token, parse_instruments
from onetouch.services.provider_adapter.tokens import TokenManager


# Failures that are a runtime condition of the provider exchange. Anything
# else (configuration, usage, signing input) propagates to the caller.
PROVIDER_FAILURES = (TransportError, HttpStatusError, MalformedResponseError, ProviderError)


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value)))
    except ArithmeticError:
        return None


class PaymentOrchestrator:
    """Owns payment state progression for both OneTouch flows."""

    def __init__(
        self,
        session_factory,
        client: ProtocolClient,
        config: CommonSettings = settings,
        service_name: str = "orchestrator",
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.config = config
        self.kafka = KafkaBus()
        self.service_name = service_name

    # ------------------------------------------------------------------
    # persistence helpers

    def _load(self, db, payment_id: str) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise UnknownPaymentError(f"unknown payment {payment_id}", {"payment_id": payment_id})
        return payment

    def find_by_provider_id(self, provider_payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.provider_payment_id == provider_payment_id)
            ).scalar_one_or_none()

    def get_view(self, payment_id: str) -> PaymentView:
        with self.session_factory() as db:
            return PaymentView.from_model(self._load(db, payment_id))

    def _transition(self, db, payment: Payment, new_state: PaymentState, reason: str, source: str) -> None:
        """Apply one validated transition with optimistic concurrency.

        Writes are guarded by `(payment_id, status, state_version)` so a stale
        concurrent update (e.g. a callback racing a poll) cannot win.
        """

        validate_transition(payment.flow, payment.status, new_state)
        from_state = payment.status
        current_version = payment.state_version
        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == from_state,
                Payment.state_version == current_version,
            )
            .values(
                status=new_state.value,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RuntimeError(
                f"optimistic concurrency conflict for payment {payment.payment_id} "
                f"(expected version {current_version})"
            )

        payment.status = new_state.value
        payment.state_version = current_version + 1
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=from_state,
                to_state=new_state.value,
                reason=reason,
                source=source,
            )
        )
        enqueue_state_change(db, OutboxEvent, payment, from_state, new_state.value, reason)
        payment_transitions_total.labels(flow=payment.flow, to_state=new_state.value).inc()
        logger.info(
            "payment transition payment_id=%s flow=%s %s->%s reason=%s source=%s",
            payment.payment_id,
            payment.flow,
            from_state,
            new_state.value,
            reason,
            source,
        )

    def _advance(self, payment_id: str, new_state: PaymentState, reason: str, source: str, **fields) -> Payment:
        """Load, update fields, transition and commit in one short transaction."""

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            for name, value in fields.items():
                setattr(payment, name, value)
            self._transition(db, payment, new_state, reason, source)
            db.commit()
            return payment

    def _create(self, order: OrderContext, flow: Flow, amount_minor: int, device_id: str, **fields) -> tuple[Payment, bool]:
        """Insert a CREATED payment, or return the one already created for this attempt."""

        with self.session_factory() as db:
            existing = db.execute(
                select(Payment).where(Payment.idempotency_key == order.idempotency_key)
            ).scalar_one_or_none()
            if existing is not None:
                return existing, False

            payment = Payment(
                payment_id=str(uuid4()),
                order_ref=order.order_ref,
                idempotency_key=order.idempotency_key,
                flow=flow.value,
                amount_minor=amount_minor,
                currency=order.currency,
                recipient=self.config.merchant_recipient,
                recipient_type=self.config.merchant_recipient_type,
                description=order.description,
                reason=order.reason,
                show=self._visibility(),
                status=PaymentState.CREATED.value,
                device_id=device_id,
                **fields,
            )
            db.add(payment)
            db.add(
                PaymentTimeline(
                    payment_id=payment.payment_id,
                    from_state=None,
                    to_state=PaymentState.CREATED.value,
                    reason="payment_created",
                    source="orchestrator",
                )
            )
            enqueue_state_change(db, OutboxEvent, payment, None, PaymentState.CREATED.value, "payment_created")
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise InvalidInputError(
                    "duplicate payment identifier",
                    {"order_ref": order.order_ref, "provider_payment_id": fields.get("provider_payment_id")},
                ) from exc
            payment_transitions_total.labels(flow=flow.value, to_state=PaymentState.CREATED.value).inc()
            return payment, True

    def _visibility(self) -> str:
        flags = [
            ("KIN", self.config.show_kin),
            ("NAME", self.config.show_name),
            ("GSM", self.config.show_gsm),
            ("EMAIL", self.config.show_email),
        ]
        return ",".join(flag for flag, enabled in flags if enabled)

    def _payment_params(self, payment: Payment) -> dict[str, Any]:
        return {
            "TYPE": "send",
            "ID": payment.provider_payment_id,
            "AMOUNT": payment.amount_minor,
            "RCPT": payment.recipient,
            "RCPT_TYPE": payment.recipient_type,
            "DESCRIPTION": payment.description,
            "REASON": payment.reason,
            "SHOW": payment.show,
        }

    # ------------------------------------------------------------------
    # token handling

    def _restore_tokens(self, payment: Payment) -> TokenManager:
        if not payment.token_value or not payment.token_kin or payment.token_expires_at is None:
            raise NoTokenAvailableError(f"no stored token for payment {payment.payment_id}")
        token = Token(value=payment.token_value, kin=payment.token_kin, expires_at=payment.token_expires_at)
        return TokenManager.restore(self.client, DeviceIdentity(device_id=payment.device_id), token)

    def _release_token(self, payment_id: str, tokens: TokenManager | None = None) -> None:
        """Invalidate the token used by a failed attempt, then forget it.

        The stored token is only cleared once the provider call went through,
        so a later status check can retry the invalidation.
        """

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            if payment.token_value is None:
                return
            manager = tokens if tokens is not None else self._restore_tokens(payment)

        try:
            manager.invalidate()
        except OneTouchError as exc:
            logger.error("token invalidation failed payment_id=%s error=%s", payment_id, exc.message)
            return

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            payment.token_value = None
            payment.token_kin = None
            payment.token_expires_at = None
            db.commit()

    def _discard_token(self, tokens: TokenManager) -> None:
        try:
            tokens.invalidate()
        except OneTouchError as exc:
            logger.error("unused token invalidation failed device_id=%s error=%s", tokens.device.device_id, exc.message)

    def _mark_failed(self, payment_id: str, reason: str, source: str, tokens: TokenManager | None = None) -> Payment:
        payment = self._advance(payment_id, PaymentState.FAILED, reason, source, failure_reason=reason)
        if payment.flow == Flow.TOKEN.value:
            self._release_token(payment_id, tokens)
        return payment

    def _fail_step(self, payment_id: str, step: str, exc: OneTouchError, tokens: TokenManager) -> Err:
        reason = f"{step}_failed:{exc.error_code}"
        if isinstance(exc, ProviderError):
            reason = f"{reason}:{exc.code}"
        logger.warning("payment step failed payment_id=%s step=%s error=%s", payment_id, step, exc.message)
        self._mark_failed(payment_id, reason, f"payment_{step}", tokens)
        return Err(PaymentError.from_exception(exc, payment_id))

    # ------------------------------------------------------------------
    # token-authenticated flow

    def _validate_check(self, payment: Payment, payload: dict[str, Any], order: OrderContext, tokens: TokenManager):
        """Compare provider-computed amount/fee/total with what was asked for."""

        details = payload.get("payment") or {}
        amount = _as_int(details.get("AMOUNT"))
        if amount != payment.amount_minor:
            raise PaymentValidationError(
                "provider amount does not match requested amount",
                {"requested": payment.amount_minor, "provider": amount},
            )
        fee = _as_int(details.get("TAX")) or 0
        total = _as_int(details.get("TOTAL"))
        if total is None:
            total = amount + fee
        elif total != amount + fee:
            raise PaymentValidationError(
                "provider total does not equal amount plus fee",
                {"amount": amount, "fee": fee, "total": total},
            )
        if order.expected_total is not None:
            expected = to_minor_units(order.expected_total, payment.currency)
            if total != expected:
                raise PaymentValidationError(
                    "provider total does not match expected total",
                    {"expected": expected, "total": total},
                )

        raw_pins = details.get("PINS")
        if raw_pins:
            instruments = parse_instruments(raw_pins)
        else:
            instruments = tokens.payment_instruments()
        if not instruments:
            raise PaymentValidationError("no eligible payment instrument")
        if order.pin_id is not None:
            if order.pin_id not in {instrument.id for instrument in instruments}:
                raise PaymentValidationError("selected payment instrument is not eligible", {"pin_id": order.pin_id})
            pin_id = order.pin_id
        else:
            pin_id = instruments[0].id
        return fee, total, pin_id

    def start_token_payment(self, order: OrderContext, tokens: TokenManager) -> Result[PaymentView, PaymentError]:
        """Run init -> check -> send for an order whose user already authorized us."""

        self.client.ensure_configured()
        token = tokens.require_token()
        try:
            amount_minor = to_minor_units(order.amount, order.currency)
            payment, created = self._create(
                order,
                Flow.TOKEN,
                amount_minor,
                tokens.device.device_id,
                token_value=token.value,
                token_kin=token.kin,
                token_expires_at=token.expires_at,
            )
        except OneTouchError:
            self._discard_token(tokens)
            raise
        if not created:
            logger.info("payment attempt already exists payment_id=%s; not re-driving", payment.payment_id)
            if payment.token_value != token.value:
                # A fresh authorization for an attempt that already has one is never used.
                self._discard_token(tokens)
            return Ok(PaymentView.from_model(payment))

        payment_id = payment.payment_id
        payment_id_ctx.set(payment_id)

        try:
            payload = tokens.call(PAYMENT_INIT, {"TYPE": "send"})
            provider_payment_id = (payload.get("payment") or {}).get("ID")
            if not provider_payment_id:
                raise MalformedResponseError("payment/init response missing payment ID")
        except PROVIDER_FAILURES as exc:
            return self._fail_step(payment_id, "init", exc, tokens)
        # Persist the provider id before anything else so status polls can recover.
        payment = self._advance(
            payment_id,
            PaymentState.INITIALIZED,
            "payment_initialized",
            "payment_init",
            provider_payment_id=str(provider_payment_id),
        )

        params = self._payment_params(payment)
        try:
            payload = tokens.call(PAYMENT_CHECK, params)
            fee, total, pin_id = self._validate_check(payment, payload, order, tokens)
        except PROVIDER_FAILURES + (PaymentValidationError,) as exc:
            return self._fail_step(payment_id, "check", exc, tokens)
        payment = self._advance(
            payment_id,
            PaymentState.DETAILS_CHECKED,
            "payment_details_checked",
            "payment_check",
            fee_minor=fee,
            total_minor=total,
            pin_id=pin_id,
        )

        try:
            payload = tokens.call(PAYMENT_SEND, {**params, "PINS": pin_id})
        except ProviderError as exc:
            return self._fail_step(payment_id, "send", exc, tokens)
        except (TransportError, HttpStatusError, MalformedResponseError) as exc:
            # The provider may or may not have moved the money.
            self._advance(payment_id, PaymentState.SENT, "send_outcome_unknown", "payment_send")
            logger.error(
                "payment send outcome unknown payment_id=%s error=%s; reconcile with a status poll",
                payment_id,
                exc.message,
            )
            return Err(PaymentError.from_exception(exc, payment_id, outcome_unknown=True))

        self._advance(payment_id, PaymentState.SENT, "payment_sent", "payment_send")
        details = payload.get("payment") or {}
        if details.get("STATE") is not None:
            self.apply_provider_state(payment_id, details["STATE"], "payment_send", details)
        return Ok(self.get_view(payment_id))

    # ------------------------------------------------------------------
    # no-registration flow

    def start_anonymous_payment(self, order: OrderContext) -> Result[PaymentView, PaymentError]:
        """Create the payment and return the provider card-entry page URL."""

        self.client.ensure_configured()
        amount_minor = to_minor_units(order.amount, order.currency)
        with self.session_factory() as db:
            existing = db.execute(
                select(Payment).where(Payment.idempotency_key == order.idempotency_key)
            ).scalar_one_or_none()
        if existing is not None:
            return Ok(PaymentView.from_model(existing))

        provider_payment_id = order.payment_id or self.client.new_id().replace("-", "")
        device = DeviceIdentity.for_installation(self.client.credentials.app_id, self.config.onetouch_site_name)
        expires_at = int(self.client.now()) + self.config.payment_expiry_seconds
        params = {
            "DEVICEID": device.device_id,
            "ID": provider_payment_id,
            "AMOUNT": amount_minor,
            "CURRENCY": order.currency,
            "RCPT": self.config.merchant_recipient,
            "RCPT_TYPE": self.config.merchant_recipient_type,
            "DESCRIPTION": order.description,
            "REASON": order.reason,
            "SAVECARD": "1" if self.config.save_card else "0",
            "SHOW": self._visibility(),
            "EXP": expires_at,
            "UTYPE": "2" if self.config.allow_unregistered else "1",
            "REPLY_ADDRESS": f"{self.config.public_base_url.rstrip('/')}/callbacks/onetouch",
        }
        redirect_url = self.client.signed_url(NOREG_SEND, params)

        payment, _ = self._create(
            order,
            Flow.NOREG,
            amount_minor,
            device.device_id,
            provider_payment_id=provider_payment_id,
        )
        payment_id_ctx.set(payment.payment_id)
        payment = self._advance(
            payment.payment_id,
            PaymentState.REDIRECT_ISSUED,
            "redirect_issued",
            "noreg_send",
            redirect_url=redirect_url,
        )
        return Ok(PaymentView.from_model(payment))

    # ------------------------------------------------------------------
    # status

    def apply_provider_state(
        self, payment_id: str, code: Any, source: str, details: dict[str, Any] | None = None
    ) -> tuple[PaymentState, bool]:
        """Map a provider state code with the payment's own flow table and move forward.

        Backward or repeated states are a no-op. Returns the resulting state and
        whether anything changed.
        """

        details = details or {}
        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            flow = Flow(payment.flow)
            current = PaymentState(payment.status)
            new_state = map_provider_state(flow, code)
            if not is_forward(flow, current, new_state):
                duplicate_callbacks_total.labels(flow=flow.value).inc()
                logger.info(
                    "provider state ignored payment_id=%s current=%s reported=%s source=%s",
                    payment_id,
                    current.value,
                    new_state.value,
                    source,
                )
                return current, False

            reason = f"provider_state:{code}"
            if new_state is PaymentState.COMPLETE:
                if details.get("NO"):
                    payment.transaction_no = str(details["NO"])
                else:
                    logger.warning("payment complete without transaction number payment_id=%s", payment_id)
                if flow is Flow.NOREG and str(details.get("SAVECARD", "")) == "1" and details.get("TOKEN"):
                    payment.saved_token = str(details["TOKEN"])
                    payment.saved_pin_id = str(details.get("PIN") or details.get("PINS") or "") or None
            elif new_state is PaymentState.FAILED:
                text = details.get("STATE.TEXT")
                payment.failure_reason = f"{reason}:{text}" if text else reason
            self._transition(db, payment, new_state, reason, source)
            db.commit()

        if new_state is PaymentState.FAILED and flow is Flow.TOKEN:
            self._release_token(payment_id)
        return new_state, True

    def check_status(self, payment_id: str) -> Result[PaymentView, PaymentError]:
        """Poll the provider for a non-terminal payment and apply what it reports."""

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
        payment_id_ctx.set(payment_id)

        if PaymentState(payment.status) in TERMINAL_STATES:
            if payment.status == PaymentState.FAILED.value and payment.token_value:
                self._release_token(payment_id)
            return Ok(PaymentView.from_model(payment))
        if payment.provider_payment_id is None:
            # Token flow stopped before init answered: nothing exists provider-side to poll.
            return Ok(PaymentView.from_model(payment))

        try:
            if payment.flow == Flow.TOKEN.value:
                tokens = self._restore_tokens(payment)
                payload = tokens.call(PAYMENT_STATUS, {"ID": payment.provider_payment_id})
            else:
                payload = self.client.call(
                    NOREG_STATUS,
                    {
                        "DEVICEID": payment.device_id,
                        "ID": payment.provider_payment_id,
                        "RCPT": payment.recipient,
                    },
                )
            details = payload.get("payment") or {}
            if details.get("STATE") is None:
                raise MalformedResponseError("status response missing payment STATE")
        except PROVIDER_FAILURES as exc:
            logger.warning("status poll failed payment_id=%s error=%s", payment_id, exc.message)
            return Err(PaymentError.from_exception(exc, payment_id))

        self.apply_provider_state(payment_id, details["STATE"], "status_poll", details)
        return Ok(self.get_view(payment_id))

    # ------------------------------------------------------------------
    # refunds

    def refund(self, payment_id: str, amount: Decimal | None = None, reason: str = "") -> RefundResult:
        """Refund part or all of a COMPLETE payment. Never retried automatically.

        The amount is reserved on the payment row before the provider call, so
        concurrent refunds cannot together exceed the refundable remainder. A
        rejected refund gives its reservation back; an unknown one keeps it.
        """

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            unknown = db.execute(
                select(PaymentRefund).where(
                    PaymentRefund.payment_id == payment_id,
                    PaymentRefund.status == "UNKNOWN",
                )
            ).first()
            if payment.status != PaymentState.COMPLETE.value:
                raise RefundError(f"payment {payment_id} is {payment.status}, not COMPLETE")
            if unknown is not None:
                raise RefundError("a previous refund has an unknown outcome; reconcile it before refunding again")

            remaining = payment.amount_minor - payment.refunded_minor
            amount_minor = to_minor_units(amount, payment.currency) if amount is not None else remaining
            if amount_minor <= 0 or amount_minor > remaining:
                raise RefundError(
                    "refund amount exceeds refundable remainder",
                    details={"requested": amount_minor, "remaining": remaining},
                )
            reserved = db.execute(
                update(Payment)
                .where(
                    Payment.payment_id == payment_id,
                    Payment.status == PaymentState.COMPLETE.value,
                    Payment.refunded_minor + amount_minor <= Payment.amount_minor,
                )
                .values(refunded_minor=Payment.refunded_minor + amount_minor)
                .execution_options(synchronize_session=False)
            )
            if reserved.rowcount != 1:
                db.rollback()
                raise RefundError(
                    "refund amount exceeds refundable remainder",
                    details={"requested": amount_minor},
                )
            refund = PaymentRefund(
                refund_id=str(uuid4()),
                payment_id=payment_id,
                amount_minor=amount_minor,
                reason=reason,
                status="PENDING",
            )
            db.add(refund)
            db.commit()
            refund_id = refund.refund_id
            provider_payment_id = payment.provider_payment_id
            currency = payment.currency

        params = {"PAYMENTID": provider_payment_id, "AMOUNT": amount_minor, "DESCR": reason}
        try:
            payload = self.client.call(REFUND, params)
        except PROVIDER_FAILURES as exc:
            status = "REJECTED" if isinstance(exc, ProviderError) else "UNKNOWN"
            with self.session_factory() as db:
                refund = db.get(PaymentRefund, refund_id)
                refund.status = status
                refund.error_message = exc.message
                if status == "REJECTED":
                    db.execute(
                        update(Payment)
                        .where(Payment.payment_id == payment_id)
                        .values(refunded_minor=Payment.refunded_minor - amount_minor)
                        .execution_options(synchronize_session=False)
                    )
                db.commit()
            refunds_total.labels(outcome=status.lower()).inc()
            logger.error("refund failed payment_id=%s status=%s error=%s", payment_id, status, exc.message)
            raise RefundError(exc.message, provider_code=getattr(exc, "code", None)) from exc

        provider_refund_id = payload.get("REFUND_ID") or (payload.get("refund") or {}).get("ID")
        with self.session_factory() as db:
            refund = db.get(PaymentRefund, refund_id)
            refund.status = "COMPLETED"
            refund.provider_refund_id = str(provider_refund_id) if provider_refund_id else None
            db.commit()
        refunds_total.labels(outcome="completed").inc()
        logger.info("refund completed payment_id=%s amount_minor=%s", payment_id, amount_minor)
        return RefundResult(
            refund_id=refund_id,
            payment_id=payment_id,
            amount_minor=amount_minor,
            currency=currency,
            status=refund.status,
            provider_refund_id=refund.provider_refund_id,
        )

    # ------------------------------------------------------------------
    # events

    async def outbox_publisher(self) -> None:
        """Continuously publish pending state-change events."""

        while True:
            await publish_pending(self.session_factory, OutboxEvent, self.kafka, self.service_name)
            await asyncio.sleep(0.5)
