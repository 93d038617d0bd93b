"""Inbound provider notifications.

A callback only ever moves a known payment forward. Signed callbacks are
verified over every parameter except the signature itself; a callback that
fails verification causes no state action at all.
"""

from typing import Any, Mapping

from onetouch.common.config import CommonSettings, settings
from onetouch.common.errors import InvalidInputError, SignatureMismatchError, UnknownPaymentError
from onetouch.common.logging import logger, payment_id_ctx
from onetouch.common.metrics import callback_rejections_total
from onetouch.common.result import Err
from onetouch.common.signing import SignatureScheme, verify
from onetouch.common.state_machine import PaymentState
from onetouch.services.orchestrator.service import PaymentOrchestrator
from onetouch.services.provider_adapter.schemas import Credentials


class CallbackVerifier:
    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        credentials: Credentials,
        config: CommonSettings = settings,
    ) -> None:
        self.orchestrator = orchestrator
        self.credentials = credentials
        self.config = config

    def _reject(self, reason: str, message: str, details: dict[str, Any] | None = None) -> SignatureMismatchError:
        callback_rejections_total.labels(reason=reason).inc()
        logger.error("callback rejected reason=%s %s", reason, message)
        return SignatureMismatchError(message, details)

    def _verify(self, params: dict[str, str]) -> SignatureScheme | None:
        """Return the scheme the callback was signed with, or None if unsigned."""

        schemes = [scheme for scheme in SignatureScheme if params.get(scheme.param)]
        if not schemes:
            return None
        if len(schemes) > 1:
            raise self._reject("ambiguous_signature", "callback carries both CHECKSUM and APPCHECK")

        scheme = schemes[0]
        signature = params[scheme.param]
        signed = {name: value for name, value in params.items() if name != scheme.param}
        if "STATE" not in signed:
            raise self._reject("missing_state", "signed callback has no STATE")
        try:
            valid = verify(signed, signature, self.credentials.secret_key, scheme)
        except InvalidInputError as exc:
            raise self._reject("unsignable", f"callback parameters cannot be verified: {exc.message}") from exc
        if not valid:
            raise self._reject("mismatch", "callback signature mismatch", {"ID": params.get("ID")})
        return scheme

    def handle(self, raw_params: Mapping[str, Any]) -> tuple[str, PaymentState]:
        """Verify one notification and apply it. Returns `(payment_id, state)`.

        Raises SignatureMismatchError, UnknownPaymentError or InvalidInputError;
        none of them changes any payment.
        """

        params = {str(name): str(value) for name, value in raw_params.items()}
        provider_payment_id = params.get("ID", "").strip()
        if not provider_payment_id:
            callback_rejections_total.labels(reason="missing_id").inc()
            raise InvalidInputError("callback without ID")

        scheme = self._verify(params)
        if scheme is None and self.config.require_callback_signature:
            raise self._reject("unsigned", "unsigned callback", {"ID": provider_payment_id})

        payment = self.orchestrator.find_by_provider_id(provider_payment_id)
        if payment is None:
            callback_rejections_total.labels(reason="unknown_payment").inc()
            logger.warning("callback for unknown payment provider_payment_id=%s", provider_payment_id)
            raise UnknownPaymentError(
                f"unknown payment {provider_payment_id}", {"provider_payment_id": provider_payment_id}
            )
        payment_id_ctx.set(payment.payment_id)

        if scheme is None:
            # Unsigned and allowed by policy: ask the provider instead of trusting the callback.
            result = self.orchestrator.check_status(payment.payment_id)
            if isinstance(result, Err):
                logger.warning(
                    "callback status poll failed payment_id=%s code=%s", payment.payment_id, result.error.code
                )
                return payment.payment_id, PaymentState(payment.status)
            return payment.payment_id, PaymentState(result.value.status)

        state, changed = self.orchestrator.apply_provider_state(
            payment.payment_id, params["STATE"], f"callback_{scheme.param.lower()}", params
        )
        if not changed:
            logger.info("duplicate or stale callback payment_id=%s state=%s", payment.payment_id, state.value)
        return payment.payment_id, state
