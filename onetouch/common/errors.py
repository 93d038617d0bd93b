"""OneTouch error hierarchy.

Every failure the client can surface is one of these. `retryable` tells the
caller whether a retry with backoff is acceptable for a read-only call; no
money-moving call is ever retried by this package.
"""

from typing import Any, Dict, Optional


class OneTouchError(Exception):
    """Base exception for all OneTouch client errors."""

    error_code = "onetouch:error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the structured reason handed to the host."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(OneTouchError):
    """Missing or unusable credentials/base URL. Fatal, never retried."""

    error_code = "onetouch:config"


class InvalidInputError(OneTouchError, ValueError):
    """Input rejected before anything is sent (bad param name, control chars, ...)."""

    error_code = "onetouch:invalid_input"


class TransportError(OneTouchError):
    """Network-level failure talking to the provider."""

    error_code = "onetouch:transport"
    retryable = True


class TransportTimeoutError(TransportError):
    """The provider did not answer within the configured timeout."""

    error_code = "onetouch:timeout"


class HttpStatusError(OneTouchError):
    """Provider answered with a non-2xx status."""

    error_code = "onetouch:http_status"

    def __init__(self, status_code: int, message: str, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        super().__init__(message, {"status_code": status_code, **(details or {})})


class MalformedResponseError(OneTouchError):
    """Empty, non-JSON, or discriminator-less response.

    Treated like a transport error for retry purposes: usually an intermediary
    problem rather than a provider decision.
    """

    error_code = "onetouch:malformed_response"
    retryable = True


class ProviderError(OneTouchError):
    """Well-formed provider rejection (`status=ERR`), carried verbatim."""

    error_code = "onetouch:provider"

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        super().__init__(message, {"provider_code": code, **(details or {})})


class SignatureMismatchError(OneTouchError):
    """Inbound signature missing or wrong. Fails closed."""

    error_code = "onetouch:signature_mismatch"


class NoTokenAvailableError(OneTouchError):
    """A token-bound operation was invoked without an acquired token."""

    error_code = "onetouch:no_token"


class UnknownPaymentError(OneTouchError):
    """Payment id does not resolve to a locally known payment."""

    error_code = "onetouch:unknown_payment"


class RefundError(OneTouchError):
    """Refund rejected locally or by the provider."""

    error_code = "onetouch:refund"

    def __init__(self, message: str, provider_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.provider_code = provider_code
        super().__init__(message, {"provider_code": provider_code, **(details or {})})


class InvalidTransitionError(OneTouchError, ValueError):
    """State change not allowed by the payment state machine."""

    error_code = "onetouch:invalid_transition"


class PaymentValidationError(OneTouchError):
    """Provider-computed payment details disagree with what was requested."""

    error_code = "onetouch:payment_validation"
