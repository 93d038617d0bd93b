"""Token lifecycle for one payment context.

A `TokenManager` belongs to exactly one order/session. It walks
NO_TOKEN -> CODE_REQUESTED -> TOKEN_ACQUIRED -> INVALIDATED and is the only
place a token value and its KIN are held. Callers must not share one
manager between two in-flight payment attempts.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from onetouch.common.config import settings
from onetouch.common.errors import (
    InvalidInputError,
    MalformedResponseError,
    NoTokenAvailableError,
    OneTouchError,
    ProviderError,
)
from onetouch.common.logging import logger
from onetouch.common.metrics import token_invalidations_total
from onetouch.services.provider_adapter.client import ProtocolClient
from onetouch.services.provider_adapter.endpoints import (
    AUTH_START,
    CODE_GET,
    TOKEN_GET,
    TOKEN_INVALIDATE,
    USER_PINS,
    USER_PINS_BALANCE,
    Endpoint,
)
from onetouch.services.provider_adapter.schemas import DeviceIdentity, PaymentInstrument, Token, parse_instruments


class TokenState(str, Enum):
    NO_TOKEN = "NO_TOKEN"
    CODE_REQUESTED = "CODE_REQUESTED"
    TOKEN_ACQUIRED = "TOKEN_ACQUIRED"
    INVALIDATED = "INVALIDATED"


def _parse_expiry(raw: Any) -> datetime:
    if isinstance(raw, (int, float)) or (isinstance(raw, str) and raw.isdigit()):
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    if isinstance(raw, str) and raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedResponseError(f"unparseable EXPIRES: {raw!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedResponseError("token response missing EXPIRES")


class TokenManager:
    """Authorization code exchange and token ownership for one context."""

    def __init__(self, client: ProtocolClient, device: DeviceIdentity) -> None:
        self.client = client
        self.device = device
        self.state = TokenState.NO_TOKEN
        self._token: Token | None = None
        self._used_codes: set[str] = set()

    @classmethod
    def restore(cls, client: ProtocolClient, device: DeviceIdentity, token: Token) -> "TokenManager":
        """Rebuild a manager around a persisted token (e.g. for status polls)."""

        manager = cls(client, device)
        manager._token = token
        manager.state = TokenState.TOKEN_ACQUIRED
        return manager

    @property
    def token(self) -> Token | None:
        return self._token

    def authorization_url(self, key: str, allow_unregistered: bool = True) -> str:
        """URL of the provider page where the user authorizes this application."""

        params = {
            "DEVICEID": self.device.device_id,
            "KEY": key,
            "DEVICE_NAME": settings.onetouch_site_name,
            "BRAND": "Web",
            "OS": "Web",
            "MODEL": "Server",
            "OS_VERSION": "1.0",
            "PHONE": "0",
            "UTYPE": "2" if allow_unregistered else "1",
        }
        return self.client.signed_url(AUTH_START, params)

    def request_code(self, key: str) -> str:
        """Fetch a single-use authorization code for `key`."""

        if self.state is TokenState.TOKEN_ACQUIRED:
            raise InvalidInputError("token already acquired; invalidate it before requesting a new code")
        if not key:
            raise InvalidInputError("authorization key must not be empty")
        payload = self.client.call(CODE_GET, {"DEVICEID": self.device.device_id, "KEY": key})
        code = payload.get("code") or payload.get("CODE")
        if not code:
            raise MalformedResponseError("code response missing code")
        self.state = TokenState.CODE_REQUESTED
        return str(code)

    def exchange_code(self, code: str) -> Token:
        """Trade an authorization code for a token. A code is consumed either way."""

        if self.state is not TokenState.CODE_REQUESTED:
            raise InvalidInputError(f"cannot exchange a code in state {self.state.value}")
        if code in self._used_codes:
            raise InvalidInputError("authorization code already used")
        self._used_codes.add(code)

        try:
            payload = self.client.call(TOKEN_GET, {"DEVICEID": self.device.device_id, "CODE": code})
            if not payload.get("TOKEN") or not payload.get("KIN"):
                raise MalformedResponseError("token response missing TOKEN or KIN")
            token = Token(
                value=str(payload["TOKEN"]),
                kin=str(payload["KIN"]),
                expires_at=_parse_expiry(payload.get("EXPIRES")),
                username=str(payload.get("USERNAME") or ""),
                real_name=str(payload.get("REALNAME") or ""),
            )
        except OneTouchError:
            self.state = TokenState.NO_TOKEN
            raise

        self._token = token
        self.state = TokenState.TOKEN_ACQUIRED
        logger.info("token acquired device_id=%s username=%s", self.device.device_id, token.username)
        return token

    def require_token(self) -> Token:
        if self.state is not TokenState.TOKEN_ACQUIRED or self._token is None:
            raise NoTokenAvailableError(f"no token available (state={self.state.value})")
        if self._token.is_expired():
            raise NoTokenAvailableError("token expired", {"expires_at": self._token.expires_at.isoformat()})
        return self._token

    def call(self, endpoint: Endpoint, params: Mapping[str, Any]) -> dict[str, Any]:
        """Call a token-bound endpoint; DEVICEID, TOKEN and the KIN are added here."""

        token = self.require_token()
        signed = {**params, "DEVICEID": self.device.device_id, "TOKEN": token.value}
        return self.client.call(endpoint, signed, kin=token.kin)

    def invalidate(self) -> bool:
        """Revoke the token. Idempotent: without a token this is a no-op success."""

        token = self._token
        if self.state is not TokenState.TOKEN_ACQUIRED or token is None:
            return True

        # Drop it locally first so it is never reused, whatever the provider says.
        self._token = None
        self.state = TokenState.INVALIDATED
        try:
            self.client.call(
                TOKEN_INVALIDATE,
                {"DEVICEID": self.device.device_id, "TOKEN": token.value},
                kin=token.kin,
            )
        except ProviderError as exc:
            logger.warning("token invalidate rejected, treating as already invalid code=%s", exc.code)
            token_invalidations_total.labels(result="already_invalid").inc()
            return True
        except OneTouchError:
            token_invalidations_total.labels(result="error").inc()
            raise
        token_invalidations_total.labels(result="ok").inc()
        logger.info("token invalidated device_id=%s", self.device.device_id)
        return True

    def payment_instruments(self) -> list[PaymentInstrument]:
        payload = self.call(USER_PINS, {})
        return parse_instruments(payload.get("payment_instruments") or [])

    def instrument_balance(self, pin_id: str) -> PaymentInstrument:
        payload = self.call(USER_PINS_BALANCE, {"PINS": pin_id})
        instruments = payload.get("payment_instruments") or []
        if not instruments:
            raise MalformedResponseError("balance response missing payment_instruments")
        return parse_instruments(instruments)[0]
