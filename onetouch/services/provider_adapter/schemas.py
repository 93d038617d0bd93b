"""Value types exchanged with the provider adapter."""

import hashlib
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from onetouch.common.config import CommonSettings, settings
from onetouch.common.errors import MalformedResponseError
from onetouch.common.signing import render_value


class Credentials(BaseModel):
    """Application credentials; fixed for the lifetime of a client."""

    model_config = ConfigDict(frozen=True)

    app_id: str
    secret_key: str = Field(repr=False)
    test_mode: bool = True
    api_url_test: str = "https://demo.epay.bg/xdev/api"
    api_url_prod: str = "https://epay.bg/api"

    @property
    def base_url(self) -> str:
        return self.api_url_test if self.test_mode else self.api_url_prod

    @classmethod
    def from_settings(cls, config: CommonSettings = settings) -> "Credentials":
        return cls(
            app_id=config.onetouch_app_id,
            secret_key=config.onetouch_secret_key,
            test_mode=config.onetouch_test_mode,
            api_url_test=config.onetouch_api_url_test,
            api_url_prod=config.onetouch_api_url_prod,
        )


class DeviceIdentity(BaseModel):
    """Stable identifier for one calling context (an order or the installation)."""

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1)

    @classmethod
    def for_order(cls, order_ref: str, issued_at: float) -> "DeviceIdentity":
        return cls(device_id=f"order_{order_ref}_{int(issued_at)}")

    @classmethod
    def for_installation(cls, app_id: str, site: str) -> "DeviceIdentity":
        return cls(device_id=hashlib.md5(f"{app_id}:{site}".encode("utf-8")).hexdigest())


class Token(BaseModel):
    """Credential obtained through the code exchange."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(repr=False)
    kin: str
    expires_at: datetime
    username: str = ""
    real_name: str = ""

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at


class PaymentInstrument(BaseModel):
    """A card or account the provider user can pay with."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    id: str = Field(alias="ID")
    name: str = Field(default="", alias="NAME")
    type: str = Field(default="", alias="TYPE")
    balance: int | None = Field(default=None, alias="BALANCE")
    currency: str | None = Field(default=None, alias="CURRENCY")


def parse_instruments(items: Any) -> list[PaymentInstrument]:
    """Validate a provider instrument list; a bad shape is a malformed reply."""

    if not isinstance(items, list):
        raise MalformedResponseError("payment instruments are not a list")
    try:
        return [PaymentInstrument.model_validate(item) for item in items]
    except ValidationError as exc:
        raise MalformedResponseError("unexpected payment instrument format") from exc


class SignedRequest(BaseModel):
    """One signed call, built per request and never persisted."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    method: str
    url: str
    params: dict[str, Any]
    signature_param: str
    checksum: str

    def wire_params(self) -> dict[str, str]:
        wire = {name: render_value(name, value) for name, value in self.params.items()}
        wire[self.signature_param] = self.checksum
        return wire

    @property
    def request_id(self) -> str:
        return str(self.params.get("REQUEST_ID", ""))
