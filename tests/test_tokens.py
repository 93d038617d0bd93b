"""Token lifecycle: code exchange, single use, invalidation."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from onetouch.common.errors import InvalidInputError, MalformedResponseError, NoTokenAvailableError, TransportError
from onetouch.services.provider_adapter.schemas import DeviceIdentity, Token
from onetouch.services.provider_adapter.tokens import TokenManager, TokenState


def _manager(client):
    return TokenManager(client, DeviceIdentity(device_id="device-1"))


def test_code_exchange_acquires_token(client, provider):
    provider.on("api/code/get", {"status": "OK", "code": "code-1"})
    provider.on(
        "api/token/get",
        {"status": "OK", "TOKEN": "tok-1", "KIN": "12345", "EXPIRES": 4102444800, "USERNAME": "buyer"},
    )
    tokens = _manager(client)

    code = tokens.request_code("auth-key")
    token = tokens.exchange_code(code)

    assert tokens.state is TokenState.TOKEN_ACQUIRED
    assert token.value == "tok-1" and token.kin == "12345"
    assert token.expires_at.year == 2100
    assert provider.calls("api/token/get")[0]["CODE"] == "code-1"


def test_code_is_single_use(client, provider):
    provider.on("api/code/get", {"status": "OK", "code": "code-1"})
    provider.on("api/token/get", {"status": "OK", "TOKEN": "tok-1"})
    tokens = _manager(client)

    tokens.request_code("auth-key")
    with pytest.raises(MalformedResponseError):
        tokens.exchange_code("code-1")
    assert tokens.state is TokenState.NO_TOKEN

    tokens.request_code("auth-key")
    with pytest.raises(InvalidInputError):
        tokens.exchange_code("code-1")
    assert len(provider.calls("api/token/get")) == 1


def test_exchange_requires_requested_code(client):
    with pytest.raises(InvalidInputError):
        _manager(client).exchange_code("code-1")


def test_failed_exchange_resets_state(client, provider):
    provider.on("api/code/get", {"status": "OK", "code": "code-1"})
    provider.on("api/token/get", httpx.ConnectError("down"))
    tokens = _manager(client)
    tokens.request_code("auth-key")

    with pytest.raises(TransportError):
        tokens.exchange_code("code-1")

    assert tokens.state is TokenState.NO_TOKEN
    with pytest.raises(NoTokenAvailableError):
        tokens.require_token()


def test_expired_token_is_not_usable(client):
    expired = Token(value="t", kin="1", expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
    tokens = TokenManager.restore(client, DeviceIdentity(device_id="device-1"), expired)

    with pytest.raises(NoTokenAvailableError):
        tokens.require_token()


def test_token_bound_call_adds_token_and_kin(tokens, provider):
    provider.on("user/info/pins", {"status": "OK", "payment_instruments": [{"ID": 7, "NAME": "Visa"}]})

    instruments = tokens.payment_instruments()

    assert instruments[0].id == "7"
    params = provider.calls("user/info/pins")[0]
    assert params["TOKEN"] == "tok-1"
    assert params["DEVICEID"] == "device-1"


def test_invalidate_is_idempotent(tokens, provider):
    provider.on("api/token/invalidate", {"status": "OK"})

    assert tokens.invalidate() is True
    assert tokens.invalidate() is True

    assert len(provider.calls("api/token/invalidate")) == 1
    assert tokens.state is TokenState.INVALIDATED
    with pytest.raises(NoTokenAvailableError):
        tokens.require_token()


def test_invalidate_provider_rejection_counts_as_done(tokens, provider):
    provider.on("api/token/invalidate", {"status": "ERR", "err": "TOKEN_INVALID", "errm": "gone"})

    assert tokens.invalidate() is True
    assert tokens.token is None


def test_invalidate_without_token_makes_no_call(client, provider):
    assert _manager(client).invalidate() is True
    assert provider.requests == []


def test_authorization_url(tokens):
    url = httpx.URL(tokens.authorization_url("auth-key"))

    assert url.path.endswith("/api/start")
    assert url.params["KEY"] == "auth-key"
    assert url.params["DEVICEID"] == "device-1"
    assert "CHECKSUM" in url.params


def test_instrument_balance(tokens, provider):
    provider.on(
        "user/info/pins/balance",
        {"status": "OK", "payment_instruments": [{"ID": "pin-1", "BALANCE": 12000, "CURRENCY": "BGN"}]},
    )

    instrument = tokens.instrument_balance("pin-1")

    assert instrument.balance == 12000
    assert provider.calls("user/info/pins/balance")[0]["PINS"] == "pin-1"


def test_unexpected_instrument_shape_is_malformed(tokens, provider):
    provider.on(
        "user/info/pins/balance",
        {"status": "OK", "payment_instruments": [{"ID": "pin-1", "BALANCE": "12.50"}]},
    )
    provider.on("user/info/pins", {"status": "OK", "payment_instruments": {"ID": "pin-1"}})

    with pytest.raises(MalformedResponseError):
        tokens.instrument_balance("pin-1")
    with pytest.raises(MalformedResponseError):
        tokens.payment_instruments()
