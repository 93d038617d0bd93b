"""Protocol client: signing on the wire, reply decoding and failure typing."""

import logging

import httpx
import pytest

from onetouch.common.errors import (
    ConfigurationError,
    HttpStatusError,
    InvalidInputError,
    MalformedResponseError,
    ProviderError,
    TransportError,
    TransportTimeoutError,
)
from onetouch.common.signing import verify
from onetouch.services.provider_adapter.client import (
    ProtocolClient,
    ReplyError,
    ReplyMalformed,
    ReplyOk,
    decode_reply,
)
from onetouch.services.provider_adapter.endpoints import CODE_GET, NOREG_SEND, PAYMENT_INIT
from onetouch.services.provider_adapter.schemas import Credentials

from conftest import SECRET


def test_decode_reply_variants():
    assert isinstance(decode_reply(b'{"status": "OK", "x": 1}'), ReplyOk)
    error = decode_reply('{"status": "ERR", "err": "E42", "errm": "nope"}')
    assert isinstance(error, ReplyError) and error.code == "E42" and error.message == "nope"
    assert isinstance(decode_reply(b""), ReplyMalformed)
    assert isinstance(decode_reply(b"<html>"), ReplyMalformed)
    assert isinstance(decode_reply(b"[1, 2]"), ReplyMalformed)
    assert isinstance(decode_reply(b'{"x": 1}'), ReplyMalformed)
    assert isinstance(decode_reply(b'{"status": "MAYBE"}'), ReplyMalformed)


def test_get_request_is_signed(client, provider):
    provider.on("api/code/get", {"status": "OK", "code": "c-1"})

    payload = client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})

    assert payload["code"] == "c-1"
    params = provider.calls("api/code/get")[0]
    assert params["APPID"] == "app-1"
    assert params["REQUEST_ID"] == "req-1"
    assert params["TIMESTAMP"] == "1700000000"
    signature = params.pop("CHECKSUM")
    assert verify(params, signature, SECRET)


def test_post_request_sends_form(client, provider):
    provider.on("payment/init", {"status": "OK", "payment": {"ID": "p-1"}})

    client.call(PAYMENT_INIT, {"DEVICEID": "dev", "TOKEN": "tok", "TYPE": "send"}, kin="12345")

    assert provider.requests[0][0] == "payment/init"
    params = provider.calls("payment/init")[0]
    signature = params.pop("CHECKSUM")
    assert verify(params, signature, SECRET, kin="12345")
    assert not verify(params, signature, SECRET)


def test_provider_error_is_typed(client, provider):
    provider.on("api/code/get", {"status": "ERR", "err": "BAD_KEY", "errm": "bad key"})

    with pytest.raises(ProviderError) as info:
        client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})

    assert info.value.code == "BAD_KEY"
    assert not info.value.retryable


def test_malformed_reply(client, provider):
    provider.on("api/code/get", httpx.Response(200, text="not json"))

    with pytest.raises(MalformedResponseError):
        client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})


def test_http_status_error(client, provider):
    provider.on("api/code/get", httpx.Response(500, text="boom"))

    with pytest.raises(HttpStatusError) as info:
        client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})

    assert info.value.status_code == 500


def test_timeout_is_transport_error(client, provider):
    provider.on("api/code/get", httpx.ReadTimeout("slow"))

    with pytest.raises(TransportTimeoutError) as info:
        client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})

    assert isinstance(info.value, TransportError)
    assert info.value.retryable


def test_connection_error_is_transport_error(client, provider):
    provider.on("api/code/get", httpx.ConnectError("refused"))

    with pytest.raises(TransportError):
        client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})


def test_control_characters_rejected_before_sending(client, provider):
    provider.on("api/code/get", {"status": "OK", "code": "code-1"})

    with pytest.raises(InvalidInputError):
        client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "bad\nkey"})

    assert provider.requests == []


def test_missing_credentials(provider):
    unconfigured = ProtocolClient(
        Credentials(app_id="", secret_key=""), transport=httpx.MockTransport(provider.handler)
    )

    with pytest.raises(ConfigurationError):
        unconfigured.call(CODE_GET, {"DEVICEID": "dev", "KEY": "k"})

    assert provider.requests == []


def test_log_sink_never_sees_secrets(credentials, provider):
    seen = []
    provider.on("api/code/get", {"status": "OK", "code": "c-1"})
    logged_client = ProtocolClient(
        credentials,
        transport=httpx.MockTransport(provider.handler),
        log_sink=lambda endpoint, params, level: seen.append((endpoint, params, level)),
    )

    logged_client.call(CODE_GET, {"DEVICEID": "dev", "KEY": "auth-key", "TOKEN": "tok"}, kin="12345")

    request_params = seen[0][1]
    assert request_params["KEY"] == "***"
    assert request_params["TOKEN"] == "***"
    assert request_params["CHECKSUM"] == "***"
    assert seen[0][2] == logging.DEBUG
    reply_params = seen[1][1]
    assert reply_params["code"] == "***"


def test_signed_url_uses_appcheck(client):
    url = httpx.URL(client.signed_url(NOREG_SEND, {"DEVICEID": "dev", "ID": "p1", "AMOUNT": 100}))

    assert url.path.endswith("/api/payment/noreg/send")
    params = dict(url.params)
    assert "CHECKSUM" not in params
    signature = params.pop("APPCHECK")
    assert len(signature) == 40
