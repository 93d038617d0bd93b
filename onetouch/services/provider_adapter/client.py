"""Signed HTTP client for the OneTouch provider API.

Turns an endpoint + parameter map into a signed request and the response into
either a decoded payload or a typed failure. Calls are blocking, bounded by a
timeout, and never retried here: several endpoints move money.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Callable, Mapping, Union
from uuid import uuid4

import httpx

from onetouch.common.config import settings
from onetouch.common.errors import (
    ConfigurationError,
    HttpStatusError,
    InvalidInputError,
    MalformedResponseError,
    ProviderError,
    TransportError,
    TransportTimeoutError,
)
from onetouch.common.logging import log_exchange, logger, redact_params
from onetouch.common.metrics import provider_request_duration_seconds, provider_requests_total
from onetouch.common.signing import SIGNATURE_PARAMS, sign
from onetouch.common.tracing import tracer
from onetouch.services.provider_adapter.endpoints import Endpoint
from onetouch.services.provider_adapter.schemas import Credentials, SignedRequest


ENDPOINT_PATH_RE = re.compile(r"^[a-zA-Z0-9/\-_]+$")
USER_AGENT = "onetouch-python/1.0"

LogSink = Callable[[str, Mapping[str, Any], int], None]


@dataclass(frozen=True)
class ReplyOk:
    payload: dict[str, Any]


@dataclass(frozen=True)
class ReplyError:
    code: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReplyMalformed:
    reason: str


ProviderReply = Union[ReplyOk, ReplyError, ReplyMalformed]


def decode_reply(body: bytes | str) -> ProviderReply:
    """Decode a provider body once into a closed set of outcomes."""

    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    if not text or not text.strip():
        return ReplyMalformed("empty response from API")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return ReplyMalformed(f"invalid JSON response: {exc.msg}")
    if not isinstance(data, dict):
        return ReplyMalformed("invalid response format: not an object")
    status = data.get("status")
    if status is None:
        return ReplyMalformed("invalid response format: missing status")
    if status == "OK":
        return ReplyOk(data)
    if status == "ERR":
        return ReplyError(
            code=str(data.get("err") or "UNKNOWN"),
            message=str(data.get("errm") or "provider returned an error"),
            payload=data,
        )
    return ReplyMalformed(f"invalid response format: unrecognized status {status!r}")


class ProtocolClient:
    """Issues signed requests on behalf of one set of credentials."""

    def __init__(
        self,
        credentials: Credentials,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
        log_sink: LogSink = log_exchange,
        clock: Callable[[], float] = time.time,
        id_source: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout if timeout is not None else settings.onetouch_timeout_seconds
        self._log_sink = log_sink
        self._clock = clock
        self._id_source = id_source
        # Certificate validation is not configurable.
        self._http = httpx.Client(
            timeout=self.timeout,
            verify=True,
            transport=transport,
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
        )

    def __enter__(self) -> "ProtocolClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def now(self) -> float:
        return self._clock()

    def new_id(self) -> str:
        return self._id_source()

    def ensure_configured(self) -> None:
        if not self.credentials.app_id or not self.credentials.secret_key:
            raise ConfigurationError("API credentials not configured")

    def _url(self, endpoint: Endpoint) -> str:
        if not ENDPOINT_PATH_RE.match(endpoint.path):
            raise InvalidInputError(f"Invalid API endpoint: {endpoint.path!r}")
        raw = f"{self.credentials.base_url.rstrip('/')}/{endpoint.path}"
        try:
            url = httpx.URL(raw)
        except httpx.InvalidURL as exc:
            raise ConfigurationError(f"Invalid API URL: {raw}") from exc
        if url.scheme not in ("https", "http") or not url.host:
            raise ConfigurationError(f"Invalid API URL: {raw}")
        return str(url)

    def build_request(
        self,
        endpoint: Endpoint,
        params: Mapping[str, Any],
        kin: str | None = None,
    ) -> SignedRequest:
        """Attach APPID, correlation id and timestamp, then sign everything."""

        self.ensure_configured()
        url = self._url(endpoint)
        signed = {name: value for name, value in params.items() if name not in SIGNATURE_PARAMS}
        signed.setdefault("APPID", self.credentials.app_id)
        signed["REQUEST_ID"] = self._id_source()
        signed["TIMESTAMP"] = int(self._clock())
        checksum = sign(signed, self.credentials.secret_key, endpoint.scheme, kin)
        return SignedRequest(
            endpoint=endpoint.name,
            method=endpoint.method,
            url=url,
            params=signed,
            signature_param=endpoint.scheme.param,
            checksum=checksum,
        )

    def signed_url(self, endpoint: Endpoint, params: Mapping[str, Any], kin: str | None = None) -> str:
        """Signed URL for provider-hosted pages the end user is redirected to."""

        request = self.build_request(endpoint, params, kin)
        self._log_sink(endpoint.path, redact_params(request.wire_params()), logging.DEBUG)
        return str(httpx.URL(request.url, params=request.wire_params()))

    def call(self, endpoint: Endpoint, params: Mapping[str, Any], kin: str | None = None) -> dict[str, Any]:
        """Send one signed request and return the decoded `status=OK` payload.

        Raises TransportError, HttpStatusError, MalformedResponseError or
        ProviderError. Nothing is retried.
        """

        request = self.build_request(endpoint, params, kin)
        self._log_sink(endpoint.path, redact_params(request.wire_params()), logging.DEBUG)
        outcome = "transport_error"
        start = perf_counter()
        try:
            with tracer.start_as_current_span(f"onetouch.{endpoint.name}") as span:
                span.set_attribute("onetouch.request_id", request.request_id)
                response = self._send(request)
            if not response.is_success:
                outcome = "http_error"
                logger.error(
                    "provider http error endpoint=%s status=%s request_id=%s",
                    endpoint.path,
                    response.status_code,
                    request.request_id,
                )
                raise HttpStatusError(
                    response.status_code,
                    f"HTTP error {response.status_code}: {response.reason_phrase}",
                )

            reply = decode_reply(response.content)
            if isinstance(reply, ReplyMalformed):
                outcome = "malformed"
                logger.error("provider malformed response endpoint=%s reason=%s", endpoint.path, reply.reason)
                raise MalformedResponseError(reply.reason, {"endpoint": endpoint.name})
            if isinstance(reply, ReplyError):
                outcome = "provider_error"
                self._log_sink(endpoint.path, redact_params(reply.payload), logging.WARNING)
                raise ProviderError(reply.code, reply.message, {"endpoint": endpoint.name})

            outcome = "ok"
            self._log_sink(endpoint.path, redact_params(reply.payload), logging.DEBUG)
            return reply.payload
        finally:
            provider_requests_total.labels(endpoint=endpoint.name, outcome=outcome).inc()
            provider_request_duration_seconds.labels(endpoint=endpoint.name).observe(
                max(0.0, perf_counter() - start)
            )

    def _send(self, request: SignedRequest) -> httpx.Response:
        headers = {"X-Request-ID": request.request_id}
        wire = request.wire_params()
        try:
            if request.method == "GET":
                return self._http.get(request.url, params=wire, headers=headers)
            return self._http.post(request.url, data=wire, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("provider timeout endpoint=%s request_id=%s", request.endpoint, request.request_id)
            raise TransportTimeoutError(f"API request timed out: {request.endpoint}") from exc
        except httpx.HTTPError as exc:
            logger.error("provider request failed endpoint=%s error=%s", request.endpoint, exc)
            raise TransportError(f"API request failed: {exc}") from exc
