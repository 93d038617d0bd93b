"""Shared fixtures: a scripted provider behind httpx.MockTransport and in-memory storage."""

import os
from datetime import datetime, timedelta, timezone
from itertools import count
from urllib.parse import parse_qsl

import httpx
import pytest
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_SDK_DISABLED", "true")

from onetouch.common.config import CommonSettings  # noqa: E402
from onetouch.common.db import Base, build_session_factory
from onetouch.services.orchestrator import models  # noqa: F401  (registers tables)
from onetouch.services.orchestrator.service import PaymentOrchestrator
from onetouch.services.provider_adapter.client import ProtocolClient
from onetouch.services.provider_adapter.schemas import Credentials, DeviceIdentity, Token
from onetouch.services.provider_adapter.tokens import TokenManager

API_ROOT = "/xdev/api/"
NOW = 1_700_000_000
SECRET = "test-secret"


class FakeProvider:
    """Answers provider paths from per-path queues; the last answer repeats.

    An answer may be a callable taking the request params, for replies that
    need to act while the request is in flight.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list] = {}
        self.requests: list[tuple[str, dict[str, str]]] = []

    def on(self, path: str, *answers) -> None:
        self.routes.setdefault(path, []).extend(answers)

    def calls(self, path: str) -> list[dict[str, str]]:
        return [params for called, params in self.requests if called == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split(API_ROOT, 1)[1]
        if request.method == "GET":
            params = dict(request.url.params)
        else:
            params = dict(parse_qsl(request.content.decode("utf-8"), keep_blank_values=True))
        self.requests.append((path, params))

        queue = self.routes.get(path)
        if not queue:
            return httpx.Response(404, text="not found")
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(answer):
            answer = answer(params)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def credentials():
    return Credentials(
        app_id="app-1",
        secret_key=SECRET,
        test_mode=True,
        api_url_test="https://provider.test/xdev/api",
    )


@pytest.fixture
def config():
    return CommonSettings(
        onetouch_app_id="app-1",
        onetouch_secret_key=SECRET,
        merchant_recipient="MERCHANT1",
        public_base_url="https://shop.test",
        require_callback_signature=True,
    )


@pytest.fixture
def client(provider, credentials):
    ids = count(1)
    with ProtocolClient(
        credentials,
        timeout=5.0,
        transport=httpx.MockTransport(provider.handler),
        log_sink=lambda endpoint, params, level: None,
        clock=lambda: NOW,
        id_source=lambda: f"req-{next(ids)}",
    ) as protocol_client:
        yield protocol_client


@pytest.fixture
def session_factory():
    factory = build_session_factory(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def orchestrator(session_factory, client, config):
    return PaymentOrchestrator(session_factory, client, config)


@pytest.fixture
def tokens(client):
    token = Token(
        value="tok-1",
        kin="12345",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        username="buyer",
    )
    return TokenManager.restore(client, DeviceIdentity(device_id="device-1"), token)


@pytest.fixture
def fake_redis():
    return FakeRedis()
