"""
Shared fixtures.

No test talks to a real backend: REST calls go through httpx.MockTransport
backed by FakeBackend, Socket.IO through FakeSio, storage through MemoryStore
(or fakeredis for the Redis store itself).
"""

import json

import httpx
import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

from echoledger.api import ApiClient
from echoledger.auth_client import AuthClient
from echoledger.chat_client import ChatClient
from echoledger.redis_repo import MemoryStore

BASE_URL = "http://api.test/api/v1"
PREFIX = "/api/v1"


def envelope(body=None, status=200, message="Success", key="body"):
    data = {"statusCode": status, "message": message}
    if body is not None:
        data[key] = body
    return data


class FakeBackend:
    """Route table standing in for the Echo Ledger REST API."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def route(self, method, path, json=None, status=200, handler=None):
        self.routes[(method, path)] = handler or (lambda request: httpx.Response(status, json=json))

    def fail(self, method, path, exc=None):
        def handler(request):
            raise exc or httpx.ConnectError("connection refused", request=request)
        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request):
        path = request.url.path.removeprefix(PREFIX)
        self.calls.append(request)
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"statusCode": 404, "message": f"no route {path}"})
        return handler(request)

    def last(self, method, path):
        for r in reversed(self.calls):
            if r.method == method and r.url.path.removeprefix(PREFIX) == path:
                return r
        return None

    def body_of(self, method, path):
        r = self.last(method, path)
        return json.loads(r.content) if r is not None and r.content else None

    @property
    def transport(self):
        return httpx.MockTransport(self)


class FakeSio:
    """Socket.IO AsyncClient double."""

    fail = False

    def __init__(self, *args, **kwargs):
        self.handlers = {}
        self.connected = False
        self.url = None
        self.connect_kwargs = None
        self.emitted = []

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, **kwargs):
        if self.fail:
            raise SocketConnectionError("Connection refused by the server")
        self.url = url
        self.connect_kwargs = kwargs
        self.connected = True
        if "connect" in self.handlers:
            await self.handlers["connect"]()

    async def disconnect(self):
        self.connected = False

    async def emit(self, event, data):
        self.emitted.append((event, data))

    async def fire(self, event, data):
        await self.handlers[event](data)


class FailingSio(FakeSio):
    fail = True


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def drafts():
    return MemoryStore()


@pytest.fixture
def durable():
    return MemoryStore()


@pytest.fixture
def api(backend, durable):
    return ApiClient(BASE_URL, durable, transport=backend.transport)


@pytest.fixture
def auth(api):
    return AuthClient(api)


@pytest.fixture
def chat_client(api):
    return ChatClient(api)
