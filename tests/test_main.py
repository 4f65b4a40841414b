import pytest
from fastapi.testclient import TestClient

from echoledger import main
from echoledger.push import PushChannel
from echoledger.redis_repo import MemoryRepo

from conftest import FakeSio, envelope

TAB = {"X-Tab-Id": "tab-1", "X-Client-Id": "client-1"}
CLIENT = {"X-Client-Id": "client-1"}
FORM = {"firstname": "Wile", "lastname": "Coyote", "password": "Acme#2024x", "confirm_password": "Acme#2024x"}


@pytest.fixture
def client(monkeypatch, backend, clock):
    monkeypatch.setattr(main, "repo", MemoryRepo())
    monkeypatch.setattr(main, "transport", backend.transport)
    monkeypatch.setattr(main, "push_factory", lambda url, timeout, retry_after: PushChannel(url, timeout, retry_after, client_factory=FakeSio))
    monkeypatch.setattr(main, "flows", {})
    monkeypatch.setattr(main, "chats", {})
    monkeypatch.setattr(main, "pushes", {})
    monkeypatch.setattr(main, "seen", {})
    monkeypatch.setattr(main, "clock", clock)
    return TestClient(main.app)


def _signed_in(backend, client):
    backend.route("POST", "/auth/login", json=envelope({"id": "u1", "role_name": "PERSONAL", "accessToken": "tok"}))
    return client.post("/auth/login", json={"email": "a@b.com", "password": "Acme#2024x"}, headers=CLIENT).json()


class TestSignupEndpoints:
    def test_full_personal_signup(self, client, backend):
        backend.route("POST", "/auth/otp/send", json=envelope({"email": "a@b.com", "otp": "246810"}))
        backend.route("POST", "/auth/otp/verify", json=envelope({"verified": "sess-1"}))
        backend.route("POST", "/auth/register", json=envelope({"id": "u1", "type": "personal", "accessToken": "tok"}))

        r = client.post("/signup/account-type", json={"type": "personal"}, headers=TAB).json()
        assert r["step"] == "plan-selection"

        r = client.post("/signup/plan/skip", params={"type": "personal"}, headers=TAB).json()
        assert r["step"] == "email-verification"

        r = client.post("/signup/email", json={"email": "a@b.com"}, headers=TAB).json()
        assert r["step"] == "otp-verification"

        r = client.get("/signup/step/otp-verification", headers=TAB).json()
        assert r["data"]["dev_otp"] == "246810"

        r = client.post("/signup/otp/verify", json={"code": "246810"}, headers=TAB).json()
        assert r["step"] == "register"

        r = client.post("/signup/register", json=FORM, params={"type": "personal"}, headers=TAB).json()
        assert r["step"] == "authenticated"
        assert r["route"] == "/dashboard"

        me = client.get("/auth/me", headers=CLIENT).json()
        assert me["user"]["type"] == "PERSONAL"

    def test_guard_redirect(self, client):
        r = client.get("/signup/step/register", params={"type": "business"}, headers=TAB).json()
        assert r["redirect"] is True
        assert r["step"] == "email-verification"

    def test_missing_tab_header(self, client):
        r = client.post("/signup/account-type", json={"type": "personal"}, headers=CLIENT)
        assert r.status_code == 422

    def test_plans_endpoint(self, client, backend):
        backend.route("GET", "/subscription/plans", json=envelope([
            {"plan": "free", "name": "Free"}, {"plan": "enterprise", "name": "Enterprise"},
        ]))
        r = client.get("/signup/plans", params={"type": "personal"}, headers=TAB).json()
        assert [p["plan"] for p in r["plans"]] == ["free"]


class TestAuthEndpoints:
    def test_login_and_logout(self, client, backend):
        r = _signed_in(backend, client)
        assert r["route"] == "/dashboard"

        client.post("/auth/logout", headers=CLIENT)

        assert client.get("/auth/me", headers=CLIENT).json()["user"] is None

    def test_login_error_message(self, client, backend):
        backend.route("POST", "/auth/login", status=400, json=envelope(status=400, message="Invalid credentials"))
        r = client.post("/auth/login", json={"email": "a@b.com", "password": "x"}, headers=CLIENT).json()
        assert r["error"] == "Invalid credentials"


class TestChatEndpoints:
    def test_chat_requires_login(self, client):
        assert client.get("/chat/state", headers=CLIENT).status_code == 401

    def test_send_and_switch(self, client, backend):
        _signed_in(backend, client)
        backend.route("GET", "/prompt/conversations", json=envelope([]))
        backend.route("POST", "/prompt/send", json=envelope({"conversationId": "c1", "response": "B"}))
        backend.route("GET", "/prompt/conversations/c2/messages", json=envelope([{"role": "assistant", "content": "old"}]))

        r = client.post("/chat/send", json={"prompt": "A"}, headers=CLIENT).json()
        assert r["conversation_id"] == "c1"
        assert r["messages"] == [{"role": "user", "content": "A"}, {"role": "assistant", "content": "B"}]
        assert main.pushes["client-1"].connected

        r = client.post("/chat/conversations/c2/open", headers=CLIENT).json()
        assert r["messages"] == [{"role": "assistant", "content": "old"}]

        r = client.post("/chat/new", headers=CLIENT).json()
        assert r["messages"] == [] and r["conversation_id"] is None

    def test_expired_token_drops_chat(self, client, backend):
        _signed_in(backend, client)
        backend.route("GET", "/prompt/conversations", json=envelope([]))
        client.get("/chat/state", headers=CLIENT)
        backend.route("POST", "/prompt/send", status=401, json=envelope(status=401, message="jwt expired"))

        client.post("/chat/send", json={"prompt": "A"}, headers=CLIENT)

        assert "client-1" not in main.chats
        assert client.get("/auth/me", headers=CLIENT).json()["user"] is None


class TestIdleEviction:
    """Abandoned tabs and idle chats do not pile up in process."""

    def test_abandoned_flow_dropped_after_draft_ttl(self, client, clock):
        client.post("/signup/account-type", json={"type": "personal"}, headers=TAB)
        assert "tab-1" in main.flows

        clock.now += main.settings.DRAFT_TTL_SEC + 1
        client.get("/auth/me", headers=CLIENT)

        assert "tab-1" not in main.flows

    def test_active_flow_kept(self, client, clock):
        client.post("/signup/account-type", json={"type": "personal"}, headers=TAB)
        clock.now += main.settings.DRAFT_TTL_SEC - 1
        client.get("/signup/step/plan-selection", params={"type": "personal"}, headers=TAB)
        clock.now += main.settings.DRAFT_TTL_SEC - 1
        client.get("/auth/me", headers=CLIENT)

        assert "tab-1" in main.flows

    def test_idle_chat_disconnects_push(self, client, backend, clock):
        _signed_in(backend, client)
        backend.route("GET", "/prompt/conversations", json=envelope([]))
        client.get("/chat/state", headers=CLIENT)
        push = main.pushes["client-1"]
        assert push.connected

        clock.now += main.settings.CHAT_IDLE_SEC + 1
        client.get("/auth/me", headers=CLIENT)

        assert "client-1" not in main.chats and "client-1" not in main.pushes
        assert not push.connected


class TestLedgerEndpoints:
    def test_transaction_round_trip(self, client, backend):
        _signed_in(backend, client)
        backend.route("POST", "/transactions", json=envelope({"id": "t1", "amount": 10}))
        backend.route("GET", "/transactions/recent", json=envelope([{"id": "t1"}]))

        r = client.post("/transactions", json={
            "buyer_name": "Acme", "description": "Anvil", "date": "2024-05-01", "amount": 10, "type": "expense",
        }, headers=CLIENT).json()
        assert r["transaction"]["id"] == "t1"
        assert backend.last("POST", "/transactions").headers["Authorization"] == "Bearer tok"

        r = client.get("/transactions/recent", headers=CLIENT).json()
        assert r["transactions"] == [{"id": "t1"}]

    def test_invalid_transaction_type_rejected(self, client):
        r = client.post("/transactions", json={
            "buyer_name": "Acme", "description": "Anvil", "date": "2024-05-01", "amount": 10, "type": "gift",
        }, headers=CLIENT)
        assert r.status_code == 422

    def test_backend_error_passed_through(self, client, backend):
        backend.route("GET", "/transactions/t9", status=404, json=envelope(status=404, message="Transaction not found"))

        r = client.get("/transactions/t9", headers=CLIENT)

        assert r.status_code == 404
        assert r.json() == {"error": "Transaction not found"}

    def test_business_insights_on_limited_plan(self, client, backend):
        backend.route("POST", "/business-metrics/forecast", status=402, json=envelope(status=402, message="Upgrade"))
        backend.route("POST", "/business-metrics/anomalies", json=envelope([{"alert": "spike", "severity": "high"}]))

        r = client.get("/business/biz1/insights", headers=CLIENT).json()

        assert r == {"forecast": None, "anomalies": [{"alert": "spike", "severity": "high"}]}
