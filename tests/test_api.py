import httpx
import pytest

from echoledger.api import FALLBACK_ERROR, ApiClient, ApiError, FlowError, Unauthorized, format_error
from echoledger.models import DurableKey
from echoledger.redis_repo import MemoryStore

from conftest import BASE_URL, envelope


class TestApiClient:
    """Requests, token injection and the 401 interceptor."""

    async def test_bearer_token_added_when_stored(self, api, backend, durable):
        """Stored access token goes out as a bearer header."""
        await durable.set(DurableKey.ACCESS_TOKEN, "tok-1")
        backend.route("GET", "/prompt/conversations", json=envelope([]))

        await api.get("/prompt/conversations")

        assert backend.last("GET", "/prompt/conversations").headers["Authorization"] == "Bearer tok-1"

    async def test_no_authorization_header_without_token(self, api, backend):
        backend.route("GET", "/subscription/plans", json=envelope([]))
        await api.get("/subscription/plans")
        assert "Authorization" not in backend.last("GET", "/subscription/plans").headers

    async def test_payload_read_from_body_or_data(self, api, backend):
        """Either payload key is accepted."""
        backend.route("GET", "/a", json=envelope({"x": 1}))
        backend.route("GET", "/b", json=envelope({"x": 2}, key="data"))

        assert (await api.get("/a")).payload == {"x": 1}
        assert (await api.get("/b")).payload == {"x": 2}

    async def test_unauthorized_clears_durable_session(self, backend, durable):
        """401 drops token and profile, runs the hook, then raises."""
        await durable.set_many({DurableKey.ACCESS_TOKEN: "stale", DurableKey.USER: "{}"})
        hits = []

        async def hook():
            hits.append(True)

        api = ApiClient(BASE_URL, durable, on_unauthorized=hook, transport=backend.transport)
        backend.route("GET", "/prompt/conversations", status=401, json=envelope(status=401, message="jwt expired"))

        with pytest.raises(Unauthorized) as exc:
            await api.get("/prompt/conversations")

        assert exc.value.message == "jwt expired"
        assert await durable.snapshot() == {}
        assert hits == [True]

    async def test_error_status_raises_with_backend_message(self, api, backend):
        backend.route("POST", "/auth/otp/send", status=400, json=envelope(status=400, message="Email already registered"))

        with pytest.raises(ApiError) as exc:
            await api.post("/auth/otp/send", json={"email": "a@b.com"})

        assert exc.value.status_code == 400
        assert format_error(exc.value) == "Email already registered"

    async def test_accepted_error_returns_envelope(self, api, backend):
        """Calls that expect structured 4xx get the envelope back."""
        backend.route("POST", "/auth/login", status=401, json=envelope(status=401, message="Bad credentials"))

        env = await api.post("/auth/login", json={}, accept_errors=(400, 401))

        assert env.statusCode == 401
        assert env.message == "Bad credentials"
        assert not env.ok

    async def test_non_json_error_body(self, api, backend):
        backend.route("GET", "/x", handler=lambda r: httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(ApiError) as exc:
            await api.get("/x")

        assert format_error(exc.value) == "Request failed with status code 502"

    async def test_network_failure_propagates(self, api, backend):
        backend.fail("POST", "/auth/otp/send")

        with pytest.raises(httpx.ConnectError) as exc:
            await api.post("/auth/otp/send", json={"email": "a@b.com"})

        assert format_error(exc.value) == "connection refused"


class TestFormatError:
    def test_prefers_backend_message(self):
        assert format_error(ApiError(400, "Invalid email")) == "Invalid email"

    def test_falls_back_to_exception_text(self):
        assert format_error(FlowError("Invalid response: missing accessToken")) == "Invalid response: missing accessToken"

    def test_last_resort_message(self):
        assert format_error(RuntimeError()) == FALLBACK_ERROR


class TestClientPaths:
    async def test_send_prompt_omits_missing_conversation(self, chat_client, backend):
        backend.route("POST", "/prompt/send", json=envelope({"conversationId": "c1", "response": "hi"}))

        await chat_client.send_prompt("hello")
        assert backend.body_of("POST", "/prompt/send") == {"prompt": "hello"}

        await chat_client.send_prompt("again", "c1")
        assert backend.body_of("POST", "/prompt/send") == {"prompt": "again", "conversation_id": "c1"}

    async def test_verify_accepts_any_status(self, auth, backend):
        backend.route("POST", "/auth/otp/verify", status=422, json=envelope({"verified": None}, status=422, message="Wrong code"))

        env = await auth.verify_otp("a@b.com", "000000")

        assert env.message == "Wrong code"
        assert env.payload == {"verified": None}

    async def test_register_raises_on_server_error(self, auth, backend):
        backend.route("POST", "/auth/register", status=500, json=envelope(status=500, message="boom"))
        with pytest.raises(ApiError):
            await auth.register({})

    async def test_message_history_path(self, chat_client, backend):
        backend.route("GET", "/prompt/conversations/c9/messages", json=envelope([]))
        env = await chat_client.message_history("c9")
        assert env.payload == []
