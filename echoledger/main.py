import logging
import time
from typing import Any, Dict, Optional, Tuple

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .api import ApiClient, ApiError, format_error
from .auth_client import AuthClient
from .auth_session import landing_route, load_user, login, logout
from .chat import ChatSession
from .chat_client import ChatClient
from .config import settings
from .flow import RegistrationFlow, ResendCooldown, Step, StepResult
from .ledger_client import BusinessMetricsClient, TransactionClient
from .models import DurableKey, TransactionIn, TransactionPatch, TransactionType
from .push import PushChannel
from .redis_repo import MemoryRepo, RedisRepo

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Echo Ledger Client")

if settings.STORAGE_BACKEND == "memory":
    repo = MemoryRepo()
else:
    repo = RedisRepo(settings.REDIS_HOST, settings.REDIS_PORT, settings.DRAFT_TTL_SEC)

# swapped out in tests
transport = None
push_factory = PushChannel
clock = time.monotonic

# mounted views: one flow per tab, one chat per client
flows: Dict[str, RegistrationFlow] = {}
chats: Dict[str, ChatSession] = {}
pushes: Dict[str, PushChannel] = {}
# last request per ("flow", tab) and ("chat", client)
seen: Dict[Tuple[str, str], float] = {}


class AccountTypeIn(BaseModel):
    type: str


class PlanIn(BaseModel):
    plan: str


class EmailIn(BaseModel):
    email: str


class CodeIn(BaseModel):
    code: str


class LoginIn(BaseModel):
    email: str
    password: str


class PromptIn(BaseModel):
    prompt: str


def _api(client_id: str) -> ApiClient:
    async def unauthorized():
        logger.info("session expired. client=%s", client_id)
        await _drop_chat(client_id)

    return ApiClient(
        settings.API_BASE_URL,
        repo.durable(client_id),
        settings.HTTP_TIMEOUT_SEC,
        on_unauthorized=unauthorized,
        transport=transport,
        log_traffic=not settings.is_production,
    )


def _flow(tab_id: str, client_id: str) -> RegistrationFlow:
    seen[("flow", tab_id)] = clock()
    flow = flows.get(tab_id)
    if flow is None:
        flow = RegistrationFlow(
            repo.draft(tab_id),
            repo.durable(client_id),
            AuthClient(_api(client_id)),
            expose_dev_otp=not settings.is_production,
            cooldown=ResendCooldown(settings.OTP_RESEND_COOLDOWN_SEC),
        )
        flows[tab_id] = flow
    return flow


def _out(res: StepResult) -> Dict[str, Any]:
    return {
        "step": res.step.value,
        "route": res.route,
        "error": res.error,
        "redirect": res.redirect,
        "busy": res.busy,
        "data": res.data,
    }


async def _chat(client_id: str) -> ChatSession:
    durable = repo.durable(client_id)
    user = await load_user(durable)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    seen[("chat", client_id)] = clock()
    session = chats.get(client_id)
    if session is None:
        session = ChatSession(ChatClient(_api(client_id)))
        chats[client_id] = session
        await session.load_conversations()

    push = pushes.get(client_id)
    if push is None:
        push = push_factory(settings.SOCKET_URL, settings.SOCKET_CONNECT_TIMEOUT_SEC, settings.SOCKET_RETRY_SEC)
        pushes[client_id] = push
    await push.connect(user.id, await durable.get(DurableKey.ACCESS_TOKEN))
    if session.push is not push:
        session.attach(push)
    return session


async def _drop_chat(client_id: str) -> None:
    seen.pop(("chat", client_id), None)
    session = chats.pop(client_id, None)
    if session is not None:
        session.detach()
    push = pushes.pop(client_id, None)
    if push is not None:
        await push.disconnect()


def _chat_out(session: ChatSession) -> Dict[str, Any]:
    st = session.state
    return {
        "conversation_id": st.conversation_id,
        "messages": [m.model_dump() for m in st.messages],
        "loading": st.loading,
        "typing": st.typing,
        "conversations": session.conversations,
    }


async def sweep_idle() -> None:
    """Drops flows whose draft has expired and chats nobody has used for a while."""
    now = clock()
    for tab_id in list(flows):
        if now - seen.get(("flow", tab_id), now) > settings.DRAFT_TTL_SEC:
            flows.pop(tab_id, None)
            seen.pop(("flow", tab_id), None)
            logger.info("dropped idle signup flow. tab=%s", tab_id)
    for client_id in set(chats) | set(pushes):
        if now - seen.get(("chat", client_id), now) > settings.CHAT_IDLE_SEC:
            await _drop_chat(client_id)
            logger.info("dropped idle chat. client=%s", client_id)


@app.middleware("http")
async def evict_idle_views(request: Request, call_next):
    await sweep_idle()
    return await call_next(request)


# signup

@app.get("/signup/step/{step}")
async def signup_enter(step: Step, type: Optional[str] = None, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).enter(step, type))


@app.post("/signup/account-type")
async def signup_account_type(inp: AccountTypeIn, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).choose_account_type(inp.type))


@app.get("/signup/plans")
async def signup_plans(type: Optional[str] = None, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    plans = await _flow(x_tab_id, x_client_id).plans(type)
    return {"plans": [p.model_dump() for p in plans]}


@app.post("/signup/plan")
async def signup_plan(inp: PlanIn, type: Optional[str] = None, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).choose_plan(inp.plan, type))


@app.post("/signup/plan/skip")
async def signup_plan_skip(type: Optional[str] = None, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).skip_plan(type))


@app.post("/signup/email")
async def signup_email(inp: EmailIn, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).submit_email(inp.email))


@app.post("/signup/otp/resend")
async def signup_resend(x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).resend_code())


@app.post("/signup/otp/verify")
async def signup_verify(inp: CodeIn, x_tab_id: str = Header(...), x_client_id: str = Header(...)):
    return _out(await _flow(x_tab_id, x_client_id).verify_code(inp.code))


@app.post("/signup/register")
async def signup_register(
    form: Dict[str, Any] = Body(...),
    type: Optional[str] = None,
    x_tab_id: str = Header(...),
    x_client_id: str = Header(...),
):
    res = await _flow(x_tab_id, x_client_id).register(form, type)
    if res.step is Step.AUTHENTICATED:
        flows.pop(x_tab_id, None)
        seen.pop(("flow", x_tab_id), None)
    return _out(res)


# durable session

@app.post("/auth/login")
async def auth_login(inp: LoginIn, x_client_id: str = Header(...)):
    durable = repo.durable(x_client_id)
    try:
        user = await login(AuthClient(_api(x_client_id)), durable, inp.email, inp.password)
    except Exception as e:
        logger.warning("login failed: %s", format_error(e))
        return {"error": format_error(e)}
    return {"user": user.model_dump(mode="json", exclude_none=True), "route": landing_route(user)}


@app.post("/auth/logout")
async def auth_logout(x_client_id: str = Header(...)):
    await _drop_chat(x_client_id)
    await logout(repo.durable(x_client_id))
    return {"route": "/auth/login"}


@app.get("/auth/me")
async def auth_me(x_client_id: str = Header(...)):
    user = await load_user(repo.durable(x_client_id))
    if user is None:
        return {"user": None, "route": "/auth/login"}
    return {"user": user.model_dump(mode="json", exclude_none=True), "route": landing_route(user)}


# chat

@app.post("/chat/send")
async def chat_send(inp: PromptIn, x_client_id: str = Header(...)):
    session = await _chat(x_client_id)
    await session.send(inp.prompt)
    return _chat_out(session)


@app.get("/chat/conversations")
async def chat_conversations(x_client_id: str = Header(...)):
    session = await _chat(x_client_id)
    return {"conversations": await session.load_conversations()}


@app.post("/chat/conversations/{conversation_id}/open")
async def chat_open(conversation_id: str, x_client_id: str = Header(...)):
    session = await _chat(x_client_id)
    await session.open(conversation_id)
    return _chat_out(session)


@app.post("/chat/new")
async def chat_new(x_client_id: str = Header(...)):
    session = await _chat(x_client_id)
    session.new_chat()
    return _chat_out(session)


@app.get("/chat/state")
async def chat_state(x_client_id: str = Header(...)):
    return _chat_out(await _chat(x_client_id))


# ledger

@app.exception_handler(ApiError)
async def api_error(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"error": format_error(exc)})


@app.get("/transactions")
async def transactions_list(
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    type: Optional[TransactionType] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    x_client_id: str = Header(...),
):
    env = await TransactionClient(_api(x_client_id)).list_all(limit, offset, type, start_date, end_date)
    return {"transactions": env.payload or []}


@app.get("/transactions/recent")
async def transactions_recent(limit: int = 5, x_client_id: str = Header(...)):
    env = await TransactionClient(_api(x_client_id)).recent(limit)
    return {"transactions": env.payload or []}


@app.post("/transactions")
async def transactions_create(inp: TransactionIn, x_client_id: str = Header(...)):
    env = await TransactionClient(_api(x_client_id)).create(inp)
    return {"transaction": env.payload}


@app.post("/transactions/suggest")
async def transactions_suggest(inp: PromptIn, x_client_id: str = Header(...)):
    return {"suggestion": await TransactionClient(_api(x_client_id)).ai_suggestion(inp.prompt)}


@app.get("/transactions/{tid}")
async def transactions_get(tid: str, x_client_id: str = Header(...)):
    return {"transaction": (await TransactionClient(_api(x_client_id)).get(tid)).payload}


@app.put("/transactions/{tid}")
async def transactions_update(tid: str, patch: TransactionPatch, x_client_id: str = Header(...)):
    return {"transaction": (await TransactionClient(_api(x_client_id)).update(tid, patch)).payload}


@app.delete("/transactions/{tid}")
async def transactions_delete(tid: str, x_client_id: str = Header(...)):
    await TransactionClient(_api(x_client_id)).delete(tid)
    return {"deleted": tid}


@app.get("/business/{bid}/insights")
async def business_insights(bid: str, x_client_id: str = Header(...)):
    metrics = BusinessMetricsClient(_api(x_client_id))
    return {"forecast": await metrics.forecast(bid), "anomalies": await metrics.anomalies(bid)}
