from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .api import FlowError
from .auth_client import AuthClient
from .models import AccountType, DurableKey, Envelope, User
from .redis_repo import SessionStore

logger = logging.getLogger(__name__)

MISSING_TOKEN = "Invalid response: missing accessToken"


def normalize_user(raw: Dict[str, Any], fallback_type: Optional[AccountType] = None) -> User:
    """Backend sometimes sends `role_name` where the client expects `type`."""
    user = {k: v for k, v in raw.items() if k != "accessToken"}
    if not user.get("type") and user.get("role_name"):
        user["type"] = user["role_name"]
    user["type"] = AccountType.parse(user.get("type")) or fallback_type
    return User.model_validate(user)


def _token_payload(envelope: Envelope[Any]) -> Dict[str, Any]:
    payload = envelope.payload
    if not isinstance(payload, dict) or not payload.get("accessToken"):
        if not envelope.ok and envelope.message:
            raise FlowError(envelope.message)
        raise FlowError(MISSING_TOKEN)
    return payload


async def persist_session(durable: SessionStore, envelope: Envelope[Any], fallback_type: Optional[AccountType] = None) -> User:
    payload = _token_payload(envelope)
    user = normalize_user(payload, fallback_type)
    # token first: a token without profile means the second write failed
    await durable.set(DurableKey.ACCESS_TOKEN, payload["accessToken"])
    await durable.set(DurableKey.USER, user.model_dump_json(exclude_none=True))
    return user


async def load_user(durable: SessionStore) -> Optional[User]:
    token = await durable.get(DurableKey.ACCESS_TOKEN)
    raw = await durable.get(DurableKey.USER)
    if not token or not raw:
        return None
    try:
        return User.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        logger.exception("stored user is unreadable, dropping session")
        await logout(durable)
        return None


async def logout(durable: SessionStore) -> None:
    await durable.delete(DurableKey.ACCESS_TOKEN, DurableKey.USER)


async def login(auth: AuthClient, durable: SessionStore, email: str, password: str) -> User:
    envelope = await auth.login(email, password)
    return await persist_session(durable, envelope)


def landing_route(user: User) -> str:
    return "/business" if user.type == AccountType.BUSINESS else "/dashboard"
