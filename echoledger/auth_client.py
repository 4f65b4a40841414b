from __future__ import annotations

from typing import Any, Dict

from .api import ApiClient
from .models import Envelope


class AuthClient:
    def __init__(self, api: ApiClient):
        self.api = api

    async def send_otp(self, email: str) -> Envelope[Any]:
        return await self.api.post("/auth/otp/send", json={"email": email})

    async def resend_otp(self, email: str) -> Envelope[Any]:
        return await self.api.post("/auth/otp/resend", json={"email": email})

    async def verify_otp(self, email: str, code: str) -> Envelope[Any]:
        # the verdict is in the body whatever the status
        return await self.api.post("/auth/otp/verify", json={"email": email, "code": code}, accept_errors=True)

    async def register(self, payload: Dict[str, Any]) -> Envelope[Any]:
        return await self.api.post("/auth/register", json=payload, accept_errors=(400,))

    async def login(self, email: str, password: str) -> Envelope[Any]:
        return await self.api.post(
            "/auth/login", json={"email": email, "password": password}, accept_errors=(400, 401)
        )

    async def plans(self) -> Envelope[Any]:
        return await self.api.get("/subscription/plans")
