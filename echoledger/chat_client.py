from __future__ import annotations

from typing import Any, Optional

from .api import ApiClient
from .models import Envelope


class ChatClient:
    def __init__(self, api: ApiClient):
        self.api = api

    async def send_prompt(self, prompt: str, conversation_id: Optional[str] = None) -> Envelope[Any]:
        payload: dict[str, Any] = {"prompt": prompt}
        if conversation_id is not None:
            payload["conversation_id"] = conversation_id
        return await self.api.post("/prompt/send", json=payload)

    async def conversations(self) -> Envelope[Any]: return await self.api.get("/prompt/conversations")
    async def conversation(self, cid: str) -> Envelope[Any]: return await self.api.get(f"/prompt/conversations/{cid}")
    async def message_history(self, cid: str) -> Envelope[Any]: return await self.api.get(f"/prompt/conversations/{cid}/messages")
