from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]

NEW_MESSAGE = "new_message"
AI_TYPING = "ai_typing"


class PushChannel:
    """Socket.IO connection scoped to one (token, user id) identity."""

    def __init__(
        self,
        url: str,
        connect_timeout: float = 5.0,
        retry_after: float = 30.0,
        client_factory: Callable[..., Any] = socketio.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.connect_timeout = connect_timeout
        self.retry_after = retry_after
        self.client_factory = client_factory
        self.clock = clock
        # (identity, when) of the last failed attempt
        self.failed: Optional[Tuple[Tuple[str, str], float]] = None
        self.sio: Optional[Any] = None
        self.identity: Optional[Tuple[str, str]] = None
        self.handlers: Dict[str, List[Handler]] = {}

    @property
    def connected(self) -> bool:
        return bool(self.sio is not None and self.sio.connected)

    async def connect(self, user_id: Optional[str], token: Optional[str]) -> bool:
        if not user_id:
            return False
        identity = (str(user_id), token or "")
        if self.connected and self.identity == identity:
            return True
        if self.failed is not None:
            failed_identity, at = self.failed
            if failed_identity == identity and self.clock() - at < self.retry_after:
                return False

        await self.disconnect()
        self.identity = identity
        self.sio = self.client_factory()
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        for event in self.handlers:
            self._bind(event)

        try:
            await self.sio.connect(
                self.url,
                auth={"token": token, "userId": user_id},
                transports=["websocket", "polling"],
                wait_timeout=self.connect_timeout,
            )
        except SocketConnectionError as e:
            # backend may run without websocket support
            logger.warning("push channel connect failed: %s", e)
        if self.connected:
            self.failed = None
            return True
        self.failed = (identity, self.clock())
        return False

    async def disconnect(self) -> None:
        sio, self.sio, self.identity = self.sio, None, None
        if sio is not None and sio.connected:
            await sio.disconnect()

    def on(self, event: str, callback: Handler) -> None:
        first = event not in self.handlers
        self.handlers.setdefault(event, []).append(callback)
        if first and self.sio is not None:
            self._bind(event)

    def off(self, event: str, callback: Optional[Handler] = None) -> None:
        if callback is None:
            self.handlers.pop(event, None)
            return
        callbacks = self.handlers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def emit(self, event: str, data: Any) -> None:
        if self.connected:
            await self.sio.emit(event, data)

    def _bind(self, event: str) -> None:
        async def dispatch(data: Any = None) -> None:
            for cb in list(self.handlers.get(event, [])):
                try:
                    await cb(data)
                except Exception:
                    logger.exception("push handler failed. event=%s", event)

        self.sio.on(event, dispatch)

    async def _on_connect(self) -> None:
        logger.info("push channel connected user=%s", self.identity[0] if self.identity else None)

    async def _on_disconnect(self, *args: Any) -> None:
        logger.info("push channel disconnected")
