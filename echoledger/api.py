from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Collection, Optional

import httpx

from .models import DurableKey, Envelope, decode_envelope
from .redis_repo import SessionStore

logger = logging.getLogger(__name__)

FALLBACK_ERROR = "An unexpected error occurred"

# 402/403 from these mean the plan lacks the feature
OPTIONAL_FEATURE_PATHS = ("/forecast", "/anomalies")


class ApiError(Exception):
    def __init__(self, status_code: int, message: str = "", payload: Any = None):
        super().__init__(message or f"Request failed with status code {status_code}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


class Unauthorized(ApiError):
    pass


class FlowError(Exception):
    """Backend answered, but not with something the flow can use."""


def format_error(err: BaseException) -> str:
    message = getattr(err, "message", None)
    if message:
        return str(message)
    if str(err):
        return str(err)
    return FALLBACK_ERROR


class ApiClient:
    def __init__(
        self,
        base_url: str,
        store: SessionStore,
        timeout_sec: float = 8.0,
        on_unauthorized: Optional[Callable[[], Awaitable[None]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log_traffic: bool = False,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.store = store
        self.timeout = timeout_sec
        self.on_unauthorized = on_unauthorized
        self.transport = transport
        self.log_traffic = log_traffic

    async def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = await self.store.get(DurableKey.ACCESS_TOKEN)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        accept_errors: Collection[int] | bool = (),
    ) -> Envelope[Any]:
        url = f"{self.base_url}{path}"
        if self.log_traffic:
            logger.debug("API request %s %s json=%s", method, url, json)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            r = await client.request(method, url, headers=await self._headers(), params=params, json=json)

        try:
            data = r.json()
        except ValueError:
            data = r.text

        if r.status_code < 400:
            if self.log_traffic:
                logger.debug("API response %s %s data=%s", r.status_code, path, data)
            return decode_envelope(data, r.status_code)

        expected = r.status_code in (402, 403) and any(p in path for p in OPTIONAL_FEATURE_PATHS)
        if not expected:
            logger.warning("API error %s %s %s", r.status_code, method, path)

        if r.status_code == 401:
            await self.store.delete(DurableKey.ACCESS_TOKEN, DurableKey.USER)
            if self.on_unauthorized is not None:
                await self.on_unauthorized()

        accepted = accept_errors is True or (
            not isinstance(accept_errors, bool) and r.status_code in accept_errors
        )
        if accepted and isinstance(data, dict):
            return decode_envelope(data, r.status_code)

        message = data.get("message") if isinstance(data, dict) else ""
        exc_cls = Unauthorized if r.status_code == 401 else ApiError
        raise exc_cls(r.status_code, message or "", data)

    async def get(self, path: str, params: Optional[dict] = None, **kw) -> Envelope[Any]:
        return await self._request("GET", path, params=params, **kw)

    async def post(self, path: str, json: Optional[dict] = None, **kw) -> Envelope[Any]:
        return await self._request("POST", path, json=json, **kw)

    async def put(self, path: str, json: Optional[dict] = None, **kw) -> Envelope[Any]:
        return await self._request("PUT", path, json=json, **kw)

    async def delete(self, path: str, params: Optional[dict] = None, **kw) -> Envelope[Any]:
        return await self._request("DELETE", path, params=params, **kw)
