import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


class ServiceAPIError(Exception):
    def __init__(self, status: int, reason: Optional[str], msg: Optional[str], body: str):
        self.status = status
        self.reason = reason
        self.msg = msg
        self.body = body
        text = f"Service API error (status={status}, reason={reason}, msg={msg})"
        super().__init__(text)


class ServiceRESTClient:
    """JSON-over-HTTP client shared by the valuation source and the HTTP gateway."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_s: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        session = await self._get_session()
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key

        async with session.request(
            method.upper(),
            f"{self.base_url}{path}",
            params=params,
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout_s or self.timeout_s),
        ) as resp:
            text = await resp.text()
            payload: Any = text
            if "application/json" in resp.headers.get("Content-Type", ""):
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text

            if resp.status >= 400:
                reason = None
                msg = None
                if isinstance(payload, dict):
                    reason = payload.get("reason")
                    msg = payload.get("error") or payload.get("msg")
                raise ServiceAPIError(resp.status, reason, msg, text)

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, body: Optional[Dict[str, Any]] = None,
                   timeout_s: Optional[float] = None) -> Any:
        return await self._request("POST", path, body=body, timeout_s=timeout_s)
