"""
请求传输层
基于 httpx 的异步 HTTP 客户端，区分限流 (429) 与其他失败
token 由外部提供，不做任何登录流程
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..core.config import TransportConfig
from ..core.errors import RateLimitedError, RequestError
from ..core.logger import get_logger

log = get_logger("transport")


@dataclass
class Response:
    status: int
    body: Any


class RequestTransport(Protocol):
    async def get(self, path: str) -> Response: ...

    async def post(self, path: str, body: dict[str, Any]) -> Response: ...


class HttpTransport:
    """httpx 异步传输"""

    def __init__(self, config: TransportConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.token:
            headers["Authorization"] = config.token
        if config.user_agent:
            headers["User-Agent"] = config.user_agent
        self._client = client or httpx.AsyncClient(
            base_url=config.api_base,
            headers=headers,
            timeout=config.timeout,
        )

    async def get(self, path: str) -> Response:
        return await self._send("GET", path)

    async def post(self, path: str, body: dict[str, Any]) -> Response:
        return await self._send("POST", path, body)

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, body: dict[str, Any] | None = None) -> Response:
        resp = await self._client.request(method, path, json=body)
        log.debug("%s %s -> %d", method, path, resp.status_code)

        payload = _decode(resp)
        if resp.status_code == 429:
            raise RateLimitedError(
                f"{method} {path} 被限流",
                retry_after=_retry_after(resp, payload),
            )
        if resp.status_code >= 400:
            raise RequestError(f"{method} {path} 失败: HTTP {resp.status_code}", status=resp.status_code)
        return Response(status=resp.status_code, body=payload)


def _decode(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


def _retry_after(resp: httpx.Response, payload: Any) -> float | None:
    header = resp.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            return None
    if isinstance(payload, dict) and "retry_after" in payload:
        return float(payload["retry_after"])
    return None
