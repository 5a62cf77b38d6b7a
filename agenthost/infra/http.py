"""JSON REST client for provider APIs that are plain HTTP (Orgo today).

One lazily opened ``aiohttp.ClientSession`` per client. Every failure,
including timeouts and refused connections, surfaces as :class:`HttpError`
so provider adapters classify a single exception type.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import aiohttp
from loguru import logger

USER_AGENT = "agenthost/0.1"


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    """Non-2xx response. Status 0 means the request never got an answer."""

    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.message}"

    @property
    def is_timeout(self) -> bool:
        return self.status in (0, 408, 504)

    @property
    def message(self) -> str:
        """The ``error``/``message`` field of a JSON error body, else the raw body."""
        try:
            payload = json.loads(self.body)
        except ValueError:
            return self.body
        if isinstance(payload, dict):
            for key in ("error", "message", "detail"):
                if isinstance(payload.get(key), str):
                    return payload[key]
        return self.body


class ApiClient:
    """Bearer-token JSON client rooted at ``base_url``.

    Args:
        base_url: Scheme, host and optional path prefix.
        token: Sent as ``Authorization: Bearer <token>`` when given.
        timeout: Default total timeout per request, in seconds.
    """

    def __init__(self, base_url: str, token: str | None = None, *, timeout: float = 30) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _open(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[bytes, str]:
        url = f"{self.base_url}{path}"
        self._log.debug("{method} {path}", method=method, path=path)
        extra: dict[str, Any] = {"timeout": aiohttp.ClientTimeout(total=timeout)} if timeout else {}
        try:
            async with self._open().request(
                method, url, json=body, params=params, headers=headers, **extra
            ) as resp:
                raw = await resp.read()
                if resp.status >= 400:
                    text = raw.decode("utf-8", errors="replace")
                    self._log.warning(
                        "{method} {path} -> {status}: {body}",
                        method=method, path=path, status=resp.status, body=text[:300],
                    )
                    raise HttpError(resp.status, text)
                return raw, resp.content_type
        except TimeoutError as e:
            raise HttpError(0, f"no response after {timeout or self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise HttpError(0, str(e)) from e

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (None when empty).

        Raises:
            HttpError: Error status, transport failure or timeout.
        """
        raw, _ = await self._send(method, path, body=body, params=params, timeout=timeout)
        if not raw:
            return None
        text = raw.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def fetch(
        self, path: str, *, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> tuple[bytes, str]:
        """GET ``path`` without decoding it. Returns the body and its content type.

        Raises:
            HttpError: Error status, transport failure or timeout.
        """
        return await self._send(
            "GET", path, params=params, timeout=timeout, headers={"Accept": "*/*"}
        )

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", path, body=body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ApiClient:
        self._open()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
