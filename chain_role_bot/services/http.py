from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Tuple

import aiohttp

from ..verification.errors import HttpStatusError, TerminalRequestError


class JsonHttpClient:
    """Single-attempt JSON GET client.

    Retries and pacing belong to ``RequestController``; this class only turns
    responses into payloads or typed errors.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float,
        *,
        headers: Dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.headers = dict(headers or {})
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _url(self, path: str) -> str:
        if not path:
            return self.base_url
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def get_json(
        self,
        path: str = "",
        *,
        params: Dict[str, str] | None = None,
        allow_statuses: Iterable[int] = (),
    ) -> Tuple[int, Any]:
        """Return ``(status, payload)``; ``payload`` is ``None`` for an empty body.

        Statuses other than 200 and ``allow_statuses`` raise ``HttpStatusError``.
        """
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        allowed = set(allow_statuses)
        async with self._session.get(self._url(path), params=params) as response:
            text = await response.text()
            status = response.status
        if status != 200 and status not in allowed:
            raise HttpStatusError(status, text.strip()[:200])
        if not text.strip():
            return status, None
        try:
            return status, json.loads(text)
        except json.JSONDecodeError as exc:
            if status != 200:
                return status, None
            raise TerminalRequestError(f"malformed JSON payload from {self._url(path)}") from exc
