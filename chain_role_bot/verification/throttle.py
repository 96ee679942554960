from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import aiohttp

from .errors import HttpStatusError, RetryableRequestError, TerminalRequestError, is_retryable_status

logger = logging.getLogger("chain_role_bot.throttle")

T = TypeVar("T")


@dataclass(slots=True)
class ControllerStats:
    calls: int = 0
    retries: int = 0
    exhausted: int = 0
    terminal: int = 0


class RequestController:
    """Process-wide request pacing plus bounded exponential-backoff retries.

    Every outbound provider call goes through ``execute``. Calls are spaced at
    least ``1 / requests_per_second`` apart across all concurrent callers, and
    each attempt is bounded by ``timeout_seconds``.
    """

    def __init__(
        self,
        *,
        requests_per_second: float,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self.max_retries = max(0, int(max_retries))
        self.base_delay_seconds = max(0.0, float(base_delay_seconds))
        self.timeout_seconds = float(timeout_seconds)
        self._clock = clock
        self._sleep = sleep
        self._slot_lock = asyncio.Lock()
        self._next_slot = 0.0
        self.stats = ControllerStats()

    async def _acquire_slot(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._slot_lock:
            now = self._clock()
            wait = self._next_slot - now
            if wait > 0:
                await self._sleep(wait)
            self._next_slot = max(now, self._next_slot) + self.min_interval

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay_seconds * (2**attempt)

    async def execute(self, fn: Callable[[], Awaitable[T]], *, label: str = "request") -> T:
        attempts = self.max_retries + 1
        last_error: RetryableRequestError | None = None
        for attempt in range(attempts):
            await self._acquire_slot()
            self.stats.calls += 1
            try:
                return await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                last_error = RetryableRequestError(f"{label} timed out after {self.timeout_seconds:.0f}s")
            except HttpStatusError as exc:
                if not is_retryable_status(exc.status):
                    self.stats.terminal += 1
                    raise TerminalRequestError(exc.reason, status=exc.status) from exc
                last_error = RetryableRequestError(exc.reason, status=exc.status)
            except RetryableRequestError as exc:
                last_error = exc
            except TerminalRequestError:
                self.stats.terminal += 1
                raise
            except aiohttp.ContentTypeError as exc:
                self.stats.terminal += 1
                raise TerminalRequestError(f"{label} returned a non-JSON payload") from exc
            except aiohttp.ClientResponseError as exc:
                if not is_retryable_status(exc.status):
                    self.stats.terminal += 1
                    raise TerminalRequestError(f"HTTP {exc.status}: {exc.message}", status=exc.status) from exc
                last_error = RetryableRequestError(f"HTTP {exc.status}: {exc.message}", status=exc.status)
            except aiohttp.ClientError as exc:
                last_error = RetryableRequestError(f"{label} connection error: {exc}")

            if attempt < attempts - 1:
                delay = self.backoff_delay(attempt)
                self.stats.retries += 1
                logger.debug(
                    "%s failed (%s); retry %s/%s in %.2fs",
                    label,
                    last_error.reason,
                    attempt + 1,
                    self.max_retries,
                    delay,
                )
                await self._sleep(delay)

        assert last_error is not None
        self.stats.exhausted += 1
        logger.warning("%s failed after %s attempts: %s", label, attempts, last_error.reason)
        raise RetryableRequestError(
            f"{label} failed after {attempts} attempts: {last_error.reason}",
            status=last_error.status,
        )
