from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from app.core.settings import LimiterSettings, Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

LimiterEvent = Callable[[str, dict[str, Any]], None]


def status_code_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status is None:
        return None
    try:
        return int(status)
    except (TypeError, ValueError):
        return None


def is_retryable(exc: BaseException) -> bool:
    status = status_code_of(exc)
    if status is None:
        return False
    return status == 429 or 500 <= status < 600


def backoff_delay(attempt: int, base_s: float = 1.0, cap_s: float = 30.0) -> float:
    return min(base_s * (2 ** max(0, attempt)), cap_s)


@dataclass(frozen=True)
class LimiterConfig:
    name: str
    reservoir: int
    refresh_interval_s: float
    max_concurrent: int
    min_time_s: float = 0.0
    max_retries: int = 0
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 30.0

    @classmethod
    def from_settings(cls, cfg: LimiterSettings) -> "LimiterConfig":
        return cls(
            name=cfg.name,
            reservoir=cfg.reservoir,
            refresh_interval_s=cfg.refresh_interval_s,
            max_concurrent=cfg.max_concurrent,
            min_time_s=cfg.min_time_s,
            max_retries=cfg.max_retries,
            backoff_base_s=cfg.backoff_base_s,
            backoff_cap_s=cfg.backoff_cap_s,
        )


class RateLimiter:
    """
    Token reservoir plus concurrency cap for one provider class.

    Admission is strictly FIFO: the first waiter holds the admission lock until it
    owns both a concurrency slot and a token. Every attempt, retries included, is
    admitted separately because each one is a new outbound call.
    """

    def __init__(
        self,
        config: LimiterConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._tokens = max(1, int(config.reservoir))
        self._last_refresh = clock()
        self._last_start: float | None = None
        self._admission = asyncio.Lock()
        self._slots = asyncio.Semaphore(max(1, int(config.max_concurrent)))
        self._listeners: dict[str, list[LimiterEvent]] = {}

        self._queued = 0
        self._running = 0
        self._done = 0
        self._received = 0
        self._failed = 0

    @property
    def name(self) -> str:
        return self.config.name

    def on(self, event: str, listener: LimiterEvent) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def _emit(self, event: str, info: dict[str, Any]) -> None:
        for listener in self._listeners.get(event, []):
            try:
                listener(event, info)
            except Exception:
                logger.exception("rate_limiter.listener_failed name=%s event=%s", self.name, event)

    def _refill(self, now: float) -> None:
        interval = self.config.refresh_interval_s
        elapsed = now - self._last_refresh
        if elapsed < interval:
            return
        periods = int(elapsed // interval)
        self._tokens = int(self.config.reservoir)
        self._last_refresh += periods * interval

    async def _take_token(self) -> None:
        while True:
            now = self._clock()
            self._refill(now)
            if self._tokens > 0:
                break
            wait_s = (self._last_refresh + self.config.refresh_interval_s) - now
            logger.debug("rate_limiter.reservoir_empty name=%s wait_s=%.3f", self.name, wait_s)
            await self._sleep(max(0.0, wait_s))

        if self.config.min_time_s > 0 and self._last_start is not None:
            wait_s = (self._last_start + self.config.min_time_s) - self._clock()
            if wait_s > 0:
                await self._sleep(wait_s)

        self._tokens -= 1
        self._last_start = self._clock()

    async def _run_once(self, task: Callable[[], Awaitable[T]]) -> T:
        self._queued += 1
        try:
            async with self._admission:
                await self._slots.acquire()
                try:
                    await self._take_token()
                except BaseException:
                    self._slots.release()
                    raise
        finally:
            self._queued -= 1

        self._running += 1
        try:
            return await task()
        finally:
            self._running -= 1
            self._slots.release()

    async def schedule(self, task: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        self._received += 1
        attempt = 0
        while True:
            try:
                result = await self._run_once(task)
            except Exception as exc:
                status = status_code_of(exc)
                info = {"name": self.name, "label": label, "attempt": attempt, "status": status, "error": str(exc)}
                self._emit("error", info)

                if is_retryable(exc) and attempt < self.config.max_retries:
                    delay_s = backoff_delay(attempt, self.config.backoff_base_s, self.config.backoff_cap_s)
                    attempt += 1
                    logger.warning(
                        "rate_limiter.retry name=%s label=%s attempt=%s status=%s delay_s=%.2f",
                        self.name,
                        label,
                        attempt,
                        status,
                        delay_s,
                    )
                    self._emit("retry", {**info, "attempt": attempt, "delay_s": delay_s})
                    await self._sleep(delay_s)
                    continue

                self._failed += 1
                logger.warning(
                    "rate_limiter.dropped name=%s label=%s attempts=%s status=%s error=%s",
                    self.name,
                    label,
                    attempt + 1,
                    status,
                    exc,
                )
                self._emit("dropped", info)
                raise

            self._done += 1
            self._emit("done", {"name": self.name, "label": label, "attempts": attempt + 1, **self.counts()})
            return result

    def counts(self) -> dict[str, int]:
        return {
            "queued": self._queued,
            "running": self._running,
            "done": self._done,
            "received": self._received,
            "failed": self._failed,
        }

    def stats(self) -> dict[str, Any]:
        return {"type": self.name, **self.counts(), "tokens": self._tokens}


class RateLimiterRegistry:
    """One shared limiter per provider class, built once at process start."""

    def __init__(self, limiters: dict[str, RateLimiter]) -> None:
        self._limiters = dict(limiters)

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "RateLimiterRegistry":
        limiters = {
            name: RateLimiter(LimiterConfig.from_settings(limiter_cfg), clock=clock, sleep=sleep)
            for name, limiter_cfg in cfg.limiters.items()
        }
        return cls(limiters)

    def get(self, name: str) -> RateLimiter:
        limiter = self._limiters.get(name)
        if limiter is None:
            raise KeyError(f"Unknown rate limiter type: {name}")
        return limiter

    def names(self) -> list[str]:
        return list(self._limiters.keys())

    def stats(self) -> dict[str, dict[str, Any]]:
        return {name: limiter.stats() for name, limiter in self._limiters.items()}
