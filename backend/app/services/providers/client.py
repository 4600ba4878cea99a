from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

import httpx

from app.core.settings import ProviderSettings, Settings
from app.services.providers.polling import (
    PollOutcome,
    PollState,
    extract_output,
    next_poll_state,
    provider_error,
    provider_status,
    response_data,
)
from app.services.rate_limiter import RateLimiter, RateLimiterRegistry

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    pass


class ProviderNotConfiguredError(ProviderError):
    pass


class InvalidProviderResponse(ProviderError):
    pass


class ProviderHTTPError(ProviderError):
    def __init__(self, status_code: int, detail: str = "", *, kind: str = "") -> None:
        self.status_code = int(status_code)
        self.detail = detail
        self.kind = kind
        super().__init__(f"{kind or 'provider'} error {self.status_code}: {detail}".strip())


KIND_LIMITER: dict[str, str] = {
    "text_to_image": "image",
    "image_to_image": "image",
    "text_to_video": "video",
    "image_to_video": "video",
}

VIDEO_KINDS = frozenset({"text_to_video", "image_to_video"})


@dataclass(frozen=True)
class ProviderJob:
    kind: str
    provider_id: str | None
    poll_handle: str
    raw: dict[str, Any]


def _normalize_size(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip():
        return raw.strip().replace("x", "*")
    return "832*480"


def build_request_body(kind: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    payload = dict(payload or {})
    seed = payload.get("seed")
    seed = seed if isinstance(seed, int) and not isinstance(seed, bool) else -1

    if kind == "image_to_video":
        body = {
            "duration": payload.get("duration") or 8,
            "enable_prompt_expansion": False,
            "image": payload.get("image"),
            "audio": payload.get("audio"),
            "prompt": payload.get("prompt"),
            "resolution": "480p",
            "seed": seed,
        }
    elif kind == "text_to_video":
        body = {
            "duration": payload.get("duration") or 5,
            "enable_prompt_expansion": False,
            "prompt": payload.get("prompt"),
            "seed": seed,
            "size": _normalize_size(payload.get("size") or payload.get("resolution") or "832x480"),
            "audio": payload.get("audio"),
        }
    else:
        return payload

    return {k: v for k, v in body.items() if v is not None}


def resolve_poll_handle(kind: str, payload: Any, api_url: str) -> str | None:
    data = response_data(payload)
    urls = data.get("urls")
    if isinstance(urls, dict):
        handle = urls.get("get")
        if isinstance(handle, str) and handle.strip():
            return handle.strip()

    # Video providers may answer with a prediction id only.
    prediction_id = data.get("id")
    if kind in VIDEO_KINDS and prediction_id:
        parts = urlsplit(api_url)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}/api/v3/predictions/{prediction_id}/result"
    return None


class ProviderJobClient:
    """Submit and poll generation jobs for one generation kind."""

    def __init__(
        self,
        *,
        kind: str,
        api_key: str | None,
        api_url: str | None,
        submit_limiter: RateLimiter,
        poll_limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        timeout_s: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.kind = kind
        self._api_key = (api_key or "").strip()
        self._api_url = (api_url or "").strip()
        self._submit_limiter = submit_limiter
        self._poll_limiter = poll_limiter
        self._client = http_client
        self._timeout_s = timeout_s
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._api_url)

    def _require_configured(self) -> None:
        if not self._api_key:
            raise ProviderNotConfiguredError(f"{self.kind} API key is not configured")
        if not self._api_url:
            raise ProviderNotConfiguredError(f"{self.kind} API URL is not configured")

    async def _request(self, method: str, url: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        resp = await self._client.request(method, url, headers=headers, json=json, timeout=self._timeout_s)

        if resp.status_code >= 400:
            try:
                detail = resp.text[:500]
            except Exception:
                detail = ""
            raise ProviderHTTPError(resp.status_code, detail, kind=self.kind)

        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidProviderResponse(f"{self.kind} returned invalid JSON: {e}")
        if not isinstance(data, dict):
            raise InvalidProviderResponse(f"{self.kind} returned a non-object response")
        return data

    async def create_job(self, payload: dict[str, Any]) -> ProviderJob:
        self._require_configured()
        body = build_request_body(self.kind, payload)
        limiter_label = f"{self.kind}:create"

        data = await self._submit_limiter.schedule(
            lambda: self._request("POST", self._api_url, json=body),
            label=limiter_label,
        )

        handle = resolve_poll_handle(self.kind, data, self._api_url)
        if not handle:
            raise InvalidProviderResponse("Invalid API response: missing result URL")

        provider_id = response_data(data).get("id")
        logger.info(
            "provider.job_created kind=%s provider_id=%s status=%s",
            self.kind,
            provider_id,
            provider_status(data),
        )
        return ProviderJob(
            kind=self.kind,
            provider_id=(str(provider_id) if provider_id is not None else None),
            poll_handle=handle,
            raw=data,
        )

    async def _wait(self, delay_s: float, cancel: asyncio.Event | None) -> None:
        if cancel is None:
            await self._sleep(delay_s)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay_s))
        canceller = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, canceller):
                if not fut.done():
                    fut.cancel()

    async def poll_result(
        self,
        poll_handle: str,
        max_attempts: int = 40,
        interval_s: float = 6.0,
        *,
        cancel: asyncio.Event | None = None,
    ) -> PollOutcome:
        if not self._api_key:
            raise ProviderNotConfiguredError(f"{self.kind} API key is not configured")
        if not poll_handle:
            raise ValueError("Result URL is required")

        max_attempts = max(1, int(max_attempts))
        attempts = 0
        last_error: str | None = None

        while True:
            if cancel is not None and cancel.is_set():
                logger.info("provider.poll_cancelled kind=%s attempts=%s", self.kind, attempts)
                return PollOutcome(state=PollState.CANCELLED, attempts=attempts, error="Polling cancelled")

            data: dict[str, Any] | None = None
            status: str | None = None
            try:
                data = await self._poll_limiter.schedule(
                    lambda: self._request("GET", poll_handle),
                    label=f"{self.kind}:poll",
                )
                status = provider_status(data)
            except (ProviderHTTPError, InvalidProviderResponse, httpx.HTTPError) as e:
                # Provider briefly unreachable; the job itself may still be running.
                last_error = str(e) or e.__class__.__name__
                logger.warning(
                    "provider.poll_error kind=%s attempt=%s error=%s",
                    self.kind,
                    attempts + 1,
                    last_error,
                )

            attempts += 1
            state = next_poll_state(status, attempts, max_attempts)

            if state is PollState.SUCCEEDED:
                logger.info("provider.poll_succeeded kind=%s attempts=%s", self.kind, attempts)
                return PollOutcome(state=state, attempts=attempts, output_url=extract_output(data), raw=data)
            if state is PollState.FAILED:
                err = provider_error(data)
                logger.info("provider.poll_failed kind=%s attempts=%s error=%s", self.kind, attempts, err)
                return PollOutcome(state=state, attempts=attempts, error=err, raw=data)
            if state is PollState.TIMED_OUT:
                logger.warning("provider.poll_timed_out kind=%s attempts=%s", self.kind, attempts)
                reason = "maximum attempts reached"
                if last_error and status is None:
                    reason = f"{reason} (last error: {last_error})"
                return PollOutcome(state=state, attempts=attempts, error=reason, raw=data)

            await self._wait(interval_s, cancel)


def build_provider_clients(
    cfg: Settings,
    limiters: RateLimiterRegistry,
    http_client: httpx.AsyncClient,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> dict[str, ProviderJobClient]:
    clients: dict[str, ProviderJobClient] = {}
    for kind, provider_cfg in cfg.providers.items():
        clients[kind] = _client_for(kind, provider_cfg, limiters, http_client, sleep)
    return clients


def _client_for(
    kind: str,
    provider_cfg: ProviderSettings,
    limiters: RateLimiterRegistry,
    http_client: httpx.AsyncClient,
    sleep: Callable[[float], Awaitable[Any]],
) -> ProviderJobClient:
    return ProviderJobClient(
        kind=kind,
        api_key=provider_cfg.api_key,
        api_url=provider_cfg.api_url,
        submit_limiter=limiters.get(KIND_LIMITER[kind]),
        poll_limiter=limiters.get("poll"),
        http_client=http_client,
        timeout_s=provider_cfg.timeout_s,
        sleep=sleep,
    )
