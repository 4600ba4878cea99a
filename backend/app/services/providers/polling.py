from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class PollState(str, enum.Enum):
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({PollState.SUCCEEDED, PollState.FAILED, PollState.TIMED_OUT, PollState.CANCELLED})

SUCCESS_STATUSES = frozenset({"succeeded", "completed"})
FAILURE_STATUSES = frozenset({"failed"})


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    attempts: int
    output_url: str | None = None
    error: str | None = None
    raw: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is PollState.SUCCEEDED


def next_poll_state(status: str | None, attempts_used: int, max_attempts: int) -> PollState:
    """
    Transition after one poll attempt. `status` is None when the attempt raised
    a transient error; that attempt still counts toward max_attempts.
    """
    normalized = (status or "").strip().lower()
    if normalized in SUCCESS_STATUSES:
        return PollState.SUCCEEDED
    if normalized in FAILURE_STATUSES:
        return PollState.FAILED
    if attempts_used >= max_attempts:
        return PollState.TIMED_OUT
    return PollState.POLLING


def response_data(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    inner = payload.get("data")
    return inner if isinstance(inner, dict) else {}


def provider_status(payload: Any) -> str | None:
    status = response_data(payload).get("status")
    return str(status) if status is not None else None


def provider_error(payload: Any) -> str:
    err = response_data(payload).get("error")
    return str(err) if err else "Unknown error"


def extract_output(payload: Any) -> str | None:
    data = response_data(payload)
    output = data.get("output")
    if isinstance(output, str) and output.strip():
        return output.strip()
    if isinstance(output, list) and output:
        first = output[0]
        if isinstance(first, str) and first.strip():
            return first.strip()
    outputs = data.get("outputs")
    if isinstance(outputs, list) and outputs:
        first = outputs[0]
        if isinstance(first, str) and first.strip():
            return first.strip()
    return None
