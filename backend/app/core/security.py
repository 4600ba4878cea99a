from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str


def get_current_user(request: Request) -> CurrentUser:
    # Tokens are validated upstream; the gateway forwards the resolved identity.
    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    role = (request.headers.get("x-user-role") or "user").strip().lower() or "user"
    return CurrentUser(id=user_id, role=role)
