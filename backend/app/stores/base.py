from __future__ import annotations

import asyncio
import contextlib
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy.orm import Session, sessionmaker

T = TypeVar("T")

_ENGINE_LOCKS: dict[int, threading.Lock] = {}
_ENGINE_LOCKS_GUARD = threading.Lock()


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything here is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlStore:
    """Runs synchronous SQLAlchemy sessions off the event loop."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        bind = session_factory.kw.get("bind")
        dialect = getattr(getattr(bind, "dialect", None), "name", "")
        # SQLite has no row locks; one lock per engine serializes sessions.
        self._lock: threading.Lock | None = None
        if dialect == "sqlite":
            with _ENGINE_LOCKS_GUARD:
                self._lock = _ENGINE_LOCKS.setdefault(id(bind), threading.Lock())

    @contextlib.contextmanager
    def _session(self) -> Iterator[Session]:
        lock = self._lock
        if lock is not None:
            lock.acquire()
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()
            if lock is not None:
                lock.release()

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)
