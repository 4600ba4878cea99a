from __future__ import annotations

import asyncio
import logging

from app.services.protocols import UsageRecord, UsageStore

logger = logging.getLogger(__name__)


class UsageNotifier:
    """Fire-and-forget usage analytics. Write failures are logged and never reach callers."""

    def __init__(self, store: UsageStore | None) -> None:
        self._store = store
        self._pending: set[asyncio.Task] = set()

    def notify(self, usage: UsageRecord) -> None:
        if self._store is None:
            return
        task = asyncio.get_running_loop().create_task(self._record(usage))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record(self, usage: UsageRecord) -> None:
        try:
            await self._store.record(usage)
        except Exception as e:
            logger.warning(
                "usage.record_failed user_id=%s endpoint=%s generation_id=%s error=%s",
                usage.user_id,
                usage.endpoint,
                usage.generation_id,
                e,
            )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
