from __future__ import annotations

from app.models.usage_event import UsageEvent
from app.services.protocols import UsageRecord
from app.stores.base import SqlStore


class SqlUsageStore(SqlStore):
    async def record(self, usage: UsageRecord) -> None:
        await self._run(self._record, usage)

    def _record(self, usage: UsageRecord) -> None:
        with self._session() as db:
            db.add(
                UsageEvent(
                    user_id=usage.user_id,
                    endpoint=usage.endpoint,
                    generation_type=usage.generation_type,
                    generation_id=usage.generation_id,
                    credits_used=usage.credits_used,
                    status=usage.status,
                    processing_time_ms=usage.processing_time_ms,
                    request_size_bytes=usage.request_size_bytes,
                    extra=(usage.extra or None),
                )
            )
            db.commit()
