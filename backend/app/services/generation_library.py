from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional

from app.services.artifacts import ArtifactPersister
from app.services.protocols import GenerationRecord, GenerationStore

logger = logging.getLogger(__name__)


class GenerationNotFoundError(RuntimeError):
    pass


class GenerationAccessError(RuntimeError):
    pass


class GenerationLibrary:
    """Read side of generations. Stored URLs expire, so every read signs a fresh one."""

    def __init__(self, store: GenerationStore, artifacts: ArtifactPersister) -> None:
        self._store = store
        self._artifacts = artifacts

    async def _with_fresh_url(self, record: GenerationRecord) -> GenerationRecord:
        if not record.storage_key:
            return record
        try:
            url = await self._artifacts.signed_url(record.storage_key)
        except Exception as e:
            logger.warning("generations.sign_failed id=%s key=%s error=%s", record.id, record.storage_key, e)
            return record
        return replace(record, storage_url=url)

    async def list_for_user(
        self,
        user_id: str,
        *,
        generation_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> list[GenerationRecord]:
        rows = await self._store.list_for_user(
            user_id,
            generation_type=generation_type,
            limit=max(1, min(int(limit), 100)),
            offset=max(0, int(offset)),
            order_by=order_by,
            descending=descending,
        )
        return [await self._with_fresh_url(row) for row in rows]

    async def get_for_user(self, user_id: str, generation_id: str) -> GenerationRecord:
        record = await self._store.get(generation_id)
        if record is None:
            raise GenerationNotFoundError(f"Generation {generation_id} not found")
        if record.user_id != user_id:
            raise GenerationAccessError("Access denied")
        return await self._with_fresh_url(record)

    async def stats(self, user_id: str) -> dict[str, Any]:
        return await self._store.stats_for_user(user_id)

    async def delete(self, user_id: str, generation_id: str) -> None:
        record = await self._store.get(generation_id)
        if record is None:
            raise GenerationNotFoundError(f"Generation {generation_id} not found")
        if record.user_id != user_id:
            raise GenerationAccessError("Access denied")

        if record.storage_key:
            await self._artifacts.delete(record.storage_key)
        await self._store.delete(generation_id, user_id)
        logger.info("generations.deleted id=%s user_id=%s", generation_id, user_id)
