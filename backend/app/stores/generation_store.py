from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func

from app.models.generation import Generation
from app.services.protocols import GenerationRecord
from app.stores.base import SqlStore, as_utc

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "credits_used",
        "storage_key",
        "storage_url",
        "file_size",
        "content_type",
        "prompt",
        "settings",
        "provider_job_id",
        "error_message",
        "completed_at",
    }
)

ORDERABLE_FIELDS = {
    "created_at": Generation.created_at,
    "updated_at": Generation.updated_at,
    "completed_at": Generation.completed_at,
    "credits_used": Generation.credits_used,
    "generation_type": Generation.generation_type,
    "status": Generation.status,
}


def _record(row: Generation) -> GenerationRecord:
    return GenerationRecord(
        id=row.id,
        user_id=row.user_id,
        generation_type=row.generation_type,
        status=row.status,
        credits_used=row.credits_used,
        storage_key=row.storage_key,
        storage_url=row.storage_url,
        file_size=row.file_size,
        content_type=row.content_type,
        prompt=row.prompt,
        settings=row.settings,
        provider_job_id=row.provider_job_id,
        error_message=row.error_message,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        completed_at=as_utc(row.completed_at),
    )


class SqlGenerationStore(SqlStore):
    async def create(self, record: GenerationRecord) -> GenerationRecord:
        return await self._run(self._create, record)

    def _create(self, record: GenerationRecord) -> GenerationRecord:
        with self._session() as db:
            row = Generation(
                id=record.id,
                user_id=record.user_id,
                generation_type=record.generation_type,
                status=record.status,
                credits_used=record.credits_used,
                storage_key=record.storage_key,
                storage_url=record.storage_url,
                file_size=record.file_size,
                content_type=record.content_type,
                prompt=record.prompt,
                settings=record.settings,
                provider_job_id=record.provider_job_id,
                error_message=record.error_message,
                completed_at=record.completed_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _record(row)

    async def get(self, generation_id: str) -> Optional[GenerationRecord]:
        return await self._run(self._get, generation_id)

    def _get(self, generation_id: str) -> Optional[GenerationRecord]:
        with self._session() as db:
            row = db.query(Generation).filter(Generation.id == generation_id).first()
            return _record(row) if row is not None else None

    async def update(self, generation_id: str, **fields: Any) -> Optional[GenerationRecord]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown generation fields: {sorted(unknown)}")
        return await self._run(self._update, generation_id, fields)

    def _update(self, generation_id: str, fields: dict[str, Any]) -> Optional[GenerationRecord]:
        with self._session() as db:
            row = db.query(Generation).filter(Generation.id == generation_id).first()
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return _record(row)

    async def list_for_user(
        self,
        user_id: str,
        *,
        generation_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> list[GenerationRecord]:
        return await self._run(self._list_for_user, user_id, generation_type, limit, offset, order_by, descending)

    def _list_for_user(
        self,
        user_id: str,
        generation_type: Optional[str],
        limit: int,
        offset: int,
        order_by: str,
        descending: bool,
    ) -> list[GenerationRecord]:
        column = ORDERABLE_FIELDS.get(order_by, Generation.created_at)
        with self._session() as db:
            q = db.query(Generation).filter(Generation.user_id == user_id)
            if generation_type:
                q = q.filter(Generation.generation_type == generation_type)
            q = q.order_by(column.desc() if descending else column.asc(), Generation.id.asc())
            return [_record(row) for row in q.offset(offset).limit(limit).all()]

    async def stats_for_user(self, user_id: str) -> dict[str, Any]:
        return await self._run(self._stats_for_user, user_id)

    def _stats_for_user(self, user_id: str) -> dict[str, Any]:
        with self._session() as db:
            by_status = dict(
                db.query(Generation.status, func.count(Generation.id))
                .filter(Generation.user_id == user_id)
                .group_by(Generation.status)
                .all()
            )
            by_type = dict(
                db.query(Generation.generation_type, func.count(Generation.id))
                .filter(Generation.user_id == user_id)
                .group_by(Generation.generation_type)
                .all()
            )
            credits = (
                db.query(func.coalesce(func.sum(Generation.credits_used), 0))
                .filter(Generation.user_id == user_id)
                .scalar()
            )
        return {
            "total": int(sum(by_status.values())),
            "completed": int(by_status.get("completed", 0)),
            "failed": int(by_status.get("failed", 0)),
            "pending": int(by_status.get("pending", 0)),
            "total_credits_used": int(credits or 0),
            "by_type": {k: int(v) for k, v in by_type.items()},
        }

    async def delete(self, generation_id: str, user_id: str) -> bool:
        return await self._run(self._delete, generation_id, user_id)

    def _delete(self, generation_id: str, user_id: str) -> bool:
        with self._session() as db:
            deleted = (
                db.query(Generation)
                .filter(Generation.id == generation_id, Generation.user_id == user_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return bool(deleted)
