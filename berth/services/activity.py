"""ActivityRecorder - append-only audit trail.

Every attempted container or volume mutation is recorded here, successful
or not. Rows are never updated or deleted.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.models.activity import ActivityRecord, ActivityType
from berth.utils.datetime import utcnow

logger = structlog.get_logger()

SYSTEM_ACTOR = "system"


class ActivityRecorder:
    """Writes and reads ActivityRecord rows."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(service="activity")

    async def record(
        self,
        type: ActivityType,
        *,
        actor: str,
        target: str,
        description: str = "",
        snapshot: dict[str, Any] | None = None,
    ) -> ActivityRecord | None:
        """Append one activity entry and commit it.

        A failing write is logged and rolled back instead of raised: the
        action it describes has already happened on the runtime.

        Returns:
            The persisted record, or None if the write failed
        """
        activity = ActivityRecord(
            id=f"act-{uuid.uuid4().hex[:12]}",
            type=type,
            actor=actor,
            target=target,
            description=description,
            snapshot=snapshot or {},
            created_at=utcnow(),
        )

        try:
            self._db.add(activity)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            self._log.warning(
                "activity.record.failed",
                type=type.value,
                actor=actor,
                target=target,
                snapshot=snapshot,
                error=str(e),
            )
            return None

        self._log.debug(
            "activity.record",
            activity_id=activity.id,
            type=type.value,
            actor=actor,
            target=target,
        )
        return activity

    async def list(
        self,
        *,
        actor: str | None = None,
        target: str | None = None,
        type: ActivityType | None = None,
        limit: int = 50,
    ) -> list[ActivityRecord]:
        """List activities, newest first."""
        query = select(ActivityRecord)

        if actor is not None:
            query = query.where(ActivityRecord.actor == actor)
        if target is not None:
            query = query.where(ActivityRecord.target == target)
        if type is not None:
            query = query.where(ActivityRecord.type == type)

        query = query.order_by(
            ActivityRecord.created_at.desc(), ActivityRecord.id.desc()
        ).limit(limit)

        result = await self._db.execute(query)
        return list(result.scalars().all())
