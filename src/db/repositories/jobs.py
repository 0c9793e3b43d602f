"""Job run reads for acceptance evaluation."""

from __future__ import annotations

import json
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select

from src.db.models import JobRun, JobRunEvent

from .base import SessionRepository

PATH_BUILD_JOB_TYPES = ("learning_build", "learning_build_progressive")


class JobRepository(SessionRepository):
    async def latest_job(
        self,
        owner_user_id: UUID,
        entity_type: str,
        entity_id: UUID,
        job_types: Sequence[str] = PATH_BUILD_JOB_TYPES,
    ) -> JobRun | None:
        result = await self.session.execute(
            select(JobRun)
            .where(
                JobRun.owner_user_id == owner_user_id,
                JobRun.entity_type == entity_type,
                JobRun.entity_id == entity_id,
                JobRun.job_type.in_(list(job_types)),
            )
            .order_by(JobRun.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def error_entries(self, job: JobRun) -> list[tuple[str, str]]:
        """(message, data_json) pairs: the job's own error first, then each event in order."""
        entries = [(job.error, "")] if job.error else []
        result = await self.session.execute(
            select(JobRunEvent.message, JobRunEvent.data)
            .where(JobRunEvent.job_id == job.id)
            .order_by(JobRunEvent.created_at)
        )
        for message, data in result.all():
            entries.append((message or "", json.dumps(data, default=str) if data else ""))
        return entries
