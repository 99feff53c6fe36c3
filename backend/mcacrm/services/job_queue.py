# backend/mcacrm/services/job_queue.py
"""
Durable job queue shared with the external workflow worker.

Lifecycle: queued -> processing -> completed | failed.

The worker claims work through claim_next (queued -> processing, sets
started_at as the lease start). A job left in processing longer than the
lease is put back to queued by requeue_stale_jobs, which the scheduler runs
periodically. Result callbacks also accept jobs still in queued, for workers
that read the table directly without claiming.
"""

import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.exceptions import NotFound, ValidationFailed
from mcacrm.models import JobQueue

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    FCS_ANALYSIS = "fcs_analysis"
    LENDER_QUALIFICATION = "lender_qualification"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_STATUSES = [JobStatus.QUEUED.value, JobStatus.PROCESSING.value]


class JobQueueService:
    """Enqueue, claim and settle job_queue rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue(self, job_type: JobType, conversation_id: uuid.UUID,
                      input_data: Dict[str, Any]) -> JobQueue:
        """Add a queued job to the session; the caller commits."""
        job = JobQueue(
            id=uuid.uuid4(),
            job_type=job_type.value,
            conversation_id=conversation_id,
            input_data=input_data,
            status=JobStatus.QUEUED.value,
            attempts=0,
        )
        self.db.add(job)
        await self.db.flush()
        logger.info(f"Queued {job_type.value} job {job.id} for conversation {conversation_id}")
        return job

    async def recent_job(self, conversation_id: uuid.UUID, job_type: JobType,
                         window_seconds: int) -> Optional[JobQueue]:
        """Latest job of this type created within the window, if any."""
        result = await self.db.execute(
            select(JobQueue)
            .where(
                JobQueue.conversation_id == conversation_id,
                JobQueue.job_type == job_type.value,
                JobQueue.created_at > func.now() - timedelta(seconds=window_seconds),
            )
            .order_by(JobQueue.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_job(self, job_id) -> JobQueue:
        try:
            job_uuid = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
        except ValueError:
            raise ValidationFailed(f"Invalid job id: {job_id}", fields=["job_id"])
        job = await self.db.get(JobQueue, job_uuid)
        if job is None:
            raise NotFound("Job not found", job_id=str(job_id))
        return job

    async def claim_next(self, job_type: Optional[str] = None) -> Optional[JobQueue]:
        """Oldest queued job, moved to processing. Concurrent workers skip locked rows."""
        stmt = select(JobQueue).where(JobQueue.status == JobStatus.QUEUED.value)
        if job_type:
            stmt = stmt.where(JobQueue.job_type == job_type)
        stmt = stmt.order_by(JobQueue.created_at.asc()).limit(1).with_for_update(skip_locked=True)

        result = await self.db.execute(stmt)
        job = result.scalar_one_or_none()
        if job is None:
            return None

        job.status = JobStatus.PROCESSING.value
        job.started_at = func.now()
        job.attempts = (job.attempts or 0) + 1
        await self.db.commit()
        await self.db.refresh(job)

        logger.info(f"Job {job.id} ({job.job_type}) claimed, attempt {job.attempts}")
        return job

    async def update_job(self, job_id, status: str, result_data: Optional[Dict[str, Any]] = None,
                         error_message: Optional[str] = None) -> JobQueue:
        valid = [s.value for s in JobStatus]
        if status not in valid:
            raise ValidationFailed(f"Invalid job status '{status}'; expected one of {', '.join(valid)}",
                                   fields=["status"])

        job = await self.get_job(job_id)
        job.status = status
        if result_data is not None:
            job.result_data = result_data
        if error_message is not None:
            job.error_message = error_message
        if status == JobStatus.PROCESSING.value and job.started_at is None:
            job.started_at = func.now()
        elif status == JobStatus.COMPLETED.value:
            job.completed_at = func.now()
        elif status == JobStatus.FAILED.value:
            job.failed_at = func.now()

        await self.db.commit()
        await self.db.refresh(job)
        logger.info(f"Job {job.id} -> {status}")
        return job

    async def complete_jobs_for(self, conversation_id: uuid.UUID, job_type: JobType,
                                result_data: Optional[Dict[str, Any]] = None) -> int:
        """Mark the open jobs of a conversation completed; the caller commits."""
        result = await self.db.execute(
            update(JobQueue)
            .where(
                JobQueue.conversation_id == conversation_id,
                JobQueue.job_type == job_type.value,
                JobQueue.status.in_(OPEN_STATUSES),
            )
            .values(
                status=JobStatus.COMPLETED.value,
                result_data=result_data,
                completed_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Completed {result.rowcount} {job_type.value} job(s) for {conversation_id}")
        return result.rowcount

    async def requeue_stale_jobs(self, lease_seconds: int) -> int:
        """Return processing jobs whose lease expired to the queue."""
        result = await self.db.execute(
            update(JobQueue)
            .where(
                JobQueue.status == JobStatus.PROCESSING.value,
                JobQueue.started_at < func.now() - timedelta(seconds=lease_seconds),
            )
            .values(status=JobStatus.QUEUED.value, started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} job(s) with expired lease")
        return result.rowcount

    async def list_jobs(self, conversation_id: Optional[uuid.UUID] = None,
                        status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        stmt = select(JobQueue)
        if conversation_id:
            stmt = stmt.where(JobQueue.conversation_id == conversation_id)
        if status:
            stmt = stmt.where(JobQueue.status == status)
        result = await self.db.execute(stmt.order_by(JobQueue.created_at.desc()).limit(limit))
        return [job.to_dict() for job in result.scalars().all()]
