"""Background execution of template jobs.

One asyncio task per job. Tasks are tracked in a module-level dict so they
are not garbage collected mid-run and so the API can report what is running
in this process.
"""

import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from templatepipe.db import async_session
from templatepipe.db.models import TemplateJob
from templatepipe.orchestrator.runner import run_template_job
from templatepipe.orchestrator.state import ACTIVE_STATES, JobStateMachine

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by server restart"

# Module-level dict of in-flight job tasks
_ACTIVE_TASKS: dict[uuid.UUID, asyncio.Task] = {}


async def run_job_task(job_id: uuid.UUID) -> None:
    """Run a template job in background with a fresh session.

    Never share a session across async boundaries: the request session is
    closed by the time this runs.
    """
    async with async_session() as session:
        try:
            await run_template_job(session, job_id)
        except Exception as e:
            # Error already persisted to database by runner
            logger.error(f"Background template job {job_id} failed: {type(e).__name__}: {str(e)}")


def start_job(job_id: uuid.UUID) -> asyncio.Task:
    """Schedule a committed job for execution and return its task."""
    task = asyncio.create_task(run_job_task(job_id), name=f"template-job-{job_id}")
    _ACTIVE_TASKS[job_id] = task
    task.add_done_callback(lambda _t: _ACTIVE_TASKS.pop(job_id, None))
    logger.info(f"Scheduled template job {job_id}")
    return task


def active_job_ids() -> list[uuid.UUID]:
    """Ids of jobs with a running task in this process."""
    return list(_ACTIVE_TASKS)


async def recover_interrupted_jobs(session: AsyncSession) -> int:
    """Mark jobs left queued or processing by a previous process as failed.

    Runs are not resumable, so such jobs can never finish. Must run before
    any job task is started.

    Returns:
        Number of jobs marked failed.
    """
    result = await session.execute(
        select(TemplateJob).where(TemplateJob.status.in_(ACTIVE_STATES))
    )
    jobs = result.scalars().all()
    for job in jobs:
        JobStateMachine(job).fail(INTERRUPTED_MESSAGE)
    if jobs:
        await session.commit()
        logger.warning(f"Marked {len(jobs)} interrupted template jobs as failed")
    return len(jobs)
