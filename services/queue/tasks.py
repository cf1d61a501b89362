"""arq task definitions for the invoice pipeline.

Every pipeline event is delivered to ``dispatch_event``; the arq job id is
the event's dedup key, so arq itself refuses duplicate deliveries. A cron
job resumes work whose scheduled event was lost (worker crash, Redis
restart) from the persisted records.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings
from arq.cron import CronJob

from services.queue.events import Event
from services.shared.config import get_settings
from services.shared.context import PipelineContext, build_context
from services.shared.logging import configure_logging

logger = logging.getLogger(__name__)


async def dispatch_event(ctx: dict[str, Any], event: dict[str, Any]) -> bool:
    """Hand one serialized event to the dispatcher.

    Args:
        ctx: arq context (holds the pipeline built at startup)
        event: Event as produced by ``Event.model_dump(mode="json")``

    Returns:
        True if the handler completed without a pipeline error
    """
    pipeline: PipelineContext = ctx["pipeline"]
    parsed = Event.model_validate(event)
    logger.info(f"Dispatching {parsed.name} ({parsed.dedup_key})")
    return await pipeline.dispatcher.dispatch(parsed)


async def resume_pending_work(ctx: dict[str, Any]) -> dict[str, int]:
    """Resume due extraction retries and submissions from persisted state."""
    pipeline: PipelineContext = ctx["pipeline"]
    jobs = await pipeline.orchestrator.resume_due_jobs()
    submissions = await pipeline.submissions.resume_due()
    if jobs or submissions:
        logger.info(f"Resumed {jobs} extraction job(s) and {submissions} submission(s)")
    return {"jobs": jobs, "submissions": submissions}


def resume_schedule(interval_seconds: int) -> CronJob:
    """Cron entry running ``resume_pending_work`` roughly every ``interval_seconds``."""
    if interval_seconds < 60:
        step = max(interval_seconds, 1)
        return cron(resume_pending_work, second=set(range(0, 60, step)), unique=True)
    step = max(interval_seconds // 60, 1)
    return cron(resume_pending_work, minute=set(range(0, 60, step)), second=0, unique=True)


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - build the pipeline once per worker."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("Initializing worker pipeline...")
    ctx["settings"] = settings
    ctx["pipeline"] = await build_context(settings, redis=ctx["redis"])
    logger.info("Worker pipeline initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - close platform connections."""
    logger.info("Worker shutting down...")
    pipeline: PipelineContext | None = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.close()


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - The resume cron job
    - Redis connection settings
    """

    functions = [dispatch_event]
    cron_jobs = [resume_schedule(30)]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> RedisSettings:
        """Get Redis settings from configuration."""
        return RedisSettings.from_dsn(get_settings().redis_url)
