"""arq worker runner.

Run with: python -m services.queue.worker
Or: arq services.queue.tasks.WorkerSettings

This module configures and runs the pipeline worker.
"""

import logging

from arq import run_worker

from services.queue.tasks import WorkerSettings, resume_schedule
from services.shared.config import get_settings
from services.shared.logging import configure_logging

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the arq worker."""
    settings = get_settings()
    configure_logging(settings)

    logger.info(f"Starting worker with Redis: {settings.redis_url}")
    logger.info(f"Max jobs: {settings.queue_max_jobs}")
    logger.info(f"Job timeout: {settings.queue_job_timeout}s")
    logger.info(f"Resume interval: {settings.resume_interval_seconds}s")

    # Update worker settings from config
    WorkerSettings.redis_settings = WorkerSettings.get_redis_settings()
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    WorkerSettings.cron_jobs = [resume_schedule(settings.resume_interval_seconds)]

    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
