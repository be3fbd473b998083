"""arq worker runner.

Run with: python -m docparse.queue.worker
Or: arq docparse.queue.tasks.WorkerSettings
"""

import logging

from arq import run_worker
from arq.connections import RedisSettings

from docparse.queue.tasks import WorkerSettings
from docparse.shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_worker(settings: Settings) -> type[WorkerSettings]:
    """Apply queue limits and the Redis DSN from settings to ``WorkerSettings``."""
    WorkerSettings.redis_settings = RedisSettings.from_dsn(settings.redis_url)
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    logger.info(
        f"Worker configured: redis={settings.redis_url}, max_jobs={settings.queue_max_jobs}, "
        f"job_timeout={settings.queue_job_timeout}s"
    )
    return WorkerSettings


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    run_worker(configure_worker(settings))  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
