"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.core.config import get_settings
from app.worker.tasks import get_redis_settings, reset_credits, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [reset_credits]
    cron_jobs = [
        cron(reset_credits, hour={get_settings().credit_reset_hour}, minute={0}, second={0}, unique=True),
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
