"""Run ARQ worker. Usage: python -m udin.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from udin.worker.tasks import get_redis_settings, shutdown, startup, sweep_compensations


class WorkerSettings:
    functions = [sweep_compensations]
    cron_jobs = [
        cron(sweep_compensations, second=0),  # every minute at :00
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()


if __name__ == "__main__":
    run_worker(WorkerSettings)
