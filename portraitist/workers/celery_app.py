# pyright: reportMissingImports=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownParameterType=false
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from portraitist.core.config import Settings, settings


_TASKS_MODULE = "portraitist.workers.tasks.maintenance"

# (beat entry, task function name, schedule)
_PERIODIC: tuple[tuple[str, str, crontab], ...] = (
    ("purge-soft-deleted-files-hourly", "purge_soft_deleted_files", crontab(minute="17")),
    ("cleanup-expired-sessions-daily", "cleanup_expired_sessions", crontab(minute="5", hour="3")),
    ("expire-stale-generations", "expire_stale_generations", crontab(minute="*/15")),
)


def create_celery_app(s: Settings) -> Celery:
    app = Celery(
        "portraitist",
        broker=s.celery_broker_url,
        backend=s.celery_result_backend or s.celery_broker_url,
        include=[_TASKS_MODULE],
    )

    app.conf.task_always_eager = s.celery_task_always_eager
    app.conf.task_eager_propagates = s.celery_task_eager_propagates

    app.conf.timezone = "UTC"
    app.conf.enable_utc = True
    app.conf.accept_content = ["json"]
    app.conf.task_serializer = "json"
    app.conf.result_serializer = "json"
    app.conf.result_expires = 24 * 3600
    # Maintenance jobs are idempotent; redeliver if a worker dies mid-run.
    app.conf.task_acks_late = True
    app.conf.worker_prefetch_multiplier = 1

    app.conf.beat_schedule = {
        entry: {"task": f"{_TASKS_MODULE}.{func}", "schedule": schedule, "args": ()}
        for entry, func, schedule in _PERIODIC
    }

    return app


celery_app = create_celery_app(settings)
