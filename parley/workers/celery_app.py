# pyright: reportMissingImports=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownParameterType=false
from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from parley.core.config import settings


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    return default


def create_celery_app() -> Celery:
    broker_url = os.getenv("CELERY_BROKER_URL", settings.redis_url)
    result_backend = os.getenv("CELERY_RESULT_BACKEND", broker_url)

    app = Celery(
        "parley",
        broker=broker_url,
        backend=result_backend,
        include=["parley.workers.tasks.catalog"],
    )

    app.conf.task_always_eager = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
    app.conf.task_eager_propagates = _env_bool("CELERY_TASK_EAGER_PROPAGATES", True)

    app.conf.timezone = os.getenv("CELERY_TIMEZONE", "UTC")
    app.conf.enable_utc = True
    app.conf.accept_content = ["json"]
    app.conf.task_serializer = "json"
    app.conf.result_serializer = "json"


    app.conf.beat_schedule = {
        "catalog-daily-refresh": {
            "task": "parley.workers.tasks.catalog.refresh_all_providers",
            "schedule": crontab(hour=3, minute=0),
            "kwargs": {"source": "scheduled"},
        },
        "realtime-purge-expired-connections": {
            "task": "parley.workers.tasks.catalog.purge_expired_connections",
            "schedule": crontab(minute=15),
            "args": (),
        },
    }

    return app


celery_app = create_celery_app()
