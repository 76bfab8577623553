from __future__ import annotations

# pyright: reportMissingTypeStubs=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false

import os
import time
from typing import Literal, cast

import redis
from celery import Celery
from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text

from parley.core.config import settings
from parley.db.session import engine
from parley.workers.celery_app import celery_app

router = APIRouter(tags=["health"])


class DependencyStatus(BaseModel):
    status: Literal["ok", "error", "skipped"]
    latency_ms: int | None = None
    detail: str | None = Field(default=None, description="Short diagnostic; never carries secrets")
    mode: str | None = Field(default=None, description="worker mode: eager/remote")


class HealthDependencies(BaseModel):
    db: DependencyStatus
    redis: DependencyStatus
    worker: DependencyStatus


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"] = Field(
        description="Overall status; ok only when no dependency reports error"
    )
    dependencies: HealthDependencies


_DEFAULT_TIMEOUT_S = 0.5


def _safe_exc_detail(exc: Exception) -> str:
    return type(exc).__name__


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _check_db() -> DependencyStatus:
    start = time.perf_counter()
    try:
        with engine.connect() as conn:
            _ = conn.execute(text("SELECT 1")).scalar_one()
    except Exception as exc:
        return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail=_safe_exc_detail(exc))
    return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start))


def _check_redis(*, timeout_s: float) -> DependencyStatus:
    if settings.push_transport != "redis":
        return DependencyStatus(status="skipped", detail="push_transport=local")

    start = time.perf_counter()
    client = redis.Redis.from_url(
        settings.redis_url,
        socket_connect_timeout=timeout_s,
        socket_timeout=timeout_s,
    )
    try:
        ok = bool(client.ping())
    except Exception as exc:
        return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail=_safe_exc_detail(exc))
    finally:
        client.close()
    if ok:
        return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start))
    return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail="unexpected_response")


def _check_worker(*, timeout_s: float) -> DependencyStatus:
    celery: Celery = celery_app
    if bool(getattr(celery.conf, "task_always_eager", False)):
        return DependencyStatus(status="ok", mode="eager")

    start = time.perf_counter()
    try:
        replies_obj = celery.control.ping(timeout=timeout_s)
        replies = cast(list[dict[str, str]] | None, replies_obj)
    except Exception as exc:
        return DependencyStatus(
            status="error",
            latency_ms=_elapsed_ms(start),
            mode="remote",
            detail=_safe_exc_detail(exc),
        )

    if replies:
        return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start), mode="remote")
    return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), mode="remote", detail="no_workers")


@router.get("/health", response_model=HealthResponse, operation_id="health")
def health() -> HealthResponse:
    timeout_s = float(os.getenv("HEALTH_TIMEOUT_S", str(_DEFAULT_TIMEOUT_S)))

    dependencies = HealthDependencies(
        db=_check_db(),
        redis=_check_redis(timeout_s=timeout_s),
        worker=_check_worker(timeout_s=timeout_s),
    )
    overall_ok = all(
        d.status != "error" for d in [dependencies.db, dependencies.redis, dependencies.worker]
    )
    status: Literal["ok", "degraded"] = "ok" if overall_ok else "degraded"
    return HealthResponse(status=status, dependencies=dependencies)
