# pyright: reportMissingTypeStubs=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

import os
import socket
import ssl
import time
from typing import Literal, cast
from urllib.parse import urlparse

from celery import Celery
from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from portraitist.core.config import settings
from portraitist.core.version import get_app_version
from portraitist.db.session import engine
from portraitist.workers.celery_app import celery_app

router = APIRouter(tags=["health"])


class DependencyStatus(BaseModel):
    status: Literal["ok", "error"]
    latency_ms: int | None = None
    detail: str | None = Field(default=None, description="Short diagnostic, never secrets")
    mode: str | None = Field(default=None, description="Worker mode: eager/remote")


class HealthDependencies(BaseModel):
    db: DependencyStatus
    broker: DependencyStatus
    worker: DependencyStatus


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"] = Field(
        description="Overall status; ok only when every dependency is ok"
    )
    version: str
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
    except SQLAlchemyError as exc:
        return DependencyStatus(
            status="error", latency_ms=_elapsed_ms(start), detail=_safe_exc_detail(exc)
        )
    return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start))


def _resp_encode_command(*parts: str) -> bytes:
    out = [f"*{len(parts)}\r\n".encode("utf-8")]
    for p in parts:
        b = p.encode("utf-8")
        out.append(f"${len(b)}\r\n".encode("utf-8"))
        out.append(b)
        out.append(b"\r\n")
    return b"".join(out)


def _check_broker(*, timeout_s: float, broker_url: str | None = None) -> DependencyStatus:
    start = time.perf_counter()

    parsed = urlparse(broker_url or settings.celery_broker_url)
    if parsed.scheme not in {"redis", "rediss"}:
        return DependencyStatus(
            status="error", detail=f"unsupported_scheme:{parsed.scheme or '<none>'}"
        )

    host = parsed.hostname or "localhost"
    port = parsed.port or 6379

    try:
        with socket.create_connection((host, port), timeout=timeout_s) as raw_sock:
            raw_sock.settimeout(timeout_s)
            sock: socket.socket = raw_sock
            if parsed.scheme == "rediss":
                sock = ssl.create_default_context().wrap_socket(raw_sock, server_hostname=host)
                sock.settimeout(timeout_s)

            with sock.makefile("rwb", buffering=0) as f:
                if parsed.password is not None:
                    auth = (
                        ("AUTH", parsed.username, parsed.password)
                        if parsed.username is not None
                        else ("AUTH", parsed.password)
                    )
                    _ = f.write(_resp_encode_command(*auth))
                    if not f.readline(1024).startswith(b"+OK"):
                        return DependencyStatus(
                            status="error", latency_ms=_elapsed_ms(start), detail="auth_failed"
                        )

                _ = f.write(_resp_encode_command("PING"))
                line = f.readline(1024)
    except OSError as exc:
        return DependencyStatus(
            status="error", latency_ms=_elapsed_ms(start), detail=_safe_exc_detail(exc)
        )

    if line.startswith(b"+PONG") or line.startswith(b"+OK"):
        return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start))
    detail = "redis_error" if line.startswith(b"-") else "unexpected_response"
    return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail=detail)


def _check_worker(*, timeout_s: float) -> DependencyStatus:
    celery: Celery = celery_app
    if bool(getattr(celery.conf, "task_always_eager", False)):
        return DependencyStatus(status="ok", mode="eager")

    start = time.perf_counter()
    try:
        replies = cast(list[dict[str, str]] | None, celery.control.ping(timeout=timeout_s))
    except Exception as exc:  # kombu raises transport-specific errors
        return DependencyStatus(
            status="error",
            latency_ms=_elapsed_ms(start),
            mode="remote",
            detail=_safe_exc_detail(exc),
        )

    if replies:
        return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start), mode="remote")
    return DependencyStatus(
        status="error", latency_ms=_elapsed_ms(start), mode="remote", detail="no_workers"
    )


@router.get("/health", response_model=HealthResponse, operation_id="health")
def health() -> HealthResponse:
    timeout_s = float(os.getenv("HEALTH_TIMEOUT_S", str(_DEFAULT_TIMEOUT_S)))

    dependencies = HealthDependencies(
        db=_check_db(),
        broker=_check_broker(timeout_s=timeout_s),
        worker=_check_worker(timeout_s=timeout_s),
    )
    overall_ok = all(
        d.status == "ok" for d in (dependencies.db, dependencies.broker, dependencies.worker)
    )
    status: Literal["ok", "degraded"] = "ok" if overall_ok else "degraded"
    return HealthResponse(status=status, version=get_app_version(), dependencies=dependencies)
