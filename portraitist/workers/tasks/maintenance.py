# pyright: reportUnknownVariableType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUntypedFunctionDecorator=false
from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from portraitist.core.config import settings
from portraitist.db.models import Image
from portraitist.db.session import session_scope
from portraitist.services.generations import expire_stale_generations as _expire_stale
from portraitist.services.identity import expire_anonymous_sessions
from portraitist.services.sessions import SessionService
from portraitist.workers.celery_app import celery_app


logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def purge_files(db: Session, *, retention: timedelta, now: datetime | None = None) -> int:
    """Remove files of images soft-deleted before ``now - retention``.

    Generated images also lose the unwatermarked copy kept under the
    protected directory.

    Rows stay for history; ``file_purged_at`` marks them done. A missing file
    counts as purged.
    """
    current = now or _now_utc()
    rows = (
        db.execute(
            select(Image).where(
                Image.is_deleted.is_(True),
                Image.file_purged_at.is_(None),
                Image.deleted_at <= current - retention,
            )
        )
        .scalars()
        .all()
    )
    purged = 0
    for image in rows:
        paths = [image.file_path]
        original = (image.meta or {}).get("original_path")
        if isinstance(original, str) and original:
            paths.append(original)
        try:
            for path in paths:
                Path(path).unlink(missing_ok=True)
        except OSError:
            logger.warning("purge failed image_id=%s paths=%s", image.id, paths, exc_info=True)
            continue
        image.file_purged_at = current
        purged += 1
    db.commit()
    return purged


def cleanup_sessions(db: Session, *, now: datetime | None = None) -> dict[str, int]:
    return {
        "auth_sessions": SessionService(settings).cleanup_expired(db, now=now),
        "anonymous_sessions": expire_anonymous_sessions(db, now=now),
    }


def expire_generations(db: Session, *, stale_after: timedelta, now: datetime | None = None) -> int:
    return _expire_stale(db, older_than=(now or _now_utc()) - stale_after)


@celery_app.task(name="portraitist.workers.tasks.maintenance.purge_soft_deleted_files")
def purge_soft_deleted_files() -> dict[str, object]:
    with session_scope() as db:
        purged = purge_files(
            db, retention=timedelta(days=settings.soft_deleted_file_retention_days)
        )
    logger.info("purged soft-deleted files count=%s", purged)
    return {"ok": True, "purged": purged}


@celery_app.task(name="portraitist.workers.tasks.maintenance.cleanup_expired_sessions")
def cleanup_expired_sessions() -> dict[str, object]:
    with session_scope() as db:
        removed = cleanup_sessions(db)
    logger.info(
        "expired sessions removed auth=%s anonymous=%s",
        removed["auth_sessions"],
        removed["anonymous_sessions"],
    )
    return {"ok": True, **removed}


@celery_app.task(name="portraitist.workers.tasks.maintenance.expire_stale_generations")
def expire_stale_generations() -> dict[str, object]:
    with session_scope() as db:
        expired = expire_generations(
            db, stale_after=timedelta(hours=settings.generation_stale_after_hours)
        )
    if expired:
        logger.warning("stale generations failed and refunded count=%s", expired)
    return {"ok": True, "expired": expired}
