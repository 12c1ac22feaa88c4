# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
import uuid

from _pytest.monkeypatch import MonkeyPatch
from sqlalchemy import select

from portraitist.core.config import settings
from portraitist.db.models import AnonymousSession, AuthSession, Generation, Image, User
from portraitist.db.session import SessionLocal
from portraitist.services import credits
from portraitist.services.sessions import SessionService
from portraitist.workers.celery_app import celery_app
from portraitist.workers.tasks import maintenance


def _user(db_credits: int = 5) -> str:
    with SessionLocal() as db:
        user = User(
            google_id=f"g-{uuid.uuid4().hex}",
            email=f"test-{uuid.uuid4().hex}@example.com",
            email_verified=True,
            credits=db_credits,
        )
        db.add(user)
        db.commit()
        return user.id


def _image(user_id: str, *, deleted_at: datetime | None) -> tuple[str, Path]:
    name = f"{user_id}-{uuid.uuid4().hex}.png"
    path = Path(settings.upload_dir) / name
    _ = path.write_bytes(b"png")
    with SessionLocal() as db:
        image = Image(
            user_id=user_id,
            filename=name,
            file_path=str(path),
            file_size=3,
            mime_type="image/png",
            type="original",
            meta={},
            is_deleted=deleted_at is not None,
            deleted_at=deleted_at,
        )
        db.add(image)
        db.commit()
        return image.id, path


def test_purge_removes_only_files_past_retention() -> None:
    user_id = _user()
    now = datetime.utcnow()
    old_id, old_path = _image(user_id, deleted_at=now - timedelta(days=8))
    recent_id, recent_path = _image(user_id, deleted_at=now - timedelta(days=1))
    _live_id, live_path = _image(user_id, deleted_at=None)

    with SessionLocal() as db:
        purged = maintenance.purge_files(db, retention=timedelta(days=7), now=now)
    assert purged == 1
    assert not old_path.exists()
    assert recent_path.exists()
    assert live_path.exists()

    with SessionLocal() as db:
        old = db.get(Image, old_id)
        recent = db.get(Image, recent_id)
        assert old is not None and old.file_purged_at is not None
        assert recent is not None and recent.file_purged_at is None

    # Already purged rows are skipped on the next run.
    with SessionLocal() as db:
        assert maintenance.purge_files(db, retention=timedelta(days=7), now=now) == 0


def test_purge_removes_unwatermarked_copy_of_generated_image() -> None:
    user_id = _user()
    now = datetime.utcnow()
    name = f"processed-{uuid.uuid4().hex}.png"
    public = Path(settings.upload_dir) / name
    protected = Path(settings.protected_dir) / name
    _ = public.write_bytes(b"marked")
    _ = protected.write_bytes(b"clean")
    with SessionLocal() as db:
        image = Image(
            user_id=user_id,
            filename=name,
            file_path=str(public),
            file_size=6,
            mime_type="image/png",
            type="generated",
            meta={"watermarked": True, "original_path": str(protected)},
            is_deleted=True,
            deleted_at=now - timedelta(days=8),
        )
        db.add(image)
        db.commit()
        image_id = image.id

    with SessionLocal() as db:
        assert maintenance.purge_files(db, retention=timedelta(days=7), now=now) == 1
    assert not public.exists()
    assert not protected.exists()
    with SessionLocal() as db:
        purged = db.get(Image, image_id)
        assert purged is not None and purged.file_purged_at is not None


def test_stale_generations_are_failed_and_refunded() -> None:
    user_id = _user(db_credits=5)
    with SessionLocal() as db:
        stale = Generation(
            user_id=user_id,
            prompt="portrait",
            parameters={},
            status="processing",
            credits_spent=1,
            api_provider="fake",
            created_at=datetime.utcnow() - timedelta(hours=30),
        )
        fresh = Generation(
            user_id=user_id,
            prompt="portrait",
            parameters={},
            status="pending",
            credits_spent=1,
            api_provider="fake",
        )
        db.add_all([stale, fresh])
        db.commit()
        stale_id, fresh_id = stale.id, fresh.id

    with SessionLocal() as db:
        expired = maintenance.expire_generations(db, stale_after=timedelta(hours=24))
    assert expired == 1

    with SessionLocal() as db:
        stale_row = db.get(Generation, stale_id)
        fresh_row = db.get(Generation, fresh_id)
        assert stale_row is not None and stale_row.status == "failed"
        assert stale_row.error_message == "Generation timed out"
        assert fresh_row is not None and fresh_row.status == "pending"
        assert credits.balance(db, user_id) == 6


def test_cleanup_removes_expired_and_revoked_sessions() -> None:
    user_id = _user()
    now = datetime.utcnow()
    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user is not None
        service = SessionService(settings)
        keep = service.create(db, user, user_agent=None, ip=None)
        gone = service.create(db, user, user_agent=None, ip=None)
        _ = service.revoke(db, gone.session_id)
        db.add(
            AnonymousSession(
                anonymous_id=str(uuid.uuid4()),
                request_count=0,
                last_activity=now - timedelta(days=40),
                expires_at=now - timedelta(days=10),
            )
        )
        db.commit()

    with SessionLocal() as db:
        removed = maintenance.cleanup_sessions(db)
    assert removed == {"auth_sessions": 1, "anonymous_sessions": 1}

    with SessionLocal() as db:
        ids = db.execute(select(AuthSession.id)).scalars().all()
        assert list(ids) == [keep.session_id]


def test_maintenance_tasks_run_eagerly(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
    result = maintenance.purge_soft_deleted_files.delay().get()
    assert result == {"ok": True, "purged": 0}

    result = maintenance.cleanup_expired_sessions.delay().get()
    assert result == {"ok": True, "auth_sessions": 0, "anonymous_sessions": 0}


def test_beat_schedule_names_registered_tasks() -> None:
    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert scheduled == {
        maintenance.purge_soft_deleted_files.name,
        maintenance.cleanup_expired_sessions.name,
        maintenance.expire_stale_generations.name,
    }
