from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import math
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from portraitist.core.errors import NotFound, PermissionDenied, ValidationFailed
from portraitist.db.models import GENERATION_STATUSES, IMAGE_TYPES, Generation, Image
from portraitist.services.identity import Identity


T = TypeVar("T")

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)


def paginate(page: int, limit: int) -> tuple[int, int, int]:
    """Clamp ``page``/``limit`` and return ``(page, limit, offset)``."""
    page = max(1, int(page))
    limit = max(1, min(MAX_PAGE_LIMIT, int(limit)))
    return page, limit, (page - 1) * limit


def owner_clause(model: type[Image] | type[Generation], identity: Identity) -> ColumnElement[bool]:
    if identity.is_user:
        return model.user_id == identity.owner_id
    return model.anonymous_id == identity.owner_id


def _count(db: Session, *where: ColumnElement[bool], model: type[Image] | type[Generation]) -> int:
    return int(db.execute(select(func.count()).select_from(model).where(*where)).scalar_one())


def list_images(
    db: Session,
    identity: Identity,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    image_type: str | None = None,
    public_only: bool = False,
) -> Page[Image]:
    page, limit, offset = paginate(page, limit)
    where: list[ColumnElement[bool]] = [owner_clause(Image, identity), Image.is_deleted.is_(False)]
    if image_type is not None:
        if image_type not in IMAGE_TYPES:
            raise ValidationFailed("Invalid image type", details=f"type={image_type!r}")
        where.append(Image.type == image_type)
    if public_only:
        where.append(Image.is_public.is_(True))

    total = _count(db, *where, model=Image)
    rows = (
        db.execute(
            select(Image)
            .where(*where)
            .order_by(Image.created_at.desc(), Image.id.desc())
            .offset(offset)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return Page(items=list(rows), total=total, page=page, limit=limit)


def list_generations(
    db: Session,
    identity: Identity,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    status: str | None = None,
) -> Page[Generation]:
    page, limit, offset = paginate(page, limit)
    where: list[ColumnElement[bool]] = [owner_clause(Generation, identity)]
    if status is not None:
        if status not in GENERATION_STATUSES:
            raise ValidationFailed("Invalid status", details=f"status={status!r}")
        where.append(Generation.status == status)

    total = _count(db, *where, model=Generation)
    rows = (
        db.execute(
            select(Generation)
            .where(*where)
            .order_by(Generation.created_at.desc(), Generation.id.desc())
            .offset(offset)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return Page(items=list(rows), total=total, page=page, limit=limit)


def list_public_images(
    db: Session, *, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT
) -> Page[Image]:
    page, limit, offset = paginate(page, limit)
    where = (Image.is_public.is_(True), Image.is_deleted.is_(False))
    total = _count(db, *where, model=Image)
    rows = (
        db.execute(
            select(Image)
            .where(*where)
            .order_by(Image.created_at.desc(), Image.id.desc())
            .offset(offset)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return Page(items=list(rows), total=total, page=page, limit=limit)


def generation_stats(db: Session, identity: Identity) -> dict[str, Any]:
    rows = db.execute(
        select(Generation.status, func.count(), func.coalesce(func.sum(Generation.credits_spent), 0))
        .where(owner_clause(Generation, identity))
        .group_by(Generation.status)
    ).all()

    by_status = {s: 0 for s in GENERATION_STATUSES}
    credits_spent = 0
    for status, count, spent in rows:
        by_status[str(status)] = int(count)
        credits_spent += int(spent or 0)
    # Refunded generations did not cost anything in the end.
    refunded = db.execute(
        select(func.coalesce(func.sum(Generation.credits_spent), 0)).where(
            owner_clause(Generation, identity),
            Generation.status.in_(("failed", "cancelled")),
        )
    ).scalar_one()

    total = sum(by_status.values())
    success_rate = round(by_status["completed"] / total * 100, 2) if total else 0
    return {
        "total": total,
        "by_status": by_status,
        "credits_spent": credits_spent - int(refunded or 0),
        "success_rate": success_rate,
    }


def _get_live_image(db: Session, filename: str) -> Image:
    image = db.execute(select(Image).where(Image.filename == filename)).scalar_one_or_none()
    if image is None or image.is_deleted:
        raise NotFound("Image not found")
    return image


def get_owned_image(db: Session, identity: Identity, filename: str) -> Image:
    """Return the image for its owner; anyone may read a public image.

    Missing and soft-deleted rows are 404, a foreign private image is 403.
    Reads of a public image by someone else count as a view.
    """
    image = _get_live_image(db, filename)
    if identity.owns(user_id=image.user_id, anonymous_id=image.anonymous_id):
        return image
    if not image.is_public:
        raise PermissionDenied("Access denied")

    _ = db.execute(
        update(Image)
        .where(Image.id == image.id)
        .values(views_count=Image.views_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(image)
    return image


def _require_owner(db: Session, identity: Identity, filename: str) -> Image:
    image = _get_live_image(db, filename)
    if not identity.owns(user_id=image.user_id, anonymous_id=image.anonymous_id):
        raise PermissionDenied("Access denied")
    return image


def soft_delete_image(db: Session, identity: Identity, filename: str) -> Image:
    """Mark an owned image deleted. The file stays until the purge job runs."""
    image = _require_owner(db, identity, filename)
    image.is_deleted = True
    image.deleted_at = _now_utc()
    db.commit()
    db.refresh(image)
    return image


def update_image(
    db: Session,
    identity: Identity,
    filename: str,
    *,
    is_public: bool | None = None,
    prompt: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Image:
    image = _require_owner(db, identity, filename)
    if is_public is not None:
        image.is_public = bool(is_public)
    if prompt is not None:
        image.prompt = prompt
    if metadata is not None:
        image.meta = {**(image.meta or {}), **metadata}
    db.commit()
    db.refresh(image)
    return image


def like_image(db: Session, identity: Identity, filename: str) -> Image:
    image = _get_live_image(db, filename)
    if not image.is_public and not identity.owns(
        user_id=image.user_id, anonymous_id=image.anonymous_id
    ):
        raise PermissionDenied("Access denied")
    _ = db.execute(
        update(Image)
        .where(Image.id == image.id)
        .values(likes_count=Image.likes_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(image)
    return image
