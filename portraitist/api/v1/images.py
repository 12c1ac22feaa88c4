# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownMemberType=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from portraitist.api.deps import (
    get_counted_request_context,
    get_orchestrator,
    get_request_context,
)
from portraitist.api.envelope import Envelope, ok
from portraitist.core.config import settings
from portraitist.core.errors import ValidationFailed
from portraitist.db.models import Generation, Image
from portraitist.db.session import get_db
from portraitist.services import credits, gallery
from portraitist.services.gallery import Page
from portraitist.services.generations import GenerationOrchestrator
from portraitist.services.identity import RequestContext
from portraitist.services.rate_limit import (
    rate_limit_key,
    status_rate_limiter,
    upload_rate_limiter,
)
from portraitist.services.uploads import is_safe_filename


router = APIRouter(prefix="/images", tags=["images"])

T = TypeVar("T")

_upload_limiter = upload_rate_limiter(settings)
_status_limiter = status_rate_limiter(settings)


class ImageOut(BaseModel):
    id: str
    filename: str
    original_filename: str | None
    url: str
    type: str
    mime_type: str
    file_size: int
    prompt: str | None
    is_public: bool
    views_count: int
    likes_count: int
    metadata: dict[str, Any]
    analysis: dict[str, Any] | None
    created_at: datetime


class GenerationOut(BaseModel):
    id: str
    request_id: str | None
    status: str
    progress: float | None = None
    prompt: str
    error_message: str | None
    credits_spent: int
    processing_time: int | None
    api_provider: str
    api_model: str | None
    source_image_id: str | None
    result_filename: str | None
    result_url: str | None
    created_at: datetime
    completed_at: datetime | None


class ProcessOut(BaseModel):
    generation: GenerationOut
    original_image: ImageOut
    reused: bool
    credits_remaining: int | None


class PageOut(BaseModel, Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    total_pages: int


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    credits_spent: int
    success_rate: float


class ImageUpdate(BaseModel):
    is_public: bool | None = None
    prompt: str | None = Field(None, max_length=4000)
    metadata: dict[str, Any] | None = None


class DeletedOut(BaseModel):
    filename: str
    deleted: bool


def _url(filename: str) -> str:
    return f"/uploads/{filename}"


def _image_out(image: Image) -> ImageOut:
    return ImageOut(
        id=image.id,
        filename=image.filename,
        original_filename=image.original_filename,
        url=_url(image.filename),
        type=image.type,
        mime_type=image.mime_type,
        file_size=int(image.file_size),
        prompt=image.prompt,
        is_public=bool(image.is_public),
        views_count=int(image.views_count),
        likes_count=int(image.likes_count),
        metadata=dict(image.meta or {}),
        analysis=image.analysis_data,
        created_at=image.created_at,
    )


def _generation_out(generation: Generation, *, progress: float | None = None) -> GenerationOut:
    return GenerationOut(
        id=generation.id,
        request_id=generation.external_request_id,
        status=generation.status,
        progress=progress,
        prompt=generation.prompt,
        error_message=generation.error_message,
        credits_spent=int(generation.credits_spent),
        processing_time=generation.processing_time,
        api_provider=generation.api_provider,
        api_model=generation.api_model,
        source_image_id=generation.image_id,
        result_filename=generation.generated_filename,
        result_url=_url(generation.generated_filename) if generation.generated_filename else None,
        created_at=generation.created_at,
        completed_at=generation.completed_at,
    )


def _page_out(page: Page[Any], items: list[T]) -> PageOut[T]:
    return PageOut(
        items=items,
        page=page.page,
        limit=page.limit,
        total=page.total,
        total_pages=page.total_pages,
    )


def _checked_filename(filename: str) -> str:
    if not is_safe_filename(filename):
        raise ValidationFailed("Invalid filename")
    return filename


@router.post(
    "/process",
    response_model=Envelope[ProcessOut],
    status_code=status.HTTP_201_CREATED,
    operation_id="images_process",
)
async def images_process(
    image: UploadFile | None = File(None),
    prompt_mode: Literal["fixed", "analyze"] = Form("fixed"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_counted_request_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> Envelope[ProcessOut]:
    _upload_limiter.hit(
        db,
        key=rate_limit_key(scope="upload", ip=ctx.ip, identity=ctx.identity.owner_id),
        message="Too many uploads, please try again later",
    )
    if image is None:
        raise ValidationFailed("No file uploaded")

    try:
        outcome = await orchestrator.submit(
            db,
            ctx,
            stream=image.file,
            filename=image.filename,
            content_type=image.content_type,
            prompt_mode=prompt_mode,
        )
    finally:
        await image.close()

    remaining = credits.balance(db, ctx.user.id) if ctx.user is not None else None
    return ok(
        ProcessOut(
            generation=_generation_out(outcome.generation),
            original_image=_image_out(outcome.source_image),
            reused=outcome.reused,
            credits_remaining=remaining,
        )
    )


@router.get(
    "/generations/{request_id}",
    response_model=Envelope[GenerationOut],
    operation_id="images_generation_status",
)
async def images_generation_status(
    request_id: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> Envelope[GenerationOut]:
    _status_limiter.hit(
        db,
        key=rate_limit_key(scope="status", ip=ctx.ip, identity=ctx.identity.owner_id),
    )
    outcome = await orchestrator.poll(db, ctx, request_id)
    return ok(_generation_out(outcome.generation, progress=outcome.progress))


@router.post(
    "/generations/{request_id}/cancel",
    response_model=Envelope[GenerationOut],
    operation_id="images_generation_cancel",
)
async def images_generation_cancel(
    request_id: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> Envelope[GenerationOut]:
    generation = orchestrator.cancel(db, ctx, request_id)
    return ok(_generation_out(generation))


@router.get(
    "",
    response_model=Envelope[PageOut[ImageOut] | PageOut[GenerationOut]],
    operation_id="images_list",
)
async def images_list(
    kind: Literal["images", "generations"] = Query("images"),
    page: int = Query(1, ge=1),
    limit: int = Query(gallery.DEFAULT_PAGE_LIMIT, ge=1, le=gallery.MAX_PAGE_LIMIT),
    image_type: str | None = Query(None, alias="type"),
    generation_status: str | None = Query(None, alias="status"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> Envelope[PageOut[ImageOut] | PageOut[GenerationOut]]:
    if kind == "generations":
        gens = gallery.list_generations(
            db, ctx.identity, page=page, limit=limit, status=generation_status
        )
        return ok(_page_out(gens, [_generation_out(g) for g in gens.items]))

    images = gallery.list_images(db, ctx.identity, page=page, limit=limit, image_type=image_type)
    return ok(_page_out(images, [_image_out(i) for i in images.items]))


@router.get("/stats", response_model=Envelope[StatsOut], operation_id="images_stats")
async def images_stats(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> Envelope[StatsOut]:
    return ok(StatsOut(**gallery.generation_stats(db, ctx.identity)))


@router.get(
    "/public",
    response_model=Envelope[PageOut[ImageOut]],
    operation_id="images_public_list",
)
async def images_public_list(
    page: int = Query(1, ge=1),
    limit: int = Query(gallery.DEFAULT_PAGE_LIMIT, ge=1, le=gallery.MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
) -> Envelope[PageOut[ImageOut]]:
    images = gallery.list_public_images(db, page=page, limit=limit)
    return ok(_page_out(images, [_image_out(i) for i in images.items]))


@router.get("/{filename}", response_model=Envelope[ImageOut], operation_id="images_get")
async def images_get(
    filename: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> Envelope[ImageOut]:
    image = gallery.get_owned_image(db, ctx.identity, _checked_filename(filename))
    return ok(_image_out(image))


@router.patch("/{filename}", response_model=Envelope[ImageOut], operation_id="images_update")
async def images_update(
    filename: str,
    payload: ImageUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> Envelope[ImageOut]:
    image = gallery.update_image(
        db,
        ctx.identity,
        _checked_filename(filename),
        is_public=payload.is_public,
        prompt=payload.prompt,
        metadata=payload.metadata,
    )
    return ok(_image_out(image))


@router.post(
    "/{filename}/like", response_model=Envelope[ImageOut], operation_id="images_like"
)
async def images_like(
    filename: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> Envelope[ImageOut]:
    image = gallery.like_image(db, ctx.identity, _checked_filename(filename))
    return ok(_image_out(image))


@router.delete("/{filename}", response_model=Envelope[DeletedOut], operation_id="images_delete")
async def images_delete(
    filename: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> Envelope[DeletedOut]:
    image = gallery.soft_delete_image(db, ctx.identity, _checked_filename(filename))
    return ok(DeletedOut(filename=image.filename, deleted=bool(image.is_deleted)))
