from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging
import os
from pathlib import Path
import secrets
from typing import Any, BinaryIO, Literal
import uuid

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from portraitist.core.config import Settings
from portraitist.core.errors import (
    AppError,
    NotFound,
    PermissionDenied,
    UpstreamError,
    ValidationFailed,
    VendorResponseError,
    VendorTimeout,
    VendorUnavailable,
)
from portraitist.db.models import GENERATION_OPEN_STATUSES, Generation, Image
from portraitist.metrics.prometheus import record_generation_transition
from portraitist.services import credits
from portraitist.services.analysis import VisionAnalyzer, analyze_and_generate_prompt
from portraitist.services.gallery import owner_clause
from portraitist.services.identity import RequestContext, check_daily_limit
from portraitist.services.uploads import (
    StoredUpload,
    discard,
    sanitize_owner,
    store_upload,
    validate_upload,
    verify_image,
)
from portraitist.services.vendors import GenerationVendor, SubmitRequest
from portraitist.services.watermark import WatermarkError, apply_watermark


logger = logging.getLogger(__name__)

PromptMode = Literal["fixed", "analyze"]

_ERROR_MESSAGE_MAX = 2000


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def _elapsed_ms(since: datetime, now: datetime) -> int:
    return max(0, int((now - since).total_seconds() * 1000))


@dataclass(frozen=True)
class SubmitOutcome:
    generation: Generation
    source_image: Image
    reused: bool = False


@dataclass(frozen=True)
class PollOutcome:
    generation: Generation
    progress: float


def transition(
    db: Session,
    generation_id: str,
    to_status: str,
    *,
    refund_credits: bool = True,
    reason: str | None = None,
    **fields: Any,
) -> bool:
    """Move an open generation to ``to_status``; return False if it was already closed.

    The status write is a single guarded UPDATE so only one caller can win a
    transition. A move to ``failed`` or ``cancelled`` refunds the spent credits
    in the same transaction. The caller commits.
    """
    if to_status in GENERATION_OPEN_STATUSES and to_status != "processing":
        raise ValueError(f"cannot transition to {to_status!r}")

    result = db.execute(
        update(Generation)
        .where(Generation.id == generation_id, Generation.status.in_(GENERATION_OPEN_STATUSES))
        .values(status=to_status, **fields)
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        return False

    if to_status in ("failed", "cancelled") and refund_credits:
        row = db.execute(
            select(Generation.user_id, Generation.credits_spent).where(
                Generation.id == generation_id
            )
        ).one()
        if row.user_id is not None and int(row.credits_spent) > 0:
            _ = credits.refund(
                db,
                user_id=row.user_id,
                amount=int(row.credits_spent),
                generation_id=generation_id,
                reason=reason or f"generation {to_status}",
            )

    record_generation_transition(to_status)
    return True


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp-{uuid.uuid4().hex}")
    try:
        with tmp.open("xb") as f:
            _ = f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        discard(tmp)
        raise


def result_filename(owner_id: str, *, now: datetime | None = None) -> str:
    ts = int((now or _now_utc()).replace(tzinfo=UTC).timestamp() * 1000)
    return f"processed-{ts}-{sanitize_owner(owner_id)}-{uuid.uuid4().hex[:8]}.png"


class GenerationOrchestrator:
    """Drives one upload through the vendor to a stored, watermarked result.

    Database transactions are kept short and never span a vendor call:
    submit commits the pending rows before talking to the vendor, and poll
    talks to the vendor before opening the transaction that records the result.
    """

    def __init__(
        self, settings: Settings, *, vendor: GenerationVendor, analyzer: VisionAnalyzer
    ) -> None:
        self._settings: Settings = settings
        self._vendor: GenerationVendor = vendor
        self._analyzer: VisionAnalyzer = analyzer
        self._upload_dir: Path = Path(settings.upload_dir)
        self._protected_dir: Path = Path(settings.protected_dir)

    # -- submit ----------------------------------------------------------

    def _intake(
        self,
        ctx: RequestContext,
        *,
        stream: BinaryIO,
        filename: str | None,
        content_type: str | None,
    ) -> tuple[StoredUpload, dict[str, Any]]:
        s = self._settings
        ext = validate_upload(
            filename,
            content_type,
            allowed_content_types=s.upload_allowed_content_types,
            allowed_extensions=s.upload_allowed_extensions,
        )
        stored = store_upload(
            stream,
            owner_id=ctx.identity.owner_id,
            original_filename=filename or "",
            content_type=content_type or "",
            ext=ext,
            upload_dir=self._upload_dir,
            max_bytes=s.upload_max_bytes,
        )
        try:
            width, height, fmt = verify_image(stored.path)
        except ValidationFailed:
            discard(stored.path)
            raise
        return stored, {"width": width, "height": height, "format": fmt}

    def _find_duplicate(self, db: Session, ctx: RequestContext, sha256: str) -> SubmitOutcome | None:
        row = db.execute(
            select(Generation, Image)
            .join(Image, Generation.image_id == Image.id)
            .where(
                owner_clause(Generation, ctx.identity),
                Image.content_sha256 == sha256,
                Image.is_deleted.is_(False),
                Generation.status.not_in(("failed", "cancelled")),
            )
            .order_by(Generation.created_at.desc())
            .limit(1)
        ).first()
        if row is None:
            return None
        return SubmitOutcome(generation=row[0], source_image=row[1], reused=True)

    async def _prompt(
        self, stored: StoredUpload, prompt_mode: PromptMode
    ) -> tuple[str, dict[str, Any] | None]:
        if prompt_mode == "analyze":
            analysis, prompt = await analyze_and_generate_prompt(
                self._analyzer, stored.path.read_bytes(), stored.mime_type
            )
            return prompt, (analysis or None)
        return self._settings.generation_prompt, None

    async def submit(
        self,
        db: Session,
        ctx: RequestContext,
        *,
        stream: BinaryIO,
        filename: str | None,
        content_type: str | None,
        prompt_mode: PromptMode = "fixed",
    ) -> SubmitOutcome:
        s = self._settings
        if not ctx.identity.is_user:
            check_daily_limit(ctx.anonymous_session, s.anonymous_daily_request_limit)

        stored, image_meta = self._intake(
            ctx, stream=stream, filename=filename, content_type=content_type
        )

        if s.generation_dedup_policy.strip().lower() == "reuse":
            existing = self._find_duplicate(db, ctx, stored.sha256)
            if existing is not None:
                discard(stored.path)
                logger.info(
                    "duplicate upload reused generation_id=%s", existing.generation.id
                )
                return existing

        prompt, analysis = await self._prompt(stored, prompt_mode)
        negative_prompt = s.generation_negative_prompt or None
        seed = secrets.randbelow(2**31)
        cost = s.generation_cost_credits if ctx.identity.is_user else 0

        try:
            image = Image(
                **ctx.identity.owner_columns(),
                filename=stored.filename,
                original_filename=stored.original_filename,
                file_path=str(stored.path),
                file_size=stored.size,
                mime_type=stored.mime_type,
                type="original",
                content_sha256=stored.sha256,
                analysis_data=analysis,
                prompt=prompt,
                meta=image_meta,
            )
            db.add(image)
            db.flush()

            generation = Generation(
                **ctx.identity.owner_columns(),
                image_id=image.id,
                prompt=prompt,
                negative_prompt=negative_prompt,
                parameters={"seed": seed, "prompt_mode": prompt_mode},
                status="pending",
                credits_spent=cost,
                api_provider=self._vendor.name,
                api_model=self._vendor.model,
            )
            db.add(generation)
            db.flush()

            if ctx.user is not None and cost > 0:
                _ = credits.debit(
                    db, user_id=ctx.user.id, amount=cost, generation_id=generation.id
                )
            db.commit()
        except BaseException:
            db.rollback()
            discard(stored.path)
            raise
        record_generation_transition("pending")

        try:
            result = await self._vendor.submit(
                SubmitRequest(
                    image_path=stored.path,
                    mime_type=stored.mime_type,
                    prompt=prompt,
                    negative_prompt=negative_prompt,
                    seed=seed,
                )
            )
        except UpstreamError as exc:
            self._abandon_submission(db, generation, image, exc)
            raise

        if result.request_id is not None:
            _ = transition(
                db,
                generation.id,
                "processing",
                external_request_id=result.request_id,
                parameters={**generation.parameters, "request_id": result.request_id},
            )
            db.commit()
            db.refresh(generation)
            logger.info(
                "generation submitted generation_id=%s provider=%s request_id=%s",
                generation.id,
                self._vendor.name,
                result.request_id,
            )
            return SubmitOutcome(generation=generation, source_image=image)

        local_request_id = f"{self._vendor.name}-{generation.id}"
        _ = transition(
            db,
            generation.id,
            "processing",
            external_request_id=local_request_id,
            parameters={
                **generation.parameters,
                "request_id": local_request_id,
                "synchronous": True,
            },
        )
        db.commit()
        db.refresh(generation)

        try:
            raw = result.image_bytes
            if raw is None:
                if result.result_url is None:
                    raise VendorResponseError(details=f"{self._vendor.name} submit: no result")
                raw = await self._vendor.download(result.result_url)
        except UpstreamError as exc:
            _ = self._fail(db, generation, exc.details or exc.error)
            raise

        generation = self._finalize(db, generation, raw)
        return SubmitOutcome(generation=generation, source_image=image)

    def _abandon_submission(
        self, db: Session, generation: Generation, image: Image, exc: AppError
    ) -> None:
        now = _now_utc()
        message = (exc.details or exc.error)[:_ERROR_MESSAGE_MAX]
        try:
            _ = transition(
                db,
                generation.id,
                "failed",
                reason="vendor submit failed",
                error_message=message,
                completed_at=now,
                processing_time=_elapsed_ms(generation.created_at, now),
            )
            image.is_deleted = True
            image.deleted_at = now
            image.file_purged_at = now
            db.commit()
        except BaseException:
            db.rollback()
            raise
        finally:
            discard(Path(image.file_path))
        logger.warning(
            "vendor submit failed generation_id=%s provider=%s error=%s",
            generation.id,
            self._vendor.name,
            message,
        )

    # -- poll ------------------------------------------------------------

    def _owned_generation(self, db: Session, ctx: RequestContext, request_id: str) -> Generation:
        generation = db.execute(
            select(Generation)
            .where(
                or_(
                    Generation.external_request_id == request_id,
                    Generation.id == request_id,
                )
            )
            .limit(1)
        ).scalar_one_or_none()
        if generation is None:
            raise NotFound("Generation not found")
        if not ctx.identity.owns(
            user_id=generation.user_id, anonymous_id=generation.anonymous_id
        ):
            raise PermissionDenied("Access denied")
        return generation

    async def poll(self, db: Session, ctx: RequestContext, request_id: str) -> PollOutcome:
        generation = self._owned_generation(db, ctx, request_id)
        if generation.is_terminal:
            return PollOutcome(generation=generation, progress=100.0)
        if generation.external_request_id is None or self._sync_result_pending(generation):
            # Submit is still talking to the vendor.
            return PollOutcome(generation=generation, progress=0.0)

        # Vendor errors propagate unchanged; the client polls again later.
        result = await self._vendor.poll(generation.external_request_id)

        if result.status in ("pending", "processing"):
            if generation.status == "pending":
                _ = transition(db, generation.id, "processing")
                db.commit()
                db.refresh(generation)
            return PollOutcome(generation=generation, progress=result.progress)

        if result.status == "failed":
            generation = self._fail(db, generation, result.error or "Generation failed")
            return PollOutcome(generation=generation, progress=result.progress)

        raw = result.image_bytes
        if raw is None:
            try:
                if not result.result_url:
                    raise VendorResponseError(
                        details=f"{self._vendor.name} poll: completed without a result"
                    )
                raw = await self._vendor.download(result.result_url)
            except (VendorTimeout, VendorUnavailable):
                # Transient; the result is still at the vendor for the next poll.
                raise
            except UpstreamError as exc:
                _ = self._fail(db, generation, exc.details or exc.error)
                raise
        generation = self._finalize(db, generation, raw)
        return PollOutcome(generation=generation, progress=100.0)

    def _sync_result_pending(self, generation: Generation) -> bool:
        """True while a synchronous vendor's submit may still be storing the result.

        Such rows have nothing to poll at the vendor; only once submit and
        download have both exceeded their timeouts is the row given up on.
        """
        if not generation.parameters.get("synchronous"):
            return False
        window = timedelta(seconds=2 * max(1, self._settings.generation_timeout_seconds))
        return _now_utc() - generation.created_at < window

    def _fail(self, db: Session, generation: Generation, error: str) -> Generation:
        now = _now_utc()
        message = error[:_ERROR_MESSAGE_MAX]
        try:
            won = transition(
                db,
                generation.id,
                "failed",
                reason="generation failed",
                error_message=message,
                completed_at=now,
                processing_time=_elapsed_ms(generation.created_at, now),
            )
            db.commit()
        except BaseException:
            db.rollback()
            raise
        if won:
            logger.warning("generation failed generation_id=%s error=%s", generation.id, message)
        db.refresh(generation)
        return generation

    def _finalize(self, db: Session, generation: Generation, raw: bytes) -> Generation:
        s = self._settings
        try:
            marked = apply_watermark(raw, text=s.watermark_text, opacity=s.watermark_opacity)
        except WatermarkError as exc:
            return self._fail(db, generation, f"Vendor returned an unreadable image: {exc}")

        now = _now_utc()
        filename = result_filename(generation.owner_id, now=now)
        public_path = self._upload_dir / filename
        protected_path = self._protected_dir / filename if s.keep_unwatermarked_original else None
        written: list[Path] = []
        try:
            _write_atomic(public_path, marked)
            written.append(public_path)
            if protected_path is not None:
                _write_atomic(protected_path, raw)
                written.append(protected_path)

            meta: dict[str, Any] = {
                "generation_id": generation.id,
                "source_image_id": generation.image_id,
                "watermarked": True,
            }
            if protected_path is not None:
                meta["original_path"] = str(protected_path)
            result_image = Image(
                user_id=generation.user_id,
                anonymous_id=generation.anonymous_id,
                filename=filename,
                original_filename=None,
                file_path=str(public_path),
                file_size=len(marked),
                mime_type="image/png",
                type="generated",
                prompt=generation.prompt,
                meta=meta,
            )
            db.add(result_image)
            db.flush()

            won = transition(
                db,
                generation.id,
                "completed",
                generated_filename=filename,
                result_image_id=result_image.id,
                completed_at=now,
                processing_time=_elapsed_ms(generation.created_at, now),
                error_message=None,
            )
            if not won:
                db.rollback()
                for path in written:
                    discard(path)
                logger.info(
                    "generation already closed, result dropped generation_id=%s", generation.id
                )
            else:
                db.commit()
                logger.info(
                    "generation completed generation_id=%s filename=%s", generation.id, filename
                )
        except BaseException:
            db.rollback()
            for path in written:
                discard(path)
            raise

        db.refresh(generation)
        return generation

    # -- cancel ----------------------------------------------------------

    def cancel(self, db: Session, ctx: RequestContext, request_id: str) -> Generation:
        """Close an open generation and refund it.

        The vendor-side job, if any, keeps running; its result is dropped.
        """
        generation = self._owned_generation(db, ctx, request_id)
        if generation.is_terminal:
            raise ValidationFailed(
                "Generation can no longer be cancelled", details=f"status={generation.status}"
            )
        now = _now_utc()
        try:
            won = transition(
                db,
                generation.id,
                "cancelled",
                reason="cancelled by owner",
                error_message="Cancelled by user",
                completed_at=now,
                processing_time=_elapsed_ms(generation.created_at, now),
            )
            db.commit()
        except BaseException:
            db.rollback()
            raise
        db.refresh(generation)
        if not won:
            raise ValidationFailed(
                "Generation can no longer be cancelled", details=f"status={generation.status}"
            )
        return generation


def expire_stale_generations(db: Session, *, older_than: datetime) -> int:
    """Fail generations left open since before ``older_than`` and refund them."""
    ids = (
        db.execute(
            select(Generation.id).where(
                Generation.status.in_(GENERATION_OPEN_STATUSES),
                Generation.created_at < older_than,
            )
        )
        .scalars()
        .all()
    )
    now = _now_utc()
    expired = 0
    for generation_id in ids:
        if transition(
            db,
            generation_id,
            "failed",
            reason="generation expired",
            error_message="Generation timed out",
            completed_at=now,
        ):
            expired += 1
        db.commit()
    return expired
