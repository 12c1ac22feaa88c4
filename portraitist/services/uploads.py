from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import hashlib
import logging
import os
from pathlib import Path, PurePath
import re
from typing import BinaryIO
import uuid

from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from portraitist.core.errors import ValidationFailed


logger = logging.getLogger(__name__)

_CHUNK_BYTES = 64 * 1024
_OWNER_SAFE_RE = re.compile(r"[^A-Za-z0-9_-]")
_FILENAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,255}$")


class _UploadTooLarge(Exception):
    pass


@dataclass(frozen=True)
class StoredUpload:
    path: Path
    filename: str
    original_filename: str
    mime_type: str
    size: int
    sha256: str


def _copy_limited(*, src: BinaryIO, dst: BinaryIO, max_bytes: int, hasher: "hashlib._Hash") -> int:
    if max_bytes <= 0:
        raise _UploadTooLarge()

    written = 0
    while True:
        chunk = src.read(_CHUNK_BYTES)
        if not chunk:
            return written
        if written + len(chunk) > max_bytes:
            raise _UploadTooLarge()
        _ = dst.write(chunk)
        hasher.update(chunk)
        written += len(chunk)


def sanitize_owner(owner_id: str) -> str:
    cleaned = _OWNER_SAFE_RE.sub("", owner_id)[:64]
    return cleaned or "anon"


def is_safe_filename(filename: str) -> bool:
    return (
        _FILENAME_RE.match(filename) is not None
        and filename not in (".", "..")
        and not filename.startswith(".")
    )


def validate_upload(
    filename: str | None,
    content_type: str | None,
    *,
    allowed_content_types: Iterable[str],
    allowed_extensions: Iterable[str],
) -> str:
    """Check the declared type and extension against the allow-lists; return the extension."""
    name = (filename or "").strip()
    if name == "":
        raise ValidationFailed("No file uploaded")

    ext = PurePath(name).suffix.lower()
    ctype = (content_type or "").split(";", 1)[0].strip().lower()
    types = {t.strip().lower() for t in allowed_content_types if t.strip()}
    exts = {e.strip().lower() for e in allowed_extensions if e.strip()}
    if ext not in exts or ctype not in types:
        raise ValidationFailed(
            "Invalid file type",
            details=f"content_type={ctype or '<none>'} extension={ext or '<none>'}",
        )
    return ext


def _reserve_path(upload_dir: Path, *, owner_id: str, ext: str) -> Path:
    owner = sanitize_owner(owner_id)
    for _ in range(5):
        candidate = upload_dir / f"{owner}-{uuid.uuid4().hex}{ext}"
        try:
            fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            continue
        os.close(fd)
        return candidate
    raise RuntimeError("could not allocate a unique upload filename")


def store_upload(
    src: BinaryIO,
    *,
    owner_id: str,
    original_filename: str,
    content_type: str,
    ext: str,
    upload_dir: Path,
    max_bytes: int,
) -> StoredUpload:
    """Stream an upload to disk under a fresh, never-reused filename.

    The body is copied to a temporary file first; oversize bodies are rejected
    while copying and leave nothing behind.
    """
    upload_dir.mkdir(parents=True, exist_ok=True)
    tmp_path = upload_dir / f".upload-tmp-{uuid.uuid4().hex}"
    hasher = hashlib.sha256()
    final_path: Path | None = None
    try:
        with tmp_path.open("xb") as f:
            size = _copy_limited(src=src, dst=f, max_bytes=max_bytes, hasher=hasher)
        if size == 0:
            raise ValidationFailed("No file uploaded", details="empty file")
        final_path = _reserve_path(upload_dir, owner_id=owner_id, ext=ext)
        os.replace(tmp_path, final_path)
    except _UploadTooLarge:
        discard(tmp_path)
        raise ValidationFailed("File too large", details=f"limit is {max_bytes} bytes") from None
    except BaseException:
        discard(tmp_path)
        if final_path is not None:
            discard(final_path)
        raise

    return StoredUpload(
        path=final_path,
        filename=final_path.name,
        original_filename=PurePath(original_filename).name[:255],
        mime_type=content_type.split(";", 1)[0].strip().lower(),
        size=size,
        sha256=hasher.hexdigest(),
    )


def verify_image(path: Path) -> tuple[int, int, str]:
    """Confirm the stored file decodes as an image; return ``(width, height, format)``."""
    try:
        with PILImage.open(path) as im:
            width, height = im.size
            fmt = str(im.format or "")
            im.verify()
    except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise ValidationFailed("Invalid image file", details=type(exc).__name__) from exc
    return width, height, fmt


def discard(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("failed to remove file path=%s", path, exc_info=True)
