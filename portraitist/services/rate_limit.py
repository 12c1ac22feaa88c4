from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import hashlib

from sqlalchemy import select
from sqlalchemy.orm import Session

from portraitist.core.config import Settings
from portraitist.core.errors import RateLimited
from portraitist.db.models import RateLimitBucket


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def _safe_key(raw: str) -> str:
    if len(raw) <= 512:
        return raw
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"rl|sha256:{digest}"


def _ip_key(ip: str | None) -> str:
    if not isinstance(ip, str) or ip.strip() == "":
        return "unknown"
    return ip.strip()


def rate_limit_key(*, scope: str, ip: str | None, identity: str | None = None) -> str:
    ident = ""
    if isinstance(identity, str) and identity.strip() != "":
        ident = identity.strip().lower()
    raw = f"{scope}|{_ip_key(ip)}|{ident}"
    return _safe_key(raw)


@dataclass(frozen=True)
class RateLimitCheck:
    blocked: bool
    retry_after_seconds: int
    remaining: int


class RequestRateLimiter:
    """Fixed-window hit counter stored in ``rate_limits``.

    Every call to :meth:`hit` counts, including the one that trips the limit.
    """

    def __init__(self, *, enabled: bool, max_hits: int, window_seconds: int):
        self._enabled: bool = bool(enabled)
        self._max_hits: int = int(max_hits)
        self._window_seconds: int = int(window_seconds)

    @property
    def active(self) -> bool:
        return self._enabled and self._max_hits > 0 and self._window_seconds > 0

    def check(self, db: Session, *, key: str) -> RateLimitCheck:
        if not self.active:
            return RateLimitCheck(blocked=False, retry_after_seconds=0, remaining=self._max_hits)

        now = _now_utc()
        row = db.get(RateLimitBucket, key)
        if row is None or row.reset_at <= now:
            return RateLimitCheck(blocked=False, retry_after_seconds=0, remaining=self._max_hits)
        remaining = max(0, self._max_hits - int(row.hits))
        if remaining > 0:
            return RateLimitCheck(blocked=False, retry_after_seconds=0, remaining=remaining)
        retry_after = max(0, int((row.reset_at - now).total_seconds()))
        return RateLimitCheck(blocked=True, retry_after_seconds=retry_after, remaining=0)

    def hit(self, db: Session, *, key: str, message: str = "Too many requests") -> None:
        if not self.active:
            return

        now = _now_utc()
        reset_at = now + timedelta(seconds=self._window_seconds)

        row = (
            db.execute(select(RateLimitBucket).where(RateLimitBucket.key == key).with_for_update())
            .scalars()
            .one_or_none()
        )
        if row is None:
            row = RateLimitBucket(key=key, hits=1, reset_at=reset_at)
            db.add(row)
        elif row.reset_at <= now:
            row.hits = 1
            row.reset_at = reset_at
        else:
            row.hits = int(row.hits) + 1
        hits = int(row.hits)
        window_end = row.reset_at
        db.commit()

        if hits > self._max_hits:
            retry_after = max(1, int((window_end - now).total_seconds()))
            raise RateLimited(message, retry_after_seconds=retry_after)

    def reset(self, db: Session, *, key: str) -> None:
        row = db.get(RateLimitBucket, key)
        if row is None:
            return
        db.delete(row)
        db.flush()


def upload_rate_limiter(settings: Settings) -> RequestRateLimiter:
    return RequestRateLimiter(
        enabled=settings.rate_limit_enabled,
        max_hits=settings.upload_rate_limit_max,
        window_seconds=settings.upload_rate_limit_window_seconds,
    )


def status_rate_limiter(settings: Settings) -> RequestRateLimiter:
    return RequestRateLimiter(
        enabled=settings.rate_limit_enabled,
        max_hits=settings.status_rate_limit_max,
        window_seconds=settings.status_rate_limit_window_seconds,
    )
