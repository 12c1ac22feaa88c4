# pyright: reportMissingImports=false
# pyright: reportDeprecated=false
# pyright: reportImplicitOverride=false
# pyright: reportIncompatibleVariableOverride=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portraitist.db.base import Base


def _uuid_str() -> str:
    return str(uuid4())


# Exactly one of user_id / anonymous_id owns an image or a generation.
_SINGLE_OWNER_SQL = "(user_id IS NULL) <> (anonymous_id IS NULL)"

GENERATION_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
GENERATION_OPEN_STATUSES = ("pending", "processing")
IMAGE_TYPES = ("original", "generated", "processed")
USER_ROLES = ("user", "admin", "moderator")


class User(Base):
    __tablename__: str = "users"
    __table_args__: tuple[object, ...] = (
        CheckConstraint("credits >= 0", name="ck_users_credits_ge_0"),
        CheckConstraint("role IN ('user','admin','moderator')", name="ck_users_role"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    google_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), index=True, nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean(), default=False, nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="user", nullable=False)
    credits: Mapped[int] = mapped_column(Integer(), default=0, nullable=False)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON(), default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean(), default=True, nullable=False)
    banned_until: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    sessions: Mapped[list["AuthSession"]] = relationship(
        "AuthSession",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class AnonymousSession(Base):
    __tablename__: str = "anonymous_sessions"
    __table_args__: tuple[object, ...] = (
        CheckConstraint("request_count >= 0", name="ck_anonymous_sessions_request_count_ge_0"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    anonymous_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text(), nullable=True)
    request_count: Mapped[int] = mapped_column(Integer(), default=0, nullable=False)
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )


class AuthSession(Base):
    __tablename__: str = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    refresh_token_hash: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )
    jti: Mapped[str] = mapped_column(String(36), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text(), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="sessions")

    def is_valid(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


class Image(Base):
    __tablename__: str = "images"
    __table_args__: tuple[object, ...] = (
        CheckConstraint(_SINGLE_OWNER_SQL, name="ck_images_single_owner"),
        CheckConstraint(
            "type IN ('original','generated','processed')", name="ck_images_type"
        ),
        Index("ix_images_user_created", "user_id", "created_at"),
        Index("ix_images_anonymous_created", "anonymous_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    user_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
    )
    anonymous_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    filename: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_path: Mapped[str] = mapped_column(Text(), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger(), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="original", nullable=False)
    content_sha256: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)

    analysis_data: Mapped[dict[str, Any] | None] = mapped_column(JSON(), nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text(), nullable=True)
    # "metadata" is reserved on declarative classes.
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON(), default=dict, nullable=False)

    is_public: Mapped[bool] = mapped_column(Boolean(), default=False, nullable=False)
    views_count: Mapped[int] = mapped_column(Integer(), default=0, nullable=False)
    likes_count: Mapped[int] = mapped_column(Integer(), default=0, nullable=False)

    is_deleted: Mapped[bool] = mapped_column(Boolean(), default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    file_purged_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def owner_id(self) -> str:
        return self.user_id or self.anonymous_id or ""


class Generation(Base):
    __tablename__: str = "generations"
    __table_args__: tuple[object, ...] = (
        CheckConstraint(_SINGLE_OWNER_SQL, name="ck_generations_single_owner"),
        CheckConstraint(
            "status IN ('pending','processing','completed','failed','cancelled')",
            name="ck_generations_status",
        ),
        CheckConstraint("credits_spent >= 0", name="ck_generations_credits_spent_ge_0"),
        Index("ix_generations_user_created", "user_id", "created_at"),
        Index("ix_generations_anonymous_created", "anonymous_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    user_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
    )
    anonymous_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    image_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("images.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    result_image_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("images.id", ondelete="SET NULL"),
        nullable=True,
    )

    prompt: Mapped[str] = mapped_column(Text(), nullable=False)
    negative_prompt: Mapped[str | None] = mapped_column(Text(), nullable=True)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON(), default=dict, nullable=False)
    external_request_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, index=True, nullable=True
    )
    generated_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    credits_spent: Mapped[int] = mapped_column(Integer(), default=0, nullable=False)
    processing_time: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    api_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    api_model: Mapped[str | None] = mapped_column(String(100), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def owner_id(self) -> str:
        return self.user_id or self.anonymous_id or ""

    @property
    def is_terminal(self) -> bool:
        return self.status not in GENERATION_OPEN_STATUSES


class CreditLedgerEntry(Base):
    __tablename__: str = "credit_ledger"
    __table_args__: tuple[object, ...] = (
        UniqueConstraint("generation_id", "kind", name="uq_credit_ledger_generation_kind"),
        CheckConstraint("kind IN ('debit','refund','grant')", name="ck_credit_ledger_kind"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    delta: Mapped[int] = mapped_column(Integer(), nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer(), nullable=False)
    generation_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("generations.id", ondelete="SET NULL"),
        nullable=True,
    )
    reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )


class RateLimitBucket(Base):
    __tablename__: str = "rate_limits"
    __table_args__: tuple[object, ...] = (
        CheckConstraint("hits >= 0", name="ck_rate_limits_hits_ge_0"),
    )

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    hits: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    reset_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
