# pyright: reportMissingImports=false

from __future__ import annotations

from functools import lru_cache
import json
from typing import ClassVar, cast

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_GENERATION_PROMPT = (
    "Transform the animal in the image into a classical aristocratic oil portrait from "
    "the 17th-18th century. Preserve maximum likeness to the original animal: exact facial "
    "features, eye shape, muzzle proportions, fur pattern, color distribution and overall "
    "identity must remain unchanged. Strictly preserve the original pose, body position, "
    "silhouette, proportions, scale and head orientation. The animal is resting on an "
    "elegant velvet cushion in deep warm tones with subtle embroidery. Classical old "
    "European masters painting style, rich oil paint texture with visible layered "
    "brushstrokes, soft dramatic chiaroscuro lighting, dark atmospheric background, "
    "luxurious velvet cloak with fur trim and refined gold jewelry, museum-quality fine "
    "art, vintage color grading, regal ceremonial portrait atmosphere."
)

DEFAULT_GENERATION_NEGATIVE_PROMPT = (
    "change of pose, altered anatomy, loss of likeness, floating subject, incorrect body "
    "support, human features, cartoon, anime, modern objects, photographic realism, smooth "
    "digital painting, flat lighting, neon colors, CGI, 3D, plastic texture, oversmoothing, "
    "identity drift, text, watermarks"
)


class Settings(BaseSettings):
    """Environment-driven settings with local dev defaults."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    api_prefix: str = "/api"
    log_level: str = "INFO"

    env: str = "dev"

    cors_allowed_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Google OAuth
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_callback_url: str = "http://localhost:8000/api/auth/google/callback"
    google_http_timeout_seconds: float = 10.0
    frontend_url: str = "http://localhost:5173"

    # Auth (JWT) settings
    auth_access_token_secret: str = "dev-secret-change-me"
    auth_access_token_issuer: str = "image-generator-api"
    auth_access_token_ttl_seconds: int = 7 * 24 * 3600
    auth_refreshed_access_token_ttl_seconds: int = 15 * 60
    auth_session_ttl_days: int = 7

    # Anonymous identity
    anonymous_cookie_name: str = "anonymousId"
    anonymous_cookie_max_age_days: int = 30
    anonymous_daily_request_limit: int = 10
    cookie_secure: bool = False

    rate_limit_enabled: bool = True
    upload_rate_limit_max: int = 5
    upload_rate_limit_window_seconds: int = 3600
    status_rate_limit_max: int = 60
    status_rate_limit_window_seconds: int = 60

    user_initial_credits: int = 10
    generation_cost_credits: int = 1

    upload_dir: str = "./uploads"
    protected_dir: str = "./protected"
    upload_max_bytes: int = 10 * 1024 * 1024
    upload_allowed_content_types: list[str] = Field(
        default_factory=lambda: [
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/gif",
            "image/webp",
        ]
    )
    upload_allowed_extensions: list[str] = Field(
        default_factory=lambda: [".jpeg", ".jpg", ".png", ".gif", ".webp"]
    )
    keep_unwatermarked_original: bool = True

    # Image-to-image vendor: fake | deapi | openai
    generation_provider: str = "fake"
    generation_prompt: str = DEFAULT_GENERATION_PROMPT
    generation_negative_prompt: str = DEFAULT_GENERATION_NEGATIVE_PROMPT
    # off | reuse
    generation_dedup_policy: str = "off"
    generation_timeout_seconds: float = 60.0
    generation_stale_after_hours: int = 24

    deapi_api_key: str | None = None
    deapi_base_url: str = "https://api.deapi.ai/api/v1/client"
    deapi_model: str = "QwenImageEdit_Plus_NF4"
    deapi_steps: int = 20

    openai_images_base_url: str = "https://api.openai.com/v1"
    openai_images_api_key: str | None = None
    openai_images_model: str = "gpt-image-1"

    # Vision analysis: fake | openai
    vision_mode: str = "fake"
    vision_base_url: str | None = None
    vision_api_key: str | None = None
    vision_model: str = "gpt-4o-mini"
    vision_timeout_seconds: float = 30.0

    watermark_text: str = "AI Generator"
    watermark_opacity: float = 0.3

    soft_deleted_file_retention_days: int = 7

    # Prefer DATABASE_URL when provided; otherwise construct from POSTGRES_* vars.
    database_url: str | None = None
    postgres_db: str = "portraitist"
    postgres_user: str = "portraitist"
    postgres_password: str = "portraitist"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    db_pool_size: int = 5
    db_pool_recycle_seconds: int = 1800
    db_echo: bool = False

    # Background jobs
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str | None = None
    celery_task_always_eager: bool = False
    celery_task_eager_propagates: bool = True

    @field_validator(
        "cors_allowed_origins",
        "trusted_hosts",
        "upload_allowed_content_types",
        "upload_allowed_extensions",
        mode="before",
    )
    @classmethod
    def _parse_listish_env(cls, v: object) -> list[str]:
        if v is None:
            return []
        if isinstance(v, list):
            v_list = cast(list[object], v)
            return [str(x).strip() for x in v_list if str(x).strip()]
        if isinstance(v, str):
            raw = v.strip()
            if raw == "":
                return []
            if raw.lstrip().startswith("["):
                try:
                    parsed: object = cast(object, json.loads(raw))
                except Exception:
                    parsed = None
                if isinstance(parsed, list):
                    parsed_list = cast(list[object], parsed)
                    return [str(x).strip() for x in parsed_list if str(x).strip()]
            parts: list[str] = []
            for chunk in raw.replace("\n", ",").replace("\t", ",").split(","):
                s = chunk.strip()
                if s:
                    parts.append(s)
            return parts
        return [str(v).strip()] if str(v).strip() else []

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    def is_production(self) -> bool:
        return self.env.strip().lower() in ("prod", "production")

    @property
    def google_oauth_configured(self) -> bool:
        return bool(
            self.google_client_id
            and self.google_client_id.strip()
            and self.google_client_secret
            and self.google_client_secret.strip()
        )

    @model_validator(mode="after")
    def _validate_prod_config(self) -> "Settings":
        if not self.is_production():
            return self

        problems: list[str] = []

        if self.auth_access_token_secret.strip() in ("", "dev-secret-change-me"):
            problems.append(
                "AUTH_ACCESS_TOKEN_SECRET must be set in production (cannot use default 'dev-secret-change-me')."
            )

        if self.generation_provider.strip().lower() == "fake":
            problems.append(
                "GENERATION_PROVIDER=fake is forbidden in production. Set GENERATION_PROVIDER=deapi or openai."
            )

        if self.vision_mode.strip().lower() == "fake":
            problems.append("VISION_MODE=fake is forbidden in production. Set VISION_MODE=openai.")

        if not self.google_oauth_configured:
            problems.append(
                "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set in production."
            )

        if problems:
            details = "\n".join(f"- {p}" for p in problems)
            raise ValueError(
                f"Production settings validation failed (ENV={self.env!r}). Fix the following before starting the server:\n"
                + details
            )

        return self

    @model_validator(mode="after")
    def _validate_vendor_config(self) -> "Settings":
        provider = self.generation_provider.strip().lower()
        if provider not in ("fake", "deapi", "openai"):
            raise ValueError("GENERATION_PROVIDER must be one of: fake, deapi, openai")
        if provider == "deapi" and not (self.deapi_api_key and self.deapi_api_key.strip()):
            raise ValueError("DEAPI_API_KEY must be set when GENERATION_PROVIDER=deapi")
        if provider == "openai" and not (
            self.openai_images_api_key and self.openai_images_api_key.strip()
        ):
            raise ValueError("OPENAI_IMAGES_API_KEY must be set when GENERATION_PROVIDER=openai")

        vision = self.vision_mode.strip().lower()
        if vision not in ("fake", "openai"):
            raise ValueError("VISION_MODE must be one of: fake, openai")
        if vision == "openai":
            if not (self.vision_base_url and self.vision_base_url.strip()):
                raise ValueError("VISION_BASE_URL must be set when VISION_MODE=openai")
            if not (self.vision_api_key and self.vision_api_key.strip()):
                raise ValueError("VISION_API_KEY must be set when VISION_MODE=openai")

        if self.generation_dedup_policy.strip().lower() not in ("off", "reuse"):
            raise ValueError("GENERATION_DEDUP_POLICY must be one of: off, reuse")
        if not 0.0 <= self.watermark_opacity <= 1.0:
            raise ValueError("WATERMARK_OPACITY must be between 0 and 1")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
