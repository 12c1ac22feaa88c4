from __future__ import annotations

from functools import lru_cache

from portraitist.core.config import Settings, get_settings
from portraitist.services.vendors.base import (
    GenerationVendor,
    PollResult,
    SubmitRequest,
    SubmitResult,
    clamp_timeout_seconds,
    normalize_base_url,
)
from portraitist.services.vendors.deapi import DeApiVendor
from portraitist.services.vendors.fake import FakeVendor
from portraitist.services.vendors.openai_images import OpenAIImagesVendor


def build_vendor(settings: Settings) -> GenerationVendor:
    provider = settings.generation_provider.strip().lower()
    timeout_s = clamp_timeout_seconds(settings.generation_timeout_seconds, default=60.0)
    if provider == "fake":
        return FakeVendor()
    if provider == "deapi":
        return DeApiVendor(
            base_url=normalize_base_url(settings.deapi_base_url, setting="DEAPI_BASE_URL"),
            api_key=settings.deapi_api_key or "",
            model=settings.deapi_model,
            timeout_s=timeout_s,
            steps=settings.deapi_steps,
        )
    if provider == "openai":
        return OpenAIImagesVendor(
            base_url=normalize_base_url(
                settings.openai_images_base_url, setting="OPENAI_IMAGES_BASE_URL"
            ),
            api_key=settings.openai_images_api_key or "",
            model=settings.openai_images_model,
            timeout_s=timeout_s,
        )
    raise RuntimeError(f"unknown generation provider: {provider!r}")


@lru_cache
def _cached_vendor() -> GenerationVendor:
    return build_vendor(get_settings())


def get_vendor() -> GenerationVendor:
    return _cached_vendor()


__all__ = [
    "GenerationVendor",
    "PollResult",
    "SubmitRequest",
    "SubmitResult",
    "build_vendor",
    "get_vendor",
]
