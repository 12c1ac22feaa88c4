# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

import base64
from datetime import UTC, datetime
from functools import lru_cache
import json
import logging
import time
from typing import Protocol, cast
from urllib.parse import urlparse

import httpx

from portraitist.core.config import Settings, get_settings
from portraitist.core.errors import (
    UpstreamError,
    VendorHTTPError,
    VendorResponseError,
    VendorTimeout,
    VendorUnavailable,
)
from portraitist.metrics.prometheus import record_vendor_call


logger = logging.getLogger(__name__)

FALLBACK_PROMPT = (
    "A beautiful artistic interpretation of the image, digital art style, highly detailed, "
    "4k resolution, cinematic lighting, trending on artstation, masterpiece quality, "
    "intricate details, professional photography"
)

DESCRIPTION_FALLBACK_CHARS = 500

ANALYSIS_INSTRUCTION = """Analyze this image and describe it using exactly this JSON shape:
{
  "labels": [{"description": "object name", "score": 0.95}],
  "text": "all text visible in the image",
  "colors": [{"color": {"red": 255, "green": 0, "blue": 0}, "score": 0.8}],
  "description": "a detailed description of what the picture shows",
  "style": "photo, drawing, illustration, ...",
  "mood": "mood or atmosphere of the image",
  "objects": ["main", "objects"],
  "faces": [{"joy": "LIKELY", "sorrow": "UNLIKELY"}],
  "suggestions": ["ideas", "for", "improvement"]
}
List at least 5 labels. Transcribe any visible text. Return ONLY the JSON."""

PROMPT_INSTRUCTION = """Based on this image analysis, write an English prompt for an
image-to-image model that produces a creative version of the picture. Mention the main
subjects, the style, the lighting and atmosphere, textures and quality keywords.
Return ONLY the prompt.

Analysis:
"""


def extract_json_object(text: str) -> dict[str, object] | None:
    """Parse the first balanced ``{...}`` block in ``text``.

    Braces inside JSON strings are skipped so prose such as ``Here you go: {...}``
    or a trailing remark after the object does not break parsing.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = cast(object, json.loads(text[start : i + 1]))
                    except ValueError:
                        break
                    if isinstance(parsed, dict):
                        return cast(dict[str, object], parsed)
                    break
        start = text.find("{", start + 1)
    return None


def parse_analysis(text: str, *, model: str) -> dict[str, object]:
    parsed = extract_json_object(text)
    if parsed is None:
        logger.warning("vision reply was not JSON; keeping truncated text model=%s", model)
        result: dict[str, object] = {"description": text[:DESCRIPTION_FALLBACK_CHARS]}
    else:
        result = dict(parsed)
    result["raw_response"] = text
    result["model"] = model
    result["timestamp"] = datetime.now(UTC).isoformat()
    return result


def _label_names(analysis: dict[str, object], limit: int) -> list[str]:
    labels = analysis.get("labels")
    names: list[str] = []
    if isinstance(labels, list):
        for item in cast(list[object], labels):
            if isinstance(item, dict):
                desc = cast(dict[str, object], item).get("description")
                if isinstance(desc, str) and desc.strip():
                    names.append(desc.strip().lower())
            elif isinstance(item, str) and item.strip():
                names.append(item.strip().lower())
            if len(names) >= limit:
                break
    return names


def build_prompt_from_analysis(analysis: dict[str, object]) -> str:
    names = _label_names(analysis, 3)
    if not names and not analysis.get("description"):
        return FALLBACK_PROMPT

    prompt = "A beautiful artistic representation of"
    if names:
        prompt += " " + ", ".join(names)
    else:
        prompt += " " + str(analysis.get("description"))[:120]

    text = analysis.get("text")
    if isinstance(text, str) and text.strip():
        prompt += f' with text "{text.strip()[:50]}"'

    mood = analysis.get("mood")
    if isinstance(mood, str) and mood.strip():
        prompt += f", evoking a {mood.strip().lower()} mood"

    return prompt + ", highly detailed, professional quality"


class VisionAnalyzer(Protocol):
    model: str

    async def analyze(self, image_bytes: bytes, mime_type: str) -> dict[str, object]: ...

    async def generate_prompt(self, analysis: dict[str, object]) -> str: ...


class FakeVisionAnalyzer:
    model: str = "fake-vision"

    async def analyze(self, image_bytes: bytes, mime_type: str) -> dict[str, object]:
        reply = json.dumps(
            {
                "labels": [{"description": "Animal", "score": 0.9}],
                "description": f"An uploaded {mime_type} picture of {len(image_bytes)} bytes.",
                "mood": "calm",
            }
        )
        return parse_analysis(reply, model=self.model)

    async def generate_prompt(self, analysis: dict[str, object]) -> str:
        return build_prompt_from_analysis(analysis)


def _normalize_openai_base_url(raw: str) -> str:
    u = raw.strip()
    if u == "":
        raise ValueError("VISION_BASE_URL cannot be empty")
    p = urlparse(u)
    if not p.scheme or not p.netloc:
        raise ValueError("VISION_BASE_URL must be a full URL")
    u = u.rstrip("/")
    if not u.endswith("/v1"):
        u = u + "/v1"
    return u


class OpenAIVisionAnalyzer:
    """OpenAI-compatible ``chat/completions`` client for image analysis."""

    def __init__(self, *, base_url: str, api_key: str, model: str, timeout_s: float) -> None:
        self.model: str = model
        self._base_url: str = _normalize_openai_base_url(base_url)
        self._api_key: str = api_key
        self._timeout: httpx.Timeout = httpx.Timeout(timeout_s, connect=min(10.0, timeout_s))

    async def _complete(self, messages: list[dict[str, object]], *, operation: str) -> str:
        start = time.perf_counter()
        outcome = "ok"
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, trust_env=False
            ) as client:
                resp = await client.post(
                    "/chat/completions",
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={"model": self.model, "messages": messages, "temperature": 0.2},
                )
            if not resp.is_success:
                outcome = "http_error"
                raise VendorHTTPError(
                    upstream_status=resp.status_code,
                    details=f"vision {operation}: HTTP {resp.status_code}",
                )
            try:
                body = cast(dict[str, object], resp.json())
                choices = cast(list[dict[str, object]], body["choices"])
                message = cast(dict[str, object], choices[0]["message"])
                content = message["content"]
            except (ValueError, KeyError, IndexError, TypeError) as exc:
                outcome = "malformed"
                raise VendorResponseError(details=f"vision {operation}: unexpected body") from exc
            if not isinstance(content, str):
                outcome = "malformed"
                raise VendorResponseError(details=f"vision {operation}: content is not text")
            return content
        except httpx.TimeoutException as exc:
            outcome = "timeout"
            raise VendorTimeout(details=f"vision {operation}: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            outcome = "network"
            raise VendorUnavailable(details=f"vision {operation}: {type(exc).__name__}") from exc
        finally:
            record_vendor_call(
                provider="vision",
                operation=operation,
                outcome=outcome,
                latency_ms=int((time.perf_counter() - start) * 1000),
            )

    async def analyze(self, image_bytes: bytes, mime_type: str) -> dict[str, object]:
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        text = await self._complete(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_INSTRUCTION},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
            operation="analyze",
        )
        return parse_analysis(text, model=self.model)

    async def generate_prompt(self, analysis: dict[str, object]) -> str:
        summary = {k: v for k, v in analysis.items() if k != "raw_response"}
        try:
            text = await self._complete(
                [{"role": "user", "content": PROMPT_INSTRUCTION + json.dumps(summary, indent=2)}],
                operation="prompt",
            )
        except UpstreamError as exc:
            logger.warning("prompt generation failed, using fallback: %s", exc.details)
            return FALLBACK_PROMPT
        prompt = text.strip()
        return prompt if prompt else FALLBACK_PROMPT


async def analyze_and_generate_prompt(
    analyzer: VisionAnalyzer, image_bytes: bytes, mime_type: str
) -> tuple[dict[str, object], str]:
    """Run analysis then prompt generation; never fails the caller.

    A failing analysis yields an empty result and the generic fallback prompt.
    """
    try:
        analysis = await analyzer.analyze(image_bytes, mime_type)
    except UpstreamError as exc:
        logger.warning("image analysis failed, using fallback prompt: %s", exc.details)
        return {}, FALLBACK_PROMPT
    return analysis, await analyzer.generate_prompt(analysis)


def build_analyzer(settings: Settings) -> VisionAnalyzer:
    mode = settings.vision_mode.strip().lower()
    if mode == "fake":
        return FakeVisionAnalyzer()
    if mode == "openai":
        return OpenAIVisionAnalyzer(
            base_url=settings.vision_base_url or "",
            api_key=settings.vision_api_key or "",
            model=settings.vision_model,
            timeout_s=max(1.0, float(settings.vision_timeout_seconds)),
        )
    raise RuntimeError(f"unknown vision mode: {mode!r}")


@lru_cache
def _cached_analyzer() -> VisionAnalyzer:
    return build_analyzer(get_settings())


def get_analyzer() -> VisionAnalyzer:
    return _cached_analyzer()
