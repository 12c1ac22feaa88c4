# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import time
from typing import Literal, Protocol, cast
from urllib.parse import urlparse

import httpx

from portraitist.core.errors import (
    VendorHTTPError,
    VendorResponseError,
    VendorTimeout,
    VendorUnavailable,
)
from portraitist.metrics.prometheus import record_vendor_call


logger = logging.getLogger(__name__)

PollStatus = Literal["pending", "processing", "completed", "failed"]

_MIN_TIMEOUT_SECONDS = 1.0
_MAX_DOWNLOAD_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class SubmitRequest:
    image_path: Path
    mime_type: str
    prompt: str
    negative_prompt: str | None
    seed: int


@dataclass(frozen=True)
class SubmitResult:
    """Either ``request_id`` (poll later) or the finished image (inline bytes or a URL)."""

    request_id: str | None = None
    image_bytes: bytes | None = None
    result_url: str | None = None

    @property
    def is_synchronous(self) -> bool:
        return self.request_id is None


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    progress: float = 0.0
    result_url: str | None = None
    image_bytes: bytes | None = None
    error: str | None = None


class GenerationVendor(Protocol):
    name: str
    model: str

    async def submit(self, request: SubmitRequest) -> SubmitResult: ...

    async def poll(self, request_id: str) -> PollResult: ...

    async def download(self, url: str) -> bytes: ...


def normalize_base_url(raw: str, *, setting: str) -> str:
    u = raw.strip()
    if u == "":
        raise ValueError(f"{setting} cannot be empty")
    p = urlparse(u)
    if not p.scheme or not p.netloc:
        raise ValueError(f"{setting} must be a full URL")
    return u.rstrip("/")


def clamp_timeout_seconds(raw: float | int | str | None, *, default: float) -> float:
    try:
        value = float(raw) if raw is not None else default
    except (TypeError, ValueError):
        value = default
    return max(_MIN_TIMEOUT_SECONDS, value)


class HttpVendor:
    """Shared HTTP plumbing: explicit timeouts, no retries, closed error mapping."""

    name: str = "http"

    def __init__(self, *, base_url: str, api_key: str, model: str, timeout_s: float) -> None:
        self.base_url: str = base_url
        self.model: str = model
        self._api_key: str = api_key
        self._timeout_s: float = timeout_s

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._timeout_s, connect=min(10.0, self._timeout_s))

    def _client(self, *, authenticated: bool = True) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return httpx.AsyncClient(timeout=self._timeout(), headers=headers, trust_env=False)

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        operation: str,
        **kwargs: object,
    ) -> httpx.Response:
        start = time.perf_counter()

        def _elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        try:
            resp = await client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as exc:
            record_vendor_call(
                provider=self.name, operation=operation, outcome="timeout", latency_ms=_elapsed_ms()
            )
            raise VendorTimeout(details=f"{self.name} {operation}: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            record_vendor_call(
                provider=self.name, operation=operation, outcome="network", latency_ms=_elapsed_ms()
            )
            raise VendorUnavailable(details=f"{self.name} {operation}: {type(exc).__name__}") from exc

        if not resp.is_success:
            record_vendor_call(
                provider=self.name,
                operation=operation,
                outcome="http_error",
                latency_ms=_elapsed_ms(),
            )
            logger.warning(
                "vendor call failed provider=%s operation=%s status=%s",
                self.name,
                operation,
                resp.status_code,
            )
            raise VendorHTTPError(
                upstream_status=resp.status_code,
                details=f"{self.name} {operation}: HTTP {resp.status_code} {resp.text[:300]}",
            )

        record_vendor_call(
            provider=self.name, operation=operation, outcome="ok", latency_ms=_elapsed_ms()
        )
        return resp

    def _json(self, resp: httpx.Response, *, operation: str) -> dict[str, object]:
        try:
            data = cast(object, resp.json())
        except ValueError as exc:
            raise VendorResponseError(details=f"{self.name} {operation}: body is not JSON") from exc
        if not isinstance(data, dict):
            raise VendorResponseError(details=f"{self.name} {operation}: body is not an object")
        return cast(dict[str, object], data)

    async def download(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise VendorResponseError(details=f"{self.name} download: unsupported url scheme")
        async with self._client(authenticated=False) as client:
            resp = await self._send(
                client, "GET", url, operation="download", follow_redirects=True
            )
        body = resp.content
        if len(body) == 0:
            raise VendorResponseError(details=f"{self.name} download: empty body")
        if len(body) > _MAX_DOWNLOAD_BYTES:
            raise VendorResponseError(details=f"{self.name} download: result too large")
        return body
