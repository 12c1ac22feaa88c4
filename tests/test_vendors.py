# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownArgumentType=false

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from _pytest.monkeypatch import MonkeyPatch

from portraitist.core.config import Settings
from portraitist.core.errors import VendorHTTPError, VendorResponseError, VendorTimeout
from portraitist.services.vendors import build_vendor
from portraitist.services.vendors.base import SubmitRequest, normalize_base_url
from portraitist.services.vendors.deapi import DeApiVendor
from portraitist.services.vendors.fake import FakeVendor
from portraitist.services.vendors.openai_images import OpenAIImagesVendor


Handler = Callable[[httpx.Request], httpx.Response]


def _mock_http(monkeypatch: MonkeyPatch, handler: Handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    def _factory(**kwargs: object) -> httpx.AsyncClient:
        return real_client(transport=httpx.MockTransport(_record), **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(httpx, "AsyncClient", _factory)
    return seen


def _request(tmp_path: Path) -> SubmitRequest:
    path = tmp_path / "pet.png"
    _ = path.write_bytes(b"\x89PNG\r\n\x1a\nfake")
    return SubmitRequest(
        image_path=path,
        mime_type="image/png",
        prompt="oil portrait",
        negative_prompt="cartoon",
        seed=7,
    )


def _deapi() -> DeApiVendor:
    return DeApiVendor(
        base_url="https://deapi.test/api/v1/client",
        api_key="k-test",
        model="QwenImageEdit_Plus_NF4",
        timeout_s=5.0,
    )


def test_deapi_submit_sends_form_and_returns_request_id(
    monkeypatch: MonkeyPatch, tmp_path: Path
) -> None:
    seen = _mock_http(
        monkeypatch, lambda _r: httpx.Response(200, json={"data": {"request_id": "req-123"}})
    )

    result = asyncio.run(_deapi().submit(_request(tmp_path)))
    assert result.request_id == "req-123"
    assert result.is_synchronous is False

    req = seen[0]
    assert req.method == "POST"
    assert str(req.url) == "https://deapi.test/api/v1/client/img2img"
    assert req.headers["Authorization"] == "Bearer k-test"
    body = req.read()
    assert b'name="negative_prompt"' in body
    assert b'name="seed"' in body


@pytest.mark.parametrize(
    ("payload", "status", "url"),
    [
        ({"status": "pending", "progress": 0}, "pending", None),
        ({"status": "processing", "progress": 55.5}, "processing", None),
        ({"status": "done", "result_url": "https://cdn.test/r.png"}, "completed", "https://cdn.test/r.png"),
        ({"status": "error", "error": "NSFW content detected"}, "failed", None),
    ],
)
def test_deapi_poll_maps_statuses(
    monkeypatch: MonkeyPatch, payload: dict[str, object], status: str, url: str | None
) -> None:
    _ = _mock_http(monkeypatch, lambda _r: httpx.Response(200, json={"data": payload}))

    result = asyncio.run(_deapi().poll("req-123"))
    assert result.status == status
    assert result.result_url == url
    if status == "failed":
        assert result.error == "NSFW content detected"


def test_deapi_poll_done_without_url_is_malformed(monkeypatch: MonkeyPatch) -> None:
    _ = _mock_http(monkeypatch, lambda _r: httpx.Response(200, json={"data": {"status": "done"}}))
    with pytest.raises(VendorResponseError):
        _ = asyncio.run(_deapi().poll("req-123"))


def test_vendor_http_errors_are_mapped(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    _ = _mock_http(monkeypatch, lambda _r: httpx.Response(500, text="upstream exploded"))
    with pytest.raises(VendorHTTPError) as excinfo:
        _ = asyncio.run(_deapi().submit(_request(tmp_path)))
    assert excinfo.value.upstream_status == 500
    assert excinfo.value.status_code == 502


def test_vendor_timeouts_are_mapped(monkeypatch: MonkeyPatch) -> None:
    def _slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    _ = _mock_http(monkeypatch, _slow)
    with pytest.raises(VendorTimeout) as excinfo:
        _ = asyncio.run(_deapi().poll("req-123"))
    assert excinfo.value.status_code == 503


def test_openai_images_returns_inline_bytes(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    encoded = base64.b64encode(b"result-bytes").decode("ascii")
    seen = _mock_http(
        monkeypatch, lambda _r: httpx.Response(200, json={"data": [{"b64_json": encoded}]})
    )
    vendor = OpenAIImagesVendor(
        base_url="https://images.test/v1", api_key="sk-test", model="gpt-image-1", timeout_s=5.0
    )

    result = asyncio.run(vendor.submit(_request(tmp_path)))
    assert result.is_synchronous is True
    assert result.image_bytes == b"result-bytes"
    assert str(seen[0].url) == "https://images.test/v1/images/edits"
    assert b"Avoid: cartoon" in seen[0].read()


def test_download_rejects_non_http_urls() -> None:
    with pytest.raises(VendorResponseError):
        _ = asyncio.run(_deapi().download("file:///etc/passwd"))


def test_build_vendor_selects_provider() -> None:
    assert isinstance(build_vendor(Settings(generation_provider="fake")), FakeVendor)
    deapi = build_vendor(Settings(generation_provider="deapi", deapi_api_key="k"))
    assert isinstance(deapi, DeApiVendor)
    assert deapi.name == "deapi"


def test_normalize_base_url() -> None:
    assert normalize_base_url("https://api.test/v1/", setting="X") == "https://api.test/v1"
    with pytest.raises(ValueError):
        _ = normalize_base_url("api.test", setting="X")
