# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false

from __future__ import annotations

import io
import os
import uuid
from typing import cast

from _pytest.monkeypatch import MonkeyPatch
from fastapi.testclient import TestClient
from PIL import Image as PILImage
from sqlalchemy import func, select

from portraitist.core.config import settings
from portraitist.db.models import Generation, Image, User
from portraitist.db.session import SessionLocal
from portraitist.main import app
from portraitist.services.sessions import SessionService
from portraitist.services.vendors.fake import FakeVendor


def _png(size: tuple[int, int] = (64, 48), color: str = "orange") -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def _user_headers(*, credits: int = 10) -> tuple[str, dict[str, str]]:
    with SessionLocal() as db:
        user = User(
            google_id=f"g-{uuid.uuid4().hex}",
            email=f"test-{uuid.uuid4().hex}@example.com",
            email_verified=True,
            credits=credits,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        issued = SessionService(settings).create(db, user, user_agent="pytest", ip="127.0.0.1")
        return user.id, {"Authorization": f"Bearer {issued.token}"}


def _upload_dir_files() -> list[str]:
    return sorted(p for p in os.listdir(settings.upload_dir) if not p.startswith("."))


def _counts() -> tuple[int, int]:
    with SessionLocal() as db:
        images = db.execute(select(func.count()).select_from(Image)).scalar_one()
        gens = db.execute(select(func.count()).select_from(Generation)).scalar_one()
        return int(images), int(gens)


def test_upload_over_size_limit_leaves_nothing_behind(
    monkeypatch: MonkeyPatch, vendor: FakeVendor
) -> None:
    monkeypatch.setattr(settings, "upload_max_bytes", 5 * 1024 * 1024)
    _user_id, headers = _user_headers()
    client = TestClient(app)

    blob = b"\x89PNG\r\n\x1a\n" + os.urandom(6 * 1024 * 1024)
    resp = client.post(
        "/api/images/process",
        files={"image": ("big.png", blob, "image/png")},
        headers=headers,
    )
    assert resp.status_code == 400
    body = cast(dict[str, object], resp.json())
    assert body["success"] is False
    assert body["error"] == "File too large"

    assert _counts() == (0, 0)
    assert os.listdir(settings.upload_dir) == []
    assert vendor.submitted == []


def test_upload_rejects_disallowed_type(vendor: FakeVendor) -> None:
    _user_id, headers = _user_headers()
    client = TestClient(app)

    resp = client.post(
        "/api/images/process",
        files={"image": ("notes.txt", b"hello", "text/plain")},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid file type"
    assert _counts() == (0, 0)


def test_upload_rejects_bytes_that_are_not_an_image(vendor: FakeVendor) -> None:
    _user_id, headers = _user_headers()
    client = TestClient(app)

    resp = client.post(
        "/api/images/process",
        files={"image": ("cat.png", b"definitely not a png", "image/png")},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid image file"
    assert _upload_dir_files() == []
    assert _counts() == (0, 0)


def test_upload_without_file_field(vendor: FakeVendor) -> None:
    _user_id, headers = _user_headers()
    client = TestClient(app)

    resp = client.post("/api/images/process", data={"prompt_mode": "fixed"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "No file uploaded"


def test_upload_without_credits_is_refused(vendor: FakeVendor) -> None:
    user_id, headers = _user_headers(credits=0)
    client = TestClient(app)

    resp = client.post(
        "/api/images/process",
        files={"image": ("cat.png", _png(), "image/png")},
        headers=headers,
    )
    assert resp.status_code == 402
    assert resp.json()["error"] == "Insufficient credits"
    assert _counts() == (0, 0)
    assert _upload_dir_files() == []
    assert vendor.submitted == []

    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user is not None
        assert user.credits == 0


def test_upload_stores_original_with_fresh_name(vendor: FakeVendor) -> None:
    user_id, headers = _user_headers()
    client = TestClient(app)

    resp = client.post(
        "/api/images/process",
        files={"image": ("My Cat.png", _png((120, 80)), "image/png")},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    data = cast(dict[str, object], resp.json()["data"])
    original = cast(dict[str, object], data["original_image"])
    assert original["original_filename"] == "My Cat.png"
    assert original["type"] == "original"
    assert original["url"] == f"/uploads/{original['filename']}"
    assert original["metadata"] == {"width": 120, "height": 80, "format": "PNG"}
    assert str(original["filename"]).startswith(f"{user_id}-")
    assert data["credits_remaining"] == 9
    assert data["reused"] is False

    served = client.get(str(original["url"]))
    assert served.status_code == 200


def test_duplicate_upload_is_reused_when_enabled(
    monkeypatch: MonkeyPatch, vendor: FakeVendor
) -> None:
    monkeypatch.setattr(settings, "generation_dedup_policy", "reuse")
    _user_id, headers = _user_headers()
    client = TestClient(app)
    payload = _png(color="teal")

    first = client.post(
        "/api/images/process", files={"image": ("a.png", payload, "image/png")}, headers=headers
    )
    assert first.status_code == 201, first.text
    second = client.post(
        "/api/images/process", files={"image": ("b.png", payload, "image/png")}, headers=headers
    )
    assert second.status_code == 201, second.text

    first_data = cast(dict[str, object], first.json()["data"])
    second_data = cast(dict[str, object], second.json()["data"])
    assert second_data["reused"] is True
    first_gen = cast(dict[str, object], first_data["generation"])
    second_gen = cast(dict[str, object], second_data["generation"])
    assert second_gen["id"] == first_gen["id"]
    assert second_data["credits_remaining"] == 9
    assert len(vendor.submitted) == 1
    assert len(_upload_dir_files()) == 1


def test_analyze_mode_builds_prompt_from_labels(vendor: FakeVendor) -> None:
    _user_id, headers = _user_headers()
    client = TestClient(app)

    resp = client.post(
        "/api/images/process",
        files={"image": ("dog.png", _png(), "image/png")},
        data={"prompt_mode": "analyze"},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    data = cast(dict[str, object], resp.json()["data"])
    original = cast(dict[str, object], data["original_image"])
    analysis = cast(dict[str, object], original["analysis"])
    assert analysis["model"] == "fake-vision"
    prompt = str(cast(dict[str, object], data["generation"])["prompt"])
    assert prompt.startswith("A beautiful artistic representation of animal")
    assert prompt.endswith("highly detailed, professional quality")
    assert vendor.submitted[0].prompt == prompt
