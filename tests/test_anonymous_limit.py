# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false

from __future__ import annotations

from datetime import datetime, timedelta
import io
from typing import cast

from _pytest.monkeypatch import MonkeyPatch
from fastapi.testclient import TestClient
from PIL import Image as PILImage
from sqlalchemy import select

from portraitist.core.config import settings
from portraitist.db.models import AnonymousSession, Generation
from portraitist.db.session import SessionLocal
from portraitist.main import app
from portraitist.services.identity import (
    DAILY_LIMIT_MESSAGE,
    is_valid_anonymous_id,
    resolve_anonymous_session,
)
from portraitist.services.vendors.fake import FakeVendor


def _png() -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGB", (32, 32), "gray").save(buf, format="PNG")
    return buf.getvalue()


def _process(client: TestClient) -> int:
    resp = client.post("/api/images/process", files={"image": ("pet.png", _png(), "image/png")})
    return resp.status_code


def test_first_request_sets_anonymous_cookie(vendor: FakeVendor) -> None:
    client = TestClient(app)
    resp = client.post(
        "/api/images/process", files={"image": ("pet.png", _png(), "image/png")}
    )
    assert resp.status_code == 201, resp.text
    anonymous_id = client.cookies.get(settings.anonymous_cookie_name)
    assert anonymous_id

    set_cookie = resp.headers["set-cookie"].lower()
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie

    data = cast(dict[str, object], resp.json()["data"])
    assert data["credits_remaining"] is None
    with SessionLocal() as db:
        gen = db.execute(select(Generation)).scalar_one()
        assert gen.anonymous_id == anonymous_id
        assert gen.user_id is None
        assert gen.credits_spent == 0


def test_eleventh_upload_of_the_day_is_refused(
    monkeypatch: MonkeyPatch, vendor: FakeVendor
) -> None:
    monkeypatch.setattr(settings, "anonymous_daily_request_limit", 10)
    client = TestClient(app)

    for _ in range(10):
        assert _process(client) == 201

    resp = client.post(
        "/api/images/process", files={"image": ("pet.png", _png(), "image/png")}
    )
    assert resp.status_code == 429
    body = cast(dict[str, object], resp.json())
    assert body["success"] is False
    assert body["error"] == DAILY_LIMIT_MESSAGE
    assert len(vendor.submitted) == 10


def test_status_polls_do_not_count_against_the_cap(
    monkeypatch: MonkeyPatch, vendor: FakeVendor
) -> None:
    monkeypatch.setattr(settings, "anonymous_daily_request_limit", 2)
    client = TestClient(app)

    resp = client.post(
        "/api/images/process", files={"image": ("pet.png", _png(), "image/png")}
    )
    assert resp.status_code == 201
    request_id = resp.json()["data"]["generation"]["request_id"]
    for _ in range(5):
        assert client.get(f"/api/images/generations/{request_id}").status_code == 200
    assert client.get("/api/images").status_code == 200

    assert _process(client) == 201
    assert _process(client) == 429


def test_counter_restarts_on_a_new_day(monkeypatch: MonkeyPatch, vendor: FakeVendor) -> None:
    monkeypatch.setattr(settings, "anonymous_daily_request_limit", 1)
    client = TestClient(app)

    assert _process(client) == 201
    assert _process(client) == 429

    anonymous_id = client.cookies.get(settings.anonymous_cookie_name)
    with SessionLocal() as db:
        row = db.execute(
            select(AnonymousSession).where(AnonymousSession.anonymous_id == anonymous_id)
        ).scalar_one()
        row.last_activity = datetime.utcnow() - timedelta(days=1)
        db.commit()

    assert _process(client) == 201


def test_anonymous_id_header_is_accepted(vendor: FakeVendor) -> None:
    client = TestClient(app)
    anonymous_id = "3b1f0c2e-8d7a-4c55-9e21-0f5a6b7c8d9e"
    resp = client.post(
        "/api/images/process",
        files={"image": ("pet.png", _png(), "image/png")},
        headers={"X-Anonymous-Id": anonymous_id},
    )
    assert resp.status_code == 201, resp.text

    with SessionLocal() as db:
        gen = db.execute(select(Generation)).scalar_one()
        assert gen.anonymous_id == anonymous_id


def test_anonymous_visitors_are_isolated(vendor: FakeVendor) -> None:
    owner = TestClient(app)
    stranger = TestClient(app)

    resp = owner.post(
        "/api/images/process", files={"image": ("pet.png", _png(), "image/png")}
    )
    assert resp.status_code == 201
    request_id = resp.json()["data"]["generation"]["request_id"]

    assert stranger.get(f"/api/images/generations/{request_id}").status_code == 403
    listing = stranger.get("/api/images")
    assert listing.status_code == 200
    assert listing.json()["data"]["total"] == 0


def test_malformed_anonymous_id_is_replaced() -> None:
    with SessionLocal() as db:
        session, minted = resolve_anonymous_session(
            db,
            anonymous_id="bad id!",
            ip="127.0.0.1",
            user_agent="pytest",
            ttl=timedelta(days=1),
            counted=True,
        )
        assert minted is True
        assert session.anonymous_id != "bad id!"
        assert is_valid_anonymous_id(session.anonymous_id)
        assert session.request_count == 1

        again, minted_again = resolve_anonymous_session(
            db,
            anonymous_id=session.anonymous_id,
            ip="127.0.0.1",
            user_agent="pytest",
            ttl=timedelta(days=1),
        )
        assert minted_again is False
        assert again.anonymous_id == session.anonymous_id
