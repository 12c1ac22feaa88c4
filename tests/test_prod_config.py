# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false

from __future__ import annotations

import pytest

from portraitist.core.config import Settings


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in [
        "ENV",
        "AUTH_ACCESS_TOKEN_SECRET",
        "GENERATION_PROVIDER",
        "DEAPI_API_KEY",
        "VISION_MODE",
        "VISION_BASE_URL",
        "VISION_API_KEY",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
    ]:
        monkeypatch.delenv(key, raising=False)


def _prod_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("AUTH_ACCESS_TOKEN_SECRET", "auth-secret-set-in-prod-0123456789")
    monkeypatch.setenv("GENERATION_PROVIDER", "deapi")
    monkeypatch.setenv("DEAPI_API_KEY", "deapi-key")
    monkeypatch.setenv("VISION_MODE", "openai")
    monkeypatch.setenv("VISION_BASE_URL", "https://vision.example.test")
    monkeypatch.setenv("VISION_API_KEY", "vision-key")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-id.apps.googleusercontent.com")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "client-secret")


def test_prod_default_placeholders_fail(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("ENV", "prod")

    with pytest.raises(Exception) as excinfo:
        _ = Settings()
    msg = str(excinfo.value)
    assert "AUTH_ACCESS_TOKEN_SECRET" in msg
    assert "GENERATION_PROVIDER=fake" in msg
    assert "VISION_MODE=fake" in msg
    assert "GOOGLE_CLIENT_ID" in msg


def test_prod_fully_configured_ok(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    _prod_env(monkeypatch)

    s = Settings()
    assert s.is_production()
    assert s.google_oauth_configured
    assert s.generation_provider == "deapi"


def test_prod_forbids_fake_vendor(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    _prod_env(monkeypatch)
    monkeypatch.setenv("GENERATION_PROVIDER", "fake")

    with pytest.raises(Exception) as excinfo:
        _ = Settings()
    assert "GENERATION_PROVIDER=fake" in str(excinfo.value)


def test_vendor_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("GENERATION_PROVIDER", "deapi")

    with pytest.raises(Exception) as excinfo:
        _ = Settings()
    assert "DEAPI_API_KEY" in str(excinfo.value)


def test_unknown_dedup_policy_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("GENERATION_DEDUP_POLICY", "always")

    with pytest.raises(Exception) as excinfo:
        _ = Settings()
    assert "GENERATION_DEDUP_POLICY" in str(excinfo.value)


@pytest.mark.parametrize("env_value", ["dev", "test"])
def test_non_prod_defaults_are_usable(monkeypatch: pytest.MonkeyPatch, env_value: str) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("ENV", env_value)

    s = Settings()
    assert s.generation_provider == "fake"
    assert s.anonymous_daily_request_limit == 10
    assert s.cors_allowed_origins == []


def test_list_settings_accept_csv_and_json(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    s = Settings.model_validate(
        {
            "cors_allowed_origins": "https://a.test, https://b.test",
            "trusted_hosts": '["api.test", "localhost"]',
        }
    )
    assert s.cors_allowed_origins == ["https://a.test", "https://b.test"]
    assert s.trusted_hosts == ["api.test", "localhost"]
