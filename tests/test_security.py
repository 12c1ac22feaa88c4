# pyright: reportPrivateUsage=false

from __future__ import annotations

import logging
import time

import pytest

from portraitist.core.logging import RedactingFormatter
from portraitist.core.security import (
    TokenExpired,
    TokenInvalid,
    decode_access_token,
    encode_access_token,
    hash_token,
    new_refresh_token,
)


def test_access_token_round_trip_adds_registered_claims() -> None:
    token = encode_access_token({"sub": "u-1", "role": "user"}, "s3cret", 60, issuer="iss-test")
    claims = decode_access_token(token, "s3cret", issuer="iss-test")
    assert claims["sub"] == "u-1"
    assert claims["iss"] == "iss-test"
    assert isinstance(claims["jti"], str)
    exp, iat = claims["exp"], claims["iat"]
    assert isinstance(exp, int) and isinstance(iat, int)
    assert exp - iat == 60


def test_tokens_minted_together_differ() -> None:
    a = encode_access_token({"sub": "u-1"}, "s3cret", 60)
    b = encode_access_token({"sub": "u-1"}, "s3cret", 60)
    assert a != b
    assert hash_token(a) != hash_token(b)


def test_wrong_secret_or_issuer_is_invalid() -> None:
    token = encode_access_token({"sub": "u-1"}, "s3cret", 60, issuer="iss-test")
    with pytest.raises(TokenInvalid):
        _ = decode_access_token(token, "other", issuer="iss-test")
    with pytest.raises(TokenInvalid):
        _ = decode_access_token(token, "s3cret", issuer="someone-else")
    with pytest.raises(TokenInvalid):
        _ = decode_access_token(token + "x", "s3cret")


def test_expired_token(monkeypatch: pytest.MonkeyPatch) -> None:
    token = encode_access_token({"sub": "u-1"}, "s3cret", 1)
    real_time = time.time
    monkeypatch.setattr(time, "time", lambda: real_time() + 5)
    with pytest.raises(TokenExpired):
        _ = decode_access_token(token, "s3cret")
    assert decode_access_token(token, "s3cret", verify_exp=False)["sub"] == "u-1"


def test_refresh_tokens_are_random_and_hashed() -> None:
    a, b = new_refresh_token(), new_refresh_token()
    assert a != b
    assert len(hash_token(a)) == 64
    with pytest.raises(ValueError):
        _ = hash_token("")


def test_log_formatter_redacts_tokens_and_image_payloads() -> None:
    formatter = RedactingFormatter(fmt="%(message)s")
    record = logging.LogRecord(
        name="t",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Authorization: Bearer abc.def.ghi body=%s",
        args=('{"refreshToken": "r-123456", "url": "data:image/png;base64,' + "A" * 200 + '"}',),
        exc_info=None,
    )
    out = formatter.format(record)
    assert "abc.def.ghi" not in out
    assert "r-123456" not in out
    assert "A" * 200 not in out
