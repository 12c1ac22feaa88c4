from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from collections.abc import Mapping
from typing import TypeAlias, cast


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class TokenInvalid(ValueError):
    def __init__(self, message: str = "malformed token") -> None:
        super().__init__(message)


class TokenExpired(ValueError):
    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    if data == "":
        raise ValueError("invalid base64 input")
    padded = data + "=" * ((4 - (len(data) % 4)) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except Exception as exc:
        raise ValueError("invalid base64 input") from exc


def new_refresh_token() -> str:
    return _b64url_encode(secrets.token_bytes(32))


def new_anonymous_id() -> str:
    return str(uuid.uuid4())


def hash_token(token: str) -> str:
    if token == "":
        raise ValueError("token must be a non-empty string")
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _json_b64url(obj: Mapping[str, JSONValue]) -> str:
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=True).encode("utf-8")
    return _b64url_encode(raw)


def _is_json_value(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, list):
        raw_list = cast(list[object], value)
        return all(_is_json_value(v) for v in raw_list)
    if isinstance(value, dict):
        raw = cast(dict[object, object], value)
        for k, v in raw.items():
            if not isinstance(k, str):
                return False
            if not _is_json_value(v):
                return False
        return True
    return False


def _json_loads_dict(data: bytes) -> dict[str, JSONValue]:
    try:
        obj = cast(object, json.loads(data.decode("utf-8")))
    except Exception as exc:
        raise TokenInvalid() from exc
    if not isinstance(obj, dict):
        raise TokenInvalid()
    raw = cast(dict[object, object], obj)
    for k, v in raw.items():
        if not isinstance(k, str):
            raise TokenInvalid()
        if not _is_json_value(v):
            raise TokenInvalid()
    return cast(dict[str, JSONValue], raw)


def _sign_hs256(message: bytes, secret: str) -> bytes:
    if secret == "":
        raise ValueError("secret must be a non-empty string")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def encode_access_token(
    payload: dict[str, JSONValue],
    secret: str,
    expires_in_seconds: int,
    *,
    issuer: str | None = None,
) -> str:
    """Sign an HS256 JWT carrying ``payload`` plus ``iat``/``exp``/``jti`` (and ``iss``).

    Every token gets a fresh ``jti`` so two tokens minted in the same second for
    the same user never collide on their stored hash.
    """
    if expires_in_seconds <= 0:
        raise ValueError("expires_in_seconds must be a positive int")

    now = int(time.time())
    body: dict[str, JSONValue] = dict(payload)
    body["iat"] = now
    body["exp"] = now + expires_in_seconds
    body["jti"] = str(uuid.uuid4())
    if issuer:
        body["iss"] = issuer

    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _json_b64url(header)
    payload_b64 = _json_b64url(body)
    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = _sign_hs256(signing_input, secret)
    return f"{header_b64}.{payload_b64}.{_b64url_encode(sig)}"


def decode_access_token(
    token: str,
    secret: str,
    *,
    issuer: str | None = None,
    verify_exp: bool = True,
) -> dict[str, JSONValue]:
    if token == "":
        raise TokenInvalid()

    parts = token.split(".")
    if len(parts) != 3:
        raise TokenInvalid()
    header_b64, payload_b64, sig_b64 = parts

    try:
        signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    except UnicodeEncodeError as exc:
        raise TokenInvalid() from exc
    expected_sig = _sign_hs256(signing_input, secret)
    try:
        provided_sig = _b64url_decode(sig_b64)
        header_raw = _b64url_decode(header_b64)
        payload_raw = _b64url_decode(payload_b64)
    except ValueError as exc:
        raise TokenInvalid() from exc
    if not hmac.compare_digest(provided_sig, expected_sig):
        raise TokenInvalid()

    header = _json_loads_dict(header_raw)
    payload = _json_loads_dict(payload_raw)

    alg = header.get("alg")
    if not isinstance(alg, str) or alg != "HS256":
        raise TokenInvalid()

    if issuer is not None and payload.get("iss") != issuer:
        raise TokenInvalid()

    exp = payload.get("exp")
    if not isinstance(exp, int):
        raise TokenInvalid()
    if verify_exp and int(time.time()) >= exp:
        raise TokenExpired()

    return payload
