from __future__ import annotations

from collections.abc import Callable
import contextvars
import logging
import re
import sys
from typing import override


request_id_ctx_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    @override
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.request_id = request_id_ctx_var.get()
        return True


def _redact_value(raw: str) -> str:
    return f"[REDACTED len={len(raw)}]"


def _keep_prefix(m: re.Match[str]) -> str:
    return f"{m.group(1)}{_redact_value(m.group(2))}{m.group(3)}"


_SECRET_FIELDS = (
    r"access_token|refresh_token|refreshToken|id_token|idToken|token|api_key|b64_json|code|state"
)

# Order matters: header forms first, then quoted fields, then bare key=value pairs.
_RULES: tuple[tuple[re.Pattern[str], Callable[[re.Match[str]], str]], ...] = (
    (
        re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)([a-z0-9._~+/=-]+)()"),
        _keep_prefix,
    ),
    (
        re.compile(r"(?i)([\"']authorization[\"']\s*:\s*[\"']\s*bearer\s+)([^\"']+)([\"'])"),
        _keep_prefix,
    ),
    (re.compile(r"(?i)(x-api-key\s*[:=]\s*)([^\s,;]+)()"), _keep_prefix),
    (
        re.compile(rf"(?i)([\"'](?:{_SECRET_FIELDS})[\"']\s*:\s*[\"'])([^\"']+)([\"'])"),
        _keep_prefix,
    ),
    (re.compile(rf"(?i)(\b(?:{_SECRET_FIELDS})\b\s*=\s*)([^\s,;&]+)()"), _keep_prefix),
    (re.compile(r"(?i)(data:image/[a-z0-9.+-]+;base64,)([a-z0-9+/=]+)()"), _keep_prefix),
    (
        re.compile(r"(?<![a-f0-9])[A-Za-z0-9+/]{120,}={0,2}"),
        lambda _m: "[REDACTED_B64]",
    ),
)


def redact(text: str) -> str:
    for pattern, repl in _RULES:
        text = pattern.sub(repl, text)
    return text


class RedactingFormatter(logging.Formatter):
    """Masks bearer tokens, OAuth codes, vendor keys and inline image payloads."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


# httpx logs full request URLs at INFO, including vendor query strings.
_NOISY_LOGGERS = ("httpx", "httpcore", "PIL")


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(
        RedactingFormatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] [rid=%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.handlers = [handler]

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
