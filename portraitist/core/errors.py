# pyright: reportUnusedFunction=false
# pyright: reportUnknownMemberType=false
from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import ClassVar

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from portraitist.core.config import Settings


logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base of every error that maps onto a public HTTP status.

    ``error`` is the stable message shown to clients; ``details`` carries internal
    text that is only rendered outside production.
    """

    status_code: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_error: ClassVar[str] = "Internal server error"

    def __init__(self, error: str | None = None, *, details: str | None = None) -> None:
        self.error: str = error or self.default_error
        self.details: str | None = details
        super().__init__(self.error)

    def headers(self) -> dict[str, str] | None:
        return None


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_error = "Invalid request"


class AuthenticationFailed(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_error = "Authentication required"


class PermissionDenied(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_error = "Access denied"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_error = "Not found"


class InsufficientCredits(AppError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_error = "Insufficient credits"


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_error = "Too many requests"

    def __init__(
        self,
        error: str | None = None,
        *,
        retry_after_seconds: int = 0,
        details: str | None = None,
    ) -> None:
        super().__init__(error, details=details)
        self.retry_after_seconds: int = max(0, int(retry_after_seconds))

    def headers(self) -> dict[str, str] | None:
        if self.retry_after_seconds > 0:
            return {"Retry-After": str(self.retry_after_seconds)}
        return None


class UpstreamError(AppError):
    """A vendor (generation or vision) call did not produce a usable answer."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_error = "Upstream service error"


class VendorTimeout(UpstreamError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_error = "Upstream service timed out"


class VendorUnavailable(UpstreamError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_error = "Upstream service unavailable"


class VendorHTTPError(UpstreamError):
    default_error = "Upstream service returned an error"

    def __init__(
        self,
        error: str | None = None,
        *,
        upstream_status: int | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(error, details=details)
        self.upstream_status: int | None = upstream_status


class VendorResponseError(UpstreamError):
    default_error = "Upstream service returned a malformed response"


def _timestamp() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def error_payload(error: str, *, details: str | None, show_details: bool) -> dict[str, object]:
    body: dict[str, object] = {
        "success": False,
        "error": error,
        "metadata": {"timestamp": _timestamp()},
    }
    if show_details and details:
        body["details"] = details
    return body


def install_error_handlers(app: FastAPI, settings: Settings) -> None:
    show_details = not settings.is_production()

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                "request failed path=%s status=%s error=%s details=%s",
                request.url.path,
                exc.status_code,
                exc.error,
                exc.details,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc.error, details=exc.details, show_details=show_details),
            headers=exc.headers(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(detail, details=None, show_details=show_details),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = str(first.get("msg", "Invalid request"))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_payload(
                "Invalid request",
                details=f"{loc}: {msg}" if loc else msg,
                show_details=show_details,
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_payload(
                "Internal server error",
                details=f"{type(exc).__name__}: {exc}",
                show_details=show_details,
            ),
        )
