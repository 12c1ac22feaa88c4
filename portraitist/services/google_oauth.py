# pyright: reportMissingTypeStubs=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownArgumentType=false
from __future__ import annotations

from functools import lru_cache
import logging
import time
from typing import Protocol, cast

import httpx
from authlib.integrations.base_client.errors import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.jose import JsonWebKey, KeySet, jwt
from authlib.jose.errors import ExpiredTokenError, InvalidClaimError, JoseError, MissingClaimError

from portraitist.core.config import Settings, get_settings
from portraitist.core.errors import AuthenticationFailed, VendorTimeout, VendorUnavailable
from portraitist.services.users import GoogleIdentity


logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]

_JWKS_TTL_SECONDS = 3600.0


class GoogleAuthProvider(Protocol):
    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> str: ...

    async def verify_id_token(self, id_token: str) -> GoogleIdentity: ...


def _truthy_claim(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class GoogleOAuthClient:
    """Authorization-code exchange and ID-token verification for Google sign-in."""

    def __init__(self, settings: Settings) -> None:
        if not settings.google_oauth_configured:
            raise AuthenticationFailed("Google sign-in is not configured")
        self._client_id: str = cast(str, settings.google_client_id)
        self._client_secret: str = cast(str, settings.google_client_secret)
        self._redirect_uri: str = settings.google_callback_url
        timeout_s = max(1.0, float(settings.google_http_timeout_seconds))
        self._timeout: httpx.Timeout = httpx.Timeout(timeout_s, connect=min(10.0, timeout_s))
        self._jwks: KeySet | None = None
        self._jwks_fetched_at: float = 0.0

    def _oauth_client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            scope="openid email profile",
            redirect_uri=self._redirect_uri,
            timeout=self._timeout,
            trust_env=False,
        )

    def authorization_url(self, state: str) -> str:
        client = self._oauth_client()
        url, _state = client.create_authorization_url(
            GOOGLE_AUTHORIZE_URL,
            state=state,
            access_type="online",
            prompt="select_account",
        )
        return cast(str, url)

    async def exchange_code(self, code: str) -> str:
        if code.strip() == "":
            raise AuthenticationFailed("Authorization code missing")
        try:
            async with self._oauth_client() as client:
                token = await client.fetch_token(GOOGLE_TOKEN_URL, code=code)
        except httpx.TimeoutException as exc:
            raise VendorTimeout("Google sign-in timed out", details=str(exc)) from exc
        except httpx.TransportError as exc:
            raise VendorUnavailable("Google sign-in unavailable", details=str(exc)) from exc
        except OAuthError as exc:
            raise AuthenticationFailed("Authentication failed", details=exc.error) from exc

        id_token = token.get("id_token")
        if not isinstance(id_token, str) or id_token == "":
            raise AuthenticationFailed("Authentication failed", details="no id_token in response")
        return id_token

    async def _key_set(self, *, force: bool = False) -> KeySet:
        fresh = (time.monotonic() - self._jwks_fetched_at) < _JWKS_TTL_SECONDS
        if self._jwks is not None and fresh and not force:
            return self._jwks
        try:
            async with httpx.AsyncClient(timeout=self._timeout, trust_env=False) as client:
                resp = await client.get(GOOGLE_JWKS_URL)
                _ = resp.raise_for_status()
                data = cast(dict[str, object], resp.json())
        except httpx.TimeoutException as exc:
            raise VendorTimeout("Google sign-in timed out", details=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise VendorUnavailable("Google sign-in unavailable", details=str(exc)) from exc
        self._jwks = JsonWebKey.import_key_set(data)
        self._jwks_fetched_at = time.monotonic()
        return self._jwks

    async def verify_id_token(self, id_token: str) -> GoogleIdentity:
        claims_options = {
            "iss": {"essential": True, "values": GOOGLE_ISSUERS},
            "aud": {"essential": True, "value": self._client_id},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        try:
            try:
                claims = jwt.decode(id_token, await self._key_set(), claims_options=claims_options)
            except ValueError:
                # Unknown key id: Google rotated its keys since the last fetch.
                claims = jwt.decode(
                    id_token, await self._key_set(force=True), claims_options=claims_options
                )
            claims.validate(leeway=60)
        except ExpiredTokenError as exc:
            raise AuthenticationFailed("Token expired") from exc
        except (InvalidClaimError, MissingClaimError) as exc:
            if getattr(exc, "claim_name", None) == "aud":
                raise AuthenticationFailed("Invalid token audience") from exc
            raise AuthenticationFailed("Authentication failed", details=str(exc)) from exc
        except (JoseError, ValueError) as exc:
            raise AuthenticationFailed("Authentication failed", details=str(exc)) from exc

        if not _truthy_claim(claims.get("email_verified")):
            raise AuthenticationFailed("Email not verified by Google")

        email = claims.get("email")
        if not isinstance(email, str) or email.strip() == "":
            raise AuthenticationFailed("Authentication failed", details="email claim missing")

        name = claims.get("name")
        picture = claims.get("picture")
        return GoogleIdentity(
            sub=str(claims["sub"]),
            email=email.strip().lower(),
            email_verified=True,
            name=name if isinstance(name, str) else None,
            picture=picture if isinstance(picture, str) else None,
        )


@lru_cache
def _cached_client() -> GoogleOAuthClient:
    return GoogleOAuthClient(get_settings())


def get_google_auth() -> GoogleAuthProvider:
    return _cached_client()
