from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Callable, Optional

import httpx

from .errors import OAuthError
from .models import OAuthToken
from .storage import CredentialStore

log = logging.getLogger("pomblock")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8080/oauth2/callback"
DEFAULT_SCOPES = ("https://www.googleapis.com/auth/calendar",)
EXPIRY_LEEWAY = timedelta(seconds=60)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: Optional[str] = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    auth_url: str = GOOGLE_AUTH_URL
    token_url: str = GOOGLE_TOKEN_URL


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


class EnsureStatus(StrEnum):
    EXISTING = "existing"
    REFRESHED = "refreshed"
    REAUTHENTICATION_REQUIRED = "reauthentication_required"


@dataclass(frozen=True)
class EnsureTokenResult:
    status: EnsureStatus
    token: Optional[OAuthToken] = None


def _first_env(lookup: Callable[[str], Optional[str]], *names: str) -> str:
    for name in names:
        value = (lookup(name) or "").strip()
        if value:
            return value
    return ""


def load_oauth_config_from_env(
    lookup: Callable[[str], Optional[str]] = os.getenv,
) -> Optional[OAuthConfig]:
    """None when no client id is configured."""
    client_id = _first_env(lookup, "POMBLOCK_GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_ID")
    if not client_id:
        return None
    scopes_raw = _first_env(lookup, "POMBLOCK_GOOGLE_SCOPES", "GOOGLE_SCOPES")
    scopes = tuple(s for s in re.split(r"[\s,]+", scopes_raw) if s) or DEFAULT_SCOPES
    return OAuthConfig(
        client_id=client_id,
        client_secret=_first_env(lookup, "POMBLOCK_GOOGLE_CLIENT_SECRET", "GOOGLE_CLIENT_SECRET") or None,
        redirect_uri=_first_env(lookup, "POMBLOCK_GOOGLE_REDIRECT_URI", "GOOGLE_REDIRECT_URI")
        or DEFAULT_REDIRECT_URI,
        scopes=scopes,
    )


def token_is_valid(token: OAuthToken, now: datetime) -> bool:
    return bool(token.access_token.strip()) and token.expires_at > now + EXPIRY_LEEWAY


class OAuthClient:
    async def exchange_code(self, config: OAuthConfig, code: str) -> TokenGrant:
        raise NotImplementedError

    async def refresh(self, config: OAuthConfig, refresh_token: str) -> TokenGrant:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else 3600
    return 3600


def _oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        desc = payload.get("error_description") or payload.get("error")
        if isinstance(desc, str) and desc.strip():
            return " ".join(desc.split())[:200]
    return " ".join(response.text.split())[:200] or "token endpoint returned no error payload"


class GoogleOAuthClient(OAuthClient):
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _post_token(self, config: OAuthConfig, data: dict[str, str]) -> TokenGrant:
        form = dict(data, client_id=config.client_id)
        if config.client_secret:
            form["client_secret"] = config.client_secret
        try:
            response = await self._http_client.post(
                config.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthError(f"Google OAuth token request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise OAuthError(
                f"Google OAuth token request failed ({response.status_code}): {_oauth_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise OAuthError("Google OAuth token response is missing a non-empty access_token")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_in=_coerce_expires_in_seconds(payload.get("expires_in")),
            refresh_token=payload.get("refresh_token") or None,
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=payload.get("scope"),
        )

    async def exchange_code(self, config: OAuthConfig, code: str) -> TokenGrant:
        return await self._post_token(
            config,
            {"code": code, "grant_type": "authorization_code", "redirect_uri": config.redirect_uri},
        )

    async def refresh(self, config: OAuthConfig, refresh_token: str) -> TokenGrant:
        return await self._post_token(config, {"refresh_token": refresh_token, "grant_type": "refresh_token"})


class OAuthManager:
    """
    Access-token lifecycle for one or more accounts:
    - a stored token valid for at least another minute is used as-is
    - an expired token with a refresh token gets exactly one refresh attempt
    - anything else means the user has to authorize again
    """

    def __init__(
        self,
        config: OAuthConfig,
        store: CredentialStore,
        client: OAuthClient,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        self._clock = clock

    def _to_token(self, grant: TokenGrant, fallback_refresh: Optional[str]) -> OAuthToken:
        return OAuthToken(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or fallback_refresh,
            expires_at=self._clock() + timedelta(seconds=grant.expires_in),
            token_type=grant.token_type,
            scope=grant.scope,
        )

    async def ensure_access_token(self, account_id: str) -> EnsureTokenResult:
        stored = self.store.load_token(account_id)
        if stored is None:
            return EnsureTokenResult(status=EnsureStatus.REAUTHENTICATION_REQUIRED)
        if token_is_valid(stored, self._clock()):
            return EnsureTokenResult(status=EnsureStatus.EXISTING, token=stored)
        if not stored.refresh_token:
            return EnsureTokenResult(status=EnsureStatus.REAUTHENTICATION_REQUIRED)

        try:
            grant = await self.client.refresh(self.config, stored.refresh_token)
        except OAuthError as exc:
            log.warning("Token refresh for %s failed: %s", account_id, exc)
            return EnsureTokenResult(status=EnsureStatus.REAUTHENTICATION_REQUIRED)

        token = self._to_token(grant, stored.refresh_token)
        self.store.save_token(account_id, token)
        return EnsureTokenResult(status=EnsureStatus.REFRESHED, token=token)

    async def authenticate_with_code(self, account_id: str, code: str) -> OAuthToken:
        grant = await self.client.exchange_code(self.config, code.strip())
        previous = self.store.load_token(account_id)
        token = self._to_token(grant, previous.refresh_token if previous else None)
        self.store.save_token(account_id, token)
        return token

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state or secrets.token_urlsafe(16),
        }
        return str(httpx.URL(self.config.auth_url, params=params))
