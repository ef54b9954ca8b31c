"""
Access tokens for ArcGIS Online and ArcGIS Enterprise portals.

Four flows are supported:

* ``auth_client`` - OAuth2 client credentials (``ARCGIS_CLIENT`` + ``ARCGIS_SECRET``)
* ``auth_code`` - OAuth2 authorization code, pasted back by the user (``ARCGIS_CLIENT``)
* ``auth_user`` - username/password via ``generateToken`` (``ARCGIS_USER``)
* ``auth_key`` - developer API key (``ARCGIS_API_KEY``)

Tokens are plain values; pass them to :class:`arcarray.session.ArcGISSession`.
"""

from __future__ import annotations

import getpass
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, ConfigDict, Field

from .config import ArcGISSettings
from .errors import AuthError, ConfigurationError, ServiceError
from .transport import parse_json, send

logger = logging.getLogger(__name__)

OOB_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"


class TokenType(str, Enum):
    """How a token was obtained."""
    CLIENT = "client"
    CODE = "code"
    USER = "user"
    API_KEY = "api_key"


class AccessToken(BaseModel):
    """An access token plus the metadata needed to validate or refresh it."""

    access_token: str = Field(..., repr=False)
    token_type: TokenType
    arcgis_host: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = Field(None, repr=False)
    refresh_token_expires_at: Optional[datetime] = None
    username: Optional[str] = None
    client_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def is_expired(self, leeway: float = 0.0, now: Optional[datetime] = None) -> bool:
        """True if the token expires within ``leeway`` seconds."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - timedelta(seconds=leeway) <= now

    def can_refresh(self, now: Optional[datetime] = None) -> bool:
        if not self.refresh_token or not self.client_id:
            return False
        if self.refresh_token_expires_at is None:
            return True
        return self.refresh_token_expires_at > (now or datetime.now(timezone.utc))

    def authorization_header(self) -> Dict[str, str]:
        return {"X-Esri-Authorization": f"Bearer {self.access_token}"}


def _expires_in(seconds: Optional[Any]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=float(seconds))


def _expires_at_ms(millis: Optional[Any]) -> Optional[datetime]:
    if millis is None:
        return None
    return datetime.fromtimestamp(float(millis) / 1000.0, tz=timezone.utc)


def _token_request(
    url: str,
    data: Dict[str, Any],
    http: Optional[requests.Session],
    timeout: float,
) -> Dict[str, Any]:
    client = http or requests.Session()
    try:
        payload = parse_json(send(client, "POST", url, data={**data, "f": "json"}, timeout=timeout))
    except AuthError:
        raise
    except ServiceError as exc:
        raise AuthError(f"Token request rejected: {exc}", cause=exc, code=exc.code) from exc
    return payload


def auth_client(
    client: Optional[str] = None,
    secret: Optional[str] = None,
    host: Optional[str] = None,
    expiration: int = 120,
    *,
    http: Optional[requests.Session] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AccessToken:
    """
    Authenticate with OAuth2 client credentials.

    Args:
        client: OAuth client id (default ``ARCGIS_CLIENT``)
        secret: OAuth client secret (default ``ARCGIS_SECRET``)
        host: Portal URL (default ``ARCGIS_HOST`` or ArcGIS Online)
        expiration: Requested token lifetime in minutes
        http: Optional ``requests.Session`` to reuse

    Returns:
        AccessToken of type ``client``

    Raises:
        ConfigurationError: If the client id or secret is missing
        AuthError: If the portal rejects the credentials
    """
    settings = ArcGISSettings.from_env(environ, host=host, client_id=client, client_secret=secret)
    if not settings.has_client_credentials:
        raise ConfigurationError("Client credentials require ARCGIS_CLIENT and ARCGIS_SECRET")

    payload = _token_request(
        f"{settings.rest_url}/oauth2/token",
        {
            "client_id": settings.client_id,
            "client_secret": settings.client_secret,
            "grant_type": "client_credentials",
            "expiration": expiration,
        },
        http,
        settings.timeout,
    )
    if "access_token" not in payload:
        raise AuthError("Token response did not include an access_token")

    logger.debug("Obtained client credentials token from %s", settings.host)
    return AccessToken(
        access_token=payload["access_token"],
        token_type=TokenType.CLIENT,
        arcgis_host=settings.host,
        expires_at=_expires_in(payload.get("expires_in")),
        client_id=settings.client_id,
    )


def auth_user(
    username: Optional[str] = None,
    password: Optional[str] = None,
    host: Optional[str] = None,
    expiration: int = 60,
    *,
    http: Optional[requests.Session] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AccessToken:
    """Authenticate with a username and password through ``generateToken``.

    The password is prompted for when not supplied.
    """
    settings = ArcGISSettings.from_env(environ, host=host, username=username)
    if not settings.username:
        raise ConfigurationError("Username/password authentication requires ARCGIS_USER")
    if password is None:
        password = getpass.getpass(f"Password for {settings.username}: ")

    payload = _token_request(
        f"{settings.rest_url}/generateToken",
        {
            "username": settings.username,
            "password": password,
            "client": "referer",
            "referer": settings.host,
            "expiration": expiration,
        },
        http,
        settings.timeout,
    )
    if "token" not in payload:
        raise AuthError("generateToken response did not include a token")

    return AccessToken(
        access_token=payload["token"],
        token_type=TokenType.USER,
        arcgis_host=settings.host,
        expires_at=_expires_at_ms(payload.get("expires")),
        username=settings.username,
    )


def authorize_url(client: str, host: str, expiration: int = 20160) -> str:
    """URL the user visits to obtain an authorization code."""
    query = urlencode(
        {
            "client_id": client,
            "response_type": "code",
            "expiration": expiration,
            "redirect_uri": OOB_REDIRECT_URI,
        }
    )
    return f"{host.rstrip('/')}/sharing/rest/oauth2/authorize?{query}"


def auth_code(
    client: Optional[str] = None,
    host: Optional[str] = None,
    *,
    prompt: Callable[[str], str] = input,
    http: Optional[requests.Session] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AccessToken:
    """
    Authenticate with the OAuth2 authorization code flow.

    The authorize URL is passed to ``prompt``, which must return the code
    shown to the user after signing in. The resulting token carries a
    refresh token and can be renewed with :func:`refresh_token`.
    """
    settings = ArcGISSettings.from_env(environ, host=host, client_id=client)
    if not settings.client_id:
        raise ConfigurationError("Authorization code flow requires ARCGIS_CLIENT")

    url = authorize_url(settings.client_id, settings.host)
    code = prompt(f"Sign in at {url}\nthen paste the authorization code: ").strip()
    if not code:
        raise AuthError("No authorization code provided")

    payload = _token_request(
        f"{settings.rest_url}/oauth2/token",
        {
            "client_id": settings.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": OOB_REDIRECT_URI,
        },
        http,
        settings.timeout,
    )
    if "access_token" not in payload:
        raise AuthError("Token response did not include an access_token")

    return AccessToken(
        access_token=payload["access_token"],
        token_type=TokenType.CODE,
        arcgis_host=settings.host,
        expires_at=_expires_in(payload.get("expires_in")),
        refresh_token=payload.get("refresh_token"),
        refresh_token_expires_at=_expires_in(payload.get("refresh_token_expires_in")),
        username=payload.get("username"),
        client_id=settings.client_id,
    )


def auth_key(
    api_key: Optional[str] = None,
    host: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AccessToken:
    """Wrap a developer API key (``ARCGIS_API_KEY``) as a token."""
    settings = ArcGISSettings.from_env(environ, host=host, api_key=api_key)
    if not settings.api_key:
        raise ConfigurationError("API key authentication requires ARCGIS_API_KEY")
    return AccessToken(
        access_token=settings.api_key,
        token_type=TokenType.API_KEY,
        arcgis_host=settings.host,
    )


def refresh_token(
    token: AccessToken,
    client: Optional[str] = None,
    *,
    http: Optional[requests.Session] = None,
    timeout: float = 30.0,
) -> AccessToken:
    """Exchange the refresh token of an authorization-code token for a new access token."""
    client_id = client or token.client_id
    if not token.refresh_token or not client_id:
        raise AuthError("Token cannot be refreshed: no refresh token or client id")
    if not token.can_refresh():
        raise AuthError("Refresh token has expired; authenticate again")

    payload = _token_request(
        f"{token.arcgis_host}/sharing/rest/oauth2/token",
        {
            "client_id": client_id,
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
        },
        http,
        timeout,
    )
    if "access_token" not in payload:
        raise AuthError("Refresh response did not include an access_token")

    logger.debug("Refreshed access token for %s", token.username or client_id)
    return token.model_copy(
        update={
            "access_token": payload["access_token"],
            "expires_at": _expires_in(payload.get("expires_in")),
            "username": payload.get("username") or token.username,
        }
    )


def validate_or_refresh_token(
    token: AccessToken,
    refresh_threshold: float = 10.0,
    *,
    http: Optional[requests.Session] = None,
) -> AccessToken:
    """
    Return a usable token.

    Tokens expiring within ``refresh_threshold`` seconds are refreshed when
    possible. An expired token that cannot be refreshed raises ``AuthError``.
    """
    if not token.is_expired(leeway=refresh_threshold):
        return token
    if token.can_refresh():
        return refresh_token(token, http=http)
    if token.is_expired():
        raise AuthError(f"{token.token_type.value} token has expired; authenticate again")
    return token
