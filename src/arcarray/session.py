"""Explicit request context: HTTP connection pool plus an optional access token."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import requests

from .auth import AccessToken, auth_client, auth_key, validate_or_refresh_token
from .config import ArcGISSettings
from .errors import AuthError
from .transport import parse_json, send

logger = logging.getLogger(__name__)


class ArcGISSession:
    """
    Carries the credentials every service call uses.

    Service objects hold a reference to the session that opened them, so a
    token is set once, here, and never read from global state.
    """

    def __init__(
        self,
        token: Optional[AccessToken] = None,
        *,
        host: Optional[str] = None,
        timeout: float = 30.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self._token = token
        self.host = (host or (token.arcgis_host if token else None) or ArcGISSettings().host).rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        http: Optional[requests.Session] = None,
    ) -> "ArcGISSession":
        """
        Build a session from ``ARCGIS_*`` variables.

        An API key wins over client credentials; without either the session
        is anonymous.
        """
        settings = ArcGISSettings.from_env(environ)
        token: Optional[AccessToken] = None
        if settings.api_key:
            token = auth_key(environ=environ)
        elif settings.has_client_credentials:
            token = auth_client(http=http, environ=environ)
        else:
            logger.debug("No ARCGIS_API_KEY or client credentials set; using an anonymous session")
        return cls(token, host=settings.host, timeout=settings.timeout, http=http)

    def __repr__(self) -> str:
        kind = self._token.token_type.value if self._token else "anonymous"
        return f"ArcGISSession(host={self.host!r}, auth={kind!r})"

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------
    @property
    def token(self) -> Optional[AccessToken]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    def set_token(self, token: Optional[AccessToken]) -> "ArcGISSession":
        """Return a session sharing this connection pool but using ``token``."""
        return ArcGISSession(token, host=token.arcgis_host if token else self.host, timeout=self.timeout, http=self.http)

    def require_token(self, action: str = "this operation") -> AccessToken:
        if self._token is None:
            raise AuthError(f"Authentication is required for {action}; create the session with a token")
        return self._current_token(self._token)

    def _current_token(self, token: AccessToken) -> AccessToken:
        refreshed = validate_or_refresh_token(token, http=self.http)
        if refreshed is not token:
            self._token = refreshed
        return refreshed

    def _headers(self) -> Dict[str, str]:
        if self._token is None:
            return {}
        return self._current_token(self._token).authorization_header()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def get_json(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"f": "json"}
        query.update(params or {})
        response = send(self.http, "GET", url, params=query, headers=self._headers(), timeout=self.timeout)
        return parse_json(response)

    def post_json(self, url: str, data: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        form: Dict[str, Any] = {"f": "json"}
        form.update(data or {})
        response = send(self.http, "POST", url, data=form, headers=self._headers(), timeout=self.timeout)
        return parse_json(response)

    def get_content(self, url: str, params: Optional[Mapping[str, Any]] = None) -> requests.Response:
        """GET returning the raw response; callers check the content type."""
        return send(self.http, "GET", url, params=params, headers=self._headers(), timeout=self.timeout)
