"""
HTTP helpers shared by the session and authentication flows.

ArcGIS endpoints frequently answer ``200 OK`` with an ``{"error": ...}``
body, so both the HTTP status and the JSON payload are checked.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import requests

from .errors import AuthError, NetworkError, ParseError, QueryError, ServiceError

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = frozenset({401, 403, 498, 499})
QUERY_ERROR_CODES = frozenset({400})


def error_for_code(code: Optional[int], message: str) -> ServiceError:
    """Map an HTTP status or Esri error code onto the exception hierarchy."""

    if code in AUTH_ERROR_CODES:
        return AuthError(message, code=code)
    if code in QUERY_ERROR_CODES:
        return QueryError(message, code=code)
    return ServiceError(message, code=code)


def send(
    http: requests.Session,
    method: str,
    url: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
    data: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = 30.0,
) -> requests.Response:
    """Issue one request, translating transport failures and HTTP errors."""

    logger.debug("%s %s", method, url)
    try:
        response = http.request(
            method,
            url,
            params=dict(params) if params else None,
            data=dict(data) if data else None,
            headers=dict(headers) if headers else None,
            timeout=timeout,
        )
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise NetworkError(f"Unable to reach {url}: {exc}", cause=exc) from exc
    except requests.RequestException as exc:
        raise ServiceError(f"Request to {url} failed: {exc}", cause=exc) from exc

    if response.status_code >= 400:
        raise error_for_code(
            response.status_code,
            f"HTTP {response.status_code} from {url}: {response.text[:200]}",
        )
    return response


def raise_for_esri_error(payload: Any, url: str = "") -> None:
    """Raise if ``payload`` is an Esri error envelope."""

    if not isinstance(payload, dict) or "error" not in payload:
        return

    error = payload["error"]
    if not isinstance(error, dict):
        raise ServiceError(f"{url}: {error}")

    code = error.get("code")
    parts = [error.get("message") or error.get("error_description") or "Unknown error"]
    details = [d for d in error.get("details") or [] if d]
    if details:
        parts.append("; ".join(str(d) for d in details))
    message = " - ".join(parts)
    raise error_for_code(code, f"{url}: {message}" if url else message)


def parse_json(response: requests.Response) -> Dict[str, Any]:
    """Decode a JSON response body and surface any Esri error it carries."""

    try:
        payload = response.json()
    except ValueError as exc:
        raise ParseError(
            f"Expected JSON from {response.url}, got {response.headers.get('content-type', 'unknown content')}",
            cause=exc,
        ) from exc
    raise_for_esri_error(payload, response.url)
    if not isinstance(payload, dict):
        raise ParseError(f"Expected a JSON object from {response.url}")
    return payload
