"""Service registry and base abstractions for ArcGIS REST resources."""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import urlparse

from ..auth import AccessToken
from ..errors import ServiceError
from ..session import ArcGISSession
from ..types import BoundingBox, ServiceKind, SpatialReference

__all__ = [
    "BaseService",
    "register_service",
    "detect_service_kind",
    "get_service",
    "arc_open",
]

logger = logging.getLogger(__name__)

S = TypeVar("S", bound="BaseService")


class BaseService(ABC):
    """
    A REST resource opened with a session.

    Metadata is fetched once when the service is opened; ``refresh()``
    returns a new object instead of mutating this one.
    """

    service_kind: ServiceKind

    def __init__(
        self,
        url: str,
        *,
        session: Optional[ArcGISSession] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.url = _normalize_url(url)
        self.session = session or ArcGISSession()
        self._metadata = metadata

    @classmethod
    def from_url(cls: Type[S], url: str, *, session: Optional[ArcGISSession] = None) -> S:
        """Fetch metadata for ``url`` and build the service."""

        session = session or ArcGISSession()
        url = _normalize_url(url)
        return cls(url, session=session, metadata=session.get_json(url))

    @property
    def metadata(self) -> Dict[str, Any]:
        if self._metadata is None:
            self._metadata = self.session.get_json(self.url)
        return self._metadata

    def refresh(self: S) -> S:
        """Return a copy of this service with freshly fetched metadata."""
        return type(self).from_url(self.url, session=self.session)

    # ------------------------------------------------------------------
    # Common metadata accessors
    # ------------------------------------------------------------------
    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or self.url.rsplit("/", 1)[-1])

    @property
    def description(self) -> Optional[str]:
        return self.metadata.get("serviceDescription") or self.metadata.get("description") or None

    @property
    def extent(self) -> Optional[BoundingBox]:
        extent = self.metadata.get("extent") or self.metadata.get("fullExtent")
        if not extent or extent.get("xmin") is None:
            return None
        return BoundingBox.from_esri(extent)

    @property
    def spatial_reference(self) -> Optional[SpatialReference]:
        extent = self.metadata.get("extent") or self.metadata.get("fullExtent") or {}
        return SpatialReference.from_esri(
            extent.get("spatialReference") or self.metadata.get("spatialReference")
        )

    @abstractmethod
    def summary(self) -> Dict[str, Any]:
        """Key facts shown in ``repr``."""

    def __repr__(self) -> str:
        details = ", ".join(f"{k}={v!r}" for k, v in self.summary().items() if v is not None)
        return f"<{type(self).__name__} {self.url}{' ' + details if details else ''}>"


def _normalize_url(url: str) -> str:
    parsed = urlparse(url.strip())
    base = f"{parsed.scheme}://{parsed.netloc}{parsed.path}" if parsed.scheme else url.split("?", 1)[0]
    return base.rstrip("/")


# ----------------------------------------------------------------------
# Service registry utilities
# ----------------------------------------------------------------------

_SERVICE_REGISTRY: Dict[ServiceKind, Type[BaseService]] = {}


def register_service(service_kind: ServiceKind):
    """Decorator for registering service implementations."""

    def decorator(cls: Type[BaseService]) -> Type[BaseService]:
        _SERVICE_REGISTRY[service_kind] = cls
        cls.service_kind = service_kind
        return cls

    return decorator


_SERVER_SEGMENTS = {
    "featureserver": ServiceKind.FEATURE_SERVER,
    "mapserver": ServiceKind.MAP_SERVER,
    "imageserver": ServiceKind.IMAGE_SERVER,
}


def detect_service_kind(
    url: str,
    metadata: Optional[Dict[str, Any]] = None,
    fallback: Optional[ServiceKind] = None,
) -> ServiceKind:
    """Infer the resource kind from the URL path, then from its metadata."""

    segments = [s for s in urlparse(url).path.split("/") if s]
    metadata = metadata or {}

    if len(segments) >= 2 and segments[-1].isdigit() and segments[-2].lower() in ("featureserver", "mapserver"):
        return ServiceKind.TABLE if metadata.get("type") == "Table" else ServiceKind.FEATURE_LAYER

    if segments and segments[-1].lower() in _SERVER_SEGMENTS:
        return _SERVER_SEGMENTS[segments[-1].lower()]

    layer_type = metadata.get("type")
    if layer_type == "Table":
        return ServiceKind.TABLE
    if layer_type in ("Feature Layer", "Group Layer"):
        return ServiceKind.FEATURE_LAYER
    if str(metadata.get("serviceDataType", "")).startswith("esriImageService") or "bandCount" in metadata:
        return ServiceKind.IMAGE_SERVER
    if "layers" in metadata or "tables" in metadata:
        return ServiceKind.FEATURE_SERVER

    if fallback is not None:
        return fallback

    raise ServiceError(f"Unable to detect service kind from URL: {url}")


def get_service(
    url: str,
    *,
    service_kind: Optional[ServiceKind] = None,
    session: Optional[ArcGISSession] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> BaseService:
    """Instantiate the appropriate service implementation for ``url``."""

    detected_kind = service_kind or detect_service_kind(url, metadata)

    try:
        service_cls = _SERVICE_REGISTRY[detected_kind]
    except KeyError as exc:  # pragma: no cover - every kind is registered on import
        raise ServiceError(f"No service registered for kind {detected_kind}") from exc

    if metadata is None:
        return service_cls.from_url(url, session=session)
    return service_cls(url, session=session, metadata=metadata)


def arc_open(
    url: str,
    session: Optional[ArcGISSession] = None,
    token: Optional[AccessToken] = None,
) -> BaseService:
    """
    Open a Feature Service, Map Service, Image Service, layer or table.

    Args:
        url: REST endpoint URL
        session: Session carrying credentials (anonymous if omitted)
        token: Token to use instead of the session's own

    Returns:
        The registered service class for the detected kind

    Raises:
        NetworkError: If the endpoint cannot be reached
        AuthError: If the token is missing or rejected
    """
    session = session or ArcGISSession(token)
    if token is not None and session.token is not token:
        session = session.set_token(token)

    url = _normalize_url(url)
    metadata = session.get_json(url)
    kind = detect_service_kind(url, metadata)
    logger.debug("Opened %s as %s", url, kind.value)
    return get_service(url, service_kind=kind, session=session, metadata=metadata)
