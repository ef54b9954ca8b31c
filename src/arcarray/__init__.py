"""arcarray - ArcGIS feature and image services as pandas frames and xarray arrays."""

from ._version import __version__

from .api import (
    add_features,
    arc_open,
    arc_raster,
    arc_select,
    delete_features,
    get_layer,
    list_fields,
    list_items,
    publish_layer,
    refresh_layer,
    update_features,
)
from .auth import AccessToken, TokenType, auth_client, auth_code, auth_key, auth_user, refresh_token, validate_or_refresh_token
from .config import ArcGISSettings
from .errors import (
    ArcArrayError,
    AuthError,
    ConfigurationError,
    ExtentError,
    NetworkError,
    ParseError,
    QueryError,
    ServiceError,
)
from .publish import read_dataset
from .service import BaseService, FeatureLayer, FeatureService, ImageService, MapService, Table, get_service
from .session import ArcGISSession
from .types import (
    BBoxTuple,
    BoundingBox,
    EditOutcome,
    EditResult,
    FieldDescriptor,
    Format,
    LayerSummary,
    PublishOutcome,
    ServiceKind,
    SpatialReference,
)

__all__ = [
    "__version__",
    "add_features",
    "arc_open",
    "arc_raster",
    "arc_select",
    "delete_features",
    "get_layer",
    "list_fields",
    "list_items",
    "publish_layer",
    "refresh_layer",
    "update_features",
    "AccessToken",
    "TokenType",
    "auth_client",
    "auth_code",
    "auth_key",
    "auth_user",
    "refresh_token",
    "validate_or_refresh_token",
    "ArcGISSettings",
    "ArcArrayError",
    "AuthError",
    "ConfigurationError",
    "ExtentError",
    "NetworkError",
    "ParseError",
    "QueryError",
    "ServiceError",
    "read_dataset",
    "BaseService",
    "FeatureLayer",
    "FeatureService",
    "ImageService",
    "MapService",
    "Table",
    "get_service",
    "ArcGISSession",
    "BBoxTuple",
    "BoundingBox",
    "EditOutcome",
    "EditResult",
    "FieldDescriptor",
    "Format",
    "LayerSummary",
    "PublishOutcome",
    "ServiceKind",
    "SpatialReference",
]
