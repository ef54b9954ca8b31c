"""Service abstractions and implementations for ArcGIS REST resources."""

from .base import BaseService, arc_open, detect_service_kind, get_service, register_service
from .feature import FeatureLayer, FeatureService, MapService, Table
from .image import ImageService

__all__ = [
    "BaseService",
    "arc_open",
    "detect_service_kind",
    "get_service",
    "register_service",
    "FeatureLayer",
    "FeatureService",
    "MapService",
    "Table",
    "ImageService",
]
