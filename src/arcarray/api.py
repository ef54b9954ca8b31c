"""
High-level function API for arcarray.

These functions mirror the object methods so a whole workflow reads as a
sequence of calls: open a service, pick a layer, select, edit, publish.
Every function takes the service object it acts on, so credentials always
come from the session that opened it.
"""

from typing import Any, List, Optional, Sequence, Union

import pandas as pd
import xarray as xr

from .service.base import BaseService, arc_open
from .service.feature import FeatureLayer, FeatureService, FilterGeometry
from .service.image import ImageService
from .errors import ServiceError
from .publish import publish_layer
from .types import BBoxTuple, BoundingBox, EditOutcome, FieldDescriptor, LayerSummary
from .typing import CRSLike, ObjectIds

__all__ = [
    "arc_open",
    "list_items",
    "get_layer",
    "list_fields",
    "arc_select",
    "arc_raster",
    "publish_layer",
    "add_features",
    "update_features",
    "delete_features",
    "refresh_layer",
]


def _expect(obj: Any, cls: type, action: str) -> None:
    if not isinstance(obj, cls):
        raise ServiceError(f"{action} requires a {cls.__name__}, got {type(obj).__name__}")


def list_items(service: FeatureService) -> List[LayerSummary]:
    """
    List the layers and tables of a Feature or Map Service.

    Args:
        service: Service returned by :func:`arc_open`

    Returns:
        One summary per layer, followed by one per table
    """
    _expect(service, FeatureService, "list_items")
    return service.list_items()


def get_layer(
    service: FeatureService,
    id: Optional[int] = None,
    name: Optional[str] = None,
) -> FeatureLayer:
    """Open one layer or table of ``service`` by id or by name."""
    _expect(service, FeatureService, "get_layer")
    return service.get_layer(id=id, name=name)


def list_fields(layer: FeatureLayer) -> List[FieldDescriptor]:
    _expect(layer, FeatureLayer, "list_fields")
    return layer.list_fields()


def arc_select(
    layer: FeatureLayer,
    fields: Optional[Union[str, Sequence[str]]] = None,
    where: Optional[str] = None,
    geometry: bool = True,
    filter_geom: Optional[FilterGeometry] = None,
    predicate: str = "intersects",
    crs: CRSLike = None,
    n_max: Optional[int] = None,
    **kwargs: Any,
) -> pd.DataFrame:
    """
    Query a layer or table into a frame.

    Args:
        layer: Layer or table returned by :func:`get_layer`
        fields: Columns to return (all when omitted)
        where: SQL predicate evaluated by the server, e.g. ``"TOTAL_POP > 3000"``
        geometry: Return geometries as a GeoDataFrame
        filter_geom: Shapely geometry or BoundingBox to filter on
        predicate: Spatial relationship used with ``filter_geom``
        crs: Output spatial reference
        n_max: Maximum number of features to return
        **kwargs: Passed to :meth:`FeatureLayer.select`

    Returns:
        GeoDataFrame (or DataFrame for tables and ``geometry=False``)
    """
    _expect(layer, FeatureLayer, "arc_select")
    return layer.select(
        fields,
        where,
        geometry,
        filter_geom=filter_geom,
        predicate=predicate,
        crs=crs,
        n_max=n_max,
        **kwargs,
    )


def arc_raster(
    service: ImageService,
    bbox: Union[BoundingBox, BBoxTuple],
    bbox_crs: CRSLike = None,
    crs: CRSLike = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    **kwargs: Any,
) -> xr.DataArray:
    """
    Read pixels of an Image Service inside ``bbox``.

    Example:
        >>> landsat = arc_open(".../Landsat/ImageServer")
        >>> arc_raster(landsat, (-71.14, 42.35, -71.04, 42.40), bbox_crs=4326)
    """
    _expect(service, ImageService, "arc_raster")
    return service.arc_raster(bbox, bbox_crs, crs, width, height, **kwargs)


def add_features(layer: FeatureLayer, x: pd.DataFrame, **kwargs: Any) -> EditOutcome:
    """Add the rows of ``x`` to ``layer``; columns unknown to the layer are dropped."""
    _expect(layer, FeatureLayer, "add_features")
    return layer.add_features(x, **kwargs)


def update_features(layer: FeatureLayer, x: pd.DataFrame, **kwargs: Any) -> EditOutcome:
    """Update rows of ``layer`` matched by the object id column of ``x``."""
    _expect(layer, FeatureLayer, "update_features")
    return layer.update_features(x, **kwargs)


def delete_features(
    layer: FeatureLayer,
    object_ids: Optional[ObjectIds] = None,
    where: Optional[str] = None,
    filter_geom: Optional[FilterGeometry] = None,
    predicate: str = "intersects",
    **kwargs: Any,
) -> EditOutcome:
    _expect(layer, FeatureLayer, "delete_features")
    return layer.delete_features(object_ids, where=where, filter_geom=filter_geom, predicate=predicate, **kwargs)


def refresh_layer(service: BaseService) -> BaseService:
    """Return ``service`` with re-fetched metadata, e.g. after edits."""
    return service.refresh()
