"""Publishing local datasets as hosted feature layers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import geopandas as gpd
import pandas as pd

from .errors import ServiceError
from .frames import field_to_esri, frame_to_features, infer_fields
from .geometry import geometry_type
from .session import ArcGISSession
from .types import BoundingBox, FieldDescriptor, PublishedService, PublishOutcome, SpatialReference

logger = logging.getLogger(__name__)

OBJECT_ID_FIELD = "FID"

Dataset = Union[pd.DataFrame, str, Path]


def read_dataset(path: Union[str, Path], **kwargs: Any) -> gpd.GeoDataFrame:
    """Read any format geopandas understands (shapefile, GeoPackage, GeoJSON, ...)."""
    return gpd.read_file(path, **kwargs)


def _frame_crs(x: pd.DataFrame) -> Optional[SpatialReference]:
    if not isinstance(x, gpd.GeoDataFrame) or x.crs is None:
        return None
    epsg = x.crs.to_epsg()
    if epsg is not None:
        return SpatialReference(wkid=epsg)
    return SpatialReference(wkt=x.crs.to_wkt())


def _geometry_type(x: pd.DataFrame) -> Optional[str]:
    if not isinstance(x, gpd.GeoDataFrame):
        return None
    geoms = x.geometry.dropna()
    geoms = geoms[~geoms.is_empty]
    if geoms.empty:
        return None
    return geometry_type(geoms.iloc[0])


def feature_collection(x: pd.DataFrame, title: str) -> Dict[str, Any]:
    """
    Describe ``x`` as an Esri feature collection.

    An ``FID`` object id column is added; geometries keep the frame's
    spatial reference.
    """
    crs = _frame_crs(x)
    geom_type = _geometry_type(x)

    fields = [FieldDescriptor(name=OBJECT_ID_FIELD, type="esriFieldTypeOID", alias=OBJECT_ID_FIELD, nullable=False, editable=False)]
    fields.extend(f for f in infer_fields(x) if f.name != OBJECT_ID_FIELD)

    features = frame_to_features(x, crs)
    for fid, feature in enumerate(features, start=1):
        feature["attributes"][OBJECT_ID_FIELD] = fid

    layer_definition: Dict[str, Any] = {
        "name": title,
        "type": "Feature Layer" if geom_type else "Table",
        "objectIdField": OBJECT_ID_FIELD,
        "fields": [field_to_esri(f) for f in fields],
    }
    feature_set: Dict[str, Any] = {"features": features}
    if geom_type:
        layer_definition["geometryType"] = geom_type
        feature_set["geometryType"] = geom_type
    if crs is not None:
        feature_set["spatialReference"] = crs.to_esri()
        if isinstance(x, gpd.GeoDataFrame) and not x.empty:
            bounds = BoundingBox.from_tuple(tuple(float(v) for v in x.total_bounds), crs)
            layer_definition["extent"] = bounds.to_esri()

    return {"layers": [{"layerDefinition": layer_definition, "featureSet": feature_set}]}


def _username(session: ArcGISSession) -> str:
    token = session.require_token("publishing")
    if token.username:
        return token.username
    profile = session.get_json(f"{session.host}/sharing/rest/community/self")
    username = profile.get("username")
    if not username:
        raise ServiceError("Unable to determine the portal user for this token")
    return str(username)


def add_item(
    x: pd.DataFrame,
    title: str,
    session: ArcGISSession,
    *,
    tags: str = "",
    snippet: Optional[str] = None,
) -> str:
    """Upload ``x`` as a feature collection item; returns the new item id."""
    user = _username(session)
    data: Dict[str, Any] = {
        "title": title,
        "type": "Feature Collection",
        "tags": tags,
        "text": json.dumps(feature_collection(x, title)),
    }
    if snippet:
        data["snippet"] = snippet

    payload = session.post_json(f"{session.host}/sharing/rest/content/users/{user}/addItem", data)
    if not payload.get("success") or not payload.get("id"):
        raise ServiceError(f"Portal did not create an item for '{title}': {payload}")
    logger.debug("Added item %s for %s", payload["id"], title)
    return str(payload["id"])


def publish_item(
    item_id: str,
    title: str,
    session: ArcGISSession,
    *,
    publish_parameters: Optional[Dict[str, Any]] = None,
) -> PublishOutcome:
    """Publish a feature collection item as a hosted feature service."""
    user = _username(session)
    parameters = {"name": title, "maxRecordCount": 2000, "layerInfo": {"capabilities": "Query,Create,Update,Delete"}}
    parameters.update(publish_parameters or {})

    payload = session.post_json(
        f"{session.host}/sharing/rest/content/users/{user}/publish",
        {
            "itemId": item_id,
            "filetype": "featureCollection",
            "publishParameters": json.dumps(parameters),
        },
    )
    services = [PublishedService.model_validate(s) for s in payload.get("services") or []]
    for service in services:
        if service.error:
            raise ServiceError(
                f"Publishing '{title}' failed: {service.error.get('message', service.error)}",
                code=service.error.get("code"),
            )
    outcome = PublishOutcome(item_id=item_id, services=services)
    logger.info("Published %s at %s", title, outcome.service_url)
    return outcome


def publish_layer(
    x: Dataset,
    title: str,
    session: ArcGISSession,
    *,
    tags: str = "",
    publish_parameters: Optional[Dict[str, Any]] = None,
) -> PublishOutcome:
    """
    Publish a frame, or a file readable by geopandas, as a hosted feature layer.

    Args:
        x: GeoDataFrame, DataFrame or path to a dataset
        title: Item title and service name
        session: Session authenticated as the publishing user
        tags: Comma separated item tags
        publish_parameters: Overrides for the ``publishParameters`` sent to the portal

    Returns:
        PublishOutcome; ``service_url`` opens the new Feature Service

    Raises:
        AuthError: The session has no token or the user may not publish
    """
    session.require_token("publishing")
    if isinstance(x, (str, Path)):
        x = read_dataset(x)
    if not isinstance(x, pd.DataFrame):
        raise TypeError(f"Expected a DataFrame, GeoDataFrame or path, got {type(x).__name__}")

    item_id = add_item(x, title, session, tags=tags)
    return publish_item(item_id, title, session, publish_parameters=publish_parameters)
