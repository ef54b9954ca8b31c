"""Conversion between Esri feature sets and pandas / geopandas frames."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
from pandas.api import types as ptypes

from .geometry import from_esri, to_esri
from .types import FieldDescriptor, SpatialReference

logger = logging.getLogger(__name__)

DATE_FIELD_TYPES = frozenset({"esriFieldTypeDate", "esriFieldTypeTimestampOffset"})


def features_to_frame(
    features: Sequence[Dict[str, Any]],
    fields: Sequence[FieldDescriptor],
    *,
    crs: Optional[SpatialReference] = None,
    geometry: bool = True,
) -> pd.DataFrame:
    """
    Build a frame from the ``features`` array of a query response.

    Args:
        features: Esri features (``{"attributes": ..., "geometry": ...}``)
        fields: Fields reported by the response, in column order
        crs: Spatial reference of the returned geometries
        geometry: Whether to build a GeoDataFrame

    Returns:
        ``GeoDataFrame`` when ``geometry`` is true, otherwise ``DataFrame``
    """
    columns = [f.name for f in fields] or None
    records = [feature.get("attributes") or {} for feature in features]
    frame = pd.DataFrame.from_records(records, columns=columns)

    for field in fields:
        if field.type in DATE_FIELD_TYPES and field.name in frame.columns:
            frame[field.name] = pd.to_datetime(frame[field.name], unit="ms", utc=True)

    if not geometry:
        return frame

    geoms = [from_esri(feature.get("geometry")) for feature in features]
    return gpd.GeoDataFrame(
        frame,
        geometry=gpd.GeoSeries(geoms, index=frame.index),
        crs=crs.to_crs_string() if crs else None,
    )


def _json_value(value: Any) -> Any:
    if isinstance(value, (list, tuple, dict)):
        return value
    if value is None or pd.isna(value):
        return None
    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date)):
        return int(pd.Timestamp(value).timestamp() * 1000)
    if isinstance(value, np.generic):
        return value.item()
    return value


def frame_to_features(
    x: pd.DataFrame,
    crs: Optional[SpatialReference] = None,
) -> List[Dict[str, Any]]:
    """
    Serialise a frame as Esri features.

    GeoDataFrames are projected to ``crs`` before their geometries are
    written; plain DataFrames produce attribute-only features.
    """
    geometry_col: Optional[str] = None
    if isinstance(x, gpd.GeoDataFrame) and x.geometry.name in x.columns:
        geometry_col = x.geometry.name
        if crs is not None and x.crs is not None:
            x = x.to_crs(crs.to_crs_string())

    attribute_cols = [c for c in x.columns if c != geometry_col]
    features: List[Dict[str, Any]] = []
    for _, row in x.iterrows():
        feature: Dict[str, Any] = {
            "attributes": {str(col): _json_value(row[col]) for col in attribute_cols},
        }
        if geometry_col is not None:
            esri_geom = to_esri(row[geometry_col])
            if esri_geom is not None:
                feature["geometry"] = esri_geom
        features.append(feature)
    return features


def infer_esri_type(series: pd.Series) -> str:
    """Esri field type able to hold the values of ``series``."""
    dtype = series.dtype
    if ptypes.is_bool_dtype(dtype):
        return "esriFieldTypeSmallInteger"
    if ptypes.is_integer_dtype(dtype):
        return "esriFieldTypeSmallInteger" if dtype.itemsize <= 2 else "esriFieldTypeInteger"
    if ptypes.is_float_dtype(dtype):
        return "esriFieldTypeDouble"
    if ptypes.is_datetime64_any_dtype(dtype):
        return "esriFieldTypeDate"
    return "esriFieldTypeString"


def infer_fields(x: pd.DataFrame) -> List[FieldDescriptor]:
    """Field definitions for publishing ``x`` as a new layer."""
    geometry_col = x.geometry.name if isinstance(x, gpd.GeoDataFrame) else None
    fields: List[FieldDescriptor] = []
    for col in x.columns:
        if col == geometry_col:
            continue
        esri_type = infer_esri_type(x[col])
        length = None
        if esri_type == "esriFieldTypeString":
            longest = x[col].dropna().astype(str).str.len().max()
            length = max(255, int(longest) if pd.notna(longest) else 0)
        fields.append(
            FieldDescriptor(name=str(col), type=esri_type, alias=str(col), nullable=True, editable=True, length=length)
        )
    return fields


def field_to_esri(field: FieldDescriptor) -> Dict[str, Any]:
    return field.model_dump(by_alias=True, exclude_none=True)
