"""Feature and map services, their layers and tables."""

from __future__ import annotations

import json
import logging
import numbers
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import pandas as pd
from shapely.geometry.base import BaseGeometry

from .base import BaseService, register_service
from ..errors import QueryError
from ..frames import features_to_frame, frame_to_features
from ..geometry import spatial_filter_params
from ..types import BoundingBox, EditOutcome, FieldDescriptor, LayerSummary, ServiceKind, SpatialReference
from ..typing import CRSLike, ObjectIds

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORD_COUNT = 1000
DEFAULT_EDIT_CHUNK_SIZE = 2000

FilterGeometry = Union[BaseGeometry, BoundingBox]


@register_service(ServiceKind.FEATURE_SERVER)
class FeatureService(BaseService):
    """A service hosting one or more feature layers and tables."""

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "layers": len(self.metadata.get("layers") or []),
            "tables": len(self.metadata.get("tables") or []),
            "crs": self.spatial_reference.to_crs_string() if self.spatial_reference else None,
        }

    @property
    def name(self) -> str:
        # Service metadata rarely carries a name; the URL segment before the server type does.
        segments = self.url.rstrip("/").split("/")
        return str(self.metadata.get("name") or (segments[-2] if len(segments) >= 2 else segments[-1]))

    def list_items(self) -> List[LayerSummary]:
        """Layers followed by tables, as listed by the service."""
        items = [
            LayerSummary.model_validate({**layer, "kind": ServiceKind.FEATURE_LAYER})
            for layer in self.metadata.get("layers") or []
        ]
        items.extend(
            LayerSummary.model_validate({**table, "kind": ServiceKind.TABLE})
            for table in self.metadata.get("tables") or []
        )
        return items

    def list_layers(self) -> List["FeatureLayer"]:
        """One reference per published layer and table; metadata loads on first use."""
        return [self._layer_for(item, fetch=False) for item in self.list_items()]

    def get_layer(self, id: Optional[int] = None, name: Optional[str] = None) -> "FeatureLayer":
        """Open one layer or table by id or by name."""
        if (id is None) == (name is None):
            raise ValueError("Provide exactly one of id or name")

        for item in self.list_items():
            if (id is not None and item.id == id) or (name is not None and item.name == name):
                return self._layer_for(item, fetch=True)

        wanted = f"id {id}" if id is not None else f"name '{name}'"
        raise QueryError(f"No layer or table with {wanted} in {self.url}")

    def get_layers(
        self,
        ids: Optional[Sequence[int]] = None,
        names: Optional[Sequence[str]] = None,
    ) -> List["FeatureLayer"]:
        if ids is not None:
            return [self.get_layer(id=i) for i in ids]
        if names is not None:
            return [self.get_layer(name=n) for n in names]
        return [self._layer_for(item, fetch=True) for item in self.list_items()]

    def _layer_for(self, item: LayerSummary, fetch: bool) -> "FeatureLayer":
        layer_cls = Table if item.kind == ServiceKind.TABLE else FeatureLayer
        url = f"{self.url}/{item.id}"
        if fetch:
            return layer_cls.from_url(url, session=self.session)
        return layer_cls(url, session=self.session)


@register_service(ServiceKind.MAP_SERVER)
class MapService(FeatureService):
    """A map service; its layers can be queried but usually not edited."""


@register_service(ServiceKind.FEATURE_LAYER)
class FeatureLayer(BaseService):
    """A queryable, editable layer of a feature or map service."""

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "geometry_type": self.geometry_type,
            "crs": self.spatial_reference.to_crs_string() if self.spatial_reference else None,
            "capabilities": self.metadata.get("capabilities"),
        }

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    @property
    def geometry_type(self) -> Optional[str]:
        return self.metadata.get("geometryType")

    @property
    def has_geometry(self) -> bool:
        return self.geometry_type is not None

    @property
    def object_id_field(self) -> str:
        oid = self.metadata.get("objectIdField")
        if oid:
            return str(oid)
        for field in self.list_fields():
            if field.type == "esriFieldTypeOID":
                return field.name
        return "OBJECTID"

    @property
    def max_record_count(self) -> int:
        return int(self.metadata.get("maxRecordCount") or DEFAULT_MAX_RECORD_COUNT)

    @property
    def supports_pagination(self) -> bool:
        advanced = self.metadata.get("advancedQueryCapabilities") or {}
        return bool(advanced.get("supportsPagination", self.metadata.get("supportsPagination", False)))

    @property
    def capabilities(self) -> List[str]:
        return [c.strip() for c in str(self.metadata.get("capabilities") or "").split(",") if c.strip()]

    def list_fields(self) -> List[FieldDescriptor]:
        return [FieldDescriptor.model_validate(f) for f in self.metadata.get("fields") or []]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def select(
        self,
        fields: Optional[Union[str, Sequence[str]]] = None,
        where: Optional[str] = None,
        geometry: bool = True,
        *,
        filter_geom: Optional[FilterGeometry] = None,
        predicate: str = "intersects",
        filter_crs: CRSLike = None,
        crs: CRSLike = None,
        object_ids: Optional[ObjectIds] = None,
        n_max: Optional[int] = None,
        page_size: Optional[int] = None,
        **params: Any,
    ) -> pd.DataFrame:
        """
        Select features into a frame.

        Args:
            fields: Columns to return (all when omitted)
            where: SQL predicate evaluated by the server
            geometry: Return geometries (ignored for tables)
            filter_geom: Only return features related to this geometry
            predicate: Spatial relationship used with ``filter_geom``
            filter_crs: Spatial reference of ``filter_geom`` (a BoundingBox's own, else the layer's)
            crs: Output spatial reference (layer's by default)
            object_ids: Restrict to these object ids
            n_max: Maximum number of features to return
            page_size: Features per request, capped at the layer's maxRecordCount
            **params: Extra query parameters passed through unchanged

        Returns:
            ``GeoDataFrame`` when geometry is returned, otherwise ``DataFrame``

        Raises:
            QueryError: Unknown field names or a predicate rejected by the server
        """
        requested = self._resolve_fields(fields)
        include_geometry = bool(geometry) and self.has_geometry

        query: Dict[str, Any] = {
            "where": where or "1=1",
            "outFields": ",".join(requested) if requested else "*",
            "returnGeometry": str(include_geometry).lower(),
        }
        out_sr = SpatialReference.coerce(crs) or self.spatial_reference
        if include_geometry and out_sr is not None:
            query["outSR"] = json.dumps(out_sr.to_esri())
        if object_ids is not None:
            query["objectIds"] = _join_ids(object_ids)
        if filter_geom is not None:
            query.update(self._filter_params(filter_geom, predicate, filter_crs))
        query.update(params)

        features, response_fields, response_sr = self._fetch_features(query, n_max, page_size)
        if not response_fields:
            response_fields = self.list_fields()
            if requested:
                response_fields = [f for f in response_fields if f.name in requested]

        frame = features_to_frame(
            features,
            response_fields,
            crs=response_sr or out_sr,
            geometry=include_geometry,
        )
        if requested:
            columns = [c for c in requested if c in frame.columns]
            if include_geometry:
                columns.append(frame.geometry.name)
            frame = frame[columns]
        return frame

    def count(
        self,
        where: Optional[str] = None,
        *,
        filter_geom: Optional[FilterGeometry] = None,
        predicate: str = "intersects",
        filter_crs: CRSLike = None,
    ) -> int:
        query: Dict[str, Any] = {"where": where or "1=1", "returnCountOnly": "true"}
        if filter_geom is not None:
            query.update(self._filter_params(filter_geom, predicate, filter_crs))
        return int(self._query(query).get("count", 0))

    def _filter_params(
        self,
        filter_geom: FilterGeometry,
        predicate: str,
        filter_crs: CRSLike,
    ) -> Dict[str, str]:
        # An explicit filter_crs wins, then the box's own CRS, then the layer's.
        sr = SpatialReference.coerce(filter_crs)
        if sr is None and isinstance(filter_geom, BoundingBox):
            sr = filter_geom.crs
        return spatial_filter_params(filter_geom, predicate, sr or self.spatial_reference)

    def _query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return self.session.post_json(f"{self.url}/query", query)

    def _resolve_fields(self, fields: Optional[Union[str, Sequence[str]]]) -> List[str]:
        if fields is None:
            return []
        if isinstance(fields, str):
            fields = [fields]

        known = {f.name.lower(): f.name for f in self.list_fields()}
        unknown = [f for f in fields if f.lower() not in known]
        if unknown:
            raise QueryError(
                f"Unknown field(s) {', '.join(unknown)} for {self.name}; "
                f"available: {', '.join(known.values())}"
            )
        return [known[f.lower()] for f in fields]

    def _fetch_features(
        self,
        query: Dict[str, Any],
        n_max: Optional[int],
        page_size: Optional[int],
    ) -> Tuple[List[Dict[str, Any]], List[FieldDescriptor], Optional[SpatialReference]]:
        page = min(page_size or self.max_record_count, self.max_record_count)
        if page <= 0:
            raise ValueError("page_size must be positive")

        if self.supports_pagination:
            return self._fetch_paged(query, n_max, page)

        first = self._query(query)
        features = list(first.get("features") or [])
        fields = [FieldDescriptor.model_validate(f) for f in first.get("fields") or []]
        sr = SpatialReference.from_esri(first.get("spatialReference"))
        if not first.get("exceededTransferLimit") or (n_max is not None and len(features) >= n_max):
            return features[:n_max] if n_max is not None else features, fields, sr

        logger.debug("%s does not support pagination; fetching by object id", self.url)
        features = self._fetch_by_ids(query, n_max, page)
        return features, fields, sr

    def _fetch_paged(
        self,
        query: Dict[str, Any],
        n_max: Optional[int],
        page: int,
    ) -> Tuple[List[Dict[str, Any]], List[FieldDescriptor], Optional[SpatialReference]]:
        features: List[Dict[str, Any]] = []
        fields: List[FieldDescriptor] = []
        sr: Optional[SpatialReference] = None
        offset = 0
        while True:
            limit = page if n_max is None else min(page, n_max - len(features))
            if limit <= 0:
                break
            payload = self._query({**query, "resultOffset": offset, "resultRecordCount": limit})
            batch = payload.get("features") or []
            if offset == 0:
                fields = [FieldDescriptor.model_validate(f) for f in payload.get("fields") or []]
                sr = SpatialReference.from_esri(payload.get("spatialReference"))
            features.extend(batch)
            logger.debug("Fetched %d features from %s (offset %d)", len(batch), self.url, offset)
            if not batch or not payload.get("exceededTransferLimit"):
                break
            offset += len(batch)
        return features, fields, sr

    def _fetch_by_ids(self, query: Dict[str, Any], n_max: Optional[int], page: int) -> List[Dict[str, Any]]:
        id_query = {k: v for k, v in query.items() if k not in ("outFields", "returnGeometry", "outSR")}
        id_query["returnIdsOnly"] = "true"
        ids = sorted(self._query(id_query).get("objectIds") or [])
        if n_max is not None:
            ids = ids[:n_max]

        features: List[Dict[str, Any]] = []
        for start in range(0, len(ids), page):
            chunk = ids[start:start + page]
            payload = self._query({**query, "objectIds": _join_ids(chunk)})
            features.extend(payload.get("features") or [])
        return features

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------
    def add_features(
        self,
        x: pd.DataFrame,
        *,
        chunk_size: int = DEFAULT_EDIT_CHUNK_SIZE,
        rollback_on_failure: bool = True,
    ) -> "EditOutcome":
        """Add the rows of ``x`` as new features; the object id column is ignored."""
        prepared = self._prepare_edit_frame(x, keep_object_id=False)
        features = frame_to_features(prepared, self.spatial_reference)
        return self._apply_edits("addFeatures", features, chunk_size, rollback_on_failure)

    def update_features(
        self,
        x: pd.DataFrame,
        *,
        chunk_size: int = DEFAULT_EDIT_CHUNK_SIZE,
        rollback_on_failure: bool = True,
    ) -> "EditOutcome":
        """
        Update existing features.

        Rows are matched on the object id column, which must be present.
        Only the columns included in ``x`` are modified.
        """
        prepared = self._prepare_edit_frame(x, keep_object_id=True)
        features = frame_to_features(prepared, self.spatial_reference)
        return self._apply_edits("updateFeatures", features, chunk_size, rollback_on_failure)

    def delete_features(
        self,
        object_ids: Optional[ObjectIds] = None,
        *,
        where: Optional[str] = None,
        filter_geom: Optional[FilterGeometry] = None,
        predicate: str = "intersects",
        filter_crs: CRSLike = None,
        rollback_on_failure: bool = True,
    ) -> "EditOutcome":
        """Delete features by object id, SQL predicate or spatial filter."""
        data: Dict[str, Any] = {}
        if object_ids is not None:
            data["objectIds"] = _join_ids(object_ids)
        if where:
            data["where"] = where
        if filter_geom is not None:
            data.update(self._filter_params(filter_geom, predicate, filter_crs))
        if not data:
            raise QueryError("delete_features requires object_ids, where or filter_geom")

        data["rollbackOnFailure"] = str(rollback_on_failure).lower()
        data["returnDeleteResults"] = "true"
        payload = self.session.post_json(f"{self.url}/deleteFeatures", data)
        outcome = EditOutcome.from_esri(payload)
        logger.debug("Deleted %d feature(s) from %s", len(outcome.succeeded), self.url)
        return outcome

    def _prepare_edit_frame(self, x: pd.DataFrame, keep_object_id: bool) -> pd.DataFrame:
        if not isinstance(x, pd.DataFrame):
            raise TypeError(f"Expected a DataFrame or GeoDataFrame, got {type(x).__name__}")

        geometry_col = x.geometry.name if isinstance(x, gpd.GeoDataFrame) and x.geometry.name in x.columns else None
        known = {f.name.lower(): f.name for f in self.list_fields()}

        renames: Dict[Any, str] = {}
        dropped: List[str] = []
        for col in x.columns:
            if col == geometry_col:
                continue
            canonical = known.get(str(col).lower())
            if canonical is None:
                dropped.append(str(col))
            else:
                renames[col] = canonical

        if dropped:
            logger.warning("Ignoring column(s) not present in %s: %s", self.name, ", ".join(dropped))

        oid = self.object_id_field
        if keep_object_id:
            if oid not in renames.values():
                raise QueryError(f"Updates require the object id field '{oid}' in every row")
            if x[next(c for c, n in renames.items() if n == oid)].isna().any():
                raise QueryError(f"Updates require a value for '{oid}' in every row")
        else:
            renames = {c: n for c, n in renames.items() if n != oid}

        if not renames and geometry_col is None:
            raise QueryError(f"None of the columns of the input match the fields of {self.name}")

        columns = list(renames)
        if geometry_col is not None:
            columns.append(geometry_col)
        return x[columns].rename(columns=renames)

    def _apply_edits(
        self,
        endpoint: str,
        features: List[Dict[str, Any]],
        chunk_size: int,
        rollback_on_failure: bool,
    ) -> EditOutcome:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        outcome = EditOutcome()
        if not features:
            logger.warning("No rows to send to %s/%s", self.url, endpoint)
            return outcome

        for start in range(0, len(features), chunk_size):
            chunk = features[start:start + chunk_size]
            payload = self.session.post_json(
                f"{self.url}/{endpoint}",
                {"features": json.dumps(chunk), "rollbackOnFailure": str(rollback_on_failure).lower()},
            )
            outcome = outcome.merge(EditOutcome.from_esri(payload))
            logger.debug("%s: sent %d feature(s) to %s", endpoint, len(chunk), self.url)
        return outcome


@register_service(ServiceKind.TABLE)
class Table(FeatureLayer):
    """A layer without geometry."""

    @property
    def has_geometry(self) -> bool:
        return False


def _join_ids(object_ids: ObjectIds) -> str:
    ids = [object_ids] if isinstance(object_ids, numbers.Integral) else list(object_ids)
    if not ids:
        raise QueryError("object_ids must not be empty")
    return ",".join(str(int(i)) for i in ids)
