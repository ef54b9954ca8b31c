"""
Shared test configuration, fixtures, and markers for arcarray tests.
"""

import json
import re
import shutil
import tempfile
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
from PIL import Image
from pytest_httpserver import HTTPServer
from werkzeug.wrappers import Request, Response

from arcarray.session import ArcGISSession


def pytest_configure(config):
    """Configure test markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (>1s)")
    config.addinivalue_line("markers", "net: marks tests requiring network")
    config.addinivalue_line("markers", "contract: marks tests against the local fake ArcGIS server")
    config.addinivalue_line("markers", "property: marks property-based tests")
    config.addinivalue_line("markers", "unit: marks unit tests (fast, pure logic)")
    config.addinivalue_line("markers", "integration: marks tests against live ArcGIS endpoints")


@pytest.fixture
def tmp_cache_dir():
    """Isolated cache directory for tests."""
    cache_dir = tempfile.mkdtemp()
    yield Path(cache_dir)
    shutil.rmtree(cache_dir)


@pytest.fixture
def fake_server():
    """Programmable server for testing error payloads and fake services."""
    with HTTPServer(host="127.0.0.1", port=0) as server:
        yield server


@pytest.fixture
def session():
    """Anonymous session with a short timeout."""
    return ArcGISSession(timeout=5.0)


# ----------------------------------------------------------------------
# In-memory ArcGIS services
# ----------------------------------------------------------------------
FEATURE_ROOT = "/arcgis/rest/services/Blocks/FeatureServer"
IMAGE_ROOT = "/arcgis/rest/services/Elevation/ImageServer"

_WHERE = re.compile(r"^\s*(\w+)\s*(>=|<=|<>|=|>|<)\s*(?:'([^']*)'|(-?\d+(?:\.\d+)?))\s*$")
_OPS = {
    "=": lambda a, b: a == b,
    "<>": lambda a, b: a != b,
    ">": lambda a, b: a is not None and a > b,
    "<": lambda a, b: a is not None and a < b,
    ">=": lambda a, b: a is not None and a >= b,
    "<=": lambda a, b: a is not None and a <= b,
}

BLOCK_FIELDS = [
    {"name": "OBJECTID", "type": "esriFieldTypeOID", "alias": "OBJECTID", "nullable": False, "editable": False},
    {"name": "NAME", "type": "esriFieldTypeString", "alias": "Name", "length": 50},
    {"name": "TOTAL_POP", "type": "esriFieldTypeInteger", "alias": "Total population"},
]


def _square(x: float, y: float) -> Dict[str, Any]:
    return {"rings": [[[x, y], [x, y + 1], [x + 1, y + 1], [x + 1, y], [x, y]]]}


def _json(payload: Any, status: int = 200) -> Response:
    return Response(json.dumps(payload), status=status, content_type="application/json")


def _esri_error(code: int, message: str, details: Optional[List[str]] = None) -> Response:
    return _json({"error": {"code": code, "message": message, "details": details or []}})


class FakeFeatureServer:
    """
    A FeatureServer with one polygon layer (``0``) and one table (``1``).

    Supports the subset of ``query``, ``addFeatures``, ``updateFeatures``
    and ``deleteFeatures`` the client uses. ``where`` accepts ``1=1`` or a
    single ``FIELD <op> value`` comparison.
    """

    def __init__(self, max_record_count: int = 2, supports_pagination: bool = True):
        self.max_record_count = max_record_count
        self.supports_pagination = supports_pagination
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.next_id = 1
        for i, (name, pop) in enumerate([("Back Bay", 4200), ("Fenway", 2800), ("Beacon Hill", 3100)]):
            self._insert({"NAME": name, "TOTAL_POP": pop}, _square(float(i), 0.0))

    def _insert(self, attributes: Dict[str, Any], geometry: Optional[Dict[str, Any]]) -> int:
        oid = self.next_id
        self.next_id += 1
        self.rows[oid] = {"attributes": {**attributes, "OBJECTID": oid}, "geometry": geometry}
        return oid

    # metadata ------------------------------------------------------------
    def service_info(self, request: Request) -> Response:
        return _json(
            {
                "serviceDescription": "Census blocks",
                "layers": [{"id": 0, "name": "blocks", "type": "Feature Layer", "geometryType": "esriGeometryPolygon"}],
                "tables": [{"id": 1, "name": "notes", "type": "Table"}],
                "spatialReference": {"wkid": 4326},
            }
        )

    def layer_info(self, request: Request) -> Response:
        return _json(
            {
                "id": 0,
                "name": "blocks",
                "type": "Feature Layer",
                "geometryType": "esriGeometryPolygon",
                "objectIdField": "OBJECTID",
                "fields": BLOCK_FIELDS,
                "maxRecordCount": self.max_record_count,
                "capabilities": "Query,Create,Update,Delete",
                "advancedQueryCapabilities": {"supportsPagination": self.supports_pagination},
                "extent": {"xmin": 0, "ymin": 0, "xmax": 10, "ymax": 10, "spatialReference": {"wkid": 4326}},
            }
        )

    def table_info(self, request: Request) -> Response:
        return _json(
            {
                "id": 1,
                "name": "notes",
                "type": "Table",
                "objectIdField": "OBJECTID",
                "fields": [BLOCK_FIELDS[0], {"name": "NOTE", "type": "esriFieldTypeString"}],
                "maxRecordCount": 1000,
            }
        )

    # query ----------------------------------------------------------------
    def _matches(self, where: str):
        where = (where or "1=1").strip()
        if where == "1=1":
            return lambda attrs: True
        match = _WHERE.match(where)
        if not match or match.group(1) not in {f["name"] for f in BLOCK_FIELDS}:
            return None
        field, op, text, number = match.groups()
        value: Any = text if text is not None else float(number)
        return lambda attrs: _OPS[op](attrs.get(field), value)

    def query(self, request: Request) -> Response:
        form = request.form
        predicate = self._matches(form.get("where", "1=1"))
        if predicate is None:
            return _esri_error(400, "Unable to complete operation.", ["Invalid query parameters."])

        oids = sorted(oid for oid, row in self.rows.items() if predicate(row["attributes"]))
        if form.get("objectIds"):
            wanted = {int(v) for v in form["objectIds"].split(",")}
            oids = [oid for oid in oids if oid in wanted]

        if form.get("returnCountOnly") == "true":
            return _json({"count": len(oids)})
        if form.get("returnIdsOnly") == "true":
            return _json({"objectIdFieldName": "OBJECTID", "objectIds": oids})

        offset = int(form.get("resultOffset", 0))
        limit = min(int(form.get("resultRecordCount", self.max_record_count)), self.max_record_count)
        page = oids[offset:offset + limit]
        exceeded = offset + limit < len(oids)

        out_fields = form.get("outFields", "*")
        names = [f["name"] for f in BLOCK_FIELDS] if out_fields == "*" else out_fields.split(",")
        with_geometry = form.get("returnGeometry", "true") == "true"

        features = []
        for oid in page:
            row = self.rows[oid]
            feature: Dict[str, Any] = {"attributes": {n: row["attributes"].get(n) for n in names}}
            if with_geometry and row["geometry"] is not None:
                feature["geometry"] = row["geometry"]
            features.append(feature)

        return _json(
            {
                "objectIdFieldName": "OBJECTID",
                "geometryType": "esriGeometryPolygon",
                "spatialReference": {"wkid": 4326},
                "fields": [f for f in BLOCK_FIELDS if f["name"] in names],
                "features": features,
                "exceededTransferLimit": exceeded,
            }
        )

    # edits ----------------------------------------------------------------
    def add_features(self, request: Request) -> Response:
        features = json.loads(request.form["features"])
        results = []
        for feature in features:
            attrs = {k: v for k, v in feature.get("attributes", {}).items() if k != "OBJECTID"}
            oid = self._insert(attrs, feature.get("geometry"))
            results.append({"objectId": oid, "success": True})
        return _json({"addResults": results})

    def update_features(self, request: Request) -> Response:
        features = json.loads(request.form["features"])
        results = []
        for feature in features:
            attrs = feature.get("attributes", {})
            oid = attrs.get("OBJECTID")
            if oid not in self.rows:
                results.append({"objectId": oid, "success": False, "error": {"code": 1019, "description": "Object is missing."}})
                continue
            self.rows[oid]["attributes"].update(attrs)
            if feature.get("geometry"):
                self.rows[oid]["geometry"] = feature["geometry"]
            results.append({"objectId": oid, "success": True})
        return _json({"updateResults": results})

    def delete_features(self, request: Request) -> Response:
        form = request.form
        predicate = self._matches(form.get("where", "1=1"))
        if predicate is None:
            return _esri_error(400, "Unable to complete operation.", ["Invalid where clause."])
        candidates = [oid for oid, row in self.rows.items() if predicate(row["attributes"])]
        if form.get("objectIds"):
            wanted = {int(v) for v in form["objectIds"].split(",")}
            candidates = [oid for oid in candidates if oid in wanted]
        for oid in candidates:
            del self.rows[oid]
        return _json({"deleteResults": [{"objectId": oid, "success": True} for oid in candidates]})

    def install(self, server: HTTPServer) -> str:
        server.expect_request(FEATURE_ROOT, method="GET").respond_with_handler(self.service_info)
        server.expect_request(f"{FEATURE_ROOT}/0", method="GET").respond_with_handler(self.layer_info)
        server.expect_request(f"{FEATURE_ROOT}/1", method="GET").respond_with_handler(self.table_info)
        server.expect_request(f"{FEATURE_ROOT}/0/query", method="POST").respond_with_handler(self.query)
        server.expect_request(f"{FEATURE_ROOT}/0/addFeatures", method="POST").respond_with_handler(self.add_features)
        server.expect_request(f"{FEATURE_ROOT}/0/updateFeatures", method="POST").respond_with_handler(self.update_features)
        server.expect_request(f"{FEATURE_ROOT}/0/deleteFeatures", method="POST").respond_with_handler(self.delete_features)
        return server.url_for(FEATURE_ROOT)


class FakeImageServer:
    """
    A 100 x 100 single-band ImageServer in EPSG:3857 with 1 unit pixels.

    ``exportImage`` answers PNGs whose red channel holds ``floor(x)`` and
    green channel ``floor(y)`` of each pixel centre, so tile placement can
    be checked from the pixel values alone.
    """

    max_image_size = 50

    def __init__(self):
        self.exports: List[Dict[str, str]] = []

    def service_info(self, request: Request) -> Response:
        return _json(
            {
                "name": "Elevation",
                "serviceDataType": "esriImageServiceDataTypeGeneric",
                "bandCount": 1,
                "pixelType": "U8",
                "pixelSizeX": 1.0,
                "pixelSizeY": 1.0,
                "maxImageWidth": self.max_image_size,
                "maxImageHeight": self.max_image_size,
                "extent": {"xmin": 0, "ymin": 0, "xmax": 100, "ymax": 100, "spatialReference": {"wkid": 3857}},
            }
        )

    def export_image(self, request: Request) -> Response:
        args = dict(request.args)
        self.exports.append(args)
        xmin, ymin, xmax, ymax = (float(v) for v in args["bbox"].split(","))
        width, height = (int(v) for v in args["size"].split(","))
        x = xmin + (np.arange(width) + 0.5) * (xmax - xmin) / width
        y = ymax - (np.arange(height) + 0.5) * (ymax - ymin) / height
        rgb = np.zeros((height, width, 3), dtype=np.uint8)
        rgb[..., 0] = np.floor(x)[np.newaxis, :]
        rgb[..., 1] = np.floor(y)[:, np.newaxis]
        bio = BytesIO()
        Image.fromarray(rgb).save(bio, format="PNG")
        return Response(bio.getvalue(), content_type="image/png")

    def install(self, server: HTTPServer) -> str:
        server.expect_request(IMAGE_ROOT, method="GET").respond_with_handler(self.service_info)
        server.expect_request(f"{IMAGE_ROOT}/exportImage", method="GET").respond_with_handler(self.export_image)
        return server.url_for(IMAGE_ROOT)


@pytest.fixture
def fake_feature_server(fake_server):
    """``(fake, url)`` for an in-memory FeatureServer."""
    fake = FakeFeatureServer()
    return fake, fake.install(fake_server)


@pytest.fixture
def fake_image_server(fake_server):
    """``(fake, url)`` for an in-memory ImageServer."""
    fake = FakeImageServer()
    return fake, fake.install(fake_server)


@pytest.fixture
def unpaged_feature_server(fake_server):
    """``(fake, url)`` for a FeatureServer that does not advertise pagination."""
    fake = FakeFeatureServer(supports_pagination=False)
    return fake, fake.install(fake_server)
