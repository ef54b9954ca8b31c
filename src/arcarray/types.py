"""
Data models shared across ArcGIS service clients.
"""

from typing import List, Optional, Dict, Any, Union, Tuple
from enum import Enum

from pyproj import Transformer
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServiceKind(str, Enum):
    """Kinds of REST resources that can be opened."""
    FEATURE_SERVER = "FeatureServer"
    MAP_SERVER = "MapServer"
    IMAGE_SERVER = "ImageServer"
    FEATURE_LAYER = "FeatureLayer"
    TABLE = "Table"


class Format(str, Enum):
    """Image formats supported by ``exportImage``."""
    TIFF = "tiff"
    PNG = "png"
    JPEG = "jpg"

    @property
    def mime_type(self) -> str:
        return {"tiff": "image/tiff", "png": "image/png", "jpg": "image/jpeg"}[self.value]


BBoxTuple = Tuple[float, float, float, float]


def _is_esri_code(code: int) -> bool:
    return 53000 <= code <= 54999 or code >= 100000


class SpatialReference(BaseModel):
    """Esri spatial reference (``{"wkid": ..., "latestWkid": ...}``)."""

    wkid: Optional[int] = Field(None, description="Well-known id as reported by the service")
    latest_wkid: Optional[int] = Field(None, alias="latestWkid", description="Current EPSG code")
    wkt: Optional[str] = Field(None, description="Well-known text when no id is available")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode='after')
    def validate_identifier(self):
        if self.wkid is None and self.latest_wkid is None and not self.wkt:
            raise ValueError('spatial reference requires a wkid, latestWkid or wkt')
        return self

    @classmethod
    def from_epsg(cls, crs: Union[str, int]) -> "SpatialReference":
        """
        Create a spatial reference from an EPSG code.

        Args:
            crs: EPSG code as string or integer
             - string: "EPSG:4326" or "4326"
             - integer: 4326

        Returns:
            SpatialReference
        """
        if isinstance(crs, str):
            text = crs.strip().upper()
            for prefix in ("EPSG:", "ESRI:"):
                if text.startswith(prefix):
                    text = text[len(prefix):]
            try:
                return cls(wkid=int(text))
            except ValueError as exc:
                raise ValueError(f"Invalid CRS format: {crs}. Expected 'EPSG:<code>' or an integer") from exc
        return cls(wkid=int(crs))

    @classmethod
    def from_esri(cls, struct: Optional[Dict[str, Any]]) -> Optional["SpatialReference"]:
        """Parse the ``spatialReference`` member of a service response."""
        if not struct:
            return None
        return cls.model_validate(struct)

    @classmethod
    def coerce(cls, crs: Union["SpatialReference", str, int, Dict[str, Any], None]) -> Optional["SpatialReference"]:
        if crs is None or isinstance(crs, SpatialReference):
            return crs
        if isinstance(crs, dict):
            return cls.from_esri(crs)
        return cls.from_epsg(crs)

    @property
    def code(self) -> Optional[int]:
        return self.latest_wkid or self.wkid

    def to_esri(self) -> Dict[str, Any]:
        if self.wkid is not None or self.latest_wkid is not None:
            return {"wkid": self.code}
        return {"wkt": self.wkt}

    def to_crs_string(self) -> str:
        """Return a string understood by pyproj and geopandas."""
        code = self.code
        if code is None:
            return self.wkt or ""
        authority = "ESRI" if _is_esri_code(code) else "EPSG"
        return f"{authority}:{code}"

    def matches(self, other: Optional["SpatialReference"]) -> bool:
        if other is None:
            return False
        if self.code is not None and other.code is not None:
            return self.code == other.code or self.wkid == other.wkid
        return self.wkt == other.wkt


class BoundingBox(BaseModel):
    """Bounding box representation."""
    min_x: float = Field(..., description="Minimum X coordinate")
    min_y: float = Field(..., description="Minimum Y coordinate")
    max_x: float = Field(..., description="Maximum X coordinate")
    max_y: float = Field(..., description="Maximum Y coordinate")
    crs: Optional[SpatialReference] = Field(default=None, description="Spatial reference of the coordinates")

    @model_validator(mode='after')
    def validate_coordinates(self):
        """Validate that min coordinates do not exceed max coordinates."""
        if self.min_x > self.max_x:
            raise ValueError('min_x must not exceed max_x')
        if self.min_y > self.max_y:
            raise ValueError('min_y must not exceed max_y')
        return self

    @classmethod
    def from_tuple(
        cls,
        bbox: BBoxTuple,
        crs: Union[SpatialReference, str, int, None] = None,
    ) -> "BoundingBox":
        """Create BoundingBox from tuple."""
        if len(bbox) != 4:
            raise ValueError(f"Invalid bbox format: {bbox}. Expected tuple (min_x, min_y, max_x, max_y)")
        return cls(
            min_x=bbox[0],
            min_y=bbox[1],
            max_x=bbox[2],
            max_y=bbox[3],
            crs=SpatialReference.coerce(crs),
        )

    @classmethod
    def from_esri(cls, extent: Dict[str, Any]) -> "BoundingBox":
        """Create BoundingBox from an Esri envelope (``xmin``, ``ymin``, ...)."""
        return cls(
            min_x=extent["xmin"],
            min_y=extent["ymin"],
            max_x=extent["xmax"],
            max_y=extent["ymax"],
            crs=SpatialReference.from_esri(extent.get("spatialReference")),
        )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def as_tuple(self) -> BBoxTuple:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def to_esri(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {
            "xmin": self.min_x,
            "ymin": self.min_y,
            "xmax": self.max_x,
            "ymax": self.max_y,
        }
        if self.crs is not None:
            envelope["spatialReference"] = self.crs.to_esri()
        return envelope

    def intersects(self, other: "BoundingBox") -> bool:
        """Check if this bounding box intersects with another."""
        return self.min_x < other.max_x and self.max_x > other.min_x and self.min_y < other.max_y and self.max_y > other.min_y

    def contains(self, other: "BoundingBox") -> bool:
        return (
            self.min_x <= other.min_x
            and self.min_y <= other.min_y
            and self.max_x >= other.max_x
            and self.max_y >= other.max_y
        )

    def to_crs(self, crs: SpatialReference) -> "BoundingBox":
        """Transform the bounding box to a new spatial reference."""
        if self.crs is None:
            raise ValueError("Cannot transform a bounding box without a spatial reference")
        if self.crs.matches(crs):
            return BoundingBox(min_x=self.min_x, min_y=self.min_y, max_x=self.max_x, max_y=self.max_y, crs=crs)
        transformer = Transformer.from_crs(self.crs.to_crs_string(), crs.to_crs_string(), always_xy=True)
        xmin, ymin, xmax, ymax = transformer.transform_bounds(self.min_x, self.min_y, self.max_x, self.max_y)
        return BoundingBox(min_x=xmin, min_y=ymin, max_x=xmax, max_y=ymax, crs=crs)


class FieldDescriptor(BaseModel):
    """One attribute column of a layer or table."""
    name: str
    type: str = Field(..., description="Esri field type, e.g. esriFieldTypeString")
    alias: Optional[str] = None
    sql_type: Optional[str] = Field(None, alias="sqlType")
    nullable: bool = True
    editable: bool = True
    length: Optional[int] = None
    domain: Optional[Dict[str, Any]] = None
    default_value: Optional[Any] = Field(None, alias="defaultValue")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LayerSummary(BaseModel):
    """Entry from the ``layers``/``tables`` listing of a service."""
    id: int
    name: str
    type: Optional[str] = None
    geometry_type: Optional[str] = Field(None, alias="geometryType")
    kind: ServiceKind = ServiceKind.FEATURE_LAYER

    model_config = ConfigDict(populate_by_name=True)


class EditResult(BaseModel):
    """Server acknowledgement for one edited record."""
    object_id: Optional[int] = Field(None, alias="objectId")
    global_id: Optional[str] = Field(None, alias="globalId")
    success: bool
    error_code: Optional[int] = None
    error_description: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_esri(cls, struct: Dict[str, Any]) -> "EditResult":
        error = struct.get("error") or {}
        return cls(
            object_id=struct.get("objectId"),
            global_id=struct.get("globalId"),
            success=bool(struct.get("success")),
            error_code=error.get("code"),
            error_description=error.get("description") or error.get("message"),
        )


class EditOutcome(BaseModel):
    """Per-record results of add, update and delete operations."""
    add_results: List[EditResult] = Field(default_factory=list)
    update_results: List[EditResult] = Field(default_factory=list)
    delete_results: List[EditResult] = Field(default_factory=list)

    @classmethod
    def from_esri(cls, payload: Dict[str, Any]) -> "EditOutcome":
        return cls(
            add_results=[EditResult.from_esri(r) for r in payload.get("addResults") or []],
            update_results=[EditResult.from_esri(r) for r in payload.get("updateResults") or []],
            delete_results=[EditResult.from_esri(r) for r in payload.get("deleteResults") or []],
        )

    def merge(self, other: "EditOutcome") -> "EditOutcome":
        return EditOutcome(
            add_results=self.add_results + other.add_results,
            update_results=self.update_results + other.update_results,
            delete_results=self.delete_results + other.delete_results,
        )

    @property
    def results(self) -> List[EditResult]:
        return self.add_results + self.update_results + self.delete_results

    @property
    def succeeded(self) -> List[EditResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[EditResult]:
        return [r for r in self.results if not r.success]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class PublishedService(BaseModel):
    """One service created by a ``publish`` call."""
    service_url: Optional[str] = Field(None, alias="serviceurl")
    encoded_service_url: Optional[str] = Field(None, alias="encodedServiceURL")
    service_item_id: Optional[str] = Field(None, alias="serviceItemId")
    job_id: Optional[str] = Field(None, alias="jobId")
    type: Optional[str] = None
    size: Optional[int] = None
    error: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)


class PublishOutcome(BaseModel):
    """Result of publishing a local dataset as a hosted layer."""
    item_id: str = Field(..., description="Id of the uploaded source item")
    services: List[PublishedService] = Field(default_factory=list)

    @property
    def service_url(self) -> Optional[str]:
        for service in self.services:
            url = service.encoded_service_url or service.service_url
            if url:
                return url
        return None


class ImageRequest(BaseModel):
    """A single ``exportImage`` request."""

    url: str
    params: Dict[str, Any]
    output_format: Format = Format.TIFF
    bbox: BoundingBox
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class ImageResponse(BaseModel):
    """Raw bytes returned by ``exportImage``."""
    data: bytes
    content_type: str
    status_code: int
    url: str
