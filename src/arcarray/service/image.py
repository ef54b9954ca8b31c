# pyright: reportMissingImports=false, reportUnknownMemberType=false

"""Image services: metadata, raw exports and tiled raster reads."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import dask.array as da
import numpy as np
import xarray as xr

from .base import BaseService, register_service
from ..errors import ExtentError, ParseError, QueryError
from ..raster import assemble, decoder_for_format, load_image_array, pixel_centres, plan_tiles
from ..transport import parse_json
from ..types import BBoxTuple, BoundingBox, Format, ImageRequest, ImageResponse, ServiceKind, SpatialReference
from ..typing import ChunkSize, CRSLike

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMAGE_WIDTH = 4100
DEFAULT_MAX_IMAGE_HEIGHT = 4100


@register_service(ServiceKind.IMAGE_SERVER)
class ImageService(BaseService):
    """A raster dataset exposed through ``exportImage``."""

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "bands": self.band_count,
            "pixel_type": self.pixel_type,
            "crs": self.spatial_reference.to_crs_string() if self.spatial_reference else None,
        }

    @property
    def name(self) -> str:
        segments = self.url.rstrip("/").split("/")
        return str(self.metadata.get("name") or (segments[-2] if len(segments) >= 2 else segments[-1]))

    @property
    def band_count(self) -> int:
        return int(self.metadata.get("bandCount") or 1)

    @property
    def pixel_type(self) -> Optional[str]:
        return self.metadata.get("pixelType")

    @property
    def pixel_size(self) -> Optional[Tuple[float, float]]:
        size_x, size_y = self.metadata.get("pixelSizeX"), self.metadata.get("pixelSizeY")
        if not size_x or not size_y:
            return None
        return float(size_x), float(size_y)

    @property
    def max_image_width(self) -> int:
        return int(self.metadata.get("maxImageWidth") or DEFAULT_MAX_IMAGE_WIDTH)

    @property
    def max_image_height(self) -> int:
        return int(self.metadata.get("maxImageHeight") or DEFAULT_MAX_IMAGE_HEIGHT)

    @property
    def no_data_value(self) -> Optional[float]:
        values = self.metadata.get("noDataValues") or []
        if values:
            return values[0]
        return self.metadata.get("noDataValue")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def build_request(
        self,
        bbox: BoundingBox,
        width: int,
        height: int,
        *,
        crs: Optional[SpatialReference] = None,
        format: Union[Format, str] = Format.TIFF,
        pixel_type: Optional[str] = None,
        **params: Any,
    ) -> ImageRequest:
        """Parameters of one ``exportImage`` call covering ``bbox``."""
        fmt = Format(format)
        query: Dict[str, Any] = {
            "bbox": ",".join(str(v) for v in bbox.as_tuple()),
            "size": f"{width},{height}",
            "format": fmt.value,
            "f": "image",
        }
        if bbox.crs is not None:
            query["bboxSR"] = json.dumps(bbox.crs.to_esri())
        out_sr = crs or bbox.crs
        if out_sr is not None:
            query["imageSR"] = json.dumps(out_sr.to_esri())
        if pixel_type:
            query["pixelType"] = pixel_type
        for key, value in params.items():
            # exportImage takes lists such as bandIds as one comma separated value.
            query[key] = ",".join(str(v) for v in value) if isinstance(value, (list, tuple)) else value

        return ImageRequest(
            url=f"{self.url}/exportImage",
            params=query,
            output_format=fmt,
            bbox=bbox,
            width=width,
            height=height,
        )

    def fetch(self, request: ImageRequest) -> ImageResponse:
        """Send one export request and return the image bytes."""
        response = self.session.get_content(request.url, request.params)
        content_type = response.headers.get("content-type", "")

        if "json" in content_type or "text" in content_type:
            # Errors come back as JSON with a 200 status.
            parse_json(response)
            raise ParseError(f"Expected {request.output_format.mime_type} from {request.url}, got {content_type}")

        return ImageResponse(
            data=response.content,
            content_type=content_type,
            status_code=response.status_code,
            url=response.url or request.url,
        )

    def export_image(
        self,
        bbox: Union[BoundingBox, BBoxTuple],
        width: int,
        height: int,
        *,
        bbox_crs: CRSLike = None,
        crs: CRSLike = None,
        format: Union[Format, str] = Format.TIFF,
        pixel_type: Optional[str] = None,
        **params: Any,
    ) -> ImageResponse:
        """Fetch a single image of ``width`` x ``height`` pixels."""
        box = self._coerce_bbox(bbox, bbox_crs)
        self._check_extent(box)
        request = self.build_request(
            box,
            width,
            height,
            crs=SpatialReference.coerce(crs),
            format=format,
            pixel_type=pixel_type,
            **params,
        )
        return self.fetch(request)

    # ------------------------------------------------------------------
    # Arrays
    # ------------------------------------------------------------------
    def arc_raster(
        self,
        bbox: Union[BoundingBox, BBoxTuple],
        bbox_crs: CRSLike = None,
        crs: CRSLike = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        *,
        format: Union[Format, str] = Format.TIFF,
        pixel_type: Optional[str] = None,
        chunk_size: Optional[ChunkSize] = None,
        cache_dir: Optional[Union[str, Path]] = None,
        compute: bool = True,
        **params: Any,
    ) -> xr.DataArray:
        """
        Read the pixels inside ``bbox`` into a ``(band, y, x)`` DataArray.

        Args:
            bbox: ``(xmin, ymin, xmax, ymax)`` or a BoundingBox
            bbox_crs: Spatial reference of ``bbox`` (the service's by default)
            crs: Spatial reference of the output (``bbox_crs`` by default)
            width: Output width in pixels (native resolution by default)
            height: Output height in pixels (native resolution by default)
            format: Export format; GeoTIFF keeps every band
            pixel_type: Override the service's pixel type, e.g. ``F32``
            chunk_size: Largest ``(width, height)`` of a single request,
                capped at the service's ``maxImageWidth``/``maxImageHeight``
            cache_dir: Directory caching exported images between calls
            compute: Load the data now instead of returning a dask-backed array
            **params: Extra ``exportImage`` parameters, e.g. ``bandIds``

        Returns:
            DataArray with pixel-centre ``x``/``y`` coordinates; ``y`` descends

        Raises:
            ExtentError: ``bbox`` does not intersect the service extent
            QueryError: ``bbox`` has zero width or height
        """
        fmt = Format(format)
        box = self._coerce_bbox(bbox, bbox_crs)
        self._check_extent(box)

        out_sr = SpatialReference.coerce(crs) or box.crs
        out_box = box.to_crs(out_sr) if out_sr is not None and box.crs is not None else box
        width, height = self._resolve_size(box, width, height)

        max_width, max_height = self.max_image_width, self.max_image_height
        if chunk_size is not None:
            max_width = min(max_width, int(chunk_size[0]))
            max_height = min(max_height, int(chunk_size[1]))

        grid = plan_tiles(out_box, width, height, max_width, max_height)
        requests: List[List[ImageRequest]] = [
            [
                self.build_request(tile.bbox, tile.width, tile.height, crs=out_sr, format=fmt, pixel_type=pixel_type, **params)
                for tile in row
            ]
            for row in grid
        ]

        cache_path = Path(cache_dir).expanduser().resolve() if cache_dir else None
        decoder = decoder_for_format(fmt)
        bands = self._band_count_for(fmt, params)
        first = None
        if bands is None:
            # Colour formats decide their own band count; read the first tile to find it.
            first = load_image_array(requests[0][0], self.fetch, decoder=decoder, cache_dir=cache_path)
            bands = first.shape[0]
        if first is not None and len(grid) == 1 and len(grid[0]) == 1:
            data = da.from_array(first, chunks=first.shape)
        else:
            data = assemble(requests, self.fetch, bands=bands, decoder=decoder, cache_dir=cache_path)

        x, y = pixel_centres(out_box, width, height)
        array = xr.DataArray(
            data,
            coords={"band": np.arange(1, bands + 1), "y": y, "x": x},
            dims=("band", "y", "x"),
            name=self.name,
            attrs=self._array_attrs(out_sr, fmt, out_box, width, height),
        )
        return array.compute() if compute else array

    def _coerce_bbox(self, bbox: Union[BoundingBox, BBoxTuple], bbox_crs: CRSLike) -> BoundingBox:
        sr = SpatialReference.coerce(bbox_crs)
        if isinstance(bbox, BoundingBox):
            if sr is not None and bbox.crs is None:
                return bbox.model_copy(update={"crs": sr})
            if bbox.crs is None:
                return bbox.model_copy(update={"crs": self.spatial_reference})
            return bbox
        return BoundingBox.from_tuple(tuple(bbox), sr or self.spatial_reference)

    def _check_extent(self, box: BoundingBox) -> None:
        if box.width <= 0 or box.height <= 0:
            raise QueryError(f"Bounding box {box.as_tuple()} has no area")
        extent = self.extent
        if extent is None:
            return
        native = box
        if box.crs is not None and extent.crs is not None and not box.crs.matches(extent.crs):
            native = box.to_crs(extent.crs)
        if not extent.intersects(native):
            raise ExtentError(
                f"Bounding box {native.as_tuple()} does not intersect the extent "
                f"{extent.as_tuple()} of {self.url}"
            )

    def _resolve_size(self, box: BoundingBox, width: Optional[int], height: Optional[int]) -> Tuple[int, int]:
        if width is not None and height is not None:
            return int(width), int(height)

        native = box
        extent_crs = self.spatial_reference
        if box.crs is not None and extent_crs is not None and not box.crs.matches(extent_crs):
            native = box.to_crs(extent_crs)

        pixel_size = self.pixel_size
        if pixel_size is None:
            natural_w, natural_h = self.max_image_width, self.max_image_height
        else:
            natural_w = max(1, math.ceil(native.width / pixel_size[0]))
            natural_h = max(1, math.ceil(native.height / pixel_size[1]))

        if width is not None:
            return int(width), max(1, round(int(width) * natural_h / natural_w))
        if height is not None:
            return max(1, round(int(height) * natural_w / natural_h)), int(height)

        scale = min(1.0, self.max_image_width / natural_w, self.max_image_height / natural_h)
        size = max(1, math.floor(natural_w * scale)), max(1, math.floor(natural_h * scale))
        logger.debug("Resolved output size %s for %s", size, self.url)
        return size

    def _band_count_for(self, fmt: Format, params: Dict[str, Any]) -> Optional[int]:
        if fmt != Format.TIFF:
            return None
        band_ids = params.get("bandIds")
        if band_ids is not None:
            if isinstance(band_ids, str):
                return len([b for b in band_ids.split(",") if b.strip()])
            return len(list(band_ids))
        return self.band_count

    def _array_attrs(
        self,
        crs: Optional[SpatialReference],
        fmt: Format,
        box: BoundingBox,
        width: int,
        height: int,
    ) -> Dict[str, Any]:
        attrs: Dict[str, Any] = {
            "service_url": self.url,
            "service_kind": self.service_kind.value,
            "output_format": fmt.value,
            "bbox": box.as_tuple(),
            "res": (box.width / width, box.height / height),
        }
        if crs is not None:
            attrs["crs"] = crs.to_crs_string()
        if self.pixel_type:
            attrs["pixel_type"] = self.pixel_type
        if self.no_data_value is not None:
            attrs["nodata"] = self.no_data_value
        return attrs
