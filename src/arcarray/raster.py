# pyright: reportMissingImports=false, reportUnknownMemberType=false, reportUnknownArgumentType=false, reportUnknownVariableType=false

"""Decoding exported images and assembling them into dask-backed arrays."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import tempfile
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Union, cast

import numpy as np
from dask.array import block as da_block  # type: ignore[attr-defined]
from dask.array import from_delayed as da_from_delayed  # type: ignore[attr-defined]
from dask.delayed import Delayed, delayed  # type: ignore[assignment]
from geotiff import GeoTiff  # type: ignore[import]
from geotiff.geotiff import TiffFile  # type: ignore[import]
from numpy.typing import NDArray
from PIL import Image  # type: ignore[import]
from pydantic import BaseModel, Field

from .errors import ParseError
from .types import BoundingBox, Format, ImageRequest, ImageResponse

if TYPE_CHECKING:
    from dask.array.core import Array as DaskArray
else:  # pragma: no cover - typing aid
    DaskArray = Any

logger = logging.getLogger(__name__)

NDArrayFloat = NDArray[np.floating[Any]]
ImageDecoder = Callable[[ImageResponse, ImageRequest], NDArrayFloat]
ImageFetcher = Callable[[ImageRequest], ImageResponse]

_DECODER_REGISTRY: Dict[Format, ImageDecoder] = {}


def register_image_decoder(fmt: Format, decoder: ImageDecoder) -> None:
    """Register an image decoder for a particular output format."""

    _DECODER_REGISTRY[fmt] = decoder


def decoder_for_format(fmt: Union[Format, str]) -> ImageDecoder:
    try:
        return _DECODER_REGISTRY[Format(fmt)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"No image decoder available for format {fmt!r}") from exc


# ----------------------------------------------------------------------
# Tile planning
# ----------------------------------------------------------------------
class RasterTile(BaseModel):
    """One cell of the request grid; row 0 is the northernmost."""

    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    bbox: BoundingBox
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


def _split(total: int, parts: int) -> List[int]:
    base, extra = divmod(total, parts)
    return [base + (1 if i < extra else 0) for i in range(parts)]


def plan_tiles(
    bbox: BoundingBox,
    width: int,
    height: int,
    max_width: int,
    max_height: int,
) -> List[List[RasterTile]]:
    """
    Split an image of ``width`` x ``height`` pixels into a grid of requests.

    Every tile is at most ``max_width`` x ``max_height`` pixels, tile
    sizes within a row or column differ by at most one pixel, and tile
    edges fall on pixel boundaries of the full image.

    Args:
        bbox: Extent of the full image
        width: Full image width in pixels
        height: Full image height in pixels
        max_width: Largest width of a single request
        max_height: Largest height of a single request

    Returns:
        Rows of tiles, north to south, each row west to east
    """
    if width <= 0 or height <= 0:
        raise ValueError("width and height must be positive")
    if max_width <= 0 or max_height <= 0:
        raise ValueError("max_width and max_height must be positive")

    cols = math.ceil(width / max_width)
    rows = math.ceil(height / max_height)
    res_x = bbox.width / width
    res_y = bbox.height / height

    col_widths = _split(width, cols)
    row_heights = _split(height, rows)

    grid: List[List[RasterTile]] = []
    y_offset = 0
    for row, tile_height in enumerate(row_heights):
        tiles: List[RasterTile] = []
        x_offset = 0
        top = bbox.max_y - y_offset * res_y
        bottom = bbox.min_y if row == rows - 1 else bbox.max_y - (y_offset + tile_height) * res_y
        for col, tile_width in enumerate(col_widths):
            left = bbox.min_x + x_offset * res_x
            right = bbox.max_x if col == cols - 1 else bbox.min_x + (x_offset + tile_width) * res_x
            tiles.append(
                RasterTile(
                    row=row,
                    col=col,
                    bbox=BoundingBox(min_x=left, min_y=bottom, max_x=right, max_y=top, crs=bbox.crs),
                    width=tile_width,
                    height=tile_height,
                )
            )
            x_offset += tile_width
        grid.append(tiles)
        y_offset += tile_height

    logger.debug("Planned %d x %d tile grid for a %d x %d image", rows, cols, height, width)
    return grid


def pixel_centres(bbox: BoundingBox, width: int, height: int) -> tuple:
    """Coordinates of pixel centres; ``y`` descends from the top edge."""
    res_x = bbox.width / width
    res_y = bbox.height / height
    x = bbox.min_x + (np.arange(width) + 0.5) * res_x
    y = bbox.max_y - (np.arange(height) + 0.5) * res_y
    return x, y


# ----------------------------------------------------------------------
# Assembly
# ----------------------------------------------------------------------
def _delayed_call(func: Callable[..., Any], *args: Any) -> Delayed:
    """Typed helper around ``dask.delayed`` to satisfy static analysis."""

    return cast(Delayed, delayed(func)(*args))


def assemble(
    requests: Sequence[Sequence[ImageRequest]],
    fetch: ImageFetcher,
    *,
    bands: int,
    decoder: ImageDecoder,
    dtype: Union[str, np.dtype[Any]] = np.dtype("float32"),
    cache_dir: Optional[Path] = None,
) -> DaskArray:
    """
    Lazily fetch a grid of image requests into one ``(band, y, x)`` array.

    Each request becomes a dask block; nothing is fetched until the array
    is computed.
    """
    dtype_np = np.dtype(dtype)
    blocks: List[List[DaskArray]] = []
    for row_requests in requests:
        row_blocks: List[DaskArray] = []
        for request in row_requests:
            delayed_tile = _delayed_call(_load_image_array, request, fetch, decoder, bands, dtype_np, cache_dir)
            row_blocks.append(
                da_from_delayed(delayed_tile, shape=(bands, request.height, request.width), dtype=dtype_np)
            )
        blocks.append(row_blocks)
    return da_block(blocks)


def load_image_array(
    request: ImageRequest,
    fetch: ImageFetcher,
    *,
    decoder: ImageDecoder,
    dtype: Union[str, np.dtype[Any]] = np.dtype("float32"),
    cache_dir: Optional[Path] = None,
) -> NDArrayFloat:
    """Fetch and decode one request eagerly; the band count is whatever the image holds."""
    return _load_image_array(request, fetch, decoder, None, np.dtype(dtype), cache_dir)


def _load_image_array(
    request: ImageRequest,
    fetch: ImageFetcher,
    decoder: ImageDecoder,
    bands: Optional[int],
    dtype: np.dtype[Any],
    cache_dir: Optional[Path],
) -> NDArrayFloat:
    response = _fetch_with_cache(request, fetch, cache_dir)
    array = decoder(response, request)
    if array.ndim != 3:
        raise ParseError("image decoder must return a (band, y, x) array")

    expected = (bands if bands is not None else array.shape[0], request.height, request.width)
    if array.shape != expected:
        raise ParseError(f"Decoded image has shape {array.shape}, expected {expected} for {request.url}")
    return np.asarray(array, dtype=dtype)


# ----------------------------------------------------------------------
# Cache
# ----------------------------------------------------------------------
def _fetch_with_cache(request: ImageRequest, fetch: ImageFetcher, cache_dir: Optional[Path]) -> ImageResponse:
    if cache_dir is not None:
        cached = _read_cache(cache_dir, request)
        if cached is not None:
            logger.debug("Cache hit for %s", request.url)
            return ImageResponse(
                data=cached,
                content_type=request.output_format.mime_type,
                status_code=200,
                url=request.url,
            )

    response = fetch(request)
    if cache_dir is not None and response.data:
        _write_cache(cache_dir, request, bytes(response.data))
    return response


def _cache_key(request: ImageRequest) -> str:
    payload = {
        "url": request.url,
        "params": sorted((str(k), str(v)) for k, v in request.params.items()),
        "format": request.output_format.value,
        "bbox": request.bbox.model_dump(mode="json"),
        "width": request.width,
        "height": request.height,
    }
    serialized = json.dumps(payload, sort_keys=True)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _read_cache(cache_dir: Path, request: ImageRequest) -> Optional[bytes]:
    cache_dir.mkdir(parents=True, exist_ok=True)
    path = cache_dir / f"{_cache_key(request)}.{request.output_format.value}"
    return path.read_bytes() if path.exists() else None


def _write_cache(cache_dir: Path, request: ImageRequest, data: bytes) -> None:
    cache_dir.mkdir(parents=True, exist_ok=True)
    path = cache_dir / f"{_cache_key(request)}.{request.output_format.value}"
    path.write_bytes(data)


# ----------------------------------------------------------------------
# Decoders
# ----------------------------------------------------------------------
def _band_first(data: NDArray[Any], request: ImageRequest) -> NDArray[Any]:
    if data.ndim == 2:
        return data[np.newaxis, ...]
    if data.ndim != 3:
        raise ParseError(f"Unexpected image rank {data.ndim} for {request.url}")
    # Images come back either (y, x, band) or (band, y, x).
    if data.shape[:2] == (request.height, request.width):
        return np.moveaxis(data, -1, 0)
    return data


def _decode_geotiff(response: ImageResponse, request: ImageRequest) -> NDArrayFloat:
    raw_bytes = bytes(response.data)
    with tempfile.NamedTemporaryFile(suffix=".tif") as tmp:
        tmp.write(raw_bytes)
        tmp.flush()
        try:
            tif = GeoTiff(tmp.name, as_crs=None)
            data = np.asarray(tif.read())
        except Exception:  # pragma: no cover - fallback path
            try:
                with TiffFile(tmp.name) as tif_file:
                    data = np.asarray(tif_file.asarray())
            except Exception as exc:
                raise ParseError(f"Unable to decode GeoTIFF returned by {request.url}", cause=exc) from exc

    data = _band_first(data, request).astype(np.float32)

    invalid = ~np.isfinite(data)
    sentinel = np.abs(data) > 1e20
    if invalid.any() or sentinel.any():
        data[invalid | sentinel] = np.nan
    return cast(NDArrayFloat, data)


def _decode_raster_image(response: ImageResponse, request: ImageRequest) -> NDArrayFloat:
    try:
        with BytesIO(bytes(response.data)) as bio:
            with Image.open(bio) as img:
                data = np.asarray(img)
    except OSError as exc:
        raise ParseError(f"Unable to decode {request.output_format.value} returned by {request.url}", cause=exc) from exc

    return cast(NDArrayFloat, _band_first(data, request).astype(np.float32))


register_image_decoder(Format.TIFF, _decode_geotiff)
register_image_decoder(Format.PNG, _decode_raster_image)
register_image_decoder(Format.JPEG, _decode_raster_image)
