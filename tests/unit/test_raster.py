from io import BytesIO

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from PIL import Image

from arcarray.errors import ParseError
from arcarray.raster import (
    _cache_key,
    assemble,
    decoder_for_format,
    pixel_centres,
    plan_tiles,
    register_image_decoder,
)
from arcarray.types import BoundingBox, Format, ImageRequest, ImageResponse, SpatialReference

BBOX = BoundingBox(min_x=0, min_y=0, max_x=100, max_y=60, crs=SpatialReference(wkid=3857))


def _request(bbox=BBOX, width=10, height=6, fmt=Format.PNG, **params) -> ImageRequest:
    return ImageRequest(
        url="https://x/ImageServer/exportImage",
        params={"bbox": ",".join(str(v) for v in bbox.as_tuple()), **params},
        output_format=fmt,
        bbox=bbox,
        width=width,
        height=height,
    )


def _png(array: np.ndarray) -> bytes:
    bio = BytesIO()
    Image.fromarray(array).save(bio, format="PNG")
    return bio.getvalue()


@pytest.mark.unit
def test_plan_tiles_single_tile_when_within_limits():
    grid = plan_tiles(BBOX, 10, 6, 50, 50)
    assert len(grid) == 1 and len(grid[0]) == 1
    assert grid[0][0].bbox == BBOX


@pytest.mark.unit
def test_plan_tiles_rows_run_north_to_south():
    grid = plan_tiles(BBOX, 100, 60, 50, 30)

    assert [[(t.width, t.height) for t in row] for row in grid] == [[(50, 30), (50, 30)], [(50, 30), (50, 30)]]
    assert grid[0][0].bbox.max_y == 60
    assert grid[1][0].bbox.max_y == 30
    assert grid[0][1].bbox.min_x == 50
    assert grid[1][1].bbox.as_tuple() == (50, 0, 100, 30)


@pytest.mark.unit
def test_plan_tiles_rejects_bad_sizes():
    with pytest.raises(ValueError):
        plan_tiles(BBOX, 0, 10, 50, 50)
    with pytest.raises(ValueError):
        plan_tiles(BBOX, 10, 10, 0, 50)


@pytest.mark.property
@settings(max_examples=75, deadline=None)
@given(
    width=st.integers(min_value=1, max_value=3000),
    height=st.integers(min_value=1, max_value=3000),
    max_width=st.integers(min_value=100, max_value=2000),
    max_height=st.integers(min_value=100, max_value=2000),
)
def test_plan_tiles_covers_image_exactly(width, height, max_width, max_height):
    grid = plan_tiles(BBOX, width, height, max_width, max_height)

    for row in grid:
        assert sum(t.width for t in row) == width
        assert all(t.width <= max_width and t.height <= max_height for t in row)
        assert max(t.width for t in row) - min(t.width for t in row) <= 1
        assert len({t.height for t in row}) == 1
    assert sum(row[0].height for row in grid) == height

    assert grid[0][0].bbox.max_y == BBOX.max_y
    assert grid[-1][-1].bbox.min_y == BBOX.min_y
    assert grid[-1][-1].bbox.max_x == BBOX.max_x
    for upper, lower in zip(grid, grid[1:]):
        assert upper[0].bbox.min_y == pytest.approx(lower[0].bbox.max_y)
    for row in grid:
        for left, right in zip(row, row[1:]):
            assert left.bbox.max_x == pytest.approx(right.bbox.min_x)


@pytest.mark.unit
def test_pixel_centres_descend_in_y():
    x, y = pixel_centres(BBOX, 10, 6)
    assert x[0] == 5 and x[-1] == 95
    assert y[0] == 55 and y[-1] == 5


@pytest.mark.unit
def test_decode_png_is_band_first():
    rgb = np.zeros((6, 10, 3), dtype=np.uint8)
    rgb[..., 2] = 7
    response = ImageResponse(data=_png(rgb), content_type="image/png", status_code=200, url="u")

    array = decoder_for_format("png")(response, _request())

    assert array.shape == (3, 6, 10)
    assert array.dtype == np.float32
    assert (array[2] == 7).all()


@pytest.mark.unit
def test_decode_garbage_raises_parse_error():
    response = ImageResponse(data=b"not an image", content_type="image/png", status_code=200, url="u")
    with pytest.raises(ParseError):
        decoder_for_format(Format.PNG)(response, _request())


@pytest.mark.unit
def test_unknown_format_has_no_decoder():
    with pytest.raises(ValueError):
        decoder_for_format("bmp")


@pytest.mark.unit
def test_cache_key_depends_on_request():
    assert _cache_key(_request()) == _cache_key(_request())
    assert _cache_key(_request()) != _cache_key(_request(width=11))
    assert _cache_key(_request()) != _cache_key(_request(bandIds="1"))


@pytest.mark.unit
def test_assemble_is_lazy_and_row_major(tmp_cache_dir):
    grid = plan_tiles(BBOX, 10, 6, 5, 3)
    requests = [[_request(t.bbox, t.width, t.height) for t in row] for row in grid]
    fetched = []

    def fetch(request):
        fetched.append(request)
        tile = np.full((request.height, request.width), int(request.bbox.min_x) + int(request.bbox.min_y), dtype=np.uint8)
        return ImageResponse(data=_png(tile), content_type="image/png", status_code=200, url=request.url)

    data = assemble(requests, fetch, bands=1, decoder=decoder_for_format("png"), cache_dir=tmp_cache_dir)

    assert fetched == []
    assert data.shape == (1, 6, 10)
    values = data.compute()
    assert len(fetched) == 4
    # Top-left tile covers x 0..50, y 30..60.
    assert values[0, 0, 0] == 30
    assert values[0, 0, 9] == 80
    assert values[0, 5, 0] == 0
    assert values[0, 5, 9] == 50

    data.compute()
    assert len(fetched) == 4


@pytest.mark.unit
def test_assemble_checks_band_count():
    request = _request()

    def fetch(req):
        return ImageResponse(data=_png(np.zeros((6, 10), dtype=np.uint8)), content_type="image/png", status_code=200, url="u")

    data = assemble([[request]], fetch, bands=3, decoder=decoder_for_format("png"))
    with pytest.raises(ParseError, match="expected"):
        data.compute()


@pytest.mark.unit
def test_custom_decoder_registration():
    def constant(response, request):
        return np.ones((1, request.height, request.width), dtype=np.float32)

    original = decoder_for_format(Format.JPEG)
    register_image_decoder(Format.JPEG, constant)
    try:
        assert decoder_for_format("jpg") is constant
    finally:
        register_image_decoder(Format.JPEG, original)
