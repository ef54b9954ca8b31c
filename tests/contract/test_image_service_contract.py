"""Image service reads against the in-memory fake server."""

import numpy as np
import pytest

from arcarray import ExtentError, ImageService, arc_open, arc_raster

pytestmark = pytest.mark.contract


@pytest.fixture
def elevation(fake_image_server, session):
    fake, url = fake_image_server
    return fake, arc_open(url, session=session)


def test_open_detects_image_server(elevation):
    _, service = elevation
    assert isinstance(service, ImageService)
    assert service.max_image_width == 50
    assert service.spatial_reference.code == 3857


def test_tiles_are_assembled_in_place(elevation):
    fake, service = elevation

    raster = arc_raster(service, (0, 0, 100, 100), width=100, height=100, format="png")

    assert raster.shape == (3, 100, 100)
    assert len({e["bbox"] for e in fake.exports}) == 4
    assert {e["size"] for e in fake.exports} == {"50,50"}
    # Red holds floor(x) and green floor(y) of every pixel centre.
    expected_x = np.broadcast_to(np.floor(raster.x.values), (100, 100))
    expected_y = np.broadcast_to(np.floor(raster.y.values)[:, np.newaxis], (100, 100))
    np.testing.assert_array_equal(raster.sel(band=1).values, expected_x)
    np.testing.assert_array_equal(raster.sel(band=2).values, expected_y)
    assert raster.y.values[0] == 99.5
    assert raster.x.values[0] == 0.5


def test_default_size_is_capped(elevation):
    _, service = elevation
    raster = arc_raster(service, (0, 0, 100, 100), format="png")
    assert raster.shape == (3, 50, 50)
    assert raster.attrs["res"] == (2.0, 2.0)


def test_subset_bbox(elevation):
    fake, service = elevation
    raster = arc_raster(service, (10, 20, 30, 60), format="png")

    assert raster.shape == (3, 40, 20)
    assert raster.sel(band=1).values.min() == 10
    assert raster.sel(band=2).values.max() == 59
    assert len(fake.exports) == 1


def test_cache_avoids_second_request(elevation, tmp_cache_dir):
    fake, service = elevation
    first = arc_raster(service, (0, 0, 40, 40), format="png", cache_dir=tmp_cache_dir)
    second = arc_raster(service, (0, 0, 40, 40), format="png", cache_dir=tmp_cache_dir)

    assert len(fake.exports) == 1
    np.testing.assert_array_equal(first.values, second.values)


def test_out_of_extent_raises_range_error(elevation):
    fake, service = elevation
    with pytest.raises(ExtentError):
        arc_raster(service, (500, 500, 600, 600), format="png")
    assert fake.exports == []
