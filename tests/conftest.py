import numpy as np
import pytest
from shapely.geometry import Point, box

from geoshard.config import GeoShardConfig


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def point_records(rng):
    xy = rng.uniform(0, 100, size=(300, 2))
    return [(Point(x, y), i) for i, (x, y) in enumerate(xy)]


@pytest.fixture
def box_records(rng):
    lo = rng.uniform(0, 95, size=(150, 2))
    wh = rng.uniform(0.5, 12, size=(150, 2))
    return [(box(x, y, x + w, y + h), i) for i, ((x, y), (w, h)) in enumerate(zip(lo, wh))]


@pytest.fixture
def config():
    return GeoShardConfig(max_workers=4, rtree_order=4, grid_ppd=3, bsp_side_length=5.0, bsp_max_cost=40)
