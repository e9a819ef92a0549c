import numpy as np
import pytest
from shapely.geometry import LineString, Point, Polygon, box

from geoshard.envelope import Extent, centroid_of, geometry_distance, union_all
from geoshard.exceptions import DegenerateGeometryError
from geoshard.stobject import STObject


def test_corners_are_normalised():
    e = Extent((5, 0), (1, 3))
    assert e.mins.tolist() == [1, 0]
    assert e.maxs.tolist() == [5, 3]


def test_extent_is_read_only_and_does_not_freeze_input():
    src = np.array([0.0, 0.0])
    e = Extent(src, (1, 1))
    assert src.flags.writeable
    with pytest.raises(ValueError):
        e.mins[0] = 3


def test_touching_boxes_intersect():
    a = Extent.from_bounds(0, 0, 1, 1)
    b = Extent.from_bounds(1, 1, 2, 2)
    c = Extent.from_bounds(1.5, 0, 2, 0.5)
    assert a.intersects(b)
    assert not a.intersects(c)


def test_contains_and_union():
    a = Extent.from_bounds(0, 0, 4, 4)
    assert a.contains(Extent.from_bounds(0, 0, 4, 1))
    assert not a.contains(Extent.from_bounds(3, 3, 5, 4))
    u = a.union(Extent.from_bounds(-1, 2, 1, 6))
    assert u == Extent.from_bounds(-1, 0, 4, 6)


def test_min_distance():
    a = Extent.from_bounds(0, 0, 1, 1)
    assert a.min_distance(Extent.from_bounds(4, 5, 6, 6)) == pytest.approx(5.0)
    assert a.min_distance(Extent.from_bounds(0.5, 0.5, 3, 3)) == 0.0


def test_union_all_skips_missing():
    assert union_all([None, None]) is None
    assert union_all([None, Extent.from_bounds(0, 0, 1, 1), Extent.from_bounds(2, 2, 3, 3)]) == \
        Extent.from_bounds(0, 0, 3, 3)


def test_list_round_trip():
    e = Extent.from_bounds(0.1, -2, 3.5, 7)
    assert Extent.from_list(e.to_list()) == e
    assert hash(Extent.from_list(e.to_list())) == hash(e)


def test_of_geometry_accepts_stobject():
    e = Extent.of_geometry(STObject.of(LineString([(0, 0), (2, 3)]), 1.0))
    assert e == Extent.from_bounds(0, 0, 2, 3)


@pytest.mark.parametrize("g", [None, Point(), Polygon()])
def test_degenerate_geometries(g):
    with pytest.raises(DegenerateGeometryError):
        centroid_of(g)


def test_empty_extent_raises():
    with pytest.raises(DegenerateGeometryError):
        Extent.of_geometry(Point())


def test_centroid_and_distance():
    assert centroid_of(box(0, 0, 2, 4)).tolist() == [1.0, 2.0]
    assert geometry_distance(Point(0, 0), STObject(Point(3, 4))) == pytest.approx(5.0)
