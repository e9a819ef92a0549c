import itertools

import pytest
from shapely.geometry import Point

from geoshard.config import GeoShardConfig
from geoshard.skyline import Skyline, centroid_dominates, dominated_partitions, local_skyline, st_distance
from geoshard.spatial import SpatialDataset
from geoshard.stobject import STObject


def _coords(ref, g):
    return (g.x, g.y)


def test_dominance():
    assert centroid_dominates((1, 1), (1, 2))
    assert not centroid_dominates((1, 1), (1, 1))
    assert not centroid_dominates((0, 3), (1, 2))


def test_scenario_insert_or_evict():
    sky = Skyline()
    for p in [(1, 5), (5, 1), (3, 3), (2, 2)]:
        sky.insert((p, None))
    assert sorted(p for p, _ in sky) == [(1, 5), (2, 2), (5, 1)]


def test_insert_reports_rejection():
    sky = Skyline(points=[((2, 2), "a")])
    assert not sky.insert(((3, 3), "b"))
    assert sky.insert(((1, 1), "c"))
    assert [v for _, v in sky] == ["c"]


def test_equal_points_are_all_kept():
    sky = local_skyline([((1, 1), "a"), ((1, 1), "b"), ((2, 0), "c")])
    assert sorted(v for _, v in sky) == ["a", "b", "c"]


def _check_skyline(points, sky):
    members = [p for p, _ in sky]
    for a, b in itertools.permutations(members, 2):
        assert not centroid_dominates(a, b)
    for p, _ in points:
        if p not in members:
            assert any(centroid_dominates(m, p) for m in members)


def test_antichain_and_coverage(rng):
    pts = [(tuple(p), i) for i, p in enumerate(rng.integers(0, 30, size=(250, 2)).tolist())]
    sky = local_skyline(pts)
    _check_skyline(pts, sky)


def test_merge_equals_single_pass(rng):
    pts = [(tuple(p), i) for i, p in enumerate(rng.uniform(0, 1, size=(120, 2)).tolist())]
    left, right = Skyline(points=pts[:50]), Skyline(points=pts[50:])
    merged = left.merge(right)
    assert sorted(v for _, v in merged) == sorted(v for _, v in local_skyline(pts))


def test_dominated_partitions():
    lower = [(0, 0), (5, 5), (3, 6), (1, 9), None]
    upper = [(2, 2), (6, 6), (4, 7), (1, 9), None]
    keep = dominated_partitions(lower, upper, [True, True, True, True, False])
    assert keep == [True, False, False, True, False]


def test_st_distance():
    ref = STObject.of(Point(0, 0), 10)
    assert st_distance(ref, STObject.of(Point(3, 4), 0, 4)) == (5.0, 6.0)
    assert st_distance(ref, Point(3, 4)) == (5.0, 0.0)


def test_dataset_scenario():
    ds = SpatialDataset.from_records([(Point(x, y), (x, y)) for x, y in [(1, 5), (5, 1), (3, 3), (2, 2)]])
    sky = ds.skyline(None, dist_fn=_coords, ppd=2)
    assert sorted(v for _, (_, v) in sky) == [(1, 5), (2, 2), (5, 1)]
    agg = ds.skyline_agg(None, dist_fn=_coords)
    assert sorted(v for _, (_, v) in agg) == [(1, 5), (2, 2), (5, 1)]


@pytest.mark.parametrize("ppd", [1, 3, 6])
def test_global_equals_aggregate(rng, ppd):
    xy = rng.uniform(0, 100, size=(200, 2))
    times = rng.uniform(0, 50, size=200)
    records = [(STObject.of(Point(x, y), t), i) for i, ((x, y), t) in enumerate(zip(xy, times))]
    ds = SpatialDataset.from_records(records, num_partitions=4, config=GeoShardConfig(max_workers=3))
    ref = STObject.of(Point(50, 50), 25)
    glob = ds.skyline(ref, ppd=ppd)
    agg = ds.skyline_agg(ref)
    assert sorted(v for _, (_, v) in glob) == sorted(v for _, (_, v) in agg)
    mapped = [(st_distance(ref, g), v) for g, v in records]
    _check_skyline(mapped, glob)
