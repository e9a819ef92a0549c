import logging

import numpy as np
import pytest
from shapely.geometry import Point

from geoshard.bsp import BSPartitioner
from geoshard.dataset import PartitionedDataset
from geoshard.envelope import Extent, centroid_of
from geoshard.exceptions import InvalidParameterError
from geoshard.partitioner import partitioner_from_dict


SCENARIO = np.array([[0.5, 0.5], [1.5, 1.5], [2.5, 0.5], [0.5, 2.5]])


def test_four_points_give_four_partitions():
    bsp = BSPartitioner.from_points(SCENARIO, side_length=1.0, max_cost_per_partition=1)
    assert bsp.histogram.shape == (2, 2)
    assert bsp.num_partitions == 4
    assert [bsp.partition_cost(p) for p in range(4)] == [1, 1, 1, 1]
    pids = [bsp.partition_of_point(p) for p in SCENARIO]
    # left half first, then bottom before top inside each half
    assert pids == [0, 3, 2, 1]
    for p, pid in zip(SCENARIO, pids):
        assert bsp.partition_extent(pid).contains_point(p)


def test_no_split_when_under_cost():
    bsp = BSPartitioner.from_points(SCENARIO, side_length=1.0, max_cost_per_partition=10)
    assert bsp.num_partitions == 1
    assert bsp.partition_extent(0) == Extent.from_bounds(0.5, 0.5, 2.5, 2.5)
    assert bsp.depth() == 1


def test_balanced_split_line():
    pts = np.array([[0.5, 0.5], [1.5, 0.5], [2.5, 0.5], [3.5, 0.5], [3.6, 0.5], [3.7, 0.5]])
    bsp = BSPartitioner.from_points(pts, side_length=1.0, max_cost_per_partition=3)
    root = bsp.regions[0]
    assert root.axis == 0
    # cumulative counts per column: 1, 2, 3, 6 -> the line after the third column balances 3 | 3
    assert root.split == 3
    assert [bsp.partition_cost(p) for p in range(bsp.num_partitions)] == [3, 3]


def test_costs_bounded_and_match_assignment(rng):
    coords = rng.uniform(0, 100, size=(600, 2))
    bsp = BSPartitioner.from_points(coords, side_length=5.0, max_cost_per_partition=50)
    counts = np.zeros(bsp.num_partitions, dtype=int)
    for p in coords:
        pid = bsp.partition_of_point(p)
        counts[pid] += 1
        assert bsp.partition_extent(pid).contains_point(p)
    assert counts.tolist() == [bsp.partition_cost(p) for p in range(bsp.num_partitions)]
    for pid in range(bsp.num_partitions):
        r = bsp.regions[bsp._leaves[pid]]
        single_cell = all(h - lo == 1 for lo, h in zip(r.lo, r.hi))
        assert r.cost <= 50 or single_cell


def test_leaf_extents_tile_the_histogram(rng):
    coords = rng.uniform(0, 50, size=(200, 2))
    bsp = BSPartitioner.from_points(coords, side_length=2.0, max_cost_per_partition=20)
    total = sum(e.area() for e in bsp.extents())
    assert total == pytest.approx(bsp.global_extent.area())


def test_deterministic(rng):
    coords = rng.uniform(-10, 10, size=(400, 2))
    a = BSPartitioner.from_points(coords, 0.5, 25)
    b = BSPartitioner.from_points(coords.copy(), 0.5, 25)
    assert a.to_dict() == b.to_dict()
    # record order does not change the histogram
    c = BSPartitioner.from_points(coords[::-1], 0.5, 25)
    assert c.to_dict() == a.to_dict()


def test_from_dataset_matches_from_points(point_records):
    coords = np.vstack([centroid_of(g) for g, _ in point_records])
    ds = PartitionedDataset.from_records(point_records, num_partitions=5, max_workers=3)
    a = BSPartitioner.from_dataset(ds, 10.0, 30)
    b = BSPartitioner.from_points(coords, 10.0, 30)
    assert a.to_dict() == b.to_dict()


def test_serialization_round_trip(rng):
    coords = rng.uniform(0, 20, size=(150, 2))
    bsp = BSPartitioner.from_points(coords, 1.0, 12)
    again = partitioner_from_dict(bsp.to_dict())
    assert isinstance(again, BSPartitioner)
    assert again.extents() == bsp.extents()
    assert [again.partition_of_point(p) for p in coords] == [bsp.partition_of_point(p) for p in coords]
    bsp.check_compatible(again)


def test_over_cost_single_cell_warns(caplog):
    coords = np.array([[1.0, 1.0]] * 5 + [[3.0, 3.0]])
    with caplog.at_level(logging.WARNING, logger="geoshard.bsp"):
        bsp = BSPartitioner.from_points(coords, 1.0, 2)
    assert any("exceeds max cost" in r.getMessage() for r in caplog.records)
    assert bsp.partition_cost(bsp.get_partition(Point(1, 1))) == 5


@pytest.mark.parametrize("cost", [0, -3, None])
def test_invalid_max_cost(cost):
    with pytest.raises(InvalidParameterError):
        BSPartitioner.from_points(SCENARIO, 1.0, cost)
