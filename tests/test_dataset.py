import pytest
from shapely.geometry import LineString, Point, Polygon, box

from geoshard.dataset import PartitionedDataset
from geoshard.envelope import Extent
from geoshard.exceptions import DegenerateGeometryError, InvalidParameterError
from geoshard.grid import GridPartitioner
from geoshard.predicates import JoinPredicate


def test_from_records_splits_contiguously():
    ds = PartitionedDataset.from_records(range(10), num_partitions=3)
    assert [len(p) for p in ds.partitions] == [3, 4, 3]
    assert ds.collect() == list(range(10))
    assert ds.count() == 10


@pytest.mark.parametrize("n", [0, -1, None])
def test_from_records_rejects_bad_count(n):
    with pytest.raises(InvalidParameterError):
        PartitionedDataset.from_records([], num_partitions=n)


def test_partition_count_must_match_partitioner():
    grid = GridPartitioner(Extent.from_bounds(0, 0, 1, 1), 2)
    with pytest.raises(InvalidParameterError):
        PartitionedDataset([[], []], grid)


def test_map_partitions_keeps_pid_order():
    ds = PartitionedDataset([[1, 2], [3], [], [4, 5, 6]], max_workers=4)
    assert ds.map_partitions(len) == [2, 1, 0, 3]
    assert ds.map_partitions_with_index(lambda pid, recs: pid, pids=[3, 1]) == [3, 1]


def test_partition_errors_propagate():
    ds = PartitionedDataset([[1], [2], [3]], max_workers=2)

    def boom(records):
        if records == [2]:
            raise RuntimeError("bad partition")
        return records

    with pytest.raises(RuntimeError, match="bad partition"):
        ds.map_partitions(boom)


def test_aggregate_and_coalesce():
    ds = PartitionedDataset([[1, 2], [3], [4]], max_workers=3)
    assert ds.aggregate(0, lambda acc, r: acc + r, lambda a, b: a + b) == 10
    assert ds.aggregate([], lambda acc, r: acc + [r], lambda a, b: a + b) == [1, 2, 3, 4]
    merged = ds.coalesce()
    assert merged.num_partitions == 1
    assert merged.partitions[0] == [1, 2, 3, 4]


def test_broadcast_is_read_only():
    bc = PartitionedDataset([[]]).broadcast({"k": 1})
    assert bc.value == {"k": 1}
    with pytest.raises(AttributeError):
        bc.value = 3


def test_partition_by_routes_and_reports_degenerate():
    records = [(Point(1, 1), "a"), (Point(), "empty"), (Point(9, 9), "b"), (None, "none"), (Point(2, 8), "c")]
    ds = PartitionedDataset.from_records(records, num_partitions=2)
    grid = GridPartitioner(Extent.from_bounds(0, 0, 10, 10), 2)
    out = ds.partition_by(grid)
    assert out.partitioner is grid
    assert [[v for _, v in p] for p in out.partitions] == [["a"], [], ["c"], ["b"]]
    assert sorted(e.record[1] for e in out.errors) == ["empty", "none"]
    assert {(e.partition, e.index) for e in out.errors} == {(0, 1), (1, 1)}
    assert out.data_extents[1] is None
    assert out.partition_by(grid) is out


def test_data_extents_cover_full_geometries():
    line = LineString([(1, 1), (9, 2)])
    ds = PartitionedDataset.from_records([(line, 0), (box(6, 6, 7, 7), 1)])
    grid = GridPartitioner(Extent.from_bounds(0, 0, 10, 10), 2)
    out = ds.partition_by(grid)
    pid = grid.get_partition(line)
    assert pid == 1
    assert out.data_extents[pid] == Extent.from_bounds(1, 1, 9, 2)
    assert not grid.partition_extent(pid).contains(out.data_extents[pid])


def test_candidate_partitions_use_data_extents():
    records = [(Point(1, 1), 0), (Point(9, 9), 1), (box(4, 1, 6, 2), 2)]
    grid = GridPartitioner(Extent.from_bounds(0, 0, 10, 10), 2)
    out = PartitionedDataset.from_records(records).partition_by(grid)
    assert out.candidate_partitions(JoinPredicate.INTERSECTS, Extent.from_bounds(8, 8, 10, 10)) == [3]
    assert out.candidate_partitions(JoinPredicate.INTERSECTS, Extent.from_bounds(5.5, 1, 5.5, 1)) == [1]
    assert out.candidate_partitions(JoinPredicate.WITHIN_DISTANCE, Extent.from_bounds(0, 0, 0, 0), 2.0) == [0]
    assert out.candidate_partitions(JoinPredicate.WITHIN_DISTANCE, Extent.from_bounds(0, 0, 0, 0), 2.0,
                                    dist_fn=lambda a, b: 0.0) == [0, 1, 2, 3]


def test_centroid_extent():
    ds = PartitionedDataset.from_records([(box(0, 0, 2, 2), 0), (Point(), 1), (Point(5, -1), 2)], 2)
    assert ds.centroid_extent() == Extent.from_bounds(1, -1, 5, 1)
    with pytest.raises(DegenerateGeometryError):
        PartitionedDataset.from_records([(Polygon(), 0)]).centroid_extent()
