import pytest
from shapely.geometry import Point, box

from geoshard.envelope import geometry_distance
from geoshard.exceptions import InvalidParameterError
from geoshard.predicates import JoinPredicate, evaluate
from geoshard.rtree import RTree


def _tree(records, order=4):
    t = RTree(order)
    for g, v in records:
        t.insert(g, v)
    return t


def test_forced_split_and_contains_scenario():
    t = RTree(order=2)
    for i in range(5):
        t.insert(Point(i, i), i)
    assert len(t) == 5
    assert t.height() >= 2
    t.check_invariants()
    hits = t.query(JoinPredicate.CONTAINS, box(0, 0, 4, 4))
    assert sorted(v for _, v in hits) == [0, 1, 2, 3, 4]


@pytest.mark.parametrize("order", [0, 1, -4, 2.5, None])
def test_invalid_order(order):
    with pytest.raises(InvalidParameterError):
        RTree(order)


def test_empty_tree():
    t = RTree()
    assert t.query(JoinPredicate.INTERSECTS, box(0, 0, 1, 1)) == []
    assert t.nearest_neighbors(Point(0, 0), 3) == []
    assert t.extent is None
    assert t.height() == 1


@pytest.mark.parametrize("pred", list(JoinPredicate)[:3])
@pytest.mark.parametrize("qry", [box(20, 20, 60, 55), box(0, 0, 100, 100), Point(50, 50), box(70, 5, 71, 6)])
def test_query_matches_brute_force(box_records, pred, qry):
    t = _tree(box_records, order=5)
    t.check_invariants()
    expected = [v for g, v in box_records if evaluate(pred, qry, g)]
    assert [v for _, v in t.query(pred, qry)] == expected


def test_within_distance_matches_brute_force(point_records):
    t = _tree(point_records, order=3)
    qry = Point(40, 60)
    expected = [v for g, v in point_records if g.distance(qry) <= 12.5]
    assert [v for _, v in t.within_distance(qry, 12.5)] == expected

    def manhattan(a, b):
        return abs(a.x - b.x) + abs(a.y - b.y)

    expected = [v for g, v in point_records if manhattan(qry, g) <= 12.5]
    assert [v for _, v in t.within_distance(qry, 12.5, manhattan)] == expected


@pytest.mark.parametrize("k", [1, 5, 17, 400])
def test_knn_matches_brute_force(point_records, k):
    t = _tree(point_records, order=4)
    qry = Point(33.3, 71.1)
    ranked = sorted(((geometry_distance(qry, g), v) for g, v in point_records), key=lambda t: (t[0], t[1]))
    expected = ranked[:k]
    got = t.nearest_neighbors(qry, k)
    assert [v for _, v, _ in got] == [v for _, v in expected]
    assert [d for _, _, d in got] == pytest.approx([d for d, _ in expected])


def test_knn_ties_follow_insertion_order():
    t = RTree(order=2)
    for i, (x, y) in enumerate([(5, 5), (0, 1), (1, 0), (-1, 0), (0, -1)]):
        t.insert(Point(x, y), i)
    got = t.nearest_neighbors(Point(0, 0), 3)
    assert [v for _, v, _ in got] == [1, 2, 3]
    assert [d for _, _, d in got] == [1.0, 1.0, 1.0]
    entries = t.nearest_entries(Point(0, 0), 2)
    assert [seq for _, seq, _, _ in entries] == [1, 2]


def test_knn_polygons(box_records):
    t = _tree(box_records, order=6)
    qry = Point(50, 50)
    ranked = sorted(((geometry_distance(qry, g), v) for g, v in box_records))
    assert [v for _, v, _ in t.nearest_neighbors(qry, 10)] == [v for _, v in ranked[:10]]


@pytest.mark.parametrize("k", [0, -1, None])
def test_knn_invalid_k(k):
    t = _tree([(Point(0, 0), 0)])
    with pytest.raises(InvalidParameterError):
        t.nearest_neighbors(Point(0, 0), k)


def test_entries_in_insertion_order(box_records):
    t = _tree(box_records, order=3)
    assert [v for _, v in t.entries()] == [v for _, v in box_records]
    assert len(list(t)) == len(box_records)
    assert t.extent.contains(t.root.children[0].extent)
