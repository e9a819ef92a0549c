import numpy as np
import pytest
from shapely.geometry import Point

from geoshard.envelope import Extent
from geoshard.exceptions import InvalidParameterError
from geoshard.histogram import CellHistogram, partial_histogram


def test_shape_rounds_up():
    h = CellHistogram(Extent.from_bounds(0, 0, 10, 5), 2.0)
    assert h.shape == (5, 3)
    assert h.num_cells == 15
    assert h.cell_hi(1, 2) == 5.0


def test_add_points_and_boundaries():
    h = CellHistogram(Extent.from_bounds(0, 0, 4, 4), 1.0)
    h.add_points(np.array([[0, 0], [4, 4], [1, 1], [0.5, 3.99]]))
    assert h.total() == 4
    assert h.counts[0, 0] == 1
    assert h.counts[3, 3] == 1
    assert h.counts[1, 1] == 1
    assert h.counts[0, 3] == 1


def test_region_cost_and_extent():
    h = CellHistogram(Extent.from_bounds(0, 0, 4, 4), 1.0)
    h.add_points(np.array([[0.5, 0.5], [2.5, 0.5], [2.5, 2.5], [3.5, 3.5]]))
    assert h.region_cost((2, 0), (4, 4)) == 3
    assert h.region_extent((2, 0), (4, 4)) == Extent.from_bounds(2, 0, 4, 4)
    assert h.marginal((0, 0), (4, 4), 0).tolist() == [1, 0, 2, 1]


def test_merge_is_summation():
    ext = Extent.from_bounds(0, 0, 2, 2)
    a = CellHistogram(ext, 1.0).add_points(np.array([[0.5, 0.5]]))
    b = CellHistogram(ext, 1.0).add_points(np.array([[0.5, 0.5], [1.5, 1.5]]))
    m = a.merge(b)
    assert m.total() == 3
    assert m.counts[0, 0] == 2
    assert a.total() == 1


def test_merge_rejects_other_grid():
    a = CellHistogram(Extent.from_bounds(0, 0, 2, 2), 1.0)
    b = CellHistogram(Extent.from_bounds(0, 0, 2, 2), 0.5)
    with pytest.raises(InvalidParameterError):
        a.merge(b)


def test_partial_histogram_skips_degenerate():
    template = CellHistogram(Extent.from_bounds(0, 0, 2, 2), 1.0)
    h = partial_histogram(template, [(Point(0.5, 0.5), 1), (Point(), 2), (None, 3)])
    assert h.total() == 1
    assert template.total() == 0


@pytest.mark.parametrize("side", [0, -1.0, float("nan")])
def test_invalid_side_length(side):
    with pytest.raises(InvalidParameterError):
        CellHistogram(Extent.from_bounds(0, 0, 1, 1), side)
