from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Optional, Sequence, Tuple

import numpy as np

from .envelope import Extent, centroid_of
from .exceptions import DegenerateGeometryError, InvalidParameterError, require_positive

logger = logging.getLogger(__name__)


class CellHistogram:
    """
    Record counts over a fixed fine grid of square cells laid over ``extent``.

    Partial histograms built over disjoint slices of the data merge by plain
    summation, so they can be computed per partition in any order.
    """

    def __init__(self, extent: Extent, side_length: float, counts: Optional[np.ndarray] = None):
        require_positive("side_length", side_length)
        self.extent = extent
        self.side_length = float(side_length)
        self.shape: Tuple[int, ...] = tuple(
            max(1, int(math.ceil(extent.side(d) / self.side_length))) for d in range(extent.dim)
        )
        if counts is None:
            counts = np.zeros(self.shape, dtype=np.int64)
        elif tuple(counts.shape) != self.shape:
            raise InvalidParameterError("Histogram counts do not match the grid shape",
                                        {"expected": self.shape, "got": tuple(counts.shape)})
        self.counts = counts

    @property
    def dim(self) -> int:
        return len(self.shape)

    @property
    def num_cells(self) -> int:
        return int(np.prod(self.shape))

    def total(self) -> int:
        return int(self.counts.sum())

    # ---------- cells ----------

    def cell_lo(self, d: int, i: int) -> float:
        return float(self.extent.mins[d] + i * self.side_length)

    def cell_hi(self, d: int, i: int) -> float:
        if i == self.shape[d] - 1:
            return float(self.extent.maxs[d])
        return self.cell_lo(d, i + 1)

    def cell_index(self, d: int, v: float) -> int:
        n = self.shape[d]
        if n == 1:
            return 0
        i = int(math.floor((v - self.extent.mins[d]) / self.side_length))
        i = min(max(i, 0), n - 1)
        while i > 0 and v < self.cell_lo(d, i):
            i -= 1
        while i < n - 1 and v > self.cell_hi(d, i):
            i += 1
        return i

    def cell_of_point(self, xy: Sequence[float]) -> Tuple[int, ...]:
        p = self.extent.clamp(xy)
        return tuple(self.cell_index(d, float(p[d])) for d in range(self.dim))

    def region_extent(self, lo: Sequence[int], hi: Sequence[int]) -> Extent:
        """Extent of the cell range ``[lo, hi)``."""
        return Extent([self.cell_lo(d, lo[d]) for d in range(self.dim)],
                      [self.cell_hi(d, hi[d] - 1) for d in range(self.dim)])

    def region_cost(self, lo: Sequence[int], hi: Sequence[int]) -> int:
        return int(self.counts[tuple(slice(a, b) for a, b in zip(lo, hi))].sum())

    def marginal(self, lo: Sequence[int], hi: Sequence[int], axis: int) -> np.ndarray:
        """Per-slab counts of the region along ``axis``."""
        sub = self.counts[tuple(slice(a, b) for a, b in zip(lo, hi))]
        other = tuple(d for d in range(self.dim) if d != axis)
        return sub.sum(axis=other) if other else sub

    # ---------- accumulation ----------

    def add_points(self, coords: np.ndarray) -> "CellHistogram":
        # coords: (N, D)
        coords = np.asarray(coords, dtype=float)
        if coords.size == 0:
            return self
        idx = [np.array([self.cell_index(d, float(v)) for v in np.clip(coords[:, d], self.extent.mins[d], self.extent.maxs[d])],
                        dtype=np.int64)
               for d in range(self.dim)]
        np.add.at(self.counts, tuple(idx), 1)
        return self

    def merge(self, other: "CellHistogram") -> "CellHistogram":
        if other.shape != self.shape or other.extent != self.extent or other.side_length != self.side_length:
            raise InvalidParameterError("Cannot merge histograms over different grids",
                                        {"left": self.shape, "right": other.shape})
        return CellHistogram(self.extent, self.side_length, self.counts + other.counts)

    def copy_empty(self) -> "CellHistogram":
        return CellHistogram(self.extent, self.side_length)


def partial_histogram(template: CellHistogram, records: Iterable[Tuple[Any, Any]]) -> CellHistogram:
    """Histogram of the centroids of one partition's ``(geometry, payload)`` records."""
    hist = template.copy_empty()
    pts = []
    for g, _ in records:
        try:
            pts.append(centroid_of(g))
        except DegenerateGeometryError:
            continue
    if pts:
        hist.add_points(np.vstack(pts))
    return hist
