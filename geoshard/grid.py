from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List

import numpy as np

from .envelope import Extent, centroid_of
from .exceptions import DegenerateGeometryError, InvalidParameterError
from .partitioner import SpatialPartitioner, register

logger = logging.getLogger(__name__)


@register
class GridPartitioner(SpatialPartitioner):
    """
    Fixed grid with ``ppd`` equal-width cells per dimension over ``global_extent``.

    Cells are linearised with dimension 0 varying fastest, so in 2-D
    ``pid = ix + iy * cells_x``. A zero-width dimension collapses to one cell.
    """
    kind = "grid"

    def __init__(self, global_extent: Extent, ppd: int):
        super().__init__()
        if ppd is None or int(ppd) != ppd or ppd <= 0:
            raise InvalidParameterError("partitions per dimension must be a positive integer", {"ppd": ppd})
        self.ppd = int(ppd)
        self._extent = global_extent
        D = global_extent.dim
        sides = global_extent.maxs - global_extent.mins
        self.cells = np.array([1 if sides[d] == 0 else self.ppd for d in range(D)], dtype=np.int64)
        self.widths = np.where(self.cells > 0, sides / self.cells, 0.0)
        self.strides = np.ones(D, dtype=np.int64)
        for d in range(1, D):
            self.strides[d] = self.strides[d - 1] * self.cells[d - 1]
        self._num = int(np.prod(self.cells))
        logger.debug("GridPartitioner: extent=%s ppd=%d cells=%s", global_extent, self.ppd, self.cells.tolist())

    @classmethod
    def from_geometries(cls, geoms: Iterable[Any], ppd: int) -> "GridPartitioner":
        """Build over the extent of the centroids of ``geoms``; degenerate geometries are skipped."""
        pts: List[np.ndarray] = []
        skipped = 0
        for g in geoms:
            try:
                pts.append(centroid_of(g))
            except DegenerateGeometryError:
                skipped += 1
        if skipped:
            logger.warning("GridPartitioner.from_geometries: skipped %d degenerate geometries", skipped)
        if not pts:
            raise DegenerateGeometryError("No geometry with a valid centroid to derive the grid extent from")
        return cls(Extent.from_points(np.vstack(pts)), ppd)

    @property
    def num_partitions(self) -> int:
        return self._num

    @property
    def global_extent(self) -> Extent:
        return self._extent

    # ---------- cells ----------

    def _cell_lo(self, d: int, i: int) -> float:
        return float(self._extent.mins[d] + i * self.widths[d])

    def _cell_hi(self, d: int, i: int) -> float:
        if i == self.cells[d] - 1:
            return float(self._extent.maxs[d])
        return self._cell_lo(d, i + 1)

    def _cell_index(self, d: int, v: float) -> int:
        n = int(self.cells[d])
        if n == 1 or self.widths[d] == 0:
            return 0
        i = int(math.floor((v - self._extent.mins[d]) / self.widths[d]))
        i = min(max(i, 0), n - 1)
        # snap rounding drift so the cell bounds really contain v
        while i > 0 and v < self._cell_lo(d, i):
            i -= 1
        while i < n - 1 and v > self._cell_hi(d, i):
            i += 1
        return i

    def cell_of(self, pid: int) -> List[int]:
        if not 0 <= pid < self._num:
            raise IndexError(f"partition id {pid} out of range [0, {self._num})")
        idx = []
        for d in range(self._extent.dim):
            idx.append(int((pid // self.strides[d]) % self.cells[d]))
        return idx

    def partition_of_point(self, xy: np.ndarray) -> int:
        p = self._extent.clamp(xy)
        return int(sum(self._cell_index(d, float(p[d])) * int(self.strides[d]) for d in range(self._extent.dim)))

    def partition_extent(self, pid: int) -> Extent:
        idx = self.cell_of(pid)
        lo = [self._cell_lo(d, i) for d, i in enumerate(idx)]
        hi = [self._cell_hi(d, i) for d, i in enumerate(idx)]
        return Extent(lo, hi)

    # ---------- serialization ----------

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "ppd": self.ppd, "global_extent": self._extent.to_list()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridPartitioner":
        return cls(Extent.from_list(data["global_extent"]), int(data["ppd"]))
