from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from functools import reduce
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .envelope import Extent
from .exceptions import InvalidParameterError
from .histogram import CellHistogram, partial_histogram
from .partitioner import SpatialPartitioner, register

logger = logging.getLogger(__name__)


@dataclass
class _Region:
    """One node of the split tree, stored in a flat arena and linked by index."""
    lo: Tuple[int, ...]
    hi: Tuple[int, ...]          # exclusive cell bounds
    cost: int
    axis: int = -1
    split: int = -1              # first cell index of the right child along ``axis``
    left: int = -1
    right: int = -1
    pid: int = -1                # >= 0 only for leaves

    @property
    def is_leaf(self) -> bool:
        return self.pid >= 0


@register
class BSPartitioner(SpatialPartitioner):
    """
    Cost-based binary space partitioner.

    A fine histogram of record counts is split recursively along cell boundaries,
    always at the line that balances the two halves best, until every region costs
    at most ``max_cost_per_partition`` or is a single fine cell. Leaves are numbered
    in left-first depth order, so the same histogram always gives the same ids.
    """
    kind = "bsp"

    def __init__(self, histogram: CellHistogram, max_cost_per_partition: int,
                 regions: Optional[List[_Region]] = None):
        super().__init__()
        if max_cost_per_partition is None or max_cost_per_partition <= 0:
            raise InvalidParameterError("max cost per partition must be positive",
                                        {"max_cost_per_partition": max_cost_per_partition})
        self.histogram = histogram
        self.max_cost = int(max_cost_per_partition)
        self.regions: List[_Region] = regions if regions is not None else []
        if regions is None:
            self._build()
        self._leaves: List[int] = sorted((i for i, r in enumerate(self.regions) if r.is_leaf),
                                         key=lambda i: self.regions[i].pid)
        self._leaf_extents: List[Extent] = [histogram.region_extent(self.regions[i].lo, self.regions[i].hi)
                                            for i in self._leaves]

    # ---------- construction ----------

    @classmethod
    def from_points(cls, coords: np.ndarray, side_length: float, max_cost_per_partition: int,
                    extent: Optional[Extent] = None) -> "BSPartitioner":
        coords = np.asarray(coords, dtype=float)
        extent = extent or Extent.from_points(coords)
        hist = CellHistogram(extent, side_length).add_points(coords)
        return cls(hist, max_cost_per_partition)

    @classmethod
    def from_dataset(cls, dataset, side_length: float, max_cost_per_partition: int) -> "BSPartitioner":
        """One pass over ``dataset`` (a PartitionedDataset): partial histograms per partition, summed."""
        if max_cost_per_partition is None or max_cost_per_partition <= 0:
            raise InvalidParameterError("max cost per partition must be positive",
                                        {"max_cost_per_partition": max_cost_per_partition})
        extent = dataset.centroid_extent()
        empty = CellHistogram(extent, side_length)
        partials = dataset.map_partitions(lambda records: partial_histogram(empty, records))
        hist = reduce(lambda a, b: a.merge(b), partials, empty)
        logger.info("BSP histogram: %d cells, %d records", hist.num_cells, hist.total())
        return cls(hist, max_cost_per_partition)

    def _build(self) -> None:
        t0 = perf_counter()
        hist = self.histogram
        root = _Region(lo=tuple(0 for _ in hist.shape), hi=tuple(hist.shape), cost=hist.total())
        self.regions = [root]
        stack: List[int] = [0]
        n_leaves = 0
        over_cost = 0

        while stack:
            idx = stack.pop()
            region = self.regions[idx]
            splittable = any(h - l > 1 for l, h in zip(region.lo, region.hi))
            if region.cost <= self.max_cost or not splittable:
                if region.cost > self.max_cost:
                    over_cost += 1
                    logger.warning("BSP leaf %d at fine-cell granularity exceeds max cost: %d > %d",
                                   n_leaves, region.cost, self.max_cost)
                region.pid = n_leaves
                n_leaves += 1
                continue

            axis, split = self._choose_split(region)
            lhi = list(region.hi); lhi[axis] = split
            rlo = list(region.lo); rlo[axis] = split
            left = _Region(lo=region.lo, hi=tuple(lhi), cost=hist.region_cost(region.lo, lhi))
            right = _Region(lo=tuple(rlo), hi=region.hi, cost=region.cost - left.cost)
            region.axis, region.split = axis, split
            region.left = len(self.regions); self.regions.append(left)
            region.right = len(self.regions); self.regions.append(right)
            logger.debug("BSP split region %d on axis %d at cell %d: %d | %d",
                         idx, axis, split, left.cost, right.cost)
            # left child first -> left-first leaf numbering
            stack.append(region.right)
            stack.append(region.left)

        logger.info("BSPartitioner built %d partitions (%d over cost, depth %d) in %.3f seconds",
                    n_leaves, over_cost, self.depth(), perf_counter() - t0)

    def _choose_split(self, region: _Region) -> Tuple[int, int]:
        """Best balanced split line; ties -> longer axis, then lower axis id, then lowest boundary."""
        hist = self.histogram
        ext = hist.region_extent(region.lo, region.hi)
        best = None
        best_key = None
        for axis in range(hist.dim):
            n = region.hi[axis] - region.lo[axis]
            if n <= 1:
                continue
            cum = np.cumsum(hist.marginal(region.lo, region.hi, axis))
            total = int(cum[-1])
            # boundary after slab k (k = 0..n-2)
            diffs = np.abs(2 * cum[:-1] - total)
            k = int(np.argmin(diffs))
            key = (int(diffs[k]), -ext.side(axis), axis, k)
            if best_key is None or key < best_key:
                best_key = key
                best = (axis, region.lo[axis] + k + 1)
        assert best is not None, "region has no splittable axis"
        return best

    # ---------- partitioner API ----------

    @property
    def num_partitions(self) -> int:
        return len(self._leaves)

    @property
    def global_extent(self) -> Extent:
        return self.histogram.extent

    def partition_extent(self, pid: int) -> Extent:
        return self._leaf_extents[pid]

    def partition_cost(self, pid: int) -> int:
        return self.regions[self._leaves[pid]].cost

    def partition_of_point(self, xy: np.ndarray) -> int:
        cell = self.histogram.cell_of_point(xy)
        region = self.regions[0]
        while not region.is_leaf:
            region = self.regions[region.left if cell[region.axis] < region.split else region.right]
        return region.pid

    def depth(self) -> int:
        def _depth(i: int) -> int:
            r = self.regions[i]
            return 1 if r.is_leaf else 1 + max(_depth(r.left), _depth(r.right))
        return _depth(0)

    # ---------- serialization ----------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "max_cost": self.max_cost,
            "side_length": self.histogram.side_length,
            "global_extent": self.histogram.extent.to_list(),
            "regions": [{k: (list(v) if isinstance(v, tuple) else v) for k, v in asdict(r).items()}
                        for r in self.regions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BSPartitioner":
        hist = CellHistogram(Extent.from_list(data["global_extent"]), float(data["side_length"]))
        regions = [_Region(lo=tuple(r["lo"]), hi=tuple(r["hi"]), cost=int(r["cost"]), axis=int(r["axis"]),
                           split=int(r["split"]), left=int(r["left"]), right=int(r["right"]), pid=int(r["pid"]))
                   for r in data["regions"]]
        return cls(hist, int(data["max_cost"]), regions=regions)
