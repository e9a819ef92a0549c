"""
Caller-facing spatial operators over a partitioned collection of
``(geometry, payload)`` records.

Geometries are shapely geometries or :class:`~geoshard.stobject.STObject`.
Filters read the predicate as ``pred(record, query)``: ``contains(q)`` keeps
records that cover ``q`` and ``containedby(q)`` keeps records covered by ``q``.
"""
from __future__ import annotations

import logging
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Hashable, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .bsp import BSPartitioner
from .config import DEFAULT_CONFIG, GeoShardConfig
from .dataset import PartitionedDataset, Record
from .dbscan import DBSCAN, NOISE, cluster_inputs
from .envelope import Extent
from .exceptions import InvalidParameterError, require_positive
from .grid import GridPartitioner
from .indexed import IndexedSpatialDataset, LiveIndexedSpatialDataset
from .knn import knn_search, scan_knn
from .partitioner import SpatialPartitioner
from .predicates import JoinPredicate, evaluate
from .skyline import (Dominates, Skyline, centroid_dominates, distance_point, dominated_partitions, local_skyline,
                      st_distance)

logger = logging.getLogger(__name__)

PredicateLike = Union[JoinPredicate, str, Callable[[Any, Any], bool]]


class SpatialDataset:
    def __init__(self, data: PartitionedDataset, config: Optional[GeoShardConfig] = None):
        self.data = data
        self.config = config or DEFAULT_CONFIG

    @classmethod
    def from_records(cls, records: Iterable[Record], num_partitions: int = 1,
                     config: Optional[GeoShardConfig] = None) -> "SpatialDataset":
        config = config or DEFAULT_CONFIG
        return cls(PartitionedDataset.from_records(records, num_partitions, config.max_workers), config)

    @property
    def partitioner(self) -> Optional[SpatialPartitioner]:
        return self.data.partitioner

    @property
    def num_partitions(self) -> int:
        return self.data.num_partitions

    @property
    def errors(self):
        return self.data.errors

    def count(self) -> int:
        return self.data.count()

    def collect(self) -> List[Record]:
        return self.data.collect()

    def __iter__(self):
        return iter(self.data)

    # ---------- partitioning ----------

    def partition_by(self, partitioner: SpatialPartitioner) -> "SpatialDataset":
        return SpatialDataset(self.data.partition_by(partitioner), self.config)

    def grid_partitioner(self, ppd: Optional[int] = None) -> GridPartitioner:
        return GridPartitioner(self.data.centroid_extent(), _or_default(ppd, self.config.grid_ppd))

    def bsp_partitioner(self, side_length: Optional[float] = None,
                        max_cost: Optional[int] = None) -> BSPartitioner:
        return BSPartitioner.from_dataset(self.data, _or_default(side_length, self.config.bsp_side_length),
                                          _or_default(max_cost, self.config.bsp_max_cost))

    # ---------- filters ----------

    def filter(self, predicate: Union[JoinPredicate, str], qry: Any, max_dist: Optional[float] = None,
               dist_fn: Optional[Callable[[Any, Any], float]] = None) -> "SpatialDataset":
        """Records ``r`` with ``predicate(r, qry)``; partitions whose data cannot match are skipped."""
        pred = JoinPredicate.parse(predicate)
        if pred is JoinPredicate.WITHIN_DISTANCE:
            _check_distance(max_dist)
        pids = self.data.candidate_partitions(pred, Extent.of_geometry(qry), max_dist, dist_fn)

        def _scan(_pid: int, records) -> List[Record]:
            return [(g, v) for g, v in records if evaluate(pred, g, qry, max_dist, dist_fn)]

        hits = dict(zip(pids, self.data.map_partitions_with_index(_scan, pids)))
        parts = [hits.get(pid, []) for pid in range(self.num_partitions)]
        return SpatialDataset(self.data.derive(parts), self.config)

    def intersects(self, qry: Any) -> "SpatialDataset":
        return self.filter(JoinPredicate.INTERSECTS, qry)

    def contains(self, qry: Any) -> "SpatialDataset":
        return self.filter(JoinPredicate.CONTAINS, qry)

    def containedby(self, qry: Any) -> "SpatialDataset":
        return self.filter(JoinPredicate.CONTAINEDBY, qry)

    def within_distance(self, qry: Any, max_dist: float,
                        dist_fn: Optional[Callable[[Any, Any], float]] = None) -> "SpatialDataset":
        return self.filter(JoinPredicate.WITHIN_DISTANCE, qry, max_dist, dist_fn)

    # ---------- join ----------

    def join(self, other: "SpatialDataset", predicate: PredicateLike = JoinPredicate.INTERSECTS,
             partitioner: Optional[SpatialPartitioner] = None, max_dist: Optional[float] = None,
             dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Tuple[Any, Any]]:
        """Payload pairs ``(v1, v2)`` of records with ``predicate(g1, g2)``.

        With a ``partitioner`` both sides are repartitioned by it first. Two sides
        that are already partitioned must agree on their partitioning, otherwise
        PartitionMismatchError is raised. Only partition pairs whose data extents
        can satisfy the predicate are compared. Unpartitioned inputs, custom
        distance functions and plain callables take the cross-product path.
        """
        t0 = perf_counter()
        if callable(predicate) and not isinstance(predicate, (JoinPredicate, str)):
            test = predicate
            left, right = self.data, other.data
            candidates = [list(range(right.num_partitions)) for _ in range(left.num_partitions)]
            logger.info("join: user predicate, comparing all %d partition pairs",
                        left.num_partitions * right.num_partitions)
        else:
            pred = JoinPredicate.parse(predicate)
            if pred is JoinPredicate.WITHIN_DISTANCE:
                _check_distance(max_dist)
            left, right = _co_partition(self.data, other.data, partitioner)
            if pred is JoinPredicate.WITHIN_DISTANCE and dist_fn is not None:
                candidates = [list(range(right.num_partitions)) for _ in range(left.num_partitions)]
            else:
                candidates = left.join_candidates(right, pred, max_dist)

            def test(g1, g2) -> bool:
                return evaluate(pred, g1, g2, max_dist, dist_fn)

        rparts = left.broadcast(right.partitions)

        def _join(pid: int, records) -> List[Tuple[Any, Any]]:
            out = []
            for g1, v1 in records:
                for j in candidates[pid]:
                    for g2, v2 in rparts.value[j]:
                        if test(g1, g2):
                            out.append((v1, v2))
            return out

        result = [pair for part in left.map_partitions_with_index(_join) for pair in part]
        logger.info("join: %d pair(s) finished in %.3f seconds", len(result), perf_counter() - t0)
        return result

    # ---------- kNN ----------

    def knn(self, qry: Any, k: int,
            dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Tuple[Any, Tuple[float, Any]]]:
        """The ``k`` nearest records as ``(geometry, (distance, payload))``, nearest first.

        Partition pruning applies to the Euclidean distance only; a custom
        ``dist_fn`` scans every partition.
        """
        prune = self.config.knn_prune and dist_fn is None
        return knn_search(self.data, qry, k, lambda pid, records, kk: scan_knn(records, qry, kk, dist_fn),
                          prune=prune)

    # ---------- clustering ----------

    def cluster(self, min_pts: int, epsilon: float, key_extractor: Callable[[Record], Hashable],
                include_noise: bool = True, max_partition_cost: Optional[int] = None,
                outfile: Optional[Union[str, Path]] = None) -> List[Tuple[Any, Tuple[int, Any]]]:
        """DBSCAN over the record centroids; returns ``(geometry, (cluster_id, payload))``.

        Noise is labelled ``NOISE`` (-1) and left out when ``include_noise`` is False.
        ``key_extractor(record)`` must give every record a unique key.
        """
        dbscan = DBSCAN(epsilon, min_pts,
                        _or_default(max_partition_cost, self.config.dbscan_max_partition_cost),
                        max_cells=self.config.dbscan_max_cells, max_workers=self.data.max_workers)
        points, _ = cluster_inputs(self.data, key_extractor)
        labelled = dbscan.run(points)
        if outfile is not None:
            _write_clusters(outfile, labelled)
        return [(rec[0], (label, rec[1])) for _, _, rec, label in labelled
                if include_noise or label != NOISE]

    # ---------- skyline ----------

    def _distance_points(self, ref: Any, dist_fn: Callable[[Any, Any], Sequence[float]]
                         ) -> List[Tuple[Tuple[float, ...], Record]]:
        def _map(records) -> Tuple[List[Tuple[Tuple[float, ...], Record]], int]:
            out, skipped = [], 0
            for g, v in records:
                p = distance_point(ref, g, dist_fn)
                if p is None:
                    skipped += 1
                else:
                    out.append((p, (g, v)))
            return out, skipped

        parts = self.data.map_partitions(_map)
        _warn_skipped("skyline", sum(s for _, s in parts))
        return [p for pts, _ in parts for p in pts]

    def skyline(self, ref: Any, dist_fn: Callable[[Any, Any], Sequence[float]] = st_distance,
                dominates: Dominates = centroid_dominates,
                ppd: Optional[int] = None) -> List[Tuple[Tuple[float, ...], Record]]:
        """Records not dominated in distance space to ``ref``, as ``(distance_point, record)``.

        Distance points are grid partitioned; partitions whose best corner is
        dominated by the worst corner of another non-empty partition are skipped,
        the rest compute local skylines that are merged in one final pass.
        Records with an empty geometry or a non-finite distance are skipped.
        """
        t0 = perf_counter()
        ppd = _or_default(ppd, self.config.grid_ppd)
        require_positive("ppd", ppd)
        points = self._distance_points(ref, dist_fn)
        if not points:
            return []
        coords = np.array([p for p, _ in points], dtype=float)
        grid = GridPartitioner(Extent.from_points(coords), ppd)
        parts: List[list] = [[] for _ in range(grid.num_partitions)]
        for xy, tup in zip(coords, points):
            parts[grid.partition_of_point(xy)].append(tup)
        dspace = PartitionedDataset(parts, grid, self.data.max_workers)

        bounds = dspace.map_partitions(lambda pts: Extent.from_points(np.array([p for p, _ in pts])) if pts else None)
        lower = [None if b is None else tuple(b.mins) for b in bounds]
        upper = [None if b is None else tuple(b.maxs) for b in bounds]
        keep = dominated_partitions(lower, upper, [b is not None for b in bounds], dominates)
        pids = [pid for pid, k in enumerate(keep) if k]
        logger.info("skyline: skipped %d of %d non-empty partitions as dominated",
                    sum(b is not None for b in bounds) - len(pids), grid.num_partitions)

        bc = dspace.broadcast(dominates)
        locals_ = dspace.map_partitions_with_index(lambda _pid, pts: local_skyline(pts, bc.value), pids)
        merged = PartitionedDataset(locals_, None, self.data.max_workers).coalesce()
        result = local_skyline(merged.partitions[0], dominates)
        logger.info("skyline: %d point(s) finished in %.3f seconds", len(result), perf_counter() - t0)
        return result

    def skyline_agg(self, ref: Any, dist_fn: Callable[[Any, Any], Sequence[float]] = st_distance,
                    dominates: Dominates = centroid_dominates) -> List[Tuple[Tuple[float, ...], Record]]:
        """Single-pass skyline: one running accumulator per partition, merged pairwise."""
        def _seq(acc: Tuple[Skyline, int], rec: Record) -> Tuple[Skyline, int]:
            sky, skipped = acc
            p = distance_point(ref, rec[0], dist_fn)
            if p is None:
                return sky, skipped + 1
            sky.insert((p, rec))
            return sky, skipped

        def _comb(a: Tuple[Skyline, int], b: Tuple[Skyline, int]) -> Tuple[Skyline, int]:
            return a[0].merge(b[0]), a[1] + b[1]

        sky, skipped = self.data.aggregate((Skyline(dominates), 0), _seq, _comb)
        _warn_skipped("skyline", skipped)
        return list(sky)

    # ---------- indexing ----------

    def index(self, partitioner: Optional[SpatialPartitioner] = None,
              order: Optional[int] = None) -> IndexedSpatialDataset:
        """Build one persistent R-tree per partition (after repartitioning if ``partitioner`` is given)."""
        data = self.data if partitioner is None else self.data.partition_by(partitioner)
        return IndexedSpatialDataset.build(data, _or_default(order, self.config.rtree_order), self.config)

    def live_index(self, partitioner: Optional[SpatialPartitioner] = None,
                   order: Optional[int] = None) -> LiveIndexedSpatialDataset:
        """Index that builds its per-partition R-trees for each query and discards them afterwards."""
        data = self.data if partitioner is None else self.data.partition_by(partitioner)
        return LiveIndexedSpatialDataset(data, _or_default(order, self.config.rtree_order), self.config)

    def __repr__(self) -> str:
        return f"SpatialDataset(partitions={self.num_partitions}, partitioner={self.partitioner!r})"


def _warn_skipped(stage: str, skipped: int) -> None:
    if skipped:
        logger.warning("%s: skipped %d record(s) with empty geometry or non-finite distance", stage, skipped)


def _or_default(value, default):
    return default if value is None else value


def _check_distance(max_dist: Optional[float]) -> None:
    if max_dist is None or max_dist != max_dist or max_dist < 0:
        raise InvalidParameterError("max_dist must be a non-negative number", {"max_dist": max_dist})


def _co_partition(left: PartitionedDataset, right: PartitionedDataset,
                  partitioner: Optional[SpatialPartitioner]) -> Tuple[PartitionedDataset, PartitionedDataset]:
    if partitioner is not None:
        return left.partition_by(partitioner), right.partition_by(partitioner)
    if left.partitioner is not None and right.partitioner is not None:
        if left.partitioner is not right.partitioner:
            left.partitioner.check_compatible(right.partitioner)
        return left, right
    if left.partitioner is not None or right.partitioner is not None:
        logger.info("join: only one side is partitioned, using the unpruned cross product")
    # without data extents on both sides join_candidates keeps every pair
    return left, right


def _write_clusters(path: Union[str, Path], labelled) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(
        [(key, float(xy[0]), float(xy[1]), label) for key, xy, _, label in labelled],
        columns=["key", "x", "y", "cluster_id"],
    )
    df.to_csv(p, index=False)
    logger.info("Wrote %d labelled point(s) to %s", len(df), p)
    return p
