"""
In-process execution substrate.

``PartitionedDataset`` keeps records as a list of partitions whose list index is
the partition id, and runs per-partition work on a thread pool. It offers the
primitives the spatial operators need: map over partitions, repartition by a
spatial partitioner, broadcast of read-only values, aggregate and coalesce.

A partition is any sized iterable of ``(geometry, payload)`` records: a plain
list, or an R-tree once the dataset has been indexed.
"""
from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from .config import DEFAULT_CONFIG
from .envelope import Extent, centroid_of, union_all
from .exceptions import DegenerateGeometryError, InvalidParameterError
from .partitioner import SpatialPartitioner
from .predicates import JoinPredicate, may_join, may_satisfy

logger = logging.getLogger(__name__)

Record = Tuple[Any, Any]
R = TypeVar("R")
T = TypeVar("T")


@dataclass
class RecordError:
    """A record dropped from a stage, with the partition and position it came from."""
    partition: int
    index: int
    record: Record
    reason: str


class Broadcast(Generic[T]):
    """Read-only value shared with every partition task."""
    __slots__ = ("_value",)

    def __init__(self, value: T):
        self._value = value

    @property
    def value(self) -> T:
        return self._value


class PartitionedDataset:
    def __init__(
        self,
        partitions: List[List[Record]],
        partitioner: Optional[SpatialPartitioner] = None,
        max_workers: Optional[int] = None,
        data_extents: Optional[List[Optional[Extent]]] = None,
        errors: Optional[List[RecordError]] = None,
    ):
        if partitioner is not None and len(partitions) != partitioner.num_partitions:
            raise InvalidParameterError("Partition count does not match the partitioner",
                                        {"partitions": len(partitions), "partitioner": partitioner.num_partitions})
        self.partitions = partitions
        self.partitioner = partitioner
        self.max_workers = int(max_workers or DEFAULT_CONFIG.max_workers)
        self.data_extents = data_extents
        self.errors: List[RecordError] = errors or []

    @classmethod
    def from_records(cls, records: Iterable[Record], num_partitions: int = 1,
                     max_workers: Optional[int] = None) -> "PartitionedDataset":
        """Split ``records`` into ``num_partitions`` contiguous chunks of near-equal size."""
        if num_partitions is None or num_partitions <= 0:
            raise InvalidParameterError("num_partitions must be positive", {"num_partitions": num_partitions})
        items = list(records)
        n = len(items)
        bounds = [round(i * n / num_partitions) for i in range(num_partitions + 1)]
        parts = [items[bounds[i]:bounds[i + 1]] for i in range(num_partitions)]
        return cls(parts, max_workers=max_workers)

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    def count(self) -> int:
        return sum(len(p) for p in self.partitions)

    def collect(self) -> List[Record]:
        return [r for p in self.partitions for r in p]

    def __iter__(self):
        for p in self.partitions:
            yield from p

    def derive(self, partitions: List[List[Any]], keep_partitioning: bool = True) -> "PartitionedDataset":
        """New dataset over ``partitions`` sharing this one's settings."""
        if keep_partitioning and len(partitions) == self.num_partitions:
            return PartitionedDataset(partitions, self.partitioner, self.max_workers, self.data_extents)
        return PartitionedDataset(partitions, None, self.max_workers)

    # ---------- partition-parallel primitives ----------

    def map_partitions_with_index(self, fn: Callable[[int, List[Record]], R],
                                  pids: Optional[Sequence[int]] = None) -> List[R]:
        """Apply ``fn(pid, records)`` to every partition (or just ``pids``); results in pid order."""
        pids = list(range(self.num_partitions)) if pids is None else list(pids)
        if not pids:
            return []
        if len(pids) == 1 or self.max_workers <= 1:
            return [self._run(fn, pid) for pid in pids]

        results: Dict[int, R] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pids))) as ex:
            futs = {ex.submit(fn, pid, self.partitions[pid]): pid for pid in pids}
            for f in as_completed(futs):
                pid = futs[f]
                try:
                    results[pid] = f.result()
                except Exception as e:
                    logger.exception("Failed processing partition %d: %s", pid, str(e))
                    raise
        return [results[pid] for pid in pids]

    def _run(self, fn, pid: int):
        try:
            return fn(pid, self.partitions[pid])
        except Exception as e:
            logger.exception("Failed processing partition %d: %s", pid, str(e))
            raise

    def map_partitions(self, fn: Callable[[List[Record]], R]) -> List[R]:
        return self.map_partitions_with_index(lambda _pid, records: fn(records))

    def broadcast(self, value: T) -> Broadcast[T]:
        return Broadcast(value)

    def aggregate(self, zero: T, seq_op: Callable[[T, Record], T], comb_op: Callable[[T, T], T]) -> T:
        """Fold every partition from a copy of ``zero`` with ``seq_op``, then combine the partials."""
        def _fold(records: List[Record]) -> T:
            acc = copy.deepcopy(zero)
            for r in records:
                acc = seq_op(acc, r)
            return acc

        partials = self.map_partitions(_fold)
        result = copy.deepcopy(zero)
        for p in partials:
            result = comb_op(result, p)
        return result

    def coalesce(self) -> "PartitionedDataset":
        """All records in a single partition (synchronisation barrier)."""
        return PartitionedDataset([self.collect()], None, self.max_workers)

    # ---------- extent pruning ----------

    def candidate_partitions(self, pred: JoinPredicate, qext: Extent, max_dist: Optional[float] = None,
                             dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[int]:
        """Partitions that may hold a record ``r`` with ``pred(r, qry)``.

        Without data extents (or with a custom distance function) nothing is pruned.
        """
        pids = list(range(self.num_partitions))
        if self.data_extents is None or (pred is JoinPredicate.WITHIN_DISTANCE and dist_fn is not None):
            return pids
        keep = [pid for pid in pids if may_satisfy(pred, self.data_extents[pid], qext, max_dist)]
        logger.info("%s filter: pruned %d of %d partitions", pred.value, len(pids) - len(keep), len(pids))
        return keep

    def join_candidates(self, other: "PartitionedDataset", pred: JoinPredicate,
                        max_dist: Optional[float] = None) -> List[List[int]]:
        """For every partition here, the partitions of ``other`` it has to be compared with."""
        if self.data_extents is None or other.data_extents is None:
            return [list(range(other.num_partitions)) for _ in range(self.num_partitions)]
        out = []
        pairs = 0
        for le in self.data_extents:
            js = [j for j, re in enumerate(other.data_extents) if may_join(pred, le, re, max_dist)]
            pairs += len(js)
            out.append(js)
        logger.info("%s join: comparing %d of %d partition pairs", pred.value, pairs,
                    self.num_partitions * other.num_partitions)
        return out

    # ---------- spatial repartitioning ----------

    def centroid_extent(self) -> Extent:
        """Extent of all valid centroids (one read-only pass)."""
        def _local(records: List[Record]) -> Optional[Extent]:
            pts = []
            for g, _ in records:
                try:
                    pts.append(centroid_of(g))
                except DegenerateGeometryError:
                    continue
            return Extent.from_points(np.vstack(pts)) if pts else None

        ext = union_all(self.map_partitions(_local))
        if ext is None:
            raise DegenerateGeometryError("Dataset has no geometry with a valid centroid")
        return ext

    def partition_by(self, partitioner: SpatialPartitioner) -> "PartitionedDataset":
        """Route every record to ``partitioner.get_partition(geometry)``.

        Records without a usable centroid are dropped and reported in ``errors``.
        Each output partition also records the extent of the full geometries it holds.
        """
        if partitioner is self.partitioner:
            return self
        t0 = perf_counter()
        P = partitioner.num_partitions

        def _route(pid: int, records: List[Record]):
            buckets: Dict[int, List[Record]] = {}
            errors: List[RecordError] = []
            for i, rec in enumerate(records):
                try:
                    target = partitioner.get_partition(rec[0])
                except DegenerateGeometryError as e:
                    errors.append(RecordError(pid, i, rec, str(e)))
                    continue
                buckets.setdefault(target, []).append(rec)
            return buckets, errors

        routed = self.map_partitions_with_index(_route)
        parts: List[List[Record]] = [[] for _ in range(P)]
        errors: List[RecordError] = []
        # concatenate in source partition order -> deterministic record order
        for buckets, errs in routed:
            for target, recs in buckets.items():
                parts[target].extend(recs)
            errors.extend(errs)
        if errors:
            logger.warning("partition_by: dropped %d record(s) with degenerate geometry", len(errors))

        out = PartitionedDataset(parts, partitioner, self.max_workers, errors=self.errors + errors)
        out.data_extents = out.map_partitions(_data_extent)
        logger.info("partition_by: %d records into %d partitions in %.3f seconds",
                    out.count(), P, perf_counter() - t0)
        return out


def _data_extent(records: List[Record]) -> Optional[Extent]:
    return union_all(Extent.of_geometry(g) for g, _ in records)
