"""
Index-backed spatial operators.

``LiveIndexedSpatialDataset`` builds an R-tree per partition inside each query
task and drops it when the task ends. ``IndexedSpatialDataset`` builds the trees
once, keeps them as its partitions and can persist them.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from .config import DEFAULT_CONFIG, GeoShardConfig
from .dataset import PartitionedDataset, Record
from .envelope import Extent
from .exceptions import DegenerateGeometryError, InvalidParameterError, PartitionMismatchError
from .knn import knn_search, scan_knn
from .partitioner import SpatialPartitioner
from .persistence import load_trees, save_trees
from .predicates import JoinPredicate
from .rtree import RTree

logger = logging.getLogger(__name__)


def build_tree(records: Iterable[Record], order: int) -> RTree:
    """R-tree over ``records``; records with an empty geometry are left out."""
    tree: RTree = RTree(order)
    skipped = 0
    for g, v in records:
        try:
            tree.insert(g, v)
        except DegenerateGeometryError:
            skipped += 1
    if skipped:
        logger.warning("Indexing skipped %d record(s) with empty geometry", skipped)
    return tree


def _check_order(order) -> None:
    if order is None or int(order) != order or order < 2:
        raise InvalidParameterError("R-tree order must be an integer >= 2", {"order": order})


def _flipped(dist_fn: Optional[Callable[[Any, Any], float]]) -> Optional[Callable[[Any, Any], float]]:
    # tree queries measure dist(qry, entry); records are measured as dist(record, qry)
    if dist_fn is None:
        return None
    return lambda a, b: dist_fn(b, a)


class _IndexedBase(ABC):
    def __init__(self, data: PartitionedDataset, order: int, config: Optional[GeoShardConfig] = None):
        _check_order(order)
        self.data = data
        self.order = int(order)
        self.config = config or DEFAULT_CONFIG

    @abstractmethod
    def _tree(self, partition) -> RTree: ...

    @property
    def partitioner(self) -> Optional[SpatialPartitioner]:
        return self.data.partitioner

    @property
    def num_partitions(self) -> int:
        return self.data.num_partitions

    def count(self) -> int:
        return self.data.count()

    # ---------- filters ----------

    def filter(self, predicate: Union[JoinPredicate, str], qry: Any, max_dist: Optional[float] = None,
               dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Record]:
        """Records ``r`` with ``predicate(r, qry)``, answered by the partition trees."""
        pred = JoinPredicate.parse(predicate)
        pids = self.data.candidate_partitions(pred, Extent.of_geometry(qry), max_dist, dist_fn)
        # tree queries read pred(qry, entry)
        tree_pred = pred.inverse()
        tree_dist = _flipped(dist_fn)

        def _query(_pid: int, partition) -> List[Record]:
            return self._tree(partition).query(tree_pred, qry, max_dist, tree_dist)

        return [r for hits in self.data.map_partitions_with_index(_query, pids) for r in hits]

    def intersects(self, qry: Any) -> List[Record]:
        return self.filter(JoinPredicate.INTERSECTS, qry)

    def contains(self, qry: Any) -> List[Record]:
        return self.filter(JoinPredicate.CONTAINS, qry)

    def containedby(self, qry: Any) -> List[Record]:
        return self.filter(JoinPredicate.CONTAINEDBY, qry)

    def within_distance(self, qry: Any, max_dist: float,
                        dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Record]:
        return self.filter(JoinPredicate.WITHIN_DISTANCE, qry, max_dist, dist_fn)

    # ---------- join ----------

    def join(self, other, predicate: Union[JoinPredicate, str] = JoinPredicate.INTERSECTS,
             max_dist: Optional[float] = None,
             dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Tuple[Any, Any]]:
        """Payload pairs ``(v1, v2)`` with ``predicate(g1, g2)``, ``g1`` from this side's trees.

        ``other`` is any dataset exposing ``.data``. If both sides are partitioned
        they must agree on their partitioning.
        """
        t0 = perf_counter()
        pred = JoinPredicate.parse(predicate)
        right: PartitionedDataset = other.data
        if self.partitioner is not None and right.partitioner is not None \
                and self.partitioner is not right.partitioner:
            self.partitioner.check_compatible(right.partitioner)
        if pred is JoinPredicate.WITHIN_DISTANCE and dist_fn is not None:
            candidates = [list(range(right.num_partitions)) for _ in range(self.num_partitions)]
        else:
            candidates = self.data.join_candidates(right, pred, max_dist)
        rparts = self.data.broadcast(right.partitions)
        tree_pred = pred.inverse()
        tree_dist = _flipped(dist_fn)

        def _join(pid: int, partition) -> List[Tuple[Any, Any]]:
            if not candidates[pid]:
                return []
            tree = self._tree(partition)
            out = []
            for j in candidates[pid]:
                for g2, v2 in rparts.value[j]:
                    out.extend((v1, v2) for _, v1 in tree.query(tree_pred, g2, max_dist, tree_dist))
            return out

        result = [pair for part in self.data.map_partitions_with_index(_join) for pair in part]
        logger.info("indexed join: %d pair(s) finished in %.3f seconds", len(result), perf_counter() - t0)
        return result

    # ---------- kNN ----------

    def knn(self, qry: Any, k: int,
            dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Tuple[Any, Tuple[float, Any]]]:
        """The ``k`` nearest records as ``(geometry, (distance, payload))``, nearest first."""
        def _local(_pid: int, partition, kk: int):
            tree = self._tree(partition)
            if dist_fn is not None:
                return scan_knn(tree.entries(), qry, kk, dist_fn)
            return tree.nearest_entries(qry, kk)

        return knn_search(self.data, qry, k, _local, prune=self.config.knn_prune and dist_fn is None)


class LiveIndexedSpatialDataset(_IndexedBase):
    """Per-query trees: every task indexes its partition, answers, and discards the tree."""

    def _tree(self, partition) -> RTree:
        return build_tree(partition, self.order)


class IndexedSpatialDataset(_IndexedBase):
    """One R-tree per partition, built once and reused by every query."""

    def __init__(self, data: PartitionedDataset, order: int, config: Optional[GeoShardConfig] = None):
        super().__init__(data, order, config)
        for pid, tree in enumerate(data.partitions):
            if not isinstance(tree, RTree):
                raise InvalidParameterError("Indexed partitions must be R-trees",
                                            {"pid": pid, "type": type(tree).__name__})

    @classmethod
    def build(cls, data: PartitionedDataset, order: int,
              config: Optional[GeoShardConfig] = None) -> "IndexedSpatialDataset":
        t0 = perf_counter()
        _check_order(order)
        trees = data.map_partitions(lambda records: build_tree(records, order))
        logger.info("Indexed %d record(s) into %d tree(s) (order %d) in %.3f seconds",
                    sum(len(t) for t in trees), len(trees), order, perf_counter() - t0)
        return cls.from_trees(trees, data.partitioner, order, config, data.max_workers, data.data_extents)

    @classmethod
    def from_trees(cls, trees: List[RTree], partitioner: Optional[SpatialPartitioner], order: int,
                   config: Optional[GeoShardConfig] = None, max_workers: Optional[int] = None,
                   data_extents: Optional[List[Optional[Extent]]] = None) -> "IndexedSpatialDataset":
        if partitioner is not None and len(trees) != partitioner.num_partitions:
            raise PartitionMismatchError("Tree count does not match the partitioner",
                                         {"trees": len(trees), "partitions": partitioner.num_partitions})
        config = config or DEFAULT_CONFIG
        if data_extents is None and partitioner is not None:
            data_extents = [t.extent for t in trees]
        data = PartitionedDataset(trees, partitioner, max_workers or config.max_workers, data_extents)
        return cls(data, order, config)

    @property
    def trees(self) -> List[RTree]:
        return self.data.partitions

    def _tree(self, partition) -> RTree:
        return partition

    def save(self, path: Union[str, Path]) -> Path:
        return save_trees(path, self.trees, self.partitioner, self.order)

    @classmethod
    def load(cls, path: Union[str, Path], partitioner: Optional[SpatialPartitioner] = None,
             config: Optional[GeoShardConfig] = None) -> "IndexedSpatialDataset":
        """Reload a saved index; ``partitioner`` defaults to the one stored with it."""
        trees, stored, order = load_trees(path, partitioner)
        return cls.from_trees(trees, partitioner or stored, order, config)
