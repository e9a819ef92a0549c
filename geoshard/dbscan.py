"""
Partitioned DBSCAN.

1. A cost-bounded BSP partitioning of the point centroids caps the number of
   points each partition owns.
2. Every point is also copied into the partitions whose extent lies within
   ``epsilon`` of it, so each partition sees the full neighbourhood of the points
   it owns.
3. Pass one decides core points from the owned points' exact neighbour counts.
4. Pass two clusters each partition locally using those global core flags.
5. Local clusters sharing a core point are merged with a disjoint-set forest.
"""
from __future__ import annotations

import logging
import math
from time import perf_counter
from typing import Any, Dict, Hashable, List, Optional, Tuple

import numpy as np

from .bsp import BSPartitioner
from .dataset import PartitionedDataset
from .envelope import Extent, centroid_of
from .exceptions import DegenerateGeometryError, GeoShardError, InvalidParameterError, require_positive

logger = logging.getLogger(__name__)

NOISE = -1
UNCLASSIFIED = -2

# (key, xy, record)
ClusterInput = Tuple[Hashable, np.ndarray, Any]


class DisjointSet:
    """Union-find over hashable items with path compression and union by rank."""

    def __init__(self):
        self._parent: Dict[Hashable, Hashable] = {}
        self._rank: Dict[Hashable, int] = {}

    def add(self, x: Hashable) -> None:
        if x not in self._parent:
            self._parent[x] = x
            self._rank[x] = 0

    def find(self, x: Hashable) -> Hashable:
        self.add(x)
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, a: Hashable, b: Hashable) -> Hashable:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self._rank[ra] < self._rank[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        if self._rank[ra] == self._rank[rb]:
            self._rank[ra] += 1
        return ra

    def __contains__(self, x: Hashable) -> bool:
        return x in self._parent


def _distances(X: np.ndarray, i: int) -> np.ndarray:
    diff = X - X[i]
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))


class DBSCAN:
    def __init__(self, epsilon: float, min_pts: int, max_partition_cost: int = 10,
                 max_cells: int = 1 << 20, max_workers: Optional[int] = None):
        require_positive("epsilon", epsilon)
        require_positive("min_pts", min_pts)
        require_positive("max_partition_cost", max_partition_cost)
        require_positive("max_cells", max_cells)
        self.epsilon = float(epsilon)
        self.min_pts = int(min_pts)
        self.max_partition_cost = int(max_partition_cost)
        self.max_cells = int(max_cells)
        self.max_workers = max_workers
        self.partitioner: Optional[BSPartitioner] = None
        self.num_clusters = 0

    # ---------- partitioning ----------

    def _side_length(self, extent: Extent) -> float:
        side = self.epsilon
        while np.prod([max(1, math.ceil(extent.side(d) / side)) for d in range(extent.dim)]) > self.max_cells:
            side *= 2.0
        if side != self.epsilon:
            logger.warning("DBSCAN: fine grid coarsened from %.6g to %.6g to stay within %d cells",
                           self.epsilon, side, self.max_cells)
        return side

    def _partition(self, points: List[ClusterInput]) -> List[List[Tuple[Hashable, np.ndarray, Any, bool]]]:
        coords = np.vstack([p[1] for p in points])
        extent = Extent.from_points(coords)
        self.partitioner = BSPartitioner.from_points(coords, self._side_length(extent),
                                                     self.max_partition_cost, extent=extent)
        part = self.partitioner
        out: List[List[Tuple[Hashable, np.ndarray, Any, bool]]] = [[] for _ in range(part.num_partitions)]
        for (key, xy, rec) in points:
            owner = part.partition_of_point(xy)
            out[owner].append((key, xy, rec, True))
            for pid in part.overlap_partitions(Extent(xy - self.epsilon, xy + self.epsilon)):
                if pid != owner:
                    out[pid].append((key, xy, rec, False))
        return out

    # ---------- passes ----------

    def _core_flags(self, local: List[Tuple[Hashable, np.ndarray, Any, bool]]) -> List[Tuple[Hashable, bool]]:
        if not local:
            return []
        X = np.vstack([p[1] for p in local])
        flags = []
        for i, (key, _, _, owned) in enumerate(local):
            if owned:
                n = int(np.count_nonzero(_distances(X, i) <= self.epsilon))
                flags.append((key, n >= self.min_pts))
        return flags

    def _local_clusters(self, pid: int, local, core_map: Dict[Hashable, bool]):
        if not local:
            return [], []
        X = np.vstack([p[1] for p in local])
        core = np.array([core_map[p[0]] for p in local], dtype=bool)
        ds = DisjointSet()
        for i in np.nonzero(core)[0]:
            ds.add(int(i))
            nb = np.nonzero((_distances(X, int(i)) <= self.epsilon) & core)[0]
            for j in nb:
                if j > i:
                    ds.union(int(i), int(j))

        owned_labels = []
        for i, (key, xy, rec, owned) in enumerate(local):
            if not owned:
                continue
            if core[i]:
                cid = (pid, ds.find(i))
            else:
                nb = np.nonzero((_distances(X, i) <= self.epsilon) & core)[0]
                cid = (pid, ds.find(int(nb[0]))) if len(nb) else None
            owned_labels.append((key, xy, rec, cid))
        core_clusters = [(local[i][0], (pid, ds.find(int(i)))) for i in np.nonzero(core)[0]]
        return owned_labels, core_clusters

    # ---------- driver ----------

    def run(self, points: List[ClusterInput]) -> List[Tuple[Hashable, np.ndarray, Any, int]]:
        """Cluster ``(key, xy, record)`` points; returns ``(key, xy, record, cluster_id)``.

        Cluster ids are 0-based in order of first appearance; noise is ``NOISE``.
        """
        t0 = perf_counter()
        if not points:
            return []
        parts = PartitionedDataset(self._partition(points), max_workers=self.max_workers)
        logger.info("DBSCAN: %d points over %d partitions (max cost %d)",
                    len(points), parts.num_partitions, self.max_partition_cost)

        core_map: Dict[Hashable, bool] = {}
        for flags in parts.map_partitions(self._core_flags):
            for key, is_core in flags:
                if key in core_map:
                    raise InvalidParameterError("Cluster keys must be unique", {"key": key})
                core_map[key] = is_core
        bc = parts.broadcast(core_map)

        local = parts.map_partitions_with_index(lambda pid, recs: self._local_clusters(pid, recs, bc.value))

        # merge: local clusters that share a core point are one cluster
        ds = DisjointSet()
        seen: Dict[Hashable, Tuple[int, Any]] = {}
        for _, core_clusters in local:
            for key, cid in core_clusters:
                ds.add(cid)
                if key in seen:
                    ds.union(seen[key], cid)
                else:
                    seen[key] = cid

        # every point is owned by exactly one partition, so every label gets set below
        labels: Dict[Hashable, int] = dict.fromkeys(core_map, UNCLASSIFIED)
        final_ids: Dict[Hashable, int] = {}
        out = []
        for owned_labels, _ in local:
            for key, xy, rec, cid in owned_labels:
                if cid is None:
                    label = NOISE
                else:
                    root = ds.find(cid)
                    if root not in final_ids:
                        final_ids[root] = len(final_ids)
                    label = final_ids[root]
                labels[key] = label
                out.append((key, xy, rec, label))
        unlabelled = [k for k, label in labels.items() if label == UNCLASSIFIED]
        if unlabelled:
            raise GeoShardError("DBSCAN left points unclassified", {"count": len(unlabelled)})
        self.num_clusters = len(final_ids)
        logger.info("DBSCAN: %d cluster(s), %d noise point(s), finished in %.3f seconds",
                    self.num_clusters, sum(1 for o in out if o[3] == NOISE), perf_counter() - t0)
        return out


def cluster_inputs(records, key_extractor) -> Tuple[List[ClusterInput], int]:
    """Map ``(geometry, payload)`` records to DBSCAN input by centroid; counts skipped degenerate ones."""
    points: List[ClusterInput] = []
    skipped = 0
    for rec in records:
        try:
            xy = centroid_of(rec[0])
        except DegenerateGeometryError:
            skipped += 1
            continue
        points.append((key_extractor(rec), xy, rec))
    if skipped:
        logger.warning("DBSCAN: skipped %d record(s) with degenerate geometry", skipped)
    return points, skipped
