"""
Global k-nearest-neighbour search over a partitioned dataset.

Stage one searches the partition whose data lies closest to the query. Its
k-th distance becomes a bound that is broadcast to stage two, which only visits
partitions whose data extent is not farther than that bound. Local candidates
of both stages are re-ranked into the global top k.
"""
from __future__ import annotations

import heapq
import logging
import math
from time import perf_counter
from typing import Any, Callable, Iterable, List, Optional, Tuple

from .dataset import PartitionedDataset, Record
from .envelope import Extent, geometry_distance
from .exceptions import InvalidParameterError
from .stobject import geo_of

logger = logging.getLogger(__name__)

# (distance, position in partition, geometry, payload)
LocalHit = Tuple[float, int, Any, Any]
LocalKnn = Callable[[int, Any, int], List[LocalHit]]


def scan_knn(records: Iterable[Record], qry: Any, k: int,
             dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[LocalHit]:
    """Top ``k`` of one partition by a full scan; ties keep record order.

    Records with an empty geometry or a non-finite distance are skipped.
    """
    dist = dist_fn or geometry_distance
    scored: List[LocalHit] = []
    skipped = 0
    for i, (g, v) in enumerate(records):
        geo = geo_of(g)
        d = math.nan if geo is None or geo.is_empty else float(dist(qry, g))
        if math.isfinite(d):
            scored.append((d, i, g, v))
        else:
            skipped += 1
    if skipped:
        logger.warning("kNN: skipped %d record(s) with empty geometry or non-finite distance", skipped)
    return heapq.nsmallest(k, scored, key=lambda t: (t[0], t[1]))


def knn_search(data: PartitionedDataset, qry: Any, k: int, local_knn: LocalKnn,
               prune: bool = True) -> List[Tuple[Any, Tuple[float, Any]]]:
    """The ``k`` records nearest to ``qry`` as ``(geometry, (distance, payload))``, nearest first.

    ``local_knn(pid, partition, k)`` returns the local top k of one partition.
    Equal distances are ordered by partition id, then by position in the partition.
    """
    if k is None or k <= 0:
        raise InvalidParameterError("k must be positive", {"k": k})
    t0 = perf_counter()
    pids = list(range(data.num_partitions))

    if not prune or data.data_extents is None:
        hits = data.map_partitions_with_index(lambda pid, part: local_knn(pid, part, k))
        ranked = _rank(zip(pids, hits), k)
        logger.info("kNN: scanned all %d partitions in %.3f seconds", len(pids), perf_counter() - t0)
        return ranked

    qext = Extent.of_geometry(qry)
    dists = sorted((e.min_distance(qext), pid) for pid, e in enumerate(data.data_extents) if e is not None)
    if not dists:
        return []
    first = dists[0][1]
    stage1 = data.map_partitions_with_index(lambda pid, part: local_knn(pid, part, k), pids=[first])[0]
    bound = data.broadcast(stage1[-1][0] if len(stage1) == k else math.inf)

    # strict: partitions at exactly the bound may still hold ties
    rest = [pid for d, pid in dists if pid != first and not d > bound.value]
    stage2 = data.map_partitions_with_index(lambda pid, part: local_knn(pid, part, k), pids=rest)
    logger.info("kNN: bound %.6g after partition %d, pruned %d of %d partitions, finished in %.3f seconds",
                bound.value, first, len(pids) - 1 - len(rest), len(pids), perf_counter() - t0)
    return _rank([(first, stage1)] + list(zip(rest, stage2)), k)


def _rank(partials, k: int) -> List[Tuple[Any, Tuple[float, Any]]]:
    candidates = [(d, pid, pos, g, v) for pid, hits in partials for d, pos, g, v in hits]
    top = heapq.nsmallest(k, candidates, key=lambda t: (t[0], t[1], t[2]))
    return [(g, (d, v)) for d, _, _, g, v in top]
