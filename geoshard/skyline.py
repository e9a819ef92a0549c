from __future__ import annotations

import logging
import math
from typing import Any, Callable, Generic, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from .envelope import geometry_distance
from .stobject import geo_of, time_of

logger = logging.getLogger(__name__)

T = TypeVar("T")
DistancePoint = Tuple[float, ...]
Dominates = Callable[[Sequence[float], Sequence[float]], bool]


def centroid_dominates(a: Sequence[float], b: Sequence[float]) -> bool:
    """``a`` is no worse than ``b`` in every dimension and strictly better in one (smaller is better)."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    return bool(np.all(a <= b) and np.any(a < b))


def st_distance(ref: Any, g: Any) -> Tuple[float, float]:
    """(spatial distance, temporal distance) between two geometries or STObjects."""
    t1, t2 = time_of(ref), time_of(g)
    temporal = 0.0 if t1 is None or t2 is None else t1.distance(t2)
    return geometry_distance(ref, g), temporal


def distance_point(ref: Any, g: Any, dist_fn: Callable[[Any, Any], Sequence[float]] = st_distance
                   ) -> Optional[DistancePoint]:
    """``dist_fn(ref, g)`` as a float tuple; None for an empty geometry or a non-finite distance."""
    geo = geo_of(g)
    if geo is None or geo.is_empty:
        return None
    p = tuple(float(x) for x in dist_fn(ref, g))
    return p if all(math.isfinite(x) for x in p) else None


class Skyline(Generic[T]):
    """
    Running skyline: the points no other inserted point dominates.

    A point is kept only if no current member dominates it, and it evicts the
    members it dominates. Equal points do not dominate each other and are all kept.
    """

    def __init__(self, dominates: Dominates = centroid_dominates,
                 points: Iterable[Tuple[DistancePoint, T]] = ()):
        self.dominates = dominates
        self.skyline_points: List[Tuple[DistancePoint, T]] = []
        for p in points:
            self.insert(p)

    def insert(self, tup: Tuple[DistancePoint, T]) -> bool:
        point = tup[0]
        for other, _ in self.skyline_points:
            if self.dominates(other, point):
                return False
        self.skyline_points = [(q, v) for q, v in self.skyline_points if not self.dominates(point, q)]
        self.skyline_points.append(tup)
        return True

    def merge(self, other: "Skyline[T]") -> "Skyline[T]":
        """Pairwise merge: keep the members of either side the other side does not dominate."""
        left = [p for p in self.skyline_points
                if not any(self.dominates(q, p[0]) for q, _ in other.skyline_points)]
        right = [p for p in other.skyline_points
                 if not any(self.dominates(q, p[0]) for q, _ in self.skyline_points)]
        merged = Skyline(self.dominates)
        merged.skyline_points = left + right
        return merged

    def __iter__(self) -> Iterator[Tuple[DistancePoint, T]]:
        return iter(self.skyline_points)

    def __len__(self) -> int:
        return len(self.skyline_points)


def local_skyline(tuples: Iterable[Tuple[DistancePoint, T]], dominates: Dominates = centroid_dominates
                  ) -> List[Tuple[DistancePoint, T]]:
    return list(Skyline(dominates, tuples))


def dominated_partitions(lower: Sequence[Sequence[float]], upper: Sequence[Sequence[float]],
                         non_empty: Sequence[bool], dominates: Dominates = centroid_dominates) -> List[bool]:
    """Mark partitions whose best corner is dominated by a non-empty partition's worst corner.

    ``lower[i]`` / ``upper[i]`` are the best / worst corners of partition ``i``
    in distance space. Returns a keep-mask.
    """
    n = len(lower)
    keep = [bool(x) for x in non_empty]
    for i in range(n):
        if not non_empty[i]:
            continue
        for j in range(n):
            if i == j or not keep[j]:
                continue
            if dominates(upper[i], lower[j]):
                keep[j] = False
    return keep
