from __future__ import annotations

import math
from typing import Any, Iterable, Sequence

import numpy as np
from shapely.geometry import box

from .exceptions import DegenerateGeometryError
from .stobject import geo_of


# ------------------------------- Extent --------------------------------------

class Extent:
    """N-D axis-aligned box (lower-left ``mins``, upper-right ``maxs``).

    Extents are treated as immutable: every operation returns a new instance.
    """
    __slots__ = ("mins", "maxs")

    def __init__(self, mins: Sequence[float], maxs: Sequence[float]):
        mins = np.array(mins, dtype=float)
        maxs = np.array(maxs, dtype=float)
        if mins.shape != maxs.shape or mins.ndim != 1:
            raise ValueError(f"Extent corners must be 1-D and of equal length, got {mins.shape} and {maxs.shape}")
        # normalize
        bad = mins > maxs
        if np.any(bad):
            mins, maxs = np.minimum(mins, maxs), np.maximum(mins, maxs)
        mins.setflags(write=False)
        maxs.setflags(write=False)
        self.mins = mins
        self.maxs = maxs

    @classmethod
    def from_bounds(cls, minx: float, miny: float, maxx: float, maxy: float) -> "Extent":
        return cls((minx, miny), (maxx, maxy))

    @classmethod
    def of_geometry(cls, g: Any) -> "Extent":
        geo = geo_of(g)
        if geo is None or geo.is_empty:
            raise DegenerateGeometryError("Cannot compute the extent of an empty geometry")
        return cls.from_bounds(*geo.bounds)

    @classmethod
    def from_points(cls, coords: np.ndarray) -> "Extent":
        # coords: (N, D)
        coords = np.asarray(coords, dtype=float)
        if coords.ndim != 2 or coords.shape[0] == 0:
            raise ValueError("coords must be a non-empty (N, D) array")
        return cls(np.min(coords, axis=0), np.max(coords, axis=0))

    @property
    def dim(self) -> int:
        return int(self.mins.size)

    @property
    def ll(self) -> np.ndarray:
        return self.mins

    @property
    def ur(self) -> np.ndarray:
        return self.maxs

    def side(self, d: int) -> float:
        return float(self.maxs[d] - self.mins[d])

    def area(self) -> float:
        return float(np.prod(self.maxs - self.mins))

    def contains_point(self, p: Sequence[float]) -> bool:
        p = np.asarray(p, dtype=float)
        return bool(np.all(self.mins <= p) and np.all(p <= self.maxs))

    def contains(self, other: "Extent") -> bool:
        return bool(np.all(self.mins <= other.mins) and np.all(other.maxs <= self.maxs))

    def intersects(self, other: "Extent") -> bool:
        # boundaries touch -> intersect
        return not bool(np.any((self.maxs < other.mins) | (other.maxs < self.mins)))

    def union(self, other: "Extent") -> "Extent":
        return Extent(np.minimum(self.mins, other.mins), np.maximum(self.maxs, other.maxs))

    def enlargement(self, other: "Extent") -> float:
        return self.union(other).area() - self.area()

    def clamp(self, p: Sequence[float]) -> np.ndarray:
        return np.minimum(np.maximum(np.asarray(p, dtype=float), self.mins), self.maxs)

    def min_distance(self, other: "Extent") -> float:
        """Smallest Euclidean distance between any point of this box and any point of ``other``."""
        gap = np.maximum(0.0, np.maximum(self.mins - other.maxs, other.mins - self.maxs))
        return float(math.sqrt(float(np.dot(gap, gap))))

    def to_geometry(self):
        if self.dim != 2:
            raise ValueError("Only 2-D extents convert to polygons")
        return box(self.mins[0], self.mins[1], self.maxs[0], self.maxs[1])

    def to_list(self) -> list:
        return [float(v) for v in self.mins] + [float(v) for v in self.maxs]

    @classmethod
    def from_list(cls, values: Sequence[float]) -> "Extent":
        n = len(values) // 2
        return cls(values[:n], values[n:])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Extent):
            return NotImplemented
        return bool(np.array_equal(self.mins, other.mins) and np.array_equal(self.maxs, other.maxs))

    def __hash__(self) -> int:
        return hash((self.mins.tobytes(), self.maxs.tobytes()))

    def __repr__(self) -> str:
        return f"Extent(ll={self.mins.tolist()}, ur={self.maxs.tolist()})"


def union_all(extents: Iterable[Extent]):
    out = None
    for e in extents:
        if e is None:
            continue
        out = e if out is None else out.union(e)
    return out


# ------------------------------ Centroids ------------------------------------

def centroid_of(g: Any) -> np.ndarray:
    """Representative point used for partition assignment.

    Raises DegenerateGeometryError for None / empty geometries and NaN centroids.
    """
    geo = geo_of(g)
    if geo is None or geo.is_empty:
        raise DegenerateGeometryError("Geometry is empty")
    c = geo.centroid
    if c.is_empty:
        raise DegenerateGeometryError("Geometry has no centroid", {"wkt": geo.wkt[:80]})
    xy = np.array([c.x, c.y], dtype=float)
    if not np.all(np.isfinite(xy)):
        raise DegenerateGeometryError("Geometry centroid is not finite", {"centroid": xy.tolist()})
    return xy


def geometry_distance(a: Any, b: Any) -> float:
    """Exact Euclidean distance between two geometries (or STObjects)."""
    return float(geo_of(a).distance(geo_of(b)))
