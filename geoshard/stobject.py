from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from shapely.geometry.base import BaseGeometry


@dataclass(frozen=True)
class Interval:
    """Closed time interval; an instant when ``end`` is None."""
    start: float
    end: Optional[float] = None

    def __post_init__(self):
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Interval end {self.end} lies before start {self.start}")

    @property
    def upper(self) -> float:
        return self.start if self.end is None else self.end

    def intersects(self, other: "Interval") -> bool:
        return self.start <= other.upper and other.start <= self.upper

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.upper <= self.upper

    def distance(self, other: "Interval") -> float:
        if self.intersects(other):
            return 0.0
        if self.upper < other.start:
            return float(other.start - self.upper)
        return float(self.start - other.upper)


@dataclass(frozen=True)
class STObject:
    """A geometry with an optional validity interval."""
    geo: BaseGeometry
    time: Optional[Interval] = None

    @classmethod
    def of(cls, geo: BaseGeometry, start: Optional[float] = None, end: Optional[float] = None) -> "STObject":
        return cls(geo, None if start is None else Interval(start, end))


def geo_of(obj: Any) -> BaseGeometry:
    """The spatial part of a bare geometry or an STObject."""
    return obj.geo if isinstance(obj, STObject) else obj


def time_of(obj: Any) -> Optional[Interval]:
    return obj.time if isinstance(obj, STObject) else None
