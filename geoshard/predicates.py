"""
Spatial predicates and their extent-level pruning rules.

Every predicate is read as ``pred(left, right)``:

* INTERSECTS   -- left and right share at least one point
* CONTAINS     -- left covers right (boundary inclusive)
* CONTAINEDBY  -- left is covered by right (boundary inclusive)
* WITHIN_DISTANCE -- handled by :func:`within_distance`, which binds the radius

``may_satisfy`` and ``may_join`` answer whether anything bounded by a box could
satisfy ``pred``. They are only filters: exact evaluation with shapely always
follows.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Optional

from .envelope import Extent, geometry_distance
from .stobject import geo_of, time_of


class JoinPredicate(str, Enum):
    INTERSECTS = "intersects"
    CONTAINS = "contains"
    CONTAINEDBY = "containedby"
    WITHIN_DISTANCE = "withindistance"

    @classmethod
    def parse(cls, value) -> "JoinPredicate":
        if isinstance(value, JoinPredicate):
            return value
        s = str(value).strip().lower().replace("_", "").replace("-", "")
        for p in cls:
            if p.value == s:
                return p
        raise ValueError(f"Unsupported predicate: {value}")

    def inverse(self) -> "JoinPredicate":
        if self is JoinPredicate.CONTAINS:
            return JoinPredicate.CONTAINEDBY
        if self is JoinPredicate.CONTAINEDBY:
            return JoinPredicate.CONTAINS
        return self


def _temporal_ok(pred: JoinPredicate, left: Any, right: Any) -> bool:
    lt, rt = time_of(left), time_of(right)
    if lt is None or rt is None:
        return True
    if pred is JoinPredicate.CONTAINS:
        return lt.contains(rt)
    if pred is JoinPredicate.CONTAINEDBY:
        return rt.contains(lt)
    return lt.intersects(rt)


def evaluate(pred: JoinPredicate, left: Any, right: Any, max_dist: Optional[float] = None,
             dist_fn: Optional[Callable[[Any, Any], float]] = None) -> bool:
    """Exact predicate test on two geometries or STObjects."""
    pred = JoinPredicate.parse(pred)
    if pred is JoinPredicate.WITHIN_DISTANCE:
        if max_dist is None:
            raise ValueError("WITHIN_DISTANCE needs max_dist")
        d = dist_fn(left, right) if dist_fn is not None else geometry_distance(left, right)
        return d <= max_dist
    a, b = geo_of(left), geo_of(right)
    if pred is JoinPredicate.INTERSECTS:
        ok = a.intersects(b)
    elif pred is JoinPredicate.CONTAINS:
        ok = a.covers(b)
    else:
        ok = a.covered_by(b)
    return bool(ok) and _temporal_ok(pred, left, right)


def may_satisfy(pred: JoinPredicate, group: Optional[Extent], qry: Optional[Extent],
                max_dist: Optional[float] = None) -> bool:
    """Can some geometry bounded by ``group`` satisfy ``pred(geometry, qry)``?

    ``group`` is the box of a partition or of an R-tree node; None means empty.
    """
    if group is None or qry is None:
        return False
    if pred is JoinPredicate.WITHIN_DISTANCE:
        return group.min_distance(qry) <= max_dist
    if pred is JoinPredicate.CONTAINS:
        # a member covering qry has a box containing qry's box, and group covers that box
        return group.contains(qry)
    return group.intersects(qry)


def may_join(pred: JoinPredicate, left: Optional[Extent], right: Optional[Extent],
             max_dist: Optional[float] = None) -> bool:
    """Can any pair drawn from two groups of geometries satisfy ``pred(l, r)``?"""
    if left is None or right is None:
        return False
    if pred is JoinPredicate.WITHIN_DISTANCE:
        return left.min_distance(right) <= max_dist
    return left.intersects(right)


def within_distance(max_dist: float, dist_fn: Optional[Callable[[Any, Any], float]] = None):
    """Return a ``(left, right) -> bool`` callable testing distance <= max_dist."""
    def _pred(left, right) -> bool:
        return evaluate(JoinPredicate.WITHIN_DISTANCE, left, right, max_dist, dist_fn)
    return _pred
