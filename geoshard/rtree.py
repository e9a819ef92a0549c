"""
Per-partition R-tree.

Guttman-style insertion (least enlargement, quadratic split), predicate queries
that prune by node extents and re-test every candidate exactly, and best-first
k-nearest-neighbour search.
"""
from __future__ import annotations

import heapq
import itertools
import logging
from typing import Any, Callable, Generic, Iterator, List, Optional, Tuple, TypeVar

from .envelope import Extent, geometry_distance
from .exceptions import InvalidParameterError
from .predicates import JoinPredicate, evaluate, may_satisfy

logger = logging.getLogger(__name__)

V = TypeVar("V")


class _Entry(Generic[V]):
    __slots__ = ("geom", "payload", "extent", "seq")

    def __init__(self, geom: Any, payload: V, extent: Extent, seq: int):
        self.geom = geom
        self.payload = payload
        self.extent = extent
        self.seq = seq


class _Node:
    __slots__ = ("leaf", "children", "extent", "parent")

    def __init__(self, leaf: bool, parent: Optional["_Node"] = None):
        self.leaf = leaf
        self.children: list = []       # _Entry for leaves, _Node otherwise
        self.extent: Optional[Extent] = None
        self.parent = parent

    def recompute_extent(self) -> None:
        ext = None
        for c in self.children:
            ext = c.extent if ext is None else ext.union(c.extent)
        self.extent = ext


class RTree(Generic[V]):
    """R-tree holding ``(geometry, payload)`` entries; ``order`` bounds node fan-out."""

    def __init__(self, order: int = 10):
        if order is None or int(order) != order or order < 2:
            raise InvalidParameterError("R-tree order must be an integer >= 2", {"order": order})
        self.order = int(order)
        self.min_fill = max(1, self.order // 2)
        self.root = _Node(leaf=True)
        self._size = 0
        self._seq = itertools.count()

    def __len__(self) -> int:
        return self._size

    @property
    def extent(self) -> Optional[Extent]:
        return self.root.extent

    def height(self) -> int:
        h = 1
        node = self.root
        while not node.leaf:
            node = node.children[0]
            h += 1
        return h

    # ---------- insertion ----------

    def insert(self, geom: Any, payload: V) -> None:
        entry = _Entry(geom, payload, Extent.of_geometry(geom), next(self._seq))
        leaf = self._choose_leaf(entry.extent)
        leaf.children.append(entry)
        self._size += 1
        self._adjust(leaf)

    def _choose_leaf(self, ext: Extent) -> _Node:
        node = self.root
        while not node.leaf:
            best = None
            best_key = None
            for child in node.children:
                key = (child.extent.enlargement(ext), child.extent.area())
                if best_key is None or key < best_key:
                    best, best_key = child, key
            node = best
        return node

    def _adjust(self, node: _Node) -> None:
        """Walk up from ``node``, splitting overflowing nodes and re-tightening extents."""
        while node is not None:
            if len(node.children) > self.order:
                sibling = self._split(node)
                if node.parent is None:
                    new_root = _Node(leaf=False)
                    for n in (node, sibling):
                        n.parent = new_root
                        new_root.children.append(n)
                    new_root.recompute_extent()
                    self.root = new_root
                    return
                sibling.parent = node.parent
                node.parent.children.append(sibling)
            else:
                node.recompute_extent()
            node = node.parent

    def _split(self, node: _Node) -> _Node:
        """Quadratic split; ``node`` keeps one group, the returned sibling gets the other."""
        items = node.children
        # seeds: pair wasting the most area
        s1, s2, worst = 0, 1, None
        for i in range(len(items)):
            for j in range(i + 1, len(items)):
                a, b = items[i].extent, items[j].extent
                waste = a.union(b).area() - a.area() - b.area()
                if worst is None or waste > worst:
                    s1, s2, worst = i, j, waste
        g1, g2 = [items[s1]], [items[s2]]
        e1, e2 = items[s1].extent, items[s2].extent
        rest = [it for k, it in enumerate(items) if k not in (s1, s2)]

        while rest:
            # keep both groups above the minimum fill
            if len(g1) + len(rest) == self.min_fill:
                g1.extend(rest); break
            if len(g2) + len(rest) == self.min_fill:
                g2.extend(rest); break
            # pick the entry with the strongest preference
            pick, pick_diff = 0, None
            for k, it in enumerate(rest):
                d = abs(e1.enlargement(it.extent) - e2.enlargement(it.extent))
                if pick_diff is None or d > pick_diff:
                    pick, pick_diff = k, d
            it = rest.pop(pick)
            d1, d2 = e1.enlargement(it.extent), e2.enlargement(it.extent)
            if (d1, e1.area(), len(g1)) <= (d2, e2.area(), len(g2)):
                g1.append(it); e1 = e1.union(it.extent)
            else:
                g2.append(it); e2 = e2.union(it.extent)

        sibling = _Node(leaf=node.leaf)
        node.children = g1
        sibling.children = g2
        if not node.leaf:
            for c in g2:
                c.parent = sibling
        node.recompute_extent()
        sibling.recompute_extent()
        return sibling

    # ---------- queries ----------

    def query(self, predicate: JoinPredicate, qry: Any, max_dist: Optional[float] = None,
              dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Tuple[Any, V]]:
        """Entries ``e`` for which ``predicate(qry, e)`` holds exactly.

        CONTAINS returns entries covered by ``qry``; CONTAINEDBY returns entries covering it.
        Node extents only prune subtrees; every leaf candidate is tested with shapely.
        """
        predicate = JoinPredicate.parse(predicate)
        if self._size == 0:
            return []
        qext = Extent.of_geometry(qry)
        # node extents bound the entries, so prune on the entry-side reading of the predicate
        entry_pred = predicate.inverse()
        prune = dist_fn is None or predicate is not JoinPredicate.WITHIN_DISTANCE
        out: List[Tuple[int, Any, V]] = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if prune and not may_satisfy(entry_pred, node.extent, qext, max_dist):
                continue
            if node.leaf:
                for e in node.children:
                    if prune and not may_satisfy(entry_pred, e.extent, qext, max_dist):
                        continue
                    if evaluate(predicate, qry, e.geom, max_dist, dist_fn):
                        out.append((e.seq, e.geom, e.payload))
            else:
                stack.extend(node.children)
        out.sort(key=lambda t: t[0])
        return [(g, v) for _, g, v in out]

    def intersects(self, qry: Any) -> List[Tuple[Any, V]]:
        return self.query(JoinPredicate.INTERSECTS, qry)

    def within_distance(self, qry: Any, max_dist: float,
                        dist_fn: Optional[Callable[[Any, Any], float]] = None) -> List[Tuple[Any, V]]:
        return self.query(JoinPredicate.WITHIN_DISTANCE, qry, max_dist=max_dist, dist_fn=dist_fn)

    def nearest_neighbors(self, qry: Any, k: int) -> List[Tuple[Any, V, float]]:
        """The ``k`` entries closest to ``qry`` as ``(geometry, payload, distance)``.

        Sorted by distance, ties by insertion order; fewer than ``k`` if the tree is smaller.
        """
        return [(g, v, d) for d, _, g, v in self.nearest_entries(qry, k)]

    def nearest_entries(self, qry: Any, k: int) -> List[Tuple[float, int, Any, V]]:
        """Like :meth:`nearest_neighbors` but as ``(distance, insertion_seq, geometry, payload)``."""
        if k is None or k <= 0:
            raise InvalidParameterError("k must be positive", {"k": k})
        if self._size == 0:
            return []
        qext = Extent.of_geometry(qry)
        tie = itertools.count()
        queue: List[Tuple[float, int, _Node]] = [(self.root.extent.min_distance(qext), next(tie), self.root)]
        # max-heap of the best k so far: (-dist, -seq, entry)
        best: List[Tuple[float, int, _Entry]] = []

        def kth() -> float:
            return -best[0][0] if len(best) == k else float("inf")

        while queue:
            bound, _, node = heapq.heappop(queue)
            if bound > kth():
                break
            if node.leaf:
                for e in node.children:
                    if e.extent.min_distance(qext) > kth():
                        continue
                    d = geometry_distance(qry, e.geom)
                    item = (-d, -e.seq, e)
                    if len(best) < k:
                        heapq.heappush(best, item)
                    elif (d, e.seq) < (-best[0][0], -best[0][1]):
                        heapq.heapreplace(best, item)
            else:
                for child in node.children:
                    md = child.extent.min_distance(qext)
                    if md <= kth():
                        heapq.heappush(queue, (md, next(tie), child))

        ranked = sorted(((-nd, -ns, e) for nd, ns, e in best), key=lambda t: (t[0], t[1]))
        return [(d, e.seq, e.geom, e.payload) for d, _, e in ranked]

    # ---------- iteration ----------

    def entries(self) -> Iterator[Tuple[Any, V]]:
        """All entries in insertion order."""
        found: List[_Entry] = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.leaf:
                found.extend(node.children)
            else:
                stack.extend(node.children)
        for e in sorted(found, key=lambda e: e.seq):
            yield e.geom, e.payload

    def __iter__(self):
        return self.entries()

    def check_invariants(self) -> None:
        """Raise AssertionError if any node extent fails to cover its subtree or fan-out exceeds order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            assert len(node.children) <= self.order, "node exceeds order"
            for c in node.children:
                assert node.extent.contains(c.extent), "node extent does not cover child"
                if not node.leaf:
                    assert c.parent is node, "broken parent link"
                    stack.append(c)
