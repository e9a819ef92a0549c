from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import numpy as np
import pandas as pd

from .envelope import Extent, centroid_of
from .exceptions import PartitionMismatchError

logger = logging.getLogger(__name__)


# ----------------------------- Aux Search ------------------------------------

class AuxiliarySearchStructure:
    """
    Linear-scan overlap search over partition boxes.
    Implemented with NumPy arrays; boxes touching the query count as overlapping.
    """
    def __init__(self):
        self.mins: Optional[np.ndarray] = None  # shape (P, D)
        self.maxs: Optional[np.ndarray] = None  # shape (P, D)

    def build(self, boxes: List[Extent]):
        if not boxes:
            self.mins = self.maxs = None
            return
        self.mins = np.vstack([b.mins for b in boxes])  # (P, D)
        self.maxs = np.vstack([b.maxs for b in boxes])  # (P, D)

    def search(self, mbr: Extent) -> List[int]:
        if self.mins is None:
            return []
        qmin = mbr.mins[None, :]  # (1, D)
        qmax = mbr.maxs[None, :]  # (1, D)
        sep = (self.maxs < qmin) | (qmax < self.mins)   # (P, D)
        disjoint = np.any(sep, axis=1)                  # (P,)
        return [int(i) for i in np.nonzero(~disjoint)[0]]


# ----------------------------- Partitioner -----------------------------------

_REGISTRY: Dict[str, Type["SpatialPartitioner"]] = {}


def register(cls):
    _REGISTRY[cls.kind] = cls
    return cls


class SpatialPartitioner(ABC):
    """
    Assigns a geometry to a partition id in ``[0, num_partitions)`` by its centroid
    and exposes the extent each partition covers.

    Subclasses implement:
      - ``num_partitions``
      - ``partition_extent(pid)``
      - ``partition_of_point(xy)``
      - ``to_dict()`` / ``from_dict(data)``
    """
    kind = "abstract"

    def __init__(self):
        self._aux: Optional[AuxiliarySearchStructure] = None

    @property
    @abstractmethod
    def num_partitions(self) -> int: ...

    @abstractmethod
    def partition_extent(self, pid: int) -> Extent: ...

    @abstractmethod
    def partition_of_point(self, xy: np.ndarray) -> int: ...

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]: ...

    @property
    @abstractmethod
    def global_extent(self) -> Extent: ...

    def get_partition(self, g: Any) -> int:
        """Partition id of ``g``; raises DegenerateGeometryError if it has no centroid."""
        return self.partition_of_point(centroid_of(g))

    def extents(self) -> List[Extent]:
        return [self.partition_extent(p) for p in range(self.num_partitions)]

    def overlap_partitions(self, mbr: Extent) -> List[int]:
        """Ids of the partitions whose extent overlaps ``mbr``."""
        if self._aux is None:
            self._aux = AuxiliarySearchStructure()
            self._aux.build(self.extents())
        return self._aux.search(mbr)

    def is_compatible(self, other: "SpatialPartitioner") -> bool:
        if other is self:
            return True
        if other is None or other.num_partitions != self.num_partitions:
            return False
        return all(a == b for a, b in zip(self.extents(), other.extents()))

    def check_compatible(self, other: "SpatialPartitioner") -> None:
        if self.is_compatible(other):
            return
        if other is None or other.num_partitions != self.num_partitions:
            raise PartitionMismatchError(
                "Partitioners disagree on partition count",
                {"left": self.num_partitions, "right": None if other is None else other.num_partitions},
            )
        for pid, (a, b) in enumerate(zip(self.extents(), other.extents())):
            if a != b:
                raise PartitionMismatchError("Partitioners disagree on a partition extent",
                                             {"pid": pid, "left": a, "right": b})

    # ---------- debugging ----------

    def extents_frame(self) -> pd.DataFrame:
        rows = []
        for pid, e in enumerate(self.extents()):
            rows.append((pid, float(e.mins[0]), float(e.mins[1]), float(e.maxs[0]), float(e.maxs[1])))
        return pd.DataFrame(rows, columns=["pid", "minx", "miny", "maxx", "maxy"])

    def write_debug_csv(self, path: Union[str, Path]) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        self.extents_frame().to_csv(p, index=False)
        logger.info("Wrote %d partition extents to %s", self.num_partitions, p)
        return p

    def __repr__(self) -> str:
        return f"{type(self).__name__}(num_partitions={self.num_partitions})"


def partitioner_from_dict(data: Dict[str, Any]) -> SpatialPartitioner:
    kind = data.get("kind")
    cls = _REGISTRY.get(kind)
    if cls is None:
        raise ValueError(f"Unknown partitioner kind: {kind}")
    return cls.from_dict(data)
