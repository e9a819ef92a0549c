"""geoshard: centroid-based spatial partitioning, per-partition R-trees and
partition-pruned spatial queries."""

from .bsp import BSPartitioner
from .config import DEFAULT_CONFIG, GeoShardConfig, Options
from .dataset import PartitionedDataset, RecordError
from .dbscan import DBSCAN, NOISE, UNCLASSIFIED
from .envelope import Extent
from .exceptions import (
    DegenerateGeometryError,
    GeoShardError,
    IndexCorruptionError,
    InvalidParameterError,
    PartitionMismatchError,
)
from .grid import GridPartitioner
from .histogram import CellHistogram
from .indexed import IndexedSpatialDataset, LiveIndexedSpatialDataset
from .partitioner import SpatialPartitioner, partitioner_from_dict
from .predicates import JoinPredicate, within_distance
from .rtree import RTree
from .skyline import Skyline, centroid_dominates, st_distance
from .spatial import SpatialDataset
from .stobject import Interval, STObject

__version__ = "0.1.0"

__all__ = [
    "BSPartitioner", "CellHistogram", "DBSCAN", "DEFAULT_CONFIG", "DegenerateGeometryError", "Extent",
    "GeoShardConfig", "GeoShardError", "GridPartitioner", "IndexCorruptionError", "IndexedSpatialDataset",
    "Interval", "InvalidParameterError", "JoinPredicate", "LiveIndexedSpatialDataset", "NOISE", "Options",
    "PartitionMismatchError", "PartitionedDataset", "RTree", "RecordError", "STObject", "Skyline",
    "SpatialDataset", "SpatialPartitioner", "UNCLASSIFIED", "centroid_dominates", "partitioner_from_dict",
    "st_distance", "within_distance",
]
