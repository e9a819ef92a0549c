"""
Exception types raised by geoshard.

Every exception carries a human readable message plus an optional context
dict that is rendered next to it, so log lines show the offending values.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class GeoShardError(Exception):
    """Base class for all geoshard errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (Context: {context_str})"
        return self.message


class InvalidParameterError(GeoShardError, ValueError):
    """A constructor or operation received a non-positive size, order, count or distance."""


class PartitionMismatchError(GeoShardError):
    """Two collections claim co-partitioning but disagree on partition count or extents."""


class IndexCorruptionError(GeoShardError):
    """A persisted index disagrees with its partitioner metadata."""


class DegenerateGeometryError(GeoShardError, ValueError):
    """A geometry is empty or has no finite centroid and cannot be partitioned."""


def require_positive(name: str, value, allow_zero: bool = False) -> None:
    """Raise InvalidParameterError unless ``value`` is a positive number."""
    if value is None or value != value or not (value >= 0 if allow_zero else value > 0):
        raise InvalidParameterError(f"{name} must be positive", {name: value})
