from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .exceptions import InvalidParameterError, require_positive

logger = logging.getLogger(__name__)


class Options(dict):
    """Flat key/value options with typed getters."""

    def get_int(self, key: str, default: int) -> int:
        return int(self._get(key, default, int))

    def get_float(self, key: str, default: float) -> float:
        return float(self._get(key, default, float))

    def get_bool(self, key: str, default: bool) -> bool:
        v = self.get(key, default)
        if isinstance(v, str):
            s = v.strip().lower()
            if s in ("1", "true", "yes", "on"):
                return True
            if s in ("0", "false", "no", "off"):
                return False
            raise InvalidParameterError(f"Option '{key}' is not a boolean", {key: v})
        return bool(v)

    def _get(self, key: str, default, conv):
        v = self.get(key, default)
        try:
            return conv(v)
        except (TypeError, ValueError) as e:
            raise InvalidParameterError(f"Option '{key}' has an invalid value", {key: v}) from e

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "Options":
        p = Path(path)
        with open(p, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise InvalidParameterError("Options file must hold a JSON object", {"path": str(p)})
        logger.info("Loaded %d option(s) from %s", len(data), p)
        return cls(data)


# option key -> GeoShardConfig field
_OPTION_KEYS = {
    "max_workers": "max_workers",
    "rtree.order": "rtree_order",
    "grid.ppd": "grid_ppd",
    "bsp.side_length": "bsp_side_length",
    "bsp.max_cost": "bsp_max_cost",
    "dbscan.max_partition_cost": "dbscan_max_partition_cost",
    "dbscan.max_cells": "dbscan_max_cells",
    "knn.prune": "knn_prune",
}


@dataclass
class GeoShardConfig:
    max_workers: int = 8
    rtree_order: int = 10
    grid_ppd: int = 4
    bsp_side_length: float = 1.0
    bsp_max_cost: int = 1000
    dbscan_max_partition_cost: int = 10
    dbscan_max_cells: int = 1 << 20
    knn_prune: bool = True

    def __post_init__(self):
        for name in ("max_workers", "rtree_order", "grid_ppd", "bsp_side_length",
                     "bsp_max_cost", "dbscan_max_partition_cost", "dbscan_max_cells"):
            require_positive(name, getattr(self, name))

    @classmethod
    def from_options(cls, opts: Optional[Dict[str, Any]] = None, **overrides) -> "GeoShardConfig":
        opts = Options(opts or {})
        kwargs: Dict[str, Any] = {}
        types = {f.name: f.type for f in fields(cls)}
        for key, name in _OPTION_KEYS.items():
            if key not in opts:
                continue
            t = types[name]
            if t == "bool":
                kwargs[name] = opts.get_bool(key, False)
            elif t == "float":
                kwargs[name] = opts.get_float(key, 0.0)
            else:
                kwargs[name] = opts.get_int(key, 0)
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)


DEFAULT_CONFIG = GeoShardConfig()
