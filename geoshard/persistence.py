"""
On-disk layout of a persistent index.

    <dir>/_manifest.json      partitioner, tree order, per-partition counts and extents
    <dir>/part-00000.parquet  one file per partition, entries in insertion order

Each part file holds a WKB ``geometry`` column, nullable ``time_start`` /
``time_end`` columns for spatio-temporal entries and either a ``payload`` column
whose Arrow type is inferred from the payloads or, when that inference would
alter them, a ``payload_json`` text column. Payloads neither can store unchanged
raise GeoShardError at save time. Loading replays the inserts in order,
so the rebuilt trees are identical to the saved ones; any disagreement with the
manifest raises IndexCorruptionError.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple, Union

import pyarrow as pa
import pyarrow.parquet as pq
from shapely import from_wkb, to_wkb

from .envelope import Extent
from .exceptions import GeoShardError, IndexCorruptionError
from .partitioner import SpatialPartitioner, partitioner_from_dict
from .rtree import RTree
from .stobject import STObject, geo_of, time_of

logger = logging.getLogger(__name__)

MANIFEST = "_manifest.json"
FORMAT_VERSION = 1


def part_path(root: Path, pid: int) -> Path:
    return root / f"part-{pid:05d}.parquet"


def _identical(a: Any, b: Any) -> bool:
    """Equal values of equal types, recursively; NaN matches NaN."""
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(_identical(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(_identical(x, y) for x, y in zip(a, b))
    return a == b or (a != a and b != b)


def _payload_column(payloads: List[Any]) -> Tuple[str, pa.Array]:
    """Payloads as an inferred Arrow column, or as JSON text when inference would change them.

    Arrow widens mixed ints and floats and merges differing dict keys into one
    struct, so the inferred column is kept only if it reads back unchanged.
    """
    try:
        col = pa.array(payloads)
        if all(_identical(a, b) for a, b in zip(payloads, col.to_pylist())):
            return "payload", col
    except (pa.ArrowInvalid, pa.ArrowTypeError, pa.ArrowNotImplementedError) as e:
        logger.debug("Payloads have no Arrow type (%s), storing them as JSON", e)
    try:
        texts = [json.dumps(v) for v in payloads]
    except (TypeError, ValueError) as e:
        raise GeoShardError("Payloads cannot be stored", {"error": str(e)}) from e
    if not all(_identical(a, json.loads(t)) for a, t in zip(payloads, texts)):
        raise GeoShardError("Payloads do not survive storage unchanged",
                            {"types": sorted({type(v).__name__ for v in payloads})})
    return "payload_json", pa.array(texts, type=pa.string())


def _tree_table(tree: RTree) -> pa.Table:
    geoms, starts, ends, payloads = [], [], [], []
    for g, v in tree.entries():
        t = time_of(g)
        geoms.append(geo_of(g))
        starts.append(None if t is None else float(t.start))
        ends.append(None if t is None else (None if t.end is None else float(t.end)))
        payloads.append(v)
    wkb = to_wkb(geoms, hex=False).tolist() if geoms else []
    payload_name, payload_col = _payload_column(payloads)
    return pa.table(
        [pa.array(wkb, type=pa.binary()), pa.array(starts, type=pa.float64()),
         pa.array(ends, type=pa.float64()), payload_col],
        names=["geometry", "time_start", "time_end", payload_name],
    )


def save_trees(path: Union[str, Path], trees: List[RTree], partitioner: Optional[SpatialPartitioner],
               order: int) -> Path:
    t0 = perf_counter()
    root = Path(path)
    root.mkdir(parents=True, exist_ok=True)
    for pid, tree in enumerate(trees):
        pq.write_table(_tree_table(tree), part_path(root, pid))
        logger.debug("Wrote partition %d (%d entries)", pid, len(tree))

    manifest: Dict[str, Any] = {
        "version": FORMAT_VERSION,
        "order": int(order),
        "num_partitions": len(trees),
        "partitioner": None if partitioner is None else partitioner.to_dict(),
        "partition_extents": None if partitioner is None else [e.to_list() for e in partitioner.extents()],
        "counts": [len(t) for t in trees],
        "extents": [None if t.extent is None else t.extent.to_list() for t in trees],
    }
    with open(root / MANIFEST, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    logger.info("Saved %d partition index(es) to %s in %.3f seconds", len(trees), root, perf_counter() - t0)
    return root


def _read_tree(path: Path, order: int) -> RTree:
    table = pq.read_table(path)
    geoms = from_wkb(table.column("geometry").to_pylist()) if table.num_rows else []
    starts = table.column("time_start").to_pylist()
    ends = table.column("time_end").to_pylist()
    if "payload_json" in table.column_names:
        payloads = [json.loads(t) for t in table.column("payload_json").to_pylist()]
    else:
        payloads = table.column("payload").to_pylist()
    tree: RTree = RTree(order)
    for g, s, e, v in zip(geoms, starts, ends, payloads):
        tree.insert(g if s is None else STObject.of(g, s, e), v)
    return tree


def load_trees(path: Union[str, Path], partitioner: Optional[SpatialPartitioner] = None
               ) -> Tuple[List[RTree], Optional[SpatialPartitioner], int]:
    """Rebuild the saved trees; returns ``(trees, stored_partitioner, order)``.

    A ``partitioner`` passed in must match the stored partition count and extents.
    """
    t0 = perf_counter()
    root = Path(path)
    try:
        with open(root / MANIFEST, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise IndexCorruptionError("Cannot read the index manifest", {"path": str(root), "error": str(e)}) from e

    n = int(manifest["num_partitions"])
    stored = None if manifest.get("partitioner") is None else partitioner_from_dict(manifest["partitioner"])
    if stored is not None and stored.num_partitions != n:
        raise IndexCorruptionError("Stored partitioner disagrees with the partition count",
                                   {"partitions": n, "partitioner": stored.num_partitions})
    if partitioner is not None:
        if partitioner.num_partitions != n:
            raise IndexCorruptionError("Partitioner disagrees with the stored partition count",
                                       {"stored": n, "partitioner": partitioner.num_partitions})
        saved = manifest.get("partition_extents")
        if saved is not None:
            for pid, (a, b) in enumerate(zip(partitioner.extents(), saved)):
                if a != Extent.from_list(b):
                    raise IndexCorruptionError("Partition extent differs from the saved one",
                                               {"pid": pid, "saved": b, "partitioner": a.to_list()})

    order = int(manifest["order"])
    trees: List[RTree] = []
    for pid in range(n):
        p = part_path(root, pid)
        if not p.exists():
            raise IndexCorruptionError("Missing partition file", {"pid": pid, "path": str(p)})
        tree = _read_tree(p, order)
        if len(tree) != manifest["counts"][pid]:
            raise IndexCorruptionError("Partition entry count differs from the manifest",
                                       {"pid": pid, "expected": manifest["counts"][pid], "got": len(tree)})
        expected = manifest["extents"][pid]
        got = None if tree.extent is None else tree.extent.to_list()
        if (expected is None) != (got is None) or (expected is not None and Extent.from_list(expected) != tree.extent):
            raise IndexCorruptionError("Partition extent differs from the manifest",
                                       {"pid": pid, "expected": expected, "got": got})
        trees.append(tree)
    logger.info("Loaded %d partition index(es) from %s in %.3f seconds", n, root, perf_counter() - t0)
    return trees, stored, order
