from typing import Iterable, Iterator, Optional, List, Dict, Any, Tuple
import logging
import json
from pathlib import Path

import ijson
import pyarrow as pa
import pyarrow.parquet as pq
from shapely import from_geojson, from_wkb

logger = logging.getLogger(__name__)

Record = Tuple[Any, Dict[str, Any]]


class DataSource:
    """Yields ``(shapely geometry, properties)`` records; null geometries are skipped."""

    def iter_records(self) -> Iterable[Record]:
        raise NotImplementedError

    def read(self) -> List[Record]:
        return list(self.iter_records())


# ------------------------- GeoParquet source ------------------------- #
class GeoParquetSource(DataSource):
    def __init__(self, path: str, geometry_column: Optional[str] = None):
        self._pf = pq.ParquetFile(path)
        self._schema = self._pf.schema_arrow
        self._num_row_groups = self._pf.num_row_groups
        self.geometry_column = geometry_column or _primary_column(self._schema)
        if self.geometry_column not in self._schema.names:
            raise ValueError(f"GeoParquet file {path} has no column '{self.geometry_column}'")
        logger.info("GeoParquetSource opened %s with %d row groups (geometry column '%s')",
                    path, self._num_row_groups, self.geometry_column)

    def iter_records(self) -> Iterator[Record]:
        for i in range(self._num_row_groups):
            logger.debug("Reading row group %d/%d", i, self._num_row_groups)
            table = self._pf.read_row_group(i)
            wkb = table.column(self.geometry_column).to_pylist()
            props = table.drop_columns([self.geometry_column]).to_pylist()
            geoms = from_wkb(wkb)
            for g, p in zip(geoms, props):
                if g is not None:
                    yield g, p


def _primary_column(schema: pa.Schema) -> str:
    md = schema.metadata or {}
    if b"geo" in md:
        try:
            return json.loads(md[b"geo"]).get("primary_column", "geometry")
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable GeoParquet 'geo' metadata")
    return "geometry"


# ------------------------- Helpers ------------------------- #
def is_geojson_path(path: str) -> bool:
    p = path.lower()
    return p.endswith((".geojson", ".geojsonl", ".json", ".jsonl"))


def open_source(path: str, batch_rows: int = 1_000) -> DataSource:
    if is_geojson_path(path):
        return GeoJSONSource(path, batch_rows=batch_rows)
    return GeoParquetSource(path)


# ------------------------- GeoJSON source ------------------------- #
class GeoJSONSource(DataSource):
    """
    Streams GeoJSON / GeoJSONL features as records.

    - For standard FeatureCollection GeoJSON, streams features with `ijson`.
    - For GeoJSON Lines (one Feature per line), reads and batches by line.
    - Geometry dicts are parsed in batches with shapely's GeoJSON reader.
    """

    def __init__(self, path: str, batch_rows: int = 1_000):
        self.path = path
        self.batch_rows = int(batch_rows)
        self._use_geojsonl = _detect_geojsonl(self.path)
        logger.info("GeoJSONSource opened %s (batch_rows=%d, lines=%s)", path, self.batch_rows, self._use_geojsonl)

    def iter_records(self) -> Iterator[Record]:
        for batch_index, features in enumerate(_iter_geojson_feature_batches(self.path, self.batch_rows,
                                                                             self._use_geojsonl)):
            geoms = _geometries_from_geojson([f.get("geometry") for f in features])
            kept = 0
            for g, feat in zip(geoms, features):
                if g is None:
                    continue
                kept += 1
                yield g, feat.get("properties") or {}
            logger.debug("GeoJSON batch %d: %d of %d feature(s) with geometry", batch_index, kept, len(features))


def _geometries_from_geojson(geometries: List[Any]) -> List[Any]:
    """Batch-parse GeoJSON geometry dicts with shapely; ``None`` stays ``None``."""
    present = [i for i, geom in enumerate(geometries) if geom is not None]
    out: List[Any] = [None] * len(geometries)
    if present:
        parsed = from_geojson([json.dumps(geometries[i], separators=(",", ":")) for i in present])
        for i, g in zip(present, parsed):
            out[i] = g
    return out


def _iter_features(path: str, use_geojsonl: bool) -> Iterator[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as fin:
        if not use_geojsonl:
            yield from ijson.items(fin, "features.item", use_float=True)
            return
        for line in fin:
            line = line.strip()
            if line:
                yield json.loads(line)


def _iter_geojson_feature_batches(path: str, batch_size: int, use_geojsonl: bool) -> Iterable[List[Dict[str, Any]]]:
    batch: List[Dict[str, Any]] = []
    for feature in _iter_features(path, use_geojsonl):
        batch.append(feature)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def _detect_geojsonl(path: str, sniff_bytes: int = 64 * 1024) -> bool:
    """GeoJSON Lines if the first non-empty line parses as a single Feature."""
    try:
        with open(str(Path(path)), "r", encoding="utf-8") as fin:
            buffer = fin.read(sniff_bytes)
    except OSError:
        return False

    for line in buffer.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            obj = json.loads(stripped)
        except json.JSONDecodeError:
            return False
        return isinstance(obj, dict) and obj.get("type") == "Feature"
    return False
