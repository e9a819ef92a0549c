from __future__ import annotations
import argparse
import logging
from pathlib import Path
from time import perf_counter
from typing import List, Optional

import pandas as pd
from shapely.geometry import Point

from .config import GeoShardConfig, Options
from .datasource import open_source
from .exceptions import GeoShardError
from .spatial import SpatialDataset

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(relativeCreated).0fms] %(levelname)s %(name)s: %(message)s"


def _load(args, config: GeoShardConfig) -> SpatialDataset:
    source = open_source(args.input)
    records = source.read()
    logger.info("Read %d record(s) from %s", len(records), args.input)
    return SpatialDataset.from_records(records, num_partitions=max(1, config.max_workers), config=config)


def _partitioner(ds: SpatialDataset, args):
    if args.partitioner == "bsp":
        return ds.bsp_partitioner(args.side_length, args.max_cost)
    return ds.grid_partitioner(args.ppd)


def _write_csv(df: pd.DataFrame, out: str) -> None:
    p = Path(out)
    p.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(p, index=False)
    logger.info("Wrote %d row(s) to %s", len(df), p)


# ------------------------- commands ------------------------- #
def cmd_partition(args, config: GeoShardConfig) -> None:
    ds = _load(args, config)
    part = _partitioner(ds, args)
    routed = ds.partition_by(part)
    frame = part.extents_frame()
    frame["count"] = [len(p) for p in routed.data.partitions]
    _write_csv(frame, args.out)
    if routed.errors:
        logger.warning("%d record(s) could not be partitioned", len(routed.errors))


def cmd_knn(args, config: GeoShardConfig) -> None:
    ds = _load(args, config)
    ds = ds.partition_by(_partitioner(ds, args))
    hits = ds.knn(Point(args.x, args.y), args.k)
    rows = [{"rank": i, "distance": d, "wkt": g.wkt, **(v or {})} for i, (g, (d, v)) in enumerate(hits)]
    _write_csv(pd.DataFrame(rows), args.out)


def cmd_skyline(args, config: GeoShardConfig) -> None:
    ds = _load(args, config)
    ref = Point(args.x, args.y)
    sky = ds.skyline_agg(ref) if args.agg else ds.skyline(ref, ppd=args.ppd)
    rows = [{"spatial": p[0], "temporal": p[1], "wkt": g.wkt, **(v or {})} for p, (g, v) in sky]
    _write_csv(pd.DataFrame(rows), args.out)


def cmd_cluster(args, config: GeoShardConfig) -> None:
    ds = _load(args, config)
    if args.key:
        key_extractor = lambda rec: rec[1][args.key]  # noqa: E731
    else:
        ds = SpatialDataset.from_records(((g, (i, v)) for i, (g, v) in enumerate(ds)),
                                         num_partitions=ds.num_partitions, config=config)
        key_extractor = lambda rec: rec[1][0]  # noqa: E731
    labelled = ds.cluster(args.min_pts, args.eps, key_extractor, include_noise=not args.no_noise,
                          max_partition_cost=args.max_cost, outfile=args.out)
    logger.info("Labelled %d record(s)", len(labelled))


def cmd_index(args, config: GeoShardConfig) -> None:
    ds = _load(args, config)
    indexed = ds.index(_partitioner(ds, args), order=args.order)
    indexed.save(args.outdir)
    if args.debug_csv:
        indexed.partitioner.write_debug_csv(args.debug_csv)


# ------------------------- parser ------------------------- #
def _add_partitioner_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--partitioner", choices=["grid", "bsp"], default="grid", help="Partitioning strategy (default: grid).")
    p.add_argument("--ppd", type=int, default=None, help="Grid cells per dimension (default from config).")
    p.add_argument("--side-length", type=float, default=None, help="BSP fine cell side length.")
    p.add_argument("--max-cost", type=int, default=None, help="BSP maximum records per partition.")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="geoshard",
                                 description="Spatial partitioning, indexing and queries over GeoJSON/GeoParquet.")
    ap.add_argument("--config", default=None, help="JSON options file (e.g. {\"grid.ppd\": 8}).")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    ap.add_argument("--workers", type=int, default=None, help="Thread pool size for partition tasks.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("partition", help="Partition the input and write partition extents and counts as CSV.")
    p.add_argument("--input", required=True, help="Path to input GeoJSON or GeoParquet.")
    p.add_argument("--out", required=True, help="Output CSV (pid,minx,miny,maxx,maxy,count).")
    _add_partitioner_args(p)
    p.set_defaults(func=cmd_partition)

    p = sub.add_parser("knn", help="k nearest records to a point.")
    p.add_argument("--input", required=True)
    p.add_argument("--x", type=float, required=True)
    p.add_argument("--y", type=float, required=True)
    p.add_argument("-k", type=int, default=10)
    p.add_argument("--out", required=True)
    _add_partitioner_args(p)
    p.set_defaults(func=cmd_knn)

    p = sub.add_parser("skyline", help="Skyline of (spatial, temporal) distance to a reference point.")
    p.add_argument("--input", required=True)
    p.add_argument("--x", type=float, required=True)
    p.add_argument("--y", type=float, required=True)
    p.add_argument("--ppd", type=int, default=None, help="Grid cells per dimension in distance space.")
    p.add_argument("--agg", action="store_true", help="Use the single-pass aggregate variant.")
    p.add_argument("--out", required=True)
    p.set_defaults(func=cmd_skyline)

    p = sub.add_parser("cluster", help="DBSCAN over record centroids.")
    p.add_argument("--input", required=True)
    p.add_argument("--eps", type=float, required=True)
    p.add_argument("--min-pts", type=int, required=True)
    p.add_argument("--key", default=None, help="Unique property used as point key (default: row number).")
    p.add_argument("--max-cost", type=int, default=None, help="Maximum points per DBSCAN partition.")
    p.add_argument("--no-noise", action="store_true", help="Drop noise points from the result.")
    p.add_argument("--out", required=True, help="Output CSV (key,x,y,cluster_id).")
    p.set_defaults(func=cmd_cluster)

    p = sub.add_parser("index", help="Build and save a persistent per-partition R-tree index.")
    p.add_argument("--input", required=True)
    p.add_argument("--outdir", required=True)
    p.add_argument("--order", type=int, default=None, help="R-tree node capacity (default from config).")
    p.add_argument("--debug-csv", default=None, help="Also write partition extents to this CSV.")
    _add_partitioner_args(p)
    p.set_defaults(func=cmd_index)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    opts = Options.from_json(args.config) if args.config else Options()
    t0 = perf_counter()
    try:
        config = GeoShardConfig.from_options(opts, max_workers=args.workers)
        args.func(args, config)
    except GeoShardError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    logger.info("%s finished in %.3f seconds", args.command, perf_counter() - t0)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
