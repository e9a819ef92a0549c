import json

import pandas as pd
import pytest

from geoshard.cli import build_parser, main
from geoshard.indexed import IndexedSpatialDataset


@pytest.fixture
def points_file(tmp_path, point_records):
    features = [{"type": "Feature", "geometry": {"type": "Point", "coordinates": [g.x, g.y]},
                 "properties": {"id": v}} for g, v in point_records]
    p = tmp_path / "points.geojson"
    p.write_text(json.dumps({"type": "FeatureCollection", "features": features}))
    return p


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.parametrize("partitioner", ["grid", "bsp"])
def test_partition(tmp_path, points_file, partitioner):
    out = tmp_path / "out" / "parts.csv"
    rc = main(["--workers", "2", "partition", "--input", str(points_file), "--out", str(out),
               "--partitioner", partitioner, "--ppd", "3", "--side-length", "10", "--max-cost", "60"])
    assert rc == 0
    df = pd.read_csv(out)
    assert list(df.columns) == ["pid", "minx", "miny", "maxx", "maxy", "count"]
    assert df["count"].sum() == 300
    if partitioner == "grid":
        assert len(df) == 9
    else:
        assert df["count"].max() <= 60


def test_knn(tmp_path, points_file, point_records):
    out = tmp_path / "knn.csv"
    assert main(["knn", "--input", str(points_file), "--x", "50", "--y", "50", "-k", "5", "--out", str(out)]) == 0
    df = pd.read_csv(out)
    assert list(df["rank"]) == [0, 1, 2, 3, 4]
    assert df["distance"].is_monotonic_increasing
    brute = sorted(point_records, key=lambda r: (r[0].x - 50) ** 2 + (r[0].y - 50) ** 2)[:5]
    assert list(df["id"]) == [v for _, v in brute]


@pytest.mark.parametrize("agg", [False, True])
def test_skyline(tmp_path, points_file, agg):
    out = tmp_path / "sky.csv"
    args = ["skyline", "--input", str(points_file), "--x", "0", "--y", "0", "--out", str(out)]
    assert main(args + (["--agg"] if agg else [])) == 0
    df = pd.read_csv(out)
    # untimed records: the skyline is the nearest record
    assert len(df) == 1
    assert df["temporal"].iloc[0] == 0.0


def test_cluster(tmp_path, points_file):
    out = tmp_path / "clusters.csv"
    rc = main(["cluster", "--input", str(points_file), "--eps", "8", "--min-pts", "3", "--key", "id",
               "--out", str(out)])
    assert rc == 0
    df = pd.read_csv(out)
    assert sorted(df["key"]) == list(range(300))
    assert df["cluster_id"].min() >= -1


def test_index_round_trip(tmp_path, points_file):
    outdir = tmp_path / "idx"
    debug = tmp_path / "extents.csv"
    rc = main(["index", "--input", str(points_file), "--outdir", str(outdir), "--order", "6",
               "--ppd", "2", "--debug-csv", str(debug)])
    assert rc == 0
    loaded = IndexedSpatialDataset.load(outdir)
    assert loaded.count() == 300
    assert loaded.order == 6
    assert len(pd.read_csv(debug)) == 4


def test_errors_return_nonzero(tmp_path, points_file):
    out = tmp_path / "knn.csv"
    assert main(["knn", "--input", str(points_file), "--x", "0", "--y", "0", "-k", "0", "--out", str(out)]) == 1
    assert not out.exists()
