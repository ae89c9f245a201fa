import csv
import os

import pytest

from crateflow.cli import build_parser, main


@pytest.fixture
def library_path(tmp_path, sample_xml):
    path = tmp_path / "library.xml"
    path.write_text(sample_xml, encoding="utf-8")
    return str(path)


def test_build_parser():
    args = build_parser().parse_args(
        ["-d", "/tmp/db", "cluster", "lib.xml", "-f", "ROOT/Techno", "-f", "ROOT/House", "--strict"]
    )

    assert args.db_path == "/tmp/db"
    assert args.command == "cluster"
    assert args.folder == ["ROOT/Techno", "ROOT/House"]
    assert args.strict is True
    assert args.threshold is None


def test_validate(library_path):
    assert main(["validate", library_path]) == 0


def test_validate_invalid_library(tmp_path):
    path = tmp_path / "library.xml"
    path.write_text("<nope/>", encoding="utf-8")

    assert main(["validate", str(path)]) == 1


def test_analyze_writes_exports(tmp_path, library_path):
    csv_path = tmp_path / "top.csv"
    json_path = tmp_path / "top.json"

    code = main(
        [
            "-d",
            str(tmp_path / "db"),
            "analyze",
            library_path,
            "--csv",
            str(csv_path),
            "--json",
            str(json_path),
        ]
    )

    assert code == 0
    assert os.path.exists(tmp_path / "db" / "similarity.db")
    with open(csv_path, encoding="utf-8", newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 3
    assert json_path.exists()


def test_search_unknown_track(tmp_path, library_path):
    assert main(["-d", str(tmp_path / "db"), "search", library_path, "404"]) == 1


def test_cluster(tmp_path, library_path):
    assert main(["-d", str(tmp_path / "db"), "cluster", library_path, "-t", "0.5"]) == 0
