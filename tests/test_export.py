import csv
import io
import json

from crateflow.analyzer import run_baseline_analysis
from crateflow.export import EXPORT_COLUMNS, build_analysis_csv, build_analysis_json, build_export_rows
from crateflow.records.similarity import AnalysisResult, Components, PairScore


def _result():
    match = PairScore(
        track_a_id="1",
        track_b_id="2",
        score=0.9,
        components=Components(bpm=1.0, key=0.85, waveform=0.5, rhythm=0.25),
        weights={"bpm": 0.35, "key": 0.35, "waveform": 0.15, "rhythm": 0.15},
        reason="BPM strong, key strong, waveform mixed, rhythm weak",
        from_cache=True,
    )
    return AnalysisResult(
        run_id=1,
        algorithm_version="flow-baseline-v4",
        pair_limit=1,
        pair_count=1,
        cache_hits=1,
        computed=0,
        weights=match.weights,
        top_matches=[match],
    )


def test_export_rows(make_track):
    tracks_by_id = {"1": make_track("1", bpm=126.0, key="8A")}
    rows = build_export_rows(_result(), tracks_by_id)

    assert len(rows) == 1
    row = rows[0]
    assert list(row.keys()) == EXPORT_COLUMNS
    assert row["trackAArtist"] == "Artist 1"
    assert row["trackABpm"] == 126.0
    # unknown tracks only carry their id
    assert row["trackBId"] == "2"
    assert row["trackBArtist"] == ""
    assert row["trackBBpm"] == ""
    assert row["score"] == "0.900000"
    assert row["componentKey"] == "0.850000"
    assert row["source"] == "cache"


def test_analysis_csv(make_track):
    text = build_analysis_csv(_result(), {"1": make_track("1", title="Hello, World")})
    lines = text.splitlines()

    assert lines[0] == ",".join(EXPORT_COLUMNS)
    rows = list(csv.DictReader(io.StringIO(text)))
    assert rows[0]["trackATitle"] == "Hello, World"
    assert rows[0]["reason"] == "BPM strong, key strong, waveform mixed, rhythm weak"


def test_analysis_json():
    data = json.loads(build_analysis_json(_result()))

    assert data["algorithmVersion"] == "flow-baseline-v4"
    assert data["pairCount"] == 1
    assert data["cacheHits"] == 1
    assert data["computed"] == 0
    assert data["weights"]["bpm"] == 0.35
    assert data["rows"][0]["componentRhythm"] == "0.250000"
    assert "exportedAt" in data


def test_export_of_a_real_run(cache, make_track):
    tracks = [
        make_track("1", bpm=126.0, key="8A"),
        make_track("2", bpm=127.0, key="8A"),
        make_track("3", bpm=100.0, key="2B"),
    ]
    result = run_baseline_analysis(tracks, cache)
    rows = build_export_rows(result, {x.id: x for x in tracks})

    assert len(rows) == 3
    assert all(x["source"] == "computed" for x in rows)
    assert rows[0]["trackAId"] == "1"
    assert rows[0]["trackBId"] == "2"
