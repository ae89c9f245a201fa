# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

import csv
import io
import json
from datetime import datetime
from typing import Dict, List, Optional

from .records.similarity import AnalysisResult
from .records.track import Track

EXPORT_COLUMNS = [
    "trackAId",
    "trackAArtist",
    "trackATitle",
    "trackABpm",
    "trackAKey",
    "trackBId",
    "trackBArtist",
    "trackBTitle",
    "trackBBpm",
    "trackBKey",
    "score",
    "componentBpm",
    "componentKey",
    "componentWaveform",
    "componentRhythm",
    "reason",
    "source",
]


def _fixed(value) -> str:
    try:
        return f"{float(value):.6f}"
    except (TypeError, ValueError):
        return f"{0:.6f}"


def _track_columns(prefix: str, track_id: str, track: Optional[Track]) -> dict:
    return {
        f"{prefix}Id": str(track_id),
        f"{prefix}Artist": track.artist if track else "",
        f"{prefix}Title": track.title if track else "",
        f"{prefix}Bpm": track.bpm if track and track.bpm is not None else "",
        f"{prefix}Key": track.key if track else "",
    }


def build_export_rows(result: AnalysisResult, tracks_by_id: Optional[Dict[str, Track]] = None) -> List[dict]:
    tracks_by_id = tracks_by_id or {}
    rows = []
    for match in result.top_matches:
        components = match.components
        rows.append(
            {
                **_track_columns("trackA", match.track_a_id, tracks_by_id.get(match.track_a_id)),
                **_track_columns("trackB", match.track_b_id, tracks_by_id.get(match.track_b_id)),
                "score": _fixed(match.score),
                "componentBpm": _fixed(components.bpm),
                "componentKey": _fixed(components.key),
                "componentWaveform": _fixed(components.waveform),
                "componentRhythm": _fixed(components.rhythm),
                "reason": match.reason or "",
                "source": "cache" if match.from_cache else "computed",
            }
        )
    return rows


def build_analysis_csv(result: AnalysisResult, tracks_by_id: Optional[Dict[str, Track]] = None) -> str:
    out = io.StringIO()
    writer = csv.DictWriter(out, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
    writer.writeheader()
    writer.writerows(build_export_rows(result, tracks_by_id))
    return out.getvalue()


def build_analysis_json(result: AnalysisResult, tracks_by_id: Optional[Dict[str, Track]] = None) -> str:
    return json.dumps(
        {
            "exportedAt": datetime.now().isoformat(),
            "algorithmVersion": result.algorithm_version,
            "pairCount": result.pair_count,
            "cacheHits": result.cache_hits,
            "computed": result.computed,
            "weights": result.weights,
            "rows": build_export_rows(result, tracks_by_id),
        },
        indent=2,
    )
