# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Match library tracks to their analysis files on disk.
#
# Analysis files live under opaque bucket/uuid directories, so the only
# link back to a track is the audio path embedded in the file. Both
# sides are reduced to a filename key and grouped into buckets:
#
#  1 track,  1+ files -> best file by duration and path tokens
#  N tracks, 1 file   -> all of them share the file
#  N tracks, M files  -> greedy assignment, shortest track first, each
#                        assignment must score at least
#                        min_assignment_score. Unless every track in the
#                        bucket is resolved, the bucket is ambiguous.
#  N tracks, 0 files  -> unmatched
#
# The resulting report is saved as JSON and later used to attach
# waveform summaries to tracks.

import logging
import os
import unicodedata
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import unquote

from pydantic import BaseModel, Field

from . import cancel
from .anlz import parse_analysis_file
from .config import CorrelatorSettings
from .errors import AnalysisFormatError, MissingPathError
from .records.track import Track
from .utils import jaccard, tokenize

logger = logging.getLogger(__name__)

MATCH_UNIQUE = "unique-filename"
MATCH_BEST_OF_MULTI = "best-of-multi-anlz"
MATCH_SHARED = "shared-single-anlz"
MATCH_DISAMBIGUATED = "duration-token-disambiguated"


class AnalysisFileEntry(BaseModel):
    ext_path: str
    rel_path: str
    ppth_path: str
    duration_seconds: Optional[float] = None
    bucket: str = ""
    uuid: str = ""


class MappingEntry(BaseModel):
    ext_path: str
    rel_path: str
    ppth_path: str
    filename: str
    bucket: str = ""
    uuid: str = ""
    duration_seconds: Optional[float] = None
    match_type: str


class AmbiguousBucket(BaseModel):
    filename: str
    xml_track_count: int
    anlz_count: int
    xml_track_ids: List[str]
    anlz_rel_paths: List[str]
    xml_durations: List[Optional[float]]
    anlz_durations: List[Optional[float]]


class MappingStats(BaseModel):
    total_tracks: int = 0
    ext_files_scanned: int = 0
    ext_files_parsed: int = 0
    parse_errors: int = 0
    missing_ppth: int = 0
    matched_tracks: int = 0
    resolved_by_duration: int = 0
    shared_single_anlz: int = 0
    ambiguous_filenames: int = 0
    unmatched_tracks: int = 0
    unmatched_anlz_files: int = 0
    match_rate_percent: float = 0.0


class MappingReport(BaseModel):
    generated_at: datetime = Field(default_factory=datetime.now)
    anlz_root: str
    stats: MappingStats = Field(default_factory=MappingStats)
    mapping: Dict[str, MappingEntry] = Field(default_factory=dict)
    ambiguous: List[AmbiguousBucket] = Field(default_factory=list)
    unmatched_track_ids: List[str] = Field(default_factory=list)
    unmatched_anlz: List[str] = Field(default_factory=list)


def filename_key(raw_path) -> str:
    """Case folded, NFKC normalized basename of a path or file URL"""
    if not raw_path:
        return ""
    cleaned = unquote(str(raw_path)).replace("\\", "/").split("?", 1)[0].strip()
    parts = [x for x in cleaned.split("/") if x]
    if not parts:
        return ""
    return unicodedata.normalize("NFKC", parts[-1]).strip().casefold()


def assignment_score(
    track_duration: Optional[float],
    file_duration: Optional[float],
    track_tokens: set,
    file_tokens: set,
    settings: CorrelatorSettings,
) -> float:
    window = settings.duration_window_seconds
    if track_duration is None or file_duration is None:
        diff = window
    else:
        diff = abs(track_duration - file_duration)
    duration_score = max(0.0, 1 - diff / window)
    return (
        duration_score * settings.duration_weight
        + jaccard(track_tokens, file_tokens) * settings.token_weight
    )


def choose_best_file(
    track: Track,
    entries: List[AnalysisFileEntry],
    settings: CorrelatorSettings,
    taken: Optional[set] = None,
):
    """(index, score) of the best untaken entry, or None"""
    taken = taken or set()
    track_tokens = tokenize(track.location)
    best = None
    for index, entry in enumerate(entries):
        if index in taken:
            continue
        score = assignment_score(
            track.duration_seconds,
            entry.duration_seconds,
            track_tokens,
            tokenize(entry.ppth_path),
            settings,
        )
        if best is None or score > best[1]:
            best = (index, score)
    return best


def find_analysis_files(root: str, suffixes: Sequence[str]) -> List[str]:
    suffixes = tuple(x.upper() for x in suffixes)
    found = []
    for current, dirs, files in os.walk(root):
        dirs.sort()
        for name in sorted(files):
            if name.upper().endswith(suffixes):
                found.append(os.path.join(current, name))
    return found


def _mapping_entry(entry: AnalysisFileEntry, filename: str, match_type: str) -> MappingEntry:
    return MappingEntry(
        ext_path=entry.ext_path,
        rel_path=entry.rel_path,
        ppth_path=entry.ppth_path,
        filename=filename,
        bucket=entry.bucket,
        uuid=entry.uuid,
        duration_seconds=entry.duration_seconds,
        match_type=match_type,
    )


def _scan_files(root: str, settings: CorrelatorSettings, stats: MappingStats, on_progress, cancel_token):
    files = find_analysis_files(root, settings.file_suffixes)
    stats.ext_files_scanned = len(files)
    by_filename: Dict[str, List[AnalysisFileEntry]] = {}

    for scanned, ext_path in enumerate(files, start=1):
        cancel.check(cancel_token, "Analysis file mapping canceled.")
        try:
            with open(ext_path, "rb") as f:
                info = parse_analysis_file(f.read())
        except (OSError, AnalysisFormatError) as e:
            logger.debug(f"Failed to parse {ext_path}: {e}")
            stats.parse_errors += 1
        else:
            filename = filename_key(info.path)
            if not filename:
                stats.missing_ppth += 1
            else:
                rel_path = os.path.relpath(ext_path, root)
                segments = Path(rel_path).parts
                by_filename.setdefault(filename, []).append(
                    AnalysisFileEntry(
                        ext_path=ext_path,
                        rel_path=rel_path,
                        ppth_path=info.path,
                        duration_seconds=info.duration_seconds,
                        bucket=segments[0] if len(segments) > 2 else "",
                        uuid=segments[1] if len(segments) > 2 else "",
                    )
                )
                stats.ext_files_parsed += 1

        if on_progress is not None:
            on_progress(
                {
                    "stage": "parse-ext",
                    "scanned": scanned,
                    "total": len(files),
                    "parsed": stats.ext_files_parsed,
                    "parse_errors": stats.parse_errors,
                    "missing_ppth": stats.missing_ppth,
                }
            )

    return by_filename


def build_analysis_mapping(
    tracks: Sequence[Track],
    anlz_root: str,
    settings: Optional[CorrelatorSettings] = None,
    on_progress: Optional[Callable[[dict], None]] = None,
    cancel_token=None,
) -> MappingReport:
    if not anlz_root:
        raise MissingPathError("Missing analysis file directory.")
    settings = settings or CorrelatorSettings()
    root = os.path.abspath(anlz_root)
    if not os.path.isdir(root):
        raise MissingPathError(f"Analysis file directory not found: {root}")

    tracks = list(tracks)
    report = MappingReport(anlz_root=root)
    stats = report.stats
    stats.total_tracks = len(tracks)

    tracks_by_filename: Dict[str, List[Track]] = {}
    for track in tracks:
        filename = filename_key(track.location)
        if filename:
            tracks_by_filename.setdefault(filename, []).append(track)
        else:
            report.unmatched_track_ids.append(track.id)

    files_by_filename = _scan_files(root, settings, stats, on_progress, cancel_token)
    mapping = report.mapping

    for filename, bucket_tracks in tracks_by_filename.items():
        cancel.check(cancel_token, "Analysis file mapping canceled.")
        entries = files_by_filename.get(filename, [])

        if not entries:
            report.unmatched_track_ids.extend(x.id for x in bucket_tracks)
            continue

        if len(bucket_tracks) == 1:
            index, _ = choose_best_file(bucket_tracks[0], entries, settings)
            match_type = MATCH_UNIQUE if len(entries) == 1 else MATCH_BEST_OF_MULTI
            mapping[bucket_tracks[0].id] = _mapping_entry(entries[index], filename, match_type)
            if len(entries) > 1:
                stats.resolved_by_duration += 1
            continue

        if len(entries) == 1:
            for track in bucket_tracks:
                mapping[track.id] = _mapping_entry(entries[0], filename, MATCH_SHARED)
            stats.shared_single_anlz += len(bucket_tracks)
            continue

        by_duration = sorted(bucket_tracks, key=lambda x: x.duration_seconds or 0)
        taken = set()
        resolved = {}
        for track in by_duration:
            best = choose_best_file(track, entries, settings, taken)
            if best is None or best[1] < settings.min_assignment_score:
                continue
            taken.add(best[0])
            resolved[track.id] = _mapping_entry(entries[best[0]], filename, MATCH_DISAMBIGUATED)

        if len(resolved) == len(bucket_tracks):
            mapping.update(resolved)
            stats.resolved_by_duration += len(resolved)
            continue

        # a partial assignment is not trusted, the whole bucket needs review
        report.ambiguous.append(
            AmbiguousBucket(
                filename=filename,
                xml_track_count=len(bucket_tracks),
                anlz_count=len(entries),
                xml_track_ids=[x.id for x in bucket_tracks],
                anlz_rel_paths=[x.rel_path for x in entries],
                xml_durations=[x.duration_seconds for x in bucket_tracks],
                anlz_durations=[x.duration_seconds for x in entries],
            )
        )
        report.unmatched_track_ids.extend(x.id for x in bucket_tracks)

    matched_paths = {x.rel_path for x in mapping.values()}
    for filename, entries in files_by_filename.items():
        for entry in entries:
            if filename not in tracks_by_filename or entry.rel_path not in matched_paths:
                report.unmatched_anlz.append(entry.rel_path)

    stats.matched_tracks = len(mapping)
    stats.ambiguous_filenames = len(report.ambiguous)
    stats.unmatched_tracks = len(report.unmatched_track_ids)
    stats.unmatched_anlz_files = len(report.unmatched_anlz)
    stats.match_rate_percent = (
        round(len(mapping) * 100 / len(tracks), 2) if tracks else 0.0
    )

    logger.info(
        f"Mapped {stats.matched_tracks}/{stats.total_tracks} tracks "
        f"({stats.match_rate_percent}%), {stats.ambiguous_filenames} ambiguous, "
        f"{stats.parse_errors} parse errors"
    )
    return report


def save_mapping(report: MappingReport, path: str) -> str:
    path = os.path.abspath(path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(report.model_dump_json(indent=2))
    return path


def load_mapping(path: str) -> MappingReport:
    if not path:
        raise MissingPathError("Missing mapping file path.")
    with open(path, "r", encoding="utf-8") as f:
        return MappingReport.model_validate_json(f.read())
