# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

import dataclasses
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .anlz import extract_waveform_summary
from .cachedb import SimilarityCache
from .config import WaveformSettings
from .correlator import MappingReport
from .records.track import Track
from .records.waveform import WaveformSummary

logger = logging.getLogger(__name__)


def _matches_settings(summary: WaveformSummary, settings: WaveformSettings) -> bool:
    return (
        len(summary.bins) == settings.bin_count
        and len(summary.rhythm_signature or ()) == settings.rhythm_segment_count
        and len(summary.kick_signature or ()) == settings.kick_segment_count
    )


def _load_summary(ext_path: str, cache: Optional[SimilarityCache], settings: WaveformSettings, stats: dict):
    if cache is not None:
        summary = cache.get_waveform_summary(ext_path)
        # a summary built with other bin or segment counts is decoded again
        if summary is not None and _matches_settings(summary, settings):
            stats["cache_hits"] += 1
            return summary

    try:
        with open(ext_path, "rb") as f:
            data = f.read()
    except OSError as e:
        logger.debug(f"Unable to read {ext_path}: {e}")
        return None

    summary = extract_waveform_summary(
        data,
        bin_count=settings.bin_count,
        sample_rate=settings.sample_rate,
        rhythm_segment_count=settings.rhythm_segment_count,
        kick_segment_count=settings.kick_segment_count,
    )
    stats["parsed_from_file"] += 1
    if summary is None:
        return None

    summary = dataclasses.replace(summary, ext_path=ext_path)
    if cache is not None:
        # the summary can always be decoded again, a failed write only costs time
        try:
            cache.save_waveform_summary(ext_path, summary)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to cache waveform summary for {ext_path}: {e}")
            stats["cache_write_errors"] += 1

    return summary


def attach_waveform_summaries(
    tracks: Sequence[Track],
    mapping: MappingReport,
    cache: Optional[SimilarityCache] = None,
    settings: Optional[WaveformSettings] = None,
    max_tracks: Optional[int] = None,
) -> Tuple[List[Track], dict]:
    """Return copies of tracks with their waveform summary attached.

    Each distinct analysis file is decoded at most once: first from the
    cache, then from disk. Tracks without a mapping, or whose file has
    no waveform, come back unchanged.
    """
    settings = settings or WaveformSettings()
    stats = {
        "attached": 0,
        "attempted": 0,
        "missing_mapping": 0,
        "cache_hits": 0,
        "parsed_from_file": 0,
        "cache_write_errors": 0,
    }
    summaries: Dict[str, Optional[WaveformSummary]] = {}
    result = []

    for index, track in enumerate(tracks):
        if max_tracks is not None and index >= max_tracks:
            result.append(track)
            continue

        entry = mapping.mapping.get(track.id)
        if entry is None or not entry.ext_path:
            stats["missing_mapping"] += 1
            result.append(track)
            continue

        stats["attempted"] += 1
        if entry.ext_path not in summaries:
            summaries[entry.ext_path] = _load_summary(entry.ext_path, cache, settings, stats)

        summary = summaries[entry.ext_path]
        if summary is None:
            result.append(track)
            continue

        result.append(dataclasses.replace(track, waveform=summary))
        stats["attached"] += 1

    logger.info(
        f"Attached waveforms to {stats['attached']}/{stats['attempted']} tracks "
        f"({stats['cache_hits']} from cache, {stats['parsed_from_file']} decoded)"
    )
    return result, stats
