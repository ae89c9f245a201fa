# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Baseline similarity between two tracks
#
# The overall score is a weighted blend of four components, each in
# [0, 1]:
#  bpm      - tiered on the absolute tempo difference
#  key      - Camelot wheel compatibility
#  waveform - decoded waveform bins when both tracks have them,
#             otherwise a metadata estimate
#  rhythm   - rhythm/kick signatures when available, then tempo maps
#             and cue spacing, then a metadata estimate
#
# None of this looks at audio. Waveform and rhythm are best effort,
# so they carry less weight than bpm and key by default.

import logging
import math
import re
from typing import Dict, List, Optional

import numpy as np

from .config import normalize_weights
from .records.similarity import Components, PairScore, SimilarityResult
from .records.track import Track
from .utils import as_number, clamp, distance_to_score, jaccard, tokenize

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM_TAG = "baseline-v4"

_CAMELOT_RE = re.compile(r"^(\d{1,2})([AB])$")

# Sequences are only compared over their first few entries
_MAX_OVERLAP = 16


def create_analyzer_version(tag: str = DEFAULT_ALGORITHM_TAG) -> str:
    return f"flow-{tag}"


# ----------------------
# BPM and key
# ----------------------


def compute_bpm_score(bpm_a, bpm_b) -> float:
    a = as_number(bpm_a)
    b = as_number(bpm_b)
    if a is None or b is None:
        return 0.5

    diff = abs(a - b)
    if diff <= 1:
        return 1.0
    if diff <= 2:
        return 0.9
    if diff <= 4:
        return 0.75
    if diff <= 6:
        return 0.55
    return 0.2


def parse_camelot(raw):
    """'8A' -> (8, 'A'), None if raw isn't Camelot notation"""
    if not isinstance(raw, str):
        return None
    match = _CAMELOT_RE.match(raw.strip().upper())
    if not match:
        return None
    number = int(match.group(1))
    if number < 1 or number > 12:
        return None
    return (number, match.group(2))


def compute_key_score(key_a, key_b) -> float:
    a = parse_camelot(key_a)
    b = parse_camelot(key_b)
    if a is None or b is None:
        return 0.5

    (number_a, letter_a), (number_b, letter_b) = a, b
    if number_a == number_b:
        return 1.0 if letter_a == letter_b else 0.85

    # 12 and 1 are neighbours on the wheel
    if letter_a == letter_b and (number_a - number_b) % 12 in (1, 11):
        return 0.8

    return 0.25


# ----------------------
# Shared helpers
# ----------------------


def _token_set(track: Track) -> set:
    return tokenize(track.genre) | tokenize(track.title) | tokenize(track.artist)


def _token_score(track_a: Track, track_b: Track) -> float:
    return jaccard(_token_set(track_a), _token_set(track_b), empty=0.5)


def _diff_score(a, b, scale: float) -> float:
    a, b = as_number(a), as_number(b)
    if a is None or b is None:
        return 0.5
    return distance_to_score(a - b, scale)


def _color_score(a, b) -> float:
    diff = (abs(a.red - b.red) + abs(a.green - b.green) + abs(a.blue - b.blue)) / 3
    return clamp(1 - diff / 255)


def _tempo_points(track: Track):
    points = [
        x
        for x in track.tempo_points
        if x.inizio is not None or x.bpm is not None or x.battito is not None
    ]
    return sorted(points, key=lambda x: x.inizio or 0)


def _position_marks(track: Track):
    marks = [x for x in track.position_marks if x.start is not None or x.color.is_set()]
    return sorted(marks, key=lambda x: x.start or 0)


# ----------------------
# Waveform
# ----------------------


def compare_waveform_summaries(track_a: Track, track_b: Track) -> Optional[float]:
    """Compare decoded waveform bins, None unless both tracks have them"""
    wave_a, wave_b = track_a.waveform, track_b.waveform
    if wave_a is None or wave_b is None or not wave_a.bins or not wave_b.bins:
        return None

    overlap = min(len(wave_a.bins), len(wave_b.bins))
    bins_a = np.asarray(wave_a.bins[:overlap], dtype=np.float64)
    bins_b = np.asarray(wave_b.bins[:overlap], dtype=np.float64)
    # heights are 5 bit
    height_score = clamp(1 - float(np.mean(np.abs(bins_a - bins_b))) / 31)

    color_overlap = min(len(wave_a.bin_colors), len(wave_b.bin_colors))
    if color_overlap:
        colors_a = np.asarray([x.as_tuple() for x in wave_a.bin_colors[:color_overlap]])
        colors_b = np.asarray([x.as_tuple() for x in wave_b.bin_colors[:color_overlap]])
        bin_color_score = clamp(1 - float(np.mean(np.abs(colors_a - colors_b))) / 255)
    else:
        bin_color_score = 0.5

    avg_color_score = _color_score(wave_a.avg_color, wave_b.avg_color)
    duration_score = _diff_score(wave_a.duration_seconds, wave_b.duration_seconds, 45)

    return clamp(
        height_score * 0.55
        + bin_color_score * 0.15
        + avg_color_score * 0.15
        + duration_score * 0.15
    )


def compare_position_marks(track_a: Track, track_b: Track) -> Optional[float]:
    marks_a = _position_marks(track_a)
    marks_b = _position_marks(track_b)
    if not marks_a or not marks_b:
        return None

    overlap = min(len(marks_a), len(marks_b), _MAX_OVERLAP)
    duration_a = as_number(track_a.duration_seconds)
    duration_b = as_number(track_b.duration_seconds)
    relative = bool(duration_a and duration_b and duration_a > 0 and duration_b > 0)

    color_sum = 0.0
    timing_sum = 0.0
    for mark_a, mark_b in zip(marks_a[:overlap], marks_b[:overlap]):
        ca, cb = mark_a.color, mark_b.color
        diff = (
            abs((ca.red or 0) - (cb.red or 0))
            + abs((ca.green or 0) - (cb.green or 0))
            + abs((ca.blue or 0) - (cb.blue or 0))
        ) / 3
        color_sum += clamp(1 - diff / 255)

        if relative:
            timing_sum += distance_to_score(
                (mark_a.start or 0) / duration_a - (mark_b.start or 0) / duration_b, 0.08
            )
        else:
            timing_sum += distance_to_score((mark_a.start or 0) - (mark_b.start or 0), 10)

    count_score = distance_to_score(len(marks_a) - len(marks_b), 4)
    return clamp(
        (color_sum / overlap) * 0.45 + (timing_sum / overlap) * 0.4 + count_score * 0.15
    )


def compute_waveform_score(track_a: Track, track_b: Track) -> float:
    summary_score = compare_waveform_summaries(track_a, track_b)
    if summary_score is not None:
        return summary_score

    bps_a = track_a.bpm / 60 if track_a.bpm is not None else None
    bps_b = track_b.bpm / 60 if track_b.bpm is not None else None

    base = clamp(
        _diff_score(track_a.duration_seconds, track_b.duration_seconds, 45) * 0.35
        + _diff_score(track_a.bitrate, track_b.bitrate, 96) * 0.2
        + _diff_score(bps_a, bps_b, 0.35) * 0.2
        + _token_score(track_a, track_b) * 0.25
    )

    marks = compare_position_marks(track_a, track_b)
    if marks is None:
        return base
    return clamp(base * 0.55 + marks * 0.45)


# ----------------------
# Rhythm
# ----------------------


def _phrase_alignment_score(track_a: Track, track_b: Track) -> float:
    values = [as_number(x) for x in (track_a.bpm, track_b.bpm, track_a.duration_seconds, track_b.duration_seconds)]
    if any(x is None for x in values):
        return 0.5
    bpm_a, bpm_b, duration_a, duration_b = values
    bars_a = bpm_a * duration_a / 60 / 4
    bars_b = bpm_b * duration_b / 60 / 4
    return distance_to_score(bars_a - bars_b, 8)


def compare_tempo_maps(track_a: Track, track_b: Track) -> Optional[float]:
    tempo_a = _tempo_points(track_a)
    tempo_b = _tempo_points(track_b)
    if not tempo_a or not tempo_b:
        return None

    overlap = min(len(tempo_a), len(tempo_b), _MAX_OVERLAP)
    bpm_sum = phase_sum = timing_sum = 0.0
    for a, b in zip(tempo_a[:overlap], tempo_b[:overlap]):
        bpm_sum += distance_to_score((a.bpm or 0) - (b.bpm or 0), 2)
        phase_sum += distance_to_score((a.battito or 0) - (b.battito or 0), 1)
        timing_sum += distance_to_score((a.inizio or 0) - (b.inizio or 0), 8)

    count_score = distance_to_score(len(tempo_a) - len(tempo_b), 3)
    return clamp(
        (bpm_sum / overlap) * 0.45
        + (phase_sum / overlap) * 0.2
        + (timing_sum / overlap) * 0.25
        + count_score * 0.1
    )


def _mark_spacing_in_beats(track: Track) -> Optional[float]:
    bpm = as_number(track.bpm)
    starts = [x.start for x in _position_marks(track) if x.start is not None]
    if bpm is None or bpm <= 0 or len(starts) < 2:
        return None
    gaps = [b - a for a, b in zip(starts, starts[1:]) if b > a]
    if not gaps:
        return None
    return float(np.median(gaps)) * bpm / 60


def compare_mark_spacing(track_a: Track, track_b: Track) -> Optional[float]:
    """How closely cue points fall on the same phrase grid, in beats"""
    spacing_a = _mark_spacing_in_beats(track_a)
    spacing_b = _mark_spacing_in_beats(track_b)
    if spacing_a is None or spacing_b is None:
        return None
    return distance_to_score(spacing_a - spacing_b, 16)


def _rhythm_signature(track: Track, segment_count: int = 32):
    """The stored rhythm signature, or one derived from the waveform bins"""
    waveform = track.waveform
    if waveform is None:
        return None

    if waveform.rhythm_signature:
        signature = np.nan_to_num(np.asarray(waveform.rhythm_signature, dtype=np.float64))
        magnitude = float(np.linalg.norm(signature))
        if magnitude > 0:
            return signature / magnitude

    bins = np.nan_to_num(np.asarray(waveform.bins, dtype=np.float64))
    if len(bins) < 16 or bins.max() <= 0:
        return None

    normalized = bins / bins.max()
    onset = np.clip(np.diff(normalized, prepend=normalized[0]), 0, None)
    padded = np.concatenate(([onset[0]], onset, [onset[-1]]))
    smoothed = (padded[:-2] + padded[1:-1] + padded[2:]) / 3

    index = np.minimum(segment_count - 1, (np.arange(len(smoothed)) * segment_count) // len(smoothed))
    counts = np.bincount(index, minlength=segment_count)
    sums = np.bincount(index, weights=smoothed, minlength=segment_count)
    averaged = np.zeros(segment_count)
    np.divide(sums, counts, out=averaged, where=counts > 0)

    magnitude = float(np.linalg.norm(averaged))
    if magnitude == 0:
        return None
    return averaged / magnitude


def compare_rhythm_signatures(track_a: Track, track_b: Track) -> Optional[float]:
    signature_a = _rhythm_signature(track_a)
    signature_b = _rhythm_signature(track_b)
    if signature_a is None or signature_b is None or len(signature_a) != len(signature_b):
        return None
    return clamp(float(np.dot(signature_a, signature_b)))


def compare_kick_patterns(track_a: Track, track_b: Track) -> Optional[float]:
    kick_a = track_a.waveform.kick_signature if track_a.waveform else None
    kick_b = track_b.waveform.kick_signature if track_b.waveform else None
    if not kick_a or not kick_b:
        return None

    overlap = min(len(kick_a), len(kick_b))
    a = np.nan_to_num(np.asarray(kick_a[:overlap], dtype=np.float64))
    b = np.nan_to_num(np.asarray(kick_b[:overlap], dtype=np.float64))
    magnitude = float(np.sum(a * a) + np.sum(b * b))
    if not magnitude:
        return 0.5
    dot = float(np.dot(a, b))
    if dot <= 0:
        return 0.0
    return clamp((dot / math.sqrt(magnitude)) ** 0.35)


def compute_rhythm_score(track_a: Track, track_b: Track) -> float:
    base = clamp(
        compute_bpm_score(track_a.bpm, track_b.bpm) * 0.55
        + _phrase_alignment_score(track_a, track_b) * 0.3
        + _token_score(track_a, track_b) * 0.15
    )
    tempo = compare_tempo_maps(track_a, track_b)
    signature = compare_rhythm_signatures(track_a, track_b)
    kick = compare_kick_patterns(track_a, track_b)

    if tempo is not None and signature is not None and kick is not None:
        return clamp(base * 0.2 + tempo * 0.25 + signature * 0.3 + kick * 0.25)
    if signature is not None and kick is not None:
        return clamp(base * 0.3 + signature * 0.4 + kick * 0.3)
    if signature is not None:
        return clamp(base * 0.35 + signature * 0.65)
    if kick is not None:
        return clamp(base * 0.4 + kick * 0.6)

    # no waveform data, estimate from the beat grid and cue points
    spacing = compare_mark_spacing(track_a, track_b)
    if tempo is not None and spacing is not None:
        return clamp(base * 0.5 + tempo * 0.3 + spacing * 0.2)
    if tempo is not None:
        return clamp(base * 0.6 + tempo * 0.4)
    if spacing is not None:
        return clamp(base * 0.7 + spacing * 0.3)

    return base


# ----------------------
# Blending
# ----------------------


def compute_baseline_similarity(
    track_a: Track, track_b: Track, weights: Optional[dict] = None
) -> SimilarityResult:
    weights = normalize_weights(weights)
    components = Components(
        bpm=compute_bpm_score(track_a.bpm, track_b.bpm),
        key=compute_key_score(track_a.key, track_b.key),
        waveform=compute_waveform_score(track_a, track_b),
        rhythm=compute_rhythm_score(track_a, track_b),
    )
    score = clamp(sum(value * weights[name] for name, value in components.as_dict().items()))
    return SimilarityResult(score=score, components=components, weights=weights)


def component_tier(value: float) -> str:
    if value >= 0.85:
        return "strong"
    if value >= 0.65:
        return "good"
    if value >= 0.45:
        return "mixed"
    return "weak"


def summarize_similarity_components(components) -> str:
    if isinstance(components, Components):
        components = components.as_dict()
    components = components or {}
    return (
        f"BPM {component_tier(components.get('bpm') or 0)}, "
        f"key {component_tier(components.get('key') or 0)}, "
        f"waveform {component_tier(components.get('waveform') or 0)}, "
        f"rhythm {component_tier(components.get('rhythm') or 0)}"
    )


def _components_from_dict(data: dict) -> Components:
    return Components(
        bpm=float(data.get("bpm") or 0),
        key=float(data.get("key") or 0),
        waveform=float(data.get("waveform") or 0),
        rhythm=float(data.get("rhythm") or 0),
    )


class BaselineScorer:
    """
    Cache-first pair scoring.

    score_pair() returns the cached score for (pair, algorithm version)
    when there is one. Otherwise it computes the score and writes it
    back, tagged with the analysis run id.

    A cached score keeps the weights it was computed with. Bump the
    algorithm tag whenever the weights change, or old and new weight
    vectors end up mixed under one version.
    """

    def __init__(self, cache, algorithm_version: Optional[str] = None, weights: Optional[dict] = None):
        self.cache = cache
        self.algorithm_version = algorithm_version or create_analyzer_version()
        self.weights = normalize_weights(weights)
        self.cache_hits = 0
        self.computed = 0

    def score_pair(self, track_a: Track, track_b: Track, run_id: Optional[int] = None) -> PairScore:
        cached = self.cache.get_cached_similarity(track_a.id, track_b.id, self.algorithm_version)
        if cached is not None:
            self.cache_hits += 1
            return PairScore(
                track_a_id=cached.track_a_id,
                track_b_id=cached.track_b_id,
                score=cached.score,
                components=_components_from_dict(cached.components),
                weights=cached.components.get("weights") or self.weights,
                reason=cached.components.get("reason")
                or summarize_similarity_components(cached.components),
                from_cache=True,
            )

        result = compute_baseline_similarity(track_a, track_b, self.weights)
        reason = summarize_similarity_components(result.components)
        self.cache.save_similarity_score(
            track_a.id,
            track_b.id,
            self.algorithm_version,
            result.score,
            {**result.components.as_dict(), "reason": reason, "weights": result.weights},
            analysis_run_id=run_id,
        )
        self.computed += 1

        return PairScore(
            track_a_id=str(track_a.id),
            track_b_id=str(track_b.id),
            score=result.score,
            components=result.components,
            weights=result.weights,
            reason=reason,
            from_cache=False,
        )


def update_top_matches(top: List, row, limit: int) -> None:
    """Keep top sorted by score, at most limit long.

    A new row is rejected once the list is full unless it beats the
    current worst entry.
    """
    if limit <= 0:
        return
    if len(top) >= limit and row.score <= top[-1].score:
        return

    top.append(row)
    top.sort(key=lambda x: x.score, reverse=True)
    del top[limit:]
