# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Decoder for the per-track analysis files written by DJ software.
#
# The files are containers of sections, each starting with a 4 byte
# ASCII tag. We only care about two of them:
#  PPTH - the path of the audio file the analysis belongs to
#  PWV5 - the color waveform, one 2 byte word per sample at 150Hz
#
# The header that follows a tag isn't laid out the same way in every
# file we've seen, and the tag bytes can also show up by accident
# inside unrelated binary data. So for every occurrence of the tag we
# try each known layout, throw away anything that doesn't fit in the
# buffer, and keep the largest valid payload.
#
# The path record and the waveform length used for matching files to
# tracks are read through pyrekordbox, which parses the tag list.

import struct
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np
from pyrekordbox.anlz import AnlzFile

from .errors import AnalysisFormatError
from .records.waveform import (
    Color,
    SectionCandidate,
    WaveformSample,
    WaveformSection,
    WaveformSummary,
)

MAGIC = b"PMAI"
TAG_PATH = b"PPTH"
TAG_WAVEFORM = b"PWV5"

SAMPLE_RATE = 150
DEFAULT_BIN_COUNT = 96
DEFAULT_RHYTHM_SEGMENTS = 64
DEFAULT_KICK_SEGMENTS = 16

# 3 bit channel -> 8 bit channel, round(value * 255 / 7)
_CHANNEL_SCALE = np.array([int(v * 255 / 7 + 0.5) for v in range(8)], dtype=np.int64)

SectionLayout = Callable[[bytes, int], Optional[SectionCandidate]]


def _to_bytes(data) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    raise TypeError("Expected bytes, bytearray or memoryview input.")


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def find_all_tag_offsets(buffer: bytes, tag: bytes) -> List[int]:
    """Every offset at which tag occurs, overlapping matches included"""
    offsets = []
    index = buffer.find(tag)
    while index >= 0:
        offsets.append(index)
        index = buffer.find(tag, index + 1)
    return offsets


def _read_header(buffer: bytes, offset: int):
    # All layouts need the tag plus two 32 bit words
    if offset < 0 or offset + 12 > len(buffer):
        return None
    return struct.unpack_from(">II", buffer, offset + 4)


def _candidate(
    buffer: bytes, offset: int, start: int, end: int, mode: str
) -> Optional[SectionCandidate]:
    if start >= end:
        return None
    if start < 0 or end > len(buffer):
        return None
    length = end - start
    if length < 2 or length % 2 != 0:
        return None
    return SectionCandidate(
        section_offset=offset, payload_start=start, payload_end=end, mode=mode
    )


def compact_layout(buffer: bytes, offset: int) -> Optional[SectionCandidate]:
    """tag (4) + data length (4) + payload"""
    header = _read_header(buffer, offset)
    if header is None:
        return None
    length_a, _ = header
    return _candidate(
        buffer, offset, offset + 8, offset + 8 + length_a, "compact-8+len"
    )


def extended_layout(buffer: bytes, offset: int) -> Optional[SectionCandidate]:
    """tag (4) + header length (4) + total length (4) + ... + payload"""
    header = _read_header(buffer, offset)
    if header is None:
        return None
    length_a, length_b = header
    return _candidate(
        buffer,
        offset,
        offset + _clamp(length_a, 0, len(buffer)),
        offset + length_b,
        "extended-header+total",
    )


def offset_length_layout(buffer: bytes, offset: int) -> Optional[SectionCandidate]:
    """tag (4) + data offset (4) + data length (4)"""
    header = _read_header(buffer, offset)
    if header is None:
        return None
    length_a, length_b = header
    return _candidate(
        buffer, offset, offset + length_a, offset + length_a + length_b, "offset+len"
    )


# New layouts only need to be added here
SECTION_LAYOUTS: Sequence[SectionLayout] = (
    compact_layout,
    extended_layout,
    offset_length_layout,
)


def find_section_candidates(
    buffer: bytes, tag: bytes = TAG_WAVEFORM, layouts: Sequence[SectionLayout] = SECTION_LAYOUTS
) -> List[SectionCandidate]:
    candidates = []
    for offset in find_all_tag_offsets(buffer, tag):
        for layout in layouts:
            candidate = layout(buffer, offset)
            if candidate is not None:
                candidates.append(candidate)
    return candidates


def select_largest(candidates: List[SectionCandidate]) -> Optional[SectionCandidate]:
    """The largest payload wins, the earliest one on a tie"""
    if not candidates:
        return None
    return max(candidates, key=lambda c: c.payload_length)


def find_waveform_section(data) -> Optional[SectionCandidate]:
    buffer = _to_bytes(data)
    return select_largest(find_section_candidates(buffer, TAG_WAVEFORM))


def decode_word(word: int):
    """Split a waveform word into (red, green, blue, height).

    bits 15-13 red, 12-10 green, 9-7 blue, 6-2 height. Colors are scaled
    up to 8 bits.
    """
    red3 = (word >> 13) & 0x07
    green3 = (word >> 10) & 0x07
    blue3 = (word >> 7) & 0x07
    height = (word >> 2) & 0x1F
    return (
        int(_CHANNEL_SCALE[red3]),
        int(_CHANNEL_SCALE[green3]),
        int(_CHANNEL_SCALE[blue3]),
        height,
    )


def _decode_channels(payload: bytes):
    count = len(payload) // 2
    if count == 0:
        words = np.zeros(0, dtype=np.int64)
    else:
        words = np.frombuffer(payload, dtype=">u2", count=count).astype(np.int64)
    red = _CHANNEL_SCALE[(words >> 13) & 0x07]
    green = _CHANNEL_SCALE[(words >> 10) & 0x07]
    blue = _CHANNEL_SCALE[(words >> 7) & 0x07]
    height = (words >> 2) & 0x1F
    return red, green, blue, height


def decode_samples(payload, sample_rate: int = SAMPLE_RATE) -> List[WaveformSample]:
    payload = _to_bytes(payload)
    red, green, blue, height = _decode_channels(payload)
    return [
        WaveformSample(
            index=i,
            time_seconds=round(i / sample_rate, 6),
            red=int(red[i]),
            green=int(green[i]),
            blue=int(blue[i]),
            height=int(height[i]),
        )
        for i in range(len(height))
    ]


def _round_half_up(values):
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5).astype(np.int64)


def _bucket_index(total: int, buckets: int):
    return np.minimum(buckets - 1, (np.arange(total, dtype=np.int64) * buckets) // total)


def _bucket_mean(index, values, buckets: int):
    counts = np.bincount(index, minlength=buckets)
    sums = np.bincount(index, weights=values, minlength=buckets)
    means = np.zeros(buckets, dtype=np.float64)
    np.divide(sums, counts, out=means, where=counts > 0)
    return means, counts


def _unit_vector(values, digits: int = 6):
    magnitude = float(np.sqrt(np.sum(values * values)))
    if magnitude == 0 or not np.isfinite(magnitude):
        return tuple(0.0 for _ in range(len(values)))
    return tuple(float(x) for x in np.round(values / magnitude, digits))


def summarize_payload(
    payload,
    bin_count: int = DEFAULT_BIN_COUNT,
    sample_rate: int = SAMPLE_RATE,
    rhythm_segment_count: int = DEFAULT_RHYTHM_SEGMENTS,
    kick_segment_count: int = DEFAULT_KICK_SEGMENTS,
) -> WaveformSummary:
    """Compress the per-sample waveform into fixed size bins.

    Heights and colors are averaged per bin. The rhythm signature is the
    positive change in height (onsets) averaged over segments, and the
    kick signature is a coarser version of the same. Both are unit
    vectors.
    """
    payload = _to_bytes(payload)
    bin_count = _clamp(int(bin_count), 16, 512)
    rhythm_segment_count = _clamp(int(rhythm_segment_count), 16, 128)
    kick_segment_count = _clamp(int(kick_segment_count), 8, 64)

    red, green, blue, height = _decode_channels(payload)
    total = len(height)

    if total == 0:
        return WaveformSummary(
            sample_rate=sample_rate,
            bins=tuple(0.0 for _ in range(bin_count)),
            bin_colors=tuple(Color() for _ in range(bin_count)),
            rhythm_signature=tuple(0.0 for _ in range(rhythm_segment_count)),
            kick_signature=tuple(0.0 for _ in range(kick_segment_count)),
        )

    index = _bucket_index(total, bin_count)
    bin_heights, counts = _bucket_mean(index, height, bin_count)
    bin_red, _ = _bucket_mean(index, red, bin_count)
    bin_green, _ = _bucket_mean(index, green, bin_count)
    bin_blue, _ = _bucket_mean(index, blue, bin_count)
    bin_red, bin_green, bin_blue = (
        _round_half_up(bin_red),
        _round_half_up(bin_green),
        _round_half_up(bin_blue),
    )

    onsets = np.clip(np.diff(height, prepend=0), 0, None)
    rhythm_index = _bucket_index(total, rhythm_segment_count)
    rhythm, _ = _bucket_mean(rhythm_index, onsets, rhythm_segment_count)

    kick_index = _bucket_index(rhythm_segment_count, kick_segment_count)
    kick, _ = _bucket_mean(kick_index, rhythm, kick_segment_count)

    avg_color = _round_half_up([red.mean(), green.mean(), blue.mean()])

    return WaveformSummary(
        sample_rate=sample_rate,
        sample_count=total,
        duration_seconds=round(total / sample_rate, 3),
        avg_color=Color(int(avg_color[0]), int(avg_color[1]), int(avg_color[2])),
        height_avg=round(float(height.mean()), 4),
        height_max=int(height.max()),
        bins=tuple(round(float(x), 4) for x in bin_heights),
        bin_colors=tuple(
            Color(int(r), int(g), int(b)) if c else Color()
            for r, g, b, c in zip(bin_red, bin_green, bin_blue, counts)
        ),
        rhythm_signature=_unit_vector(rhythm),
        kick_signature=_unit_vector(kick),
    )


def extract_waveform(data, sample_rate: int = SAMPLE_RATE) -> Optional[WaveformSection]:
    """Decode every sample of the waveform section, or None if there isn't one"""
    buffer = _to_bytes(data)
    section = find_waveform_section(buffer)
    if section is None:
        return None

    payload = buffer[section.payload_start : section.payload_end]
    return WaveformSection(
        mode=section.mode,
        section_offset=section.section_offset,
        payload_offset=section.payload_start,
        payload_length=section.payload_length,
        sample_rate=sample_rate,
        samples=decode_samples(payload, sample_rate),
    )


def extract_waveform_summary(
    data,
    bin_count: int = DEFAULT_BIN_COUNT,
    sample_rate: int = SAMPLE_RATE,
    rhythm_segment_count: int = DEFAULT_RHYTHM_SEGMENTS,
    kick_segment_count: int = DEFAULT_KICK_SEGMENTS,
) -> Optional[WaveformSummary]:
    buffer = _to_bytes(data)
    section = find_waveform_section(buffer)
    if section is None:
        return None

    return summarize_payload(
        buffer[section.payload_start : section.payload_end],
        bin_count=bin_count,
        sample_rate=sample_rate,
        rhythm_segment_count=rhythm_segment_count,
        kick_segment_count=kick_segment_count,
    )


# ----------------------
# Path records
# ----------------------


@dataclass(frozen=True)
class AnalysisFileInfo:
    path: Optional[str]
    duration_seconds: Optional[float]


def load_analysis_file(data) -> AnlzFile:
    """Parse the tag list of an analysis file with pyrekordbox.

    Raises AnalysisFormatError if the buffer isn't an analysis file or
    one of its tags can't be parsed.
    """
    buffer = _to_bytes(data)
    if len(buffer) < 12 or not buffer.startswith(MAGIC):
        raise AnalysisFormatError("Missing PMAI file header.")

    try:
        return AnlzFile.parse(buffer)
    except Exception as e:
        raise AnalysisFormatError(f"Unable to parse analysis file: {e}") from e


def _find_tag(anlz_file: AnlzFile, tag_type: str):
    for tag in anlz_file.tags:
        if tag.type == tag_type:
            return tag
    return None


def _clean_path(path) -> Optional[str]:
    if not path:
        return None
    path = str(path).rstrip("\x00").strip()
    if path.startswith("?/"):
        path = path[2:]
    return path or None


def read_track_path(data) -> Optional[str]:
    """The audio file path stored in the PPTH tag, None if there isn't one"""
    tag = _find_tag(load_analysis_file(data), TAG_PATH.decode("ascii"))
    if tag is None:
        return None
    return _clean_path(tag.content.path)


def parse_analysis_file(data, sample_rate: int = SAMPLE_RATE) -> AnalysisFileInfo:
    """Pull the embedded track path and the waveform duration out of a file.

    Raises AnalysisFormatError if the buffer isn't an analysis file at all.
    Missing sections are reported as None. When pyrekordbox finds no PWV5
    tag the duration comes from scanning for the waveform section.
    """
    buffer = _to_bytes(data)
    anlz_file = load_analysis_file(buffer)

    path_tag = _find_tag(anlz_file, TAG_PATH.decode("ascii"))
    path = _clean_path(path_tag.content.path) if path_tag is not None else None

    duration = None
    waveform_tag = _find_tag(anlz_file, TAG_WAVEFORM.decode("ascii"))
    if waveform_tag is not None:
        duration = waveform_tag.content.len_entries / sample_rate
    else:
        section = find_waveform_section(buffer)
        if section is not None:
            duration = (section.payload_length // 2) / sample_rate

    return AnalysisFileInfo(path=path, duration_seconds=duration)
