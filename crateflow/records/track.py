from dataclasses import dataclass, field
from typing import Optional, Tuple

from .waveform import WaveformSummary


@dataclass(frozen=True)
class TempoPoint:
    inizio: Optional[float] = None
    bpm: Optional[float] = None
    battito: Optional[float] = None


@dataclass(frozen=True)
class MarkColor:
    red: Optional[float] = None
    green: Optional[float] = None
    blue: Optional[float] = None

    def is_set(self) -> bool:
        return any(x is not None for x in (self.red, self.green, self.blue))


@dataclass(frozen=True)
class PositionMark:
    name: str = ""
    type: str = ""
    start: Optional[float] = None
    end: Optional[float] = None
    number: Optional[float] = None
    inferred_kind: str = "unknown"
    color: MarkColor = field(default_factory=MarkColor)


@dataclass(frozen=True)
class TempoSummary:
    count: int = 0
    min_bpm: Optional[float] = None
    max_bpm: Optional[float] = None
    avg_bpm: Optional[float] = None
    avg_beat: Optional[float] = None
    tempo_change_count: int = 0
    distinct_bpm: int = 0


@dataclass(frozen=True)
class PositionSummary:
    count: int = 0
    types: dict = field(default_factory=dict)
    kinds: dict = field(default_factory=dict)
    loop_count: int = 0
    hotcue_count: int = 0
    memory_count: int = 0
    colored_count: int = 0


@dataclass(frozen=True)
class Track:
    id: str
    track_id: Optional[str] = None
    artist: str = ""
    title: str = ""
    album: str = ""
    genre: str = ""
    bpm: Optional[float] = None
    key: str = ""
    duration_seconds: Optional[float] = None
    bitrate: Optional[float] = None
    location: str = ""
    tempo_points: Tuple[TempoPoint, ...] = ()
    tempo_summary: Optional[TempoSummary] = None
    position_marks: Tuple[PositionMark, ...] = ()
    position_summary: Optional[PositionSummary] = None
    nested_tags: Optional[dict] = None
    waveform: Optional[WaveformSummary] = None
