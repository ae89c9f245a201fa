from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class Color:
    red: int = 0
    green: int = 0
    blue: int = 0

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.red, self.green, self.blue)


@dataclass(frozen=True)
class WaveformSample:
    index: int
    time_seconds: float
    red: int
    green: int
    blue: int
    height: int


@dataclass(frozen=True)
class SectionCandidate:
    """A payload window found behind one tag occurrence"""

    section_offset: int
    payload_start: int
    payload_end: int
    mode: str

    @property
    def payload_length(self) -> int:
        return self.payload_end - self.payload_start


@dataclass
class WaveformSection:
    mode: str
    section_offset: int
    payload_offset: int
    payload_length: int
    sample_rate: int
    samples: List[WaveformSample] = field(default_factory=list)

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @property
    def duration_seconds(self) -> float:
        return round(len(self.samples) / self.sample_rate, 3)


@dataclass(frozen=True)
class WaveformSummary:
    sample_rate: int = 150
    sample_count: int = 0
    duration_seconds: float = 0.0
    avg_color: Color = field(default_factory=Color)
    height_avg: float = 0.0
    height_max: int = 0
    bins: Tuple[float, ...] = ()
    bin_colors: Tuple[Color, ...] = ()
    rhythm_signature: Optional[Tuple[float, ...]] = None
    kick_signature: Optional[Tuple[float, ...]] = None
    ext_path: Optional[str] = None
