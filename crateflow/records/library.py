from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Tuple

from .track import Track


@dataclass(frozen=True)
class ValidationIssue:
    severity: str  # "warning" | "error"
    code: str
    message: str
    context: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationReport:
    issues: Tuple[ValidationIssue, ...] = ()

    @property
    def warning_count(self) -> int:
        return sum(1 for x in self.issues if x.severity == "warning")

    @property
    def error_count(self) -> int:
        return sum(1 for x in self.issues if x.severity == "error")

    def codes(self) -> List[str]:
        return [x.code for x in self.issues]


@dataclass(frozen=True)
class Playlist:
    name: str
    path: str
    track_ids: Tuple[str, ...] = ()


@dataclass
class FolderNode:
    name: str
    path: str
    children: List["FolderNode"] = field(default_factory=list)


@dataclass(frozen=True)
class Library:
    tracks: Tuple[Track, ...]
    playlists: Tuple[Playlist, ...]
    folders: Tuple[str, ...]
    validation: ValidationReport
    parsed_at: datetime = field(default_factory=datetime.now)

    @property
    def tracks_by_id(self) -> Dict[str, Track]:
        return {t.id: t for t in self.tracks}
