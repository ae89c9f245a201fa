# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Parser for DJ library XML exports (<DJ_PLAYLISTS>).
#
# Exports can be hundreds of megabytes, so we don't build a DOM. The
# collection is scanned with regular expressions for <TRACK> records
# and the playlist tree is walked token by token with an explicit
# stack.
#
# Problems with individual fields are collected as warnings and the
# library is still returned. Structural problems (no root, no
# collection, duplicate or missing track identities) raise a
# LibraryValidationError carrying every issue that was found.

import hashlib
import logging
import re
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

from .errors import LibraryValidationError
from .records.library import Library, Playlist, ValidationIssue, ValidationReport
from .records.track import (
    MarkColor,
    PositionMark,
    PositionSummary,
    TempoPoint,
    TempoSummary,
    Track,
)
from .utils import as_number

logger = logging.getLogger(__name__)

MISSING_COLLECTION = "MISSING_COLLECTION"
MISSING_ROOT = "MISSING_ROOT"
INVALID_COLLECTION_ENTRIES = "INVALID_COLLECTION_ENTRIES"
UNESCAPED_AMPERSAND = "UNESCAPED_AMPERSAND"
MISSING_TRACK_IDENTITY = "MISSING_TRACK_IDENTITY"
MISSING_TRACK_TITLE = "MISSING_TRACK_TITLE"
MISSING_TRACK_ARTIST = "MISSING_TRACK_ARTIST"
DUPLICATE_TRACK_ID = "DUPLICATE_TRACK_ID"
INVALID_BPM = "INVALID_BPM"
INVALID_DURATION = "INVALID_DURATION"
INVALID_BITRATE = "INVALID_BITRATE"
SUSPICIOUS_LOCATION_ENCODING = "SUSPICIOUS_LOCATION_ENCODING"
MISSING_WINDOWS_PATH = "MISSING_WINDOWS_PATH"
MISSING_NODE_NAME = "MISSING_NODE_NAME"
INVALID_NODE_TYPE = "INVALID_NODE_TYPE"
PLAYLIST_WITHOUT_TRACKS = "PLAYLIST_WITHOUT_TRACKS"
DANGLING_TRACK_REFERENCE = "DANGLING_TRACK_REFERENCE"

NODE_TYPE_FOLDER = "0"
NODE_TYPE_PLAYLIST = "1"

_ATTRIBUTE_RE = re.compile(r'([A-Za-z0-9_:-]+)="([^"]*)"')
_ENTITY_RE = re.compile(r"&(amp|lt|gt|quot|apos|#[0-9]+|#x[0-9A-Fa-f]+);")
_RAW_AMPERSAND_RE = re.compile(r"&(?!amp;|lt;|gt;|quot;|apos;|#)")
_ENTITIES = {"amp": "&", "lt": "<", "gt": ">", "quot": '"', "apos": "'"}

_COLLECTION_RE = re.compile(r"<COLLECTION\b([^>]*)>(.*?)</COLLECTION>", re.I | re.S)
_TRACK_RE = re.compile(r"<TRACK\b([^>]*?)(?:/>|>(.*?)</TRACK>)", re.I | re.S)
_TEMPO_RE = re.compile(r"<TEMPO\b([^>]*?)/?>", re.I)
_POSITION_MARK_RE = re.compile(r"<POSITION_MARK\b([^>]*?)/?>", re.I)
_NESTED_TAG_RE = re.compile(r"<([A-Z0-9_:-]+)\b", re.I)
_PLAYLISTS_RE = re.compile(r"<PLAYLISTS\b[^>]*>(.*?)</PLAYLISTS>", re.I | re.S)
_NODE_TOKEN_RE = re.compile(r"<NODE\b([^>]*?)/?>|</NODE>|<TRACK\b([^>]*?)/?>", re.I)
_WINDOWS_PATH_RE = re.compile(r"^[A-Za-z]:/")
_LEADING_DRIVE_RE = re.compile(r"^/[A-Za-z]:/")
_PERCENT_RE = re.compile(r"%[0-9A-F]{2}", re.I)


def _issue(severity: str, code: str, message: str, **context) -> ValidationIssue:
    return ValidationIssue(severity=severity, code=code, message=message, context=context)


def decode_xml_entities(value: str) -> str:
    def replace(match):
        name = match.group(1)
        if not name.startswith("#"):
            return _ENTITIES[name]

        hexadecimal = name.startswith("#x")
        digits = name[2:] if hexadecimal else name[1:]
        code = int(digits, 16 if hexadecimal else 10) if len(digits) <= 8 else -1
        # not a character, keep the reference as written
        if code < 0 or code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
            return match.group(0)
        return chr(code)

    return _ENTITY_RE.sub(replace, value)


def parse_attributes(text: str) -> Dict[str, str]:
    return {name: decode_xml_entities(value) for name, value in _ATTRIBUTE_RE.findall(text or "")}


def parse_location(raw: Optional[str]) -> str:
    """Turn a file:// URL into a plain path with forward slashes"""
    if not raw:
        return ""

    value = raw.strip()
    if value[:5].lower() == "file:":
        parsed = urlparse(value)
        value = unquote(parsed.path)
    else:
        value = unquote(value)

    value = value.replace("\\", "/")
    if _LEADING_DRIVE_RE.match(value):
        value = value[1:]
    return value


def fallback_track_id(location: str, artist: str, title: str) -> Optional[str]:
    """Stable id for tracks exported without a TrackID"""
    if not location and not artist and not title:
        return None
    source = f"{location}|{artist}|{title}"
    return "h" + hashlib.sha1(source.encode("utf-8")).hexdigest()[:16]


def _validate_track_attributes(raw: str, attributes: dict, issues: list, index: int):
    track_id = attributes.get("TrackID")

    if _RAW_AMPERSAND_RE.search(raw):
        issues.append(
            _issue(
                "warning",
                UNESCAPED_AMPERSAND,
                "Track contains a raw ampersand. XML may fail in strict parsers.",
                track_index=index,
                track_id=track_id,
            )
        )

    if not attributes.get("Name"):
        issues.append(
            _issue(
                "warning",
                MISSING_TRACK_TITLE,
                "Track is missing title (Name).",
                track_index=index,
                track_id=track_id,
            )
        )

    if not attributes.get("Artist"):
        issues.append(
            _issue(
                "warning",
                MISSING_TRACK_ARTIST,
                "Track is missing artist.",
                track_index=index,
                track_id=track_id,
            )
        )

    for attribute, code, label in (
        ("AverageBpm", INVALID_BPM, "BPM"),
        ("TotalTime", INVALID_DURATION, "duration"),
        ("BitRate", INVALID_BITRATE, "bitrate"),
    ):
        if attribute in attributes and as_number(attributes[attribute]) is None:
            issues.append(
                _issue(
                    "warning",
                    code,
                    f"Track {label} is not numeric.",
                    track_index=index,
                    track_id=track_id,
                    value=attributes[attribute],
                )
            )

    location = attributes.get("Location")
    if location and _PERCENT_RE.search(location) and "%20" not in location.upper():
        issues.append(
            _issue(
                "warning",
                SUSPICIOUS_LOCATION_ENCODING,
                "Track path contains encoded characters besides spaces; verify special characters.",
                track_index=index,
                track_id=track_id,
                value=location,
            )
        )


def _infer_mark_kind(mark_type: str, end, number) -> str:
    if end is not None and end > 0:
        return "loop"
    if number is not None and number >= 0:
        return "hotcue"
    if mark_type == "0":
        return "memory"
    return "unknown"


def _parse_tempo_points(body: str) -> List[TempoPoint]:
    points = []
    for match in _TEMPO_RE.finditer(body):
        attributes = parse_attributes(match.group(1))
        points.append(
            TempoPoint(
                inizio=as_number(attributes.get("Inizio")),
                bpm=as_number(attributes.get("Bpm")),
                battito=as_number(attributes.get("Battito")),
            )
        )
    return points


def summarize_tempo_points(points: List[TempoPoint]) -> Optional[TempoSummary]:
    if not points:
        return None

    bpms = [x.bpm for x in points if x.bpm is not None]
    beats = [x.battito for x in points if x.battito is not None]

    changes = 0
    for prev, nxt in zip(points, points[1:]):
        if prev.bpm is not None and nxt.bpm is not None and abs(prev.bpm - nxt.bpm) >= 0.1:
            changes += 1

    return TempoSummary(
        count=len(points),
        min_bpm=min(bpms) if bpms else None,
        max_bpm=max(bpms) if bpms else None,
        avg_bpm=sum(bpms) / len(bpms) if bpms else None,
        avg_beat=sum(beats) / len(beats) if beats else None,
        tempo_change_count=changes,
        distinct_bpm=len({round(x * 10) / 10 for x in bpms}),
    )


def _parse_position_marks(body: str) -> List[PositionMark]:
    marks = []
    for match in _POSITION_MARK_RE.finditer(body):
        attributes = parse_attributes(match.group(1))
        start = as_number(attributes.get("Start"))
        end = as_number(attributes.get("End"))
        number = as_number(attributes.get("Num"))
        mark_type = attributes.get("Type", "")
        marks.append(
            PositionMark(
                name=attributes.get("Name", ""),
                type=mark_type,
                start=start,
                end=end,
                number=number,
                inferred_kind=_infer_mark_kind(mark_type, end, number),
                color=MarkColor(
                    red=as_number(attributes.get("Red")),
                    green=as_number(attributes.get("Green")),
                    blue=as_number(attributes.get("Blue")),
                ),
            )
        )
    return marks


def summarize_position_marks(marks: List[PositionMark]) -> Optional[PositionSummary]:
    if not marks:
        return None

    types: Dict[str, int] = {}
    kinds: Dict[str, int] = {}
    for mark in marks:
        type_key = mark.type or "Unknown"
        types[type_key] = types.get(type_key, 0) + 1
        kinds[mark.inferred_kind] = kinds.get(mark.inferred_kind, 0) + 1

    return PositionSummary(
        count=len(marks),
        types=types,
        kinds=kinds,
        loop_count=kinds.get("loop", 0),
        hotcue_count=kinds.get("hotcue", 0),
        memory_count=kinds.get("memory", 0),
        colored_count=sum(1 for x in marks if x.color.is_set()),
    )


def _summarize_nested_tags(body: str) -> Optional[dict]:
    counts: Dict[str, int] = {}
    for match in _NESTED_TAG_RE.finditer(body):
        tag = match.group(1).upper()
        if tag not in ("TEMPO", "POSITION_MARK"):
            counts[tag] = counts.get(tag, 0) + 1
    if not counts:
        return None
    return {"total": sum(counts.values()), "tags": counts}


def _parse_collection(xml_text: str, issues: list) -> List[Track]:
    match = _COLLECTION_RE.search(xml_text)
    if not match:
        issues.append(_issue("error", MISSING_COLLECTION, "Missing <COLLECTION> section."))
        return []

    collection_attributes = parse_attributes(match.group(1))
    body = match.group(2)

    tracks = []
    seen = set()
    for index, track_match in enumerate(_TRACK_RE.finditer(body)):
        raw = track_match.group(1)
        nested = track_match.group(2) or ""
        attributes = parse_attributes(raw)
        _validate_track_attributes(raw, attributes, issues, index)

        artist = attributes.get("Artist", "")
        title = attributes.get("Name", "")
        location = parse_location(attributes.get("Location"))
        track_id = attributes.get("TrackID") or fallback_track_id(location, artist, title)

        if not track_id:
            issues.append(
                _issue(
                    "error",
                    MISSING_TRACK_IDENTITY,
                    "Track missing TrackID, Location, artist and title.",
                    track_index=index,
                )
            )
            continue

        if track_id in seen:
            issues.append(
                _issue(
                    "error",
                    DUPLICATE_TRACK_ID,
                    "Duplicate track identifier detected.",
                    track_index=index,
                    track_id=track_id,
                )
            )
        seen.add(track_id)

        if location and not _WINDOWS_PATH_RE.match(location):
            issues.append(
                _issue(
                    "warning",
                    MISSING_WINDOWS_PATH,
                    "Track location is not a Windows absolute path.",
                    track_index=index,
                    track_id=track_id,
                    value=location,
                )
            )

        tempo_points = _parse_tempo_points(nested)
        position_marks = _parse_position_marks(nested)

        tracks.append(
            Track(
                id=track_id,
                track_id=attributes.get("TrackID"),
                artist=artist,
                title=title,
                album=attributes.get("Album", ""),
                genre=attributes.get("Genre", ""),
                bpm=as_number(attributes.get("AverageBpm")),
                key=attributes.get("Tonality", ""),
                duration_seconds=as_number(attributes.get("TotalTime")),
                bitrate=as_number(attributes.get("BitRate")),
                location=location,
                tempo_points=tuple(tempo_points),
                tempo_summary=summarize_tempo_points(tempo_points),
                position_marks=tuple(position_marks),
                position_summary=summarize_position_marks(position_marks),
                nested_tags=_summarize_nested_tags(nested) if nested else None,
            )
        )

    declared = collection_attributes.get("Entries")
    if declared is not None:
        declared_count = as_number(declared)
        if declared_count is None or declared_count != len(tracks):
            issues.append(
                _issue(
                    "warning",
                    INVALID_COLLECTION_ENTRIES,
                    "COLLECTION Entries attribute does not match parsed track count.",
                    declared_entries=declared,
                    parsed_tracks=len(tracks),
                )
            )

    return tracks


class _Node:
    __slots__ = ("name", "path", "kind", "track_ids")

    def __init__(self, name: str, path: str, kind: str):
        self.name = name
        self.path = path
        self.kind = kind
        self.track_ids: List[str] = []


def _close_playlist(node: _Node, playlists: list, issues: list):
    if not node.track_ids:
        issues.append(
            _issue(
                "warning",
                PLAYLIST_WITHOUT_TRACKS,
                "Playlist node has no track references.",
                playlist=node.path or node.name or None,
            )
        )
    playlists.append(node)


def _parse_playlists(xml_text: str, issues: list) -> List[Playlist]:
    match = _PLAYLISTS_RE.search(xml_text)
    if not match:
        return []

    stack: List[_Node] = []
    nodes: List[_Node] = []

    for token in _NODE_TOKEN_RE.finditer(match.group(1)):
        text = token.group(0)

        if text.startswith("</"):
            if stack:
                node = stack.pop()
                if node.kind == "playlist":
                    _close_playlist(node, nodes, issues)
            continue

        if token.group(1) is not None:
            attributes = parse_attributes(token.group(1))
            name = attributes.get("Name", "")
            node_type = attributes.get("Type", "")

            if node_type not in (NODE_TYPE_FOLDER, NODE_TYPE_PLAYLIST):
                issues.append(
                    _issue(
                        "warning",
                        INVALID_NODE_TYPE,
                        "NODE has unexpected Type value.",
                        type=node_type,
                        name=name or None,
                    )
                )
            if not name:
                issues.append(
                    _issue(
                        "warning",
                        MISSING_NODE_NAME,
                        "NODE is missing Name attribute.",
                        type=node_type or None,
                    )
                )

            parent_path = stack[-1].path if stack else ""
            path = f"{parent_path}/{name}" if parent_path and name else name
            kind = "playlist" if node_type == NODE_TYPE_PLAYLIST else "folder"
            node = _Node(name, path, kind)

            if not text.endswith("/>"):
                stack.append(node)
            elif kind == "playlist":
                _close_playlist(node, nodes, issues)
            continue

        attributes = parse_attributes(token.group(2))
        ref = attributes.get("Key") or attributes.get("TrackID") or attributes.get("ID")
        if ref:
            # tracks belong to the innermost open playlist
            for node in reversed(stack):
                if node.kind == "playlist":
                    node.track_ids.append(ref)
                    break

    return [
        Playlist(name=x.name, path=x.path, track_ids=tuple(x.track_ids))
        for x in nodes
        if x.name and x.track_ids
    ]


def derive_folders(playlists: List[Playlist]) -> List[str]:
    """Every strict prefix of every playlist path"""
    folders = set()
    for playlist in playlists:
        segments = [x for x in playlist.path.split("/") if x]
        for i in range(1, len(segments)):
            folders.add("/".join(segments[:i]))
    return sorted(folders)


def _validate_track_references(playlists, tracks_by_id, issues):
    for playlist in playlists:
        for track_id in playlist.track_ids:
            if track_id not in tracks_by_id:
                issues.append(
                    _issue(
                        "warning",
                        DANGLING_TRACK_REFERENCE,
                        "Playlist references track not found in collection.",
                        playlist=playlist.path,
                        track_id=track_id,
                    )
                )


def parse_library_xml(xml_text: str) -> Library:
    """Parse the full text of a library export"""
    issues: List[ValidationIssue] = []

    if "<DJ_PLAYLISTS" not in xml_text:
        issues.append(_issue("error", MISSING_ROOT, "Missing <DJ_PLAYLISTS> root element."))
        raise LibraryValidationError(
            "Not a DJ library XML export: missing <DJ_PLAYLISTS> root.", issues
        )

    tracks = _parse_collection(xml_text, issues)
    playlists = _parse_playlists(xml_text, issues)
    _validate_track_references(playlists, {x.id for x in tracks}, issues)

    errors = [x for x in issues if x.severity == "error"]
    if errors:
        logger.error(f"Library export has {len(errors)} fatal validation errors")
        # fatal issues first
        issues = errors + [x for x in issues if x.severity != "error"]
        raise LibraryValidationError("Library XML has validation errors.", issues)

    library = Library(
        tracks=tuple(tracks),
        playlists=tuple(playlists),
        folders=tuple(derive_folders(playlists)),
        validation=ValidationReport(issues=tuple(issues)),
        parsed_at=datetime.now(),
    )
    logger.info(
        f"Parsed {len(tracks)} tracks, {len(playlists)} playlists "
        f"({library.validation.warning_count} warnings)"
    )
    return library


def parse_library_file(path: str) -> Library:
    with open(path, "r", encoding="utf-8") as f:
        return parse_library_xml(f.read())
