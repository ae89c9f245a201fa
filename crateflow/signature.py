# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

import hashlib
import json

from .records.track import Track
from .utils import as_number

DEFAULT_SIGNATURE_VERSION = "v1"


def signature_source(track: Track) -> str:
    """The scoring relevant fields of a track, serialized in a fixed order"""
    return json.dumps(
        {
            "artist": track.artist or "",
            "title": track.title or "",
            "bpm": as_number(track.bpm),
            "key": track.key or "",
            "durationSeconds": as_number(track.duration_seconds),
            "genre": track.genre or "",
        },
        separators=(",", ":"),
    )


def create_track_signature(track: Track, signature_version: str = DEFAULT_SIGNATURE_VERSION) -> str:
    source = f"{signature_version}:{signature_source(track)}"
    return hashlib.sha1(source.encode("utf-8")).hexdigest()
