# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

from typing import Dict, Iterable, List, Optional

from .records.library import FolderNode, Library, Playlist
from .records.track import Track


def summarize_library(library: Library) -> dict:
    tracks = library.tracks
    return {
        "tracks": len(tracks),
        "playlists": len(library.playlists),
        "folders": len(library.folders),
        "with_bpm": sum(1 for x in tracks if x.bpm is not None),
        "with_key": sum(1 for x in tracks if x.key),
        "with_tempo_points": sum(1 for x in tracks if x.tempo_points),
        "with_position_marks": sum(1 for x in tracks if x.position_marks),
        "with_waveform": sum(1 for x in tracks if x.waveform is not None),
        "warnings": library.validation.warning_count,
        "errors": library.validation.error_count,
    }


def _in_folder(path: str, folder: str) -> bool:
    return path == folder or path.startswith(folder + "/")


def select_playlists_by_folders(
    playlists: Iterable[Playlist], folders: Optional[Iterable[str]] = None
) -> List[Playlist]:
    """Playlists at or below any of the given folders.

    No folders (or an empty selection) selects every playlist.
    """
    playlists = list(playlists)
    selected = [x.strip("/") for x in (folders or []) if x and x.strip("/")]
    if not selected:
        return playlists

    return [p for p in playlists if any(_in_folder(p.path, f) for f in selected)]


def filter_tracks_by_folders(library: Library, folders: Optional[Iterable[str]] = None) -> List[Track]:
    """Tracks referenced by the playlists under the given folders.

    Tracks keep collection order. With no folder selection the whole
    collection is returned.
    """
    folders = [x for x in (folders or []) if x]
    if not folders:
        return list(library.tracks)

    wanted = set()
    for playlist in select_playlists_by_folders(library.playlists, folders):
        wanted.update(playlist.track_ids)

    return [x for x in library.tracks if x.id in wanted]


def build_track_playlist_index(playlists: Iterable[Playlist]) -> Dict[str, List[str]]:
    """track id -> paths of every playlist containing it"""
    index: Dict[str, List[str]] = {}
    for playlist in playlists:
        for track_id in playlist.track_ids:
            paths = index.setdefault(track_id, [])
            if playlist.path not in paths:
                paths.append(playlist.path)
    return index


def build_folder_tree(folders: Iterable[str]) -> List[FolderNode]:
    roots: List[FolderNode] = []
    nodes: Dict[str, FolderNode] = {}

    for folder in sorted(folders):
        segments = [x for x in folder.split("/") if x]
        path = ""
        siblings = roots
        for segment in segments:
            path = f"{path}/{segment}" if path else segment
            node = nodes.get(path)
            if node is None:
                node = FolderNode(name=segment, path=path)
                nodes[path] = node
                siblings.append(node)
            siblings = node.children

    return roots
