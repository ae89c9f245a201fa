from crateflow.library import (
    build_folder_tree,
    build_track_playlist_index,
    filter_tracks_by_folders,
    select_playlists_by_folders,
    summarize_library,
)
from crateflow.records.library import Playlist
from crateflow.xml_parser import parse_library_xml


def test_summarize_library(sample_xml):
    summary = summarize_library(parse_library_xml(sample_xml))

    assert summary == {
        "tracks": 3,
        "playlists": 2,
        "folders": 2,
        "with_bpm": 2,
        "with_key": 3,
        "with_tempo_points": 1,
        "with_position_marks": 1,
        "with_waveform": 0,
        "warnings": 3,
        "errors": 0,
    }


def test_select_playlists_by_folders():
    """Test folder selection matches whole path segments only."""
    playlists = [
        Playlist(name="Peak", path="ROOT/Techno/Peak", track_ids=("1",)),
        Playlist(name="Deep", path="ROOT/TechnoDeep/Deep", track_ids=("2",)),
        Playlist(name="Warmup", path="ROOT/Warmup", track_ids=("3",)),
    ]

    selected = select_playlists_by_folders(playlists, ["ROOT/Techno"])
    assert [x.name for x in selected] == ["Peak"]

    selected = select_playlists_by_folders(playlists, ["ROOT/Warmup", "ROOT/Techno/"])
    assert [x.name for x in selected] == ["Peak", "Warmup"]

    assert len(select_playlists_by_folders(playlists, [])) == 3
    assert len(select_playlists_by_folders(playlists, None)) == 3


def test_filter_tracks_by_folders(sample_xml):
    """Test filtering keeps collection order."""
    library = parse_library_xml(sample_xml)

    assert [x.id for x in filter_tracks_by_folders(library, ["ROOT/Techno"])] == ["1", "2"]
    assert [x.id for x in filter_tracks_by_folders(library, ["ROOT/Warmup"])] == ["3"]
    assert [x.id for x in filter_tracks_by_folders(library, ["ROOT"])] == ["1", "2", "3"]
    assert [x.id for x in filter_tracks_by_folders(library)] == ["1", "2", "3"]
    assert filter_tracks_by_folders(library, ["Nope"]) == []


def test_build_track_playlist_index():
    playlists = [
        Playlist(name="A", path="ROOT/A", track_ids=("1", "2")),
        Playlist(name="B", path="ROOT/B", track_ids=("2", "2")),
    ]
    index = build_track_playlist_index(playlists)

    assert index == {"1": ["ROOT/A"], "2": ["ROOT/A", "ROOT/B"]}


def test_build_folder_tree():
    roots = build_folder_tree(["ROOT/Techno", "ROOT", "ROOT/House", "Other"])

    assert [x.name for x in roots] == ["Other", "ROOT"]
    root = roots[1]
    assert [x.path for x in root.children] == ["ROOT/House", "ROOT/Techno"]
    assert root.children[0].children == []
