import pytest

from crateflow.errors import LibraryValidationError
from crateflow.records.library import Playlist
from crateflow.xml_parser import (
    decode_xml_entities,
    derive_folders,
    fallback_track_id,
    parse_attributes,
    parse_library_file,
    parse_library_xml,
    parse_location,
)


def _collection(*tracks, entries=None):
    entries_attr = f' Entries="{entries}"' if entries is not None else ""
    return (
        "<DJ_PLAYLISTS Version=\"1.0.0\">"
        f"<COLLECTION{entries_attr}>{''.join(tracks)}</COLLECTION>"
        "</DJ_PLAYLISTS>"
    )


def test_parse_sample_library(sample_xml):
    """Test parsing a small but complete export."""
    library = parse_library_xml(sample_xml)

    assert [x.id for x in library.tracks] == ["1", "2", "3"]
    assert [x.path for x in library.playlists] == ["ROOT/Techno/Peak", "ROOT/Warmup"]
    assert list(library.folders) == ["ROOT", "ROOT/Techno"]
    assert library.validation.codes() == [
        "INVALID_BPM",
        "PLAYLIST_WITHOUT_TRACKS",
        "DANGLING_TRACK_REFERENCE",
    ]
    assert library.validation.warning_count == 3
    assert library.validation.error_count == 0


def test_track_fields(sample_xml):
    """Test the normalized fields of a parsed track."""
    library = parse_library_xml(sample_xml)
    track = library.tracks_by_id["1"]

    assert track.artist == "Artist A"
    assert track.title == "Track One"
    assert track.album == "Album"
    assert track.genre == "Techno"
    assert track.bpm == 126.0
    assert track.key == "8A"
    assert track.duration_seconds == 360.0
    assert track.bitrate == 320.0
    assert track.location == "C:/Music/Track One.mp3"


def test_entities_are_decoded(sample_xml):
    library = parse_library_xml(sample_xml)
    track = library.tracks_by_id["3"]

    assert track.artist == "Artist & C"
    # AverageBpm="abc"
    assert track.bpm is None


def test_tempo_and_position_marks(sample_xml):
    """Test TEMPO and POSITION_MARK children are parsed and summarized."""
    track = parse_library_xml(sample_xml).tracks_by_id["1"]

    assert len(track.tempo_points) == 2
    assert track.tempo_points[1].inizio == 60.0
    summary = track.tempo_summary
    assert summary.count == 2
    assert summary.min_bpm == 126.0
    assert summary.max_bpm == 128.0
    assert summary.avg_bpm == 127.0
    assert summary.tempo_change_count == 1
    assert summary.distinct_bpm == 2

    kinds = [x.inferred_kind for x in track.position_marks]
    assert kinds == ["hotcue", "loop"]
    marks = track.position_summary
    assert marks.count == 2
    assert marks.kinds == {"hotcue": 1, "loop": 1}
    assert marks.hotcue_count == 1
    assert marks.loop_count == 1
    assert marks.colored_count == 1


def test_tracks_without_children_have_no_summaries(sample_xml):
    track = parse_library_xml(sample_xml).tracks_by_id["2"]
    assert track.tempo_points == ()
    assert track.tempo_summary is None
    assert track.position_summary is None


def test_playlist_track_ids(sample_xml):
    library = parse_library_xml(sample_xml)
    peak, warmup = library.playlists

    assert peak.name == "Peak"
    assert peak.track_ids == ("1", "2")
    # dangling references are kept, only reported
    assert warmup.track_ids == ("3", "99")


def test_missing_root():
    """Test a document without the root element is rejected."""
    with pytest.raises(LibraryValidationError) as e:
        parse_library_xml("<PLAYLISTS></PLAYLISTS>")

    assert e.value.issues[0].code == "MISSING_ROOT"
    assert e.value.issues[0].severity == "error"


def test_missing_collection():
    with pytest.raises(LibraryValidationError) as e:
        parse_library_xml('<DJ_PLAYLISTS Version="1.0.0"></DJ_PLAYLISTS>')

    assert e.value.issues[0].code == "MISSING_COLLECTION"


def test_duplicate_track_id():
    """Test duplicate TrackIDs are a fatal error carrying all issues."""
    xml = _collection(
        '<TRACK TrackID="1" Name="A" Artist="X" AverageBpm="zzz"/>',
        '<TRACK TrackID="1" Name="B" Artist="Y"/>',
    )
    with pytest.raises(LibraryValidationError) as e:
        parse_library_xml(xml)

    codes = [x.code for x in e.value.issues]
    assert codes[0] == "DUPLICATE_TRACK_ID"
    # warnings found along the way are reported too
    assert "INVALID_BPM" in codes


def test_missing_identity_is_an_error():
    xml = _collection('<TRACK Kind="MP3 File"/>')
    with pytest.raises(LibraryValidationError) as e:
        parse_library_xml(xml)

    codes = [x.code for x in e.value.issues]
    assert "MISSING_TRACK_IDENTITY" in codes
    assert "MISSING_TRACK_TITLE" in codes
    assert "MISSING_TRACK_ARTIST" in codes


def test_fallback_id_for_tracks_without_trackid():
    """Test tracks without a TrackID get a stable derived id."""
    xml = _collection('<TRACK Name="A" Artist="X" Location="file://localhost/C:/a.mp3"/>')

    first = parse_library_xml(xml).tracks[0]
    second = parse_library_xml(xml).tracks[0]

    assert first.id.startswith("h")
    assert len(first.id) == 17
    assert first.id == second.id
    assert first.track_id is None


def test_field_warnings():
    xml = _collection(
        '<TRACK TrackID="1" Name="A" Artist="X" TotalTime="n/a" BitRate="?" '
        'Location="file://localhost/C:/Music/Caf%C3%A9.mp3"/>',
        entries=5,
    )
    library = parse_library_xml(xml)
    codes = library.validation.codes()

    assert "INVALID_DURATION" in codes
    assert "INVALID_BITRATE" in codes
    assert "SUSPICIOUS_LOCATION_ENCODING" in codes
    assert "INVALID_COLLECTION_ENTRIES" in codes
    assert library.tracks[0].location == "C:/Music/Café.mp3"
    assert library.tracks[0].duration_seconds is None


def test_raw_ampersand_and_non_windows_path():
    xml = _collection('<TRACK TrackID="1" Name="A & B" Artist="X" Location="file:///Users/me/a.mp3"/>')
    library = parse_library_xml(xml)
    codes = library.validation.codes()

    assert "UNESCAPED_AMPERSAND" in codes
    assert "MISSING_WINDOWS_PATH" in codes
    assert library.tracks[0].location == "/Users/me/a.mp3"


def test_invalid_and_unnamed_nodes():
    xml = (
        '<DJ_PLAYLISTS><COLLECTION><TRACK TrackID="1" Name="A" Artist="X" '
        'Location="file://localhost/C:/a.mp3"/></COLLECTION>'
        "<PLAYLISTS>"
        '<NODE Type="0" Name="ROOT">'
        '<NODE Type="7" Name="Odd"></NODE>'
        '<NODE Type="1"><TRACK Key="1"/></NODE>'
        "</NODE>"
        "</PLAYLISTS></DJ_PLAYLISTS>"
    )
    library = parse_library_xml(xml)
    codes = library.validation.codes()

    assert "INVALID_NODE_TYPE" in codes
    assert "MISSING_NODE_NAME" in codes
    # unnamed playlists are not returned
    assert library.playlists == ()


def test_nested_playlist_references_go_to_innermost_playlist():
    xml = (
        '<DJ_PLAYLISTS><COLLECTION>'
        '<TRACK TrackID="1" Name="A" Artist="X" Location="file://localhost/C:/a.mp3"/>'
        '<TRACK TrackID="2" Name="B" Artist="X" Location="file://localhost/C:/b.mp3"/>'
        "</COLLECTION><PLAYLISTS>"
        '<NODE Type="0" Name="ROOT">'
        '<NODE Type="1" Name="Outer"><TRACK Key="1"/>'
        '<NODE Type="1" Name="Inner"><TRACK TrackID="2"/></NODE>'
        "</NODE></NODE>"
        "</PLAYLISTS></DJ_PLAYLISTS>"
    )
    library = parse_library_xml(xml)
    by_name = {x.name: x for x in library.playlists}

    assert by_name["Outer"].track_ids == ("1",)
    assert by_name["Inner"].track_ids == ("2",)
    assert by_name["Inner"].path == "ROOT/Outer/Inner"


def test_parse_location():
    assert parse_location("file://localhost/C:/Music/Track%20One.mp3") == "C:/Music/Track One.mp3"
    assert parse_location("file:///D:/a%26b.mp3") == "D:/a&b.mp3"
    assert parse_location("C:\\Music\\a.mp3") == "C:/Music/a.mp3"
    assert parse_location("") == ""
    assert parse_location(None) == ""


def test_decode_entities():
    assert decode_xml_entities("a &amp; b &lt;c&gt; &quot;d&quot; &apos;e&apos;") == "a & b <c> \"d\" 'e'"
    assert decode_xml_entities("&#233;&#xE9;") == "éé"


def test_references_to_non_characters_are_kept():
    assert decode_xml_entities("Bad &#x110000; ref") == "Bad &#x110000; ref"
    assert decode_xml_entities("&#xD800;&#55296;") == "&#xD800;&#55296;"
    assert decode_xml_entities("&#" + "9" * 5000 + ";") == "&#" + "9" * 5000 + ";"

    library = parse_library_xml(_collection('<TRACK TrackID="1" Name="Bad &#x110000; ref" Artist="X"/>'))
    assert library.tracks[0].title == "Bad &#x110000; ref"


def test_parse_attributes():
    assert parse_attributes('Name="A &amp; B" Type="1"') == {"Name": "A & B", "Type": "1"}
    assert parse_attributes("") == {}


def test_fallback_track_id():
    assert fallback_track_id("", "", "") is None
    assert fallback_track_id("C:/a.mp3", "", "") != fallback_track_id("C:/b.mp3", "", "")


def test_derive_folders():
    playlists = [
        Playlist(name="Peak", path="ROOT/Techno/Peak"),
        Playlist(name="Top", path="Top"),
    ]
    assert derive_folders(playlists) == ["ROOT", "ROOT/Techno"]


def test_parse_library_file(tmp_path, sample_xml):
    path = tmp_path / "library.xml"
    path.write_text(sample_xml, encoding="utf-8")

    library = parse_library_file(str(path))
    assert len(library.tracks) == 3
