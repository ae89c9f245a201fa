import os

from sqlalchemy.exc import OperationalError

from crateflow.config import WaveformSettings
from crateflow.correlator import MappingEntry, MappingReport
from crateflow.waveforms import attach_waveform_summaries


def _mapping(entries):
    return MappingReport(
        anlz_root="/anlz",
        mapping={
            track_id: MappingEntry(
                ext_path=ext_path,
                rel_path=os.path.basename(ext_path),
                ppth_path="/Music/x.mp3",
                filename="x.mp3",
                match_type="unique-filename",
            )
            for track_id, ext_path in entries.items()
        },
    )


class BrokenCache:
    """A cache that can be read but not written"""

    def get_waveform_summary(self, ext_path):
        return None

    def save_waveform_summary(self, ext_path, summary):
        raise OperationalError("INSERT", {}, Exception("database is locked"))


def test_attach_waveform_summaries(tmp_path, make_analysis_file, make_track, cache):
    ext_path = make_analysis_file(str(tmp_path / "a" / "ANLZ0000.EXT"), "/Music/a.mp3", 4)
    tracks = [make_track("1"), make_track("2")]

    attached, stats = attach_waveform_summaries(tracks, _mapping({"1": ext_path}), cache)

    assert attached[0].waveform is not None
    assert attached[0].waveform.sample_count == 600
    assert attached[0].waveform.ext_path == ext_path
    assert len(attached[0].waveform.bins) == 96
    assert attached[1] is tracks[1]
    # inputs are not modified
    assert tracks[0].waveform is None
    assert stats == {
        "attached": 1,
        "attempted": 1,
        "missing_mapping": 1,
        "cache_hits": 0,
        "parsed_from_file": 1,
        "cache_write_errors": 0,
    }
    assert cache.get_waveform_summary(ext_path).sample_count == 600


def test_second_pass_reads_the_cache(tmp_path, make_analysis_file, make_track, cache):
    ext_path = make_analysis_file(str(tmp_path / "a" / "ANLZ0000.EXT"), "/Music/a.mp3", 4)
    tracks = [make_track("1")]
    mapping = _mapping({"1": ext_path})

    first, _ = attach_waveform_summaries(tracks, mapping, cache)
    os.remove(ext_path)
    second, stats = attach_waveform_summaries(tracks, mapping, cache)

    assert stats["cache_hits"] == 1
    assert stats["parsed_from_file"] == 0
    assert second[0].waveform.bins == first[0].waveform.bins


def test_cached_summary_with_other_bin_count_is_decoded_again(
    tmp_path, make_analysis_file, make_track, cache
):
    ext_path = make_analysis_file(str(tmp_path / "a" / "ANLZ0000.EXT"), "/Music/a.mp3", 4)
    tracks = [make_track("1")]
    mapping = _mapping({"1": ext_path})

    attach_waveform_summaries(tracks, mapping, cache, settings=WaveformSettings(bin_count=32))
    attached, stats = attach_waveform_summaries(tracks, mapping, cache)

    assert stats["cache_hits"] == 0
    assert stats["parsed_from_file"] == 1
    assert len(attached[0].waveform.bins) == 96
    assert len(cache.get_waveform_summary(ext_path).bins) == 96


def test_shared_files_are_decoded_once(tmp_path, make_analysis_file, make_track):
    ext_path = make_analysis_file(str(tmp_path / "a" / "ANLZ0000.EXT"), "/Music/a.mp3", 2)
    tracks = [make_track("1"), make_track("2")]

    attached, stats = attach_waveform_summaries(tracks, _mapping({"1": ext_path, "2": ext_path}))

    assert stats["attached"] == 2
    assert stats["parsed_from_file"] == 1
    assert attached[0].waveform is attached[1].waveform


def test_missing_and_empty_files(tmp_path, make_analysis_file, make_track):
    no_waveform = make_analysis_file(str(tmp_path / "b" / "ANLZ0000.EXT"), "/Music/b.mp3")
    tracks = [make_track("1"), make_track("2")]
    mapping = _mapping({"1": str(tmp_path / "missing.EXT"), "2": no_waveform})

    attached, stats = attach_waveform_summaries(tracks, mapping)

    assert stats["attempted"] == 2
    assert stats["attached"] == 0
    assert stats["parsed_from_file"] == 1
    assert all(x.waveform is None for x in attached)


def test_cache_write_errors_are_counted(tmp_path, make_analysis_file, make_track):
    """Test a failing cache write still attaches the summary."""
    ext_path = make_analysis_file(str(tmp_path / "a" / "ANLZ0000.EXT"), "/Music/a.mp3", 2)

    attached, stats = attach_waveform_summaries(
        [make_track("1")], _mapping({"1": ext_path}), BrokenCache()
    )

    assert attached[0].waveform is not None
    assert stats["cache_write_errors"] == 1


def test_settings_and_limit(tmp_path, make_analysis_file, make_track):
    ext_path = make_analysis_file(str(tmp_path / "a" / "ANLZ0000.EXT"), "/Music/a.mp3", 2)
    tracks = [make_track("1"), make_track("2")]
    mapping = _mapping({"1": ext_path, "2": ext_path})

    attached, stats = attach_waveform_summaries(
        tracks, mapping, settings=WaveformSettings(bin_count=32), max_tracks=1
    )

    assert len(attached[0].waveform.bins) == 32
    assert attached[1].waveform is None
    assert stats["attempted"] == 1
