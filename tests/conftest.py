import os
import struct
import tempfile

import pytest

from crateflow.cachedb import SimilarityCache
from crateflow.records.track import Track


def waveform_word(red, green, blue, height):
    """Pack 3 bit colors and a 5 bit height into a waveform word"""
    return (red << 13) | (green << 10) | (blue << 7) | (height << 2)


def waveform_section(words):
    payload = b"".join(struct.pack(">H", w) for w in words)
    # tag, header length, header length + payload length
    return b"PWV5" + struct.pack(">II", 12, 12 + len(payload)) + payload


def pwv5_tag(words, entry_count=None):
    """A PWV5 tag as the DJ software writes it, with a 24 byte header"""
    payload = b"".join(struct.pack(">H", w) for w in words)
    if entry_count is None:
        entry_count = len(words)
    # entry size, entry count, unknown
    header = struct.pack(">IIIII", 24, 24 + len(payload), 2, entry_count, 0x00960305)
    return b"PWV5" + header + payload


def path_section(path):
    raw = (path + "\x00").encode("utf-16-be")
    return b"PPTH" + struct.pack(">III", 16, 16 + len(raw), len(raw)) + raw


def analysis_file_bytes(path=None, words=None):
    body = b""
    if path is not None:
        body += path_section(path)
    if words is not None:
        body += pwv5_tag(words)
    header = b"PMAI" + struct.pack(">II", 28, 28 + len(body)) + b"\x00" * 16
    return header + body


@pytest.fixture
def make_analysis_file():
    """Write an analysis file, duration_seconds worth of samples at 150Hz"""

    def _make(file_path, track_path=None, duration_seconds=None, words=None):
        if words is None and duration_seconds is not None:
            count = int(duration_seconds * 150)
            words = [waveform_word(3, 5, 1, 8 + (i % 16)) for i in range(count)]
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(analysis_file_bytes(track_path, words))
        return file_path

    return _make


@pytest.fixture
def make_track():
    def _make(track_id, **kwargs):
        kwargs.setdefault("artist", f"Artist {track_id}")
        kwargs.setdefault("title", f"Title {track_id}")
        return Track(id=str(track_id), track_id=str(track_id), **kwargs)

    return _make


@pytest.fixture(scope="function")
def cache():
    """Create a temporary SimilarityCache for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        db = SimilarityCache(os.path.join(temp_dir, "test_similarity.db"))
        yield db
        db.close()


SAMPLE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<DJ_PLAYLISTS Version="1.0.0">
  <PRODUCT Name="rekordbox" Version="6.7.4" Company="AlphaTheta"/>
  <COLLECTION Entries="3">
    <TRACK TrackID="1" Name="Track One" Artist="Artist A" Album="Album" Genre="Techno" Kind="MP3 File" AverageBpm="126.00" Tonality="8A" TotalTime="360" BitRate="320" Location="file://localhost/C:/Music/Track%20One.mp3">
      <TEMPO Inizio="0.025" Bpm="126.00" Metro="4/4" Battito="1"/>
      <TEMPO Inizio="60.000" Bpm="128.00" Metro="4/4" Battito="1"/>
      <POSITION_MARK Name="" Type="0" Start="0.025" Num="0" Red="40" Green="226" Blue="20"/>
      <POSITION_MARK Name="Drop loop" Type="4" Start="32.000" End="40.000" Num="-1"/>
    </TRACK>
    <TRACK TrackID="2" Name="Track Two" Artist="Artist B" Genre="Techno" AverageBpm="130.00" Tonality="9A" TotalTime="300" BitRate="320" Location="file://localhost/C:/Music/Track%20Two.mp3"/>
    <TRACK TrackID="3" Name="Track Three" Artist="Artist &amp; C" AverageBpm="abc" Tonality="8B" TotalTime="420" Location="file://localhost/C:/Music/Track%20Three.mp3"/>
  </COLLECTION>
  <PLAYLISTS>
    <NODE Type="0" Name="ROOT" Count="2">
      <NODE Type="0" Name="Techno" Count="2">
        <NODE Name="Peak" Type="1" KeyType="0" Entries="2">
          <TRACK Key="1"/>
          <TRACK Key="2"/>
        </NODE>
        <NODE Name="Empty" Type="1" KeyType="0" Entries="0"/>
      </NODE>
      <NODE Name="Warmup" Type="1" KeyType="0" Entries="2">
        <TRACK Key="3"/>
        <TRACK Key="99"/>
      </NODE>
    </NODE>
  </PLAYLISTS>
</DJ_PLAYLISTS>
"""


@pytest.fixture
def sample_xml():
    return SAMPLE_XML
