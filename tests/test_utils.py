import logging

import pytest

from crateflow import correlator, scoring, utils


def test_as_number():
    assert utils.as_number("1.5") == 1.5
    assert utils.as_number(3) == 3.0
    assert utils.as_number("") is None
    assert utils.as_number(None) is None
    assert utils.as_number("abc") is None
    assert utils.as_number("nan") is None
    assert utils.as_number("inf") is None


def test_tokenize():
    assert utils.tokenize("/Music/A-b_Track 01.mp3") == {"music", "track", "01", "mp3"}
    assert utils.tokenize(None) == set()


def test_jaccard():
    assert utils.jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    assert utils.jaccard({"a"}, set()) == 0.0
    assert utils.jaccard(set(), set(), empty=0.5) == 0.5


def test_distance_to_score():
    assert utils.distance_to_score(0, 5) == 1.0
    assert utils.distance_to_score(None, 5) == 0.5
    assert utils.distance_to_score(float("nan"), 5) == 0.5
    assert utils.distance_to_score(5, 5) == pytest.approx(0.3679, abs=1e-4)


def test_module_loggers_share_the_package_logger():
    package_logger = logging.getLogger("crateflow")

    assert scoring.logger.parent is package_logger
    assert correlator.logger.parent is package_logger
    assert not hasattr(utils, "get_logger")
