import pytest

from crateflow.analyzer import pair_limit_for, run_baseline_analysis
from crateflow.cachedb import RUN_COMPLETED, RUN_FAILED
from crateflow.cancel import CancellationToken
from crateflow.config import AnalysisSettings, ScoringSettings
from crateflow.errors import AnalysisCancelled


@pytest.fixture
def tracks(make_track):
    bpms = [120.0, 121.0, 124.0, 126.0, 128.0, 140.0]
    keys = ["8A", "8A", "9A", "8B", "3B", "12A"]
    return [
        make_track(str(i + 1), bpm=bpm, key=key, duration_seconds=300.0 + i * 10)
        for i, (bpm, key) in enumerate(zip(bpms, keys))
    ]


def test_pair_limit_for():
    assert pair_limit_for(6, None, None) == 15
    assert pair_limit_for(6, 10, None) == 10
    assert pair_limit_for(6, 100, 4) == 4
    assert pair_limit_for(1, 100, 100) == 0
    assert pair_limit_for(0, 100, 100) == 0


def test_first_run_computes_everything(cache, tracks):
    result = run_baseline_analysis(tracks, cache)

    assert result.pair_limit == 15
    assert result.pair_count == 15
    assert result.cache_hits == 0
    assert result.computed == 15
    assert result.algorithm_version == "flow-baseline-v4"
    assert cache.count_similarity_scores(result.algorithm_version) == 15

    run = cache.get_analysis_run(result.run_id)
    assert run.status == RUN_COMPLETED
    assert run.notes == "pairs=15, cacheHits=0, computed=15"
    assert run.track_count == 6


def test_second_run_is_served_from_cache(cache, tracks):
    """Test rerunning the same tracks only reads the cache."""
    first = run_baseline_analysis(tracks, cache)
    second = run_baseline_analysis(list(reversed(tracks)), cache)

    assert second.cache_hits == second.pair_count == 15
    assert second.computed == 0
    assert [x.score for x in second.top_matches] == [x.score for x in first.top_matches]
    assert all(x.from_cache for x in second.top_matches)
    assert second.run_id != first.run_id


def test_top_matches_are_sorted_and_bounded(cache, tracks):
    result = run_baseline_analysis(tracks, cache, analysis=AnalysisSettings(top_limit=4))

    scores = [x.score for x in result.top_matches]
    assert len(scores) == 4
    assert scores == sorted(scores, reverse=True)


def test_pair_budget(cache, tracks):
    result = run_baseline_analysis(tracks, cache, analysis=AnalysisSettings(max_pairs=5))

    assert result.pair_limit == 5
    assert result.pair_count == 5
    assert cache.count_similarity_scores() == 5


def test_signatures_are_recorded(cache, tracks):
    run_baseline_analysis(tracks, cache, scoring=ScoringSettings(signature_version="v9"))

    assert cache.get_track_signature("1", "v9") is not None
    assert cache.get_track_signature("1", "v1") is None


def test_progress_reports(cache, tracks):
    updates = []
    run_baseline_analysis(
        tracks,
        cache,
        analysis=AnalysisSettings(progress_every_pairs=5),
        on_progress=updates.append,
    )

    assert [x["pair_count"] for x in updates] == [5, 10, 15, 15]
    assert updates[-1]["done"] is True
    assert updates[-1]["total_pairs"] == 15


def test_cancellation_marks_run_failed(cache, tracks):
    """Test a cancelled analysis raises and leaves a failed run behind."""
    token = CancellationToken()
    updates = []

    def on_progress(update):
        updates.append(update)
        token.cancel()

    with pytest.raises(AnalysisCancelled):
        run_baseline_analysis(
            tracks,
            cache,
            analysis=AnalysisSettings(progress_every_pairs=3),
            on_progress=on_progress,
            cancel_token=token,
        )

    assert updates[-1]["aborted"] is True
    assert updates[-1]["reason"] == "cancelled"
    # scores written before the cancellation stay in the cache
    assert cache.count_similarity_scores() == 3

    run = cache.get_recent_analysis_runs(limit=1)[0]
    assert run.status == RUN_FAILED
    assert run.notes == "Baseline analysis canceled."


def test_empty_track_list(cache):
    result = run_baseline_analysis([], cache)

    assert result.pair_count == 0
    assert result.top_matches == []
    assert cache.get_analysis_run(result.run_id).status == RUN_COMPLETED
