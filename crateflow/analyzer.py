# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Baseline batch analysis
#
# Score every pair of tracks (up to a pair budget), keeping the best
# matches. Each call is bracketed in an analysis run, which ends up
# completed or failed no matter how the loop exits.

import logging
from typing import Callable, List, Optional, Sequence

from . import cancel
from .cachedb import SimilarityCache
from .config import AnalysisSettings, ScoringSettings
from .errors import AnalysisCancelled
from .records.similarity import AnalysisResult, PairScore
from .records.track import Track
from .scoring import BaselineScorer, update_top_matches

logger = logging.getLogger(__name__)


def pair_limit_for(track_count: int, max_pairs: Optional[int], max_pairs_cap: Optional[int]) -> int:
    """The number of pairs a run will actually look at"""
    total = max(0, track_count * (track_count - 1) // 2)
    limits = [total]
    if max_pairs is not None:
        limits.append(max(0, int(max_pairs)))
    if max_pairs_cap is not None:
        limits.append(max(0, int(max_pairs_cap)))
    return min(limits)


def run_baseline_analysis(
    tracks: Sequence[Track],
    cache: SimilarityCache,
    scoring: Optional[ScoringSettings] = None,
    analysis: Optional[AnalysisSettings] = None,
    source_xml_path: Optional[str] = None,
    selected_folders: Optional[List[str]] = None,
    on_progress: Optional[Callable[[dict], None]] = None,
    cancel_token=None,
) -> AnalysisResult:
    scoring = scoring or ScoringSettings()
    analysis = analysis or AnalysisSettings()
    tracks = list(tracks)

    scorer = BaselineScorer(
        cache, scoring.algorithm_version, scoring.weights.normalized()
    )
    pair_limit = pair_limit_for(len(tracks), analysis.max_pairs, analysis.max_pairs_cap)
    top: List[PairScore] = []
    pair_count = 0

    def report(**extra):
        if on_progress is not None:
            on_progress(
                {
                    "pair_count": pair_count,
                    "total_pairs": pair_limit,
                    "cache_hits": scorer.cache_hits,
                    "computed": scorer.computed,
                    **extra,
                }
            )

    logger.info(
        f"Baseline analysis of {len(tracks)} tracks, {pair_limit} pairs ({scorer.algorithm_version})"
    )

    with cache.analysis_run(
        scorer.algorithm_version,
        source_xml_path=source_xml_path,
        selected_folders=selected_folders,
        track_count=len(tracks),
    ) as run:
        cache.upsert_track_signatures(tracks, scoring.signature_version)

        try:
            for i, track_a in enumerate(tracks):
                if pair_count >= pair_limit:
                    break
                for track_b in tracks[i + 1 :]:
                    cancel.check(cancel_token, "Baseline analysis canceled.")
                    if pair_count >= pair_limit:
                        break

                    pair_count += 1
                    row = scorer.score_pair(track_a, track_b, run.id)
                    update_top_matches(top, row, analysis.top_limit)

                    every = analysis.progress_every_pairs
                    if every and pair_count % every == 0:
                        report()
        except AnalysisCancelled:
            report(aborted=True, reason="cancelled", done=True)
            raise

        run.notes = (
            f"pairs={pair_count}, cacheHits={scorer.cache_hits}, computed={scorer.computed}"
        )
        report(done=True)

    logger.info(
        f"Baseline analysis done: {pair_count} pairs, "
        f"{scorer.cache_hits} cache hits, {scorer.computed} computed"
    )

    return AnalysisResult(
        run_id=run.id,
        algorithm_version=scorer.algorithm_version,
        pair_limit=pair_limit,
        pair_count=pair_count,
        cache_hits=scorer.cache_hits,
        computed=scorer.computed,
        weights=scorer.weights,
        top_matches=top,
    )
