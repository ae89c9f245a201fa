# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

import logging
from typing import List, Optional, Sequence

from . import cancel
from .cachedb import SimilarityCache
from .config import ScoringSettings, SearchSettings
from .errors import TrackNotFoundError
from .records.similarity import SearchResult, TrackMatch
from .records.track import Track
from .scoring import BaselineScorer, update_top_matches

logger = logging.getLogger(__name__)


def find_similar_tracks(
    tracks: Sequence[Track],
    target_id: str,
    cache: SimilarityCache,
    search: Optional[SearchSettings] = None,
    scoring: Optional[ScoringSettings] = None,
    source_xml_path: Optional[str] = None,
    selected_folders: Optional[List[str]] = None,
    cancel_token=None,
) -> SearchResult:
    """Top matches for target_id among tracks.

    Raises TrackNotFoundError, before anything is recorded, when the
    target isn't one of the tracks.
    """
    search = search or SearchSettings()
    scoring = scoring or ScoringSettings()
    tracks = list(tracks)

    target = next((x for x in tracks if x.id == str(target_id)), None)
    if target is None:
        raise TrackNotFoundError(f"Target track not found: {target_id}")

    scorer = BaselineScorer(cache, scoring.algorithm_version, scoring.weights.normalized())
    matches: List[TrackMatch] = []
    pair_count = 0

    with cache.analysis_run(
        scorer.algorithm_version,
        source_xml_path=source_xml_path,
        selected_folders=selected_folders,
        track_count=len(tracks),
    ) as run:
        cache.upsert_track_signatures(tracks, scoring.signature_version)

        for candidate in tracks:
            if candidate.id == target.id:
                continue
            cancel.check(cancel_token, "Similarity search canceled.")

            pair_count += 1
            row = scorer.score_pair(target, candidate, run.id)
            if row.score < search.min_score:
                continue

            update_top_matches(
                matches,
                TrackMatch(
                    track_id=candidate.id,
                    score=row.score,
                    components=row.components,
                    weights=row.weights,
                    reason=row.reason,
                    from_cache=row.from_cache,
                ),
                search.limit,
            )

        run.notes = f"pairs={pair_count}, matches={len(matches)}"

    logger.info(f"Found {len(matches)} tracks similar to {target.id} from {pair_count} pairs")

    return SearchResult(
        run_id=run.id,
        algorithm_version=scorer.algorithm_version,
        target_id=target.id,
        pair_count=pair_count,
        cache_hits=scorer.cache_hits,
        computed=scorer.computed,
        limit=search.limit,
        min_score=search.min_score,
        matches=matches,
    )
