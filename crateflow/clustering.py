# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Playlist clustering
#
# Every pair of tracks (up to a pair budget) is scored. Pairs at or
# above the similarity threshold are edges, and connected components
# of that graph become candidate playlists. Components are found with
# a disjoint set over dense track indices.
#
# Each cluster can then be put in a DJ friendly order: start from the
# track most similar to everything else and keep appending the
# remaining track closest to the current tail.

import logging
import math
from typing import Dict, List, Optional, Sequence

from . import cancel
from .cachedb import SimilarityCache
from .config import ClusteringSettings, ScoringSettings
from .records.similarity import Cluster, ClusterResult
from .records.track import Track
from .scoring import BaselineScorer

logger = logging.getLogger(__name__)


class DisjointSet:
    """Union-find with path compression and union by rank"""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, index: int) -> int:
        root = index
        while self.parent[root] != root:
            root = self.parent[root]

        while self.parent[index] != root:
            self.parent[index], index = root, self.parent[index]

        return root

    def union(self, left: int, right: int) -> bool:
        left_root = self.find(left)
        right_root = self.find(right)
        if left_root == right_root:
            return False

        if self.rank[left_root] < self.rank[right_root]:
            self.parent[left_root] = right_root
        elif self.rank[left_root] > self.rank[right_root]:
            self.parent[right_root] = left_root
        else:
            self.parent[right_root] = left_root
            self.rank[left_root] += 1
        return True


def effective_threshold(similarity_threshold: float, strict_mode: bool) -> float:
    threshold = max(0.0, min(1.0, similarity_threshold))
    if strict_mode:
        threshold = min(0.98, threshold + 0.03)
    return threshold


# ----------------------
# Diagnostics
# ----------------------


def build_cluster_summary(tracks: List[Track]) -> dict:
    bpms = [x.bpm for x in tracks if x.bpm is not None]
    keys: Dict[str, int] = {}
    waveform_count = 0
    rhythm_count = 0

    for track in tracks:
        key = (track.key or "").strip()
        if key:
            keys[key] = keys.get(key, 0) + 1

        waveform = track.waveform
        if waveform is not None and waveform.bins:
            waveform_count += 1
        if (
            (waveform is not None and (waveform.rhythm_signature or waveform.kick_signature))
            or track.tempo_points
        ):
            rhythm_count += 1

    top_key = max(keys.items(), key=lambda x: x[1]) if keys else None

    return {
        "bpm": {
            "min": min(bpms) if bpms else None,
            "max": max(bpms) if bpms else None,
            "avg": sum(bpms) / len(bpms) if bpms else None,
        },
        "key": {
            "top": {"key": top_key[0], "count": top_key[1]} if top_key else None,
            "counts": keys,
        },
        "coverage": {
            "waveform": {"count": waveform_count, "total": len(tracks)},
            "rhythm": {"count": rhythm_count, "total": len(tracks)},
        },
    }


def build_cluster_reasons(summary: dict) -> List[str]:
    reasons = []
    bpm = summary["bpm"]
    if bpm["min"] is not None and bpm["max"] is not None:
        reasons.append(f"BPM {bpm['min']:.1f}-{bpm['max']:.1f}")
    if summary["key"]["top"]:
        reasons.append(f"Key focus {summary['key']['top']['key']}")

    coverage = summary["coverage"]
    if coverage["waveform"]["total"]:
        reasons.append(f"Waveform data {coverage['waveform']['count']}/{coverage['waveform']['total']}")
    if coverage["rhythm"]["total"]:
        reasons.append(f"Rhythm data {coverage['rhythm']['count']}/{coverage['rhythm']['total']}")
    return reasons


def compute_cluster_confidence(size: int, edge_count: int, avg_score: float, min_score: float) -> float:
    """Blend of average edge score, edge density and size.

    Penalized by the spread between the average and the weakest edge.
    """
    size_score = 1 - math.exp(-size / 6)
    density = edge_count / (size * (size - 1) / 2) if size > 1 else 0.0
    avg_score = max(0.0, min(1.0, avg_score))
    min_score = max(0.0, min(1.0, min_score))
    penalty = max(0.0, (avg_score - min_score) * 0.6)

    base = avg_score * 0.5 + min(1.0, density) * 0.2 + size_score * 0.2 + min_score * 0.1
    return max(0.0, min(1.0, base - penalty))


def confidence_label(confidence: float) -> str:
    if confidence >= 0.85:
        return "strong"
    if confidence >= 0.7:
        return "good"
    if confidence >= 0.55:
        return "mixed"
    return "weak"


def build_cluster_warnings(size: int, min_score: float, summary: dict) -> List[str]:
    warnings = []
    if min_score < 0.55:
        warnings.append("Contains low-score outliers")
    if summary["coverage"]["waveform"]["count"] < size * 0.4:
        warnings.append("Limited waveform coverage")
    if summary["coverage"]["rhythm"]["count"] < size * 0.4:
        warnings.append("Limited rhythm coverage")
    return warnings


# ----------------------
# Ordering
# ----------------------


def order_cluster_tracks(tracks: List[Track], scorer: BaselineScorer, run_id: Optional[int] = None) -> List[str]:
    """Nearest neighbour ordering of a cluster.

    Ties go to the track encountered first.
    """
    if len(tracks) <= 2:
        return [x.id for x in tracks]

    scores: Dict[tuple, float] = {}

    def similarity(a: Track, b: Track) -> float:
        key = (a.id, b.id) if a.id <= b.id else (b.id, a.id)
        if key not in scores:
            scores[key] = scorer.score_pair(a, b, run_id).score
        return scores[key]

    start = tracks[0]
    best_total = -math.inf
    for candidate in tracks:
        total = sum(similarity(candidate, x) for x in tracks if x is not candidate)
        if total > best_total:
            best_total = total
            start = candidate

    ordered = [start]
    remaining = [x for x in tracks if x is not start]
    while remaining:
        tail = ordered[-1]
        best = max(remaining, key=lambda x: similarity(tail, x))
        ordered.append(best)
        remaining.remove(best)

    return [x.id for x in ordered]


# ----------------------
# Clustering
# ----------------------


def generate_playlist_clusters(
    tracks: Sequence[Track],
    cache: SimilarityCache,
    clustering: Optional[ClusteringSettings] = None,
    scoring: Optional[ScoringSettings] = None,
    source_xml_path: Optional[str] = None,
    selected_folders: Optional[List[str]] = None,
    cancel_token=None,
) -> ClusterResult:
    clustering = clustering or ClusteringSettings()
    scoring = scoring or ScoringSettings()
    tracks = list(tracks)

    threshold = effective_threshold(clustering.similarity_threshold, clustering.strict_mode)
    min_size = max(2, clustering.min_cluster_size)
    pair_limit = max(0, clustering.max_pairs)

    scorer = BaselineScorer(cache, scoring.algorithm_version, scoring.weights.normalized())
    logger.info(f"Clustering {len(tracks)} tracks at threshold {threshold:.2f}")

    with cache.analysis_run(
        scorer.algorithm_version,
        source_xml_path=source_xml_path,
        selected_folders=selected_folders,
        track_count=len(tracks),
    ) as run:
        cache.upsert_track_signatures(tracks, scoring.signature_version)

        dsu = DisjointSet(len(tracks))
        edges = []
        pair_count = 0

        for i in range(len(tracks)):
            if pair_count >= pair_limit:
                break
            for j in range(i + 1, len(tracks)):
                cancel.check(cancel_token, "Playlist clustering canceled.")
                if pair_count >= pair_limit:
                    break
                pair_count += 1

                row = scorer.score_pair(tracks[i], tracks[j], run.id)
                if row.score >= threshold:
                    dsu.union(i, j)
                    edges.append((i, row.score))

        groups: Dict[int, List[int]] = {}
        for index in range(len(tracks)):
            groups.setdefault(dsu.find(index), []).append(index)

        stats: Dict[int, list] = {}
        for index, score in edges:
            stat = stats.setdefault(dsu.find(index), [0.0, 0, 0.0, 1.0])
            stat[0] += score
            stat[1] += 1
            stat[2] = max(stat[2], score)
            stat[3] = min(stat[3], score)

        clusters = []
        for root, members in groups.items():
            if len(members) < min_size:
                continue

            total, count, max_score, min_score = stats.get(root, [0.0, 0, 0.0, 0.0])
            members_tracks = [tracks[x] for x in members]
            summary = build_cluster_summary(members_tracks)
            avg_score = total / count if count else 0.0
            min_score = min_score if count else 0.0
            confidence = compute_cluster_confidence(len(members), count, avg_score, min_score)

            clusters.append(
                Cluster(
                    id=f"cluster-{root}",
                    track_ids=[x.id for x in members_tracks],
                    size=len(members),
                    edge_count=count,
                    avg_score=avg_score,
                    max_score=max_score,
                    min_score=min_score,
                    summary=summary,
                    reasons=build_cluster_reasons(summary),
                    confidence=confidence,
                    confidence_label=confidence_label(confidence),
                    warnings=build_cluster_warnings(len(members), min_score, summary),
                )
            )

        clusters.sort(key=lambda x: (-x.size, -x.avg_score))
        clusters = clusters[: clustering.max_clusters]

        # ordering reads the cache again, keep the counts of the pair pass
        cache_hits, computed = scorer.cache_hits, scorer.computed

        if clustering.optimize_flow:
            by_id = {x.id: x for x in tracks}
            for cluster in clusters:
                members = [by_id[x] for x in cluster.track_ids]
                cluster.track_ids = order_cluster_tracks(members, scorer, run.id)
                cluster.ordered = True

        run.notes = f"pairs={pair_count}, clusters={len(clusters)}"

    logger.info(
        f"Found {len(clusters)} clusters from {pair_count} pairs "
        f"({cache_hits} cache hits, {computed} computed)"
    )

    return ClusterResult(
        run_id=run.id,
        algorithm_version=scorer.algorithm_version,
        pair_count=pair_count,
        cache_hits=cache_hits,
        computed=computed,
        similarity_threshold=threshold,
        min_cluster_size=min_size,
        clusters=clusters,
    )
