from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Components:
    bpm: float = 0.0
    key: float = 0.0
    waveform: float = 0.0
    rhythm: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "bpm": self.bpm,
            "key": self.key,
            "waveform": self.waveform,
            "rhythm": self.rhythm,
        }


@dataclass(frozen=True)
class SimilarityResult:
    score: float
    components: Components
    weights: Dict[str, float]


@dataclass(frozen=True)
class CachedSimilarity:
    track_a_id: str
    track_b_id: str
    algorithm_version: str
    score: float
    components: dict
    analysis_run_id: Optional[int] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PairScore:
    """A scored pair, either freshly computed or read back from the cache"""

    track_a_id: str
    track_b_id: str
    score: float
    components: Components
    weights: Dict[str, float]
    reason: str
    from_cache: bool = False


@dataclass(frozen=True)
class TrackMatch:
    track_id: str
    score: float
    components: Components
    weights: Dict[str, float]
    reason: str
    from_cache: bool = False


@dataclass
class AnalysisResult:
    run_id: int
    algorithm_version: str
    pair_limit: int
    pair_count: int
    cache_hits: int
    computed: int
    weights: Dict[str, float]
    top_matches: List[PairScore] = field(default_factory=list)


@dataclass
class Cluster:
    id: str
    track_ids: List[str]
    size: int
    edge_count: int
    avg_score: float
    max_score: float
    min_score: float
    summary: dict = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)
    confidence: float = 0.0
    confidence_label: str = "weak"
    warnings: List[str] = field(default_factory=list)
    ordered: bool = False


@dataclass
class ClusterResult:
    run_id: int
    algorithm_version: str
    pair_count: int
    cache_hits: int
    computed: int
    similarity_threshold: float
    min_cluster_size: int
    clusters: List[Cluster] = field(default_factory=list)


@dataclass
class SearchResult:
    run_id: int
    algorithm_version: str
    target_id: str
    pair_count: int
    cache_hits: int
    computed: int
    limit: int
    min_score: float
    matches: List[TrackMatch] = field(default_factory=list)
