from .cachedb import SimilarityCache
from .cancel import CancellationToken
from .config import Settings, load_settings
from .errors import (
    AnalysisCancelled,
    AnalysisFormatError,
    ConfigError,
    CrateflowError,
    LibraryValidationError,
    MissingPathError,
    ParseWorkerError,
    TrackNotFoundError,
)
from .xml_parser import parse_library_xml, parse_library_file
from .analyzer import run_baseline_analysis
from .clustering import generate_playlist_clusters
from .search import find_similar_tracks
