from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .track_signature import TrackSignature
from .similarity_score import SimilarityScore
from .waveform_summary import WaveformSummaryModel
from .analysis_run import AnalysisRun
