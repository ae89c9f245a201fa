from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func

from . import Base


class SimilarityScore(Base):
    __tablename__ = "similarity_scores"

    # track_a_id < track_b_id, see SimilarityCache.canonical_pair
    track_a_id = Column(String, primary_key=True)
    track_b_id = Column(String, primary_key=True)
    algorithm_version = Column(String, primary_key=True)
    score = Column(Float, nullable=False)
    components = Column(JSON, nullable=False)
    analysis_run_id = Column(Integer, ForeignKey("analysis_runs.id"))
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
