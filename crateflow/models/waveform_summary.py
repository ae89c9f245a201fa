from sqlalchemy import Column, Integer, String, Float, DateTime, JSON
from sqlalchemy.sql import func

from . import Base


class WaveformSummaryModel(Base):
    __tablename__ = "waveform_summaries"

    ext_path = Column(String, primary_key=True)
    sample_rate = Column(Integer, nullable=False)
    sample_count = Column(Integer, nullable=False)
    duration_seconds = Column(Float, nullable=False)
    avg_red = Column(Integer)
    avg_green = Column(Integer)
    avg_blue = Column(Integer)
    height_avg = Column(Float)
    height_max = Column(Integer)
    bins = Column(JSON, nullable=False)
    bin_colors = Column(JSON, nullable=False)
    rhythm_signature = Column(JSON)
    kick_signature = Column(JSON)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
