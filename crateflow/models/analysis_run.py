from sqlalchemy import Column, Integer, String, DateTime, JSON, Text
from sqlalchemy.sql import func

from . import Base


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    algorithm_version = Column(String, nullable=False)
    source_xml_path = Column(String)
    selected_folders = Column(JSON, nullable=False, default=list)
    track_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="running")  # running | completed | failed
    notes = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime)
