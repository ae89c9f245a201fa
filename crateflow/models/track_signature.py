from sqlalchemy import Column, String, Float, DateTime
from sqlalchemy.sql import func

from . import Base


class TrackSignature(Base):
    __tablename__ = "track_signatures"

    track_id = Column(String, primary_key=True)
    signature_version = Column(String, primary_key=True)
    signature = Column(String, nullable=False)
    bpm = Column(Float)
    musical_key = Column(String)
    duration_seconds = Column(Float)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
