# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Persistent similarity cache
#
# A SQLite database holding track signatures, pairwise similarity
# scores, decoded waveform summaries and an audit trail of analysis
# runs. Scores are keyed by the unordered track pair plus the algorithm
# version, so several scoring algorithms can live side by side.
#
# Every write is a single INSERT ... ON CONFLICT DO UPDATE committed on
# its own. A batch that is interrupted leaves the cache partially
# filled but consistent. The cache assumes a single writer.

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from importlib import resources
from typing import Iterable, List, Optional, Tuple

from alembic import command
from alembic.config import Config

from sqlalchemy import create_engine, func
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import sessionmaker

from .models.analysis_run import AnalysisRun
from .models.similarity_score import SimilarityScore
from .models.track_signature import TrackSignature
from .models.waveform_summary import WaveformSummaryModel
from .records.similarity import CachedSimilarity
from .records.track import Track
from .records.waveform import Color, WaveformSummary
from .signature import DEFAULT_SIGNATURE_VERSION, create_track_signature
from .utils import as_number

logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


class RunHandle:
    """Yielded by SimilarityCache.analysis_run(); notes end up on the run record"""

    def __init__(self, run_id: int):
        self.id = run_id
        self.notes: Optional[str] = None


class SimilarityCache:
    """
    A SQLite backed cache for similarity scores and waveform summaries.

    The caller owns the handle: create it (or use SimilarityCache.open),
    pass it to whatever needs it, and close() it when done.
    """

    def __init__(self, db_path: str = "similarity.db"):
        self.db_path = db_path
        self._run_migrations()

        self.engine = create_engine(f"sqlite:///{db_path}")
        self.Session = sessionmaker(bind=self.engine)

    @classmethod
    def open(cls, db_path: str) -> "SimilarityCache":
        return cls(db_path)

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _run_migrations(self):
        """Create or upgrade the schema."""
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)

        alembic_ini_path = resources.files("crateflow").joinpath("alembic.ini")
        alembic_cfg = Config(str(alembic_ini_path))

        # Override script_location to be absolute
        alembic_dir = os.path.join(os.path.dirname(str(alembic_ini_path)), "alembic")
        alembic_cfg.set_main_option("script_location", alembic_dir)
        alembic_cfg.set_main_option("path_separator", os.pathsep)
        alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")
        command.upgrade(alembic_cfg, "head")

    @staticmethod
    def canonical_pair(track_a_id: str, track_b_id: str) -> Tuple[str, str]:
        a, b = str(track_a_id), str(track_b_id)
        return (a, b) if a <= b else (b, a)

    # ----------------------
    # Track signatures
    # ----------------------

    def upsert_track_signature(
        self,
        track_id: str,
        signature: str,
        signature_version: str = DEFAULT_SIGNATURE_VERSION,
        bpm: Optional[float] = None,
        musical_key: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        values = {
            "track_id": str(track_id),
            "signature_version": signature_version,
            "signature": signature,
            "bpm": bpm,
            "musical_key": musical_key,
            "duration_seconds": duration_seconds,
        }
        stmt = insert(TrackSignature).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["track_id", "signature_version"],
            set_={
                "signature": stmt.excluded.signature,
                "bpm": stmt.excluded.bpm,
                "musical_key": stmt.excluded.musical_key,
                "duration_seconds": stmt.excluded.duration_seconds,
                "updated_at": func.now(),
            },
        )
        with self.Session() as session:
            session.execute(stmt)
            session.commit()

    def upsert_track_signatures(
        self, tracks: Iterable[Track], signature_version: str = DEFAULT_SIGNATURE_VERSION
    ) -> int:
        count = 0
        for track in tracks:
            self.upsert_track_signature(
                track.id,
                create_track_signature(track, signature_version),
                signature_version=signature_version,
                bpm=as_number(track.bpm),
                musical_key=track.key or None,
                duration_seconds=as_number(track.duration_seconds),
            )
            count += 1
        return count

    def get_track_signature(
        self, track_id: str, signature_version: str = DEFAULT_SIGNATURE_VERSION
    ) -> Optional[TrackSignature]:
        with self.Session() as session:
            return (
                session.query(TrackSignature)
                .filter(
                    TrackSignature.track_id == str(track_id),
                    TrackSignature.signature_version == signature_version,
                )
                .first()
            )

    # ----------------------
    # Similarity scores
    # ----------------------

    def get_cached_similarity(
        self, track_a_id: str, track_b_id: str, algorithm_version: str
    ) -> Optional[CachedSimilarity]:
        a, b = self.canonical_pair(track_a_id, track_b_id)
        with self.Session() as session:
            row = (
                session.query(SimilarityScore)
                .filter(
                    SimilarityScore.track_a_id == a,
                    SimilarityScore.track_b_id == b,
                    SimilarityScore.algorithm_version == algorithm_version,
                )
                .first()
            )
            if row is None:
                return None

            return CachedSimilarity(
                track_a_id=row.track_a_id,
                track_b_id=row.track_b_id,
                algorithm_version=row.algorithm_version,
                score=row.score,
                components=dict(row.components or {}),
                analysis_run_id=row.analysis_run_id,
                updated_at=row.updated_at,
            )

    def save_similarity_score(
        self,
        track_a_id: str,
        track_b_id: str,
        algorithm_version: str,
        score: float,
        components: dict,
        analysis_run_id: Optional[int] = None,
    ) -> None:
        a, b = self.canonical_pair(track_a_id, track_b_id)
        stmt = insert(SimilarityScore).values(
            track_a_id=a,
            track_b_id=b,
            algorithm_version=algorithm_version,
            score=float(score),
            components=components,
            analysis_run_id=analysis_run_id,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["track_a_id", "track_b_id", "algorithm_version"],
            set_={
                "score": stmt.excluded.score,
                "components": stmt.excluded.components,
                "analysis_run_id": stmt.excluded.analysis_run_id,
                "updated_at": func.now(),
            },
        )
        with self.Session() as session:
            session.execute(stmt)
            session.commit()

    def count_similarity_scores(self, algorithm_version: Optional[str] = None) -> int:
        with self.Session() as session:
            query = session.query(func.count(SimilarityScore.track_a_id))
            if algorithm_version is not None:
                query = query.filter(SimilarityScore.algorithm_version == algorithm_version)
            return query.scalar() or 0

    # ----------------------
    # Waveform summaries
    # ----------------------

    def get_waveform_summary(self, ext_path: str) -> Optional[WaveformSummary]:
        with self.Session() as session:
            row = (
                session.query(WaveformSummaryModel)
                .filter(WaveformSummaryModel.ext_path == ext_path)
                .first()
            )
            if row is None:
                return None

            return WaveformSummary(
                sample_rate=row.sample_rate,
                sample_count=row.sample_count,
                duration_seconds=row.duration_seconds,
                avg_color=Color(row.avg_red or 0, row.avg_green or 0, row.avg_blue or 0),
                height_avg=row.height_avg or 0.0,
                height_max=row.height_max or 0,
                bins=tuple(row.bins or ()),
                bin_colors=tuple(Color(*x) for x in (row.bin_colors or ())),
                rhythm_signature=tuple(row.rhythm_signature) if row.rhythm_signature else None,
                kick_signature=tuple(row.kick_signature) if row.kick_signature else None,
                ext_path=row.ext_path,
            )

    def save_waveform_summary(self, ext_path: str, summary: WaveformSummary) -> None:
        values = {
            "sample_rate": summary.sample_rate,
            "sample_count": summary.sample_count,
            "duration_seconds": summary.duration_seconds,
            "avg_red": summary.avg_color.red,
            "avg_green": summary.avg_color.green,
            "avg_blue": summary.avg_color.blue,
            "height_avg": summary.height_avg,
            "height_max": summary.height_max,
            "bins": list(summary.bins),
            "bin_colors": [list(x.as_tuple()) for x in summary.bin_colors],
            "rhythm_signature": (
                list(summary.rhythm_signature) if summary.rhythm_signature else None
            ),
            "kick_signature": list(summary.kick_signature) if summary.kick_signature else None,
        }
        stmt = insert(WaveformSummaryModel).values(ext_path=ext_path, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["ext_path"],
            set_={**{k: getattr(stmt.excluded, k) for k in values}, "updated_at": func.now()},
        )
        with self.Session() as session:
            session.execute(stmt)
            session.commit()

    # ----------------------
    # Analysis runs
    # ----------------------

    def create_analysis_run(
        self,
        algorithm_version: str,
        source_xml_path: Optional[str] = None,
        selected_folders: Optional[List[str]] = None,
        track_count: int = 0,
    ) -> int:
        with self.Session() as session:
            run = AnalysisRun(
                algorithm_version=algorithm_version,
                source_xml_path=source_xml_path,
                selected_folders=list(selected_folders or []),
                track_count=track_count,
                status=RUN_RUNNING,
            )
            session.add(run)
            session.commit()
            return run.id

    def complete_analysis_run(
        self, run_id: int, status: str = RUN_COMPLETED, notes: Optional[str] = None
    ) -> None:
        with self.Session() as session:
            run = session.query(AnalysisRun).filter(AnalysisRun.id == run_id).first()
            if run is None:
                logger.warning(f"Tried to complete unknown analysis run {run_id}")
                return
            run.status = status
            run.notes = notes
            run.completed_at = datetime.now()
            session.commit()

    def get_analysis_run(self, run_id: int) -> Optional[AnalysisRun]:
        with self.Session() as session:
            return session.query(AnalysisRun).filter(AnalysisRun.id == run_id).first()

    def get_recent_analysis_runs(self, limit: int = 10) -> List[AnalysisRun]:
        with self.Session() as session:
            return (
                session.query(AnalysisRun).order_by(AnalysisRun.id.desc()).limit(limit).all()
            )

    @contextmanager
    def analysis_run(
        self,
        algorithm_version: str,
        source_xml_path: Optional[str] = None,
        selected_folders: Optional[List[str]] = None,
        track_count: int = 0,
    ):
        """Bracket a batch of scoring in an analysis run record.

        The run is always finalized: completed when the block exits
        normally, failed with the exception message otherwise.
        """
        run_id = self.create_analysis_run(
            algorithm_version,
            source_xml_path=source_xml_path,
            selected_folders=selected_folders,
            track_count=track_count,
        )
        handle = RunHandle(run_id)
        try:
            yield handle
        except BaseException as e:
            logger.error(f"Analysis run {run_id} failed: {e}")
            self.complete_analysis_run(run_id, RUN_FAILED, str(e) or e.__class__.__name__)
            raise
        else:
            self.complete_analysis_run(run_id, RUN_COMPLETED, handle.notes)
