"""create_similarity_cache_tables

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-02-14 10:21:33.104512

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1a9c2e7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "analysis_runs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("algorithm_version", sa.String, nullable=False),
        sa.Column("source_xml_path", sa.String),
        sa.Column("selected_folders", sa.JSON, nullable=False),
        sa.Column("track_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String, nullable=False, server_default="running"),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
    )

    op.create_table(
        "track_signatures",
        sa.Column("track_id", sa.String, primary_key=True),
        sa.Column("signature_version", sa.String, primary_key=True),
        sa.Column("signature", sa.String, nullable=False),
        sa.Column("bpm", sa.REAL),
        sa.Column("musical_key", sa.String),
        sa.Column("duration_seconds", sa.REAL),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "similarity_scores",
        sa.Column("track_a_id", sa.String, primary_key=True),
        sa.Column("track_b_id", sa.String, primary_key=True),
        sa.Column("algorithm_version", sa.String, primary_key=True),
        sa.Column("score", sa.REAL, nullable=False),
        sa.Column("components", sa.JSON, nullable=False),
        sa.Column("analysis_run_id", sa.Integer, sa.ForeignKey("analysis_runs.id")),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index(
        "idx_similarity_scores_version", "similarity_scores", ["algorithm_version"]
    )

    op.create_table(
        "waveform_summaries",
        sa.Column("ext_path", sa.String, primary_key=True),
        sa.Column("sample_rate", sa.Integer, nullable=False),
        sa.Column("sample_count", sa.Integer, nullable=False),
        sa.Column("duration_seconds", sa.REAL, nullable=False),
        sa.Column("avg_red", sa.Integer),
        sa.Column("avg_green", sa.Integer),
        sa.Column("avg_blue", sa.Integer),
        sa.Column("height_avg", sa.REAL),
        sa.Column("height_max", sa.Integer),
        sa.Column("bins", sa.JSON, nullable=False),
        sa.Column("bin_colors", sa.JSON, nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("waveform_summaries")
    op.drop_index("idx_similarity_scores_version", table_name="similarity_scores")
    op.drop_table("similarity_scores")
    op.drop_table("track_signatures")
    op.drop_table("analysis_runs")
