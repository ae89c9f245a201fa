"""add_rhythm_signatures_to_waveforms

Revision ID: 8d04b6e51a2c
Revises: 3f1a9c2e7b10
Create Date: 2026-03-02 19:05:12.771430

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8d04b6e51a2c"
down_revision: Union[str, None] = "3f1a9c2e7b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Use batch mode for SQLite compatibility. Existing rows keep NULL
    # signatures until their file is decoded again.
    with op.batch_alter_table("waveform_summaries") as batch_op:
        batch_op.add_column(sa.Column("rhythm_signature", sa.JSON(), nullable=True))
        batch_op.add_column(sa.Column("kick_signature", sa.JSON(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("waveform_summaries") as batch_op:
        batch_op.drop_column("kick_signature")
        batch_op.drop_column("rhythm_signature")
