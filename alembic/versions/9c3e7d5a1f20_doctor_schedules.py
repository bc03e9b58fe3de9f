"""doctor schedules

Revision ID: 9c3e7d5a1f20
Revises: 4b1f0c2a9e51
Create Date: 2026-10-26 09:41:07.553810

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from telecare.core.types import UTCDateTime


# revision identifiers, used by Alembic.
revision: str = '9c3e7d5a1f20'
down_revision: Union[str, Sequence[str], None] = '4b1f0c2a9e51'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "doctor_schedules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("doctor_id", sa.String(36),
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("day_of_week", sa.SmallInteger(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("effective_from", sa.Date(), nullable=True),
        sa.Column("effective_to", sa.Date(), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
    )
    op.create_index("ix_doctor_schedules_doctor_id", "doctor_schedules", ["doctor_id"])
    op.create_index("ix_schedule_doctor_day", "doctor_schedules", ["doctor_id", "day_of_week"])


def downgrade() -> None:
    op.drop_index("ix_schedule_doctor_day", table_name="doctor_schedules")
    op.drop_index("ix_doctor_schedules_doctor_id", table_name="doctor_schedules")
    op.drop_table("doctor_schedules")
