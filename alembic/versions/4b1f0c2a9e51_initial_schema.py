"""initial schema

Revision ID: 4b1f0c2a9e51
Revises:
Create Date: 2026-10-19 10:12:41.204117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from telecare.core.types import UTCDateTime


# revision identifiers, used by Alembic.
revision: str = '4b1f0c2a9e51'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

role_enum = sa.Enum("patient", "doctor", "pharmacy", "admin", "superadmin", "support", name="roleenum")
sub_status_enum = sa.Enum("unsubscribed", "pending", "active", "expired", "deactivated", name="subscriptionstatus")
plan_enum = sa.Enum("monthly", "yearly", name="subscriptionplan")
appt_status_enum = sa.Enum("pending", "approved", "cancelled", "completed", name="apptstatus")
consult_status_enum = sa.Enum("scheduled", "in_progress", "ended", "cancelled", name="consultationstatus")
dispatch_enum = sa.Enum("ready", "sent", "delivered", name="dispatchstatus")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("role", role_enum, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("subscription_state", sub_status_enum, nullable=False),
        sa.Column("created_at", UTCDateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan", plan_enum, nullable=False),
        sa.Column("status", sub_status_enum, nullable=False),
        sa.Column("start_date", UTCDateTime(), nullable=True),
        sa.Column("end_date", UTCDateTime(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("provider", sa.String(32), nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_reference", "subscriptions", ["reference"])

    op.create_table(
        "subscription_prices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("doctor_monthly", sa.Numeric(10, 2), nullable=False),
        sa.Column("doctor_yearly", sa.Numeric(10, 2), nullable=False),
        sa.Column("patient_monthly", sa.Numeric(10, 2), nullable=False),
        sa.Column("patient_yearly", sa.Numeric(10, 2), nullable=False),
        sa.Column("pharmacy_monthly", sa.Numeric(10, 2), nullable=False),
        sa.Column("pharmacy_yearly", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
    )

    op.create_table(
        "appointments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("doctor_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("patient_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("appointment_at", UTCDateTime(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", appt_status_enum, nullable=False),
        sa.Column("slot_key", sa.BigInteger(), nullable=True),
        sa.Column("cancelled_by", sa.String(36), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
        # un solo turno vivo por doctor y franja; slot_key queda NULL al liberarse
        sa.UniqueConstraint("doctor_id", "slot_key", name="uq_appt_doctor_slot"),
    )
    op.create_index("ix_appt_doctor_at", "appointments", ["doctor_id", "appointment_at"])
    op.create_index("ix_appointments_doctor_id", "appointments", ["doctor_id"])
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("ix_appointments_appointment_at", "appointments", ["appointment_at"])
    op.create_index("ix_appointments_status", "appointments", ["status"])

    op.create_table(
        "video_consultations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("appointment_id", sa.String(36),
                  sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("room_id", sa.String(64), nullable=True),
        sa.Column("meeting_url", sa.Text(), nullable=True),
        sa.Column("provisioning_error", sa.Text(), nullable=True),
        sa.Column("status", consult_status_enum, nullable=False),
        sa.Column("started_at", UTCDateTime(), nullable=True),
        sa.Column("ended_at", UTCDateTime(), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
    )
    op.create_index("ix_video_consultations_status", "video_consultations", ["status"])

    op.create_table(
        "prescriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("doctor_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("patient_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("appointment_id", sa.String(36), sa.ForeignKey("appointments.id"), nullable=False),
        sa.Column("diagnosis", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("dispatch_status", dispatch_enum, nullable=False),
        sa.Column("pharmacy_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("verify_code", sa.String(16), nullable=False),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("dispatched_at", UTCDateTime(), nullable=True),
        sa.Column("delivered_at", UTCDateTime(), nullable=True),
    )
    op.create_index("ix_prescriptions_doctor_id", "prescriptions", ["doctor_id"])
    op.create_index("ix_prescriptions_patient_id", "prescriptions", ["patient_id"])
    op.create_index("ix_prescriptions_appointment_id", "prescriptions", ["appointment_id"])
    op.create_index("ix_prescriptions_pharmacy_id", "prescriptions", ["pharmacy_id"])
    op.create_index("ix_prescriptions_dispatch_status", "prescriptions", ["dispatch_status"])
    op.create_index("ix_prescriptions_verify_code", "prescriptions", ["verify_code"], unique=True)

    op.create_table(
        "prescription_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("prescription_id", sa.String(36),
                  sa.ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("drug", sa.String(255), nullable=False),
        sa.Column("dose", sa.String(255), nullable=False),
        sa.Column("frequency", sa.String(255), nullable=False),
        sa.Column("duration", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_prescription_items_prescription_id", "prescription_items", ["prescription_id"])

    op.create_table(
        "domain_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("occurred_at", UTCDateTime(), nullable=False),
        sa.Column("delivered_at", UTCDateTime(), nullable=True),
    )
    op.create_index("ix_domain_events_type", "domain_events", ["type"])
    op.create_index("ix_domain_events_entity_id", "domain_events", ["entity_id"])
    op.create_index("ix_domain_events_occurred_at", "domain_events", ["occurred_at"])
    op.create_index("ix_domain_events_delivered_at", "domain_events", ["delivered_at"])


def downgrade() -> None:
    op.drop_table("domain_events")
    op.drop_table("prescription_items")
    op.drop_table("prescriptions")
    op.drop_table("video_consultations")
    op.drop_table("appointments")
    op.drop_table("subscription_prices")
    op.drop_table("subscriptions")
    op.drop_table("users")
