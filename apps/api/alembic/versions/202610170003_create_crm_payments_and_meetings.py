"""create crm payments and meetings

Revision ID: 202610170003
Revises: 202610170002
Create Date: 2026-10-17 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170003"
down_revision: str | None = "202610170002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "crm_deal",
        sa.Column("amount_received", sa.Numeric(14, 2), nullable=False, server_default="0"),
    )
    op.add_column(
        "crm_deal",
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
    )

    op.create_table(
        "crm_payment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), sa.ForeignKey("crm_deal.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("reference_number", sa.String(length=100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("recorded_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_payment_deal_id", "crm_payment", ["deal_id"], unique=False)

    op.create_table(
        "crm_meeting",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("organizer_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("crm_lead.id", ondelete="SET NULL"), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("meeting_link", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#3b82f6"),
        sa.Column("recurrence", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_meeting_start_time", "crm_meeting", ["start_time"], unique=False)
    op.create_index("ix_crm_meeting_organizer_id", "crm_meeting", ["organizer_id"], unique=False)

    op.create_table(
        "crm_meeting_participant",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("meeting_id", sa.Uuid(), sa.ForeignKey("crm_meeting.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="required"),
        sa.Column("rsvp_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("meeting_id", "user_id", name="uq_crm_meeting_participant_user"),
    )
    op.create_index(
        "ix_crm_meeting_participant_user_id",
        "crm_meeting_participant",
        ["user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_meeting_participant_user_id", table_name="crm_meeting_participant")
    op.drop_table("crm_meeting_participant")
    op.drop_index("ix_crm_meeting_organizer_id", table_name="crm_meeting")
    op.drop_index("ix_crm_meeting_start_time", table_name="crm_meeting")
    op.drop_table("crm_meeting")
    op.drop_index("ix_crm_payment_deal_id", table_name="crm_payment")
    op.drop_table("crm_payment")
    op.drop_column("crm_deal", "payment_status")
    op.drop_column("crm_deal", "amount_received")
