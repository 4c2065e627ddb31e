"""Prepaid ledger, appointments and top-up invoices."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    billing_frequency_enum = _enum("billing_frequency_enum", "PER_SESSION", "MONTHLY", "PREPAID")
    appointment_status_enum = _enum(
        "appointment_status_enum", "SCHEDULED", "COMPLETED", "CANCELLED", "RESCHEDULED"
    )
    matching_enum = _enum(
        "group_session_matching_enum", "EXACT_MATCH", "START_MATCH", "END_MATCH", "ANY_OVERLAP"
    )
    invoice_status_enum = _enum("invoice_status_enum", "DRAFT", "SENT", "PAID", "CANCELLED")
    transaction_type_enum = _enum("prepaid_transaction_type_enum", "CREDIT", "DEDUCTION")
    delivery_status_enum = _enum("invoice_delivery_status_enum", "sent", "failed")

    op.create_table(
        "client_profiles",
        sa.Column("client_profile_id", sa.String(length=36), primary_key=True),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("billing_frequency", billing_frequency_enum, nullable=False),
        sa.Column("session_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("group_session_rate", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "prepaid_balance",
            sa.Numeric(12, 2),
            nullable=True,
            comment="Only meaningful while billing_frequency is PREPAID",
        ),
        sa.Column("prepaid_target_balance", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "prepaid_balance IS NULL OR prepaid_balance >= 0",
            name="ck_client_profiles_prepaid_balance_non_negative",
        ),
    )
    op.create_index("ix_client_profiles_client_id", "client_profiles", ["client_id"], unique=True)
    op.create_index("ix_client_profiles_workspace_id", "client_profiles", ["workspace_id"])

    op.create_table(
        "trainer_settings",
        sa.Column("trainer_settings_id", sa.String(length=36), primary_key=True),
        sa.Column("trainer_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("default_group_session_rate", sa.Numeric(12, 2), nullable=True),
        sa.Column("group_session_matching_logic", matching_enum, nullable=False),
        sa.Column("default_invoice_due_days", sa.Integer(), nullable=False, server_default="30"),
    )

    op.create_table(
        "appointments",
        sa.Column("appointment_id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("trainer_id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", appointment_status_enum, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "appointments_trainer_window_idx",
        "appointments",
        ["workspace_id", "trainer_id", "start_time"],
    )
    op.create_index("appointments_client_start_idx", "appointments", ["client_id", "start_time"])

    op.create_table(
        "prepaid_transactions",
        sa.Column("prepaid_transaction_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "client_profile_id",
            sa.String(length=36),
            sa.ForeignKey("client_profiles.client_profile_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("transaction_type", transaction_type_enum, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "appointment_id",
            sa.String(length=36),
            sa.ForeignKey("appointments.appointment_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("invoice_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "prepaid_transactions_profile_idx",
        "prepaid_transactions",
        ["client_profile_id", "prepaid_transaction_id"],
    )
    op.create_index(
        "uq_prepaid_transactions_deduction_appointment",
        "prepaid_transactions",
        ["appointment_id"],
        unique=True,
        sqlite_where=sa.text("transaction_type = 'DEDUCTION' AND appointment_id IS NOT NULL"),
        postgresql_where=sa.text("transaction_type = 'DEDUCTION' AND appointment_id IS NOT NULL"),
    )

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("trainer_id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", invoice_status_enum, nullable=False),
        sa.Column("is_prepaid_top_up", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_invoices_client_id", "invoices", ["client_id"])
    op.create_index(
        "uq_invoices_pending_top_up_per_client",
        "invoices",
        ["client_id"],
        unique=True,
        sqlite_where=sa.text("is_prepaid_top_up = 1 AND status IN ('DRAFT', 'SENT')"),
        postgresql_where=sa.text("is_prepaid_top_up AND status IN ('DRAFT', 'SENT')"),
    )

    op.create_table(
        "invoice_line_items",
        sa.Column("line_item_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.String(length=36),
            sa.ForeignKey("invoices.invoice_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appointment_id", sa.String(length=36), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("invoice_line_items_invoice_idx", "invoice_line_items", ["invoice_id"])

    op.create_table(
        "invoice_delivery_logs",
        sa.Column("delivery_log_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.String(length=36),
            sa.ForeignKey("invoices.invoice_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("delivery_status", delivery_status_enum, nullable=False),
        sa.Column("destination", sa.String(length=255), nullable=True),
        sa.Column("channel", sa.String(length=50), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("invoice_delivery_logs_invoice_idx", "invoice_delivery_logs", ["invoice_id"])

    op.create_table(
        "operational_metric_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("duration_ms", sa.Numeric(14, 3), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_operational_metric_events_event_type", "operational_metric_events", ["event_type"])
    op.create_index("ix_operational_metric_events_outcome", "operational_metric_events", ["outcome"])
    op.create_index("ix_operational_metric_events_created_at", "operational_metric_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("operational_metric_events")
    op.drop_table("invoice_delivery_logs")
    op.drop_table("invoice_line_items")
    op.drop_index("uq_invoices_pending_top_up_per_client", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("uq_prepaid_transactions_deduction_appointment", table_name="prepaid_transactions")
    op.drop_table("prepaid_transactions")
    op.drop_table("appointments")
    op.drop_table("trainer_settings")
    op.drop_table("client_profiles")
