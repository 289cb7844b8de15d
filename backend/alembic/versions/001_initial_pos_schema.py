"""Initial POS schema

Revision ID: 001
Revises:
Create Date: 2026-03-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "pos_locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # Bridge agents before terminals: terminals reference their agent
    op.create_table(
        "pos_agents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("agent_key", sa.String(100), nullable=False, unique=True),
        sa.Column("location_label", sa.String(200), nullable=True),
        sa.Column("paired_terminal_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True, index=True),
        *_timestamps(),
    )

    op.create_table(
        "pos_terminals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("pos_locations.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("provider", sa.String(50), nullable=False, server_default="bridge"),
        sa.Column("terminal_ref", sa.String(100), nullable=False),
        sa.Column("label", sa.String(200), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="ready"),
        sa.Column("mode", sa.String(20), nullable=False, server_default="bridge"),
        sa.Column("host", sa.String(255), nullable=True),
        sa.Column("port", sa.Integer(), nullable=True),
        sa.Column("zvt_password", sa.String(20), nullable=True),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("pos_agents.id", ondelete="SET NULL"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "pos_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("sku", sa.String(100), nullable=True, index=True),
        sa.Column("price_gross_cents", sa.Integer(), nullable=False),
        sa.Column("vat_rate", sa.Integer(), nullable=False, server_default="19"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("artist_name", sa.String(200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "pos_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("pos_locations.id"), nullable=False, index=True),
        sa.Column("terminal_id", sa.Integer(), sa.ForeignKey("pos_terminals.id"), nullable=True, index=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="created", index=True),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("gross_cents", sa.Integer(), nullable=False),
        sa.Column("net_cents", sa.Integer(), nullable=False),
        sa.Column("vat_cents", sa.Integer(), nullable=False),
        sa.Column("buyer_type", sa.String(10), nullable=False),
        sa.Column("buyer_name", sa.String(200), nullable=False),
        sa.Column("buyer_company", sa.String(200), nullable=True),
        sa.Column("buyer_email", sa.String(255), nullable=True),
        sa.Column("buyer_phone", sa.String(50), nullable=True),
        sa.Column("buyer_vat_id", sa.String(50), nullable=True),
        sa.Column("buyer_billing_address", sa.String(500), nullable=True),
        sa.Column("buyer_shipping_address", sa.String(500), nullable=True),
        sa.Column("payment_provider", sa.String(30), nullable=False),
        sa.Column("payment_provider_tx_id", sa.String(200), nullable=True, index=True),
        sa.Column("payment_method", sa.String(30), nullable=False),
        sa.Column("payment_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_external_ref", sa.JSON(), nullable=True),
        sa.Column("payment_raw_status", sa.JSON(), nullable=True),
        sa.Column("last_provider_poll_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tse_provider", sa.String(30), nullable=True),
        sa.Column("tse_tx_id", sa.String(100), nullable=True),
        sa.Column("tse_serial", sa.String(200), nullable=True),
        sa.Column("tse_signature", sa.Text(), nullable=True),
        sa.Column("tse_signature_counter", sa.BigInteger(), nullable=True),
        sa.Column("tse_log_time", sa.String(50), nullable=True),
        sa.Column("tse_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tse_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tse_raw_payload", sa.JSON(), nullable=True),
        sa.Column("receipt_no", sa.String(30), nullable=True),
        sa.Column("receipt_pdf_url", sa.String(500), nullable=True),
        sa.Column("receipt_request_email", sa.String(255), nullable=True),
        sa.Column("receipt_email_queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_no", sa.String(30), nullable=True),
        sa.Column("invoice_pdf_url", sa.String(500), nullable=True),
        sa.Column("invoice_skipped_reason", sa.String(50), nullable=True),
        sa.Column("contract_id", sa.Integer(), nullable=True),
        sa.Column("contract_pdf_url", sa.String(500), nullable=True),
        sa.Column("needs_audit_reconciliation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by_admin_id", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_pos_transactions_status_created", "pos_transactions", ["status", "created_at"])

    op.create_table(
        "pos_contracts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tx_id", sa.Integer(), sa.ForeignKey("pos_transactions.id"), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("buyer_signature_key", sa.String(500), nullable=True),
        sa.Column("pdf_url", sa.String(500), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "pos_commands",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("pos_agents.id"), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        *_timestamps(),
    )
    op.create_index("ix_pos_commands_agent_status", "pos_commands", ["agent_id", "status", "id"])

    op.create_table(
        "pos_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False, index=True),
        sa.Column("tx_id", sa.Integer(), nullable=True, index=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "pos_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("scope", sa.String(50), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_hash", sa.String(64), nullable=True),
        sa.UniqueConstraint("scope", "year", name="uq_pos_counters_scope_year"),
    )

    op.create_table(
        "pos_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(100), nullable=False, unique=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("updated_by_admin_id", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "pos_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("event_id", sa.String(200), nullable=False),
        sa.Column("tx_id", sa.Integer(), nullable=False, index=True),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "event_id", name="uq_pos_webhook_events_provider_event"),
    )


def downgrade() -> None:
    op.drop_table("pos_webhook_events")
    op.drop_table("pos_settings")
    op.drop_table("pos_counters")
    op.drop_table("pos_audit_logs")
    op.drop_index("ix_pos_commands_agent_status", table_name="pos_commands")
    op.drop_table("pos_commands")
    op.drop_table("pos_contracts")
    op.drop_index("ix_pos_transactions_status_created", table_name="pos_transactions")
    op.drop_table("pos_transactions")
    op.drop_table("pos_items")
    op.drop_table("pos_terminals")
    op.drop_table("pos_agents")
    op.drop_table("pos_locations")
