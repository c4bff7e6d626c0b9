"""initial reconciliation schema

Revision ID: 0001_reconciliation
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_reconciliation"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sms_raw",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("from_address", sa.String(), nullable=False),
        sa.Column("to_address", sa.String(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dedup_key", sa.String(length=64), nullable=False),
        sa.Column("ingest_status", sa.String(), nullable=False),
        sa.Column("review_lane", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key", name="uq_sms_raw_dedup_key"),
        sa.CheckConstraint(
            "ingest_status IN ('received', 'parsed', 'error', 'manual_review')",
            name="ck_sms_raw_ingest_status",
        ),
    )
    op.create_index("ix_sms_raw_from_address", "sms_raw", ["from_address"])
    op.create_index("ix_sms_raw_received_at", "sms_raw", ["received_at"])
    op.create_index("ix_sms_raw_ingest_status", "sms_raw", ["ingest_status"])

    op.create_table(
        "sms_parsed",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("sms_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("payer_mask", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("parser_version", sa.String(), nullable=False),
        sa.Column("degraded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("matched_entity", sa.String(), nullable=True),
        sa.Column("match_decision", sa.String(), nullable=True),
        sa.Column("candidate_payment_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["sms_id"], ["sms_raw.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sms_id", name="uq_sms_parsed_sms_id"),
        sa.UniqueConstraint("matched_entity", name="uq_sms_parsed_matched_entity"),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_sms_parsed_confidence"),
    )
    op.create_index("ix_sms_parsed_amount", "sms_parsed", ["amount"])

    op.create_table(
        "sms_parser_prompts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("version", name="uq_sms_parser_prompts_version"),
    )
    op.create_index("ix_sms_parser_prompts_is_active", "sms_parser_prompts", ["is_active"])

    op.create_table(
        "ticket_orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("sms_ref", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ticket_orders_status", "ticket_orders", ["status"])

    op.create_table(
        "shop_orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_shop_orders_status", "shop_orders", ["status"])

    op.create_table(
        "memberships",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("plan_code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_memberships_status", "memberships", ["status"])

    op.create_table(
        "donations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_donations_status", "donations", ["status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("parsed_sms_id", sa.String(), nullable=True),
        sa.Column("ticket_order_id", sa.String(), nullable=True),
        sa.Column("shop_order_id", sa.String(), nullable=True),
        sa.Column("membership_id", sa.String(), nullable=True),
        sa.Column("donation_id", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["parsed_sms_id"], ["sms_parsed.id"]),
        sa.ForeignKeyConstraint(["ticket_order_id"], ["ticket_orders.id"]),
        sa.ForeignKeyConstraint(["shop_order_id"], ["shop_orders.id"]),
        sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"]),
        sa.ForeignKeyConstraint(["donation_id"], ["donations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("parsed_sms_id", name="uq_payments_parsed_sms_id"),
        sa.CheckConstraint(
            "kind IN ('ticket', 'membership', 'shop', 'donation')",
            name="ck_payments_kind",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed', 'manual_review')",
            name="ck_payments_status",
        ),
        sa.CheckConstraint(
            "(CASE WHEN ticket_order_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN shop_order_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN membership_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN donation_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_payments_single_dependent",
        ),
    )
    op.create_index("ix_payments_kind", "payments", ["kind"])
    op.create_index("ix_payments_amount", "payments", ["amount"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    op.create_table(
        "sms_manual_resolutions",
        sa.Column("sms_id", sa.String(), nullable=False),
        sa.Column("resolution", sa.String(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["sms_id"], ["sms_raw.id"]),
        sa.PrimaryKeyConstraint("sms_id"),
        sa.CheckConstraint(
            "resolution IN ('ignore', 'linked_elsewhere', 'duplicate')",
            name="ck_sms_manual_resolutions_resolution",
        ),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("before", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_entity_id", "audit_log", ["entity_id"])
    op.create_index("ix_audit_log_at", "audit_log", ["at"])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_logs_payment_id", "notification_logs", ["payment_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])

    op.create_table(
        "inbox_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("consumed_by_service", sa.String(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "consumed_by_service"),
        sa.UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),
    )


def downgrade() -> None:
    op.drop_table("inbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_notification_logs_payment_id", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_index("ix_audit_log_at", table_name="audit_log")
    op.drop_index("ix_audit_log_entity_id", table_name="audit_log")
    op.drop_index("ix_audit_log_action", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("sms_manual_resolutions")
    op.drop_index("ix_payments_created_at", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_amount", table_name="payments")
    op.drop_index("ix_payments_kind", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_donations_status", table_name="donations")
    op.drop_table("donations")
    op.drop_index("ix_memberships_status", table_name="memberships")
    op.drop_table("memberships")
    op.drop_index("ix_shop_orders_status", table_name="shop_orders")
    op.drop_table("shop_orders")
    op.drop_index("ix_ticket_orders_status", table_name="ticket_orders")
    op.drop_table("ticket_orders")
    op.drop_index("ix_sms_parser_prompts_is_active", table_name="sms_parser_prompts")
    op.drop_table("sms_parser_prompts")
    op.drop_index("ix_sms_parsed_amount", table_name="sms_parsed")
    op.drop_table("sms_parsed")
    op.drop_index("ix_sms_raw_ingest_status", table_name="sms_raw")
    op.drop_index("ix_sms_raw_received_at", table_name="sms_raw")
    op.drop_index("ix_sms_raw_from_address", table_name="sms_raw")
    op.drop_table("sms_raw")
