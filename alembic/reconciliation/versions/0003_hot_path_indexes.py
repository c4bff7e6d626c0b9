"""add hot-path indexes for matching, review queue and outbox

Revision ID: 0003_hot_path_indexes
Revises: 0002_audit_log_immutability
Create Date: 2026-10-19
"""

from alembic import op


revision = "0003_hot_path_indexes"
down_revision = "0002_audit_log_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Candidate lookup: pending payments of one amount inside the lookback window.
    op.create_index(
        "ix_payments_status_amount_created_at",
        "payments",
        ["status", "amount", "created_at"],
    )
    op.create_index(
        "ix_sms_raw_status_lane_received_at",
        "sms_raw",
        ["ingest_status", "review_lane", "received_at"],
    )
    op.create_index(
        "ix_audit_log_entity_type_entity_id_at",
        "audit_log",
        ["entity_type", "entity_id", "at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_audit_log_entity_type_entity_id_at", table_name="audit_log")
    op.drop_index("ix_sms_raw_status_lane_received_at", table_name="sms_raw")
    op.drop_index("ix_payments_status_amount_created_at", table_name="payments")
