"""initial shops, credit ledger, billing, campaigns and job queue tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "shops",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_domain", sa.String(length=255), nullable=False),
        sa.Column("shop_name", sa.String(length=255), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_shops_shop_domain", "shops", ["shop_domain"], unique=True)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("ref", sa.String(length=191), nullable=True),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallet_transactions_shop_id", "wallet_transactions", ["shop_id"], unique=False)
    op.create_index("ix_wallet_transactions_ref", "wallet_transactions", ["ref"], unique=False)
    op.create_index(
        "ix_wallet_transactions_shop_created_at",
        "wallet_transactions",
        ["shop_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_wallet_transactions_shop_ref", "wallet_transactions", ["shop_id", "ref"], unique=False)

    op.create_table(
        "billing_transactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("credits_added", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("package_type", sa.String(length=60), nullable=False),
        sa.Column("stripe_session_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_payment_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("credits_refunded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_refunded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_session_id"),
    )
    op.create_index("ix_billing_transactions_shop_id", "billing_transactions", ["shop_id"], unique=False)
    op.create_index(
        "ix_billing_transactions_stripe_payment_id",
        "billing_transactions",
        ["stripe_payment_id"],
        unique=False,
    )
    op.create_index(
        "ix_billing_transactions_shop_status_created_at",
        "billing_transactions",
        ["shop_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=True),
        sa.Column("last_name", sa.String(length=120), nullable=True),
        sa.Column("phone_e164", sa.String(length=32), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("gender", sa.String(length=20), nullable=True),
        sa.Column("sms_consent", sa.String(length=20), nullable=False, server_default="unknown"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shop_id", "phone_e164", name="uq_contacts_shop_phone"),
    )
    op.create_index("ix_contacts_shop_id", "contacts", ["shop_id"], unique=False)
    op.create_index("ix_contacts_shop_consent", "contacts", ["shop_id", "sms_consent"], unique=False)

    op.create_table(
        "segments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shop_id", "name", name="uq_segments_shop_name"),
    )
    op.create_index("ix_segments_shop_id", "segments", ["shop_id"], unique=False)

    op.create_table(
        "segment_memberships",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("segment_id", sa.String(length=36), nullable=False),
        sa.Column("contact_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["segment_id"], ["segments.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("segment_id", "contact_id", name="uq_segment_memberships_segment_contact"),
    )
    op.create_index("ix_segment_memberships_segment_id", "segment_memberships", ["segment_id"], unique=False)
    op.create_index("ix_segment_memberships_contact_id", "segment_memberships", ["contact_id"], unique=False)

    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("message", sa.String(length=2000), nullable=False),
        sa.Column("audience", sa.String(length=120), nullable=False, server_default="all"),
        sa.Column("schedule_type", sa.String(length=20), nullable=False, server_default="immediate"),
        sa.Column("schedule_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recurring_days", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("send_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_campaigns_shop_id", "campaigns", ["shop_id"], unique=False)
    op.create_index(
        "ix_campaigns_shop_status_created_at",
        "campaigns",
        ["shop_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "campaign_recipients",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("contact_id", sa.String(length=36), nullable=False),
        sa.Column("phone_e164", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("provider_message_id", sa.String(length=120), nullable=True),
        sa.Column("delivery_status", sa.String(length=40), nullable=True),
        sa.Column("error", sa.String(length=500), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "contact_id", name="uq_campaign_recipients_campaign_contact"),
    )
    op.create_index("ix_campaign_recipients_campaign_id", "campaign_recipients", ["campaign_id"], unique=False)
    op.create_index("ix_campaign_recipients_shop_id", "campaign_recipients", ["shop_id"], unique=False)
    op.create_index("ix_campaign_recipients_contact_id", "campaign_recipients", ["contact_id"], unique=False)
    op.create_index(
        "ix_campaign_recipients_provider_message_id",
        "campaign_recipients",
        ["provider_message_id"],
        unique=False,
    )
    op.create_index(
        "ix_campaign_recipients_campaign_status",
        "campaign_recipients",
        ["campaign_id", "status"],
        unique=False,
    )

    op.create_table(
        "campaign_metrics",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("total_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id"),
    )

    op.create_table(
        "message_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("shop_id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_id", sa.String(length=36), nullable=True),
        sa.Column("phone_e164", sa.String(length=32), nullable=False),
        sa.Column("direction", sa.String(length=20), nullable=False, server_default="outbound"),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_message_id", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("delivery_status", sa.String(length=40), nullable=True),
        sa.Column("error", sa.String(length=500), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.ForeignKeyConstraint(["recipient_id"], ["campaign_recipients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_logs_shop_id", "message_logs", ["shop_id"], unique=False)
    op.create_index("ix_message_logs_campaign_id", "message_logs", ["campaign_id"], unique=False)
    op.create_index("ix_message_logs_recipient_id", "message_logs", ["recipient_id"], unique=False)
    op.create_index("ix_message_logs_provider_message_id", "message_logs", ["provider_message_id"], unique=False)
    op.create_index("ix_message_logs_shop_created_at", "message_logs", ["shop_id", "created_at"], unique=False)

    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("queue_name", sa.String(length=60), nullable=False),
        sa.Column("job_type", sa.String(length=60), nullable=False),
        sa.Column("job_key", sa.String(length=191), nullable=False),
        sa.Column("group_key", sa.String(length=191), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("backoff_type", sa.String(length=20), nullable=False, server_default="exponential"),
        sa.Column("backoff_delay_ms", sa.Integer(), nullable=False, server_default="2000"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_key"),
    )
    op.create_index("ix_queue_jobs_group_key", "queue_jobs", ["group_key"], unique=False)
    op.create_index(
        "ix_queue_jobs_queue_status_next_attempt",
        "queue_jobs",
        ["queue_name", "status", "next_attempt_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_queue_jobs_queue_status_next_attempt", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_group_key", table_name="queue_jobs")
    op.drop_table("queue_jobs")

    op.drop_index("ix_message_logs_shop_created_at", table_name="message_logs")
    op.drop_index("ix_message_logs_provider_message_id", table_name="message_logs")
    op.drop_index("ix_message_logs_recipient_id", table_name="message_logs")
    op.drop_index("ix_message_logs_campaign_id", table_name="message_logs")
    op.drop_index("ix_message_logs_shop_id", table_name="message_logs")
    op.drop_table("message_logs")

    op.drop_table("campaign_metrics")

    op.drop_index("ix_campaign_recipients_campaign_status", table_name="campaign_recipients")
    op.drop_index("ix_campaign_recipients_provider_message_id", table_name="campaign_recipients")
    op.drop_index("ix_campaign_recipients_contact_id", table_name="campaign_recipients")
    op.drop_index("ix_campaign_recipients_shop_id", table_name="campaign_recipients")
    op.drop_index("ix_campaign_recipients_campaign_id", table_name="campaign_recipients")
    op.drop_table("campaign_recipients")

    op.drop_index("ix_campaigns_shop_status_created_at", table_name="campaigns")
    op.drop_index("ix_campaigns_shop_id", table_name="campaigns")
    op.drop_table("campaigns")

    op.drop_index("ix_segment_memberships_contact_id", table_name="segment_memberships")
    op.drop_index("ix_segment_memberships_segment_id", table_name="segment_memberships")
    op.drop_table("segment_memberships")

    op.drop_index("ix_segments_shop_id", table_name="segments")
    op.drop_table("segments")

    op.drop_index("ix_contacts_shop_consent", table_name="contacts")
    op.drop_index("ix_contacts_shop_id", table_name="contacts")
    op.drop_table("contacts")

    op.drop_index("ix_billing_transactions_shop_status_created_at", table_name="billing_transactions")
    op.drop_index("ix_billing_transactions_stripe_payment_id", table_name="billing_transactions")
    op.drop_index("ix_billing_transactions_shop_id", table_name="billing_transactions")
    op.drop_table("billing_transactions")

    op.drop_index("ix_wallet_transactions_shop_ref", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_shop_created_at", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_ref", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_shop_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")

    op.drop_index("ix_shops_shop_domain", table_name="shops")
    op.drop_table("shops")
