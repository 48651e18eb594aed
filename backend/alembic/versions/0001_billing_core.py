"""billing core: churches, subscriptions, payments, jobs

Revision ID: 0001_billing_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_billing_core"
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _ts(name, nullable=False):
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade():
    op.create_table(
        "churches",
        _id(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        _ts("data_deleted_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('active','deleted')", name="ck_churches_status"),
        sa.CheckConstraint("member_count >= 0", name="ck_churches_member_count"),
    )

    op.create_table(
        "pricing_tiers",
        _id(),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("min_members", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_members", sa.Integer(), nullable=True),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("quarterly_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("biannual_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("annual_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("is_free", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
        sa.CheckConstraint("min_members >= 0", name="ck_pricing_tiers_min_members"),
        sa.CheckConstraint("max_members IS NULL OR max_members >= min_members", name="ck_pricing_tiers_member_range"),
    )

    op.create_table(
        "church_subscriptions",
        _id(),
        sa.Column("church_id", sa.Uuid(), sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="TRIALING"),
        sa.Column("pricing_tier_id", sa.Uuid(), sa.ForeignKey("pricing_tiers.id"), nullable=False),
        sa.Column("billing_interval", sa.Text(), nullable=False, server_default="MONTHLY"),
        sa.Column("current_period_start", sa.Date(), nullable=True),
        sa.Column("current_period_end", sa.Date(), nullable=True),
        sa.Column("next_billing_date", sa.Date(), nullable=True),
        sa.Column("trial_end_date", sa.Date(), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("payment_authorization_code", sa.Text(), nullable=True),
        sa.Column("payment_email", sa.Text(), nullable=True),
        sa.Column("failed_payment_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("grace_period_reason", sa.Text(), nullable=True),
        sa.Column("free_months_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("promotional_note", sa.Text(), nullable=True),
        _ts("canceled_at", nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("ends_at", sa.Date(), nullable=True),
        _ts("suspended_at", nullable=True),
        sa.Column("data_retention_end_date", sa.Date(), nullable=True),
        sa.Column("retention_extension_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retention_extension_note", sa.Text(), nullable=True),
        _ts("deletion_warning_sent_at", nullable=True),
        _ts("deletion_canceled_at", nullable=True),
        _ts("data_deleted_at", nullable=True),
        sa.Column("pending_tier_change_id", sa.Uuid(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "status IN ('TRIALING','ACTIVE','PAST_DUE','SUSPENDED','CANCELED')",
            name="ck_church_subscriptions_status",
        ),
        sa.CheckConstraint(
            "billing_interval IN ('MONTHLY','QUARTERLY','BIANNUAL','ANNUAL')",
            name="ck_church_subscriptions_interval",
        ),
        sa.CheckConstraint(
            "(status = 'SUSPENDED' AND data_retention_end_date IS NOT NULL)"
            " OR (status <> 'SUSPENDED' AND data_retention_end_date IS NULL)",
            name="ck_church_subscriptions_retention_iff_suspended",
        ),
        sa.CheckConstraint("failed_payment_attempts >= 0", name="ck_church_subscriptions_failed_attempts"),
        sa.CheckConstraint("free_months_remaining >= 0", name="ck_church_subscriptions_free_months"),
    )
    op.create_index(
        "ix_church_subscriptions_status_next_billing",
        "church_subscriptions",
        ["status", "next_billing_date"],
    )
    op.create_index("ix_church_subscriptions_retention_end", "church_subscriptions", ["data_retention_end_date"])

    op.create_table(
        "payment_intents",
        _id(),
        sa.Column("reference", sa.Text(), nullable=False, unique=True),
        sa.Column("church_id", sa.Uuid(), sa.ForeignKey("churches.id", ondelete="SET NULL"), nullable=True),
        sa.Column("intent_type", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="GHS"),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("gateway_transaction_id", sa.Text(), nullable=True),
        _ts("paid_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('PENDING','SUCCESS','FAILED')", name="ck_payment_intents_status"),
        sa.CheckConstraint(
            "intent_type IN ('SUBSCRIPTION','ADDON','RENEWAL','TIER_UPGRADE','SMS_CREDITS')",
            name="ck_payment_intents_type",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_payment_intents_amount"),
    )
    op.create_index(
        "ix_payment_intents_church_created",
        "payment_intents",
        ["church_id", sa.text("created_at DESC")],
    )
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])

    op.create_table(
        "payment_webhook_events",
        _id(),
        sa.Column("gateway", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("church_id", sa.Uuid(), nullable=True),
        sa.Column("outcome", sa.Text(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        _ts("received_at"),
        sa.CheckConstraint(
            "outcome IN ('processed','duplicate','ignored','recorded')",
            name="ck_payment_webhook_events_outcome",
        ),
    )
    op.create_index("ix_payment_webhook_events_reference", "payment_webhook_events", ["reference"])
    op.create_index("ix_payment_webhook_events_received", "payment_webhook_events", [sa.text("received_at DESC")])

    op.create_table(
        "tier_change_history",
        _id(),
        sa.Column("church_id", sa.Uuid(), sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("church_subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("old_tier_id", sa.Uuid(), sa.ForeignKey("pricing_tiers.id"), nullable=False),
        sa.Column("new_tier_id", sa.Uuid(), sa.ForeignKey("pricing_tiers.id"), nullable=False),
        sa.Column("old_interval", sa.Text(), nullable=False),
        sa.Column("new_interval", sa.Text(), nullable=False),
        sa.Column("change_type", sa.Text(), nullable=False),
        sa.Column("days_remaining", sa.Integer(), nullable=False),
        sa.Column("total_days", sa.Integer(), nullable=False),
        sa.Column("old_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("new_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("unused_credit", sa.Numeric(10, 2), nullable=False),
        sa.Column("new_charge", sa.Numeric(10, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("old_next_billing_date", sa.Date(), nullable=True),
        sa.Column("new_next_billing_date", sa.Date(), nullable=True),
        sa.Column("payment_reference", sa.Text(), nullable=True, unique=True),
        sa.Column("outcome", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.Text(), nullable=True),
        _ts("requested_at"),
        _ts("completed_at", nullable=True),
        sa.CheckConstraint(
            "outcome IN ('PENDING','COMPLETED','ROLLED_BACK','FAILED')",
            name="ck_tier_change_history_outcome",
        ),
        sa.CheckConstraint(
            "change_type IN ('TIER_UPGRADE','TIER_DOWNGRADE','INTERVAL_CHANGE','COMBINED')",
            name="ck_tier_change_history_change_type",
        ),
    )
    op.create_index(
        "ix_tier_change_history_church_requested",
        "tier_change_history",
        ["church_id", sa.text("requested_at DESC")],
    )

    op.create_table(
        "scheduled_job_executions",
        _id(),
        sa.Column("job_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="RUNNING"),
        _ts("start_time"),
        _ts("end_time", nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("stack_trace", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "retry_of_id",
            sa.Uuid(),
            sa.ForeignKey("scheduled_job_executions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("manually_triggered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("triggered_by", sa.Text(), nullable=True),
        sa.Column("canceled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("canceled_by", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('RUNNING','SUCCESS','FAILED','CANCELED')",
            name="ck_scheduled_job_executions_status",
        ),
    )
    op.create_index(
        "uq_scheduled_job_executions_running",
        "scheduled_job_executions",
        ["job_name"],
        unique=True,
        postgresql_where=sa.text("status = 'RUNNING'"),
    )
    op.create_index(
        "ix_scheduled_job_executions_job_start",
        "scheduled_job_executions",
        ["job_name", sa.text("start_time DESC")],
    )
    op.create_index("ix_scheduled_job_executions_status", "scheduled_job_executions", ["status"])

    op.create_table(
        "storage_addons",
        _id(),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("storage_gb", sa.Integer(), nullable=False),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint("storage_gb > 0", name="ck_storage_addons_storage_gb"),
    )

    op.create_table(
        "church_storage_addons",
        _id(),
        sa.Column("church_id", sa.Uuid(), sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("storage_addon_id", sa.Uuid(), sa.ForeignKey("storage_addons.id"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="ACTIVE"),
        sa.Column("purchase_reference", sa.Text(), nullable=False, unique=True),
        sa.Column("purchase_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False),
        sa.Column("prorated_days", sa.Integer(), nullable=True),
        sa.Column("current_period_start", sa.Date(), nullable=False),
        sa.Column("next_renewal_date", sa.Date(), nullable=True),
        _ts("purchased_at"),
        _ts("suspended_at", nullable=True),
        _ts("canceled_at", nullable=True),
        sa.CheckConstraint("status IN ('ACTIVE','SUSPENDED','CANCELED')", name="ck_church_storage_addons_status"),
    )
    op.create_index(
        "ix_church_storage_addons_church_status",
        "church_storage_addons",
        ["church_id", "status"],
    )

    op.create_table(
        "church_sms_credits",
        sa.Column(
            "church_id",
            sa.Uuid(),
            sa.ForeignKey("churches.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_purchased", sa.Numeric(12, 2), nullable=False, server_default="0"),
        _ts("updated_at"),
        sa.CheckConstraint("balance >= 0", name="ck_church_sms_credits_balance"),
    )

    op.create_table(
        "sms_credit_purchases",
        _id(),
        sa.Column("church_id", sa.Uuid(), sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reference", sa.Text(), nullable=False, unique=True),
        sa.Column("credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False),
        _ts("created_at"),
    )
    op.create_index(
        "ix_sms_credit_purchases_church_created",
        "sms_credit_purchases",
        ["church_id", sa.text("created_at DESC")],
    )

    op.create_table(
        "partnership_codes",
        _id(),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("grace_period_days", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("expires_at", nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_uses_per_church", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_by", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint("grace_period_days > 0", name="ck_partnership_codes_grace_days"),
        sa.CheckConstraint("max_uses IS NULL OR max_uses > 0", name="ck_partnership_codes_max_uses"),
        sa.CheckConstraint("max_uses_per_church > 0", name="ck_partnership_codes_max_uses_per_church"),
    )

    op.create_table(
        "partnership_code_usages",
        _id(),
        sa.Column(
            "partnership_code_id",
            sa.Uuid(),
            sa.ForeignKey("partnership_codes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("church_id", sa.Uuid(), sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("grace_period_days_granted", sa.Integer(), nullable=False),
        _ts("used_at"),
    )
    op.create_index(
        "ix_partnership_code_usages_code_church",
        "partnership_code_usages",
        ["partnership_code_id", "church_id"],
    )

    op.create_table(
        "audit_log",
        _id(),
        sa.Column("actor_id", sa.Text(), nullable=True),
        sa.Column("church_id", sa.Uuid(), nullable=True),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        _ts("created_at"),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_church_created", "audit_log", ["church_id", sa.text("created_at DESC")])


def downgrade():
    op.drop_index("ix_audit_church_created", table_name="audit_log")
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")

    op.drop_index("ix_partnership_code_usages_code_church", table_name="partnership_code_usages")
    op.drop_table("partnership_code_usages")
    op.drop_table("partnership_codes")

    op.drop_index("ix_sms_credit_purchases_church_created", table_name="sms_credit_purchases")
    op.drop_table("sms_credit_purchases")
    op.drop_table("church_sms_credits")

    op.drop_index("ix_church_storage_addons_church_status", table_name="church_storage_addons")
    op.drop_table("church_storage_addons")
    op.drop_table("storage_addons")

    op.drop_index("ix_scheduled_job_executions_status", table_name="scheduled_job_executions")
    op.drop_index("ix_scheduled_job_executions_job_start", table_name="scheduled_job_executions")
    op.drop_index("uq_scheduled_job_executions_running", table_name="scheduled_job_executions")
    op.drop_table("scheduled_job_executions")

    op.drop_index("ix_tier_change_history_church_requested", table_name="tier_change_history")
    op.drop_table("tier_change_history")

    op.drop_index("ix_payment_webhook_events_received", table_name="payment_webhook_events")
    op.drop_index("ix_payment_webhook_events_reference", table_name="payment_webhook_events")
    op.drop_table("payment_webhook_events")

    op.drop_index("ix_payment_intents_status", table_name="payment_intents")
    op.drop_index("ix_payment_intents_church_created", table_name="payment_intents")
    op.drop_table("payment_intents")

    op.drop_index("ix_church_subscriptions_retention_end", table_name="church_subscriptions")
    op.drop_index("ix_church_subscriptions_status_next_billing", table_name="church_subscriptions")
    op.drop_table("church_subscriptions")

    op.drop_table("pricing_tiers")
    op.drop_table("churches")
