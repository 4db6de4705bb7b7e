"""b1_billing_core_tables

Revision ID: 3a1f0c2b7d10
Revises:
Create Date: 2026-09-02 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3a1f0c2b7d10"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "provider_events",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("provider_event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(96), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("origin", sa.String(16), nullable=False, server_default=sa.text("'webhook'")),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duplicate", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint("provider IN ('paypal','paymongo')", name="ck_provider_events_provider"),
        sa.CheckConstraint(
            "origin IN ('webhook','reconciliation')",
            name="ck_provider_events_origin",
        ),
        sa.CheckConstraint(
            "delivery_attempts >= 1",
            name="ck_provider_events_attempts_positive",
        ),
        sa.UniqueConstraint(
            "provider",
            "provider_event_id",
            name="uq_provider_events_provider_event_id",
        ),
    )
    op.create_index("idx_provider_events_received", "provider_events", ["received_at"])
    op.create_index(
        "idx_provider_events_unprocessed",
        "provider_events",
        ["received_at"],
        postgresql_where=sa.text("processed_at IS NULL"),
    )

    op.create_table(
        "billing_identities",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("external_customer_ref", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "provider IN ('paypal','paymongo')",
            name="ck_billing_identities_provider",
        ),
        sa.UniqueConstraint(
            "provider",
            "external_customer_ref",
            name="uq_billing_identities_provider_customer_ref",
        ),
    )
    op.create_index(
        "idx_billing_identities_user_provider",
        "billing_identities",
        ["user_id", "provider"],
    )
    op.create_index(
        "uq_billing_identities_current_per_user_provider",
        "billing_identities",
        ["user_id", "provider"],
        unique=True,
        postgresql_where=sa.text("superseded_at IS NULL"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("external_ref", sa.String(128), nullable=False),
        sa.Column("plan_key", sa.String(16), nullable=False),
        sa.Column("price_key", sa.String(32), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('trialing','active','past_due','canceled','incomplete')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint("plan_key IN ('pro','vip')", name="ck_subscriptions_plan_key"),
        sa.UniqueConstraint(
            "provider",
            "external_ref",
            name="uq_subscriptions_provider_external_ref",
        ),
    )
    op.create_index("idx_subscriptions_user", "subscriptions", ["user_id"])
    op.create_index("idx_subscriptions_status", "subscriptions", ["status"])

    op.create_table(
        "entitlements",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_key", sa.String(16), nullable=False),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("plan_key IN ('free','pro','vip')", name="ck_entitlements_plan_key"),
        sa.CheckConstraint(
            "source IN ('paypal','paymongo','admin','promo')",
            name="ck_entitlements_source",
        ),
        sa.CheckConstraint(
            "status IN ('active','scheduled','expired','canceled','revoked')",
            name="ck_entitlements_status",
        ),
        sa.CheckConstraint(
            "ends_at IS NULL OR ends_at > starts_at",
            name="ck_entitlements_window_order",
        ),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.UniqueConstraint(
            "user_id",
            "plan_key",
            "starts_at",
            name="uq_entitlements_user_plan_starts",
        ),
    )
    op.create_index("idx_entitlements_user_status", "entitlements", ["user_id", "status"])
    op.create_index("idx_entitlements_subscription", "entitlements", ["subscription_id"])
    op.create_index("idx_entitlements_ends", "entitlements", ["ends_at"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("entitlement_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("actor", sa.String(16), nullable=False),
        sa.Column("before_state", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after_state", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("event_provider", sa.String(16), nullable=True),
        sa.Column("event_id", sa.String(128), nullable=True),
        sa.Column("journal_entry_id", sa.BigInteger(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "action IN ('grant','extend','revoke','expire','update')",
            name="ck_ledger_entries_action",
        ),
        sa.CheckConstraint(
            "actor IN ('provider','admin','reconciliation','system')",
            name="ck_ledger_entries_actor",
        ),
        sa.ForeignKeyConstraint(["entitlement_id"], ["entitlements.id"]),
        sa.ForeignKeyConstraint(["journal_entry_id"], ["provider_events.id"]),
        sa.UniqueConstraint("idempotency_key", name="uq_ledger_entries_idempotency_key"),
    )
    op.create_index("idx_ledger_user_created", "ledger_entries", ["user_id", "created_at"])
    op.create_index("idx_ledger_entitlement", "ledger_entries", ["entitlement_id"])
    op.create_index("idx_ledger_event", "ledger_entries", ["event_provider", "event_id"])

    op.execute(
        """
        CREATE OR REPLACE FUNCTION fn_ledger_entries_append_only()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only';
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION fn_ledger_entries_append_only();
        """
    )

    op.create_table(
        "user_current_plans",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("plan_key", sa.String(16), nullable=False),
        sa.Column("entitlement_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "plan_key IN ('free','pro','vip')",
            name="ck_user_current_plans_plan_key",
        ),
    )

    op.create_table(
        "user_limit_overrides",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("limit_key", sa.String(32), nullable=False),
        sa.Column("value_num", sa.BigInteger(), nullable=True),
        sa.Column("value_bool", sa.Boolean(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "value_num IS NOT NULL OR value_bool IS NOT NULL",
            name="ck_user_limit_overrides_has_value",
        ),
        sa.PrimaryKeyConstraint("user_id", "limit_key"),
    )


def downgrade() -> None:
    op.drop_table("user_limit_overrides")
    op.drop_table("user_current_plans")

    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_append_only ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS fn_ledger_entries_append_only();")
    op.drop_index("idx_ledger_event", table_name="ledger_entries")
    op.drop_index("idx_ledger_entitlement", table_name="ledger_entries")
    op.drop_index("idx_ledger_user_created", table_name="ledger_entries")
    op.drop_table("ledger_entries")

    op.drop_index("idx_entitlements_ends", table_name="entitlements")
    op.drop_index("idx_entitlements_subscription", table_name="entitlements")
    op.drop_index("idx_entitlements_user_status", table_name="entitlements")
    op.drop_table("entitlements")

    op.drop_index("idx_subscriptions_status", table_name="subscriptions")
    op.drop_index("idx_subscriptions_user", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index(
        "uq_billing_identities_current_per_user_provider",
        table_name="billing_identities",
    )
    op.drop_index("idx_billing_identities_user_provider", table_name="billing_identities")
    op.drop_table("billing_identities")

    op.drop_index("idx_provider_events_unprocessed", table_name="provider_events")
    op.drop_index("idx_provider_events_received", table_name="provider_events")
    op.drop_table("provider_events")
