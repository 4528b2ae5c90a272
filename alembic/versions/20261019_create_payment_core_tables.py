"""create invoice ledger, webhook record and audit tables"""
from alembic import op
import sqlalchemy as sa

revision = "20261019_create_payment_core_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "payer_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("balance", sa.Numeric(18, 2), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("external_id", name="uq_payer_accounts_external_id"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_code", sa.BigInteger(), nullable=False),
        sa.Column("uuid", sa.String(length=36), nullable=True),
        sa.Column("payer_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("bonus", sa.Numeric(18, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", "expired", name="invoicestatus"),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("order_code", name="uq_invoices_order_code"),
        sa.UniqueConstraint("uuid", name="uq_invoices_uuid"),
        sa.CheckConstraint("amount > 0", name="ck_invoice_positive_amount"),
        sa.CheckConstraint("bonus >= 0", name="ck_invoice_non_negative_bonus"),
    )
    op.create_index("ix_invoices_payer_created", "invoices", ["payer_id", "created_at"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    op.create_index("ix_invoices_expires_at", "invoices", ["expires_at"])

    op.create_table(
        "webhook_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=False),
        sa.Column("transaction_datetime", sa.String(length=64), nullable=False),
        sa.Column("order_code", sa.BigInteger(), nullable=True),
        sa.Column("correlation_id", sa.String(length=36), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "expired", name="webhookrecordstatus"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_webhook_records_expires_at", "webhook_records", ["expires_at"])
    op.create_index(
        "ix_webhook_records_correlation_status", "webhook_records", ["correlation_id", "status"]
    )
    op.create_index(
        "ix_webhook_records_order_code_status", "webhook_records", ["order_code", "status"]
    )
    op.create_index(
        "ix_webhook_records_account_status_created",
        "webhook_records",
        ["account_number", "status", "created_at"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_webhook_records_account_status_created", table_name="webhook_records")
    op.drop_index("ix_webhook_records_order_code_status", table_name="webhook_records")
    op.drop_index("ix_webhook_records_correlation_status", table_name="webhook_records")
    op.drop_index("ix_webhook_records_expires_at", table_name="webhook_records")
    op.drop_table("webhook_records")
    op.drop_index("ix_invoices_expires_at", table_name="invoices")
    op.drop_index("ix_invoices_status", table_name="invoices")
    op.drop_index("ix_invoices_payer_created", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("payer_accounts")
    sa.Enum(name="webhookrecordstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="invoicestatus").drop(op.get_bind(), checkfirst=True)
