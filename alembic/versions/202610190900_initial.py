"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPES = ("income", "expense", "transfer")
PERIOD_TYPES = (
    "weekly",
    "bi_weekly",
    "monthly",
    "quarterly",
    "bi_annually",
    "annually",
)


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_account_tenant_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "type", "name", name="uq_category_tenant_type_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(*TRANSACTION_TYPES, name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transactions_tenant_date", "transactions", ["tenant_id", "date"])
    op.create_index(
        "ix_transactions_tenant_category_date",
        "transactions",
        ["tenant_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_tenant_account_date",
        "transactions",
        ["tenant_id", "account_id", "date"],
    )

    op.create_table(
        "financial_cube",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "period_type", sa.Enum(*PERIOD_TYPES, name="periodtype"), nullable=False
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column(
            "transaction_type",
            sa.Enum(*TRANSACTION_TYPES, name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("account_name", sa.String(length=100), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"
        ),
        sa.Column(
            "transaction_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_financial_cube_tenant_category_start",
        "financial_cube",
        ["tenant_id", "category_id", "period_start"],
    )
    op.create_index(
        "ix_financial_cube_tenant_account_start",
        "financial_cube",
        ["tenant_id", "account_id", "period_start"],
    )
    op.create_index(
        "ix_financial_cube_tenant_type_start",
        "financial_cube",
        ["tenant_id", "transaction_type", "period_start"],
    )
    op.create_index("ix_financial_cube_updated_at", "financial_cube", ["updated_at"])
    op.execute(
        "CREATE UNIQUE INDEX uq_financial_cube_coordinate ON financial_cube "
        "(tenant_id, period_type, period_start, transaction_type, "
        "coalesce(category_id, -1), account_id, is_recurring)"
    )


def downgrade():
    op.execute("DROP INDEX IF EXISTS uq_financial_cube_coordinate")
    op.drop_index("ix_financial_cube_updated_at", table_name="financial_cube")
    op.drop_index("ix_financial_cube_tenant_type_start", table_name="financial_cube")
    op.drop_index("ix_financial_cube_tenant_account_start", table_name="financial_cube")
    op.drop_index("ix_financial_cube_tenant_category_start", table_name="financial_cube")
    op.drop_table("financial_cube")
    op.drop_index("ix_transactions_tenant_account_date", table_name="transactions")
    op.drop_index("ix_transactions_tenant_category_date", table_name="transactions")
    op.drop_index("ix_transactions_tenant_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("accounts")
    sa.Enum(name="periodtype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
