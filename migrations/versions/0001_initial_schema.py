"""Initial schema: transactions, categories, category rules, credit-card imports."""

from alembic import op
import sqlalchemy as sa

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    transaction_type_enum = sa.Enum("expense", "income", name="transaction_type_enum")

    op.create_table(
        "categories",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_categories_user_id", "categories", ["user_id"])

    op.create_table(
        "category_rules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column(
            "category_id",
            sa.Uuid(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pattern", sa.String(length=255), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_category_rules_user_id", "category_rules", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("amount", sa.DECIMAL(18, 2), nullable=False),
        sa.Column("type", transaction_type_enum, nullable=False),
        sa.Column(
            "category_id",
            sa.Uuid(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "is_credit_card_payment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "credit_card_payment_id",
            sa.Uuid(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("billing_cycle", sa.String(length=7), nullable=True),
        sa.Column("original_amount", sa.DECIMAL(18, 2), nullable=True),
        sa.Column("expanded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("installment_current", sa.Integer(), nullable=True),
        sa.Column("installment_total", sa.Integer(), nullable=True),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(installment_current IS NULL AND installment_total IS NULL) OR "
            "(installment_current > 0 AND installment_current <= installment_total)",
            name="ck_transactions_installment_range",
        ),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index(
        "ix_transactions_user_billing_cycle", "transactions", ["user_id", "billing_cycle"]
    )
    op.create_index(
        "ix_transactions_credit_card_payment_id", "transactions", ["credit_card_payment_id"]
    )

    op.create_table(
        "credit_card_imports",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("billing_cycle", sa.String(length=7), nullable=False),
        sa.Column(
            "bill_payment_id",
            sa.Uuid(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "billing_cycle", name="uq_credit_card_imports_user_cycle"
        ),
    )
    op.create_index("ix_credit_card_imports_user_id", "credit_card_imports", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_credit_card_imports_user_id", table_name="credit_card_imports")
    op.drop_table("credit_card_imports")
    op.drop_index("ix_transactions_credit_card_payment_id", table_name="transactions")
    op.drop_index("ix_transactions_user_billing_cycle", table_name="transactions")
    op.drop_index("ix_transactions_user_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_category_rules_user_id", table_name="category_rules")
    op.drop_table("category_rules")
    op.drop_index("ix_categories_user_id", table_name="categories")
    op.drop_table("categories")
    sa.Enum(name="transaction_type_enum").drop(op.get_bind(), checkfirst=True)
