"""initial ledger, budget, pocket and insight tables

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("role", sa.Enum("admin", "member", name="userrole"), nullable=False),
        sa.Column(
            "family_type",
            sa.Enum("single", "couple", "joint", name="familytype"),
            nullable=False,
        ),
        sa.Column("linked_admin_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("settings", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_linked_admin", "users", ["linked_admin_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("debit", "credit", name="transactiondirection"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("merchant", sa.String(200)),
        sa.Column("note", sa.Text()),
        sa.Column("is_shared", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category", "date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category", "month", name="uq_budget_user_category_month"
        ),
        sa.CheckConstraint("limit_cents >= 0", name="ck_budget_limit_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "month"])

    op.create_table(
        "pockets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(
                "cash",
                "bank",
                "upi",
                "salary",
                "savings",
                "family",
                "custom",
                name="pocketkind",
            ),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_pockets_user", "pockets", ["user_id"])

    op.create_table(
        "pocket_transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "from_pocket_id", sa.Integer(), sa.ForeignKey("pockets.id"), nullable=False
        ),
        sa.Column(
            "to_pocket_id", sa.Integer(), sa.ForeignKey("pockets.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_pocket_transfer_amount_positive"),
        sa.CheckConstraint(
            "from_pocket_id != to_pocket_id", name="ck_pocket_transfer_distinct"
        ),
    )
    op.create_index(
        "ix_pocket_transfers_user_created", "pocket_transfers", ["user_id", "created_at"]
    )

    op.create_table(
        "due_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("owed_to_me", "owed_by_me", name="duedirection"),
            nullable=False,
        ),
        sa.Column("counterparty", sa.String(100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "settled", name="duestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_due_items_amount_positive"),
    )
    op.create_index("ix_due_items_status_due", "due_items", ["status", "due_date"])
    op.create_index("ix_due_items_user_due", "due_items", ["user_id", "due_date"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deadline", sa.Date()),
        sa.Column("is_priority", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("target_cents >= 0", name="ck_goals_target_positive"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("icon", sa.String(200)),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("read_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("goals")
    op.drop_index("ix_due_items_user_due", table_name="due_items")
    op.drop_index("ix_due_items_status_due", table_name="due_items")
    op.drop_table("due_items")
    op.drop_index("ix_pocket_transfers_user_created", table_name="pocket_transfers")
    op.drop_table("pocket_transfers")
    op.drop_index("ix_pockets_user", table_name="pockets")
    op.drop_table("pockets")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_users_linked_admin", table_name="users")
    op.drop_table("users")
