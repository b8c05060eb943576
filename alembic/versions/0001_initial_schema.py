"""Initial schema: users, items, lenders, loans.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_staff", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_id", "users", ["id"])

    # Items
    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("total_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("total_qty >= 0", name="ck_items_total_qty_non_negative"),
    )
    op.create_index("ix_items_id", "items", ["id"])
    op.create_index("ix_items_category", "items", ["category"])
    op.create_index("ix_items_name", "items", ["name"])

    # Lenders
    op.create_table(
        "lenders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lenders_id", "lenders", ["id"])
    op.create_index("ix_lenders_name", "lenders", ["name"])

    # Loans
    op.create_table(
        "loans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("lender_id", sa.Integer(), sa.ForeignKey("lenders.id"), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("room", sa.String(), nullable=False, server_default=""),
        sa.Column("staff_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("borrowed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("qty > 0", name="ck_loans_qty_positive"),
    )
    op.create_index("ix_loans_id", "loans", ["id"])
    op.create_index("ix_loans_item_id", "loans", ["item_id"])
    op.create_index("ix_loans_lender_id", "loans", ["lender_id"])
    op.create_index("ix_loans_staff_id", "loans", ["staff_id"])
    op.create_index("ix_loans_borrowed_at", "loans", ["borrowed_at"])
    op.create_index(
        "ix_loans_open_item_id",
        "loans",
        ["item_id"],
        postgresql_where=sa.text("returned_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_table("loans")
    op.drop_table("lenders")
    op.drop_table("items")
    op.drop_table("users")
