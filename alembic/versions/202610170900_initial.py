"""initial schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
REPEAT_TYPE = sa.Enum(
    "once",
    "forever",
    "3months",
    "4months",
    "6months",
    "12months",
    "annual",
    "until",
    name="repeattype",
)
INVITATION_STATUS = sa.Enum(
    "pending", "accepted", "declined", "expired", name="invitationstatus"
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _user_fk(name, **kwargs):
    return sa.Column(
        name,
        sa.String(length=36),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        **kwargs,
    )


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        *_timestamps(),
    )

    op.create_table(
        "partnerships",
        sa.Column("id", sa.String(length=36), primary_key=True),
        *_timestamps(),
    )

    op.create_table(
        "partnership_members",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "partnership_id",
            sa.String(length=36),
            sa.ForeignKey("partnerships.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("user_id", unique=True),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _user_fk("user_id"),
        _user_fk("created_by"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_categories_user", "categories", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _user_fk("user_id"),
        _user_fk("created_by"),
        sa.Column("category_id", sa.String(length=36), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("is_fixed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("repeat_type", REPEAT_TYPE, server_default="once"),
        sa.Column("end_date", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_fixed", "transactions", ["is_fixed", "repeat_type"])

    op.create_table(
        "lists",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _user_fk("user_id"),
        _user_fk("created_by"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#3B82F6"),
        sa.Column("is_shared", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "list_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "list_id",
            sa.String(length=36),
            sa.ForeignKey("lists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("created_by"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("estimated_price", sa.Numeric(10, 2)),
        sa.Column("category_id", sa.String(length=36), nullable=False),
        sa.Column("is_checked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("checked_at", sa.DateTime()),
        sa.Column(
            "transaction_id",
            sa.String(length=36),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )

    op.create_table(
        "partner_invitations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _user_fk("from_user_id"),
        _user_fk("to_user_id"),
        sa.Column("status", INVITATION_STATUS, nullable=False, server_default="pending"),
        sa.Column("token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_partner_invitations_pair",
        "partner_invitations",
        ["from_user_id", "to_user_id", "status"],
    )


def downgrade():
    op.drop_index("ix_partner_invitations_pair", table_name="partner_invitations")
    op.drop_table("partner_invitations")
    op.drop_table("list_items")
    op.drop_table("lists")
    op.drop_index("ix_transactions_fixed", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_user", table_name="categories")
    op.drop_table("categories")
    op.drop_table("partnership_members")
    op.drop_table("partnerships")
    op.drop_table("users")
