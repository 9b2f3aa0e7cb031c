"""Initial schema: users, memberships, payments, card ranges, admin.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, index=True
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # ── Standalone tables (no FKs) ─────────────────────────────────────

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("membership_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("actor_id", sa.String(255), comment="Admin email, user id, or 'system'"),
        sa.Column("actor_role", sa.String(50), comment="user, admin, system, webhook"),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "admins",
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(100)),
        sa.Column("password_hash", sa.String(100), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admins_email", "admins", ["email"], unique=True)

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.String(255)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key"),
    )

    op.create_table(
        "used_tokens",
        sa.Column("token_id", sa.String(64), nullable=False),
        sa.Column("token_type", sa.String(30), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_id"),
    )

    op.create_table(
        "association_years",
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("membership_fee", sa.Integer(), nullable=False, comment="Cents"),
        sa.Column("is_active", sa.Boolean(), nullable=False, index=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "users",
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(30)),
        sa.Column("newsletter_subscribed", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ── Tables with FKs ────────────────────────────────────────────────

    op.create_table(
        "user_profiles",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("birth_date", sa.Date()),
        sa.Column("tax_code", sa.String(16), index=True),
        sa.Column("gender", sa.String(1), comment="M or F"),
        sa.Column("birth_city", sa.String(100)),
        sa.Column("birth_province", sa.String(2)),
        sa.Column("nationality", sa.String(50)),
        sa.Column("has_foreign_tax_code", sa.Boolean(), nullable=False),
        sa.Column("address", sa.String(200)),
        sa.Column("city", sa.String(100)),
        sa.Column("postal_code", sa.String(10)),
        sa.Column("province", sa.String(2)),
        sa.Column("country", sa.String(2)),
        sa.Column("document_type", sa.String(50)),
        sa.Column("document_number", sa.String(50)),
        sa.Column("privacy_consent", sa.Boolean(), nullable=False),
        sa.Column("data_consent", sa.Boolean(), nullable=False),
        sa.Column("profile_complete", sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "memberships",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("association_year_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("membership_number", sa.String(20)),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("payment_status", sa.String(20), nullable=False, index=True),
        sa.Column("payment_provider_id", sa.String(100), index=True, comment="PayPal order id"),
        sa.Column("payment_amount", sa.Integer(), comment="Cents"),
        sa.Column("start_date", sa.DateTime(timezone=True)),
        sa.Column("end_date", sa.DateTime(timezone=True)),
        sa.Column("card_assigned_at", sa.DateTime(timezone=True)),
        sa.Column("updated_by", sa.String(100), comment="Admin id or 'webhook'"),
        *_base_columns(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["association_year_id"], ["association_years.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("membership_number"),
        sa.CheckConstraint("status IN ('PENDING', 'ACTIVE', 'EXPIRED', 'CANCELED')", name="ck_memberships_status"),
        sa.CheckConstraint(
            "payment_status IN ('PENDING', 'SUCCEEDED', 'FAILED', 'CANCELED')",
            name="ck_memberships_payment_status",
        ),
    )

    op.create_table(
        "payment_logs",
        sa.Column("membership_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("provider_event_id", sa.String(100)),
        sa.Column("amount", sa.Integer(), comment="Cents"),
        sa.Column("provider_response", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("membership_id", "event_type", name="uq_payment_logs_membership_event"),
        sa.UniqueConstraint("provider_event_id"),
    )

    op.create_table(
        "card_number_ranges",
        sa.Column("association_year_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("start_number", sa.Integer(), nullable=False),
        sa.Column("end_number", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(100)),
        *_base_columns(),
        sa.ForeignKeyConstraint(["association_year_id"], ["association_years.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("start_number > 0", name="ck_card_ranges_positive"),
        sa.CheckConstraint("start_number <= end_number", name="ck_card_ranges_ordered"),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("card_number_ranges")
    op.drop_table("payment_logs")
    op.drop_table("memberships")
    op.drop_table("user_profiles")
    op.drop_table("users")
    op.drop_table("association_years")
    op.drop_table("used_tokens")
    op.drop_table("settings")
    op.drop_table("admins")
    op.drop_table("audit_log")
