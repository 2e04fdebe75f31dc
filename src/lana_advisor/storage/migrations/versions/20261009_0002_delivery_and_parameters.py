"""Add push subscriptions and system parameters snapshot tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261009_0002"
down_revision = "20261002_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("p256dh", sa.String(), nullable=False),
        sa.Column("auth", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "requester_id",
            "endpoint",
            name="uq_push_subscriptions_requester_endpoint",
        ),
    )
    op.create_index(
        "ix_push_subscriptions_requester_id",
        "push_subscriptions",
        ["requester_id"],
        unique=False,
    )

    op.create_table(
        "system_parameters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("version", sa.String(), nullable=False, server_default="1"),
        sa.Column("relays_json", sa.Text(), nullable=False),
        sa.Column("balance_servers_json", sa.Text(), nullable=False),
        sa.Column("trusted_signers_json", sa.Text(), nullable=False),
        sa.Column("exchange_rates_json", sa.Text(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_system_parameters_fetched_at",
        "system_parameters",
        ["fetched_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_system_parameters_fetched_at", table_name="system_parameters")
    op.drop_table("system_parameters")
    op.drop_index("ix_push_subscriptions_requester_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
