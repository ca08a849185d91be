"""create combo ranking snapshots

Revision ID: 5e1f2a3b4c6d
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5e1f2a3b4c6d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "combo_ranking_snapshots",
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("combo_text", sa.String(length=255), nullable=False),
        sa.Column("market", sa.String(length=8), nullable=False),
        sa.Column("platform", sa.String(length=16), nullable=False),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("is_ranking", sa.Boolean(), nullable=False),
        sa.Column("total_result_count", sa.Integer(), nullable=False),
        sa.Column("trend", sa.String(length=10), nullable=True),
        sa.Column("position_change", sa.Integer(), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ttl_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "app_id",
            "combo_text",
            "market",
            "platform",
            name="uq_combo_ranking_snapshots_key",
        ),
    )
    op.create_index(
        op.f("ix_combo_ranking_snapshots_app_id"),
        "combo_ranking_snapshots",
        ["app_id"],
        unique=False,
    )
    op.create_index(
        "ix_combo_ranking_snapshots_ttl_expires_at",
        "combo_ranking_snapshots",
        ["ttl_expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_combo_ranking_snapshots_ttl_expires_at", table_name="combo_ranking_snapshots")
    op.drop_index(op.f("ix_combo_ranking_snapshots_app_id"), table_name="combo_ranking_snapshots")
    op.drop_table("combo_ranking_snapshots")
