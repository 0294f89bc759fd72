"""Create rotation_state table."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_create_rotation_state"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rotation_state",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("service", sa.String(length=64), nullable=False),
        sa.Column("next_index", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_rotation_state_service", "rotation_state", ["service"], unique=True
    )


def downgrade() -> None:
    op.drop_index("ix_rotation_state_service", table_name="rotation_state")
    op.drop_table("rotation_state")
