"""Create the task_records table."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001_task_records"
down_revision = None
branch_labels = None
depends_on = None


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    """Create task_records with the indexes the sweep and status checks use."""

    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if _has_table(inspector, "task_records"):
        return

    op.create_table(
        "task_records",
        sa.Column("task_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("payload", sa.LargeBinary(), nullable=True),
        sa.Column("result", sa.LargeBinary(), nullable=True),
        sa.Column("error", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "submitted_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="task_records_status_check",
        ),
        sa.CheckConstraint("version >= 0", name="task_records_version_check"),
        sa.CheckConstraint(
            "NOT (result IS NOT NULL AND error IS NOT NULL)",
            name="task_records_outcome_check",
        ),
    )
    op.create_index("task_records_status_idx", "task_records", ["status"])
    op.create_index(
        "task_records_completed_at_idx",
        "task_records",
        ["completed_at"],
        postgresql_where=sa.text("completed_at IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("task_records_completed_at_idx", table_name="task_records")
    op.drop_index("task_records_status_idx", table_name="task_records")
    op.drop_table("task_records")
