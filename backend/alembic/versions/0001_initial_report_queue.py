"""Initial local report queue

Revision ID: 0001
Revises:
Create Date: 2025-11-02 09:14:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("location_accuracy", sa.String(length=20), nullable=False, server_default="precise"),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("sync_state", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("synced_at", sa.DateTime(), nullable=True),
        sa.Column("remote_id", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_reports_type", "reports", ["type"])
    op.create_index("ix_reports_severity", "reports", ["severity"])
    op.create_index("ix_reports_timestamp", "reports", ["timestamp"])
    op.create_index("ix_reports_sync_state", "reports", ["sync_state"])


def downgrade() -> None:
    op.drop_index("ix_reports_sync_state", table_name="reports")
    op.drop_index("ix_reports_timestamp", table_name="reports")
    op.drop_index("ix_reports_severity", table_name="reports")
    op.drop_index("ix_reports_type", table_name="reports")
    op.drop_table("reports")
