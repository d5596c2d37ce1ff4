"""SOS flag, photo, people affected and resources needed

Revision ID: 0002
Revises: 0001
Create Date: 2025-11-09 17:40:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("reports") as batch_op:
        batch_op.add_column(sa.Column("is_sos", sa.Boolean(), nullable=False, server_default=sa.false()))
        batch_op.add_column(sa.Column("photo_data", sa.Text(), nullable=True))
        batch_op.add_column(sa.Column("people_affected", sa.Integer(), nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("resources_needed", sa.JSON(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("reports") as batch_op:
        batch_op.drop_column("resources_needed")
        batch_op.drop_column("people_affected")
        batch_op.drop_column("photo_data")
        batch_op.drop_column("is_sos")
