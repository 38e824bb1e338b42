"""add committed amount to escrow accounts

Revision ID: 20260402_0003
Revises: 20260315_0002
Create Date: 2026-04-02 09:15:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260402_0003"
down_revision = "20260315_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "escrow_accounts",
        sa.Column("committed_amount", sa.BigInteger(), nullable=False, server_default="0"),
    )

    bind = op.get_bind()
    if bind and bind.dialect.name != "sqlite":
        op.alter_column("escrow_accounts", "committed_amount", server_default=None)


def downgrade() -> None:
    op.drop_column("escrow_accounts", "committed_amount")
