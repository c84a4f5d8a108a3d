"""add per-user invoice sequences"""

from alembic import op
import sqlalchemy as sa

revision = "0004_invoice_sequences"
down_revision = "0003_create_payments"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "invoice_sequences",
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("prefix", sa.String(length=20), nullable=False, server_default="INV"),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("padding", sa.Integer(), nullable=False, server_default="4"),
    )


def downgrade():
    op.drop_table("invoice_sequences")
