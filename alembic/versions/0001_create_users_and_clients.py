"""create users and clients tables"""

from alembic import op
import sqlalchemy as sa

revision = "0001_create_users_and_clients"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("default_currency", sa.String(length=3), nullable=True),
    )
    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("company_name", sa.String(length=255), nullable=True),
    )
    op.create_index("idx_clients_user_id", "clients", ["user_id"])


def downgrade():
    op.drop_index("idx_clients_user_id", table_name="clients")
    op.drop_table("clients")
    op.drop_table("users")
