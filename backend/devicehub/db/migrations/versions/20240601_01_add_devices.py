"""Add devices with visibility tiers"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

revision: str = "20240601_01_add_devices"
down_revision: str | None = "20240521_01_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("serial_number", sa.String(length=100), nullable=False),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id"), nullable=True),
        sa.Column("visibility", sa.String(length=20), nullable=False, server_default="department"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_devices_serial_number", "devices", ["serial_number"], unique=True)
    op.create_index("ix_devices_organization_id", "devices", ["organization_id"])
    op.create_index("ix_devices_department_id", "devices", ["department_id"])


def downgrade() -> None:
    op.drop_index("ix_devices_department_id", table_name="devices")
    op.drop_index("ix_devices_organization_id", table_name="devices")
    op.drop_index("ix_devices_serial_number", table_name="devices")
    op.drop_table("devices")
