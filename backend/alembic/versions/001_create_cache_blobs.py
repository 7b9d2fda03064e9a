"""Create cache_blobs table

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  Creates `cache_blobs`, one row per durable cache snapshot.
Why:   Used when CACHE_BACKEND=database (see snapdigest/models/cache_blob.py).

Rollback: downgrade() drops the table; quotas and history are lost.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "cache_blobs",
        sa.Column(
            "name",
            sa.String(100),
            nullable=False,
            comment="Store name of the owning cache",
        ),
        sa.Column(
            "payload",
            sa.LargeBinary(),
            nullable=False,
            comment="Serialized cache snapshot",
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="When the snapshot was last written (UTC)",
        ),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("cache_blobs")
