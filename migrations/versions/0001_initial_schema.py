"""Initial schema: scan_session

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_STATUSES = (
    "queued",
    "scanning",
    "generating",
    "uploading",
    "sending",
    "completed",
    "failed",
    "expired",
)


def upgrade() -> None:
    op.create_table(
        "scan_session",
        sa.Column("session_id", sa.String(64), primary_key=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("job_id", sa.Text(), nullable=True),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("artifact_key", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.Text(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("country", sa.String(8), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s}'" for s in _STATUSES)),
            name="ck_scan_session_status",
        ),
    )
    # The sweeper scans non-terminal sessions, oldest update first
    op.create_index("ix_scan_session_status", "scan_session", ["status"])
    op.create_index("ix_scan_session_updated_at", "scan_session", ["updated_at"])


def downgrade() -> None:
    op.drop_index("ix_scan_session_updated_at", table_name="scan_session")
    op.drop_index("ix_scan_session_status", table_name="scan_session")
    op.drop_table("scan_session")
