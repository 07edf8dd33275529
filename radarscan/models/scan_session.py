from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from radarscan.db.base import Base

SESSION_STATUSES = (
    "queued",
    "scanning",
    "generating",
    "uploading",
    "sending",
    "completed",
    "failed",
    "expired",
)


class ScanSessionRecord(Base):
    """Durable state of one scan session.

    Rows are never deleted by the application; expiry is a status value and
    physical clean-up is left to the database retention policy.  Status
    changes are applied with a conditional UPDATE on the observed status
    (see :class:`~radarscan.core.session_store.SqlSessionStore`).
    """

    __tablename__ = "scan_session"
    __table_args__ = (
        Index("ix_scan_session_status", "status"),
        Index("ix_scan_session_updated_at", "updated_at"),
        CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s}'" for s in SESSION_STATUSES)),
            name="ck_scan_session_status",
        ),
    )

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    job_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(String(8), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
