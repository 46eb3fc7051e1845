"""
Summary — rolling-window digest of a user's recent entries.

Uniqueness: (user_id, start_date, end_date). Acts as a cache row: freshness
is measured from updated_at, which only moves when the content changes.
"""
from datetime import datetime, date
from sqlalchemy import Integer, String, Text, DateTime, Date, func, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from diarybot.db.base import Base
from diarybot.models.entry import utcnow


class Summary(Base):
    __tablename__ = "summaries"
    __table_args__ = (
        UniqueConstraint("user_id", "start_date", "end_date", name="uq_summary_user_window"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    summary_content: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
