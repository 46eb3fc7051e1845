"""
Analysis — structured reading of one diary entry.

level:
  1 — LLM text merged with the keyword heuristic (synchronous, tier 1)
  2 — keyword heuristic only (synchronous, tier 2)
  0 — background LLM enrichment pushed after the reply

Tier 3 replies never write a row here.
"""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, ForeignKey, SmallInteger, func
from sqlalchemy.orm import Mapped, mapped_column

from diarybot.db.base import Base
from diarybot.models.entry import utcnow

LEVEL_ENRICHMENT = 0


class Analysis(Base):
    __tablename__ = "analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    entry_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    level: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    emotion: Mapped[str] = mapped_column(String(100), nullable=False)
    themes: Mapped[str] = mapped_column(String(100), nullable=False)
    patterns: Mapped[str] = mapped_column(String(100), nullable=False)
    positive_points: Mapped[str] = mapped_column(String(150), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
