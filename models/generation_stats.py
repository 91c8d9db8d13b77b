# models/generation_stats.py
from __future__ import annotations

from datetime import date

from sqlalchemy import Date, Integer
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class GenerationStats(Base, TimestampMixin):
    __tablename__ = "generation_stats"

    # one row per UTC calendar day
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    generated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reused_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
