from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, LargeBinary, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ReceivedChunk(Base):
    """One raw TCP read, exactly as it came off the wire."""
    __tablename__ = "received_chunks"
    __table_args__ = (
        Index("ix_chunks_client_received", "client_info", "received_at"),
        {"sqlite_autoincrement": True},  # replay order == insert order
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    client_info: Mapped[str] = mapped_column(String(128), nullable=False)
    byte_count: Mapped[int] = mapped_column(Integer, nullable=False)
    raw: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    text: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<ReceivedChunk #{self.id} {self.client_info} {self.byte_count}B>"


class StartListSummary(Base):
    __tablename__ = "start_list_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    client_info: Mapped[str] = mapped_column(String(128), nullable=False)

    event_name: Mapped[Optional[str]] = mapped_column(String(256))
    event_number: Mapped[Optional[str]] = mapped_column(String(32))
    round_number: Mapped[Optional[int]] = mapped_column(Integer)
    heat_number: Mapped[Optional[int]] = mapped_column(Integer)
    wind: Mapped[Optional[str]] = mapped_column(String(32))
    start_type: Mapped[Optional[str]] = mapped_column(String(16))
    is_official: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    racer_count: Mapped[int] = mapped_column(Integer, nullable=False)
    racer_table: Mapped[str] = mapped_column(Text, nullable=False)
