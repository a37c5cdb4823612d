from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BookingRequestRow(Base):
    """One negotiation record; hold columns are populated once it is accepted."""

    __tablename__ = "booking_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    diner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    restaurant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    party_size: Mapped[int] = mapped_column(Integer, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    accepted_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # ISO 8601 strings, in offer order
    alternates: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    respond_by: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    hold_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hold_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    no_show: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    preferences: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    restaurant_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_booking_requests_restaurant_created", "restaurant_id", "created_at"),
        Index("ix_booking_requests_diner_created", "diner_id", "created_at"),
        Index("ix_booking_requests_status", "status"),
    )
