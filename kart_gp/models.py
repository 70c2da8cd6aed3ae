from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kart_gp.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="setup", nullable=False)  # setup, racing, completed
    max_pilots: Mapped[int] = mapped_column(Integer, default=40, nullable=False)
    qualy_groups: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    teams_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    pilots: Mapped[list["Pilot"]] = relationship(
        "Pilot", back_populates="event", cascade="all, delete-orphan"
    )
    states: Mapped[list["EventState"]] = relationship(
        "EventState", back_populates="event", cascade="all, delete-orphan"
    )


class Pilot(Base):
    __tablename__ = "pilots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    full_name: Mapped[str] = mapped_column(String(128), nullable=False)
    kart: Mapped[str] = mapped_column(String(8), nullable=False)  # 390cc / 270cc
    level: Mapped[str] = mapped_column(String(16), default="AMATEUR", nullable=False)
    has_time_attack: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    event: Mapped[Event] = relationship("Event", back_populates="pilots")

    __table_args__ = (UniqueConstraint("event_id", "number", name="uq_pilot_number_per_event"),)


class EventState(Base):
    """One persisted engine module (timeAttack, qualy, teams, races, results) of an event."""

    __tablename__ = "event_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    module_key: Mapped[str] = mapped_column(String(32), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    event: Mapped[Event] = relationship("Event", back_populates="states")

    __table_args__ = (UniqueConstraint("event_id", "module_key", name="uq_event_module"),)
