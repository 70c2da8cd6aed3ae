from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class EventCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    max_pilots: int = Field(default=40, ge=1)
    qualy_groups: int = Field(default=1, ge=1)
    teams_count: int = Field(default=1, ge=1)


class PilotCreate(BaseModel):
    number: int = Field(ge=1)
    full_name: str = Field(min_length=1, max_length=128)
    kart: Literal["390cc", "270cc"]
    level: Literal["PRO", "AMATEUR", "PRINCIPIANTE"] = "AMATEUR"
    has_time_attack: bool = True


class TimeAttackSessionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    max_capacity: int = Field(default=20, ge=1)


class TimeAttackTimesUpsert(BaseModel):
    # pilot id -> raw stopwatch time in seconds
    times: dict[str, float]


class QualyTimesUpsert(BaseModel):
    # pilot id -> qualy time; null clears the recorded time
    times: dict[str, Optional[float]]


class QualyManualAssign(BaseModel):
    # session id -> pilot ids
    assignments: dict[str, list[str]]


class TeamsGenerate(BaseModel):
    teams_count: Optional[int] = Field(default=None, ge=1)


class FinishingPositionsUpsert(BaseModel):
    # pilot id -> final position within its group
    positions: dict[str, int]
