from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from kart_gp.rules import CLOCK_PATTERN


Category = Literal["390cc", "270cc"]
Level = Literal["PRO", "AMATEUR", "PRINCIPIANTE"]
TimeSource = Literal["TA", "QUALY"]
SplitMode = Literal["classification", "random", "level", "team", "kart"]
Parity = Literal["odd", "even"]
RaceKey = Literal["race1", "race2"]


class EngineModel(BaseModel):
    # camelCase on the wire, snake_case in Python, immutable once built.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Pilot(EngineModel):
    pilot_id: str
    number: int = Field(ge=1)
    full_name: str
    kart: Category
    level: Level = "AMATEUR"
    has_time_attack: bool = True


class TimedEntry(EngineModel):
    pilot_id: str
    source_session: str
    raw_time: float
    corrected_time: float


class TimeAttackSession(EngineModel):
    session_id: str
    name: str
    max_capacity: int = Field(default=20, ge=1)
    assigned_pilots: List[str] = Field(default_factory=list)
    status: Literal["pending", "closed"] = "pending"
    times: List[TimedEntry] = Field(default_factory=list)


class QualyPilotTime(EngineModel):
    pilot_id: str
    qualy_time: float


class QualySession(EngineModel):
    id: str
    name: str
    group_name: str
    start_time: str = Field(pattern=CLOCK_PATTERN)
    duration: int = Field(default=5, ge=1)
    max_capacity: int = Field(ge=1)
    assigned_pilots: List[str] = Field(default_factory=list)
    closed: bool = False
    status: Literal["pending", "completed"] = "pending"
    times: List[QualyPilotTime] = Field(default_factory=list)


class QualyRecord(EngineModel):
    pilot_id: str
    group: str
    qualy_time: Optional[float] = None


class CombinedStanding(EngineModel):
    pilot_id: str
    number: int
    full_name: str
    final_time: float
    source: TimeSource
    from_time_attack: bool
    position: int


class GridConfig(EngineModel):
    race_count: int = Field(gt=0, strict=True)
    groups_per_race: int = Field(gt=0, strict=True)
    pilots_per_group: int = Field(gt=0, strict=True)
    first_start_time: str = Field(pattern=CLOCK_PATTERN)
    interval_minutes: int = Field(gt=0, strict=True)
    split_mode: SplitMode = "classification"
    parity390: Parity = "odd"

    @property
    def capacity(self) -> int:
        return self.groups_per_race * self.pilots_per_group


class GridPilot(EngineModel):
    pilot_id: str
    number: int
    full_name: str
    team_name: str
    category: Category
    classification_position: int
    qualy_time: Optional[float] = None
    start_position: int = Field(ge=1)


class Group(EngineModel):
    index: int
    category390: List[GridPilot] = Field(default_factory=list)
    category270: List[GridPilot] = Field(default_factory=list)

    def pilots(self) -> List[GridPilot]:
        return [*self.category390, *self.category270]


class Race(EngineModel):
    index: int
    key: str
    start_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    groups: List[Group] = Field(default_factory=list)


class RaceGrid(EngineModel):
    races: List[Race] = Field(default_factory=list)
    config: Optional[GridConfig] = None
    generated_at: Optional[datetime] = None

    def race(self, key: str) -> Optional[Race]:
        return next((r for r in self.races if r.key == key), None)


class RaceResultEntry(EngineModel):
    race: str
    pilot_id: str
    number: int
    full_name: str
    team_name: str
    category: Category
    group: int
    final_position: int
    category_position: int
    base_points: int
    collective_bonus: int
    individual_bonus: int
    final_points: int

    @model_validator(mode="after")
    def _points_add_up(self) -> "RaceResultEntry":
        if self.final_points != self.base_points + self.collective_bonus + self.individual_bonus:
            raise ValueError("finalPoints must equal basePoints + collectiveBonus + individualBonus")
        return self


class RaceComputedResult(EngineModel):
    entries: List[RaceResultEntry] = Field(default_factory=list)
    general_winner_pilot_id: Optional[str] = None
    winning_category: Optional[Category] = None
    opposite_category_first_pilot_id: Optional[str] = None
    calculated_at: Optional[datetime] = None


class StoredResults(EngineModel):
    race1: RaceComputedResult = Field(default_factory=RaceComputedResult)
    race2: RaceComputedResult = Field(default_factory=RaceComputedResult)


class Team(EngineModel):
    id: str
    name: str
    members: List[str] = Field(default_factory=list)


class IndividualStandingRow(EngineModel):
    rank: int
    pilot_id: str
    number: int
    full_name: str
    points_race1: int
    points_race2: int
    total_points: int


class TeamBreakdownRow(EngineModel):
    pilot_id: str
    number: int
    full_name: str
    race1_points: int
    race2_points: int
    total_points: int


class TeamStandingRow(EngineModel):
    rank: int
    team_id: str
    team_name: str
    total_points: int
    breakdown: List[TeamBreakdownRow] = Field(default_factory=list)
