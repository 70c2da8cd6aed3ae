"""
Load-time schema migration for persisted event modules.

Stored payloads may come from older versions of the application (two fixed race
groups without start positions, Qualy stored as one record per pilot, result
entries keyed by `numeroPiloto`, ...). `migrate_module` converts any of them to
the current structures once, before the engine sees them.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from kart_gp.domain import (
    GridPilot,
    Group,
    Pilot,
    QualyPilotTime,
    QualySession,
    Race,
    RaceComputedResult,
    RaceGrid,
    RaceResultEntry,
    StoredResults,
    Team,
    TimeAttackSession,
    TimedEntry,
)
from kart_gp.qualy import build_default_qualy_sessions, session_number, session_status, sort_sessions
from kart_gp.rules import CATEGORY_270, CATEGORY_390, is_clock_time, is_valid_time, start_positions
from kart_gp.teams import NO_TEAM
from kart_gp.timing import correct_time


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

LEGACY_GROUP_KEYS = ("group1", "group2")
LEGACY_RACE_KEYS = ("race1", "race2")


def migrate_module(module_key: str, payload: Any, version: int = 1, **context: Any) -> Any:
    """
    Return the current-shape object for a stored module payload.

    Context keys: `pilots` (for qualy), `groups_count` and `max_participants`.
    """
    if version < SCHEMA_VERSION:
        logger.info("migrating %s payload from schema v%s to v%s", module_key, version, SCHEMA_VERSION)
    if module_key == "races":
        return migrate_races(payload)
    if module_key == "results":
        return migrate_results(payload)
    if module_key == "teams":
        return migrate_teams(payload)
    if module_key == "timeAttack":
        return migrate_time_attack(payload)
    if module_key == "qualy":
        return migrate_qualy(
            payload,
            context.get("pilots", []),
            context.get("groups_count", 1),
            context.get("max_participants", 0),
        )
    raise KeyError(f"Unknown module: {module_key}")


def _is_legacy_grid(payload: Any) -> bool:
    return isinstance(payload, dict) and "races" not in payload and any(k in payload for k in LEGACY_RACE_KEYS)


def _legacy_group(index: int, raw: Any) -> Optional[Group]:
    if not isinstance(raw, dict):
        return None
    lists = {}
    for category, key, first in ((CATEGORY_390, "category390", 1), (CATEGORY_270, "category270", 2)):
        pilots = [p for p in raw.get(key) or [] if isinstance(p, dict) and isinstance(p.get("pilotId"), str)]
        lists[key] = [
            GridPilot(
                pilot_id=p["pilotId"],
                number=int(p.get("numeroPiloto", p.get("number", 0)) or 0),
                full_name=str(p.get("fullName", "")),
                team_name=str(p.get("teamName") or NO_TEAM),
                category=category,
                classification_position=int(p.get("classificationPosition", 0) or 0),
                start_position=position,
            )
            for p, position in zip(pilots, start_positions(len(pilots), first))
        ]
    return Group(index=index, **lists)


def migrate_races(payload: Any) -> RaceGrid:
    if not payload:
        return RaceGrid()
    if not _is_legacy_grid(payload):
        return RaceGrid.model_validate(payload)

    races: List[Race] = []
    for idx, key in enumerate(LEGACY_RACE_KEYS, start=1):
        raw = payload.get(key)
        if not isinstance(raw, dict):
            continue
        groups = [_legacy_group(g_idx, raw.get(g_key)) for g_idx, g_key in enumerate(LEGACY_GROUP_KEYS, start=1)]
        if any(group is None for group in groups):
            logger.warning("legacy grid for %s is malformed, dropped", key)
            continue
        races.append(Race(index=idx, key=key, groups=groups))
    return RaceGrid(races=races)


def _legacy_entry(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(raw)
    if "number" not in data and "numeroPiloto" in data:
        data["number"] = data.pop("numeroPiloto")
    data.setdefault("group", 0)
    data.setdefault("teamName", NO_TEAM)
    return data


def _migrate_race_result(raw: Any) -> RaceComputedResult:
    if not isinstance(raw, dict):
        return RaceComputedResult()

    entries: List[RaceResultEntry] = []
    for item in raw.get("entries") or []:
        if not isinstance(item, dict):
            continue
        try:
            entries.append(RaceResultEntry.model_validate(_legacy_entry(item)))
        except ValidationError:
            logger.warning("dropping malformed result entry for %s", item.get("pilotId"))

    winning = raw.get("winningCategory")
    return RaceComputedResult(
        entries=entries,
        general_winner_pilot_id=raw.get("generalWinnerPilotId") if isinstance(raw.get("generalWinnerPilotId"), str) else None,
        winning_category=winning if winning in (CATEGORY_390, CATEGORY_270) else None,
        opposite_category_first_pilot_id=(
            raw.get("oppositeCategoryFirstPilotId") if isinstance(raw.get("oppositeCategoryFirstPilotId"), str) else None
        ),
        calculated_at=raw.get("calculatedAt") if isinstance(raw.get("calculatedAt"), str) else None,
    )


def migrate_results(payload: Any) -> StoredResults:
    if not isinstance(payload, dict):
        return StoredResults()
    return StoredResults(race1=_migrate_race_result(payload.get("race1")), race2=_migrate_race_result(payload.get("race2")))


def migrate_teams(payload: Any) -> List[Team]:
    if not isinstance(payload, list):
        return []
    teams = []
    for raw in payload:
        if not isinstance(raw, dict) or not isinstance(raw.get("id"), str) or not isinstance(raw.get("name"), str):
            continue
        members = [m for m in raw.get("members") or [] if isinstance(m, str)]
        teams.append(Team(id=raw["id"], name=raw["name"], members=list(dict.fromkeys(members))))
    return teams


def migrate_time_attack(payload: Any) -> Tuple[TimeAttackSession, ...]:
    if not isinstance(payload, list):
        return ()
    sessions = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        session_id = raw.get("sessionId") or raw.get("id")
        if not isinstance(session_id, str):
            continue
        assigned = list(dict.fromkeys(p for p in raw.get("assignedPilots") or [] if isinstance(p, str)))
        times = []
        for t in raw.get("times") or []:
            if not isinstance(t, dict) or t.get("pilotId") not in assigned or not is_valid_time(t.get("rawTime")):
                continue
            times.append(
                TimedEntry(
                    pilot_id=t["pilotId"],
                    source_session=session_id,
                    raw_time=float(t["rawTime"]),
                    corrected_time=correct_time(t["rawTime"]),
                )
            )
        capacity = raw.get("maxCapacity")
        sessions.append(
            TimeAttackSession(
                session_id=session_id,
                name=str(raw.get("name") or session_id),
                max_capacity=max(1, math.floor(capacity)) if is_valid_time(capacity) else 20,
                assigned_pilots=assigned,
                status="closed" if raw.get("status") == "closed" else "pending",
                times=times,
            )
        )
    return tuple(sessions)


def _legacy_records_to_sessions(
    records: Sequence[Dict[str, Any]],
    pilot_ids: set,
    groups_count: int,
    max_participants: int,
) -> Tuple[QualySession, ...]:
    defaults = build_default_qualy_sessions(groups_count, max_participants)
    by_group: Dict[str, Dict[str, Any]] = {s.group_name: {"assigned": [], "times": []} for s in defaults}
    numbered = {session_number(s.group_name): s.group_name for s in defaults}

    for record in records:
        pilot_id = record.get("pilotId")
        if pilot_id not in pilot_ids:
            continue
        group = record.get("group")
        target = by_group.get(group) if isinstance(group, str) else None
        if target is None and isinstance(group, str):
            target = by_group.get(numbered.get(session_number(group)))
        if target is None or pilot_id in target["assigned"]:
            continue
        target["assigned"].append(pilot_id)
        if is_valid_time(record.get("qualyTime")):
            target["times"].append(QualyPilotTime(pilot_id=pilot_id, qualy_time=float(record["qualyTime"])))

    migrated = []
    for session in defaults:
        bucket = by_group[session.group_name]
        capacity = max(session.max_capacity, len(bucket["assigned"]))
        migrated.append(
            session.model_copy(
                update={
                    "max_capacity": capacity,
                    "assigned_pilots": bucket["assigned"],
                    "times": bucket["times"],
                    "status": session_status(bucket["assigned"], bucket["times"]),
                }
            )
        )
    return tuple(migrated)


def migrate_qualy(
    payload: Any,
    pilots: Sequence[Pilot],
    groups_count: int,
    max_participants: int,
) -> Tuple[QualySession, ...]:
    pilot_ids = {p.pilot_id for p in pilots}
    stored = [item for item in payload if isinstance(item, dict)] if isinstance(payload, list) else []
    if stored and all("pilotId" in item for item in stored):
        return _legacy_records_to_sessions(stored, pilot_ids, groups_count, max_participants)

    named = {item["name"]: item for item in stored if isinstance(item.get("name"), str) and item["name"].strip()}
    count = max(groups_count, max((session_number(n) or 0 for n in named), default=0), len(named), 1)
    defaults = build_default_qualy_sessions(count, max_participants)

    sessions = []
    for default in defaults:
        raw = named.get(default.name)
        if raw is None:
            sessions.append(default)
            continue
        capacity = (
            max(1, math.floor(raw["maxCapacity"])) if is_valid_time(raw.get("maxCapacity")) else default.max_capacity
        )
        assigned = list(dict.fromkeys(p for p in raw.get("assignedPilots") or [] if p in pilot_ids))[:capacity]
        times = [
            QualyPilotTime(pilot_id=t["pilotId"], qualy_time=float(t["qualyTime"]))
            for t in raw.get("times") or []
            if isinstance(t, dict) and t.get("pilotId") in assigned and is_valid_time(t.get("qualyTime"))
        ]
        duration = raw.get("duration")
        sessions.append(
            QualySession(
                id=raw["id"] if isinstance(raw.get("id"), str) else default.id,
                name=default.name,
                group_name=raw["groupName"] if isinstance(raw.get("groupName"), str) and raw["groupName"].strip() else default.group_name,
                start_time=raw["startTime"] if is_clock_time(raw.get("startTime")) else default.start_time,
                duration=max(1, math.floor(duration)) if is_valid_time(duration) else default.duration,
                max_capacity=capacity,
                assigned_pilots=assigned,
                closed=bool(raw.get("closed", False)),
                status=session_status(assigned, times),
                times=times,
            )
        )
    return sort_sessions(sessions)
