from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from kart_gp import domain
from kart_gp.errors import AssignmentRejected, ConfigurationError, EngineError, InputIncompleteError
from kart_gp.grids import build_race_grid, parse_grid_config
from kart_gp.migrations import SCHEMA_VERSION, migrate_module
from kart_gp.models import Event, EventState, Pilot
from kart_gp.qualy import (
    apply_manual_assignments,
    assign_qualy_by_kart,
    assign_qualy_by_level,
    assign_qualy_by_number,
    assign_qualy_random,
    qualy_records_from_sessions,
    reset_qualy_assignments,
    save_qualy_times,
    toggle_qualy_assignment,
)
from kart_gp.scoring import (
    build_individual_standings,
    build_team_standings,
    compute_race_result,
    validate_finishing_positions,
)
from kart_gp.teams import build_teams_by_pattern, team_by_pilot
from kart_gp.timing import (
    best_qualy_by_pilot,
    build_combined_standings,
    recalculate_corrected_times,
    save_session_times,
    toggle_session_assignment,
)


logger = logging.getLogger(__name__)

TIME_ATTACK = "timeAttack"
QUALY = "qualy"
TEAMS = "teams"
RACES = "races"
RESULTS = "results"

RACE_KEYS = ("race1", "race2")

QUALY_ASSIGNERS = {
    "number": assign_qualy_by_number,
    "level": assign_qualy_by_level,
    "kart": assign_qualy_by_kart,
}


def get_or_404(db: Session, model: Any, obj_id: int, label: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


def get_event_or_404(db: Session, event_id: int) -> Event:
    return get_or_404(db, Event, event_id, "Event")


@contextmanager
def engine_errors() -> Iterator[None]:
    """Translate engine failures into HTTP errors."""
    try:
        yield
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail={"message": str(exc), "errors": exc.errors}) from exc
    except InputIncompleteError as exc:
        raise HTTPException(status_code=400, detail={"message": str(exc), "problems": exc.problems}) from exc
    except AssignmentRejected as exc:
        status_code = 404 if exc.reason == "not-found" else 400
        raise HTTPException(status_code=status_code, detail={"message": str(exc), "reason": exc.reason}) from exc
    except EngineError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def to_domain_pilot(row: Pilot) -> domain.Pilot:
    return domain.Pilot(
        pilot_id=str(row.id),
        number=row.number,
        full_name=row.full_name,
        kart=row.kart,
        level=row.level,
        has_time_attack=row.has_time_attack,
    )


def list_pilots(db: Session, event_id: int) -> List[domain.Pilot]:
    rows = db.scalars(select(Pilot).where(Pilot.event_id == event_id).order_by(Pilot.number.asc())).all()
    return [to_domain_pilot(row) for row in rows]


def _state_row(db: Session, event_id: int, module_key: str) -> Optional[EventState]:
    return db.scalar(
        select(EventState).where(EventState.event_id == event_id, EventState.module_key == module_key)
    )


def _to_payload(value: Any) -> Any:
    if isinstance(value, domain.EngineModel):
        return value.to_json()
    if isinstance(value, (list, tuple)):
        return [_to_payload(item) for item in value]
    return value


def load_module(db: Session, event: Event, module_key: str, pilots: Optional[Sequence[domain.Pilot]] = None) -> Any:
    row = _state_row(db, event.id, module_key)
    payload = row.payload if row else None
    version = row.schema_version if row else SCHEMA_VERSION
    if module_key == QUALY and pilots is None:
        pilots = list_pilots(db, event.id)
    return migrate_module(
        module_key,
        payload,
        version,
        pilots=pilots or [],
        groups_count=event.qualy_groups,
        max_participants=event.max_pilots,
    )


def save_module(db: Session, event_id: int, module_key: str, value: Any) -> EventState:
    payload = _to_payload(value)
    row = _state_row(db, event_id, module_key)
    if row:
        row.payload = payload
        row.schema_version = SCHEMA_VERSION
    else:
        row = EventState(event_id=event_id, module_key=module_key, schema_version=SCHEMA_VERSION, payload=payload)
        db.add(row)
    logger.info("event %s: saved %s", event_id, module_key)
    return row


def clear_module(db: Session, event_id: int, module_key: str) -> bool:
    row = _state_row(db, event_id, module_key)
    if not row:
        return False
    db.delete(row)
    logger.info("event %s: cleared %s", event_id, module_key)
    return True


# Time Attack


def list_time_attack_sessions(db: Session, event_id: int) -> List[domain.TimeAttackSession]:
    event = get_event_or_404(db, event_id)
    return list(load_module(db, event, TIME_ATTACK))


def create_time_attack_session(db: Session, event_id: int, name: str, max_capacity: int) -> domain.TimeAttackSession:
    event = get_event_or_404(db, event_id)
    sessions = load_module(db, event, TIME_ATTACK)
    taken = {s.session_id for s in sessions}
    idx = len(sessions) + 1
    while f"ta-{idx}" in taken:
        idx += 1
    created = domain.TimeAttackSession(session_id=f"ta-{idx}", name=name.strip(), max_capacity=max_capacity)
    save_module(db, event.id, TIME_ATTACK, (*sessions, created))
    return created


def save_time_attack_times(
    db: Session, event_id: int, session_id: str, raw_times: Mapping[str, float]
) -> domain.TimeAttackSession:
    event = get_event_or_404(db, event_id)
    with engine_errors():
        sessions = save_session_times(load_module(db, event, TIME_ATTACK), session_id, raw_times)
    save_module(db, event.id, TIME_ATTACK, sessions)
    return next(s for s in sessions if s.session_id == session_id)


def recalculate_time_attack(db: Session, event_id: int) -> List[domain.TimeAttackSession]:
    event = get_event_or_404(db, event_id)
    sessions = recalculate_corrected_times(load_module(db, event, TIME_ATTACK))
    save_module(db, event.id, TIME_ATTACK, sessions)
    return list(sessions)


def toggle_time_attack_assignment(
    db: Session, event_id: int, session_id: str, pilot_id: str
) -> domain.TimeAttackSession:
    event = get_event_or_404(db, event_id)
    if pilot_id not in {p.pilot_id for p in list_pilots(db, event.id)}:
        raise HTTPException(status_code=404, detail="Pilot not found")
    with engine_errors():
        sessions = toggle_session_assignment(load_module(db, event, TIME_ATTACK), session_id, pilot_id)
    save_module(db, event.id, TIME_ATTACK, sessions)
    return next(s for s in sessions if s.session_id == session_id)


# Qualy


def list_qualy_sessions(db: Session, event_id: int) -> List[domain.QualySession]:
    event = get_event_or_404(db, event_id)
    return list(load_module(db, event, QUALY))


def assign_qualy(db: Session, event_id: int, mode: str, seed: Optional[int] = None) -> List[domain.QualySession]:
    event = get_event_or_404(db, event_id)
    pilots = list_pilots(db, event.id)
    sessions = load_module(db, event, QUALY, pilots)
    if mode == "random":
        rng = random.Random(seed) if seed is not None else None
        updated = assign_qualy_random(sessions, pilots, event.max_pilots, event.qualy_groups, rng)
    elif mode in QUALY_ASSIGNERS:
        updated = QUALY_ASSIGNERS[mode](sessions, pilots, event.max_pilots, event.qualy_groups)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown assignment mode: {mode}")
    save_module(db, event.id, QUALY, updated)
    return list(updated)


def assign_qualy_manual(
    db: Session, event_id: int, assignments: Mapping[str, Sequence[str]]
) -> List[domain.QualySession]:
    event = get_event_or_404(db, event_id)
    pilots = list_pilots(db, event.id)
    sessions = load_module(db, event, QUALY, pilots)
    updated = apply_manual_assignments(sessions, pilots, event.max_pilots, assignments, event.qualy_groups)
    save_module(db, event.id, QUALY, updated)
    return list(updated)


def record_qualy_times(
    db: Session, event_id: int, entries: Mapping[str, Optional[float]]
) -> List[domain.QualySession]:
    event = get_event_or_404(db, event_id)
    updated = save_qualy_times(load_module(db, event, QUALY), entries)
    save_module(db, event.id, QUALY, updated)
    return list(updated)


def reset_qualy(db: Session, event_id: int) -> List[domain.QualySession]:
    event = get_event_or_404(db, event_id)
    updated = reset_qualy_assignments(load_module(db, event, QUALY))
    save_module(db, event.id, QUALY, updated)
    return list(updated)


def toggle_qualy(db: Session, event_id: int, session_id: str, pilot_id: str) -> domain.QualySession:
    event = get_event_or_404(db, event_id)
    pilots = list_pilots(db, event.id)
    if pilot_id not in {p.pilot_id for p in pilots}:
        raise HTTPException(status_code=404, detail="Pilot not found")
    with engine_errors():
        updated = toggle_qualy_assignment(load_module(db, event, QUALY, pilots), session_id, pilot_id)
    save_module(db, event.id, QUALY, updated)
    return next(s for s in updated if s.id == session_id)


# Standings, teams and grids


def _qualy_records(db: Session, event: Event, pilots: Sequence[domain.Pilot]) -> List[domain.QualyRecord]:
    return qualy_records_from_sessions(load_module(db, event, QUALY, pilots))


def combined_standings(db: Session, event_id: int) -> List[domain.CombinedStanding]:
    event = get_event_or_404(db, event_id)
    pilots = list_pilots(db, event.id)
    return build_combined_standings(pilots, load_module(db, event, TIME_ATTACK), _qualy_records(db, event, pilots))


def list_teams(db: Session, event_id: int) -> List[domain.Team]:
    event = get_event_or_404(db, event_id)
    return load_module(db, event, TEAMS)


def generate_teams(db: Session, event_id: int, teams_count: Optional[int] = None) -> List[domain.Team]:
    """
    Build teams from the combined standings. Pilots without any time are
    appended after the ranked ones, by number.
    """
    event = get_event_or_404(db, event_id)
    ranked = [s.pilot_id for s in combined_standings(db, event.id)]
    seen = set(ranked)
    unranked = [p.pilot_id for p in list_pilots(db, event.id) if p.pilot_id not in seen]
    count = teams_count or event.teams_count
    teams = build_teams_by_pattern([*ranked, *unranked], count)
    if teams_count and teams_count != event.teams_count:
        event.teams_count = teams_count
    save_module(db, event.id, TEAMS, teams)
    return teams


def generate_race_grid(
    db: Session, event_id: int, config_data: Mapping[str, Any], seed: Optional[int] = None
) -> domain.RaceGrid:
    event = get_event_or_404(db, event_id)
    with engine_errors():
        config = parse_grid_config(config_data)

    pilots = list_pilots(db, event.id)
    standings = combined_standings(db, event.id)
    teams = load_module(db, event, TEAMS)
    qualy_times = best_qualy_by_pilot(_qualy_records(db, event, pilots))
    rng = random.Random(seed) if seed is not None else None

    with engine_errors():
        grid = build_race_grid(
            standings,
            {p.pilot_id: p for p in pilots},
            team_by_pilot(teams),
            qualy_times,
            config,
            rng=rng,
        )

    save_module(db, event.id, RACES, grid)
    # Results refer to the previous grid.
    clear_module(db, event.id, RESULTS)
    event.status = "racing"
    return grid


def get_race_grid(db: Session, event_id: int) -> domain.RaceGrid:
    event = get_event_or_404(db, event_id)
    return load_module(db, event, RACES)


def delete_race_grid(db: Session, event_id: int) -> None:
    event = get_event_or_404(db, event_id)
    if not clear_module(db, event.id, RACES):
        raise HTTPException(status_code=404, detail="Race grid not found")
    clear_module(db, event.id, RESULTS)
    event.status = "setup"


def _require_race(grid: domain.RaceGrid, race_key: str) -> domain.Race:
    race = grid.race(race_key) if race_key in RACE_KEYS else None
    if race is None:
        raise HTTPException(status_code=404, detail="Race not found")
    return race


def get_race_result(db: Session, event_id: int, race_key: str) -> domain.RaceComputedResult:
    event = get_event_or_404(db, event_id)
    if race_key not in RACE_KEYS:
        raise HTTPException(status_code=404, detail="Race not found")
    results: domain.StoredResults = load_module(db, event, RESULTS)
    return getattr(results, race_key)


def calculate_race_result(
    db: Session, event_id: int, race_key: str, positions: Mapping[str, int]
) -> domain.RaceComputedResult:
    event = get_event_or_404(db, event_id)
    race = _require_race(load_module(db, event, RACES), race_key)

    with engine_errors():
        rows = validate_finishing_positions(race, positions)
    result = compute_race_result(race_key, rows)

    stored: domain.StoredResults = load_module(db, event, RESULTS)
    stored = stored.model_copy(update={race_key: result})
    save_module(db, event.id, RESULTS, stored)

    if all(getattr(stored, key).entries for key in RACE_KEYS):
        event.status = "completed"
    logger.info(
        "event %s: %s scored, winner %s (%s)",
        event.id,
        race_key,
        result.general_winner_pilot_id,
        result.winning_category,
    )
    return result


def individual_standings(db: Session, event_id: int) -> List[domain.IndividualStandingRow]:
    event = get_event_or_404(db, event_id)
    pilots_by_id = {p.pilot_id: p for p in list_pilots(db, event.id)}
    return build_individual_standings(load_module(db, event, RESULTS), pilots_by_id)


def team_standings(db: Session, event_id: int) -> List[domain.TeamStandingRow]:
    event = get_event_or_404(db, event_id)
    pilots_by_id = {p.pilot_id: p for p in list_pilots(db, event.id)}
    return build_team_standings(load_module(db, event, RESULTS), load_module(db, event, TEAMS), pilots_by_id)


def standings_snapshot(db: Session, event_id: int) -> Dict[str, Any]:
    return {
        "type": "standings",
        "eventId": event_id,
        "individual": [row.to_json() for row in individual_standings(db, event_id)],
        "teams": [row.to_json() for row in team_standings(db, event_id)],
    }
