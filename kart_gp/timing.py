"""
Time Attack corrections and the combined (TA + Qualy) standings.

Everything here is a pure function: session tuples go in, new session tuples or
standings lists come out.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from kart_gp.domain import CombinedStanding, Pilot, QualyRecord, TimeAttackSession, TimedEntry
from kart_gp.errors import SessionRejected
from kart_gp.rules import is_valid_time, round_time


logger = logging.getLogger(__name__)


def correct_time(raw_time: float) -> float:
    """
    Corrected time for a raw stopwatch reading. Currently the identity (rounded to
    milliseconds); a real correction formula plugs in here.
    """
    return round_time(raw_time)


def _find_session(sessions: Sequence[TimeAttackSession], session_id: str) -> TimeAttackSession:
    for session in sessions:
        if session.session_id == session_id:
            return session
    raise SessionRejected("not-found", session_id)


def recalculate_corrected_times(sessions: Sequence[TimeAttackSession]) -> Tuple[TimeAttackSession, ...]:
    updated = []
    for session in sessions:
        assigned = set(session.assigned_pilots)
        times = [
            t.model_copy(update={"corrected_time": correct_time(t.raw_time)})
            for t in session.times
            if t.pilot_id in assigned
        ]
        updated.append(session.model_copy(update={"times": times}))
    return tuple(updated)


def save_session_times(
    sessions: Sequence[TimeAttackSession],
    session_id: str,
    raw_times: Mapping[str, float],
) -> Tuple[TimeAttackSession, ...]:
    """
    Replace the times of one session. Only assigned pilots with a valid raw time
    are kept, in assignment order.
    """
    target = _find_session(sessions, session_id)
    if target.status == "closed":
        raise SessionRejected("closed", session_id)

    times = [
        TimedEntry(
            pilot_id=pilot_id,
            source_session=session_id,
            raw_time=float(raw_times[pilot_id]),
            corrected_time=correct_time(raw_times[pilot_id]),
        )
        for pilot_id in target.assigned_pilots
        if pilot_id in raw_times and is_valid_time(raw_times[pilot_id])
    ]
    ignored = set(raw_times) - {t.pilot_id for t in times}
    if ignored:
        logger.debug("session %s: ignored times for %s", session_id, sorted(ignored))

    return tuple(
        s.model_copy(update={"times": times}) if s.session_id == session_id else s for s in sessions
    )


def toggle_session_assignment(
    sessions: Sequence[TimeAttackSession], session_id: str, pilot_id: str
) -> Tuple[TimeAttackSession, ...]:
    target = _find_session(sessions, session_id)
    already_assigned = pilot_id in target.assigned_pilots

    if not already_assigned and target.status == "closed":
        raise SessionRejected("closed", session_id, pilot_id)
    if not already_assigned and len(target.assigned_pilots) >= target.max_capacity:
        raise SessionRejected("full", session_id, pilot_id)

    if already_assigned:
        assigned = [p for p in target.assigned_pilots if p != pilot_id]
    else:
        assigned = [*target.assigned_pilots, pilot_id]
    times = [t for t in target.times if t.pilot_id in assigned]

    return tuple(
        s.model_copy(update={"assigned_pilots": assigned, "times": times}) if s.session_id == session_id else s
        for s in sessions
    )


def best_time_attack_by_pilot(sessions: Iterable[TimeAttackSession]) -> Dict[str, float]:
    best: Dict[str, float] = {}
    for session in sessions:
        for entry in session.times:
            if not is_valid_time(entry.corrected_time):
                continue
            current = best.get(entry.pilot_id)
            if current is None or entry.corrected_time < current:
                best[entry.pilot_id] = entry.corrected_time
    return best


def best_qualy_by_pilot(records: Iterable[QualyRecord]) -> Dict[str, float]:
    best: Dict[str, float] = {}
    for record in records:
        if not is_valid_time(record.qualy_time):
            continue
        current = best.get(record.pilot_id)
        if current is None or record.qualy_time < current:
            best[record.pilot_id] = record.qualy_time
    return best


def build_combined_standings(
    pilots: Sequence[Pilot],
    sessions: Sequence[TimeAttackSession],
    qualy_records: Sequence[QualyRecord],
) -> List[CombinedStanding]:
    best_ta = best_time_attack_by_pilot(sessions)
    best_qualy = best_qualy_by_pilot(qualy_records)

    rows: List[dict] = []
    for pilot in pilots:
        ta: Optional[float] = best_ta.get(pilot.pilot_id)
        qualy: Optional[float] = best_qualy.get(pilot.pilot_id)
        if ta is None and qualy is None:
            continue

        if ta is not None and (qualy is None or ta <= qualy):
            final_time, source = ta, "TA"
        else:
            final_time, source = qualy, "QUALY"

        rows.append(
            {
                "pilot_id": pilot.pilot_id,
                "number": pilot.number,
                "full_name": pilot.full_name,
                "final_time": final_time,
                "source": source,
                "from_time_attack": source == "TA",
            }
        )

    rows.sort(key=lambda r: (r["final_time"], r["number"], r["pilot_id"]))
    return [CombinedStanding(position=idx, **row) for idx, row in enumerate(rows, start=1)]
