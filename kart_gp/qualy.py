"""
Qualy session allocation.

Every operation is a reducer: it takes the current tuple of sessions and returns
a new tuple. Re-partitions (by level, kart, number, random or manual) are
idempotent for the deterministic orderings.
"""

from __future__ import annotations

import logging
import math
import random
import re
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from kart_gp.domain import Pilot, QualyPilotTime, QualyRecord, QualySession
from kart_gp.errors import AssignmentRejected
from kart_gp.rules import (
    KART_PRIORITY,
    LEVEL_PRIORITY,
    QUALY_DURATION_MINUTES,
    QUALY_FIRST_START,
    QUALY_SESSION_GAP_MINUTES,
    add_minutes,
    deal_round_robin,
    fisher_yates_shuffle,
    is_valid_time,
)


logger = logging.getLogger(__name__)

Sessions = Tuple[QualySession, ...]


class SessionSlot(NamedTuple):
    name: str
    group_name: str
    start_time: str


def session_number(name: str) -> Optional[int]:
    digits = re.sub(r"[^0-9]", "", name or "")
    if not digits or int(digits) <= 0:
        return None
    return int(digits)


def sort_sessions(sessions: Sequence[QualySession]) -> Sessions:
    return tuple(sorted(sessions, key=lambda s: (session_number(s.name) is None, session_number(s.name) or 0)))


def session_status(assigned: Sequence[str], times: Sequence[QualyPilotTime]) -> str:
    return "completed" if assigned and len(times) == len(assigned) else "pending"


def build_session_slots(groups_count: int) -> List[SessionSlot]:
    count = groups_count if groups_count > 0 else 1
    return [
        SessionSlot(
            name=f"Q{idx + 1}",
            group_name=f"Group {idx + 1}",
            start_time=add_minutes(QUALY_FIRST_START, idx * QUALY_SESSION_GAP_MINUTES),
        )
        for idx in range(count)
    ]


def effective_groups_count(groups_count: Optional[int], sessions: Sequence[QualySession]) -> int:
    numbered = [session_number(s.name) or 0 for s in sessions]
    return max(groups_count or 1, max(numbered, default=0), len(sessions), 1)


def build_default_qualy_sessions(groups_count: int, max_participants: int) -> Sessions:
    slots = build_session_slots(groups_count)
    capacity = max(1, math.ceil(max(max_participants, 1) / len(slots)))
    return tuple(
        QualySession(
            id=f"qualy-{slot.name.lower()}",
            name=slot.name,
            group_name=slot.group_name,
            start_time=slot.start_time,
            duration=QUALY_DURATION_MINUTES,
            max_capacity=capacity,
        )
        for slot in slots
    )


def order_pilots_by_number(pilots: Sequence[Pilot]) -> List[Pilot]:
    return sorted(pilots, key=lambda p: p.number)


def order_pilots_by_level(pilots: Sequence[Pilot]) -> List[Pilot]:
    return sorted(pilots, key=lambda p: (LEVEL_PRIORITY[p.level], p.number))


def order_pilots_by_kart(pilots: Sequence[Pilot]) -> List[Pilot]:
    return sorted(pilots, key=lambda p: (KART_PRIORITY[p.kart], p.number))


def _eligible(pilots: Sequence[Pilot], max_participants: int) -> int:
    return max_participants if max_participants > 0 else len(pilots)


def _sessions_from_assignments(
    slots: Sequence[SessionSlot],
    sessions: Sequence[QualySession],
    assignments: Mapping[str, List[str]],
) -> Sessions:
    existing = {s.name: s for s in sessions}
    assigned_total = sum(len(s.assigned_pilots) for s in sessions)

    rebuilt = []
    for slot in slots:
        base = existing.get(slot.name)
        if base is not None and base.closed:
            rebuilt.append(base)
            continue

        capacity = base.max_capacity if base else max(1, math.ceil((assigned_total or 1) / len(slots)))
        requested = assignments.get(slot.name, [])
        assigned = requested[:capacity]
        if len(requested) > capacity:
            logger.warning(
                "qualy session %s is full (%s): %s pilots left unassigned",
                slot.name,
                capacity,
                len(requested) - capacity,
            )

        # A recorded time survives only when the pilot stays in the same session.
        previous = {t.pilot_id: t for t in base.times} if base else {}
        times = [previous[p] for p in assigned if p in previous]

        rebuilt.append(
            QualySession(
                id=base.id if base else f"qualy-{slot.name.lower()}",
                name=slot.name,
                group_name=base.group_name if base else slot.group_name,
                start_time=base.start_time if base else slot.start_time,
                duration=base.duration if base else QUALY_DURATION_MINUTES,
                max_capacity=capacity,
                assigned_pilots=assigned,
                status=session_status(assigned, times),
                times=times,
            )
        )
    return tuple(rebuilt)


def _repartition(
    sessions: Sequence[QualySession],
    ordered_pilot_ids: Sequence[str],
    groups_count: Optional[int],
) -> Sessions:
    slots = build_session_slots(effective_groups_count(groups_count, sessions))
    closed = {s.name for s in sessions if s.closed}
    locked = {p for s in sessions if s.closed for p in s.assigned_pilots}

    open_slots = [slot for slot in slots if slot.name not in closed]
    pool = [p for p in ordered_pilot_ids if p not in locked]
    assignments: Dict[str, List[str]] = {}
    if open_slots:
        for slot, bucket in zip(open_slots, deal_round_robin(pool, len(open_slots))):
            assignments[slot.name] = bucket
    return _sessions_from_assignments(slots, sessions, assignments)


def assign_qualy_by_order(
    sessions: Sequence[QualySession],
    pilots: Sequence[Pilot],
    max_participants: int,
    order: Callable[[Sequence[Pilot]], List[Pilot]],
    groups_count: Optional[int] = None,
) -> Sessions:
    pool = order(list(pilots))[: _eligible(pilots, max_participants)]
    return _repartition(sessions, [p.pilot_id for p in pool], groups_count)


def assign_qualy_by_number(
    sessions: Sequence[QualySession],
    pilots: Sequence[Pilot],
    max_participants: int,
    groups_count: Optional[int] = None,
) -> Sessions:
    return assign_qualy_by_order(sessions, pilots, max_participants, order_pilots_by_number, groups_count)


def assign_qualy_by_level(
    sessions: Sequence[QualySession],
    pilots: Sequence[Pilot],
    max_participants: int,
    groups_count: Optional[int] = None,
) -> Sessions:
    return assign_qualy_by_order(sessions, pilots, max_participants, order_pilots_by_level, groups_count)


def assign_qualy_by_kart(
    sessions: Sequence[QualySession],
    pilots: Sequence[Pilot],
    max_participants: int,
    groups_count: Optional[int] = None,
) -> Sessions:
    return assign_qualy_by_order(sessions, pilots, max_participants, order_pilots_by_kart, groups_count)


def assign_qualy_random(
    sessions: Sequence[QualySession],
    pilots: Sequence[Pilot],
    max_participants: int,
    groups_count: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> Sessions:
    return assign_qualy_by_order(
        sessions,
        pilots,
        max_participants,
        lambda items: fisher_yates_shuffle(items, rng),
        groups_count,
    )


def apply_manual_assignments(
    sessions: Sequence[QualySession],
    pilots: Sequence[Pilot],
    max_participants: int,
    manual: Mapping[str, Sequence[str]],
    groups_count: Optional[int] = None,
) -> Sessions:
    """
    Explicit session id -> pilot ids map. Pilots outside the eligible pool are
    ignored; a pilot claimed by several sessions stays in the first one.
    """
    slots = build_session_slots(effective_groups_count(groups_count, sessions))
    eligible = {p.pilot_id for p in order_pilots_by_number(pilots)[: _eligible(pilots, max_participants)]}
    name_by_id = {s.id: s.name for s in sessions}

    requested: Dict[str, List[str]] = {}
    for session_id, pilot_ids in manual.items():
        name = name_by_id.get(session_id)
        if name is None:
            logger.warning("manual qualy assignment for unknown session %s ignored", session_id)
            continue
        requested[name] = [p for p in pilot_ids if p in eligible]

    used: set[str] = set()
    assignments: Dict[str, List[str]] = {}
    for slot in slots:
        unique = []
        for pilot_id in requested.get(slot.name, []):
            if pilot_id in used:
                continue
            used.add(pilot_id)
            unique.append(pilot_id)
        assignments[slot.name] = unique

    return _sessions_from_assignments(slots, sessions, assignments)


def toggle_qualy_assignment(sessions: Sequence[QualySession], session_id: str, pilot_id: str) -> Sessions:
    target = next((s for s in sessions if s.id == session_id), None)
    if target is None:
        raise AssignmentRejected("not-found", session_id, pilot_id)

    if pilot_id in target.assigned_pilots:
        assigned = [p for p in target.assigned_pilots if p != pilot_id]
    else:
        if target.closed:
            raise AssignmentRejected("closed", session_id, pilot_id)
        if len(target.assigned_pilots) >= target.max_capacity:
            raise AssignmentRejected("full", session_id, pilot_id)
        # A pilot runs in one qualy session only.
        if any(pilot_id in s.assigned_pilots for s in sessions if s.id != session_id):
            raise AssignmentRejected("assigned", session_id, pilot_id)
        assigned = [*target.assigned_pilots, pilot_id]

    times = [t for t in target.times if t.pilot_id in assigned]
    updated = target.model_copy(
        update={"assigned_pilots": assigned, "times": times, "status": session_status(assigned, times)}
    )
    return tuple(updated if s.id == session_id else s for s in sessions)


def save_qualy_times(sessions: Sequence[QualySession], entries: Mapping[str, Optional[float]]) -> Sessions:
    """
    Record qualy times. A listed pilot with an invalid or empty time has their
    time cleared; unlisted pilots keep what they had.
    """
    updated = []
    for session in sessions:
        previous = {t.pilot_id: t for t in session.times}
        times: List[QualyPilotTime] = []
        for pilot_id in session.assigned_pilots:
            if pilot_id not in entries:
                if pilot_id in previous:
                    times.append(previous[pilot_id])
                continue
            value = entries[pilot_id]
            if is_valid_time(value):
                times.append(QualyPilotTime(pilot_id=pilot_id, qualy_time=float(value)))
        updated.append(
            session.model_copy(update={"times": times, "status": session_status(session.assigned_pilots, times)})
        )
    return tuple(updated)


def reset_qualy_assignments(sessions: Sequence[QualySession]) -> Sessions:
    return tuple(s.model_copy(update={"assigned_pilots": [], "times": [], "status": "pending"}) for s in sessions)


def qualy_records_from_sessions(sessions: Sequence[QualySession]) -> List[QualyRecord]:
    records = []
    for session in sessions:
        times = {t.pilot_id: t.qualy_time for t in session.times}
        for pilot_id in session.assigned_pilots:
            records.append(QualyRecord(pilot_id=pilot_id, group=session.group_name, qualy_time=times.get(pilot_id)))
    return records
