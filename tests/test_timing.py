import pytest

from kart_gp.domain import Pilot, QualyRecord, TimeAttackSession, TimedEntry
from kart_gp.errors import SessionRejected
from kart_gp.timing import (
    build_combined_standings,
    recalculate_corrected_times,
    save_session_times,
    toggle_session_assignment,
)


def _pilot(pilot_id: str, number: int, kart: str = "390cc") -> Pilot:
    return Pilot(pilot_id=pilot_id, number=number, full_name=f"Pilot {number}", kart=kart)


def _ta(pilot_id: str, corrected: float, session_id: str = "ta-1") -> TimedEntry:
    return TimedEntry(pilot_id=pilot_id, source_session=session_id, raw_time=corrected, corrected_time=corrected)


def test_combined_takes_best_of_both_sources():
    pilots = [_pilot("a", 1), _pilot("b", 2)]
    sessions = (
        TimeAttackSession(
            session_id="ta-1",
            name="TA 1",
            assigned_pilots=["a", "b"],
            times=[_ta("a", 51.2), _ta("b", 49.5)],
        ),
    )
    records = [QualyRecord(pilot_id="a", group="Group 1", qualy_time=50.9)]

    standings = build_combined_standings(pilots, sessions, records)

    assert [s.pilot_id for s in standings] == ["b", "a"]
    b, a = standings
    assert (b.final_time, b.source, b.from_time_attack, b.position) == (49.5, "TA", True, 1)
    assert (a.final_time, a.source, a.from_time_attack, a.position) == (50.9, "QUALY", False, 2)


def test_combined_ties_prefer_time_attack_and_lower_number():
    pilots = [_pilot("x", 9), _pilot("y", 3)]
    sessions = (
        TimeAttackSession(session_id="ta-1", name="TA", assigned_pilots=["x", "y"], times=[_ta("x", 50.0)]),
    )
    records = [
        QualyRecord(pilot_id="x", group="Group 1", qualy_time=50.0),
        QualyRecord(pilot_id="y", group="Group 1", qualy_time=50.0),
    ]

    standings = build_combined_standings(pilots, sessions, records)

    assert [s.number for s in standings] == [3, 9]
    assert standings[1].source == "TA"


def test_pilots_without_any_valid_time_are_excluded():
    pilots = [_pilot("a", 1), _pilot("b", 2), _pilot("c", 3)]
    records = [
        QualyRecord(pilot_id="b", group="Group 1", qualy_time=None),
        QualyRecord(pilot_id="c", group="Group 1", qualy_time=0.0),
    ]
    assert build_combined_standings(pilots, (), records) == []


def test_save_session_times_keeps_only_assigned_valid_times():
    sessions = (TimeAttackSession(session_id="ta-1", name="TA", assigned_pilots=["a", "b"]),)

    updated = save_session_times(sessions, "ta-1", {"a": 50.12345, "b": -1, "z": 48.0})

    times = updated[0].times
    assert [t.pilot_id for t in times] == ["a"]
    assert times[0].corrected_time == 50.123
    assert times[0].source_session == "ta-1"
    assert sessions[0].times == []


def test_save_session_times_rejects_closed_or_unknown_session():
    sessions = (TimeAttackSession(session_id="ta-1", name="TA", status="closed", assigned_pilots=["a"]),)

    with pytest.raises(SessionRejected) as closed:
        save_session_times(sessions, "ta-1", {"a": 50.0})
    assert closed.value.reason == "closed"

    with pytest.raises(SessionRejected) as missing:
        save_session_times(sessions, "ta-9", {"a": 50.0})
    assert missing.value.reason == "not-found"


def test_toggle_session_assignment_respects_capacity_and_drops_time():
    sessions = (
        TimeAttackSession(
            session_id="ta-1", name="TA", max_capacity=1, assigned_pilots=["a"], times=[_ta("a", 50.0)]
        ),
    )

    with pytest.raises(SessionRejected) as full:
        toggle_session_assignment(sessions, "ta-1", "b")
    assert full.value.reason == "full"

    removed = toggle_session_assignment(sessions, "ta-1", "a")
    assert removed[0].assigned_pilots == []
    assert removed[0].times == []

    added = toggle_session_assignment(removed, "ta-1", "b")
    assert added[0].assigned_pilots == ["b"]


def test_recalculate_drops_times_of_unassigned_pilots():
    sessions = (
        TimeAttackSession(
            session_id="ta-1",
            name="TA",
            assigned_pilots=["a"],
            times=[
                TimedEntry(pilot_id="a", source_session="ta-1", raw_time=50.00049, corrected_time=0.1),
                _ta("b", 48.0),
            ],
        ),
    )

    updated = recalculate_corrected_times(sessions)

    assert [(t.pilot_id, t.corrected_time) for t in updated[0].times] == [("a", 50.0)]


def test_only_the_smallest_valid_time_per_pilot_counts():
    pilots = [_pilot("a", 1), _pilot("b", 2), _pilot("c", 3)]
    sessions = (
        TimeAttackSession(
            session_id="ta-1",
            name="TA 1",
            assigned_pilots=["a", "c"],
            times=[_ta("a", 52.4), _ta("c", 0.0), _ta("c", -1.0)],
        ),
        TimeAttackSession(
            session_id="ta-2",
            name="TA 2",
            assigned_pilots=["a", "c"],
            times=[_ta("a", 51.8, "ta-2"), _ta("a", float("nan"), "ta-2"), _ta("c", float("nan"), "ta-2")],
        ),
    )
    records = [
        QualyRecord(pilot_id="b", group="Group 1", qualy_time=53.0),
        QualyRecord(pilot_id="b", group="Group 2", qualy_time=52.1),
    ]

    standings = build_combined_standings(pilots, sessions, records)

    assert [(s.pilot_id, s.final_time, s.source) for s in standings] == [
        ("a", 51.8, "TA"),
        ("b", 52.1, "QUALY"),
    ]
