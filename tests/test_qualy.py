import random

import pytest

from kart_gp.domain import Pilot
from kart_gp.errors import AssignmentRejected
from kart_gp.qualy import (
    apply_manual_assignments,
    assign_qualy_by_kart,
    assign_qualy_by_level,
    assign_qualy_by_number,
    assign_qualy_random,
    build_default_qualy_sessions,
    qualy_records_from_sessions,
    reset_qualy_assignments,
    save_qualy_times,
    toggle_qualy_assignment,
)

LEVELS = ["AMATEUR", "PRO", "PRINCIPIANTE", "PRO", "AMATEUR", "PRINCIPIANTE", "PRO"]


def _pilots(count: int = 7):
    return [
        Pilot(
            pilot_id=f"p{idx}",
            number=idx,
            full_name=f"Pilot {idx}",
            kart="390cc" if idx % 2 else "270cc",
            level=LEVELS[(idx - 1) % len(LEVELS)],
        )
        for idx in range(1, count + 1)
    ]


def _assigned(sessions):
    return [s.assigned_pilots for s in sessions]


def test_default_sessions_are_spaced_ten_minutes_apart():
    sessions = build_default_qualy_sessions(3, 10)

    assert [s.name for s in sessions] == ["Q1", "Q2", "Q3"]
    assert [s.id for s in sessions] == ["qualy-q1", "qualy-q2", "qualy-q3"]
    assert [s.group_name for s in sessions] == ["Group 1", "Group 2", "Group 3"]
    assert [s.start_time for s in sessions] == ["11:30", "11:40", "11:50"]
    assert all(s.max_capacity == 4 and s.duration == 5 and s.status == "pending" for s in sessions)


def test_assign_by_number_deals_round_robin():
    sessions = assign_qualy_by_number(build_default_qualy_sessions(3, 9), _pilots(), 9)
    assert _assigned(sessions) == [["p1", "p4", "p7"], ["p2", "p5"], ["p3", "p6"]]


def test_pool_is_capped_at_max_participants():
    sessions = assign_qualy_by_number(build_default_qualy_sessions(2, 5), _pilots(), 5)
    assert _assigned(sessions) == [["p1", "p3", "p5"], ["p2", "p4"]]


def test_session_capacity_caps_the_deal():
    sessions = assign_qualy_by_number(build_default_qualy_sessions(2, 4), _pilots(), 0)
    assert _assigned(sessions) == [["p1", "p3"], ["p2", "p4"]]


def test_assign_by_level_and_kart():
    by_level = assign_qualy_by_level(build_default_qualy_sessions(2, 8), _pilots(), 8)
    # PRO: 2, 4, 7; AMATEUR: 1, 5; PRINCIPIANTE: 3, 6
    assert _assigned(by_level) == [["p2", "p7", "p5", "p6"], ["p4", "p1", "p3"]]

    by_kart = assign_qualy_by_kart(build_default_qualy_sessions(2, 8), _pilots(), 8)
    assert _assigned(by_kart) == [["p1", "p5", "p2", "p6"], ["p3", "p7", "p4"]]


def test_random_assignment_uses_every_pilot_once():
    sessions = assign_qualy_random(build_default_qualy_sessions(3, 9), _pilots(), 9, rng=random.Random(11))
    flat = [p for s in sessions for p in s.assigned_pilots]
    assert sorted(flat) == sorted(p.pilot_id for p in _pilots())


def test_time_survives_only_in_the_same_session():
    sessions = assign_qualy_by_number(build_default_qualy_sessions(2, 8), _pilots(4), 8)
    sessions = save_qualy_times(sessions, {"p1": 50.2, "p2": 51.0})

    again = assign_qualy_by_number(sessions, _pilots(4), 8)
    assert again == sessions

    # by kart p2 moves from Q2 to Q1 and loses its time
    moved = assign_qualy_by_kart(sessions, _pilots(4), 8)
    assert _assigned(moved) == [["p1", "p2"], ["p3", "p4"]]
    assert [(t.pilot_id, t.qualy_time) for t in moved[0].times] == [("p1", 50.2)]
    assert moved[1].times == []


def test_closed_sessions_are_left_alone():
    sessions = assign_qualy_by_number(build_default_qualy_sessions(2, 8), _pilots(4), 8)
    sessions = (sessions[0].model_copy(update={"closed": True}), sessions[1])

    repartitioned = assign_qualy_by_level(sessions, _pilots(4), 8)

    assert repartitioned[0] == sessions[0]
    assert sorted(repartitioned[1].assigned_pilots) == ["p2", "p4"]


def test_manual_assignment_first_claim_wins():
    sessions = build_default_qualy_sessions(2, 8)
    manual = {"qualy-q2": ["p2", "p3", "ghost"], "qualy-q1": ["p1", "p2"], "qualy-q9": ["p4"]}

    updated = apply_manual_assignments(sessions, _pilots(4), 8, manual)

    assert _assigned(updated) == [["p1", "p2"], ["p3"]]


def test_toggle_rejections_and_removal():
    sessions = build_default_qualy_sessions(1, 1)
    sessions = toggle_qualy_assignment(sessions, "qualy-q1", "p1")
    assert sessions[0].assigned_pilots == ["p1"]

    with pytest.raises(AssignmentRejected) as full:
        toggle_qualy_assignment(sessions, "qualy-q1", "p2")
    assert full.value.reason == "full"

    with pytest.raises(AssignmentRejected) as missing:
        toggle_qualy_assignment(sessions, "qualy-q7", "p2")
    assert missing.value.reason == "not-found"

    closed = (sessions[0].model_copy(update={"closed": True, "assigned_pilots": []}),)
    with pytest.raises(AssignmentRejected) as rejected:
        toggle_qualy_assignment(closed, "qualy-q1", "p2")
    assert rejected.value.reason == "closed"

    removed = toggle_qualy_assignment(sessions, "qualy-q1", "p1")
    assert removed[0].assigned_pilots == []


def test_times_drive_status_and_can_be_cleared():
    sessions = assign_qualy_by_number(build_default_qualy_sessions(1, 2), _pilots(2), 2)

    partial = save_qualy_times(sessions, {"p1": 50.0, "ghost": 40.0})
    assert partial[0].status == "pending"

    complete = save_qualy_times(partial, {"p2": 49.0})
    assert complete[0].status == "completed"
    assert {t.pilot_id for t in complete[0].times} == {"p1", "p2"}

    cleared = save_qualy_times(complete, {"p1": None})
    assert cleared[0].status == "pending"
    assert [t.pilot_id for t in cleared[0].times] == ["p2"]

    records = qualy_records_from_sessions(cleared)
    assert [(r.pilot_id, r.group, r.qualy_time) for r in records] == [
        ("p1", "Group 1", None),
        ("p2", "Group 1", 49.0),
    ]

    reset = reset_qualy_assignments(cleared)
    assert reset[0].assigned_pilots == [] and reset[0].times == [] and reset[0].status == "pending"


def test_toggle_keeps_a_pilot_in_a_single_session():
    sessions = build_default_qualy_sessions(2, 8)
    sessions = toggle_qualy_assignment(sessions, "qualy-q1", "p1")

    with pytest.raises(AssignmentRejected) as exc:
        toggle_qualy_assignment(sessions, "qualy-q2", "p1")
    assert exc.value.reason == "assigned"

    flat = [p for s in sessions for p in s.assigned_pilots]
    assert len(flat) == len(set(flat))
    assert [(r.pilot_id, r.group) for r in qualy_records_from_sessions(sessions)] == [("p1", "Group 1")]

    # moving means removing from Q1 first
    sessions = toggle_qualy_assignment(sessions, "qualy-q1", "p1")
    sessions = toggle_qualy_assignment(sessions, "qualy-q2", "p1")
    assert _assigned(sessions) == [[], ["p1"]]
