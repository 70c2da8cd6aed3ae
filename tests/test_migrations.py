from kart_gp.domain import Pilot, RaceGrid, StoredResults
from kart_gp.migrations import migrate_module


def _pilots(count: int):
    return [
        Pilot(pilot_id=f"p{i}", number=i, full_name=f"Pilot {i}", kart="390cc" if i % 2 else "270cc")
        for i in range(1, count + 1)
    ]


def _legacy_pilot(pilot_id: str, number: int, position: int) -> dict:
    return {
        "pilotId": pilot_id,
        "numeroPiloto": number,
        "fullName": f"Pilot {number}",
        "teamName": "Team 1",
        "classificationPosition": position,
    }


def test_legacy_two_group_grid_gets_start_positions():
    legacy = {
        "race1": {
            "group1": {
                "category390": [_legacy_pilot("p1", 1, 1), _legacy_pilot("p3", 3, 3)],
                "category270": [_legacy_pilot("p2", 2, 2)],
            },
            "group2": {"category390": [], "category270": [_legacy_pilot("p4", 4, 4)]},
        }
    }

    grid = migrate_module("races", legacy, 1)

    assert isinstance(grid, RaceGrid)
    assert [r.key for r in grid.races] == ["race1"]
    group1, group2 = grid.races[0].groups
    assert [(p.pilot_id, p.number, p.start_position) for p in group1.category390] == [("p1", 1, 1), ("p3", 3, 3)]
    assert [(p.pilot_id, p.start_position, p.category) for p in group1.category270] == [("p2", 2, "270cc")]
    assert group2.category270[0].start_position == 2


def test_current_grid_round_trips():
    grid = migrate_module("races", {"races": [], "config": None, "generatedAt": None}, 2)
    assert grid == RaceGrid()
    assert migrate_module("races", None) == RaceGrid()


def test_results_keep_valid_entries_only():
    good = {
        "race": "race1",
        "pilotId": "p1",
        "numeroPiloto": 1,
        "fullName": "Pilot 1",
        "category": "390cc",
        "finalPosition": 1,
        "categoryPosition": 1,
        "basePoints": 40,
        "collectiveBonus": 20,
        "individualBonus": 20,
        "finalPoints": 80,
    }
    bad_sum = {**good, "pilotId": "p2", "finalPoints": 10}
    payload = {"race1": {"entries": [good, bad_sum, "junk"], "winningCategory": "390cc"}, "race2": None}

    results = migrate_module("results", payload, 1)

    assert isinstance(results, StoredResults)
    assert [e.pilot_id for e in results.race1.entries] == ["p1"]
    entry = results.race1.entries[0]
    assert (entry.number, entry.group, entry.team_name) == (1, 0, "Unassigned")
    assert results.race1.winning_category == "390cc"
    assert results.race2.entries == []


def test_team_members_are_deduplicated():
    teams = migrate_module("teams", [{"id": "team-1", "name": "Team 1", "members": ["a", "a", "b", 3]}, {"id": 5}])
    assert [(t.id, t.members) for t in teams] == [("team-1", ["a", "b"])]


def test_time_attack_recomputes_corrected_times():
    payload = [
        {
            "id": "ta-1",
            "name": "Morning",
            "maxCapacity": 10,
            "assignedPilots": ["p1", "p2", "p1"],
            "times": [
                {"pilotId": "p1", "rawTime": 50.12349, "correctedTime": 1},
                {"pilotId": "p2", "rawTime": 0},
                {"pilotId": "p9", "rawTime": 48.0},
            ],
        }
    ]

    sessions = migrate_module("timeAttack", payload, 1)

    assert sessions[0].session_id == "ta-1"
    assert sessions[0].assigned_pilots == ["p1", "p2"]
    assert [(t.pilot_id, t.corrected_time) for t in sessions[0].times] == [("p1", 50.123)]


def test_legacy_qualy_records_become_sessions():
    records = [
        {"pilotId": "p1", "group": "Grupo 1", "qualyTime": 50.5},
        {"pilotId": "p2", "group": "Group 2", "qualyTime": None},
        {"pilotId": "p3", "group": "Group 2", "qualyTime": 49.9},
        {"pilotId": "ghost", "group": "Group 1", "qualyTime": 45.0},
    ]

    sessions = migrate_module("qualy", records, 1, pilots=_pilots(3), groups_count=2, max_participants=4)

    assert [s.name for s in sessions] == ["Q1", "Q2"]
    assert [s.assigned_pilots for s in sessions] == [["p1"], ["p2", "p3"]]
    assert sessions[0].status == "completed"
    assert sessions[1].status == "pending"
    assert [(t.pilot_id, t.qualy_time) for t in sessions[1].times] == [("p3", 49.9)]


def test_missing_qualy_state_builds_default_sessions():
    sessions = migrate_module("qualy", None, 2, pilots=_pilots(2), groups_count=3, max_participants=9)
    assert [s.start_time for s in sessions] == ["11:30", "11:40", "11:50"]
    assert all(s.assigned_pilots == [] for s in sessions)
