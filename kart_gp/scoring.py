from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from kart_gp.domain import (
    GridPilot,
    IndividualStandingRow,
    Pilot,
    Race,
    RaceComputedResult,
    RaceResultEntry,
    StoredResults,
    Team,
    TeamBreakdownRow,
    TeamStandingRow,
)
from kart_gp.errors import InputIncompleteError
from kart_gp.rules import COLLECTIVE_BONUS, INDIVIDUAL_BONUS, category_base_points, opposite_category


@dataclass(frozen=True)
class FinishRow:
    pilot: GridPilot
    group: int
    final_position: int


def validate_finishing_positions(race: Race, positions: Mapping[str, int]) -> List[FinishRow]:
    """
    Gate run before scoring: every grid pilot needs a positive integer position,
    positions may not repeat inside a group, and no unknown pilot may be listed.
    """
    problems: List[str] = []
    rows: List[FinishRow] = []
    known: set[str] = set()

    for group in race.groups:
        seen: Dict[int, str] = {}
        for pilot in group.pilots():
            known.add(pilot.pilot_id)
            value = positions.get(pilot.pilot_id)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                problems.append(f"group {group.index}: missing final position for pilot {pilot.pilot_id}")
                continue
            if value in seen:
                problems.append(
                    f"group {group.index}: position {value} repeated ({seen[value]}, {pilot.pilot_id})"
                )
                continue
            seen[value] = pilot.pilot_id
            rows.append(FinishRow(pilot=pilot, group=group.index, final_position=value))

    for pilot_id in sorted(set(positions) - known):
        problems.append(f"pilot {pilot_id} is not on the {race.key} grid")

    if problems:
        raise InputIncompleteError(f"Final positions for {race.key} are incomplete", problems)
    return rows


def compute_race_result(
    race_key: str,
    rows: Sequence[FinishRow],
    calculated_at: Optional[datetime] = None,
) -> RaceComputedResult:
    """
    Score one race. Input is assumed valid (see validate_finishing_positions).

    The overall winner's category is the winning category. Every pilot of that
    category gets the collective bonus; those who finished ahead of the other
    category's best finisher also get the individual bonus.
    """
    ordered = sorted(rows, key=lambda r: r.final_position)
    winner = ordered[0] if ordered else None
    winning_category = winner.pilot.category if winner else None

    other = opposite_category(winning_category)
    first_opposite = next((r for r in ordered if r.pilot.category == other), None)

    category_ranks: Dict[str, int] = defaultdict(int)
    entries: List[RaceResultEntry] = []
    for row in ordered:
        category = row.pilot.category
        category_ranks[category] += 1
        category_position = category_ranks[category]

        in_winning = winning_category is not None and category == winning_category
        base_points = category_base_points(category_position)
        collective_bonus = COLLECTIVE_BONUS if in_winning else 0
        individual_bonus = (
            INDIVIDUAL_BONUS
            if in_winning and first_opposite is not None and row.final_position < first_opposite.final_position
            else 0
        )

        entries.append(
            RaceResultEntry(
                race=race_key,
                pilot_id=row.pilot.pilot_id,
                number=row.pilot.number,
                full_name=row.pilot.full_name,
                team_name=row.pilot.team_name,
                category=category,
                group=row.group,
                final_position=row.final_position,
                category_position=category_position,
                base_points=base_points,
                collective_bonus=collective_bonus,
                individual_bonus=individual_bonus,
                final_points=base_points + collective_bonus + individual_bonus,
            )
        )

    return RaceComputedResult(
        entries=entries,
        general_winner_pilot_id=winner.pilot.pilot_id if winner else None,
        winning_category=winning_category,
        opposite_category_first_pilot_id=first_opposite.pilot.pilot_id if first_opposite else None,
        calculated_at=calculated_at or datetime.now(timezone.utc),
    )


def _entries_by_pilot(result: RaceComputedResult) -> Dict[str, RaceResultEntry]:
    return {entry.pilot_id: entry for entry in result.entries}


def _identity(
    pilot_id: str,
    race1: Optional[RaceResultEntry],
    race2: Optional[RaceResultEntry],
    pilots_by_id: Mapping[str, Pilot],
) -> tuple[int, str]:
    for entry in (race1, race2):
        if entry is not None:
            return entry.number, entry.full_name
    pilot = pilots_by_id.get(pilot_id)
    if pilot is not None:
        return pilot.number, pilot.full_name
    return 0, "No result"


def build_individual_standings(
    results: StoredResults, pilots_by_id: Optional[Mapping[str, Pilot]] = None
) -> List[IndividualStandingRow]:
    race1 = _entries_by_pilot(results.race1)
    race2 = _entries_by_pilot(results.race2)
    pilots_by_id = pilots_by_id or {}

    rows = []
    for pilot_id in dict.fromkeys([*race1, *race2]):
        r1, r2 = race1.get(pilot_id), race2.get(pilot_id)
        number, full_name = _identity(pilot_id, r1, r2, pilots_by_id)
        points1 = r1.final_points if r1 else 0
        points2 = r2.final_points if r2 else 0
        rows.append(
            {
                "pilot_id": pilot_id,
                "number": number,
                "full_name": full_name,
                "points_race1": points1,
                "points_race2": points2,
                "total_points": points1 + points2,
            }
        )

    rows.sort(key=lambda r: (-r["total_points"], r["number"]))
    return [IndividualStandingRow(rank=idx, **row) for idx, row in enumerate(rows, start=1)]


def build_team_standings(
    results: StoredResults,
    teams: Sequence[Team],
    pilots_by_id: Optional[Mapping[str, Pilot]] = None,
) -> List[TeamStandingRow]:
    race1 = _entries_by_pilot(results.race1)
    race2 = _entries_by_pilot(results.race2)
    pilots_by_id = pilots_by_id or {}

    rows = []
    for team in teams:
        if not team.members:
            continue
        breakdown = []
        for pilot_id in team.members:
            r1, r2 = race1.get(pilot_id), race2.get(pilot_id)
            number, full_name = _identity(pilot_id, r1, r2, pilots_by_id)
            points1 = r1.final_points if r1 else 0
            points2 = r2.final_points if r2 else 0
            breakdown.append(
                TeamBreakdownRow(
                    pilot_id=pilot_id,
                    number=number,
                    full_name=full_name,
                    race1_points=points1,
                    race2_points=points2,
                    total_points=points1 + points2,
                )
            )
        rows.append(
            {
                "team_id": team.id,
                "team_name": team.name,
                "total_points": sum(item.total_points for item in breakdown),
                "breakdown": breakdown,
            }
        )

    # Stable: equal totals keep the teams' own order.
    rows.sort(key=lambda r: -r["total_points"])
    return [TeamStandingRow(rank=idx, **row) for idx, row in enumerate(rows, start=1)]
