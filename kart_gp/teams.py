from __future__ import annotations

import math
from typing import Dict, List, Sequence

from kart_gp.domain import Team


NO_TEAM = "Unassigned"


def create_team_placeholders(count: int) -> List[Team]:
    return [Team(id=f"team-{idx}", name=f"Team {idx}") for idx in range(1, count + 1)]


def build_teams_by_pattern(ordered_pilot_ids: Sequence[str], teams_count: int) -> List[Team]:
    """
    Distribute standings-ordered pilots into teams.

    The standings are split into two halves (first half gets the odd one out).
    While every half still has four pilots per team to offer, team k takes the
    pilots at positions 2k+1, 2k+2 from the front and the two mirrored positions
    from the back of each half. Whatever is left is dealt one by one, pilot i to
    team i % teams.
    """
    team_count = max(teams_count, 1)
    members: List[List[str]] = [[] for _ in range(team_count)]

    total = len(ordered_pilot_ids)
    half_size = math.ceil(total / 2)
    halves = [list(ordered_pilot_ids[:half_size]), list(ordered_pilot_ids[half_size:])]
    pattern_teams = min(team_count, half_size // 4)

    for idx in range(pattern_teams):
        front = 1 + idx * 2
        for half in halves:
            back = len(half) - idx * 2
            for position in (front, front + 1, back - 1, back):
                if not 1 <= position <= len(half):
                    continue
                pilot_id = half[position - 1]
                if pilot_id not in members[idx]:
                    members[idx].append(pilot_id)

    used = {pilot_id for team in members for pilot_id in team}
    remaining = [pilot_id for pilot_id in ordered_pilot_ids if pilot_id not in used]
    for idx, pilot_id in enumerate(remaining):
        team = members[idx % team_count]
        if pilot_id not in team:
            team.append(pilot_id)

    return [
        placeholder.model_copy(update={"members": members[idx]})
        for idx, placeholder in enumerate(create_team_placeholders(team_count))
    ]


def team_by_pilot(teams: Sequence[Team]) -> Dict[str, str]:
    """Pilot id -> team name. A pilot listed in several teams belongs to the first."""
    mapping: Dict[str, str] = {}
    for team in teams:
        for pilot_id in team.members:
            mapping.setdefault(pilot_id, team.name)
    return mapping
