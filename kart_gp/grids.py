"""
Race grid generation.

Which group a pilot lands in follows the configured split mode; the order inside
each category of a group is always by qualifying time. Start positions alternate
between the two categories, the `parity390` setting deciding who gets the odd
slots.
"""

from __future__ import annotations

import logging
import math
import random
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from kart_gp.domain import CombinedStanding, GridConfig, GridPilot, Group, Pilot, Race, RaceGrid
from kart_gp.errors import ConfigurationError
from kart_gp.rules import (
    CATEGORY_270,
    CATEGORY_390,
    KART_PRIORITY,
    LEVEL_PRIORITY,
    add_minutes,
    chunk,
    fisher_yates_shuffle,
    interleave_round_robin,
    start_positions,
)
from kart_gp.teams import NO_TEAM


logger = logging.getLogger(__name__)


def parse_grid_config(data: Any) -> GridConfig:
    if isinstance(data, GridConfig):
        return data
    try:
        return GridConfig.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ConfigurationError("Invalid grid configuration", errors) from exc


def order_for_split(
    selected: Sequence[CombinedStanding],
    split_mode: str,
    pilots_by_id: Mapping[str, Pilot],
    team_by_pilot: Mapping[str, str],
    rng: Optional[random.Random] = None,
) -> List[CombinedStanding]:
    if split_mode == "classification":
        return list(selected)
    if split_mode == "random":
        return fisher_yates_shuffle(selected, rng)
    if split_mode == "level":
        return sorted(
            selected,
            key=lambda s: (LEVEL_PRIORITY.get(_level(pilots_by_id, s.pilot_id), len(LEVEL_PRIORITY)), s.position),
        )
    if split_mode == "kart":
        return sorted(
            selected,
            key=lambda s: (KART_PRIORITY.get(_kart(pilots_by_id, s.pilot_id), len(KART_PRIORITY)), s.position),
        )
    if split_mode == "team":
        by_team: Dict[str, List[CombinedStanding]] = defaultdict(list)
        unassigned: List[CombinedStanding] = []
        for standing in selected:
            team_name = team_by_pilot.get(standing.pilot_id)
            if team_name is None:
                unassigned.append(standing)
            else:
                by_team[team_name].append(standing)
        buckets = [by_team[name] for name in sorted(by_team)]
        if unassigned:
            buckets.append(unassigned)
        return interleave_round_robin(buckets)
    raise ConfigurationError(f"Unknown split mode: {split_mode}", [f"splitMode: {split_mode}"])


def _kart(pilots_by_id: Mapping[str, Pilot], pilot_id: str) -> Optional[str]:
    pilot = pilots_by_id.get(pilot_id)
    return pilot.kart if pilot else None


def _level(pilots_by_id: Mapping[str, Pilot], pilot_id: str) -> Optional[str]:
    pilot = pilots_by_id.get(pilot_id)
    return pilot.level if pilot else None


def build_group(
    index: int,
    members: Sequence[CombinedStanding],
    pilots_by_id: Mapping[str, Pilot],
    team_by_pilot: Mapping[str, str],
    qualy_time_by_pilot: Mapping[str, float],
    parity390: str,
) -> Group:
    def by_qualy(standing: CombinedStanding):
        return (qualy_time_by_pilot.get(standing.pilot_id, math.inf), standing.position)

    per_category: Dict[str, List[CombinedStanding]] = {CATEGORY_390: [], CATEGORY_270: []}
    for standing in members:
        kart = _kart(pilots_by_id, standing.pilot_id)
        if kart not in per_category:
            logger.warning("pilot %s has no known category, left out of the grid", standing.pilot_id)
            continue
        per_category[kart].append(standing)

    odd_category = CATEGORY_390 if parity390 == "odd" else CATEGORY_270
    lists = {}
    for category, standings in per_category.items():
        ordered = sorted(standings, key=by_qualy)
        first = 1 if category == odd_category else 2
        lists[category] = [
            GridPilot(
                pilot_id=s.pilot_id,
                number=s.number,
                full_name=s.full_name,
                team_name=team_by_pilot.get(s.pilot_id, NO_TEAM),
                category=category,
                classification_position=s.position,
                qualy_time=qualy_time_by_pilot.get(s.pilot_id),
                start_position=position,
            )
            for s, position in zip(ordered, start_positions(len(ordered), first))
        ]

    return Group(index=index, category390=lists[CATEGORY_390], category270=lists[CATEGORY_270])


def build_race_grid(
    standings: Sequence[CombinedStanding],
    pilots_by_id: Mapping[str, Pilot],
    team_by_pilot: Mapping[str, str],
    qualy_time_by_pilot: Mapping[str, float],
    config: GridConfig,
    rng: Optional[random.Random] = None,
    generated_at: Optional[datetime] = None,
) -> RaceGrid:
    selected = list(standings[: config.capacity])
    if len(standings) > len(selected):
        logger.debug(
            "grid capacity %s: dropped %s pilots below the cut",
            config.capacity,
            len(standings) - len(selected),
        )

    races: List[Race] = []
    for race_idx in range(config.race_count):
        ordered = order_for_split(selected, config.split_mode, pilots_by_id, team_by_pilot, rng)
        chunks = chunk(ordered, config.pilots_per_group, config.groups_per_race)
        groups = [
            build_group(
                group_idx,
                members,
                pilots_by_id,
                team_by_pilot,
                qualy_time_by_pilot,
                config.parity390,
            )
            for group_idx, members in enumerate(chunks, start=1)
        ]
        races.append(
            Race(
                index=race_idx + 1,
                key=f"race{race_idx + 1}",
                start_time=add_minutes(config.first_start_time, race_idx * config.interval_minutes),
                groups=groups,
            )
        )

    return RaceGrid(
        races=races,
        config=config,
        generated_at=generated_at or datetime.now(timezone.utc),
    )
