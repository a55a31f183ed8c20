from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .sandbox import ArenaConfig
from .state import MonsterType


@dataclass
class ScenarioSpec:
    name: str
    description: str
    arena: ArenaConfig


def scenario_presets() -> Dict[str, ScenarioSpec]:
    """Return predefined arena setups, from a lone brawler to a mixed pack."""
    return {
        "melee_duel": ScenarioSpec(
            name="melee_duel",
            description="One melee monster against the player; focus on approach and attack timing.",
            arena=ArenaConfig(
                height=12,
                width=12,
                monsters={MonsterType.MELEE: 1},
                max_steps=150,
                pickups=2,
            ),
        ),
        "melee_pack": ScenarioSpec(
            name="melee_pack",
            description="Three melee monsters; grouping forms flank and surround tactics.",
            arena=ArenaConfig(
                height=16,
                width=16,
                monsters={MonsterType.MELEE: 3},
                max_steps=200,
            ),
        ),
        "mixed_squad": ScenarioSpec(
            name="mixed_squad",
            description="Melee, ranged and throwing monsters together; per-class learning side by side.",
            arena=ArenaConfig(
                height=20,
                width=20,
                monsters={MonsterType.MELEE: 2, MonsterType.RANGED: 2, MonsterType.THROWING: 2},
                max_steps=250,
                player_health=150.0,
            ),
        ),
        "boss_fight": ScenarioSpec(
            name="boss_fight",
            description="A single boss with a larger network and the full action space.",
            arena=ArenaConfig(
                height=16,
                width=16,
                monsters={MonsterType.BOSS: 1},
                max_steps=300,
                player_health=200.0,
                player_damage=4.0,
            ),
        ),
    }
