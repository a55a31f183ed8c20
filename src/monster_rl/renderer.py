from __future__ import annotations

from typing import Tuple

import numpy as np

from .sandbox import ArenaWorld, TerrainType
from .state import MonsterType, ObjectType

MONSTER_CHARS = {
    MonsterType.MELEE: "m",
    MonsterType.RANGED: "r",
    MonsterType.THROWING: "t",
    MonsterType.BOOMERANG: "b",
    MonsterType.BOSS: "B",
}
OBJECT_CHARS = {
    ObjectType.EXP_GEM: "*",
    ObjectType.COIN: "$",
    ObjectType.CHEST: "c",
    ObjectType.POWER_UP: "+",
}


def _cell(world: ArenaWorld, x: float, y: float) -> Tuple[int, int]:
    r = min(max(int(round(y)), 0), world.height - 1)
    c = min(max(int(round(x)), 0), world.width - 1)
    return r, c


def render_arena(world: ArenaWorld) -> str:
    """Return an ASCII rendering of the arena."""
    display = [
        ["#" if world.terrain[r, c] == TerrainType.WALL else "." for c in range(world.width)]
        for r in range(world.height)
    ]

    for (r, c), pickup in world.pickups.items():
        display[r][c] = OBJECT_CHARS.get(pickup.object_type, "?")

    for monster in world.living():
        r, c = _cell(world, monster.x, monster.y)
        display[r][c] = MONSTER_CHARS.get(monster.monster_type, "M")

    if world.player is not None:
        r, c = _cell(world, world.player.x, world.player.y)
        display[r][c] = "@" if world.player.health > 0 else "x"

    return "\n".join("".join(row) for row in display)


def _type_color(monster_type: MonsterType) -> Tuple[int, int, int]:
    """Deterministic color per monster class."""
    h = (monster_type.value * 53) % 256
    return ((h * 37) % 256, (h * 67) % 256, (h * 97) % 256)


def render_arena_image(world: ArenaWorld, cell_size: int = 16) -> np.ndarray:
    """Render the arena to an RGB image array."""
    h, w = world.height, world.width
    img = np.zeros((h * cell_size, w * cell_size, 3), dtype=np.uint8)

    terrain_colors = {
        TerrainType.FLOOR: (230, 230, 230),
        TerrainType.WALL: (40, 40, 40),
    }
    object_colors = {
        ObjectType.EXP_GEM: (80, 180, 80),
        ObjectType.COIN: (255, 215, 0),
        ObjectType.CHEST: (160, 110, 60),
        ObjectType.POWER_UP: (200, 80, 200),
    }

    def fill_cell(r: int, c: int, color: Tuple[int, int, int]):
        img[r * cell_size : (r + 1) * cell_size, c * cell_size : (c + 1) * cell_size, :] = color

    for r in range(h):
        for c in range(w):
            fill_cell(r, c, terrain_colors.get(world.terrain[r, c], (200, 200, 200)))

    for (r, c), pickup in world.pickups.items():
        fill_cell(r, c, object_colors.get(pickup.object_type, (120, 120, 120)))

    for monster in world.living():
        r, c = _cell(world, monster.x, monster.y)
        fill_cell(r, c, _type_color(monster.monster_type))
        # Health bar along the top edge of the cell.
        filled = int(round(cell_size * monster.health / max(monster.max_health, 1e-6)))
        span = max(2, cell_size // 5)
        img[r * cell_size : r * cell_size + span, c * cell_size : c * cell_size + filled, :] = (220, 60, 60)

    if world.player is not None:
        r, c = _cell(world, world.player.x, world.player.y)
        fill_cell(r, c, (70, 130, 180) if world.player.health > 0 else (0, 0, 0))

    return img
