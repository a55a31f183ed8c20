from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np

Vec2 = Tuple[float, float]


class MonsterType(Enum):
    NONE = 0
    MELEE = 1
    RANGED = 2
    THROWING = 3
    BOOMERANG = 4
    BOSS = 5

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, label: str) -> "MonsterType":
        return cls[label.upper()]

    @classmethod
    def playable(cls) -> Tuple["MonsterType", ...]:
        return tuple(t for t in cls if t is not cls.NONE)


class ObjectType(Enum):
    NONE = 0
    EXP_GEM = 1
    COIN = 2
    CHEST = 3
    POWER_UP = 4


@dataclass(frozen=True)
class NearbyAlly:
    position: Vec2
    monster_type: MonsterType = MonsterType.NONE
    health: float = 0.0
    current_action: int = 0


@dataclass(frozen=True)
class ObjectOfInterest:
    position: Vec2
    object_type: ObjectType = ObjectType.NONE
    value: float = 0.0


@dataclass(frozen=True)
class StateSnapshot:
    """What one entity sees at a decision point. Built fresh every time."""

    position: Vec2 = (0.0, 0.0)
    health: float = 100.0
    last_action: int = 0
    time_since_last_action: float = 0.0
    time_alive: float = 0.0
    opponent_position: Vec2 = (0.0, 0.0)
    opponent_velocity: Vec2 = (0.0, 0.0)
    opponent_health: float = 100.0
    time_since_opponent_damage: float = 0.0
    allies: Tuple[NearbyAlly, ...] = field(default_factory=tuple)
    objects: Tuple[ObjectOfInterest, ...] = field(default_factory=tuple)
    max_health: float = 100.0

    @property
    def distance_to_opponent(self) -> float:
        dx = self.opponent_position[0] - self.position[0]
        dy = self.opponent_position[1] - self.position[1]
        return math.hypot(dx, dy)

    @property
    def health_ratio(self) -> float:
        if self.max_health <= 0:
            return 0.0
        return max(0.0, min(1.0, self.health / self.max_health))

    def direction_to_opponent(self) -> Vec2:
        dx = self.opponent_position[0] - self.position[0]
        dy = self.opponent_position[1] - self.position[1]
        norm = math.hypot(dx, dy)
        if norm == 0:
            return (0.0, 0.0)
        return (dx / norm, dy / norm)

    def nearest_ally(self) -> Optional[NearbyAlly]:
        if not self.allies:
            return None
        return min(
            self.allies,
            key=lambda a: math.hypot(a.position[0] - self.position[0], a.position[1] - self.position[1]),
        )


@dataclass
class EncoderConfig:
    max_allies: int = 5
    max_objects: int = 10
    position_scale: float = 50.0
    velocity_scale: float = 20.0
    health_scale: float = 200.0
    time_scale: float = 300.0
    action_scale: float = 15.0
    monster_type_scale: float = 5.0
    object_type_scale: float = 4.0
    object_value_scale: float = 100.0


SELF_FEATURES = 6
OPPONENT_FEATURES = 6
ALLY_FEATURES = 5
OBJECT_FEATURES = 4


class StateEncoder:
    """
    Flatten a StateSnapshot into a fixed-length float32 vector.

    Layout:
      - self: x, y, health, last action, time since action, time alive
      - opponent: x, y, vx, vy, health, time since it last took damage
      - allies (max_allies slots): x, y, type, health, current action
      - objects (max_objects slots): x, y, type, value
    Empty slots stay zero. Positions and velocities clamp to [-1, 1], the rest to [0, 1].
    """

    def __init__(self, config: Optional[EncoderConfig] = None):
        self.config = config or EncoderConfig()

    @property
    def size(self) -> int:
        cfg = self.config
        return (
            SELF_FEATURES
            + OPPONENT_FEATURES
            + cfg.max_allies * ALLY_FEATURES
            + cfg.max_objects * OBJECT_FEATURES
        )

    def encode(self, state: StateSnapshot) -> np.ndarray:
        cfg = self.config
        out = np.zeros((self.size,), dtype=np.float32)
        i = 0

        out[i] = _signed(state.position[0] / cfg.position_scale)
        out[i + 1] = _signed(state.position[1] / cfg.position_scale)
        out[i + 2] = _unit(state.health / cfg.health_scale)
        out[i + 3] = _unit(state.last_action / cfg.action_scale)
        out[i + 4] = _unit(state.time_since_last_action / cfg.time_scale)
        out[i + 5] = _unit(state.time_alive / cfg.time_scale)
        i += SELF_FEATURES

        out[i] = _signed(state.opponent_position[0] / cfg.position_scale)
        out[i + 1] = _signed(state.opponent_position[1] / cfg.position_scale)
        out[i + 2] = _signed(state.opponent_velocity[0] / cfg.velocity_scale)
        out[i + 3] = _signed(state.opponent_velocity[1] / cfg.velocity_scale)
        out[i + 4] = _unit(state.opponent_health / cfg.health_scale)
        out[i + 5] = _unit(state.time_since_opponent_damage / cfg.time_scale)
        i += OPPONENT_FEATURES

        for slot in range(cfg.max_allies):
            if slot < len(state.allies):
                ally = state.allies[slot]
                out[i] = _signed(ally.position[0] / cfg.position_scale)
                out[i + 1] = _signed(ally.position[1] / cfg.position_scale)
                out[i + 2] = _unit(ally.monster_type.value / cfg.monster_type_scale)
                out[i + 3] = _unit(ally.health / cfg.health_scale)
                out[i + 4] = _unit(ally.current_action / cfg.action_scale)
            i += ALLY_FEATURES

        for slot in range(cfg.max_objects):
            if slot < len(state.objects):
                obj = state.objects[slot]
                out[i] = _signed(obj.position[0] / cfg.position_scale)
                out[i + 1] = _signed(obj.position[1] / cfg.position_scale)
                out[i + 2] = _unit(obj.object_type.value / cfg.object_type_scale)
                out[i + 3] = _unit(obj.value / cfg.object_value_scale)
            i += OBJECT_FEATURES
        return out


def _signed(v: float) -> float:
    if not math.isfinite(v):
        return 0.0
    return max(-1.0, min(1.0, v))


def _unit(v: float) -> float:
    if not math.isfinite(v):
        return 0.0
    return max(0.0, min(1.0, v))
