from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .state import MonsterType, StateSnapshot, Vec2


class ActionType(Enum):
    MOVE = 0
    ATTACK = 1
    RETREAT = 2
    COORDINATE = 3
    WAIT = 4
    SPECIAL_ATTACK = 5
    DEFENSIVE_STANCE = 6
    AMBUSH = 7


@dataclass(frozen=True)
class Action:
    action_type: ActionType
    direction: Vec2 = (0.0, 0.0)
    intensity: float = 1.0
    target_index: int = -1

    @classmethod
    def move(cls, direction: Vec2) -> "Action":
        return cls(ActionType.MOVE, direction=direction)

    @classmethod
    def attack(cls, intensity: float = 1.0) -> "Action":
        return cls(ActionType.ATTACK, intensity=intensity)

    @classmethod
    def retreat(cls, direction: Vec2) -> "Action":
        return cls(ActionType.RETREAT, direction=direction)

    @classmethod
    def coordinate(cls, target_index: int = 0) -> "Action":
        return cls(ActionType.COORDINATE, target_index=target_index)

    @classmethod
    def wait(cls) -> "Action":
        return cls(ActionType.WAIT, intensity=0.0)

    @classmethod
    def special_attack(cls, intensity: float = 1.5) -> "Action":
        return cls(ActionType.SPECIAL_ATTACK, intensity=intensity)

    @classmethod
    def defensive_stance(cls) -> "Action":
        return cls(ActionType.DEFENSIVE_STANCE, intensity=0.5)

    @classmethod
    def ambush(cls, intensity: float = 2.0) -> "Action":
        return cls(ActionType.AMBUSH, intensity=intensity)


@dataclass
class ActionSpace:
    can_move: bool = True
    movement_directions: int = 8
    can_attack: bool = True
    can_special_attack: bool = False
    can_defend: bool = False
    can_retreat: bool = True
    can_coordinate: bool = False
    can_ambush: bool = False
    can_wait: bool = True
    min_action_interval: float = 0.1
    max_action_range: float = 5.0

    def __post_init__(self) -> None:
        if (self.can_move or self.can_retreat) and self.movement_directions < 1:
            raise ValueError("movement_directions must be >= 1 when move or retreat is enabled.")
        if self.max_action_range <= 0:
            raise ValueError("max_action_range must be positive.")

    @property
    def action_count(self) -> int:
        count = 0
        if self.can_move:
            count += self.movement_directions + 1  # +1 for stop
        if self.can_attack:
            count += 1
        if self.can_special_attack:
            count += 1
        if self.can_defend:
            count += 1
        if self.can_retreat:
            count += self.movement_directions
        if self.can_coordinate:
            count += 1
        if self.can_ambush:
            count += 1
        if self.can_wait:
            count += 1
        return count

    def available_types(self) -> List[ActionType]:
        types: List[ActionType] = []
        if self.can_move:
            types.append(ActionType.MOVE)
        if self.can_attack:
            types.append(ActionType.ATTACK)
        if self.can_special_attack:
            types.append(ActionType.SPECIAL_ATTACK)
        if self.can_defend:
            types.append(ActionType.DEFENSIVE_STANCE)
        if self.can_retreat:
            types.append(ActionType.RETREAT)
        if self.can_coordinate:
            types.append(ActionType.COORDINATE)
        if self.can_ambush:
            types.append(ActionType.AMBUSH)
        if self.can_wait:
            types.append(ActionType.WAIT)
        return types

    @classmethod
    def default(cls) -> "ActionSpace":
        return cls()

    @classmethod
    def advanced(cls) -> "ActionSpace":
        return cls(
            can_special_attack=True,
            can_defend=True,
            can_coordinate=True,
            can_ambush=True,
            min_action_interval=0.05,
            max_action_range=10.0,
        )

    @classmethod
    def for_monster_type(cls, monster_type: MonsterType) -> "ActionSpace":
        """Class-specific action sets; unknown classes get the default space."""
        if monster_type == MonsterType.RANGED:
            return cls(can_special_attack=True, can_ambush=True, min_action_interval=0.2, max_action_range=8.0)
        if monster_type == MonsterType.THROWING:
            return cls(can_coordinate=True, min_action_interval=0.15, max_action_range=6.0)
        if monster_type == MonsterType.BOOMERANG:
            return cls(
                can_special_attack=True,
                can_defend=True,
                can_ambush=True,
                min_action_interval=0.3,
                max_action_range=7.0,
            )
        if monster_type == MonsterType.BOSS:
            return cls.advanced()
        return cls.default()


@dataclass(frozen=True)
class ActionOutcome:
    hit_player: bool = False
    damage_dealt: float = 0.0
    took_damage: bool = False
    damage_taken: float = 0.0
    coordinated: bool = False
    distance_to_player: float = 0.0


def _direction(i: int, count: int) -> Vec2:
    angle = math.radians(i * 360.0 / count)
    return (round(math.cos(angle), 6), round(math.sin(angle), 6))


class ActionDecoder:
    """
    Maps discrete network indices to Actions for one ActionSpace.

    Index layout follows the enabled flags in this order: move directions then a
    stop (a move with zero direction), attack, special attack, defensive stance,
    retreat directions, coordinate, ambush, wait.
    """

    def __init__(self, action_space: ActionSpace):
        self.action_space = action_space
        self.actions: List[Action] = self._build()
        assert len(self.actions) == action_space.action_count

    def _build(self) -> List[Action]:
        space = self.action_space
        actions: List[Action] = []
        if space.can_move:
            for i in range(space.movement_directions):
                actions.append(Action.move(_direction(i, space.movement_directions)))
            actions.append(Action.move((0.0, 0.0)))
        if space.can_attack:
            actions.append(Action.attack())
        if space.can_special_attack:
            actions.append(Action.special_attack())
        if space.can_defend:
            actions.append(Action.defensive_stance())
        if space.can_retreat:
            for i in range(space.movement_directions):
                actions.append(Action.retreat(_direction(i, space.movement_directions)))
        if space.can_coordinate:
            actions.append(Action.coordinate(0))
        if space.can_ambush:
            actions.append(Action.ambush())
        if space.can_wait:
            actions.append(Action.wait())
        return actions

    @property
    def size(self) -> int:
        return len(self.actions)

    def decode(self, index: int) -> Action:
        if index < 0 or index >= len(self.actions):
            return Action.wait()
        return self.actions[index]

    def encode(self, action: Action) -> int:
        """Index of the closest matching action (by type, then direction); exact directions win."""
        best_idx = -1
        best_score = -math.inf
        for idx, candidate in enumerate(self.actions):
            if candidate.action_type != action.action_type:
                continue
            if candidate.direction == action.direction:
                return idx
            score = candidate.direction[0] * action.direction[0] + candidate.direction[1] * action.direction[1]
            if score > best_score:
                best_idx, best_score = idx, score
        return best_idx

    def is_valid(self, action: Action, state: StateSnapshot) -> bool:
        rng = self.action_space.max_action_range
        distance = state.distance_to_opponent
        health = state.health_ratio
        kind = action.action_type
        if kind in (ActionType.MOVE, ActionType.WAIT):
            return True
        if kind in (ActionType.ATTACK, ActionType.SPECIAL_ATTACK):
            return distance <= rng
        if kind == ActionType.DEFENSIVE_STANCE:
            return distance <= rng * 1.5 or health < 0.5
        if kind == ActionType.RETREAT:
            return distance <= rng * 0.5 or health < 0.3
        if kind == ActionType.COORDINATE:
            return len(state.allies) > 0
        if kind == ActionType.AMBUSH:
            return state.time_alive > 2.0 and rng * 0.5 < distance <= rng * 2.0
        return False

    def valid_mask(self, state: StateSnapshot) -> np.ndarray:
        mask = np.array([self.is_valid(a, state) for a in self.actions], dtype=bool)
        if not mask.any():
            mask[:] = True
        return mask

    def select(self, q_values: Sequence[float], state: Optional[StateSnapshot] = None) -> Tuple[int, Action]:
        """Masked argmax over q_values; first maximum wins."""
        q = np.asarray(q_values, dtype=np.float64)
        if q.shape != (self.size,) or not np.all(np.isfinite(q)):
            return 0, self.decode(0)
        if state is not None:
            q = np.where(self.valid_mask(state), q, -np.inf)
        idx = int(np.argmax(q))
        return idx, self.decode(idx)
