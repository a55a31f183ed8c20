from __future__ import annotations

import math
from dataclasses import replace
from enum import Enum
from typing import Optional, Protocol, Tuple

from .actions import Action, ActionOutcome, ActionType
from .config import RewardConfig
from .state import StateSnapshot


class RewardFunctionType(Enum):
    SPARSE = 0
    DENSE = 1
    SHAPED = 2
    CURIOSITY = 3


class RewardFunction(Protocol):
    def calculate(
        self,
        prev_state: StateSnapshot,
        action: Action,
        next_state: StateSnapshot,
        outcome: ActionOutcome,
    ) -> float: ...

    def terminal(self, final_state: StateSnapshot, episode_length: float, killed_by_opponent: bool) -> float: ...


class RewardCalculator:
    """Default reward collaborator driven by a RewardConfig."""

    def __init__(self, config: Optional[RewardConfig] = None):
        self.config = config or RewardConfig()
        if not self.config.is_valid():
            raise ValueError("RewardConfig failed validation.")

    def calculate(
        self,
        prev_state: StateSnapshot,
        action: Action,
        next_state: StateSnapshot,
        outcome: ActionOutcome,
    ) -> float:
        reward = self._action_reward(action, outcome)
        reward += self._state_reward(prev_state, next_state)
        if outcome.coordinated:
            reward += self.config.coordination_reward
        return self.shape(reward, next_state)

    def terminal(self, final_state: StateSnapshot, episode_length: float, killed_by_opponent: bool) -> float:
        cfg = self.config
        if killed_by_opponent:
            reward = cfg.death_penalty
        else:
            # log keeps long survivals bounded
            reward = cfg.survival_bonus_multiplier * math.log1p(max(0.0, episode_length))
        if final_state.opponent_health <= 0:
            reward += cfg.kill_player_reward
        return reward

    def shape(self, reward: float, state: StateSnapshot) -> float:
        if not self.config.shaped:
            return reward
        return reward + self._distance_shaping(state) + self._health_shaping(state) + self._time_shaping(state)

    def _action_reward(self, action: Action, outcome: ActionOutcome) -> float:
        cfg = self.config
        reward = 0.0
        if outcome.hit_player:
            reward += cfg.hit_reward + outcome.damage_dealt * cfg.damage_reward_multiplier
        if outcome.took_damage:
            reward -= outcome.damage_taken * cfg.damage_penalty_multiplier

        kind = action.action_type
        if kind == ActionType.ATTACK:
            reward += cfg.attack_attempt_reward
        elif kind == ActionType.SPECIAL_ATTACK:
            reward += cfg.special_attack_reward
        elif kind == ActionType.RETREAT and outcome.took_damage:
            reward += cfg.tactical_retreat_reward
        elif kind == ActionType.COORDINATE:
            reward += cfg.coordination_attempt_reward
        elif kind == ActionType.AMBUSH and outcome.hit_player:
            reward += cfg.ambush_success_reward
        return reward

    def _state_reward(self, prev_state: StateSnapshot, next_state: StateSnapshot) -> float:
        cfg = self.config
        reward = cfg.survival_reward * cfg.tick_seconds
        prev_d = prev_state.distance_to_opponent
        next_d = next_state.distance_to_opponent
        if next_d < prev_d and next_d <= cfg.optimal_distance:
            reward += cfg.position_improvement_reward
        return reward

    def _distance_shaping(self, state: StateSnapshot) -> float:
        cfg = self.config
        distance = state.distance_to_opponent
        if distance <= cfg.optimal_distance:
            return cfg.optimal_distance_reward * (1.0 - distance / cfg.optimal_distance)
        penalty = (distance - cfg.optimal_distance) / cfg.optimal_distance
        return -cfg.distance_penalty * min(penalty, 1.0)

    def _health_shaping(self, state: StateSnapshot) -> float:
        cfg = self.config
        reward = cfg.health_maintenance_reward * state.health_ratio
        if state.opponent_health / 100.0 < 0.3:
            reward += cfg.player_low_health_bonus
        return reward

    def _time_shaping(self, state: StateSnapshot) -> float:
        cfg = self.config
        if state.time_since_opponent_damage < cfg.recent_damage_window:
            recency = 1.0 - state.time_since_opponent_damage / cfg.recent_damage_window
            return cfg.recent_damage_bonus * recency
        return 0.0


class SparseRewardCalculator:
    """Pays only for hits and episode endings."""

    def __init__(self, config: Optional[RewardConfig] = None):
        self.config = config or RewardConfig()

    def calculate(
        self,
        prev_state: StateSnapshot,
        action: Action,
        next_state: StateSnapshot,
        outcome: ActionOutcome,
    ) -> float:
        if outcome.hit_player:
            return self.config.hit_reward + outcome.damage_dealt * self.config.damage_reward_multiplier
        return 0.0

    def terminal(self, final_state: StateSnapshot, episode_length: float, killed_by_opponent: bool) -> float:
        reward = self.config.death_penalty if killed_by_opponent else 0.0
        if final_state.opponent_health <= 0:
            reward += self.config.kill_player_reward
        return reward


class CuriosityRewardCalculator(SparseRewardCalculator):
    """Adds an intrinsic bonus for moving or hurting the opponent."""

    MOVEMENT_BONUS = 0.1
    HEALTH_BONUS = 0.5
    LENGTH_BONUS = 0.1

    def __init__(self, config: Optional[RewardConfig] = None):
        super().__init__(config)
        self._last: Optional[Tuple[Tuple[float, float], float]] = None

    def calculate(
        self,
        prev_state: StateSnapshot,
        action: Action,
        next_state: StateSnapshot,
        outcome: ActionOutcome,
    ) -> float:
        return super().calculate(prev_state, action, next_state, outcome) + self._intrinsic(next_state)

    def terminal(self, final_state: StateSnapshot, episode_length: float, killed_by_opponent: bool) -> float:
        self._last = None
        return super().terminal(final_state, episode_length, killed_by_opponent) + episode_length * self.LENGTH_BONUS

    def _intrinsic(self, state: StateSnapshot) -> float:
        current = (state.opponent_position, state.opponent_health)
        last, self._last = self._last, current
        if last is None:
            return 0.0
        (lx, ly), last_health = last
        moved = math.hypot(state.opponent_position[0] - lx, state.opponent_position[1] - ly)
        return moved * self.MOVEMENT_BONUS + abs(last_health - state.opponent_health) * self.HEALTH_BONUS


def create_reward_function(kind: RewardFunctionType, config: Optional[RewardConfig] = None) -> RewardFunction:
    config = config or RewardConfig()
    if kind == RewardFunctionType.SPARSE:
        return SparseRewardCalculator(config)
    if kind == RewardFunctionType.CURIOSITY:
        return CuriosityRewardCalculator(config)
    if kind == RewardFunctionType.SHAPED:
        return RewardCalculator(replace(config, shaped=True))
    return RewardCalculator(config)
