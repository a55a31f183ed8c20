from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, Optional

from .actions import ActionOutcome, ActionType

REWARD_SMOOTHING = 0.01
RECENT_WINDOW = 100
DISTANCE_SMOOTHING = 0.1


@dataclass
class LearningMetrics:
    """Running learning statistics owned by a single agent."""

    episode_count: int = 0
    average_reward: float = 0.0
    best_reward: float = float("-inf")
    recent_average_reward: float = 0.0
    exploration_rate: float = 1.0
    learning_rate: float = 0.001
    total_steps: int = 0
    loss: float = 0.0
    average_episode_length: float = 0.0
    damage_dealt: float = 0.0
    damage_taken: float = 0.0
    survival_rate: float = 0.0
    coordinated_actions: int = 0
    successful_attacks: int = 0
    retreat_count: int = 0
    average_distance_to_player: float = 0.0
    update_count: int = 0
    last_updated: float = field(default_factory=time.time)

    def record_episode(self, total_reward: float, length: int = 0, survived: bool = False) -> None:
        self.episode_count += 1
        n = self.episode_count
        if n == 1:
            self.average_reward = total_reward
            self.recent_average_reward = total_reward
            self.average_episode_length = float(length)
            self.survival_rate = 1.0 if survived else 0.0
        else:
            self.average_reward += REWARD_SMOOTHING * (total_reward - self.average_reward)
            alpha = 1.0 / min(n, RECENT_WINDOW)
            self.recent_average_reward += alpha * (total_reward - self.recent_average_reward)
            self.average_episode_length += alpha * (length - self.average_episode_length)
            self.survival_rate += alpha * ((1.0 if survived else 0.0) - self.survival_rate)
        self.best_reward = max(self.best_reward, total_reward)
        self.last_updated = time.time()

    def record_step(self, action_type: Optional[ActionType] = None, outcome: Optional[ActionOutcome] = None) -> None:
        self.total_steps += 1
        if action_type == ActionType.RETREAT:
            self.retreat_count += 1
        if outcome is None:
            return
        if outcome.hit_player:
            self.successful_attacks += 1
        self.damage_dealt += outcome.damage_dealt
        if outcome.took_damage:
            self.damage_taken += outcome.damage_taken
        if outcome.coordinated:
            self.coordinated_actions += 1
        if self.total_steps == 1:
            self.average_distance_to_player = outcome.distance_to_player
        else:
            self.average_distance_to_player += DISTANCE_SMOOTHING * (
                outcome.distance_to_player - self.average_distance_to_player
            )

    def record_update(self, loss: float, exploration_rate: float) -> None:
        self.update_count += 1
        self.loss = float(loss)
        self.exploration_rate = float(exploration_rate)
        self.last_updated = time.time()

    def has_converged(
        self,
        min_episodes: int = 100,
        reward_epsilon: float = 0.1,
        exploration_floor: float = 0.1,
    ) -> bool:
        return (
            self.episode_count > min_episodes
            and abs(self.average_reward - self.recent_average_reward) < reward_epsilon
            and self.exploration_rate < exploration_floor
        )

    def progress(self, target_episodes: int = 1000) -> float:
        """Blend of episode count, reward level and remaining exploration, in [0, 1]."""
        episode_part = min(1.0, self.episode_count / float(target_episodes))
        reward_part = max(0.0, min(1.0, self.average_reward / 100.0))
        explore_part = 1.0 - max(0.0, min(1.0, self.exploration_rate))
        return (episode_part + reward_part + explore_part) / 3.0

    @property
    def attack_success_rate(self) -> float:
        return self.successful_attacks / self.total_steps if self.total_steps else 0.0

    def reset(self) -> None:
        fresh = LearningMetrics(learning_rate=self.learning_rate)
        for f in fields(self):
            setattr(self, f.name, getattr(fresh, f.name))

    def to_dict(self) -> Dict:
        payload = asdict(self)
        if payload["best_reward"] == float("-inf"):
            payload["best_reward"] = None
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "LearningMetrics":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in payload.items() if k in known}
        if data.get("best_reward") is None:
            data["best_reward"] = float("-inf")
        return cls(**data)
