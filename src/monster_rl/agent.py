from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional

import numpy as np

from .actions import Action, ActionDecoder, ActionOutcome, ActionSpace, ActionType
from .config import AgentConfig, monster_presets
from .errors import AgentConstructionError, ErrorRegistry, NetworkError
from .metrics import LearningMetrics
from .network import QNetwork, build_network
from .profiles import BehaviorProfile
from .replay import ReplayBuffer
from .state import MonsterType, StateEncoder, StateSnapshot

if TYPE_CHECKING:
    from .coordination import CoordinationContext

logger = logging.getLogger(__name__)


class LearningAgent(ABC):
    """Capability set shared by learned and scripted monster controllers."""

    def __init__(self, agent_id: str, monster_type: MonsterType, action_space: ActionSpace):
        self.agent_id = agent_id
        self.monster_type = monster_type
        self.action_space = action_space
        self.decoder = ActionDecoder(action_space)
        self.metrics = LearningMetrics()
        self.is_training = True
        self.episode_reward = 0.0
        self.episode_steps = 0

    @abstractmethod
    def select_action(
        self,
        state: StateSnapshot,
        is_training: Optional[bool] = None,
        context: Optional["CoordinationContext"] = None,
    ) -> int: ...

    @abstractmethod
    def store_experience(
        self,
        state: StateSnapshot,
        action: int,
        reward: float,
        next_state: StateSnapshot,
        terminal: bool,
    ) -> None: ...

    @abstractmethod
    def update_policy(self) -> Optional[float]: ...

    def is_ready_to_train(self) -> bool:
        return False

    @property
    def learns(self) -> bool:
        return False

    def set_batch_size(self, batch_size: int) -> None:
        return

    def to_profile(self) -> Optional[BehaviorProfile]:
        return None

    def apply_profile(self, profile: BehaviorProfile) -> bool:
        return False

    def decide(
        self,
        state: StateSnapshot,
        is_training: Optional[bool] = None,
        context: Optional["CoordinationContext"] = None,
    ) -> Action:
        return self.decoder.decode(self.select_action(state, is_training, context))

    def observe(self, reward: float, action: Optional[Action] = None, outcome: Optional[ActionOutcome] = None) -> None:
        self.episode_reward += reward
        self.episode_steps += 1
        self.metrics.record_step(action.action_type if action is not None else None, outcome)

    def start_episode(self) -> None:
        self.episode_reward = 0.0
        self.episode_steps = 0

    def end_episode(self, survived: bool = False) -> None:
        self.metrics.record_episode(self.episode_reward, self.episode_steps, survived)
        self.start_episode()

    def reset(self) -> None:
        self.metrics.reset()
        self.start_episode()

    @property
    def nbytes(self) -> int:
        return 0


class DQNAgent(LearningAgent):
    """
    Deep Q-learning agent with an online/target network pair and experience replay.

    Exploration is epsilon-greedy during training; epsilon decays multiplicatively
    after every policy update down to epsilon_min. The target network is refreshed
    from the online one every `target_update_frequency` updates.
    """

    def __init__(
        self,
        agent_id: str,
        config: Optional[AgentConfig] = None,
        encoder: Optional[StateEncoder] = None,
        errors: Optional[ErrorRegistry] = None,
        online: Optional[QNetwork] = None,
        target: Optional[QNetwork] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config or AgentConfig()
        super().__init__(agent_id, self.config.monster_type, self.config.action_space)
        if self.config.seed is not None:
            self.rng = np.random.default_rng(self.config.seed)
        else:
            self.rng = rng if rng is not None else np.random.default_rng()
        self.encoder = encoder or StateEncoder()
        self.errors = errors or ErrorRegistry()
        self.component = f"dqn:{agent_id}"

        in_size, out_size = self.encoder.size, self.decoder.size
        hidden = self.config.network.hidden_sizes
        self.online = online or build_network(in_size, out_size, hidden, rng=self.rng, errors=self.errors)
        self.target = target or build_network(in_size, out_size, hidden, rng=self.rng, errors=self.errors)
        self.target.copy_from(self.online)

        self.buffer = ReplayBuffer(self.config.buffer_capacity, rng=self.rng)
        self.gamma = self.config.gamma
        self.learning_rate = self.config.network.learning_rate
        self.epsilon = self.config.epsilon_start
        self.batch_size = self.config.batch_size
        self.update_count = 0
        self.profile_id: Optional[str] = None
        self.metrics = LearningMetrics(exploration_rate=self.epsilon, learning_rate=self.learning_rate)

        if self.online.is_null:
            logger.warning("Agent %s runs without a working network; it will not learn", agent_id)

    @property
    def learns(self) -> bool:
        return not self.online.is_null

    def select_action(
        self,
        state: StateSnapshot,
        is_training: Optional[bool] = None,
        context: Optional["CoordinationContext"] = None,
    ) -> int:
        training = self.is_training if is_training is None else is_training
        if self.config.mask_invalid_actions:
            mask = self.decoder.valid_mask(state)
        else:
            mask = np.ones((self.decoder.size,), dtype=bool)

        if training and self.rng.random() < self.epsilon:
            return int(self.rng.choice(np.flatnonzero(mask)))

        try:
            q_values = self.online.forward(self.encoder.encode(state))
        except (NetworkError, ValueError, FloatingPointError) as exc:
            self.errors.log_error(self.component, "select_action", exc, self.agent_id)
            return 0
        q = np.asarray(q_values, dtype=np.float64)
        if q.shape != (self.decoder.size,) or not np.all(np.isfinite(q)):
            self.errors.log_error(
                self.component,
                "select_action",
                NetworkError(f"malformed network output with shape {q.shape}"),
                self.agent_id,
            )
            return 0

        q = q.copy()
        if context is not None and context.in_group:
            q += self._coordination_bonus(context)
        q[~mask] = -np.inf
        return int(np.argmax(q))

    def _coordination_bonus(self, context: "CoordinationContext") -> np.ndarray:
        """Per-index Q-value offsets from the group context."""
        bonus = np.zeros((self.decoder.size,), dtype=np.float64)
        weight = self.config.coordination_bias
        for idx, action in enumerate(self.decoder.actions):
            if action.action_type == ActionType.COORDINATE:
                bonus[idx] += weight * context.coordination_success
            if context.suggested_action is not None and action.action_type == context.suggested_action:
                bonus[idx] += weight
        return bonus

    def store_experience(
        self,
        state: StateSnapshot,
        action: int,
        reward: float,
        next_state: StateSnapshot,
        terminal: bool,
    ) -> None:
        if not self.is_training:
            return
        self.buffer.push(self.encoder.encode(state), action, reward, self.encoder.encode(next_state), terminal)

    def is_ready_to_train(self) -> bool:
        return len(self.buffer) >= self.config.min_experiences

    def update_policy(self) -> Optional[float]:
        if not self.is_training or not self.is_ready_to_train():
            return None
        batch = self.buffer.sample_batch(self.batch_size)
        if not batch:
            return None

        losses = []
        for exp in batch:
            try:
                if exp.terminal:
                    bellman = exp.reward
                else:
                    bellman = exp.reward + self.gamma * float(np.max(self.target.forward(exp.next_state)))
                target_vec = np.array(self.online.forward(exp.state), dtype=np.float32)
                target_vec[exp.action] = bellman
                losses.append(self.online.backward(exp.state, target_vec, self.learning_rate))
            except (NetworkError, IndexError) as exc:
                self.errors.log_error(self.component, "update_policy", exc, self.agent_id)

        self.update_count += 1
        if self.update_count % self.config.target_update_frequency == 0:
            self.target.copy_from(self.online)
            logger.debug("Agent %s synced target network at update %d", self.agent_id, self.update_count)
        self.decay_epsilon()

        mean_loss = float(np.mean(losses)) if losses else 0.0
        self.metrics.record_update(mean_loss, self.epsilon)
        return mean_loss

    def decay_epsilon(self) -> float:
        self.epsilon = max(self.config.epsilon_min, self.epsilon * self.config.epsilon_decay)
        return self.epsilon

    def set_batch_size(self, batch_size: int) -> None:
        self.batch_size = max(1, int(batch_size))

    def to_profile(self) -> Optional[BehaviorProfile]:
        if self.online.is_null:
            return None
        self.metrics.exploration_rate = self.epsilon
        profile = BehaviorProfile(
            monster_type=self.monster_type,
            architecture=self.online.architecture,
            weights=self.online.get_weights(),
            biases=self.online.get_biases(),
            metrics=self.metrics.to_dict(),
        )
        if self.profile_id:
            profile.profile_id = self.profile_id
        self.profile_id = profile.profile_id
        return profile

    def apply_profile(self, profile: BehaviorProfile) -> bool:
        arch = self.online.architecture
        if self.online.is_null or arch is None or profile.architecture.to_dict() != arch.to_dict():
            logger.warning(
                "Profile %s does not fit agent %s (architecture mismatch)", profile.profile_id, self.agent_id
            )
            return False
        try:
            self.online.set_weights(profile.weights)
            self.online.set_biases(profile.biases)
        except NetworkError as exc:
            self.errors.log_error(self.component, "apply_profile", exc, profile.profile_id)
            return False
        self.target.copy_from(self.online)
        if profile.metrics:
            self.metrics = LearningMetrics.from_dict(profile.metrics)
            self.epsilon = max(self.config.epsilon_min, min(1.0, self.metrics.exploration_rate))
        self.profile_id = profile.profile_id
        return True

    def reset(self) -> None:
        super().reset()
        self.online.reset()
        self.target.copy_from(self.online)
        self.buffer.clear()
        self.epsilon = self.config.epsilon_start
        self.update_count = 0
        self.metrics.exploration_rate = self.epsilon

    @property
    def nbytes(self) -> int:
        return self.buffer.nbytes + self.online.nbytes + self.target.nbytes


@dataclass(frozen=True)
class Personality:
    aggression: float
    caution: float
    randomness: float


PERSONALITIES: Dict[MonsterType, Personality] = {
    MonsterType.MELEE: Personality(0.8, 0.2, 0.1),
    MonsterType.RANGED: Personality(0.6, 0.4, 0.2),
    MonsterType.THROWING: Personality(0.7, 0.3, 0.2),
    MonsterType.BOOMERANG: Personality(0.5, 0.5, 0.3),
    MonsterType.BOSS: Personality(0.9, 0.1, 0.1),
}


class RuleBasedAgent(LearningAgent):
    """Scripted stand-in used when learned agents cannot be built. Never learns."""

    def __init__(
        self,
        agent_id: str,
        monster_type: MonsterType,
        action_space: Optional[ActionSpace] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        super().__init__(agent_id, monster_type, action_space or ActionSpace.for_monster_type(monster_type))
        self.rng = rng if rng is not None else np.random.default_rng()
        self.personality = PERSONALITIES.get(monster_type, Personality(0.5, 0.5, 0.2))
        self.is_training = False
        self.metrics.exploration_rate = 0.0

    def select_action(
        self,
        state: StateSnapshot,
        is_training: Optional[bool] = None,
        context: Optional["CoordinationContext"] = None,
    ) -> int:
        mask = self.decoder.valid_mask(state)
        valid = np.flatnonzero(mask)
        p = self.personality
        if self.rng.random() < p.randomness:
            return int(self.rng.choice(valid))

        toward = state.direction_to_opponent()
        away = (-toward[0], -toward[1])
        if state.health_ratio < p.caution and self.action_space.can_retreat:
            idx = self.decoder.encode(Action.retreat(away))
            if idx >= 0 and mask[idx]:
                return idx
        in_range = state.distance_to_opponent <= self.action_space.max_action_range
        if in_range and self.rng.random() < p.aggression:
            idx = self.decoder.encode(Action.attack())
            if idx >= 0 and mask[idx]:
                return idx
        if self.action_space.can_move and toward != (0.0, 0.0):
            idx = self.decoder.encode(Action.move(toward))
            if idx >= 0:
                return idx
        idx = self.decoder.encode(Action.wait())
        if idx >= 0:
            return idx
        return int(valid[0])

    def store_experience(
        self,
        state: StateSnapshot,
        action: int,
        reward: float,
        next_state: StateSnapshot,
        terminal: bool,
    ) -> None:
        return

    def update_policy(self) -> Optional[float]:
        return None


AgentBuilder = Callable[[str, AgentConfig, StateEncoder, ErrorRegistry, np.random.Generator], LearningAgent]


def _build_dqn(
    agent_id: str,
    config: AgentConfig,
    encoder: StateEncoder,
    errors: ErrorRegistry,
    rng: np.random.Generator,
) -> LearningAgent:
    try:
        return DQNAgent(agent_id, config, encoder=encoder, errors=errors, rng=rng)
    except (NetworkError, ValueError, MemoryError) as exc:
        raise AgentConstructionError(f"could not build DQN agent {agent_id}: {exc}") from exc


class AgentFactory:
    """
    Builds agents per monster class and swaps in RuleBasedAgent after repeated failures.

    Every failed construction is counted against the class; once the count reaches
    `max_failures` the factory stops trying and hands out the scripted agent directly.
    """

    def __init__(
        self,
        errors: Optional[ErrorRegistry] = None,
        encoder: Optional[StateEncoder] = None,
        configs: Optional[Dict[MonsterType, AgentConfig]] = None,
        max_failures: int = 3,
        builder: Optional[AgentBuilder] = None,
        seed: Optional[int] = None,
    ):
        self.errors = errors or ErrorRegistry()
        self.encoder = encoder or StateEncoder()
        self.configs = configs or {t: p.agent for t, p in monster_presets().items()}
        self.max_failures = max_failures
        self.builder = builder or _build_dqn
        self.rng = np.random.default_rng(seed)

    @staticmethod
    def component(monster_type: MonsterType) -> str:
        return f"agent:{monster_type.label}"

    def is_disabled(self, monster_type: MonsterType) -> bool:
        return self.errors.should_disable(self.component(monster_type), self.max_failures)

    def create(self, agent_id: str, monster_type: MonsterType, config: Optional[AgentConfig] = None) -> LearningAgent:
        cfg = config or self.configs.get(monster_type) or AgentConfig(monster_type=monster_type)
        agent_rng = np.random.default_rng(int(self.rng.integers(0, 2**31 - 1)))
        if self.is_disabled(monster_type):
            logger.info("Learned agents disabled for %s; using rule-based agent", monster_type.label)
            return RuleBasedAgent(agent_id, monster_type, cfg.action_space, rng=agent_rng)
        try:
            return self.builder(agent_id, cfg, self.encoder, self.errors, agent_rng)
        except (AgentConstructionError, NetworkError, ValueError, MemoryError) as exc:
            self.errors.log_error(self.component(monster_type), "construct", exc, agent_id)
            logger.warning("Created rule-based fallback agent for %s", monster_type.label)
            return RuleBasedAgent(agent_id, monster_type, cfg.action_space, rng=agent_rng)

    def reset_failures(self, monster_type: MonsterType) -> None:
        self.errors.reset_component(self.component(monster_type))
