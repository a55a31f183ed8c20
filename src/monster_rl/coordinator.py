from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple
from collections import deque

from .actions import Action, ActionOutcome, ActionType
from .agent import LearningAgent
from .config import SchedulerConfig
from .coordination import CoordinationLayer, PositionProvider
from .errors import ErrorRegistry, MonsterRLError
from .logging_utils import JsonlWriter
from .performance import DegradationSettings
from .profiles import ProfileStore
from .rewards import RewardCalculator, RewardFunction
from .state import MonsterType, StateSnapshot

logger = logging.getLogger(__name__)


class TrainingMode(Enum):
    TRAINING = 0
    INFERENCE = 1
    MIXED = 2


@dataclass
class TickReport:
    now: float
    maintained: bool = False
    actions: Dict[str, Action] = field(default_factory=dict)
    action_indices: Dict[str, int] = field(default_factory=dict)
    rewards: Dict[str, float] = field(default_factory=dict)
    updated: List[str] = field(default_factory=list)
    losses: Dict[str, float] = field(default_factory=dict)
    deferred: int = 0
    elapsed_ms: float = 0.0
    saved: bool = False


@dataclass
class AgentEntry:
    agent: LearningAgent
    position_provider: Optional[PositionProvider] = None


@dataclass
class PendingOutcome:
    agent_id: str
    prev_state: StateSnapshot
    action: int
    next_state: StateSnapshot
    outcome: ActionOutcome
    terminal: bool


class TrainingCoordinator:
    """
    Owns the agent registry and drives the per-tick learning loop.

    A tick runs, in order: coordination maintenance, action selection for the
    agents that need a decision, storage of outcomes reported since the last
    tick, then a bounded round-robin slice of policy updates. The slice visits
    at most `max_agents_per_frame` agents and stops early once the frame budget
    is spent; the cursor moves past the last visited agent so whoever was
    skipped goes first next time.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        coordination: Optional[CoordinationLayer] = None,
        store: Optional[ProfileStore] = None,
        reward_fn: Optional[RewardFunction] = None,
        errors: Optional[ErrorRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
        timer: Callable[[], float] = time.perf_counter,
        log_path: Optional[str] = None,
    ):
        self.config = config or SchedulerConfig()
        self.errors = errors or ErrorRegistry()
        self.clock = clock
        self.timer = timer
        self.coordination = coordination or CoordinationLayer(clock=clock)
        if self.coordination.metrics_source is None:
            self.coordination.metrics_source = self._metrics_of
        self.store = store
        self.reward_fn: RewardFunction = reward_fn or RewardCalculator()
        self.reward_functions: Dict[MonsterType, RewardFunction] = {}
        self.log = JsonlWriter(log_path)

        self.mode = TrainingMode.TRAINING
        self.entries: Dict[str, AgentEntry] = {}
        self.cursor = 0
        self.batch_size: Optional[int] = None
        self.max_agents_per_frame = self.config.max_agents_per_frame
        self.update_interval = self.config.update_interval
        self.pending: Deque[PendingOutcome] = deque()
        self.on_mode_changed: List[Callable[[TrainingMode, TrainingMode], None]] = []
        self._last_update: Optional[float] = None
        self._last_save: Optional[float] = None
        self._session_mark = clock()
        self.closed = False

    def _metrics_of(self, agent_id: str):
        entry = self.entries.get(agent_id)
        return entry.agent.metrics if entry is not None else None

    @property
    def agents(self) -> List[LearningAgent]:
        return [e.agent for e in self.entries.values()]

    def get(self, agent_id: str) -> Optional[LearningAgent]:
        entry = self.entries.get(agent_id)
        return entry.agent if entry is not None else None

    def set_reward_function(self, monster_type: MonsterType, reward_fn: RewardFunction) -> None:
        self.reward_functions[monster_type] = reward_fn

    def _reward_fn_for(self, agent: LearningAgent) -> RewardFunction:
        return self.reward_functions.get(agent.monster_type, self.reward_fn)

    def set_mode(self, mode: TrainingMode) -> None:
        """Persist class profiles, switch modes, then restore every agent from its own snapshot."""
        if mode == self.mode:
            return
        if self.store is not None:
            self.save_all()
        snapshots = {}
        if self.config.reload_on_mode_change:
            snapshots = {agent.agent_id: agent.to_profile() for agent in self.agents if agent.learns}
        previous, self.mode = self.mode, mode
        for agent in self.agents:
            agent.is_training = agent.learns and mode != TrainingMode.INFERENCE
        for agent_id, profile in snapshots.items():
            if profile is not None and not self.entries[agent_id].agent.apply_profile(profile):
                logger.warning("Could not restore agent %s after mode change", agent_id)
        logger.info("Training mode %s -> %s", previous.name, mode.name)
        for callback in self.on_mode_changed:
            callback(previous, mode)

    def should_train(self, agent: LearningAgent) -> bool:
        if not agent.learns or self.mode == TrainingMode.INFERENCE:
            return False
        if self.mode == TrainingMode.TRAINING:
            return True
        cfg = self.config
        return not agent.metrics.has_converged(
            cfg.convergence_min_episodes,
            cfg.convergence_reward_epsilon,
            cfg.convergence_exploration_floor,
        )

    def register(
        self,
        agent: LearningAgent,
        position_provider: Optional[PositionProvider] = None,
        load_profile: bool = True,
    ) -> bool:
        if agent.agent_id in self.entries:
            logger.warning("Agent %s is already registered", agent.agent_id)
            return False
        self.entries[agent.agent_id] = AgentEntry(agent, position_provider)
        agent.is_training = agent.learns and self.mode != TrainingMode.INFERENCE
        if self.batch_size is not None:
            agent.set_batch_size(self.batch_size)
        self.coordination.register(agent.agent_id, agent.monster_type, position_provider)
        if load_profile and self.store is not None and agent.learns:
            profile = self.store.load(agent.monster_type)
            if profile is not None:
                agent.apply_profile(profile)
        logger.debug("Registered %s agent %s", agent.monster_type.label, agent.agent_id)
        return True

    def unregister(self, agent_id: str) -> Optional[LearningAgent]:
        entry = self.entries.pop(agent_id, None)
        if entry is None:
            return None
        self.coordination.unregister(agent_id)
        self.pending = deque(p for p in self.pending if p.agent_id != agent_id)
        if self.entries:
            self.cursor %= len(self.entries)
        else:
            self.cursor = 0
        return entry.agent

    def report_outcome(
        self,
        agent_id: str,
        prev_state: StateSnapshot,
        action: int,
        next_state: StateSnapshot,
        outcome: ActionOutcome,
        terminal: bool = False,
    ) -> None:
        """Queue an executed action's outcome; it is stored during the next tick."""
        if agent_id not in self.entries:
            logger.debug("Dropping outcome for unknown agent %s", agent_id)
            return
        self.pending.append(PendingOutcome(agent_id, prev_state, action, next_state, outcome, terminal))

    def flush_outcomes(self) -> Dict[str, float]:
        rewards: Dict[str, float] = {}
        while self.pending:
            item = self.pending.popleft()
            reward = self._store_outcome(item)
            if reward is not None:
                rewards[item.agent_id] = rewards.get(item.agent_id, 0.0) + reward
        return rewards

    def _store_outcome(self, item: PendingOutcome) -> Optional[float]:
        entry = self.entries.get(item.agent_id)
        if entry is None:
            return None
        agent = entry.agent
        action = agent.decoder.decode(item.action)
        reward_fn = self._reward_fn_for(agent)
        reward = reward_fn.calculate(item.prev_state, action, item.next_state, item.outcome)
        killed = item.next_state.health <= 0
        if item.terminal:
            reward += reward_fn.terminal(item.next_state, item.next_state.time_alive, killed)

        agent.observe(reward, action, item.outcome)
        if self.should_train(agent):
            agent.store_experience(item.prev_state, item.action, reward, item.next_state, item.terminal)
        if action.action_type == ActionType.COORDINATE or item.outcome.coordinated:
            self.coordination.record_coordination(item.agent_id, item.outcome.coordinated, reward)
        if item.terminal:
            self._finish_episode(agent, survived=not killed)
        return reward

    def _finish_episode(self, agent: LearningAgent, survived: bool) -> None:
        total, length = agent.episode_reward, agent.episode_steps
        agent.end_episode(survived=survived)
        self.log.write(
            {
                "agent_id": agent.agent_id,
                "monster_type": agent.monster_type.label,
                "episode": agent.metrics.episode_count,
                "return": total,
                "steps": length,
                "survived": survived,
                "epsilon": agent.metrics.exploration_rate,
                "loss": agent.metrics.loss,
            }
        )

    def step(self, now: Optional[float] = None, decisions: Optional[Dict[str, StateSnapshot]] = None) -> TickReport:
        start = self.timer()
        now = self.clock() if now is None else now
        decisions = decisions or {}
        report = TickReport(now=now)

        for agent_id, state in decisions.items():
            if agent_id in self.entries:
                self.coordination.update_position(agent_id, state.position)
        report.maintained = self.coordination.maintain(now)

        for agent_id, state in decisions.items():
            entry = self.entries.get(agent_id)
            if entry is None:
                continue
            agent = entry.agent
            context = self.coordination.context_for(agent_id)
            index = agent.select_action(state, is_training=self.should_train(agent), context=context)
            report.action_indices[agent_id] = index
            report.actions[agent_id] = agent.decoder.decode(index)

        report.rewards = self.flush_outcomes()

        if self._last_update is None or now - self._last_update >= self.update_interval:
            self._last_update = now
            self._update_slice(start, report)

        if self._last_save is None:
            self._last_save = now
        elif self.store is not None and now - self._last_save >= self.config.auto_save_interval:
            self.save_all()
            self._last_save = now
            report.saved = True

        report.elapsed_ms = (self.timer() - start) * 1000.0
        return report

    def _update_slice(self, start: float, report: TickReport) -> None:
        ids = list(self.entries)
        if not ids:
            return
        n = len(ids)
        quota = min(self.max_agents_per_frame, n)
        budget_s = self.config.frame_budget_ms / 1000.0
        visited = 0
        while visited < quota:
            agent_id = ids[(self.cursor + visited) % n]
            visited += 1
            agent = self.entries[agent_id].agent
            if self.should_train(agent) and agent.is_ready_to_train():
                loss = agent.update_policy()
                if loss is not None:
                    report.updated.append(agent_id)
                    report.losses[agent_id] = loss
            if self.timer() - start >= budget_s:
                break
        self.cursor = (self.cursor + visited) % n
        report.deferred = n - visited

    def apply_degradation(self, settings: DegradationSettings) -> None:
        self.max_agents_per_frame = max(1, settings.max_agents_per_frame)
        self.update_interval = settings.update_interval
        self.set_batch_size(settings.batch_size)
        logger.info(
            "Adopted %s settings: batch=%d agents/frame=%d interval=%.3fs",
            settings.level.name,
            settings.batch_size,
            self.max_agents_per_frame,
            self.update_interval,
        )

    def set_batch_size(self, batch_size: int) -> None:
        self.batch_size = batch_size
        for agent in self.agents:
            agent.set_batch_size(batch_size)

    def trigger_learning_update(self) -> Dict[str, float]:
        """Run one policy update on every trainable agent, ignoring the frame budget."""
        losses: Dict[str, float] = {}
        for agent_id, entry in self.entries.items():
            agent = entry.agent
            if self.should_train(agent) and agent.is_ready_to_train():
                loss = agent.update_policy()
                if loss is not None:
                    losses[agent_id] = loss
        return losses

    def _representatives(self) -> Dict[MonsterType, LearningAgent]:
        """Most-trained learning agent per class; its weights become the class profile."""
        best: Dict[MonsterType, LearningAgent] = {}
        for agent in self.agents:
            if not agent.learns:
                continue
            current = best.get(agent.monster_type)
            if current is None or agent.metrics.update_count > current.metrics.update_count:
                best[agent.monster_type] = agent
        return best

    def save_all(self) -> int:
        """
        Save one profile per class from its most-trained agent.

        A class that already has a stored profile keeps its identity: the id, creation
        time, session count and accumulated training time carry over and are advanced.
        """
        if self.store is None:
            return 0
        saved = 0
        now = self.clock()
        elapsed = max(0.0, now - self._session_mark)
        self._session_mark = now
        for monster_type, agent in self._representatives().items():
            profile = agent.to_profile()
            if profile is None:
                continue
            previous = self.store.load(monster_type)
            if previous is not None:
                profile.profile_id = previous.profile_id
                profile.created_at = previous.created_at
                profile.training_sessions = previous.training_sessions
                profile.total_training_time = previous.total_training_time
                agent.profile_id = previous.profile_id
            profile.training_sessions += 1
            profile.total_training_time += elapsed
            try:
                self.store.save(profile)
            except (OSError, MonsterRLError) as exc:
                self.errors.log_error("profiles", "save", exc, monster_type.label)
                continue
            saved += 1
        logger.info("Saved %d profiles", saved)
        return saved

    def load_all(self) -> int:
        if self.store is None:
            return 0
        applied = 0
        by_type: Dict[MonsterType, List[LearningAgent]] = {}
        for agent in self.agents:
            if agent.learns:
                by_type.setdefault(agent.monster_type, []).append(agent)
        for monster_type, agents in by_type.items():
            profile = self.store.load(monster_type)
            if profile is None:
                continue
            applied += sum(1 for agent in agents if agent.apply_profile(profile))
        logger.info("Applied profiles to %d agents", applied)
        return applied

    def all_metrics(self) -> Dict[str, Dict]:
        summary: Dict[str, Dict] = {}
        for agent in self.agents:
            row = summary.setdefault(
                agent.monster_type.label,
                {
                    "agents": 0,
                    "learning_agents": 0,
                    "episodes": 0,
                    "total_steps": 0,
                    "average_reward": 0.0,
                    "best_reward": None,
                    "exploration_rate": 0.0,
                    "loss": 0.0,
                    "converged": 0,
                },
            )
            m = agent.metrics
            row["agents"] += 1
            row["learning_agents"] += int(agent.learns)
            row["episodes"] += m.episode_count
            row["total_steps"] += m.total_steps
            row["average_reward"] += m.average_reward
            row["exploration_rate"] += m.exploration_rate
            row["loss"] += m.loss
            if m.episode_count:
                row["best_reward"] = m.best_reward if row["best_reward"] is None else max(row["best_reward"], m.best_reward)
            cfg = self.config
            row["converged"] += int(
                m.has_converged(
                    cfg.convergence_min_episodes,
                    cfg.convergence_reward_epsilon,
                    cfg.convergence_exploration_floor,
                )
            )
        for label, row in summary.items():
            count = row["agents"]
            for key in ("average_reward", "exploration_rate", "loss"):
                row[key] /= count
            row["coordination"] = self.coordination.metrics_for(MonsterType.from_label(label)).to_dict()
        return summary

    def reset_all_progress(self) -> None:
        for agent in self.agents:
            agent.reset()
        if self.store is not None:
            for monster_type in {agent.monster_type for agent in self.agents}:
                self.store.delete(monster_type)
            self.store.clear_cache()
        self.pending.clear()
        logger.warning("Reset learning progress for %d agents", len(self.entries))

    def on_background(self) -> int:
        return self.save_all()

    def shutdown(self) -> None:
        if self.closed:
            return
        self.flush_outcomes()
        self.save_all()
        self.coordination.clear()
        self.entries.clear()
        self.cursor = 0
        self.closed = True
        logger.info("Training coordinator shut down")

    def snapshot_order(self) -> Tuple[str, ...]:
        """Agent ids in the order the next update slice will visit them."""
        ids = list(self.entries)
        if not ids:
            return ()
        return tuple(ids[self.cursor :] + ids[: self.cursor])
