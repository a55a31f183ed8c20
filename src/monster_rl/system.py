from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

import numpy as np

from .actions import ActionDecoder, ActionOutcome
from .agent import AgentFactory, LearningAgent
from .config import SystemConfig, monster_presets
from .coordination import CoordinationLayer, PositionProvider
from .coordinator import TickReport, TrainingCoordinator, TrainingMode
from .errors import ErrorRegistry, ErrorStatistics
from .network import NetworkArchitecture
from .performance import PerformanceMonitor, PerformanceStatus
from .profiles import ProfileStore
from .rewards import RewardCalculator, RewardFunction
from .state import MonsterType, StateEncoder, StateSnapshot

logger = logging.getLogger(__name__)


class RLSystem:
    """
    Explicit context that owns every engine component for one host application.

    Construct it, `start()` it (or use it as a context manager), feed it ticks,
    and `close()` it; closing saves all profiles. Nothing here is global, so
    several systems can live side by side, for instance in tests.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        reward_fn: Optional[RewardFunction] = None,
        clock: Callable[[], float] = time.monotonic,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.config = config or SystemConfig()
        self.clock = clock
        self.errors = ErrorRegistry(retry_threshold=self.config.max_construction_failures)
        self.encoder = StateEncoder()
        self.presets = monster_presets()
        self.store = ProfileStore(self.config.profiles, self.errors, rng=np.random.default_rng(self.config.seed))
        self.coordination = CoordinationLayer(self.config.coordination, clock=clock)
        self.monitor = PerformanceMonitor(self.config.performance, self.errors, clock=clock)
        self.coordinator = TrainingCoordinator(
            self.config.scheduler,
            coordination=self.coordination,
            store=self.store,
            reward_fn=reward_fn,
            errors=self.errors,
            clock=clock,
            timer=timer,
            log_path=self.config.log_path,
        )
        self.factory = AgentFactory(
            self.errors,
            encoder=self.encoder,
            configs={t: p.agent for t, p in self.presets.items()},
            max_failures=self.config.max_construction_failures,
            seed=self.config.seed,
        )
        for monster_type, preset in self.presets.items():
            if reward_fn is None:
                self.coordinator.set_reward_function(monster_type, RewardCalculator(preset.reward))
            agent_cfg = preset.agent
            self.store.register_architecture(
                monster_type,
                NetworkArchitecture(
                    input_size=self.encoder.size,
                    output_size=ActionDecoder(agent_cfg.action_space).size,
                    hidden_sizes=list(agent_cfg.network.hidden_sizes),
                ),
            )
        self.monitor.on_degradation_changed.append(self.coordinator.apply_degradation)
        self.monitor.on_batch_size_changed.append(self.coordinator.set_batch_size)
        self._counter = 0
        self.started = False
        self.closed = False

    # Lifecycle ---------------------------------------------------------
    def start(self) -> "RLSystem":
        if self.started:
            return self
        self.started = True
        logger.info("RL system started (profiles in %s)", self.store.directory)
        return self

    def close(self) -> None:
        if self.closed:
            return
        self.coordinator.shutdown()
        self.closed = True
        stats = self.errors.statistics()
        logger.info("RL system closed; %d errors recorded", stats.total)

    def __enter__(self) -> "RLSystem":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Agents ------------------------------------------------------------
    def spawn(
        self,
        monster_type: MonsterType,
        agent_id: Optional[str] = None,
        position_provider: Optional[PositionProvider] = None,
    ) -> LearningAgent:
        if agent_id is None:
            self._counter += 1
            agent_id = f"{monster_type.label.lower()}_{self._counter}"
        existing = self.coordinator.get(agent_id)
        if existing is not None:
            return existing
        agent = self.factory.create(agent_id, monster_type)
        self.coordinator.register(agent, position_provider)
        return agent

    def register(self, agent: LearningAgent, position_provider: Optional[PositionProvider] = None) -> bool:
        return self.coordinator.register(agent, position_provider)

    def unregister(self, agent_id: str) -> Optional[LearningAgent]:
        return self.coordinator.unregister(agent_id)

    # Control surface ---------------------------------------------------
    @property
    def mode(self) -> TrainingMode:
        return self.coordinator.mode

    def set_mode(self, mode: TrainingMode) -> None:
        self.coordinator.set_mode(mode)

    def tick(
        self,
        now: Optional[float] = None,
        decisions: Optional[Dict[str, StateSnapshot]] = None,
        frame_time_ms: Optional[float] = None,
    ) -> TickReport:
        now = self.clock() if now is None else now
        report = self.coordinator.step(now, decisions)
        self.monitor.record_component_time("coordinator", report.elapsed_ms)
        agents = self.coordinator.agents
        self.monitor.update_system_metrics(
            report.elapsed_ms if frame_time_ms is None else frame_time_ms,
            self.monitor.estimate_memory_mb(agents),
            len(agents),
        )
        self.monitor.check(now)
        return report

    def report_outcome(
        self,
        agent_id: str,
        prev_state: StateSnapshot,
        action: int,
        next_state: StateSnapshot,
        outcome: ActionOutcome,
        terminal: bool = False,
    ) -> None:
        self.coordinator.report_outcome(agent_id, prev_state, action, next_state, outcome, terminal)

    def save_all(self) -> int:
        return self.coordinator.save_all()

    def load_all(self) -> int:
        return self.coordinator.load_all()

    def on_background(self) -> int:
        return self.coordinator.on_background()

    def metrics(self) -> Dict[str, Dict]:
        return self.coordinator.all_metrics()

    def performance_status(self) -> PerformanceStatus:
        return self.monitor.status()

    def error_statistics(self) -> ErrorStatistics:
        return self.errors.statistics()
