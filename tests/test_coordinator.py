import json
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl.actions import ActionOutcome, ActionSpace  # noqa: E402
from monster_rl.agent import DQNAgent, LearningAgent  # noqa: E402
from monster_rl.config import AgentConfig, NetworkConfig, ProfileConfig, SchedulerConfig  # noqa: E402
from monster_rl.coordinator import TrainingCoordinator, TrainingMode  # noqa: E402
from monster_rl.metrics import LearningMetrics  # noqa: E402
from monster_rl.performance import DegradationLevel, settings_for  # noqa: E402
from monster_rl.profiles import ProfileStore  # noqa: E402
from monster_rl.state import MonsterType, StateSnapshot  # noqa: E402


class FakeTimer:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


class CountingAgent(LearningAgent):
    """Always ready to train; each update costs `cost` seconds on the shared timer."""

    def __init__(self, agent_id, timer=None, cost=0.0):
        super().__init__(agent_id, MonsterType.MELEE, ActionSpace.default())
        self.timer = timer
        self.cost = cost
        self.updates = 0
        self.stored = []
        self.batch_size = None

    @property
    def learns(self) -> bool:
        return True

    def select_action(self, state, is_training=None, context=None) -> int:
        return 9

    def store_experience(self, state, action, reward, next_state, terminal) -> None:
        self.stored.append((action, reward, terminal))

    def is_ready_to_train(self) -> bool:
        return True

    def update_policy(self):
        self.updates += 1
        if self.timer is not None:
            self.timer.value += self.cost
        return 0.1

    def set_batch_size(self, batch_size: int) -> None:
        self.batch_size = batch_size


def _converged() -> LearningMetrics:
    return LearningMetrics(episode_count=150, average_reward=4.0, recent_average_reward=4.0, exploration_rate=0.05)


def test_mixed_mode_trains_only_unconverged_agents():
    coordinator = TrainingCoordinator(clock=lambda: 0.0)
    settled, learner = CountingAgent("settled"), CountingAgent("learner")
    settled.metrics = _converged()
    coordinator.register(settled)
    coordinator.register(learner)
    coordinator.set_mode(TrainingMode.MIXED)
    assert not coordinator.should_train(settled)
    assert coordinator.should_train(learner)

    report = coordinator.step(now=0.0)
    assert report.updated == ["learner"]
    assert settled.updates == 0

    coordinator.set_mode(TrainingMode.INFERENCE)
    coordinator.step(now=1.0)
    assert learner.updates == 1
    assert not learner.is_training


def test_update_slice_defers_agents_past_frame_budget():
    timer = FakeTimer()
    coordinator = TrainingCoordinator(
        SchedulerConfig(frame_budget_ms=4.0, max_agents_per_frame=10, update_interval=0.1),
        clock=lambda: 0.0,
        timer=timer,
    )
    agents = [CountingAgent(f"m{i}", timer, cost=0.003) for i in range(4)]
    for agent in agents:
        coordinator.register(agent)

    first = coordinator.step(now=0.0)
    assert first.updated == ["m0", "m1"]
    assert first.deferred == 2
    assert coordinator.snapshot_order() == ("m2", "m3", "m0", "m1")

    idle = coordinator.step(now=0.05)
    assert idle.updated == []

    second = coordinator.step(now=0.1)
    assert second.updated == ["m2", "m3"]
    assert [a.updates for a in agents] == [1, 1, 1, 1]


def test_agents_per_frame_quota_round_robins():
    coordinator = TrainingCoordinator(SchedulerConfig(max_agents_per_frame=2), clock=lambda: 0.0)
    agents = [CountingAgent(f"m{i}") for i in range(3)]
    for agent in agents:
        coordinator.register(agent)
    assert coordinator.step(now=0.0).updated == ["m0", "m1"]
    assert coordinator.step(now=1.0).updated == ["m2", "m0"]
    assert coordinator.step(now=2.0).updated == ["m1", "m2"]


def test_outcomes_are_queued_until_next_tick(tmp_path):
    log_path = tmp_path / "episodes.jsonl"
    coordinator = TrainingCoordinator(clock=lambda: 0.0, log_path=str(log_path))
    agent = CountingAgent("m0")
    coordinator.register(agent)
    state = StateSnapshot(position=(0.0, 0.0), opponent_position=(1.0, 0.0))

    report = coordinator.step(now=0.0, decisions={"m0": state})
    assert report.action_indices == {"m0": 9}
    coordinator.report_outcome("m0", state, 9, state, ActionOutcome(hit_player=True, damage_dealt=10.0))
    coordinator.report_outcome("m0", state, 9, state, ActionOutcome(), terminal=True)
    coordinator.report_outcome("ghost", state, 0, state, ActionOutcome())
    assert agent.stored == []
    assert len(coordinator.pending) == 2

    report = coordinator.step(now=0.05)
    assert [terminal for _, _, terminal in agent.stored] == [False, True]
    assert report.rewards["m0"] == pytest.approx(sum(reward for _, reward, _ in agent.stored))
    assert agent.metrics.episode_count == 1
    assert agent.metrics.successful_attacks == 1

    lines = log_path.read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["agent_id"] == "m0"
    assert record["steps"] == 2
    assert record["survived"] is True


def test_inference_mode_stores_nothing():
    coordinator = TrainingCoordinator(clock=lambda: 0.0)
    agent = CountingAgent("m0")
    coordinator.register(agent)
    coordinator.set_mode(TrainingMode.INFERENCE)
    state = StateSnapshot()
    coordinator.report_outcome("m0", state, 0, state, ActionOutcome())
    coordinator.flush_outcomes()
    assert agent.stored == []
    assert agent.metrics.total_steps == 1


def test_mode_change_saves_and_reloads_profiles(tmp_path):
    store = ProfileStore(ProfileConfig(directory=str(tmp_path), compress=False))
    coordinator = TrainingCoordinator(store=store, clock=lambda: 0.0)
    config = AgentConfig(network=NetworkConfig(hidden_sizes=[8]), seed=3)
    agent = DQNAgent("m0", config)
    coordinator.register(agent)
    modes = []
    coordinator.on_mode_changed.append(lambda prev, new: modes.append((prev, new)))

    coordinator.set_mode(TrainingMode.INFERENCE)
    assert store.exists(MonsterType.MELEE)
    assert not agent.is_training
    assert modes == [(TrainingMode.TRAINING, TrainingMode.INFERENCE)]

    newcomer = DQNAgent("m1", AgentConfig(network=NetworkConfig(hidden_sizes=[8]), seed=4))
    coordinator.register(newcomer)
    assert newcomer.profile_id == agent.profile_id
    assert (newcomer.online.get_weights() == agent.online.get_weights()).all()

    coordinator.set_mode(TrainingMode.INFERENCE)
    assert len(modes) == 1


def test_degradation_settings_reach_agents():
    coordinator = TrainingCoordinator(clock=lambda: 0.0)
    agent = CountingAgent("m0")
    coordinator.register(agent)
    coordinator.apply_degradation(settings_for(DegradationLevel.HIGH))
    assert coordinator.max_agents_per_frame == 3
    assert coordinator.update_interval == pytest.approx(0.2)
    assert agent.batch_size == 8

    late = CountingAgent("m1")
    coordinator.register(late)
    assert late.batch_size == 8


def test_unregister_drops_pending_and_keeps_cursor_in_range():
    coordinator = TrainingCoordinator(SchedulerConfig(max_agents_per_frame=1), clock=lambda: 0.0)
    for i in range(3):
        coordinator.register(CountingAgent(f"m{i}"))
    coordinator.step(now=0.0)
    coordinator.step(now=1.0)
    state = StateSnapshot()
    coordinator.report_outcome("m2", state, 0, state, ActionOutcome())
    assert coordinator.unregister("m2") is not None
    assert not coordinator.pending
    assert coordinator.cursor == 0
    assert coordinator.unregister("m2") is None
    assert coordinator.register(CountingAgent("m0")) is False


def test_metrics_summary_and_reset():
    coordinator = TrainingCoordinator(clock=lambda: 0.0)
    a, b = CountingAgent("m0"), CountingAgent("m1")
    a.metrics = _converged()
    coordinator.register(a)
    coordinator.register(b)
    summary = coordinator.all_metrics()["Melee"]
    assert summary["agents"] == 2
    assert summary["episodes"] == 150
    assert summary["converged"] == 1
    assert summary["average_reward"] == pytest.approx(2.0)
    assert "coordination" in summary
    assert coordinator.trigger_learning_update() == {"m0": 0.1, "m1": 0.1}

    coordinator.reset_all_progress()
    assert a.metrics.episode_count == 0


def test_auto_save_background_and_shutdown(tmp_path):
    store = ProfileStore(ProfileConfig(directory=str(tmp_path), compress=False))
    coordinator = TrainingCoordinator(SchedulerConfig(auto_save_interval=10.0), store=store, clock=lambda: 0.0)
    coordinator.register(DQNAgent("m0", AgentConfig(network=NetworkConfig(hidden_sizes=[8]), seed=1)))

    assert not coordinator.step(now=0.0).saved
    assert not coordinator.step(now=5.0).saved
    assert not store.exists(MonsterType.MELEE)
    assert coordinator.step(now=10.0).saved
    assert store.exists(MonsterType.MELEE)

    assert coordinator.on_background() == 1
    coordinator.shutdown()
    assert coordinator.closed
    assert coordinator.agents == []


def test_mode_change_keeps_each_agents_own_weights_and_metrics(tmp_path):
    store = ProfileStore(ProfileConfig(directory=str(tmp_path), compress=False))
    coordinator = TrainingCoordinator(store=store, clock=lambda: 0.0)
    veteran = DQNAgent("m0", AgentConfig(network=NetworkConfig(hidden_sizes=[8]), seed=1))
    rookie = DQNAgent("m1", AgentConfig(network=NetworkConfig(hidden_sizes=[8]), seed=2))
    coordinator.register(veteran)
    coordinator.register(rookie)
    veteran.metrics = _converged()
    veteran.metrics.update_count = 5
    veteran.epsilon = 0.05
    rookie_weights = rookie.online.get_weights().copy()
    veteran_weights = veteran.online.get_weights().copy()

    coordinator.set_mode(TrainingMode.MIXED)

    assert store.exists(MonsterType.MELEE)
    assert (rookie.online.get_weights() == rookie_weights).all()
    assert (veteran.online.get_weights() == veteran_weights).all()
    assert rookie.metrics.episode_count == 0
    assert veteran.metrics.episode_count == 150
    assert not coordinator.should_train(veteran)
    assert coordinator.should_train(rookie)


def test_resaved_profile_keeps_identity_and_accumulates_sessions(tmp_path):
    timer = FakeTimer()
    store = ProfileStore(ProfileConfig(directory=str(tmp_path), compress=False))
    coordinator = TrainingCoordinator(store=store, clock=timer)
    agent = DQNAgent("m0", AgentConfig(network=NetworkConfig(hidden_sizes=[8]), seed=1))
    coordinator.register(agent)

    timer.value = 5.0
    assert coordinator.save_all() == 1
    first = store.load(MonsterType.MELEE)
    first_id, first_created = first.profile_id, first.created_at

    timer.value = 12.0
    assert coordinator.save_all() == 1
    store.clear_cache()
    loaded = store.load(MonsterType.MELEE)
    assert loaded.profile_id == first_id
    assert loaded.created_at == first_created
    assert loaded.training_sessions == 2
    assert loaded.total_training_time == pytest.approx(12.0)
    assert agent.profile_id == first_id
