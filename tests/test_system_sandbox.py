import pathlib
import sys

import numpy as np

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl import (  # noqa: E402
    ArenaConfig,
    MonsterArena,
    ProfileConfig,
    RLSystem,
    SystemConfig,
    TrainingMode,
    run_episode,
    scenario_presets,
)
from monster_rl.actions import Action  # noqa: E402
from monster_rl.agent import DQNAgent  # noqa: E402
from monster_rl.renderer import render_arena, render_arena_image  # noqa: E402
from monster_rl.state import MonsterType  # noqa: E402


class StepClock:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def test_arena_reset_and_step_shapes():
    cfg = ArenaConfig(height=10, width=10, monsters={MonsterType.MELEE: 2, MonsterType.RANGED: 1}, seed=0)
    arena = MonsterArena(cfg)
    states = arena.reset()
    assert set(states) == {"melee_0", "melee_1", "ranged_0"}
    for state in states.values():
        assert len(state.allies) <= 5
        assert len(state.objects) <= 10
        assert state.opponent_position == (5.0, 5.0)

    actions = {aid: Action.wait() for aid in states}
    next_states, outcomes, dones, info = arena.step(actions)
    assert set(next_states) == set(states)
    assert set(outcomes) == set(states)
    assert "__all__" in dones
    assert info["monsters_alive"] == 3
    assert arena.position_of("melee_0") == arena.world.monsters["melee_0"].position


def test_arena_attack_hurts_player_in_range():
    arena = MonsterArena(ArenaConfig(height=10, width=10, monsters={MonsterType.MELEE: 1}, seed=0, pickups=0))
    arena.reset()
    monster = arena.world.monsters["melee_0"]
    monster.x, monster.y = 5.0, 4.0
    _, outcomes, _, info = arena.step({"melee_0": Action.attack()})
    assert outcomes["melee_0"].hit_player
    assert info["player_health"] == 90.0
    assert outcomes["melee_0"].took_damage


def test_renderers():
    arena = MonsterArena(ArenaConfig(height=8, width=12, monsters={MonsterType.MELEE: 2}, seed=1))
    arena.reset()
    text = render_arena(arena.world)
    rows = text.split("\n")
    assert len(rows) == 8 and all(len(row) == 12 for row in rows)
    assert "@" in text
    img = render_arena_image(arena.world, cell_size=4)
    assert img.shape == (32, 48, 3)
    assert img.dtype == np.uint8


def test_system_runs_episode_and_persists_profiles(tmp_path):
    clock = StepClock()
    config = SystemConfig(profiles=ProfileConfig(directory=str(tmp_path / "profiles")), seed=0)
    config.log_path = str(tmp_path / "episodes.jsonl")
    arena_cfg = scenario_presets()["melee_pack"].arena
    arena_cfg.max_steps = 40
    arena_cfg.seed = 0
    arena = MonsterArena(arena_cfg)

    with RLSystem(config, clock=clock) as system:
        summary = run_episode(system, arena)
        assert set(summary["returns"]) == {"melee_0", "melee_1", "melee_2"}
        assert 1 <= summary["steps"] <= 40
        agents = system.coordinator.agents
        assert len(agents) == 3
        assert all(isinstance(agent, DQNAgent) for agent in agents)
        assert all(agent.metrics.episode_count == 1 for agent in agents)
        metrics = system.metrics()
        assert metrics["Melee"]["agents"] == 3
        status = system.performance_status()
        assert status.active_agents == 3

        system.set_mode(TrainingMode.INFERENCE)
        assert system.mode == TrainingMode.INFERENCE
        assert all(not agent.is_training for agent in agents)

    assert system.closed
    assert (tmp_path / "profiles" / "Melee_default.rlprofile").exists()
    assert (tmp_path / "episodes.jsonl").read_text(encoding="utf-8").count("\n") == 3

    with RLSystem(config, clock=clock) as again:
        agent = again.spawn(MonsterType.MELEE, "melee_9")
        assert isinstance(agent, DQNAgent)
        assert agent.profile_id is not None
        assert again.spawn(MonsterType.MELEE, "melee_9") is agent
        assert again.unregister("melee_9") is agent
