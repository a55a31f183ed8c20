import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl.actions import ActionType  # noqa: E402
from monster_rl.config import CoordinationConfig  # noqa: E402
from monster_rl.coordination import (  # noqa: E402
    CoordinationLayer,
    CoordinationStrategy,
    GroupFormation,
    strategy_for,
)
from monster_rl.metrics import LearningMetrics  # noqa: E402
from monster_rl.state import MonsterType  # noqa: E402


def _layer(**overrides) -> CoordinationLayer:
    return CoordinationLayer(CoordinationConfig(**overrides), clock=lambda: 0.0)


def _place(layer: CoordinationLayer, agent_id: str, pos, monster_type=MonsterType.MELEE) -> None:
    layer.register(agent_id, monster_type)
    layer.update_position(agent_id, pos)


def test_melee_pair_flanks_then_trio_surrounds():
    layer = _layer()
    updated = []
    layer.on_group_updated.append(updated.append)
    _place(layer, "a", (0.0, 0.0))
    _place(layer, "b", (2.0, 0.0))
    assert layer.maintain(now=0.0)
    group = layer.group_of("a")
    assert group is not None and group.size == 2
    assert group.strategy == CoordinationStrategy.FLANK
    assert group.formation == GroupFormation.ARC
    assert group.group_id == "melee_group_1"

    _place(layer, "c", (1.0, 1.0))
    assert not layer.maintain(now=0.1)
    assert layer.group_of("c") is None

    assert layer.maintain(now=0.3)
    assert layer.group_of("c") is group
    assert group.size == 3
    assert group.strategy == CoordinationStrategy.SURROUND
    assert group.formation == GroupFormation.SURROUND
    assert updated == [group]


def test_group_dissolves_when_members_drift_apart():
    layer = _layer()
    disbanded = []
    layer.on_group_disbanded.append(disbanded.append)
    _place(layer, "a", (0.0, 0.0))
    _place(layer, "b", (5.0, 0.0))
    layer.maintain(now=0.0)
    assert layer.group_of("a") is not None

    layer.update_position("b", (29.0, 0.0))
    layer.maintain(now=0.05)
    assert layer.group_of("a") is not None

    layer.update_position("b", (31.0, 0.0))
    layer.maintain(now=0.06)
    assert layer.group_of("a") is None
    assert layer.group_of("b") is None
    assert len(disbanded) == 1

    layer.maintain(now=1.0)
    assert not layer.groups


def test_only_same_class_agents_group_and_size_is_capped():
    layer = _layer(max_group_size=5)
    for idx in range(6):
        _place(layer, f"m{idx}", (float(idx), 0.0))
    _place(layer, "r0", (0.5, 0.5), MonsterType.RANGED)
    layer.maintain(now=0.0)
    melee_groups = layer.groups_for(MonsterType.MELEE)
    assert len(melee_groups) == 1
    assert melee_groups[0].size == 5
    assert layer.group_of("m5") is None
    assert layer.group_of("r0") is None
    assert layer.metrics_for(MonsterType.MELEE).active_group_count == 1
    assert layer.metrics_for(MonsterType.MELEE).agent_count == 6


def test_positions_from_providers_and_unregister():
    layer = _layer()
    positions = {"a": (0.0, 0.0), "b": (3.0, 0.0)}
    for aid in positions:
        layer.register(aid, MonsterType.THROWING, lambda aid=aid: positions[aid])
    layer.maintain(now=0.0)
    group = layer.group_of("a")
    assert group.strategy == CoordinationStrategy.SEQUENTIAL_ATTACK
    assert group.formation == GroupFormation.WEDGE

    positions["b"] = (100.0, 0.0)
    layer.maintain(now=0.01)
    assert layer.group_of("a") is None

    positions["b"] = (1.0, 0.0)
    layer.maintain(now=0.5)
    assert layer.group_of("a") is not None
    layer.unregister("b")
    assert layer.group_of("a") is None
    assert not layer.groups


def test_context_and_coordination_feedback():
    layer = _layer()
    _place(layer, "a", (0.0, 0.0))
    _place(layer, "b", (2.0, 0.0))
    _place(layer, "loner", (50.0, 50.0))
    layer.maintain(now=0.0)

    context = layer.context_for("a")
    assert context.in_group
    assert context.group_size == 2
    assert context.suggested_action == ActionType.MOVE
    assert context.centroid == pytest.approx((1.0, 0.0))
    assert context.ally_count == 1
    assert not layer.context_for("loner").in_group
    assert not layer.context_for("unknown").in_group

    layer.record_coordination("a", True, reward=10.0)
    layer.record_coordination("b", False)
    assert layer.coordination_success("a") == pytest.approx(0.2)
    assert layer.coordination_success("b") == 0.0
    group = layer.group_of("a")
    assert group.coordination_attempts == 2
    assert group.successful_coordinations == 1
    assert group.average_reward == pytest.approx(10.0)

    layer.maintain(now=1.0)
    assert group.coordination_success == pytest.approx(0.1 * 0.1)


def test_high_group_success_boosts_members():
    layer = _layer(group_success_smoothing=1.0)
    _place(layer, "a", (0.0, 0.0))
    _place(layer, "b", (2.0, 0.0))
    layer.maintain(now=0.0)
    layer.members["a"].coordination_success = 0.9
    layer.members["b"].coordination_success = 0.8
    layer.maintain(now=1.0)
    assert layer.group_of("a").coordination_success == pytest.approx(0.85)
    assert layer.coordination_success("a") == pytest.approx(0.95)
    assert layer.coordination_success("b") == pytest.approx(0.85)


def test_force_group_and_independent_progress():
    metrics = {"a": LearningMetrics(average_reward=50.0, episode_count=500, loss=0.0)}
    layer = CoordinationLayer(metrics_source=metrics.get, clock=lambda: 0.0)
    _place(layer, "a", (0.0, 0.0), MonsterType.BOSS)
    _place(layer, "b", (40.0, 0.0), MonsterType.BOSS)
    group = layer.force_group(["a", "b"])
    assert group.strategy == CoordinationStrategy.OVERWHELM
    assert group.formation == GroupFormation.DIAMOND
    with pytest.raises(ValueError):
        layer.force_group(["a"])
    with pytest.raises(KeyError):
        layer.force_group(["a", "ghost"])

    layer.maintain(now=0.0)
    assert layer.group_of("a") is None
    progress = layer.metrics_for(MonsterType.BOSS).independent_learning_progress
    assert progress == pytest.approx((0.5 + 0.5 + 1.0) / 3.0)


def test_strategy_table():
    assert strategy_for(MonsterType.MELEE, 1) == CoordinationStrategy.NONE
    assert strategy_for(MonsterType.RANGED, 2) == CoordinationStrategy.CROSSFIRE
    assert strategy_for(MonsterType.BOOMERANG, 4) == CoordinationStrategy.ZONE_CONTROL
    assert strategy_for(MonsterType.NONE, 2) == CoordinationStrategy.BASIC
