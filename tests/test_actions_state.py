import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl.actions import Action, ActionDecoder, ActionSpace, ActionType  # noqa: E402
from monster_rl.state import (  # noqa: E402
    MonsterType,
    NearbyAlly,
    ObjectOfInterest,
    ObjectType,
    StateEncoder,
    StateSnapshot,
)


def test_action_counts_per_space():
    assert ActionSpace.default().action_count == 19
    assert ActionSpace.advanced().action_count == 23
    for monster_type in MonsterType.playable():
        space = ActionSpace.for_monster_type(monster_type)
        assert ActionDecoder(space).size == space.action_count
    with pytest.raises(ValueError):
        ActionSpace(max_action_range=0.0)


def test_decode_and_encode_indices():
    decoder = ActionDecoder(ActionSpace.default())
    assert decoder.decode(0).action_type == ActionType.MOVE
    assert decoder.decode(0).direction == (1.0, 0.0)
    assert decoder.decode(9).action_type == ActionType.ATTACK
    assert decoder.decode(-1).action_type == ActionType.WAIT
    assert decoder.decode(decoder.size).action_type == ActionType.WAIT
    assert decoder.encode(Action.move((0.0, 1.0))) == 2
    assert decoder.decode(decoder.encode(Action.retreat((-1.0, 0.0)))).direction == (-1.0, 0.0)
    assert decoder.encode(Action.coordinate()) == -1


def test_stop_and_wait_are_distinct_slots():
    decoder = ActionDecoder(ActionSpace.default())
    stop = decoder.decode(8)
    assert stop.action_type == ActionType.MOVE
    assert stop.direction == (0.0, 0.0)
    assert decoder.encode(Action.move((0.0, 0.0))) == 8
    assert decoder.encode(Action.wait()) == decoder.size - 1
    waits = [a for a in decoder.actions if a.action_type == ActionType.WAIT]
    assert len(waits) == 1


def test_validity_depends_on_range_and_health():
    decoder = ActionDecoder(ActionSpace.advanced())
    near = StateSnapshot(position=(0.0, 0.0), opponent_position=(4.0, 0.0), time_alive=5.0)
    far = StateSnapshot(position=(0.0, 0.0), opponent_position=(15.0, 0.0), time_alive=5.0)
    lonely_hurt = StateSnapshot(position=(0.0, 0.0), opponent_position=(40.0, 0.0), health=20.0)
    assert decoder.is_valid(Action.attack(), near)
    assert not decoder.is_valid(Action.attack(), far)
    assert decoder.is_valid(Action.ambush(), far)
    assert not decoder.is_valid(Action.ambush(), near)
    assert decoder.is_valid(Action.retreat((1.0, 0.0)), lonely_hurt)
    assert not decoder.is_valid(Action.coordinate(), near)
    with_ally = StateSnapshot(allies=(NearbyAlly((1.0, 1.0), MonsterType.BOSS),))
    assert decoder.is_valid(Action.coordinate(), with_ally)


def test_select_masks_and_rejects_malformed_values():
    decoder = ActionDecoder(ActionSpace.default())
    q = np.zeros(decoder.size)
    q[9] = 3.0
    far = StateSnapshot(opponent_position=(30.0, 0.0))
    idx, action = decoder.select(q, far)
    assert idx == 0 and action.action_type == ActionType.MOVE
    idx, _ = decoder.select(q)
    assert idx == 9
    assert decoder.select(np.zeros(4))[0] == 0
    q[1] = np.inf
    assert decoder.select(q)[0] == 0


def test_encoder_layout_and_clamping():
    encoder = StateEncoder()
    assert encoder.size == 77
    state = StateSnapshot(
        position=(500.0, -25.0),
        health=1000.0,
        last_action=3,
        opponent_velocity=(10.0, -40.0),
        allies=(NearbyAlly((5.0, 5.0), MonsterType.MELEE, 50.0, 15),),
        objects=(ObjectOfInterest((10.0, 0.0), ObjectType.CHEST, 50.0),),
    )
    vec = encoder.encode(state)
    assert vec.dtype == np.float32
    assert vec.shape == (77,)
    assert vec[0] == 1.0
    assert vec[1] == pytest.approx(-0.5)
    assert vec[2] == 1.0
    assert vec[3] == pytest.approx(0.2)
    assert vec[8] == pytest.approx(0.5)
    assert vec[9] == -1.0
    assert np.allclose(vec[12:17], [0.1, 0.1, 0.2, 0.25, 1.0])
    assert np.all(vec[17:37] == 0.0)
    assert np.allclose(vec[37:41], [0.2, 0.0, 0.75, 0.5])
    assert np.all(vec[41:] == 0.0)
    assert np.all((vec >= -1.0) & (vec <= 1.0))


def test_snapshot_helpers():
    state = StateSnapshot(
        position=(0.0, 0.0),
        opponent_position=(3.0, 4.0),
        health=50.0,
        allies=(NearbyAlly((5.0, 0.0)), NearbyAlly((1.0, 1.0))),
    )
    assert state.distance_to_opponent == pytest.approx(5.0)
    assert state.direction_to_opponent() == pytest.approx((0.6, 0.8))
    assert state.health_ratio == pytest.approx(0.5)
    assert state.nearest_ally().position == (1.0, 1.0)
    assert MonsterType.from_label("Melee") is MonsterType.MELEE
    assert MonsterType.NONE not in MonsterType.playable()
