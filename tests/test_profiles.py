import json
import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl.config import ProfileConfig  # noqa: E402
from monster_rl.errors import ErrorRegistry, ProfileCorruptedError, ProfileValidationError  # noqa: E402
from monster_rl.network import NetworkArchitecture  # noqa: E402
from monster_rl.profiles import BehaviorProfile, ProfileStore, dequantize, quantize  # noqa: E402
from monster_rl.state import MonsterType  # noqa: E402

ARCH = NetworkArchitecture(input_size=4, output_size=2, hidden_sizes=[3])


def _profile(seed: int = 0, monster_type: MonsterType = MonsterType.MELEE) -> BehaviorProfile:
    rng = np.random.default_rng(seed)
    return BehaviorProfile(
        monster_type=monster_type,
        architecture=ARCH,
        weights=rng.uniform(-1.0, 1.0, size=ARCH.weight_count()).astype(np.float32),
        biases=rng.uniform(-0.5, 0.5, size=ARCH.bias_count()).astype(np.float32),
        metrics={"episode_count": 3},
    )


def _store(tmp_path, **overrides) -> ProfileStore:
    params = dict(directory=str(tmp_path), compress=False)
    params.update(overrides)
    return ProfileStore(ProfileConfig(**params), ErrorRegistry(), rng=np.random.default_rng(0))


def test_exact_round_trip(tmp_path):
    original = _profile()
    _store(tmp_path).save(original)
    loaded = _store(tmp_path).load(MonsterType.MELEE)
    assert loaded.profile_id == original.profile_id
    assert np.array_equal(loaded.weights, original.weights)
    assert np.array_equal(loaded.biases, original.biases)
    assert loaded.architecture == ARCH
    assert loaded.metrics == {"episode_count": 3}
    assert not loaded.compressed


def test_compressed_round_trip_is_close(tmp_path):
    original = _profile(1)
    store = _store(tmp_path, compress=True, compression_threshold=10)
    store.save(original)
    assert not original.compressed
    assert store.load(MonsterType.MELEE) is original

    store.clear_cache()
    loaded = store.load(MonsterType.MELEE)
    assert loaded.compressed
    assert np.max(np.abs(loaded.weights - original.weights)) <= 2.0 / 255.0
    assert np.array_equal(loaded.biases, original.biases)


def test_quantize_clamps_out_of_range():
    values = np.array([-3.0, -1.0, 0.0, 1.0, 3.0], dtype=np.float32)
    codes = quantize(values)
    assert codes.tolist() == [0, 0, 128, 255, 255]
    assert dequantize(codes)[0] == pytest.approx(-1.0)


def test_tampered_document_fails_checksum(tmp_path):
    store = _store(tmp_path)
    path = store.save(_profile())
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["profile_json"] = envelope["profile_json"].replace('"episode_count": 3', '"episode_count": 4')
    path.write_text(json.dumps(envelope), encoding="utf-8")
    with pytest.raises(ProfileCorruptedError):
        store.read(path)


def test_corrupt_file_recovers_from_backup(tmp_path):
    first, second = _profile(0), _profile(1)
    store = _store(tmp_path)
    path = store.save(first)
    store.save(second)
    path.write_text("not json", encoding="utf-8")

    fresh = _store(tmp_path)
    loaded = fresh.load(MonsterType.MELEE)
    assert loaded.profile_id == first.profile_id
    assert fresh.errors.failure_count("profiles") == 1


def test_corrupt_file_and_backup_fall_back_to_template_then_default(tmp_path):
    store = _store(tmp_path)
    other = _profile(5)
    store.save(other, player_id="other")
    path = store.save(_profile(0))
    path.write_text("{}", encoding="utf-8")

    loaded = _store(tmp_path).load(MonsterType.MELEE)
    assert loaded.profile_id == other.profile_id
    assert loaded.player_profile_id == "recovered"

    store.delete(MonsterType.MELEE, "other")
    path.write_text("{}", encoding="utf-8")
    fresh = _store(tmp_path)
    fresh.register_architecture(MonsterType.MELEE, ARCH)
    fallback = fresh.load(MonsterType.MELEE)
    assert fallback.architecture == ARCH
    assert fallback.is_valid()
    assert np.all(np.abs(fallback.weights) <= 0.1)


def test_missing_profile_and_validation(tmp_path):
    store = _store(tmp_path)
    assert store.load(MonsterType.BOSS) is None
    broken = _profile()
    broken.weights = broken.weights[:-1]
    with pytest.raises(ProfileValidationError):
        store.save(broken)
    assert not broken.is_valid()
    nameless = _profile()
    nameless.monster_type = MonsterType.NONE
    assert not nameless.is_valid()


def test_backup_archive_restores_profiles(tmp_path):
    store = _store(tmp_path / "profiles")
    store.save(_profile(0, MonsterType.MELEE))
    store.save(_profile(1, MonsterType.RANGED))
    archive = tmp_path / "archive.json"
    assert store.create_backup(str(archive)) == 2

    assert store.delete(MonsterType.MELEE)
    assert store.delete(MonsterType.RANGED)
    assert store.list_profiles() == []
    assert store.restore_backup(str(archive)) == 2
    assert sorted(t.name for t, _ in store.list_profiles()) == ["MELEE", "RANGED"]
    assert store.load(MonsterType.RANGED).is_valid()
    assert store.storage_size() > 0


def test_cleanup_removes_stale_files(tmp_path):
    store = _store(tmp_path)
    store.save(_profile())
    store.save(_profile(1))
    assert store.cleanup(max_age_days=1.0) == 0
    far_future = 10 * 86400.0 + pathlib.Path(store.path_for(MonsterType.MELEE)).stat().st_mtime
    assert store.cleanup(max_age_days=1.0, now=far_future) == 2
    assert store.load(MonsterType.MELEE) is None


def test_compression_covers_weights_beyond_unit_range(tmp_path):
    original = _profile(2)
    original.weights = original.weights * 4.0
    peak = float(np.max(np.abs(original.weights)))
    store = _store(tmp_path, compress=True, compression_threshold=10)
    store.save(original)
    store.clear_cache()
    loaded = store.load(MonsterType.MELEE)
    assert loaded.compressed
    assert loaded.weight_scale == pytest.approx(peak)
    assert np.max(np.abs(loaded.weights - original.weights)) <= peak / 255.0 + 1e-5
