from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from .actions import ActionSpace
from .config import ProfileConfig
from .errors import ErrorRegistry, ProfileCorruptedError, ProfileError, ProfileValidationError
from .network import NetworkArchitecture
from .state import MonsterType, StateEncoder

logger = logging.getLogger(__name__)

PROFILE_EXTENSION = ".rlprofile"
BACKUP_SUFFIX = ".backup"
TEMP_SUFFIX = ".tmp"
FORMAT_VERSION = 1
DEFAULT_HIDDEN = [64, 32]


def quantize(values: np.ndarray, scale: float = 1.0) -> np.ndarray:
    """Map [-scale, scale] floats onto 0..255; values outside the range clamp."""
    scaled = np.clip((np.asarray(values, dtype=np.float32) / scale + 1.0) / 2.0, 0.0, 1.0)
    return np.round(scaled * 255.0).astype(np.uint8)


def dequantize(values: np.ndarray, scale: float = 1.0) -> np.ndarray:
    return ((np.asarray(values, dtype=np.float32) / 255.0) * 2.0 - 1.0) * np.float32(scale)


def weight_scale(values: np.ndarray) -> float:
    """Largest absolute value, so quantization covers every weight; 1.0 for all-zero input."""
    peak = float(np.max(np.abs(values))) if np.size(values) else 0.0
    return peak if peak > 0.0 else 1.0


def checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class BehaviorProfile:
    monster_type: MonsterType
    architecture: NetworkArchitecture
    weights: np.ndarray
    biases: np.ndarray
    player_profile_id: str = "default"
    profile_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metrics: Dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    version: int = FORMAT_VERSION
    training_sessions: int = 0
    total_training_time: float = 0.0
    compressed: bool = False
    weight_scale: float = 1.0

    def compress(self) -> None:
        """Quantize weights to 8 bits over [-peak, peak] in place. Lossy; biases stay exact."""
        if self.compressed:
            return
        self.weight_scale = weight_scale(self.weights)
        self.weights = dequantize(quantize(self.weights, self.weight_scale), self.weight_scale)
        self.compressed = True

    def validate(self) -> None:
        if not self.profile_id:
            raise ProfileValidationError("profile_id is missing")
        if self.monster_type == MonsterType.NONE:
            raise ProfileValidationError("monster_type must not be NONE")
        if self.weights is None or self.weights.size == 0:
            raise ProfileValidationError("weights are missing")
        if self.biases is None or self.biases.size == 0:
            raise ProfileValidationError("biases are missing")
        if not (np.all(np.isfinite(self.weights)) and np.all(np.isfinite(self.biases))):
            raise ProfileValidationError("weights or biases contain non-finite values")
        if self.weights.size != self.architecture.weight_count():
            raise ProfileValidationError(
                f"weight count {self.weights.size} does not match architecture ({self.architecture.weight_count()})"
            )
        if self.biases.size != self.architecture.bias_count():
            raise ProfileValidationError(
                f"bias count {self.biases.size} does not match architecture ({self.architecture.bias_count()})"
            )

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ProfileValidationError:
            return False
        return True

    def to_dict(self) -> Dict:
        payload = {
            "profile_id": self.profile_id,
            "monster_type": self.monster_type.name,
            "player_profile_id": self.player_profile_id,
            "architecture": self.architecture.to_dict(),
            "metrics": self.metrics,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "training_sessions": self.training_sessions,
            "total_training_time": self.total_training_time,
            "compressed": self.compressed,
            "biases": [float(b) for b in self.biases],
        }
        if self.compressed:
            codes = quantize(self.weights, self.weight_scale)
            payload["weights_q8"] = base64.b64encode(codes.tobytes()).decode("ascii")
            payload["weight_scale"] = self.weight_scale
        else:
            payload["weights"] = [float(w) for w in self.weights]
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "BehaviorProfile":
        compressed = bool(payload.get("compressed", False))
        scale = float(payload.get("weight_scale", 1.0))
        if compressed:
            raw = base64.b64decode(payload["weights_q8"])
            weights = dequantize(np.frombuffer(raw, dtype=np.uint8), scale)
        else:
            weights = np.asarray(payload["weights"], dtype=np.float32)
        return cls(
            monster_type=MonsterType[payload["monster_type"]],
            architecture=NetworkArchitecture.from_dict(payload["architecture"]),
            weights=weights,
            biases=np.asarray(payload["biases"], dtype=np.float32),
            player_profile_id=payload.get("player_profile_id", "default"),
            profile_id=payload.get("profile_id", ""),
            metrics=dict(payload.get("metrics", {})),
            created_at=float(payload.get("created_at", time.time())),
            updated_at=float(payload.get("updated_at", time.time())),
            version=int(payload.get("version", FORMAT_VERSION)),
            training_sessions=int(payload.get("training_sessions", 0)),
            total_training_time=float(payload.get("total_training_time", 0.0)),
            compressed=compressed,
            weight_scale=scale,
        )


def default_architecture(monster_type: MonsterType) -> NetworkArchitecture:
    return NetworkArchitecture(
        input_size=StateEncoder().size,
        output_size=ActionSpace.for_monster_type(monster_type).action_count,
        hidden_sizes=list(DEFAULT_HIDDEN),
    )


def default_profile(
    monster_type: MonsterType,
    architecture: Optional[NetworkArchitecture] = None,
    rng: Optional[np.random.Generator] = None,
) -> BehaviorProfile:
    """Fresh profile with small random weights; the last step of the recovery chain."""
    arch = architecture or default_architecture(monster_type)
    rng = rng if rng is not None else np.random.default_rng()
    return BehaviorProfile(
        monster_type=monster_type,
        architecture=arch,
        weights=rng.uniform(-0.1, 0.1, size=arch.weight_count()).astype(np.float32),
        biases=np.zeros((arch.bias_count(),), dtype=np.float32),
        player_profile_id="default",
    )


class ProfileStore:
    """
    Checksummed on-disk store of behavior profiles, one file per (class, player).

    Files are written to a temp path and renamed into place; the previous file is kept
    as `<name>.backup`. Loading never hands back a half-valid profile: a corrupt file
    goes through backup, then any valid same-class template, then a fresh default.
    """

    def __init__(
        self,
        config: Optional[ProfileConfig] = None,
        errors: Optional[ErrorRegistry] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config or ProfileConfig()
        self.errors = errors or ErrorRegistry()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.directory = Path(self.config.directory)
        self.cache: Dict[Tuple[MonsterType, str], BehaviorProfile] = {}
        self.architectures: Dict[MonsterType, NetworkArchitecture] = {}

    def register_architecture(self, monster_type: MonsterType, architecture: NetworkArchitecture) -> None:
        self.architectures[monster_type] = architecture

    def path_for(self, monster_type: MonsterType, player_id: Optional[str] = None) -> Path:
        player = player_id or self.config.player_id
        return self.directory / f"{monster_type.label}_{player}{PROFILE_EXTENSION}"

    def exists(self, monster_type: MonsterType, player_id: Optional[str] = None) -> bool:
        return self.path_for(monster_type, player_id).exists()

    # Save / load -------------------------------------------------------
    def save(self, profile: BehaviorProfile, player_id: Optional[str] = None) -> Path:
        profile.validate()
        player = player_id or profile.player_profile_id or self.config.player_id
        profile.player_profile_id = player
        profile.updated_at = time.time()
        stored = profile
        if self.config.compress and profile.weights.size > self.config.compression_threshold:
            stored = replace(profile, weights=profile.weights.copy())
            stored.compress()

        profile_json = json.dumps(stored.to_dict(), sort_keys=True)
        envelope = {
            "profile_json": profile_json,
            "checksum": checksum(profile_json),
            "version": FORMAT_VERSION,
            "saved_at": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(profile.updated_at)),
        }

        path = self.path_for(profile.monster_type, player)
        self.directory.mkdir(parents=True, exist_ok=True)
        if path.exists():
            shutil.copyfile(path, str(path) + BACKUP_SUFFIX)
        tmp_path = Path(str(path) + TEMP_SUFFIX)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(envelope))
        os.replace(tmp_path, path)

        self.cache[(profile.monster_type, player)] = profile
        logger.info("Saved %s profile to %s", profile.monster_type.label, path)
        return path

    def load(self, monster_type: MonsterType, player_id: Optional[str] = None) -> Optional[BehaviorProfile]:
        """Return the stored profile, a recovered one if the file is damaged, or None if absent."""
        player = player_id or self.config.player_id
        cached = self.cache.get((monster_type, player))
        if cached is not None:
            return cached
        path = self.path_for(monster_type, player)
        if not path.exists():
            return None
        try:
            profile = self.read(path)
        except (ProfileError, ValueError, KeyError, OSError) as exc:
            profile = self.recover(monster_type, path, exc)
        self.cache[(monster_type, player)] = profile
        return profile

    def read(self, path: Path) -> BehaviorProfile:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        try:
            envelope = json.loads(text)
            profile_json = envelope["profile_json"]
            expected = envelope["checksum"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProfileCorruptedError(f"{path} is not a profile document: {exc}") from exc
        if checksum(profile_json) != str(expected).lower():
            raise ProfileCorruptedError(f"Checksum mismatch for {path}")
        try:
            profile = BehaviorProfile.from_dict(json.loads(profile_json))
        except (ValueError, KeyError, TypeError) as exc:
            raise ProfileValidationError(f"{path} has a malformed profile body: {exc}") from exc
        profile.validate()
        return profile

    def recover(self, monster_type: MonsterType, path: Path, exc: BaseException) -> BehaviorProfile:
        self.errors.log_error("profiles", "load", exc, f"type={monster_type.label} path={path}")

        backup = Path(str(path) + BACKUP_SUFFIX)
        if backup.exists():
            try:
                profile = self.read(backup)
                logger.info("Recovered %s profile from backup", monster_type.label)
                return profile
            except (ProfileError, ValueError, KeyError, OSError) as backup_exc:
                self.errors.log_error("profiles", "load_backup", backup_exc, str(backup))

        template = self._find_template(monster_type, exclude=path)
        if template is not None:
            template.player_profile_id = "recovered"
            template.updated_at = time.time()
            logger.info("Using template profile for %s", monster_type.label)
            return template

        arch = self.architectures.get(monster_type)
        profile = default_profile(monster_type, arch, rng=self.rng)
        logger.info("Created default profile for %s", monster_type.label)
        return profile

    def _find_template(self, monster_type: MonsterType, exclude: Path) -> Optional[BehaviorProfile]:
        if not self.directory.exists():
            return None
        for candidate in sorted(self.directory.glob(f"{monster_type.label}_*{PROFILE_EXTENSION}")):
            if candidate.resolve() == exclude.resolve():
                continue
            try:
                return self.read(candidate)
            except (ProfileError, ValueError, KeyError, OSError) as exc:
                logger.debug("Skipping unusable template %s: %s", candidate, exc)
        return None

    # Housekeeping ------------------------------------------------------
    def delete(self, monster_type: MonsterType, player_id: Optional[str] = None) -> bool:
        player = player_id or self.config.player_id
        path = self.path_for(monster_type, player)
        self.cache.pop((monster_type, player), None)
        removed = False
        for p in (path, Path(str(path) + BACKUP_SUFFIX)):
            if p.exists():
                p.unlink()
                removed = True
        return removed

    def list_profiles(self) -> List[Tuple[MonsterType, str]]:
        found: List[Tuple[MonsterType, str]] = []
        if not self.directory.exists():
            return found
        for path in sorted(self.directory.glob(f"*{PROFILE_EXTENSION}")):
            label, _, player = path.stem.partition("_")
            try:
                found.append((MonsterType.from_label(label), player))
            except KeyError:
                continue
        return found

    def storage_size(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(p.stat().st_size for p in self.directory.iterdir() if p.is_file())

    def cleanup(self, max_age_days: Optional[float] = None, now: Optional[float] = None) -> int:
        """Delete profiles (and their backups) not modified within max_age_days."""
        if not self.directory.exists():
            return 0
        age_limit = (max_age_days if max_age_days is not None else self.config.max_age_days) * 86400.0
        now = time.time() if now is None else now
        removed = 0
        for path in list(self.directory.glob(f"*{PROFILE_EXTENSION}*")):
            if now - path.stat().st_mtime > age_limit:
                path.unlink()
                removed += 1
        if removed:
            self.clear_cache()
            logger.info("Cleaned up %d old profile files", removed)
        return removed

    def create_backup(self, archive_path: str) -> int:
        """Bundle every profile document into one JSON archive."""
        bundle = {"created_at": time.time(), "profiles": {}}
        if self.directory.exists():
            for path in sorted(self.directory.glob(f"*{PROFILE_EXTENSION}")):
                bundle["profiles"][path.name] = path.read_text(encoding="utf-8")
        archive = Path(archive_path)
        archive.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = Path(str(archive) + TEMP_SUFFIX)
        tmp_path.write_text(json.dumps(bundle), encoding="utf-8")
        os.replace(tmp_path, archive)
        logger.info("Created backup with %d profiles at %s", len(bundle["profiles"]), archive)
        return len(bundle["profiles"])

    def restore_backup(self, archive_path: str) -> int:
        """Restore every entry of an archive whose checksum still verifies."""
        bundle = json.loads(Path(archive_path).read_text(encoding="utf-8"))
        self.directory.mkdir(parents=True, exist_ok=True)
        restored = 0
        for name, document in bundle.get("profiles", {}).items():
            target = self.directory / Path(name).name
            tmp_path = Path(str(target) + TEMP_SUFFIX)
            tmp_path.write_text(document, encoding="utf-8")
            try:
                self.read(tmp_path)
            except (ProfileError, ValueError, KeyError) as exc:
                tmp_path.unlink()
                self.errors.log_error("profiles", "restore_backup", exc, name)
                continue
            os.replace(tmp_path, target)
            restored += 1
        self.clear_cache()
        logger.info("Restored %d profiles from %s", restored, archive_path)
        return restored

    def clear_cache(self) -> None:
        self.cache.clear()
