from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from .actions import ActionSpace
from .errors import ConfigError
from .state import MonsterType


@dataclass
class NetworkConfig:
    hidden_sizes: List[int] = field(default_factory=lambda: [64, 32])
    learning_rate: float = 0.001

    def __post_init__(self) -> None:
        if any(h < 1 for h in self.hidden_sizes):
            raise ConfigError("hidden_sizes must all be >= 1")
        if self.learning_rate <= 0:
            raise ConfigError("learning_rate must be positive")


@dataclass
class AgentConfig:
    monster_type: MonsterType = MonsterType.MELEE
    action_space: ActionSpace = field(default_factory=ActionSpace.default)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    gamma: float = 0.99
    epsilon_start: float = 1.0
    epsilon_min: float = 0.01
    epsilon_decay: float = 0.995
    buffer_capacity: int = 10_000
    batch_size: int = 32
    min_experiences: int = 32
    target_update_frequency: int = 100
    coordination_bias: float = 0.1
    mask_invalid_actions: bool = True
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.gamma <= 1.0:
            raise ConfigError("gamma must be in [0, 1]")
        if not 0.0 <= self.epsilon_min <= self.epsilon_start <= 1.0:
            raise ConfigError("expected 0 <= epsilon_min <= epsilon_start <= 1")
        if not 0.0 < self.epsilon_decay <= 1.0:
            raise ConfigError("epsilon_decay must be in (0, 1]")
        if self.buffer_capacity < 1:
            raise ConfigError("buffer_capacity must be >= 1")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if self.min_experiences < self.batch_size:
            raise ConfigError("min_experiences must be >= batch_size")
        if self.target_update_frequency < 1:
            raise ConfigError("target_update_frequency must be >= 1")


@dataclass
class RewardConfig:
    hit_reward: float = 25.0
    damage_reward_multiplier: float = 1.0
    survival_reward: float = 1.0
    coordination_reward: float = 15.0
    death_penalty: float = -100.0
    kill_player_reward: float = 200.0
    survival_bonus_multiplier: float = 5.0
    attack_attempt_reward: float = 1.0
    special_attack_reward: float = 5.0
    tactical_retreat_reward: float = 3.0
    coordination_attempt_reward: float = 2.0
    ambush_success_reward: float = 10.0
    damage_penalty_multiplier: float = 0.5
    shaped: bool = False
    optimal_distance: float = 3.0
    optimal_distance_reward: float = 1.0
    distance_penalty: float = 0.5
    health_maintenance_reward: float = 0.5
    player_low_health_bonus: float = 5.0
    recent_damage_bonus: float = 3.0
    recent_damage_window: float = 3.0
    position_improvement_reward: float = 1.0
    tick_seconds: float = 0.02

    def is_valid(self) -> bool:
        return (
            self.hit_reward > 0
            and self.damage_reward_multiplier > 0
            and self.survival_reward > 0
            and self.death_penalty < 0
            and self.kill_player_reward > 0
            and self.optimal_distance > 0
        )


@dataclass
class CoordinationConfig:
    radius: float = 10.0
    max_group_size: int = 5
    update_interval: float = 0.2
    enable_group_learning: bool = True
    group_success_smoothing: float = 0.1
    member_success_smoothing: float = 0.2
    boost_threshold: float = 0.7
    boost_amount: float = 0.05
    cohesion_factor: float = 1.5

    def __post_init__(self) -> None:
        if self.radius <= 0:
            raise ConfigError("radius must be positive")
        if self.max_group_size < 2:
            raise ConfigError("max_group_size must be >= 2")


@dataclass
class SchedulerConfig:
    update_interval: float = 0.1
    max_agents_per_frame: int = 10
    frame_budget_ms: float = 4.0
    auto_save_interval: float = 300.0
    reload_on_mode_change: bool = True
    convergence_min_episodes: int = 100
    convergence_reward_epsilon: float = 0.1
    convergence_exploration_floor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_agents_per_frame < 1:
            raise ConfigError("max_agents_per_frame must be >= 1")
        if self.frame_budget_ms <= 0:
            raise ConfigError("frame_budget_ms must be positive")


@dataclass
class PerformanceConfig:
    max_frame_time_ms: float = 16.0
    max_memory_mb: float = 100.0
    max_active_agents: int = 50
    soft_threshold: float = 0.8
    monitoring_interval: float = 1.0
    history_size: int = 60
    auto_degradation: bool = True
    adaptive_batch_sizing: bool = True
    base_batch_size: int = 32
    min_batch_size: int = 4
    max_batch_size: int = 128
    batch_adjustment_rate: float = 0.1
    batch_adjustment_cooldown: int = 30
    batch_window: int = 10
    base_max_agents_per_frame: int = 10
    base_update_interval: float = 0.1

    def __post_init__(self) -> None:
        if not 0.0 < self.soft_threshold < 1.0:
            raise ConfigError("soft_threshold must be in (0, 1)")
        if self.max_frame_time_ms <= 0 or self.max_memory_mb <= 0 or self.max_active_agents <= 0:
            raise ConfigError("performance limits must be positive")
        if not self.min_batch_size <= self.base_batch_size <= self.max_batch_size:
            raise ConfigError("expected min_batch_size <= base_batch_size <= max_batch_size")


@dataclass
class ProfileConfig:
    directory: str = "profiles"
    player_id: str = "default"
    compress: bool = True
    compression_threshold: int = 1024  # weights
    max_age_days: float = 30.0


@dataclass
class SystemConfig:
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    profiles: ProfileConfig = field(default_factory=ProfileConfig)
    max_construction_failures: int = 3
    log_path: Optional[str] = None
    seed: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict) -> "SystemConfig":
        return cls(
            coordination=CoordinationConfig(**payload.get("coordination", {})),
            scheduler=SchedulerConfig(**payload.get("scheduler", {})),
            performance=PerformanceConfig(**payload.get("performance", {})),
            profiles=ProfileConfig(**payload.get("profiles", {})),
            max_construction_failures=payload.get("max_construction_failures", 3),
            log_path=payload.get("log_path"),
            seed=payload.get("seed"),
        )


@dataclass
class MonsterPreset:
    name: str
    description: str
    agent: AgentConfig
    reward: RewardConfig


def monster_presets() -> Dict[MonsterType, MonsterPreset]:
    """Return tuned per-class agent and reward settings."""
    return {
        MonsterType.MELEE: MonsterPreset(
            name="melee",
            description="Close-range brawler; default action space, dense rewards.",
            agent=AgentConfig(monster_type=MonsterType.MELEE),
            reward=RewardConfig(),
        ),
        MonsterType.RANGED: MonsterPreset(
            name="ranged",
            description="Keeps distance; special attacks and ambushes, higher hit reward.",
            agent=AgentConfig(
                monster_type=MonsterType.RANGED,
                action_space=ActionSpace.for_monster_type(MonsterType.RANGED),
            ),
            reward=RewardConfig(hit_reward=30.0, optimal_distance=6.0),
        ),
        MonsterType.THROWING: MonsterPreset(
            name="throwing",
            description="Mid-range thrower that benefits most from coordinating.",
            agent=AgentConfig(
                monster_type=MonsterType.THROWING,
                action_space=ActionSpace.for_monster_type(MonsterType.THROWING),
            ),
            reward=RewardConfig(coordination_reward=20.0, optimal_distance=4.0),
        ),
        MonsterType.BOOMERANG: MonsterPreset(
            name="boomerang",
            description="Slow, complex attacker; explores longer before committing.",
            agent=AgentConfig(
                monster_type=MonsterType.BOOMERANG,
                action_space=ActionSpace.for_monster_type(MonsterType.BOOMERANG),
                epsilon_min=0.05,
                epsilon_decay=0.997,
            ),
            reward=RewardConfig(optimal_distance=5.0),
        ),
        MonsterType.BOSS: MonsterPreset(
            name="boss",
            description="Full action space and a larger network; big payoff for finishing the player.",
            agent=AgentConfig(
                monster_type=MonsterType.BOSS,
                action_space=ActionSpace.for_monster_type(MonsterType.BOSS),
                network=NetworkConfig(hidden_sizes=[128, 128, 64]),
            ),
            reward=RewardConfig(kill_player_reward=500.0, shaped=True),
        ),
    }
