"""Runtime reinforcement-learning engine for cooperating game monsters."""

from .actions import Action, ActionDecoder, ActionOutcome, ActionSpace, ActionType  # noqa: F401
from .agent import AgentFactory, DQNAgent, LearningAgent, RuleBasedAgent  # noqa: F401
from .config import (  # noqa: F401
    AgentConfig,
    CoordinationConfig,
    NetworkConfig,
    PerformanceConfig,
    ProfileConfig,
    RewardConfig,
    SchedulerConfig,
    SystemConfig,
    monster_presets,
)
from .coordination import CoordinationContext, CoordinationLayer, CoordinationStrategy, GroupFormation  # noqa: F401
from .coordinator import TickReport, TrainingCoordinator, TrainingMode  # noqa: F401
from .errors import ErrorRegistry, MonsterRLError, NetworkError, ProfileError  # noqa: F401
from .metrics import LearningMetrics  # noqa: F401
from .network import DenseQNetwork, NullQNetwork, QNetwork, build_network  # noqa: F401
from .performance import DegradationLevel, PerformanceMonitor  # noqa: F401
from .profiles import BehaviorProfile, ProfileStore  # noqa: F401
from .replay import Experience, ReplayBuffer  # noqa: F401
from .rewards import RewardCalculator, RewardFunctionType, create_reward_function  # noqa: F401
from .sandbox import ArenaConfig, MonsterArena, run_episode  # noqa: F401
from .scenarios import ScenarioSpec, scenario_presets  # noqa: F401
from .state import MonsterType, StateEncoder, StateSnapshot  # noqa: F401
from .system import RLSystem  # noqa: F401
