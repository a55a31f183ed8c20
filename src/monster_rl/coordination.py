from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .actions import ActionType
from .config import CoordinationConfig
from .metrics import LearningMetrics
from .state import MonsterType

logger = logging.getLogger(__name__)

Vec2 = Tuple[float, float]
PositionProvider = Callable[[], Optional[Vec2]]
MetricsSource = Callable[[str], Optional[LearningMetrics]]


class CoordinationStrategy(Enum):
    NONE = 0
    BASIC = 1
    FLANK = 2
    SURROUND = 3
    CROSSFIRE = 4
    SEQUENTIAL_ATTACK = 5
    ZONE_CONTROL = 6
    OVERWHELM = 7


class GroupFormation(Enum):
    NONE = 0
    CLUSTER = 1
    ARC = 2
    SURROUND = 3
    LINE = 4
    WEDGE = 5
    SCATTER = 6
    DIAMOND = 7


FORMATIONS: Dict[CoordinationStrategy, GroupFormation] = {
    CoordinationStrategy.NONE: GroupFormation.NONE,
    CoordinationStrategy.BASIC: GroupFormation.CLUSTER,
    CoordinationStrategy.FLANK: GroupFormation.ARC,
    CoordinationStrategy.SURROUND: GroupFormation.SURROUND,
    CoordinationStrategy.CROSSFIRE: GroupFormation.LINE,
    CoordinationStrategy.SEQUENTIAL_ATTACK: GroupFormation.WEDGE,
    CoordinationStrategy.ZONE_CONTROL: GroupFormation.SCATTER,
    CoordinationStrategy.OVERWHELM: GroupFormation.DIAMOND,
}

SUGGESTED_ACTIONS: Dict[CoordinationStrategy, Optional[ActionType]] = {
    CoordinationStrategy.NONE: None,
    CoordinationStrategy.BASIC: ActionType.COORDINATE,
    CoordinationStrategy.FLANK: ActionType.MOVE,
    CoordinationStrategy.SURROUND: ActionType.MOVE,
    CoordinationStrategy.CROSSFIRE: ActionType.ATTACK,
    CoordinationStrategy.SEQUENTIAL_ATTACK: ActionType.ATTACK,
    CoordinationStrategy.ZONE_CONTROL: ActionType.SPECIAL_ATTACK,
    CoordinationStrategy.OVERWHELM: ActionType.ATTACK,
}


def strategy_for(monster_type: MonsterType, group_size: int) -> CoordinationStrategy:
    if group_size < 2:
        return CoordinationStrategy.NONE
    if monster_type == MonsterType.MELEE:
        return CoordinationStrategy.SURROUND if group_size >= 3 else CoordinationStrategy.FLANK
    if monster_type == MonsterType.RANGED:
        return CoordinationStrategy.CROSSFIRE
    if monster_type == MonsterType.THROWING:
        return CoordinationStrategy.SEQUENTIAL_ATTACK
    if monster_type == MonsterType.BOOMERANG:
        return CoordinationStrategy.ZONE_CONTROL
    if monster_type == MonsterType.BOSS:
        return CoordinationStrategy.OVERWHELM
    return CoordinationStrategy.BASIC


def independent_progress(metrics: LearningMetrics) -> float:
    """Reward level, experience and loss folded into [0, 1]."""
    reward = min(1.0, max(0.0, metrics.average_reward / 100.0))
    episodes = min(1.0, max(0.0, metrics.episode_count / 1000.0))
    loss = min(1.0, max(0.0, 1.0 - metrics.loss))
    return (reward + episodes + loss) / 3.0


def _distance(a: Vec2, b: Vec2) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def _centroid(points: Sequence[Vec2]) -> Vec2:
    n = float(len(points))
    return (sum(p[0] for p in points) / n, sum(p[1] for p in points) / n)


def _lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


@dataclass
class CoordinationGroup:
    group_id: str
    monster_type: MonsterType
    members: List[str]
    strategy: CoordinationStrategy = CoordinationStrategy.NONE
    formation: GroupFormation = GroupFormation.NONE
    formation_time: float = 0.0
    group_reward: float = 0.0
    successful_coordinations: int = 0
    coordination_attempts: int = 0
    coordination_success: float = 0.0
    evaluated_size: int = 0

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def average_reward(self) -> float:
        if self.successful_coordinations == 0:
            return 0.0
        return self.group_reward / self.successful_coordinations

    def age(self, now: float) -> float:
        return now - self.formation_time


@dataclass
class MemberState:
    monster_type: MonsterType
    position_provider: Optional[PositionProvider] = None
    last_position: Optional[Vec2] = None
    group_id: Optional[str] = None
    coordination_success: float = 0.0
    last_coordination_time: float = 0.0
    independent_progress: float = 0.0


@dataclass(frozen=True)
class CoordinationContext:
    """What an agent may consult before choosing; purely advisory."""

    in_group: bool = False
    group_id: Optional[str] = None
    group_size: int = 0
    strategy: CoordinationStrategy = CoordinationStrategy.NONE
    formation: GroupFormation = GroupFormation.NONE
    centroid: Optional[Vec2] = None
    nearby_allies: Tuple[Vec2, ...] = ()
    suggested_action: Optional[ActionType] = None
    coordination_success: float = 0.0

    @classmethod
    def empty(cls) -> "CoordinationContext":
        return cls()

    @property
    def ally_count(self) -> int:
        return len(self.nearby_allies)


@dataclass
class GroupLearningMetrics:
    monster_type: MonsterType
    agent_count: int = 0
    active_group_count: int = 0
    average_group_size: float = 0.0
    total_group_reward: float = 0.0
    total_coordinations: int = 0
    successful_coordinations: int = 0
    group_coordination_success: float = 0.0
    independent_learning_progress: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_coordinations == 0:
            return 0.0
        return self.successful_coordinations / self.total_coordinations

    def to_dict(self) -> Dict:
        payload = asdict(self)
        payload["monster_type"] = self.monster_type.label
        payload["success_rate"] = self.success_rate
        return payload


class CoordinationLayer:
    """
    Groups nearby same-class agents and feeds group success back to members.

    The layer only tracks agent ids. Positions come from a per-agent provider or
    from the last position pushed with `update_position`; agents without a known
    position are left out of grouping and count as absent from their group.
    """

    def __init__(
        self,
        config: Optional[CoordinationConfig] = None,
        metrics_source: Optional[MetricsSource] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CoordinationConfig()
        self.metrics_source = metrics_source
        self.clock = clock
        self.members: Dict[str, MemberState] = {}
        self.groups: Dict[str, CoordinationGroup] = {}
        self.type_metrics: Dict[MonsterType, GroupLearningMetrics] = {}
        self.on_group_formed: List[Callable[[CoordinationGroup], None]] = []
        self.on_group_disbanded: List[Callable[[CoordinationGroup], None]] = []
        self.on_group_updated: List[Callable[[CoordinationGroup], None]] = []
        self.on_learning_updated: List[Callable[[MonsterType, GroupLearningMetrics], None]] = []
        self._last_maintenance: Optional[float] = None
        self._now = 0.0
        self._group_counter = 0

    def register(
        self,
        agent_id: str,
        monster_type: MonsterType,
        position_provider: Optional[PositionProvider] = None,
    ) -> None:
        if agent_id in self.members:
            self.members[agent_id].position_provider = position_provider
            return
        self.members[agent_id] = MemberState(monster_type, position_provider)
        self.type_metrics.setdefault(monster_type, GroupLearningMetrics(monster_type))
        logger.debug("Registered %s agent %s for coordination", monster_type.label, agent_id)

    def unregister(self, agent_id: str) -> None:
        member = self.members.pop(agent_id, None)
        if member is None or member.group_id is None:
            return
        group = self.groups.get(member.group_id)
        if group is None:
            return
        group.members.remove(agent_id)
        if group.size < 2:
            self._disband(group, "member left")

    def update_position(self, agent_id: str, position: Vec2) -> None:
        member = self.members.get(agent_id)
        if member is not None:
            member.last_position = (float(position[0]), float(position[1]))

    def position_of(self, agent_id: str) -> Optional[Vec2]:
        member = self.members.get(agent_id)
        if member is None:
            return None
        if member.position_provider is not None:
            pos = member.position_provider()
            if pos is not None:
                member.last_position = (float(pos[0]), float(pos[1]))
        return member.last_position

    def group_of(self, agent_id: str) -> Optional[CoordinationGroup]:
        member = self.members.get(agent_id)
        if member is None or member.group_id is None:
            return None
        return self.groups.get(member.group_id)

    def groups_for(self, monster_type: MonsterType) -> List[CoordinationGroup]:
        return [g for g in self.groups.values() if g.monster_type == monster_type]

    def maintain(self, now: Optional[float] = None, force: bool = False) -> bool:
        """
        Run one maintenance pass. Invalid groups are dissolved on every call;
        grouping, strategy updates and group learning only run once
        `update_interval` seconds have passed (or when forced).
        """
        now = self.clock() if now is None else now
        self._now = now
        self._dissolve_invalid()
        due = (
            force
            or self._last_maintenance is None
            or now - self._last_maintenance >= self.config.update_interval
        )
        if not due:
            return False
        self._last_maintenance = now

        positions = {aid: self.position_of(aid) for aid in self.members}
        for monster_type in list(self.type_metrics):
            ungrouped = [
                aid
                for aid, m in self.members.items()
                if m.monster_type == monster_type and m.group_id is None and positions[aid] is not None
            ]
            ungrouped = self._join_existing(ungrouped, monster_type, positions)
            self._form_groups(ungrouped, monster_type, positions, now)

        self._evaluate_strategies()
        if self.config.enable_group_learning:
            self._update_group_learning()
        self._refresh_type_metrics()
        return True

    def _dissolve_invalid(self) -> None:
        limit = self.config.radius * self.config.cohesion_factor
        for group in list(self.groups.values()):
            live = [aid for aid in group.members if aid in self.members]
            points = [p for p in (self.position_of(aid) for aid in live) if p is not None]
            if len(points) < 2:
                self._disband(group, "fewer than 2 live members")
                continue
            center = _centroid(points)
            if any(_distance(p, center) > limit for p in points):
                self._disband(group, "members dispersed")

    def _join_existing(
        self,
        ungrouped: List[str],
        monster_type: MonsterType,
        positions: Dict[str, Optional[Vec2]],
    ) -> List[str]:
        radius = self.config.radius
        remaining = []
        for aid in ungrouped:
            pos = positions[aid]
            target = None
            for group in self.groups_for(monster_type):
                if group.size >= self.config.max_group_size:
                    continue
                if any(
                    positions.get(other) is not None and _distance(pos, positions[other]) <= radius
                    for other in group.members
                ):
                    target = group
                    break
            if target is None:
                remaining.append(aid)
                continue
            target.members.append(aid)
            self.members[aid].group_id = target.group_id
            logger.debug("Agent %s joined %s (size %d)", aid, target.group_id, target.size)
        return remaining

    def _form_groups(
        self,
        ungrouped: List[str],
        monster_type: MonsterType,
        positions: Dict[str, Optional[Vec2]],
        now: float,
    ) -> None:
        radius = self.config.radius
        assigned = set()
        for i, seed in enumerate(ungrouped):
            if seed in assigned:
                continue
            cluster = [seed]
            assigned.add(seed)
            for other in ungrouped[i + 1 :]:
                if len(cluster) >= self.config.max_group_size:
                    break
                if other in assigned:
                    continue
                if any(_distance(positions[other], positions[m]) <= radius for m in cluster):
                    cluster.append(other)
                    assigned.add(other)
            if len(cluster) >= 2:
                self._create_group(cluster, monster_type, now)

    def _create_group(self, agent_ids: Iterable[str], monster_type: MonsterType, now: float) -> CoordinationGroup:
        self._group_counter += 1
        group = CoordinationGroup(
            group_id=f"{monster_type.label.lower()}_group_{self._group_counter}",
            monster_type=monster_type,
            members=list(agent_ids),
            formation_time=now,
        )
        self._assign_strategy(group)
        for aid in group.members:
            self.members[aid].group_id = group.group_id
        self.groups[group.group_id] = group
        logger.info(
            "Formed %s with %d %s agents, strategy %s",
            group.group_id,
            group.size,
            monster_type.label,
            group.strategy.name,
        )
        for callback in self.on_group_formed:
            callback(group)
        return group

    def force_group(self, agent_ids: Sequence[str], monster_type: Optional[MonsterType] = None) -> CoordinationGroup:
        """Group the given registered agents immediately, pulling them out of any current group."""
        if len(agent_ids) < 2:
            raise ValueError("a group needs at least 2 agents")
        unknown = [aid for aid in agent_ids if aid not in self.members]
        if unknown:
            raise KeyError(f"unregistered agents: {unknown}")
        monster_type = monster_type or self.members[agent_ids[0]].monster_type
        for aid in agent_ids:
            current = self.group_of(aid)
            if current is not None:
                current.members.remove(aid)
                self.members[aid].group_id = None
                if current.size < 2:
                    self._disband(current, "members reassigned")
        return self._create_group(agent_ids, monster_type, self._now)

    def _disband(self, group: CoordinationGroup, reason: str) -> None:
        if self.groups.pop(group.group_id, None) is None:
            return
        for aid in group.members:
            member = self.members.get(aid)
            if member is not None and member.group_id == group.group_id:
                member.group_id = None
        logger.info("Disbanded %s: %s", group.group_id, reason)
        for callback in self.on_group_disbanded:
            callback(group)

    def _assign_strategy(self, group: CoordinationGroup) -> bool:
        strategy = strategy_for(group.monster_type, group.size)
        group.evaluated_size = group.size
        if strategy == group.strategy:
            return False
        group.strategy = strategy
        group.formation = FORMATIONS[strategy]
        return True

    def _evaluate_strategies(self) -> None:
        for group in self.groups.values():
            if group.size == group.evaluated_size:
                continue
            previous = group.strategy
            if self._assign_strategy(group):
                logger.info(
                    "%s strategy %s -> %s at size %d",
                    group.group_id,
                    previous.name,
                    group.strategy.name,
                    group.size,
                )
                for callback in self.on_group_updated:
                    callback(group)

    def record_coordination(self, agent_id: str, success: bool, reward: float = 0.0) -> None:
        member = self.members.get(agent_id)
        if member is None:
            return
        member.coordination_success = _lerp(
            member.coordination_success, 1.0 if success else 0.0, self.config.member_success_smoothing
        )
        member.last_coordination_time = self._now
        group = self.group_of(agent_id)
        if group is None:
            return
        group.coordination_attempts += 1
        if success:
            group.successful_coordinations += 1
            group.group_reward += reward

    def _update_group_learning(self) -> None:
        cfg = self.config
        for group in self.groups.values():
            live = [self.members[aid] for aid in group.members if aid in self.members]
            if not live:
                continue
            mean_success = sum(m.coordination_success for m in live) / len(live)
            group.coordination_success = _lerp(group.coordination_success, mean_success, cfg.group_success_smoothing)
            if group.coordination_success > cfg.boost_threshold:
                for member in live:
                    member.coordination_success = min(1.0, member.coordination_success + cfg.boost_amount)

    def _refresh_type_metrics(self) -> None:
        for monster_type, metrics in self.type_metrics.items():
            ids = [aid for aid, m in self.members.items() if m.monster_type == monster_type]
            groups = self.groups_for(monster_type)
            metrics.agent_count = len(ids)
            metrics.active_group_count = len(groups)
            metrics.average_group_size = sum(g.size for g in groups) / len(groups) if groups else 0.0
            metrics.total_group_reward = sum(g.group_reward for g in groups)
            metrics.total_coordinations = sum(g.coordination_attempts for g in groups)
            metrics.successful_coordinations = sum(g.successful_coordinations for g in groups)
            if groups:
                metrics.group_coordination_success = sum(g.coordination_success for g in groups) / len(groups)

            if self.metrics_source is not None:
                progress = []
                for aid in ids:
                    agent_metrics = self.metrics_source(aid)
                    if agent_metrics is None:
                        continue
                    self.members[aid].independent_progress = independent_progress(agent_metrics)
                    progress.append(self.members[aid].independent_progress)
                if progress:
                    metrics.independent_learning_progress = sum(progress) / len(progress)

            for callback in self.on_learning_updated:
                callback(monster_type, metrics)

    def context_for(self, agent_id: str) -> CoordinationContext:
        member = self.members.get(agent_id)
        if member is None:
            return CoordinationContext.empty()
        pos = self.position_of(agent_id)
        allies: List[Vec2] = []
        if pos is not None:
            for other_id, other in self.members.items():
                if other_id == agent_id or other.monster_type != member.monster_type:
                    continue
                other_pos = self.position_of(other_id)
                if other_pos is not None and _distance(pos, other_pos) <= self.config.radius:
                    allies.append(other_pos)

        group = self.group_of(agent_id)
        if group is None:
            return CoordinationContext(
                nearby_allies=tuple(allies),
                coordination_success=member.coordination_success,
            )
        points = [p for p in (self.position_of(aid) for aid in group.members) if p is not None]
        return CoordinationContext(
            in_group=True,
            group_id=group.group_id,
            group_size=group.size,
            strategy=group.strategy,
            formation=group.formation,
            centroid=_centroid(points) if points else None,
            nearby_allies=tuple(allies),
            suggested_action=SUGGESTED_ACTIONS[group.strategy],
            coordination_success=member.coordination_success,
        )

    def coordination_success(self, agent_id: str) -> float:
        member = self.members.get(agent_id)
        return member.coordination_success if member is not None else 0.0

    def metrics_for(self, monster_type: MonsterType) -> GroupLearningMetrics:
        return self.type_metrics.get(monster_type, GroupLearningMetrics(monster_type))

    def clear(self) -> None:
        for group in list(self.groups.values()):
            self._disband(group, "cleared")
        self.members.clear()
        self.type_metrics.clear()
        self._last_maintenance = None
