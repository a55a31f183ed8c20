from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

import numpy as np

from .actions import Action, ActionOutcome, ActionType
from .state import MonsterType, NearbyAlly, ObjectOfInterest, ObjectType, StateSnapshot

if TYPE_CHECKING:
    from .system import RLSystem

Vec2 = Tuple[float, float]

ATTACK_RANGE: Dict[MonsterType, float] = {
    MonsterType.MELEE: 1.5,
    MonsterType.RANGED: 7.0,
    MonsterType.THROWING: 5.0,
    MonsterType.BOOMERANG: 6.0,
    MonsterType.BOSS: 2.5,
}
ATTACK_DAMAGE: Dict[MonsterType, float] = {
    MonsterType.MELEE: 10.0,
    MonsterType.RANGED: 6.0,
    MonsterType.THROWING: 8.0,
    MonsterType.BOOMERANG: 7.0,
    MonsterType.BOSS: 20.0,
}
SPECIAL_MULTIPLIER = 1.5
AMBUSH_MULTIPLIER = 2.0
ALLY_RADIUS = 10.0
MAX_ALLIES = 5
MAX_OBJECTS = 10


class TerrainType(Enum):
    FLOOR = auto()
    WALL = auto()


@dataclass
class Combatant:
    agent_id: str
    monster_type: MonsterType
    x: float
    y: float
    health: float = 100.0
    max_health: float = 100.0
    last_action: int = 0
    time_since_last_action: float = 0.0
    time_alive: float = 0.0
    defending: bool = False

    @property
    def position(self) -> Vec2:
        return (self.x, self.y)

    @property
    def alive(self) -> bool:
        return self.health > 0


@dataclass
class Player:
    x: float
    y: float
    health: float = 100.0
    velocity: Vec2 = (0.0, 0.0)
    time_since_damage: float = 999.0

    @property
    def position(self) -> Vec2:
        return (self.x, self.y)


@dataclass
class Pickup:
    object_type: ObjectType
    value: float


class ArenaWorld:
    """Walled rectangle holding the monsters, one player and some pickups."""

    def __init__(self, height: int, width: int):
        self.height = height
        self.width = width
        self.terrain = np.full((height, width), TerrainType.FLOOR, dtype=object)
        self.monsters: Dict[str, Combatant] = {}
        self.player: Optional[Player] = None
        self.pickups: Dict[Tuple[int, int], Pickup] = {}

    def in_bounds(self, row: int, col: int) -> bool:
        return 0 <= row < self.height and 0 <= col < self.width

    def is_walkable(self, row: int, col: int) -> bool:
        if not self.in_bounds(row, col):
            return False
        return self.terrain[row, col] != TerrainType.WALL

    def clamp(self, x: float, y: float) -> Vec2:
        """Keep a point inside the walkable interior."""
        return (min(max(x, 1.0), self.width - 2.0), min(max(y, 1.0), self.height - 2.0))

    def add_monster(self, monster: Combatant) -> None:
        self.monsters[monster.agent_id] = monster

    def move(self, entity, direction: Vec2, speed: float) -> None:
        dx, dy = direction
        norm = math.hypot(dx, dy)
        if norm == 0:
            return
        x, y = self.clamp(entity.x + speed * dx / norm, entity.y + speed * dy / norm)
        if self.is_walkable(int(round(y)), int(round(x))):
            entity.x, entity.y = x, y

    def living(self) -> List[Combatant]:
        return [m for m in self.monsters.values() if m.alive]


@dataclass
class ArenaConfig:
    height: int = 24
    width: int = 24
    monsters: Dict[MonsterType, int] = field(default_factory=lambda: {MonsterType.MELEE: 3})
    max_steps: int = 200
    seed: Optional[int] = None
    tick_seconds: float = 0.1
    monster_speed: float = 1.0
    player_speed: float = 0.6
    player_health: float = 100.0
    player_damage: float = 6.0
    player_attack_range: float = 1.5
    pickups: int = 4


class MonsterArena:
    """
    Toy stand-in for a game world: monsters chase a scripted player.

    The arena only exists to exercise the engine end to end. It builds
    snapshots, executes decoded actions and reports outcomes; it knows nothing
    about learning.
    """

    def __init__(self, config: Optional[ArenaConfig] = None):
        self.config = config or ArenaConfig()
        if self.config.height < 5 or self.config.width < 5:
            raise ValueError("Arena height and width must be at least 5")
        self.rng = np.random.default_rng(self.config.seed)
        self.world: Optional[ArenaWorld] = None
        self.step_count = 0
        self.elapsed = 0.0

    def reset(self) -> Dict[str, StateSnapshot]:
        cfg = self.config
        self.world = ArenaWorld(cfg.height, cfg.width)
        self.step_count = 0
        for r in range(cfg.height):
            for c in range(cfg.width):
                if r in (0, cfg.height - 1) or c in (0, cfg.width - 1):
                    self.world.terrain[r, c] = TerrainType.WALL

        px, py = cfg.width / 2.0, cfg.height / 2.0
        self.world.player = Player(px, py, health=cfg.player_health)
        for monster_type, count in cfg.monsters.items():
            for idx in range(count):
                x, y = self._sample_edge_point()
                agent_id = f"{monster_type.label.lower()}_{idx}"
                self.world.add_monster(Combatant(agent_id, monster_type, x, y))
        for _ in range(cfg.pickups):
            r, c = self._sample_floor_cell()
            kind = ObjectType(int(self.rng.integers(1, len(ObjectType))))
            self.world.pickups[(r, c)] = Pickup(kind, float(self.rng.integers(1, 50)))
        return self.snapshots()

    def _sample_floor_cell(self) -> Tuple[int, int]:
        assert self.world is not None
        while True:
            r = int(self.rng.integers(1, self.world.height - 1))
            c = int(self.rng.integers(1, self.world.width - 1))
            if self.world.terrain[r, c] == TerrainType.FLOOR:
                return r, c

    def _sample_edge_point(self) -> Vec2:
        """Random point in the outer band of the arena, away from the player."""
        assert self.world is not None
        w, h = self.world.width, self.world.height
        band = max(2.0, min(w, h) / 6.0)
        while True:
            x = float(self.rng.uniform(1.0, w - 2.0))
            y = float(self.rng.uniform(1.0, h - 2.0))
            if min(x - 1.0, w - 2.0 - x, y - 1.0, h - 2.0 - y) <= band:
                return (x, y)

    def position_of(self, agent_id: str) -> Optional[Vec2]:
        if self.world is None:
            return None
        monster = self.world.monsters.get(agent_id)
        if monster is None or not monster.alive:
            return None
        return monster.position

    def position_provider(self, agent_id: str) -> Callable[[], Optional[Vec2]]:
        return lambda: self.position_of(agent_id)

    def snapshot(self, agent_id: str) -> StateSnapshot:
        assert self.world is not None and self.world.player is not None
        me = self.world.monsters[agent_id]
        player = self.world.player

        allies = []
        for other in self.world.living():
            if other.agent_id == agent_id:
                continue
            d = math.hypot(other.x - me.x, other.y - me.y)
            if d <= ALLY_RADIUS:
                allies.append((d, NearbyAlly(other.position, other.monster_type, other.health, other.last_action)))
        allies.sort(key=lambda pair: pair[0])

        objects = []
        for (r, c), pickup in self.world.pickups.items():
            d = math.hypot(c - me.x, r - me.y)
            objects.append((d, ObjectOfInterest((float(c), float(r)), pickup.object_type, pickup.value)))
        objects.sort(key=lambda pair: pair[0])

        return StateSnapshot(
            position=me.position,
            health=me.health,
            max_health=me.max_health,
            last_action=me.last_action,
            time_since_last_action=me.time_since_last_action,
            time_alive=me.time_alive,
            opponent_position=player.position,
            opponent_velocity=player.velocity,
            opponent_health=player.health,
            time_since_opponent_damage=player.time_since_damage,
            allies=tuple(a for _, a in allies[:MAX_ALLIES]),
            objects=tuple(o for _, o in objects[:MAX_OBJECTS]),
        )

    def snapshots(self) -> Dict[str, StateSnapshot]:
        assert self.world is not None
        return {m.agent_id: self.snapshot(m.agent_id) for m in self.world.living()}

    def step(
        self,
        actions: Dict[str, Action],
        indices: Optional[Dict[str, int]] = None,
    ) -> Tuple[Dict[str, StateSnapshot], Dict[str, ActionOutcome], Dict[str, bool], Dict]:
        assert self.world is not None and self.world.player is not None, "Arena not reset."
        cfg = self.config
        world = self.world
        player = world.player
        self.step_count += 1
        self.elapsed += cfg.tick_seconds
        indices = indices or {}

        dealt: Dict[str, float] = {}
        for agent_id, action in actions.items():
            monster = world.monsters.get(agent_id)
            if monster is None or not monster.alive:
                continue
            monster.defending = action.action_type == ActionType.DEFENSIVE_STANCE
            dealt[agent_id] = self._apply_action(monster, action)
            if agent_id in indices:
                monster.last_action = indices[agent_id]
            monster.time_since_last_action = 0.0 if action.action_type != ActionType.WAIT else (
                monster.time_since_last_action + cfg.tick_seconds
            )

        total_dealt = sum(dealt.values())
        player.health = max(0.0, player.health - total_dealt)
        player.time_since_damage = 0.0 if total_dealt > 0 else player.time_since_damage + cfg.tick_seconds

        taken = self._player_turn()

        hitters = {aid for aid, dmg in dealt.items() if dmg > 0}
        outcomes: Dict[str, ActionOutcome] = {}
        dones: Dict[str, bool] = {}
        for agent_id, monster in world.monsters.items():
            if agent_id not in actions:
                continue
            monster.time_alive += cfg.tick_seconds
            damage = taken.get(agent_id, 0.0)
            hit = dealt.get(agent_id, 0.0) > 0
            action = actions[agent_id]
            coordinated = self._coordinated(monster, action, hit, hitters)
            outcomes[agent_id] = ActionOutcome(
                hit_player=hit,
                damage_dealt=dealt.get(agent_id, 0.0),
                took_damage=damage > 0,
                damage_taken=damage,
                coordinated=coordinated,
                distance_to_player=math.hypot(player.x - monster.x, player.y - monster.y),
            )
            dones[agent_id] = not monster.alive

        snapshots = {aid: self.snapshot(aid) for aid in outcomes}
        dones["__all__"] = player.health <= 0 or self.step_count >= cfg.max_steps or not world.living()
        info = {
            "player_health": player.health,
            "monsters_alive": len(world.living()),
            "damage_to_player": total_dealt,
        }
        return snapshots, outcomes, dones, info

    def _apply_action(self, monster: Combatant, action: Action) -> float:
        """Execute one monster action; returns damage dealt to the player."""
        world = self.world
        player = world.player
        kind = action.action_type
        distance = math.hypot(player.x - monster.x, player.y - monster.y)
        reach = ATTACK_RANGE.get(monster.monster_type, 1.5)
        base = ATTACK_DAMAGE.get(monster.monster_type, 5.0)
        if kind == ActionType.MOVE:
            world.move(monster, action.direction, self.config.monster_speed)
        elif kind == ActionType.RETREAT:
            world.move(monster, action.direction, self.config.monster_speed * 1.2)
        elif kind == ActionType.ATTACK and distance <= reach:
            return base * action.intensity
        elif kind == ActionType.SPECIAL_ATTACK and distance <= reach * 1.2:
            return base * SPECIAL_MULTIPLIER
        elif kind == ActionType.AMBUSH and distance <= reach * 1.5 and player.time_since_damage > 1.0:
            return base * AMBUSH_MULTIPLIER
        elif kind == ActionType.COORDINATE:
            ally = self._nearest_ally(monster)
            if ally is not None:
                world.move(monster, (ally.x - monster.x, ally.y - monster.y), self.config.monster_speed * 0.5)
        return 0.0

    def _nearest_ally(self, monster: Combatant) -> Optional[Combatant]:
        best, best_d = None, math.inf
        for other in self.world.living():
            if other.agent_id == monster.agent_id or other.monster_type != monster.monster_type:
                continue
            d = math.hypot(other.x - monster.x, other.y - monster.y)
            if d < best_d:
                best, best_d = other, d
        return best

    def _coordinated(self, monster: Combatant, action: Action, hit: bool, hitters: set) -> bool:
        """A coordinate action, or a hit landed together with a nearby same-class ally."""
        if action.action_type == ActionType.COORDINATE:
            return any(
                self.world.monsters[aid].monster_type == monster.monster_type
                and math.hypot(self.world.monsters[aid].x - monster.x, self.world.monsters[aid].y - monster.y)
                <= ALLY_RADIUS
                for aid in hitters
            )
        if not hit:
            return False
        for aid in hitters:
            other = self.world.monsters[aid]
            if aid != monster.agent_id and other.monster_type == monster.monster_type:
                return True
        return False

    def _player_turn(self) -> Dict[str, float]:
        """Scripted player: strike the closest monster in reach, otherwise walk toward it."""
        world = self.world
        player = world.player
        taken: Dict[str, float] = {}
        living = world.living()
        if player.health <= 0 or not living:
            player.velocity = (0.0, 0.0)
            return taken
        target = min(living, key=lambda m: math.hypot(m.x - player.x, m.y - player.y))
        distance = math.hypot(target.x - player.x, target.y - player.y)
        if distance <= self.config.player_attack_range:
            damage = self.config.player_damage * (0.5 if target.defending else 1.0)
            target.health = max(0.0, target.health - damage)
            taken[target.agent_id] = damage
            player.velocity = (0.0, 0.0)
            return taken
        before = player.position
        world.move(player, (target.x - player.x, target.y - player.y), self.config.player_speed)
        dt = self.config.tick_seconds
        player.velocity = ((player.x - before[0]) / dt, (player.y - before[1]) / dt)
        return taken


def run_episode(
    system: "RLSystem",
    arena: MonsterArena,
    max_steps: Optional[int] = None,
    *,
    render_frames: bool = False,
    renderer: Optional[Callable[[ArenaWorld], object]] = None,
) -> Dict:
    """Play one arena episode through the system and return a summary."""
    max_steps = max_steps or arena.config.max_steps
    states = arena.reset()
    for agent_id in states:
        monster = arena.world.monsters[agent_id]
        agent = system.spawn(monster.monster_type, agent_id, arena.position_provider(agent_id))
        agent.start_episode()

    returns: Dict[str, float] = {aid: 0.0 for aid in states}
    frames: Optional[List[object]] = [] if render_frames else None
    render_fn = renderer
    if frames is not None and render_fn is None:
        from .renderer import render_arena

        render_fn = render_arena
    if frames is not None:
        frames.append(render_fn(arena.world))

    steps = 0
    info: Dict = {}
    for _ in range(max_steps):
        report = system.tick(arena.elapsed, decisions=states)
        for aid, reward in report.rewards.items():
            returns[aid] = returns.get(aid, 0.0) + reward
        next_states, outcomes, dones, info = arena.step(report.actions, report.action_indices)
        finished = dones.pop("__all__") or steps + 1 >= max_steps
        for aid, outcome in outcomes.items():
            system.report_outcome(
                aid,
                states[aid],
                report.action_indices[aid],
                next_states[aid],
                outcome,
                terminal=dones[aid] or finished,
            )
        states = {aid: s for aid, s in next_states.items() if not dones[aid]}
        steps += 1
        if frames is not None:
            frames.append(render_fn(arena.world))
        if finished:
            break

    for aid, reward in system.coordinator.flush_outcomes().items():
        returns[aid] = returns.get(aid, 0.0) + reward

    summary = {
        "returns": returns,
        "steps": steps,
        "player_health": info.get("player_health", arena.world.player.health),
        "monsters_alive": info.get("monsters_alive", len(arena.world.living())),
        "degradation": system.monitor.level.name,
    }
    if frames is not None:
        summary["frames"] = frames
    return summary
