"""
Lightweight local demo: a small melee pack learns across increasingly large arenas,
then plays one inference episode whose render is saved as an animated GIF.
"""

import argparse
from copy import deepcopy
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

import imageio.v3 as iio
import numpy as np

from monster_rl import (
    MonsterArena,
    MonsterType,
    ProfileConfig,
    RLSystem,
    SystemConfig,
    TrainingMode,
    run_episode,
    scenario_presets,
)
from monster_rl.renderer import render_arena_image


def save_animation(frames, path: Path, delay: float) -> None:
    """Persist frames to disk as a GIF (or other imageio-supported format)."""
    if not frames:
        return
    durations = [delay for _ in frames]
    iio.imwrite(path, frames, duration=durations)
    print(f"Saved animation to {path}")


def train_stage(*, system: RLSystem, arena: MonsterArena, episodes: int, max_steps: int) -> None:
    cfg = arena.config
    for ep in range(episodes):
        summary = run_episode(system, arena, max_steps=max_steps)
        returns = summary["returns"]
        mean_return = float(np.mean(list(returns.values()))) if returns else 0.0
        print(
            f"Stage arena {cfg.height}x{cfg.width} monsters={sum(cfg.monsters.values())} "
            f"episode {ep+1}/{episodes}: mean_return={mean_return:.3f}, steps={summary['steps']}, "
            f"degradation={summary['degradation']}"
        )


def main():
    parser = argparse.ArgumentParser(description="Run a tiny monster-learning demo locally.")
    parser.add_argument("--scenario", type=str, default="melee_pack", choices=list(scenario_presets().keys()))
    parser.add_argument("--max_steps", type=int, default=60, help="Max steps per episode per stage.")
    parser.add_argument("--episodes_per_stage", type=int, default=3, help="Number of episodes per stage.")
    parser.add_argument("--animate_delay", type=float, default=0.1, help="Delay between animation frames (seconds).")
    parser.add_argument("--save_animation", type=str, default="local_run.gif", help="Output animation file path.")
    parser.add_argument("--cell_size", type=int, default=16, help="Pixel size per arena cell in the render.")
    parser.add_argument("--profiles", type=str, default="profiles_local", help="Directory for behavior profiles.")
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    preset = scenario_presets()[args.scenario]
    stages = [
        {"height": 10, "width": 10, "count": 2},
        {"height": 14, "width": 14, "count": 3},
        {"height": 18, "width": 18, "count": 4},
    ]
    monster_type = next(iter(preset.arena.monsters), MonsterType.MELEE)

    config = SystemConfig(profiles=ProfileConfig(directory=args.profiles), seed=args.seed)
    save_path = Path(args.save_animation).resolve()

    with RLSystem(config) as system:
        arena = None
        for idx, stage in enumerate(stages):
            arena_config = deepcopy(preset.arena)
            arena_config.height = stage["height"]
            arena_config.width = stage["width"]
            arena_config.monsters = {monster_type: stage["count"]}
            arena_config.max_steps = args.max_steps
            arena_config.seed = args.seed + idx
            arena = MonsterArena(arena_config)
            print(f"Stage {idx+1}/{len(stages)}: {stage['count']} {monster_type.label} monsters.")
            train_stage(system=system, arena=arena, episodes=args.episodes_per_stage, max_steps=args.max_steps)

        # Evaluate the learned class profile without exploration and keep the frames.
        system.set_mode(TrainingMode.INFERENCE)
        eval_summary = run_episode(
            system,
            arena,
            max_steps=args.max_steps,
            render_frames=True,
            renderer=lambda world: render_arena_image(world, cell_size=args.cell_size),
        )
        if "frames" in eval_summary:
            save_animation(eval_summary["frames"], save_path, delay=args.animate_delay)


if __name__ == "__main__":
    main()
