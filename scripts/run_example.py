import argparse
import json
import logging
from copy import deepcopy
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

import numpy as np

from monster_rl import (
    MonsterArena,
    ProfileConfig,
    RLSystem,
    SystemConfig,
    TrainingMode,
    run_episode,
    scenario_presets,
)
from monster_rl.logging_utils import configure_logging


def main():
    parser = argparse.ArgumentParser(description="Train monsters against a scripted player in the toy arena.")
    parser.add_argument("--scenario", type=str, default="melee_pack", choices=list(scenario_presets().keys()))
    parser.add_argument("--episodes", type=int, default=5)
    parser.add_argument("--mode", type=str, default="training", choices=[m.name.lower() for m in TrainingMode])
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--log_path", type=str, default=None, help="Optional JSONL log of episode summaries.")
    parser.add_argument("--profiles", type=str, default="profiles", help="Directory for behavior profiles.")
    parser.add_argument("--config", type=str, default=None, help="Optional JSON file with SystemConfig overrides.")
    parser.add_argument("--render_every", type=int, default=0, help="If >0, print the arena every N episodes.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.config:
        config = SystemConfig.from_dict(json.loads(Path(args.config).read_text(encoding="utf-8")))
    else:
        config = SystemConfig()
    config.profiles = ProfileConfig(directory=args.profiles)
    config.log_path = args.log_path
    if args.seed is not None:
        config.seed = args.seed

    preset = scenario_presets()[args.scenario]
    arena_config = deepcopy(preset.arena)
    arena_config.seed = args.seed
    arena = MonsterArena(arena_config)

    with RLSystem(config) as system:
        system.set_mode(TrainingMode[args.mode.upper()])
        for ep in range(args.episodes):
            summary = run_episode(system, arena)
            returns = summary["returns"]
            mean_return = float(np.mean(list(returns.values()))) if returns else 0.0
            print(
                f"Episode {ep+1}/{args.episodes}: mean_return={mean_return:.3f}, steps={summary['steps']}, "
                f"player_health={summary['player_health']:.1f}, alive={summary['monsters_alive']}, "
                f"degradation={summary['degradation']}"
            )
            if args.render_every and (ep + 1) % args.render_every == 0:
                from monster_rl.renderer import render_arena

                print(render_arena(arena.world))  # type: ignore[arg-type]

        for label, row in system.metrics().items():
            print(
                f"{label}: agents={row['agents']} episodes={row['episodes']} "
                f"avg_reward={row['average_reward']:.3f} epsilon={row['exploration_rate']:.3f} "
                f"groups={row['coordination']['active_group_count']}"
            )
        print(f"Saved {system.save_all()} profiles to {system.store.directory}")


if __name__ == "__main__":
    main()
