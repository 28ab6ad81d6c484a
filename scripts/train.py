"""Command-line interface for launching matrix-factorisation training."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from loguru import logger

from graphmf.pipelines import run_training
from graphmf.utils import apply_overrides, load_config


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config entry by dotted path, e.g. engine.num_workers=4.",
    )
    parser.add_argument("--log-level", default="INFO", help="Minimum loguru level to emit.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    config = apply_overrides(load_config(args.config), args.overrides)
    logger.info("Starting training with config at {}", args.config)
    results = run_training(config)
    if not isinstance(results, list):
        results = [results]
    for result in results:
        final_rmse = result.history.train_rmse[-1] if result.history.train_rmse else float("nan")
        logger.info(
            "[{}] {} done in {:.1f}s | final train RMSE = {:.6f} | checkpoint: {}",
            result.model_id,
            result.algorithm,
            result.runtime_seconds,
            final_rmse,
            result.checkpoint_path,
        )


if __name__ == "__main__":
    main()
