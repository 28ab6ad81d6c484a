"""Report the advisory resident-memory estimate for every configured model."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from loguru import logger

from graphmf.data import load_dataset
from graphmf.pipelines import build_feature_cache, build_recommenders
from graphmf.utils import apply_overrides, load_config

MIB = 1024 * 1024


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE")
    parser.add_argument("--log-level", default="INFO", help="Minimum loguru level to emit.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    config = apply_overrides(load_config(args.config), args.overrides)
    data_cfg = config.get("data", {})
    dataset = load_dataset(data_cfg, ratings_limit=data_cfg.get("ratings_limit"))
    description = dataset.description
    features = build_feature_cache(dataset, num_features=data_cfg.get("num_features"))
    controllers = build_recommenders(description, config.get("models") or [], features=features)

    total = features.estimate_memory_bytes()
    print(f"feature cache\t{total}\t{total / MIB:.2f} MiB")
    for controller in controllers:
        estimate = controller.get_estimated_memory_usage()
        total += estimate
        print(f"{controller.model_id}\t{estimate}\t{estimate / MIB:.2f} MiB")
    print(f"total\t{total}\t{total / MIB:.2f} MiB")

    budget_mb = config.get("engine", {}).get("memory_budget_mb")
    if budget_mb is not None and total > float(budget_mb) * MIB:
        logger.warning("Estimate exceeds the {} MiB budget; parameters must be sharded.", budget_mb)


if __name__ == "__main__":
    main()
