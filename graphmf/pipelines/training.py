"""
Training orchestration entry point.

This module couples data loading, feature-cache and graph construction,
model assembly from config blocks, the iteration driver, checkpointing, and
validation scoring, keeping scripts thin while remaining testable.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd
import torch
from loguru import logger

from graphmf.data import (
    DatasetArtifacts,
    DatasetDescription,
    EntityIdSpace,
    FeatureCache,
    VertexIdTranslate,
    build_interaction_graph,
    infer_edge_feature_width,
    load_dataset,
)
from graphmf.errors import ConfigurationError, IOFailure
from graphmf.evaluation import RatingMetrics, compute_rating_metrics
from graphmf.models import ModelParameters, SvdppRule, build_update_rule
from graphmf.models.rules import FactorizationMachineRule
from graphmf.reporting import save_rmse_curves
from graphmf.utils import get_by_dotted_path, stringify_params

from .controller import GraphContext, TrainingController, TrainingHistory
from .driver import GraphDriver

MODEL_NAME_KEY = "algorithm"
MODEL_ID_KEY = "id"
MIB = 1024 * 1024


@dataclass
class TrainingResult:
    model_id: str
    algorithm: str
    history: TrainingHistory
    runtime_seconds: float
    checkpoint_path: Path | None
    validation_metrics: RatingMetrics | None
    estimated_memory_bytes: int
    rmse_plot_path: Path | None = None


def _seed_everything(seed: int) -> None:
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def _split_train_validation(
    ratings: pd.DataFrame,
    *,
    validation_fraction: float | None,
    seed: int | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Hold out a random fraction of ratings for validation scoring."""
    fraction = float(validation_fraction or 0.0)
    if fraction <= 0.0 or ratings.empty:
        return ratings.reset_index(drop=True), ratings.iloc[0:0]
    if fraction >= 1.0:
        raise ConfigurationError("validation_fraction must be below 1.0")

    rng = np.random.default_rng(seed)
    size = max(1, int(round(len(ratings) * fraction)))
    if size >= len(ratings):
        logger.warning(
            "Validation split would consume every rating; training without hold-out."
        )
        return ratings.reset_index(drop=True), ratings.iloc[0:0]
    held_out = rng.choice(ratings.index.to_numpy(), size=size, replace=False)
    val_df = ratings.loc[held_out].reset_index(drop=True)
    train_df = ratings.drop(index=held_out).reset_index(drop=True)
    return train_df, val_df


def build_feature_cache(
    dataset: DatasetArtifacts, *, num_features: int | None = None
) -> FeatureCache:
    """
    Build the feature cache for a loaded dataset.

    The feature space must cover side features and the edge features carried
    on rating lines; a configured ``num_features`` narrower than that is an
    error.
    """
    edge_width = infer_edge_feature_width(dataset.ratings)
    if num_features is not None and edge_width > int(num_features):
        raise ConfigurationError(
            f"num_features={num_features} does not cover edge feature id {edge_width - 1}"
        )
    description = dataset.description
    return FeatureCache.from_frames(
        num_users=description.num_users,
        num_items=description.num_items,
        user_features=dataset.user_features,
        item_features=dataset.item_features,
        num_features=num_features,
        min_num_features=edge_width,
    )


def build_recommenders(
    description: DatasetDescription,
    model_configs: Sequence[Mapping[str, Any]],
    *,
    features: FeatureCache | None = None,
    output_dir: str | Path | None = None,
    restore_from: str | Path | None = None,
) -> list[TrainingController]:
    """
    Build one training controller per model block.

    Every block needs an ``algorithm`` key; ``id`` defaults to the algorithm
    name. Remaining keys are the model's hyperparameters. When
    ``restore_from`` holds a checkpoint for a model id, training resumes from
    it instead of re-randomising.
    """
    controllers: list[TrainingController] = []
    seen_ids: set[str] = set()
    for block in model_configs:
        if not isinstance(block, Mapping) or MODEL_NAME_KEY not in block:
            raise ConfigurationError(f"Model block must name an '{MODEL_NAME_KEY}': {block!r}")
        params_map = stringify_params(block)
        algorithm = params_map[MODEL_NAME_KEY]
        model_id = params_map.get(MODEL_ID_KEY, algorithm)
        if model_id in seen_ids:
            raise ConfigurationError(f"Duplicate model id '{model_id}'")
        seen_ids.add(model_id)

        rule = build_update_rule(algorithm)
        params = None
        if restore_from is not None:
            manifest = ModelParameters.manifest_path(Path(restore_from), model_id)
            if manifest.exists():
                params = ModelParameters.restore(Path(restore_from), model_id)
            else:
                logger.info("[{}] no checkpoint under {}; starting fresh", model_id, restore_from)
        if params is None:
            params = ModelParameters(model_id, params_map)

        controllers.append(
            TrainingController(
                description,
                params,
                rule,
                features=features,
                output_location=output_dir,
            )
        )
    return controllers


def _validation_predictor(controller: TrainingController, train_df: pd.DataFrame, id_space: EntityIdSpace):
    params = controller.get_trained_parameters()
    rule = controller.rule
    if isinstance(rule, SvdppRule):
        history: dict[int, list[int]] = {}
        for user_idx, item_idx in zip(train_df["user_idx"], train_df["item_idx"]):
            history.setdefault(id_space.user_entity(int(user_idx)), []).append(
                id_space.item_entity(int(item_idx))
            )
        return lambda user, item: SvdppRule.predict(params, user, item, history.get(user, []))
    if isinstance(rule, FactorizationMachineRule):
        return lambda user, item: FactorizationMachineRule.predict(
            params, user, item, controller.features
        )
    return params.predict


def _checkpoint_callback(every: int):
    def _callback(controller: TrainingController, context: GraphContext) -> None:
        if controller.has_converged() or controller.iteration_num % every:
            return
        try:
            controller.checkpoint()
        except IOFailure:
            logger.warning(
                "[{}] continuing in memory after failed checkpoint at iteration {}",
                controller.model_id,
                controller.iteration_num,
            )

    return _callback


def run_training(config: Mapping[str, Any]) -> list[TrainingResult] | TrainingResult:
    experiment_cfg = dict(config.get("experiment", {}))
    seed = experiment_cfg.get("seed")
    if seed is not None:
        _seed_everything(int(seed))

    data_cfg = dict(config.get("data", {}))
    engine_cfg = dict(config.get("engine", {}))
    output_cfg = dict(config.get("output", {}))
    model_configs = config.get("models") or []
    if not model_configs:
        raise ConfigurationError("Config must list at least one model under 'models'.")

    dataset = load_dataset(data_cfg, ratings_limit=data_cfg.get("ratings_limit"))
    description = dataset.description
    id_space = EntityIdSpace(description.num_users, description.num_items)

    train_df, val_df = _split_train_validation(
        dataset.ratings,
        validation_fraction=data_cfg.get("validation_fraction"),
        seed=None if seed is None else int(seed),
    )
    logger.info("Split ratings | train={} validation={}", len(train_df), len(val_df))

    features = build_feature_cache(dataset, num_features=data_cfg.get("num_features"))

    translate = None
    if engine_cfg.get("shuffle_vertex_ids", False):
        translate = VertexIdTranslate.shuffled(id_space.num_entities, seed=seed)
    graph = build_interaction_graph(train_df, id_space, translate)

    checkpoint_dir = output_cfg.get("checkpoint_dir")
    controllers = build_recommenders(
        description,
        [dict(block) for block in model_configs],
        features=features,
        output_dir=checkpoint_dir,
        restore_from=output_cfg.get("restore_from"),
    )

    estimates = {c.model_id: c.get_estimated_memory_usage() for c in controllers}
    for model_id, estimate in estimates.items():
        logger.info("[{}] estimated parameter memory {:.1f} MiB", model_id, estimate / MIB)
    budget_mb = engine_cfg.get("memory_budget_mb")
    if budget_mb is not None:
        total = sum(estimates.values()) + features.estimate_memory_bytes()
        if total > float(budget_mb) * MIB:
            logger.warning(
                "Estimated resident memory {:.1f} MiB exceeds the {} MiB budget; "
                "parameters would need to be sharded.",
                total / MIB,
                budget_mb,
            )

    driver = GraphDriver(
        graph,
        num_workers=int(engine_cfg.get("num_workers", 1)),
        num_partitions=engine_cfg.get("num_partitions"),
    )
    checkpoint_every = engine_cfg.get("checkpoint_every")
    callback = None
    if checkpoint_dir and checkpoint_every:
        callback = _checkpoint_callback(int(checkpoint_every))

    results: list[TrainingResult] = []
    for controller in controllers:
        start_time = time.time()
        logger.info(
            "[{}] training {} for {} iteration(s)",
            controller.model_id,
            controller.rule.name,
            controller.max_iterations,
        )
        driver.run(controller, on_iteration_end=callback)

        checkpoint_path = None
        if checkpoint_dir and controller.get_trained_parameters().is_initialized:
            try:
                checkpoint_path = controller.checkpoint()
            except IOFailure:
                logger.warning("[{}] final checkpoint was not persisted", controller.model_id)

        validation = None
        if not val_df.empty and controller.get_trained_parameters().is_initialized:
            predictor = _validation_predictor(controller, train_df, id_space)
            validation = compute_rating_metrics(predictor, val_df, id_space)
            logger.info(
                "[{}] validation | RMSE = {:.6f} MAE = {:.6f} (n={})",
                controller.model_id,
                validation.rmse,
                validation.mae,
                validation.count,
            )

        results.append(
            TrainingResult(
                model_id=controller.model_id,
                algorithm=controller.rule.name,
                history=controller.history,
                runtime_seconds=time.time() - start_time,
                checkpoint_path=checkpoint_path,
                validation_metrics=validation,
                estimated_memory_bytes=estimates[controller.model_id],
            )
        )

    plot_path = get_by_dotted_path(config, "output.rmse_plot")
    if plot_path:
        series = {result.model_id: result.history.train_rmse for result in results}
        try:
            saved = save_rmse_curves(series, output_path=plot_path)
        except ValueError:
            logger.warning("No RMSE history recorded; skipping plot.")
        else:
            for result in results:
                result.rmse_plot_path = saved

    if len(results) == 1:
        return results[0]
    return results
