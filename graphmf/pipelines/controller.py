"""
Training-iteration lifecycle driven by an external graph engine.

The engine calls ``begin_iteration``, then ``update`` once per vertex
(possibly from several worker threads, each owning a disjoint partition of
vertices), then ``end_iteration``. The controller lazily initialises the
parameters on the first pass, dispatches each vertex to the update rule,
accumulates squared error exactly across threads, and reports convergence
once ``max_iterations`` passes have completed.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loguru import logger

from graphmf.data.features import FeatureCache
from graphmf.data.graph import EntityInteractions, Interaction, Vertex
from graphmf.data.indexers import EntityIdSpace, VertexIdTranslate
from graphmf.data.loaders import DatasetDescription
from graphmf.errors import CorruptCheckpointError, InvalidStateError, IOFailure
from graphmf.models.parameters import ModelParameters
from graphmf.models.rules import UpdateRule


class TrainingState(Enum):
    UNINITIALIZED = "uninitialized"
    ITERATING = "iterating"
    CONVERGED = "converged"


@dataclass(frozen=True)
class GraphContext:
    """What the engine exposes to a program during one iteration."""

    iteration: int
    num_edges: int
    id_translate: VertexIdTranslate


@dataclass
class TrainingHistory:
    train_rmse: list[float] = field(default_factory=list)


class TrainingController:
    """Iteration state machine around one model's parameters and update rule."""

    def __init__(
        self,
        description: DatasetDescription,
        params: ModelParameters,
        rule: UpdateRule,
        *,
        features: FeatureCache | None = None,
        output_location: str | Path | None = None,
    ) -> None:
        self.description = description
        self.id_space = EntityIdSpace(description.num_users, description.num_items)
        self.params = params
        self.rule = rule
        self.features = features
        self.output_location = Path(output_location) if output_location is not None else None
        self.history = TrainingHistory()
        self.train_rmse = 0.0
        self.iteration_num = 0
        self.state = TrainingState.UNINITIALIZED
        self._squared_error = 0.0
        self._in_iteration = False
        self._lock = threading.Lock()
        if params.is_restored:
            self._check_restored_dimensions()

    @property
    def model_id(self) -> str:
        return self.params.id

    @property
    def max_iterations(self) -> int:
        return self.params.hyperparameters.max_iterations

    @property
    def serialized_output_location(self) -> Path | None:
        return self.output_location

    def begin_iteration(self, context: GraphContext) -> None:
        if self.state is TrainingState.CONVERGED:
            raise InvalidStateError(f"[{self.model_id}] training has already converged.")
        if self.state is TrainingState.UNINITIALIZED:
            if self.params.is_restored:
                logger.info("[{}] resuming from restored parameters", self.model_id)
            else:
                self.params.initialize(self.id_space.num_users, self.id_space.num_items)
            self.rule.prepare(self.params, self.features)
            self.state = TrainingState.ITERATING
        with self._lock:
            self._squared_error = 0.0
        self._in_iteration = True

    def _check_restored_dimensions(self) -> None:
        restored = (self.params.num_users, self.params.num_items)
        expected = (self.id_space.num_users, self.id_space.num_items)
        if restored != expected:
            raise CorruptCheckpointError(
                f"[{self.model_id}] checkpoint holds {restored[0]} users x {restored[1]} items "
                f"but the dataset has {expected[0]} x {expected[1]}"
            )

    def update(self, vertex: Vertex, context: GraphContext) -> None:
        """Apply the update rule to one vertex's interactions."""
        if self.state is not TrainingState.ITERATING:
            raise InvalidStateError(
                f"[{self.model_id}] update called in state {self.state.value}"
            )
        if vertex.num_edges == 0:
            return

        is_user = vertex.num_out_edges > 0
        if not is_user and self.rule.visits == "users":
            return

        translate = context.id_translate
        entity_id = translate.backward(vertex.id)
        if is_user:
            self.id_space.check_user(entity_id)
            edges = vertex.out_edges
        else:
            self.id_space.check_item(entity_id)
            edges = vertex.in_edges

        interactions = []
        for edge in edges:
            neighbor_id = translate.backward(edge.neighbor)
            if is_user:
                self.id_space.check_item(neighbor_id)
            else:
                self.id_space.check_user(neighbor_id)
            interactions.append(Interaction(neighbor_id, edge.value, edge.features))

        squared_error = self.rule.apply_update(
            self.params,
            EntityInteractions(entity_id, is_user, tuple(interactions)),
            self.features,
        )
        with self._lock:
            self._squared_error += squared_error

    def end_iteration(self, context: GraphContext) -> None:
        if self.state is not TrainingState.ITERATING:
            raise InvalidStateError(
                f"[{self.model_id}] end_iteration called in state {self.state.value}"
            )
        with self._lock:
            squared_error = self._squared_error
            self._squared_error = 0.0

        if context.num_edges > 0:
            self.train_rmse = math.sqrt(squared_error / context.num_edges)
        else:
            logger.warning("[{}] iteration saw no interactions; RMSE undefined", self.model_id)
            self.train_rmse = float("nan")
        if context.num_edges > 0 and not math.isfinite(self.train_rmse):
            logger.warning(
                "[{}] train RMSE is not finite at iteration {}; parameters may have diverged",
                self.model_id,
                self.iteration_num,
            )

        self.history.train_rmse.append(self.train_rmse)
        self.iteration_num += 1
        self._in_iteration = False
        logger.info(
            "[{}] iteration {}/{} | train RMSE = {:.6f}",
            self.model_id,
            self.iteration_num,
            self.max_iterations,
            self.train_rmse,
        )
        if self.iteration_num >= self.max_iterations:
            self.state = TrainingState.CONVERGED

    def has_converged(self) -> bool:
        return self.iteration_num == self.max_iterations

    def get_estimated_memory_usage(self) -> int:
        return self.params.get_estimated_memory_usage(self.description)

    def get_trained_parameters(self) -> ModelParameters:
        return self.params

    def checkpoint(self, directory: str | Path | None = None) -> Path:
        """
        Persist the parameters between iterations or after convergence.

        I/O failures are logged and re-raised as ``IOFailure``; the in-memory
        parameters are left untouched so training can continue.
        """
        if self._in_iteration:
            raise InvalidStateError(
                f"[{self.model_id}] cannot checkpoint while an iteration is in flight."
            )
        target = Path(directory) if directory is not None else self.output_location
        if target is None:
            raise InvalidStateError(f"[{self.model_id}] no checkpoint location configured.")
        try:
            return self.params.checkpoint(target)
        except IOFailure as exc:
            logger.error(
                "[{}] checkpoint to {} did not persist: {}", self.model_id, target, exc
            )
            raise
