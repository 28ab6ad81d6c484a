import math
from dataclasses import dataclass

import pandas as pd
import pytest

from graphmf.data import DatasetDescription, EntityIdSpace, VertexIdTranslate, build_interaction_graph
from graphmf.models import ModelParameters
from graphmf.pipelines import GraphDriver, TrainingController


@dataclass(frozen=True)
class ConstantErrorRule:
    """Reports the rating itself as the error and never touches parameters."""

    name: str = "ConstantError"
    visits: str = "users"

    def prepare(self, params, features):
        return None

    def apply_update(self, params, vertex, features=None):
        return sum(interaction.value ** 2 for interaction in vertex.interactions)


class FailingRule(ConstantErrorRule):
    def apply_update(self, params, vertex, features=None):
        raise RuntimeError("boom")


def _graph(num_users, num_items, ratings_per_user, translate=None):
    rows = [
        (user, (user + offset) % num_items, 2.0)
        for user in range(num_users)
        for offset in range(ratings_per_user)
    ]
    frame = pd.DataFrame(rows, columns=["user_idx", "item_idx", "rating"])
    return build_interaction_graph(frame, EntityIdSpace(num_users, num_items), translate)


def _controller(num_users, num_items, rule, iterations=2):
    return TrainingController(
        DatasetDescription(num_users=num_users, num_items=num_items),
        ModelParameters("drv", {"latentFactors": "2", "maxIterations": str(iterations), "seed": "3"}),
        rule,
    )


@pytest.mark.parametrize("num_workers", [1, 4, 16])
def test_concurrent_error_accumulation_is_exact(num_workers):
    graph = _graph(400, 25, ratings_per_user=5)
    controller = _controller(400, 25, ConstantErrorRule())

    GraphDriver(graph, num_workers=num_workers, num_partitions=num_workers * 4).run(controller)

    # Every interaction contributes exactly 4.0, so sqrt(4N / N) == 2.
    assert controller.history.train_rmse == [2.0, 2.0]


def test_item_vertices_are_not_visited_by_user_side_rules():
    graph = _graph(3, 2, ratings_per_user=1)
    controller = _controller(3, 2, ConstantErrorRule(), iterations=1)

    GraphDriver(graph, num_workers=2).run(controller)

    assert controller.train_rmse == 2.0


def test_shuffled_ids_do_not_change_accumulated_error():
    translate = VertexIdTranslate.shuffled(30, seed=5)
    graph = _graph(20, 10, ratings_per_user=3, translate=translate)
    controller = _controller(20, 10, ConstantErrorRule(), iterations=1)

    GraphDriver(graph, num_workers=3).run(controller)

    assert controller.train_rmse == 2.0


def test_worker_exceptions_propagate():
    graph = _graph(8, 4, ratings_per_user=1)
    controller = _controller(8, 4, FailingRule())

    with pytest.raises(RuntimeError, match="boom"):
        GraphDriver(graph, num_workers=4).run(controller)


def test_iteration_callback_sees_every_pass():
    graph = _graph(4, 2, ratings_per_user=1)
    controller = _controller(4, 2, ConstantErrorRule(), iterations=3)
    seen = []

    GraphDriver(graph).run(
        controller, on_iteration_end=lambda ctrl, ctx: seen.append((ctx.iteration, ctrl.iteration_num))
    )

    assert seen == [(0, 1), (1, 2), (2, 3)]
    assert all(not math.isnan(value) for value in controller.history.train_rmse)


def test_driver_rejects_non_positive_workers():
    with pytest.raises(ValueError):
        GraphDriver(_graph(1, 1, ratings_per_user=1), num_workers=0)
