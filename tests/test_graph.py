import pandas as pd
import pytest

from graphmf.data import EntityIdSpace, VertexIdTranslate, build_interaction_graph
from graphmf.errors import ConfigurationError, InvariantViolationError


def _ratings():
    return pd.DataFrame(
        {
            "user_idx": [0, 0, 2],
            "item_idx": [0, 1, 1],
            "rating": [5.0, 3.0, 1.0],
            "features": [None, {0: 1.0}, None],
        }
    )


def test_build_interaction_graph_links_users_to_items():
    space = EntityIdSpace(num_users=3, num_items=2)

    graph = build_interaction_graph(_ratings(), space)

    assert graph.num_vertices == 5
    assert graph.num_edges == 3
    user0 = graph.vertex(0)
    assert [(e.neighbor, e.value) for e in user0.out_edges] == [(3, 5.0), (4, 3.0)]
    assert user0.out_edges[1].features == {0: 1.0}
    assert user0.num_in_edges == 0
    assert graph.vertex(1).num_edges == 0
    item1 = graph.vertex(4)
    assert [(e.neighbor, e.value) for e in item1.in_edges] == [(0, 3.0), (2, 1.0)]


def test_build_interaction_graph_uses_internal_ids():
    space = EntityIdSpace(num_users=3, num_items=2)
    translate = VertexIdTranslate.shuffled(space.num_entities, seed=11)

    graph = build_interaction_graph(_ratings(), space, translate)

    user0 = graph.vertex(translate.forward(0))
    neighbours = sorted(translate.backward(e.neighbor) for e in user0.out_edges)
    assert neighbours == [3, 4]


def test_intervals_process_users_before_items():
    space = EntityIdSpace(num_users=3, num_items=2)
    graph = build_interaction_graph(_ratings(), space)

    intervals = graph.intervals(num_partitions=2)

    assert intervals == [[[0, 1], [2]], [[3], [4]]]


def test_build_interaction_graph_validates_input():
    space = EntityIdSpace(num_users=1, num_items=1)

    with pytest.raises(ConfigurationError):
        build_interaction_graph(pd.DataFrame({"user_idx": [0]}), space)
    with pytest.raises(InvariantViolationError):
        build_interaction_graph(
            pd.DataFrame({"user_idx": [0], "item_idx": [1], "rating": [1.0]}), space
        )
