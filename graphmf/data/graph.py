"""
Bipartite user/item interaction graph.

The graph is addressed by internal vertex ids (see ``VertexIdTranslate``).
Users own the outgoing edges; items see the same ratings as incoming edges.
Update rules never see internal ids: the training controller hands them an
``EntityInteractions`` view expressed in entity ids.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Mapping, Optional

import numpy as np
import pandas as pd
from loguru import logger

from graphmf.errors import ConfigurationError

from .indexers import EntityIdSpace, VertexIdTranslate


@dataclass(frozen=True)
class Edge:
    """One rating as stored on a vertex; ``neighbor`` is an internal vertex id."""

    neighbor: int
    value: float
    features: Optional[Mapping[int, float]] = None


@dataclass(frozen=True)
class Vertex:
    id: int
    out_edges: tuple[Edge, ...] = ()
    in_edges: tuple[Edge, ...] = ()

    @property
    def num_out_edges(self) -> int:
        return len(self.out_edges)

    @property
    def num_in_edges(self) -> int:
        return len(self.in_edges)

    @property
    def num_edges(self) -> int:
        return self.num_out_edges + self.num_in_edges


@dataclass(frozen=True)
class Interaction:
    """A rating seen from one endpoint; ``neighbor_id`` is an entity id."""

    neighbor_id: int
    value: float
    features: Optional[Mapping[int, float]] = None


@dataclass(frozen=True)
class EntityInteractions:
    """All interactions of one entity, handed to an update rule in one call."""

    entity_id: int
    is_user: bool
    interactions: tuple[Interaction, ...]

    def __len__(self) -> int:
        return len(self.interactions)

    def neighbor_ids(self) -> list[int]:
        return [interaction.neighbor_id for interaction in self.interactions]


class InteractionGraph:
    """In-memory adjacency lists for every vertex of the bipartite graph."""

    def __init__(
        self,
        id_space: EntityIdSpace,
        translate: VertexIdTranslate,
        out_edges: list[list[Edge]],
        in_edges: list[list[Edge]],
    ) -> None:
        if len(translate) != id_space.num_entities:
            raise ValueError("Id translation must cover every entity exactly once.")
        self.id_space = id_space
        self.translate = translate
        self._vertices = [
            Vertex(id=vid, out_edges=tuple(out_edges[vid]), in_edges=tuple(in_edges[vid]))
            for vid in range(id_space.num_entities)
        ]
        self._num_edges = sum(len(edges) for edges in out_edges)

    @property
    def num_vertices(self) -> int:
        return len(self._vertices)

    @property
    def num_edges(self) -> int:
        return self._num_edges

    def vertex(self, vertex_id: int) -> Vertex:
        return self._vertices[vertex_id]

    def __iter__(self) -> Iterator[Vertex]:
        return iter(self._vertices)

    def intervals(self, num_partitions: int = 1) -> list[list[list[int]]]:
        """
        Execution intervals in processing order: the user block, then the item
        block. Each interval is split into up to ``num_partitions`` disjoint
        contiguous partitions of internal vertex ids, which may be processed
        concurrently.
        """
        num_partitions = max(int(num_partitions), 1)
        blocks = [
            range(0, self.id_space.num_users),
            range(self.id_space.num_users, self.id_space.num_entities),
        ]
        intervals: list[list[list[int]]] = []
        for block in blocks:
            if len(block) == 0:
                continue
            vertex_ids = np.array(
                [self.translate.forward(entity) for entity in block], dtype=np.int64
            )
            parts = np.array_split(vertex_ids, min(num_partitions, len(vertex_ids)))
            intervals.append([part.tolist() for part in parts if part.size])
        return intervals


def build_interaction_graph(
    ratings: pd.DataFrame,
    id_space: EntityIdSpace,
    translate: VertexIdTranslate | None = None,
) -> InteractionGraph:
    """
    Build the adjacency from a ratings frame with 0-based ``user_idx`` and
    ``item_idx`` columns, a ``rating`` column and an optional ``features``
    column of ``{feature id: value}`` mappings.
    """
    for column in ("user_idx", "item_idx", "rating"):
        if column not in ratings.columns:
            raise ConfigurationError(f"Ratings frame must contain a '{column}' column.")

    translate = translate or VertexIdTranslate.identity(id_space.num_entities)
    out_edges: list[list[Edge]] = [[] for _ in range(id_space.num_entities)]
    in_edges: list[list[Edge]] = [[] for _ in range(id_space.num_entities)]

    users = ratings["user_idx"].to_numpy(dtype=np.int64)
    items = ratings["item_idx"].to_numpy(dtype=np.int64)
    values = ratings["rating"].to_numpy(dtype=np.float64)
    features = (
        ratings["features"].tolist() if "features" in ratings.columns else [None] * len(ratings)
    )

    for user_idx, item_idx, value, edge_features in zip(users, items, values, features):
        user_vertex = translate.forward(id_space.user_entity(int(user_idx)))
        item_vertex = translate.forward(id_space.item_entity(int(item_idx)))
        if not isinstance(edge_features, Mapping) or not edge_features:
            edge_features = None
        out_edges[user_vertex].append(Edge(item_vertex, float(value), edge_features))
        in_edges[item_vertex].append(Edge(user_vertex, float(value), edge_features))

    graph = InteractionGraph(id_space, translate, out_edges, in_edges)
    logger.debug(
        "Interaction graph | vertices={} edges={}", graph.num_vertices, graph.num_edges
    )
    return graph
