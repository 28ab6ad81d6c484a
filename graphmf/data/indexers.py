"""
Indexing utilities for the shared user/item entity id space.

Ratings files carry 1-based user and item indices; users occupy
``[0, num_users)`` and items ``[num_users, num_users + num_items)`` of the
entity space. The graph engine may further permute entity ids into internal
vertex ids, which ``VertexIdTranslate`` undoes.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from graphmf.errors import InvariantViolationError


@dataclass(frozen=True)
class EntityIdSpace:
    """Shared id space for users and items, plus one reserved sentinel row."""

    num_users: int
    num_items: int

    def __post_init__(self) -> None:
        if self.num_users < 0 or self.num_items < 0:
            raise ValueError("num_users and num_items must be non-negative.")

    @property
    def num_entities(self) -> int:
        return self.num_users + self.num_items

    @property
    def num_rows(self) -> int:
        return self.num_entities + 1

    def user_entity(self, user_idx: int) -> int:
        if not 0 <= user_idx < self.num_users:
            raise InvariantViolationError(
                f"User index {user_idx} outside [0, {self.num_users})"
            )
        return int(user_idx)

    def item_entity(self, item_idx: int) -> int:
        if not 0 <= item_idx < self.num_items:
            raise InvariantViolationError(
                f"Item index {item_idx} outside [0, {self.num_items})"
            )
        return self.num_users + int(item_idx)

    def is_user(self, entity_id: int) -> bool:
        return 0 <= entity_id < self.num_users

    def is_item(self, entity_id: int) -> bool:
        return self.num_users <= entity_id < self.num_entities

    def check_user(self, entity_id: int) -> int:
        if not self.is_user(entity_id):
            raise InvariantViolationError(
                f"Entity {entity_id} is not a user id (users occupy [0, {self.num_users}))"
            )
        return entity_id

    def check_item(self, entity_id: int) -> int:
        if not self.is_item(entity_id):
            raise InvariantViolationError(
                f"Entity {entity_id} is not an item id "
                f"(items occupy [{self.num_users}, {self.num_entities}))"
            )
        return entity_id


class VertexIdTranslate:
    """
    Maps entity ids to the internal vertex ids used by the graph engine.

    ``forward`` goes entity -> internal, ``backward`` internal -> entity.
    """

    def __init__(self, permutation: np.ndarray) -> None:
        permutation = np.array(permutation, dtype=np.int64, copy=True)
        if permutation.ndim != 1:
            raise ValueError("permutation must be one-dimensional.")
        if not np.array_equal(np.sort(permutation), np.arange(permutation.shape[0])):
            raise ValueError("permutation must contain every id exactly once.")
        inverse = np.empty_like(permutation)
        inverse[permutation] = np.arange(permutation.shape[0], dtype=np.int64)
        self._forward = permutation
        self._backward = inverse
        self._forward.flags.writeable = False
        self._backward.flags.writeable = False

    @classmethod
    def identity(cls, num_vertices: int) -> "VertexIdTranslate":
        return cls(np.arange(num_vertices, dtype=np.int64))

    @classmethod
    def shuffled(cls, num_vertices: int, seed: int | None = None) -> "VertexIdTranslate":
        rng = np.random.default_rng(seed)
        return cls(rng.permutation(num_vertices).astype(np.int64))

    def __len__(self) -> int:
        return int(self._forward.shape[0])

    def forward(self, entity_id: int) -> int:
        if entity_id < 0:
            raise InvariantViolationError(f"Negative entity id {entity_id}")
        try:
            return int(self._forward[entity_id])
        except IndexError as exc:
            raise InvariantViolationError(f"Entity {entity_id} has no internal vertex id") from exc

    def backward(self, vertex_id: int) -> int:
        if vertex_id < 0:
            raise InvariantViolationError(f"Negative internal vertex id {vertex_id}")
        try:
            return int(self._backward[vertex_id])
        except IndexError as exc:
            raise InvariantViolationError(f"Internal vertex id {vertex_id} is unknown") from exc
