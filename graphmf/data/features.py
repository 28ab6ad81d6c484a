"""
Sparse side-feature handling.

Users and items share one entity id space and one feature id space. The
``FeatureCache`` is assembled once from user/item feature tables before
training starts and is read-only afterwards, so worker threads may share it
without synchronisation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping

import numpy as np
import pandas as pd
from scipy import sparse

from graphmf.errors import ConfigurationError, InvariantViolationError

TOKEN_DELIM = re.compile(r"[\t ]+")
FEATURE_DELIM = ":"
FEATURE_COLUMNS = ("entity_idx", "feature_id", "value")


def parse_feature_tokens(text: str | None) -> list[tuple[int, float]]:
    """
    Parse a ``"<feature id>:<value>"`` list separated by tabs or spaces.

    >>> parse_feature_tokens("3:1.0 7:0.5")
    [(3, 1.0), (7, 0.5)]
    """
    if text is None:
        return []
    features: list[tuple[int, float]] = []
    for token in TOKEN_DELIM.split(text.strip()):
        if not token:
            continue
        feature_id, sep, value = token.partition(FEATURE_DELIM)
        if not sep:
            raise ConfigurationError(f"Feature token '{token}' must look like 'id:value'.")
        try:
            parsed_id = int(feature_id)
            parsed_value = float(value)
        except ValueError as exc:
            raise ConfigurationError(f"Feature token '{token}' is not numeric.") from exc
        if parsed_id < 0:
            raise ConfigurationError(f"Feature id in '{token}' must be non-negative.")
        features.append((parsed_id, parsed_value))
    return features


@dataclass(frozen=True)
class SparseFeatures:
    """Read-only view of one entity's feature row."""

    indices: np.ndarray
    values: np.ndarray

    def __len__(self) -> int:
        return int(self.indices.shape[0])

    def as_dict(self) -> dict[int, float]:
        return {int(idx): float(val) for idx, val in zip(self.indices, self.values)}


class FeatureCache:
    """Immutable, in-memory per-entity feature rows backed by a CSR matrix."""

    def __init__(self, matrix: sparse.csr_matrix) -> None:
        matrix = sparse.csr_matrix(matrix, dtype=np.float64, copy=True)
        matrix.sum_duplicates()
        matrix.sort_indices()
        for array in (matrix.data, matrix.indices, matrix.indptr):
            array.flags.writeable = False
        self._matrix = matrix

    @classmethod
    def empty(cls, num_entities: int, num_features: int = 0) -> "FeatureCache":
        return cls(sparse.csr_matrix((num_entities, num_features), dtype=np.float64))

    @classmethod
    def from_frames(
        cls,
        *,
        num_users: int,
        num_items: int,
        user_features: pd.DataFrame | None = None,
        item_features: pd.DataFrame | None = None,
        num_features: int | None = None,
        min_num_features: int = 0,
    ) -> "FeatureCache":
        """
        Build the cache from long-format feature tables.

        Parameters
        ----------
        user_features, item_features:
            Frames with ``entity_idx`` (index local to the side), ``feature_id``
            and ``value`` columns. Item rows are shifted by ``num_users``.
        num_features:
            Width of the feature space. Inferred as ``max(feature_id) + 1`` when
            omitted, widened to ``min_num_features`` (e.g. to cover edge feature
            ids); explicit ids at or beyond it are rejected.
        """
        num_entities = num_users + num_items
        rows: list[np.ndarray] = []
        cols: list[np.ndarray] = []
        vals: list[np.ndarray] = []

        for frame, offset, side_size, side in (
            (user_features, 0, num_users, "user"),
            (item_features, num_users, num_items, "item"),
        ):
            if frame is None or frame.empty:
                continue
            missing = [col for col in FEATURE_COLUMNS if col not in frame.columns]
            if missing:
                raise ConfigurationError(
                    f"{side} feature frame is missing columns: {', '.join(missing)}"
                )
            local = frame["entity_idx"].to_numpy(dtype=np.int64)
            if local.size and (local.min() < 0 or local.max() >= side_size):
                raise InvariantViolationError(
                    f"{side} feature rows reference indices outside [0, {side_size})"
                )
            rows.append(local + offset)
            cols.append(frame["feature_id"].to_numpy(dtype=np.int64))
            vals.append(frame["value"].to_numpy(dtype=np.float64))

        if rows:
            row_idx = np.concatenate(rows)
            col_idx = np.concatenate(cols)
            values = np.concatenate(vals)
        else:
            row_idx = np.zeros(0, dtype=np.int64)
            col_idx = np.zeros(0, dtype=np.int64)
            values = np.zeros(0, dtype=np.float64)

        inferred = int(col_idx.max()) + 1 if col_idx.size else 0
        if num_features is None:
            width = max(inferred, int(min_num_features))
        else:
            width = int(num_features)
        if col_idx.size and (col_idx.min() < 0 or inferred > width):
            raise ConfigurationError(
                f"Feature ids must lie in [0, {width}); found max id {inferred - 1}."
            )

        matrix = sparse.coo_matrix(
            (values, (row_idx, col_idx)), shape=(num_entities, width)
        ).tocsr()
        return cls(matrix)

    @property
    def num_entities(self) -> int:
        return int(self._matrix.shape[0])

    @property
    def num_features(self) -> int:
        return int(self._matrix.shape[1])

    @property
    def nnz(self) -> int:
        return int(self._matrix.nnz)

    def get_features(self, entity_id: int) -> SparseFeatures:
        if not 0 <= entity_id < self.num_entities:
            raise InvariantViolationError(
                f"Entity {entity_id} outside feature cache range [0, {self.num_entities})"
            )
        start, end = self._matrix.indptr[entity_id], self._matrix.indptr[entity_id + 1]
        return SparseFeatures(
            indices=self._matrix.indices[start:end],
            values=self._matrix.data[start:end],
        )

    def estimate_memory_bytes(self) -> int:
        return int(
            self._matrix.data.nbytes + self._matrix.indices.nbytes + self._matrix.indptr.nbytes
        )


def infer_edge_feature_width(ratings: pd.DataFrame) -> int:
    """Smallest feature-space width covering every edge feature id in ``ratings``."""
    if "features" not in ratings.columns:
        return 0
    width = 0
    for features in ratings["features"]:
        if isinstance(features, Mapping) and features:
            width = max(width, max(int(feature_id) for feature_id in features) + 1)
    return width
