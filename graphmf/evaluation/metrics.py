"""Rating-prediction metric utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
import pandas as pd

from graphmf.data.indexers import EntityIdSpace


@dataclass(frozen=True)
class RatingMetrics:
    rmse: float
    mae: float
    count: int


def compute_rating_metrics(
    predict: Callable[[int, int], float],
    ratings: pd.DataFrame,
    id_space: EntityIdSpace,
) -> RatingMetrics:
    """
    Score held-out ratings with ``predict(user_entity, item_entity)``.

    Parameters
    ----------
    ratings:
        Frame with 0-based ``user_idx``, ``item_idx`` and ``rating`` columns.
    """
    if ratings.empty:
        return RatingMetrics(rmse=float("nan"), mae=float("nan"), count=0)

    errors = np.fromiter(
        (
            rating - predict(id_space.user_entity(int(user)), id_space.item_entity(int(item)))
            for user, item, rating in zip(
                ratings["user_idx"], ratings["item_idx"], ratings["rating"]
            )
        ),
        dtype=np.float64,
        count=len(ratings),
    )
    return RatingMetrics(
        rmse=float(np.sqrt(np.mean(errors ** 2))),
        mae=float(np.mean(np.abs(errors))),
        count=int(errors.shape[0]),
    )
