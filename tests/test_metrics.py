import math

import pandas as pd
import pytest

from graphmf.data.indexers import EntityIdSpace
from graphmf.evaluation import compute_rating_metrics


def test_compute_rating_metrics():
    space = EntityIdSpace(num_users=2, num_items=2)
    ratings = pd.DataFrame({"user_idx": [0, 1], "item_idx": [1, 0], "rating": [4.0, 2.0]})
    seen = []

    def predict(user, item):
        seen.append((user, item))
        return 3.0

    metrics = compute_rating_metrics(predict, ratings, space)

    assert seen == [(0, 3), (1, 2)]  # items are offset by the user count
    assert metrics.count == 2
    assert metrics.rmse == pytest.approx(1.0)
    assert metrics.mae == pytest.approx(1.0)


def test_compute_rating_metrics_empty_frame():
    space = EntityIdSpace(num_users=1, num_items=1)
    ratings = pd.DataFrame({"user_idx": [], "item_idx": [], "rating": []})

    metrics = compute_rating_metrics(lambda u, i: 0.0, ratings, space)

    assert metrics.count == 0
    assert math.isnan(metrics.rmse) and math.isnan(metrics.mae)
