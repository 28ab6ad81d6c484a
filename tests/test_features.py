import numpy as np
import pandas as pd
import pytest

from graphmf.data.features import FeatureCache, infer_edge_feature_width, parse_feature_tokens
from graphmf.errors import ConfigurationError, InvariantViolationError


def test_parse_feature_tokens_accepts_tabs_and_spaces():
    assert parse_feature_tokens("3:1.0 7:0.5") == [(3, 1.0), (7, 0.5)]
    assert parse_feature_tokens("1:2\t4:0.25") == [(1, 2.0), (4, 0.25)]
    assert parse_feature_tokens("") == []
    assert parse_feature_tokens(None) == []


@pytest.mark.parametrize("text", ["3", "a:1", "3:x", "-1:1"])
def test_parse_feature_tokens_rejects_malformed(text):
    with pytest.raises(ConfigurationError):
        parse_feature_tokens(text)


def _feature_frame(rows):
    return pd.DataFrame(rows, columns=["entity_idx", "feature_id", "value"])


def test_feature_cache_offsets_item_rows_by_user_count():
    cache = FeatureCache.from_frames(
        num_users=2,
        num_items=2,
        user_features=_feature_frame([(0, 0, 1.0), (1, 1, 2.0)]),
        item_features=_feature_frame([(1, 2, 0.5), (1, 0, 3.0)]),
    )

    assert cache.num_entities == 4
    assert cache.num_features == 3
    assert cache.nnz == 4
    assert cache.get_features(0).as_dict() == {0: 1.0}
    assert cache.get_features(2).as_dict() == {}
    item = cache.get_features(3)
    assert item.indices.tolist() == [0, 2]
    assert item.values.tolist() == [3.0, 0.5]


def test_feature_cache_rows_are_read_only():
    cache = FeatureCache.from_frames(
        num_users=1, num_items=1, user_features=_feature_frame([(0, 0, 1.0)])
    )

    row = cache.get_features(0)
    with pytest.raises(ValueError):
        row.values[0] = 5.0


def test_feature_cache_rejects_ids_beyond_declared_width():
    with pytest.raises(ConfigurationError):
        FeatureCache.from_frames(
            num_users=1,
            num_items=1,
            user_features=_feature_frame([(0, 5, 1.0)]),
            num_features=3,
        )


def test_feature_cache_rejects_bad_entity_index():
    with pytest.raises(InvariantViolationError):
        FeatureCache.from_frames(
            num_users=1, num_items=1, item_features=_feature_frame([(1, 0, 1.0)])
        )

    cache = FeatureCache.empty(2, 4)
    with pytest.raises(InvariantViolationError):
        cache.get_features(2)


def test_feature_cache_memory_estimate_counts_csr_arrays():
    cache = FeatureCache.from_frames(
        num_users=3,
        num_items=0,
        user_features=_feature_frame([(0, 0, 1.0), (2, 1, 1.0)]),
    )

    assert cache.estimate_memory_bytes() >= 2 * np.dtype(np.float64).itemsize


def test_infer_edge_feature_width_scans_rating_features():
    ratings = pd.DataFrame(
        {
            "user_idx": [0, 0, 1],
            "item_idx": [0, 1, 0],
            "rating": [1.0, 2.0, 3.0],
            "features": [None, {5: 1.0}, {2: 0.5}],
        }
    )

    assert infer_edge_feature_width(ratings) == 6
    assert infer_edge_feature_width(ratings.drop(columns=["features"])) == 0


def test_feature_cache_width_covers_minimum_when_inferred():
    cache = FeatureCache.from_frames(
        num_users=1,
        num_items=1,
        user_features=_feature_frame([(0, 1, 1.0)]),
        min_num_features=6,
    )

    assert cache.num_features == 6
    assert cache.get_features(0).as_dict() == {1: 1.0}
