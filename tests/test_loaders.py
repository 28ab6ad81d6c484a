from pathlib import Path

import pytest

from graphmf.data import (
    DatasetDescription,
    load_dataset,
    load_dataset_description,
    load_entity_features,
    load_ratings,
)
from graphmf.errors import ConfigurationError

RATINGS = """%%MatrixMarket matrix coordinate real general
% comment line
3 2 4
1 1 5
1 2 3 0:1 2:0.5
2 1 4
3 2 1.5
"""


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_ratings_converts_to_zero_based_ids(tmp_path):
    table = load_ratings(_write(tmp_path / "ratings.mm", RATINGS))

    assert (table.num_users, table.num_items, table.num_ratings) == (3, 2, 4)
    frame = table.frame
    assert frame["user_idx"].tolist() == [0, 0, 1, 2]
    assert frame["item_idx"].tolist() == [0, 1, 0, 1]
    assert frame["rating"].tolist() == [5.0, 3.0, 4.0, 1.5]
    assert frame["features"].iloc[1] == {0: 1.0, 2: 0.5}
    assert frame["features"].iloc[0] is None


def test_load_ratings_respects_limit(tmp_path):
    table = load_ratings(_write(tmp_path / "ratings.mm", RATINGS), limit=2)

    assert len(table.frame) == 2
    assert table.num_users == 3


def test_load_ratings_rejects_ids_outside_header(tmp_path):
    path = _write(tmp_path / "ratings.mm", "2 2 1\n3 1 4\n")

    with pytest.raises(ConfigurationError, match="ratings.mm:2"):
        load_ratings(path)


def test_load_ratings_rejects_malformed_lines(tmp_path):
    with pytest.raises(ConfigurationError):
        load_ratings(_write(tmp_path / "a.mm", "2 2\n"))
    with pytest.raises(ConfigurationError):
        load_ratings(_write(tmp_path / "b.mm", "2 2 1\n1 x 4\n"))
    with pytest.raises(ConfigurationError):
        load_ratings(_write(tmp_path / "c.mm", "% only comments\n"))


def test_load_ratings_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_ratings(tmp_path / "missing.mm")


def test_load_entity_features_builds_long_frame(tmp_path):
    path = _write(tmp_path / "items.txt", "% items\n0 1:1 3:0.5\n1\t2:2\n")

    frame = load_entity_features(path)

    assert list(frame.columns) == ["entity_idx", "feature_id", "value"]
    assert frame.values.tolist() == [[0, 1, 1.0], [0, 3, 0.5], [1, 2, 2.0]]


def test_load_dataset_from_description_file(tmp_path):
    _write(tmp_path / "ratings.mm", RATINGS)
    _write(tmp_path / "users.txt", "0 0:1\n2 1:1\n")
    _write(
        tmp_path / "dataset.yaml",
        "ratings_file: ratings.mm\nuser_features_file: users.txt\n",
    )

    description = load_dataset_description(tmp_path / "dataset.yaml")
    assert description.ratings_path == tmp_path / "ratings.mm"

    artifacts = load_dataset({"root": str(tmp_path), "description": "dataset.yaml"})

    assert artifacts.description.num_users == 3
    assert artifacts.description.num_items == 2
    assert artifacts.description.num_ratings == 4
    assert len(artifacts.user_features) == 2
    assert artifacts.item_features is None


def test_load_dataset_requires_ratings_file():
    with pytest.raises(ConfigurationError):
        load_dataset(DatasetDescription(num_users=1, num_items=1))
