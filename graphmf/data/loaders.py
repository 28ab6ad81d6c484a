"""
Typed data loading helpers for ratings and side-feature files.

Ratings live in a Matrix-Market-style coordinate file::

    % optional comment lines
    <num users> <num items> <num ratings>
    <user> <item> <value> [<feature id>:<feature value> ...]

with 1-based user/item ids. Feature files hold one entity per line,
``<id> <feature id>:<value> ...`` with 0-based ids local to the side.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import pandas as pd
from loguru import logger

from graphmf.errors import ConfigurationError
from graphmf.utils.config import load_config

from .features import FEATURE_COLUMNS, TOKEN_DELIM, parse_feature_tokens

COMMENT_MARKER = "%"
RATING_COLUMNS = ("user_idx", "item_idx", "rating", "features")


@dataclass(frozen=True)
class DatasetDescription:
    """Dataset metadata the parameter stores and id space are sized from."""

    num_users: int
    num_items: int
    num_ratings: int = 0
    ratings_path: Optional[Path] = None
    user_features_path: Optional[Path] = None
    item_features_path: Optional[Path] = None

    @classmethod
    def from_mapping(
        cls, payload: Mapping[str, Any], *, base_dir: Path | None = None
    ) -> "DatasetDescription":
        def _path(key: str) -> Optional[Path]:
            value = payload.get(key)
            if not value:
                return None
            path = Path(value)
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            return path

        try:
            return cls(
                num_users=int(payload.get("num_users", 0)),
                num_items=int(payload.get("num_items", 0)),
                num_ratings=int(payload.get("num_ratings", 0)),
                ratings_path=_path("ratings_file"),
                user_features_path=_path("user_features_file"),
                item_features_path=_path("item_features_file"),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Malformed dataset description: {exc}") from exc

    def with_counts(self, *, num_users: int, num_items: int, num_ratings: int) -> "DatasetDescription":
        return DatasetDescription(
            num_users=num_users,
            num_items=num_items,
            num_ratings=num_ratings,
            ratings_path=self.ratings_path,
            user_features_path=self.user_features_path,
            item_features_path=self.item_features_path,
        )


@dataclass(frozen=True)
class RatingsTable:
    """Ratings frame plus the dimensions declared in the file header."""

    frame: pd.DataFrame
    num_users: int
    num_items: int
    num_ratings: int


@dataclass(frozen=True)
class DatasetArtifacts:
    """Container for everything loaded from disk for one training run."""

    description: DatasetDescription
    ratings: pd.DataFrame
    user_features: pd.DataFrame | None = None
    item_features: pd.DataFrame | None = None


def load_dataset_description(path: Path) -> DatasetDescription:
    """Load a YAML dataset description; relative paths resolve next to it."""
    path = Path(path)
    return DatasetDescription.from_mapping(load_config(path), base_dir=path.parent)


def _is_comment(line: str) -> bool:
    return line.startswith(COMMENT_MARKER)


def load_ratings(path: Path, *, limit: Optional[int] = None) -> RatingsTable:
    """Parse a ratings coordinate file into a 0-based ratings frame."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expected ratings file at {path} but file was not found.")

    header: tuple[int, int, int] | None = None
    records: list[tuple[int, int, float, dict[int, float] | None]] = []

    with path.open("r", encoding="utf-8") as handle:
        for line_no, raw_line in enumerate(handle, start=1):
            line = raw_line.strip()
            if not line or _is_comment(line):
                continue
            tokens = TOKEN_DELIM.split(line, maxsplit=3)
            if header is None:
                try:
                    header = (int(tokens[0]), int(tokens[1]), int(tokens[2]))
                except (IndexError, ValueError) as exc:
                    raise ConfigurationError(
                        f"{path}:{line_no}: header must be '<users> <items> <ratings>'"
                    ) from exc
                continue
            if limit is not None and len(records) >= limit:
                break
            try:
                user, item, value = int(tokens[0]), int(tokens[1]), float(tokens[2])
            except (IndexError, ValueError) as exc:
                raise ConfigurationError(
                    f"{path}:{line_no}: expected '<user> <item> <value> [features]'"
                ) from exc
            if not (1 <= user <= header[0] and 1 <= item <= header[1]):
                raise ConfigurationError(
                    f"{path}:{line_no}: ids ({user}, {item}) outside declared "
                    f"{header[0]} users x {header[1]} items"
                )
            edge_features = None
            if len(tokens) > 3:
                try:
                    edge_features = dict(parse_feature_tokens(tokens[3]))
                except ConfigurationError as exc:
                    raise ConfigurationError(f"{path}:{line_no}: {exc}") from exc
            records.append((user - 1, item - 1, value, edge_features))

    if header is None:
        raise ConfigurationError(f"{path} contains no header line.")

    frame = pd.DataFrame.from_records(records, columns=list(RATING_COLUMNS))
    frame = frame.astype({"user_idx": "int64", "item_idx": "int64", "rating": "float64"})
    if limit is None and len(frame) != header[2]:
        logger.warning(
            "{} declares {} ratings but {} were read.", path, header[2], len(frame)
        )
    return RatingsTable(
        frame=frame, num_users=header[0], num_items=header[1], num_ratings=len(frame)
    )


def load_entity_features(path: Path) -> pd.DataFrame:
    """Parse a side-feature file into a long ``entity_idx/feature_id/value`` frame."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expected feature file at {path} but file was not found.")

    rows: list[tuple[int, int, float]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_no, raw_line in enumerate(handle, start=1):
            line = raw_line.strip()
            if not line or _is_comment(line):
                continue
            tokens = TOKEN_DELIM.split(line, maxsplit=1)
            try:
                entity = int(tokens[0])
                features = parse_feature_tokens(tokens[1] if len(tokens) > 1 else "")
            except (ValueError, ConfigurationError) as exc:
                raise ConfigurationError(f"{path}:{line_no}: {exc}") from exc
            rows.extend((entity, feature_id, value) for feature_id, value in features)

    frame = pd.DataFrame.from_records(rows, columns=list(FEATURE_COLUMNS))
    return frame.astype({"entity_idx": "int64", "feature_id": "int64", "value": "float64"})


def load_dataset(
    data_config: Mapping[str, Any] | DatasetDescription,
    *,
    ratings_limit: Optional[int] = None,
) -> DatasetArtifacts:
    """
    Load ratings and optional user/item features.

    ``data_config`` is either a ``DatasetDescription`` or the ``data`` block of
    a run config (``root``, ``ratings_file``, ``user_features_file``,
    ``item_features_file`` or a ``description`` YAML path).
    """
    if isinstance(data_config, DatasetDescription):
        description = data_config
    elif data_config.get("description"):
        root = Path(data_config.get("root", "."))
        description = load_dataset_description(root / data_config["description"])
    else:
        description = DatasetDescription.from_mapping(
            data_config, base_dir=Path(data_config.get("root", "."))
        )

    if description.ratings_path is None:
        raise ConfigurationError("Dataset description does not name a ratings file.")

    logger.info("Loading ratings from {}", description.ratings_path)
    table = load_ratings(description.ratings_path, limit=ratings_limit)
    description = description.with_counts(
        num_users=table.num_users,
        num_items=table.num_items,
        num_ratings=table.num_ratings,
    )

    user_features = None
    if description.user_features_path is not None:
        user_features = load_entity_features(description.user_features_path)
    item_features = None
    if description.item_features_path is not None:
        item_features = load_entity_features(description.item_features_path)

    logger.debug(
        "Dataset summary | users={} items={} ratings={} | user_feature_rows={} item_feature_rows={}",
        description.num_users,
        description.num_items,
        description.num_ratings,
        0 if user_features is None else len(user_features),
        0 if item_features is None else len(item_features),
    )
    return DatasetArtifacts(
        description=description,
        ratings=table.frame,
        user_features=user_features,
        item_features=item_features,
    )
