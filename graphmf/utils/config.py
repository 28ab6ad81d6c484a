"""Configuration loading and manipulation helpers."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Iterable, Mapping, MutableMapping, Sequence

import yaml

from graphmf.errors import ConfigurationError


def load_config(config_path: Path) -> Mapping[str, Any]:
    """
    Parse a YAML configuration file into a nested mapping.

    An empty document yields an empty mapping; any other non-mapping document
    is rejected.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ConfigurationError(
            f"Configuration root in {config_path} must be a mapping, got {type(payload).__name__}."
        )
    return payload


def clone_config(config: Mapping[str, Any]) -> dict[str, Any]:
    """Return a deep copy of the configuration mapping."""
    return copy.deepcopy(dict(config))


def set_by_dotted_path(
    config: MutableMapping[str, Any],
    dotted_key: str,
    value: Any,
) -> None:
    """
    Assign a value inside a nested mapping using dotted-path syntax.

    Examples
    --------
    >>> cfg = {"engine": {"num_workers": 1}}
    >>> set_by_dotted_path(cfg, "engine.num_workers", 4)
    >>> cfg["engine"]["num_workers"]
    4
    """
    keys: Sequence[str] = dotted_key.split(".")
    current: MutableMapping[str, Any] = config
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], MutableMapping):
            current[key] = {}
        current = current[key]  # type: ignore[assignment]
    current[keys[-1]] = value


def get_by_dotted_path(config: Mapping[str, Any], dotted_key: str, default: Any = None) -> Any:
    """Fetch a value from a nested mapping using dotted-path syntax."""
    current: Any = config
    for key in dotted_key.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def parse_override(expression: str) -> tuple[str, Any]:
    """
    Split a ``dotted.key=value`` command-line override.

    The value is parsed as YAML so ``engine.num_workers=4`` yields an int and
    ``output.rmse_plot=null`` yields None.
    """
    key, sep, raw_value = expression.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ConfigurationError(f"Override must look like 'key=value', got {expression!r}")
    try:
        value = yaml.safe_load(raw_value) if raw_value.strip() else ""
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse override value in {expression!r}") from exc
    return key, value


def apply_overrides(config: Mapping[str, Any], expressions: Iterable[str]) -> dict[str, Any]:
    """Return a copy of ``config`` with every ``key=value`` override applied."""
    updated = clone_config(config)
    for expression in expressions:
        key, value = parse_override(expression)
        set_by_dotted_path(updated, key, value)
    return updated


def stringify_params(block: Mapping[str, Any]) -> dict[str, str]:
    """
    Flatten a model block into the string-to-string mapping hyperparameters
    are parsed from. Nested mappings are not allowed in a model block.
    """
    params: dict[str, str] = {}
    for key, value in block.items():
        if isinstance(value, (Mapping, list, tuple)):
            raise ConfigurationError(f"Model parameter '{key}' must be a scalar value.")
        if value is None:
            continue
        params[str(key)] = str(value)
    return params
