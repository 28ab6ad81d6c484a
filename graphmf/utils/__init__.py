"""Utility helpers shared across modules."""

from .config import (  # noqa: F401
    apply_overrides,
    clone_config,
    get_by_dotted_path,
    load_config,
    parse_override,
    set_by_dotted_path,
    stringify_params,
)
