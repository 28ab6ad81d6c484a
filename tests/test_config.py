from pathlib import Path

import pytest

from graphmf.errors import ConfigurationError
from graphmf.utils import (
    apply_overrides,
    clone_config,
    get_by_dotted_path,
    load_config,
    parse_override,
    set_by_dotted_path,
    stringify_params,
)


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("foo: bar\nnested:\n  value: 1\n", encoding="utf-8")

    config = load_config(config_file)

    assert config["foo"] == "bar"
    assert config["nested"]["value"] == 1


def test_load_config_missing_file() -> None:
    with pytest.raises(FileNotFoundError):
        load_config(Path("does_not_exist.yaml"))


def test_load_config_rejects_non_mapping_root(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_file)


def test_load_config_empty_document_is_empty_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("", encoding="utf-8")

    assert load_config(config_file) == {}


def test_clone_and_set_by_dotted_path() -> None:
    original = {"engine": {"num_workers": 1}}
    cloned = clone_config(original)

    set_by_dotted_path(cloned, "engine.num_workers", 4)
    set_by_dotted_path(cloned, "output.checkpoint_dir", "ckpt")

    assert original["engine"]["num_workers"] == 1  # original untouched
    assert cloned["engine"]["num_workers"] == 4
    assert get_by_dotted_path(cloned, "output.checkpoint_dir") == "ckpt"
    assert get_by_dotted_path(cloned, "output.missing", "fallback") == "fallback"


def test_parse_override_uses_yaml_scalars() -> None:
    assert parse_override("engine.num_workers=4") == ("engine.num_workers", 4)
    assert parse_override("output.rmse_plot=null") == ("output.rmse_plot", None)
    assert parse_override("experiment.name=run-1") == ("experiment.name", "run-1")

    with pytest.raises(ConfigurationError):
        parse_override("engine.num_workers")


def test_apply_overrides_returns_updated_copy() -> None:
    config = {"engine": {"num_workers": 1}}

    updated = apply_overrides(config, ["engine.num_workers=8", "engine.shuffle_vertex_ids=true"])

    assert config["engine"]["num_workers"] == 1
    assert updated["engine"] == {"num_workers": 8, "shuffle_vertex_ids": True}


def test_stringify_params_flattens_scalars_and_skips_none() -> None:
    params = stringify_params(
        {"id": "m1", "algorithm": "BiasSGD", "latentFactors": 4, "step_size": 0.01, "seed": None}
    )

    assert params == {
        "id": "m1",
        "algorithm": "BiasSGD",
        "latentFactors": "4",
        "step_size": "0.01",
    }

    with pytest.raises(ConfigurationError):
        stringify_params({"algorithm": "ALS", "nested": {"a": 1}})
