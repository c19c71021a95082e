from __future__ import annotations

import pytest
import yaml

from conductor.config import (
    DEFAULT_CONFIG_TEMPLATE,
    ConfigError,
    default_config,
    load_config,
    merge_config,
    resolve_path,
    write_config,
)


def test_load_config_merges_over_defaults(tmp_path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "eval_opt:\n  quality_threshold: 9\nplanning:\n  file_limit: 3\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config["eval_opt"]["quality_threshold"] == 9
    assert config["eval_opt"]["max_iterations"] == 3
    assert config["planning"]["file_limit"] == 3
    assert config["planning"]["auto_split"] is True
    assert config["models"]["default"] == "gpt-5-mini"


def test_load_config_rejects_missing_and_malformed_files(tmp_path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("models: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse"):
        load_config(broken)

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(scalar)


def test_empty_file_yields_defaults(tmp_path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("", encoding="utf-8")

    assert load_config(config_path) == default_config()


def test_merge_config_does_not_mutate_inputs() -> None:
    defaults = default_config()
    overrides = {"models": {"routes": {"review": {"model": "gpt-5"}}}}

    merged = merge_config(defaults, overrides)
    merged["models"]["routes"]["review"]["model"] = "changed"

    assert defaults["models"]["routes"] == {}
    assert overrides["models"]["routes"]["review"]["model"] == "gpt-5"
    assert DEFAULT_CONFIG_TEMPLATE["models"]["routes"] == {}


def test_write_config_round_trips_through_yaml(tmp_path) -> None:
    config_path = tmp_path / "nested" / "config.yaml"

    write_config(config_path, default_config())

    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert list(data) == list(DEFAULT_CONFIG_TEMPLATE)
    assert data["paths"]["knowledge"] == "data/knowledge"


def test_resolve_path_handles_relative_absolute_and_unset(tmp_path) -> None:
    absolute = tmp_path / "elsewhere" / "logs"
    config = {"paths": {"knowledge": "data/knowledge", "logs": str(absolute), "estimation": "  "}}

    assert resolve_path(config, "knowledge", tmp_path) == (tmp_path / "data" / "knowledge").resolve()
    assert resolve_path(config, "logs", tmp_path) == absolute
    assert resolve_path(config, "estimation", tmp_path) is None
    assert resolve_path({}, "knowledge", tmp_path) is None
