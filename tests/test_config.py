"""Tests for configuration loading."""

import tomllib

import pytest

from specexec.config import (
    SpecExecConfig,
    find_config_file,
    generate_default_config,
    init_config,
    load_config,
)
from specexec.logging import LogLevel


def test_defaults():
    config = SpecExecConfig()
    assert config.solver.timeout_ms == 10000
    assert config.runner.assert_each_separately is True
    assert config.runner.global_timeout_seconds is None
    assert config.runner.only_items == []
    assert config.output.log_level == LogLevel.NORMAL


def test_load_specexec_toml(tmp_path):
    (tmp_path / "specexec.toml").write_text(
        "[solver]\n"
        "timeout_ms = 500\n"
        "\n"
        "[runner]\n"
        "max_workers = 2\n"
        "assert_each_separately = false\n"
        'only_items = ["supply*"]\n'
        "\n"
        "[output]\n"
        'verbosity = "debug"\n'
    )
    config = load_config(start_dir=tmp_path)
    assert config.config_file == tmp_path / "specexec.toml"
    assert config.project_root == tmp_path
    assert config.solver.timeout_ms == 500
    assert config.runner.max_workers == 2
    assert config.runner.assert_each_separately is False
    assert config.runner.only_items == ["supply*"]
    assert config.output.log_level == LogLevel.DEBUG


def test_pyproject_needs_tool_table(tmp_path):
    (tmp_path / "pyproject.toml").write_text('[project]\nname = "x"\n')
    assert find_config_file(tmp_path) is None
    (tmp_path / "pyproject.toml").write_text("[tool.specexec.runner]\nglobal_timeout_seconds = 30\n")
    assert find_config_file(tmp_path) == tmp_path / "pyproject.toml"
    assert load_config(start_dir=tmp_path).runner.global_timeout_seconds == 30


def test_search_walks_up(tmp_path):
    (tmp_path / ".specexec.toml").write_text("[solver]\nmax_concurrent_queries = 1\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert load_config(start_dir=nested).solver.max_concurrent_queries == 1


def test_invalid_toml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "specexec.toml"
    path.write_text("[solver\n")
    config = load_config(path)
    assert config.solver.timeout_ms == 10000


def test_unknown_verbosity():
    config = SpecExecConfig()
    config.output.verbosity = "chatty"
    assert config.output.log_level == LogLevel.NORMAL


def test_generated_config_round_trips():
    data = tomllib.loads(generate_default_config())
    assert data["tool"]["specexec"]["runner"]["assert_each_separately"] is True
    assert "global_timeout_seconds" not in data["tool"]["specexec"]["runner"]


def test_init_config(tmp_path):
    path = init_config(tmp_path)
    assert path == tmp_path / "specexec.toml"
    assert load_config(path).solver.timeout_ms == 10000
    with pytest.raises(FileExistsError):
        init_config(tmp_path)
