"""Configuration system for specexec.
Supports TOML configuration files (``specexec.toml``, ``.specexec.toml``) and
a ``[tool.specexec]`` table in ``pyproject.toml``.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specexec.logging import LogLevel, get_logger

CONFIG_FILES = [
    "specexec.toml",
    ".specexec.toml",
    "pyproject.toml",
]


@dataclass
class SolverConfig:
    """Configuration for the solver bridge."""

    timeout_ms: int = 10000
    max_concurrent_queries: int = 4

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeout_ms": self.timeout_ms,
            "max_concurrent_queries": self.max_concurrent_queries,
        }


@dataclass
class RunnerConfig:
    """Configuration for rule and invariant checking.
    Attributes:
        max_workers: Worker threads of a batch.
        global_timeout_seconds: Deadline for the whole batch; units still
            running when it passes become UNKNOWN. ``None`` disables it.
        invariants_include_view_methods: Also check invariant preservation
            across view and pure methods.
        only_items: Wildcard patterns selecting the items to check.
        assert_each_separately: Check every assert on its own; otherwise the
            first failing assert stops the unit.
    """

    max_workers: int = 4
    global_timeout_seconds: float | None = None
    invariants_include_view_methods: bool = False
    only_items: list[str] = field(default_factory=list)
    assert_each_separately: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_workers": self.max_workers,
            "global_timeout_seconds": self.global_timeout_seconds,
            "invariants_include_view_methods": self.invariants_include_view_methods,
            "only_items": self.only_items,
            "assert_each_separately": self.assert_each_separately,
        }


@dataclass
class OutputConfig:
    """Configuration for log output."""

    color: bool = True
    verbosity: str = "normal"

    @property
    def log_level(self) -> LogLevel:
        try:
            return LogLevel[self.verbosity.upper()]
        except KeyError:
            return LogLevel.NORMAL

    def to_dict(self) -> dict[str, Any]:
        return {"color": self.color, "verbosity": self.verbosity}


@dataclass
class SpecExecConfig:
    """Main configuration for specexec."""

    solver: SolverConfig = field(default_factory=SolverConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    project_root: Path | None = None
    config_file: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "solver": self.solver.to_dict(),
            "runner": self.runner.to_dict(),
            "output": self.output.to_dict(),
        }

    def to_toml(self) -> str:
        """Generate TOML configuration string."""
        lines = ["[tool.specexec]"]
        for section, values in self.to_dict().items():
            lines.append("")
            lines.append(f"[tool.specexec.{section}]")
            for key, value in values.items():
                if value is None:
                    continue
                lines.append(f"{key} = {_toml_value(value)}")
        return "\n".join(lines) + "\n"


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    return str(value)


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Find configuration file by walking up directory tree.
    A ``pyproject.toml`` only counts when it has a ``[tool.specexec]`` table.
    """
    if start_dir is None:
        start_dir = Path.cwd()
    current = start_dir.resolve()
    while True:
        for config_name in CONFIG_FILES:
            config_path = current / config_name
            if not config_path.exists():
                continue
            if config_name != "pyproject.toml" or _has_tool_table(config_path):
                return config_path
        if current == current.parent:
            return None
        current = current.parent


def _has_tool_table(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return False
    return "specexec" in data.get("tool", {})


def load_config(config_path: Path | None = None, start_dir: Path | None = None) -> SpecExecConfig:
    """Load configuration from file or use defaults.
    Args:
        config_path: Explicit path to config file
        start_dir: Directory to start searching for config
    Returns:
        Loaded configuration
    """
    config = SpecExecConfig()
    if config_path is None:
        config_path = find_config_file(start_dir)
    if config_path is None or not config_path.exists():
        return config
    config.config_file = config_path
    config.project_root = config_path.parent
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        get_logger().warning(f"Failed to parse config file {config_path}: {e}")
        return config
    if config_path.name == "pyproject.toml":
        section = data.get("tool", {}).get("specexec", {})
    else:
        section = data.get("tool", {}).get("specexec", data)
    _apply_config(config, section)
    return config


def _apply_config(config: SpecExecConfig, data: dict[str, Any]) -> None:
    """Apply configuration data to config object."""
    if "solver" in data:
        for key in ["timeout_ms", "max_concurrent_queries"]:
            if key in data["solver"]:
                setattr(config.solver, key, int(data["solver"][key]))
    if "runner" in data:
        run_data = data["runner"]
        for key in [
            "max_workers",
            "global_timeout_seconds",
            "invariants_include_view_methods",
            "assert_each_separately",
        ]:
            if key in run_data:
                setattr(config.runner, key, run_data[key])
        if "only_items" in run_data:
            config.runner.only_items = list(run_data["only_items"])
    if "output" in data:
        for key in ["color", "verbosity"]:
            if key in data["output"]:
                setattr(config.output, key, data["output"][key])


def generate_default_config() -> str:
    """Generate default configuration file content."""
    return SpecExecConfig().to_toml()


def init_config(directory: Path | None = None) -> Path:
    """Initialize a new configuration file in the given directory.
    Raises:
        FileExistsError: If ``specexec.toml`` already exists there.
    """
    if directory is None:
        directory = Path.cwd()
    config_path = directory / "specexec.toml"
    if config_path.exists():
        raise FileExistsError(f"Config file already exists: {config_path}")
    config_path.write_text(generate_default_config(), encoding="utf-8")
    return config_path


__all__ = [
    "CONFIG_FILES",
    "SpecExecConfig",
    "SolverConfig",
    "RunnerConfig",
    "OutputConfig",
    "load_config",
    "find_config_file",
    "generate_default_config",
    "init_config",
]
