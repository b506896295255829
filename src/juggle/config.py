"""Configuration loading from environment variables and JSON config files."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from juggle.store.jsonl import read_json, write_json_atomic

DEFAULT_DIR_NAME = ".juggle"
CONFIG_FILE = "config.json"


@dataclass
class Config:
    project_dir: Path = field(default_factory=lambda: Path.cwd())
    config_home: Path = field(default_factory=lambda: Path.home())
    dir_name: str = DEFAULT_DIR_NAME
    agent_provider: str | None = None
    agent_model: str | None = None
    vcs: str | None = None
    log_level: str = "WARNING"

    @property
    def juggle_dir(self) -> Path:
        return self.project_dir / self.dir_name

    @property
    def global_config_path(self) -> Path:
        return self.config_home / DEFAULT_DIR_NAME / CONFIG_FILE

    @property
    def project_config_path(self) -> Path:
        return self.juggle_dir / CONFIG_FILE

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if project := os.environ.get("JUGGLE_PROJECT_DIR"):
            config.project_dir = Path(project)

        if home := os.environ.get("JUGGLE_CONFIG_HOME"):
            config.config_home = Path(home)

        if dir_name := os.environ.get("JUGGLE_DIR_NAME"):
            config.dir_name = dir_name

        config.agent_provider = os.environ.get("JUGGLE_AGENT_PROVIDER")
        config.agent_model = os.environ.get("JUGGLE_AGENT_MODEL")
        config.vcs = os.environ.get("JUGGLE_VCS")

        if level := os.environ.get("JUGGLE_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()


# ── File configs ─────────────────────────────────────────────────────────────


class _JSONConfig:
    """A JSON object config that round-trips keys it does not know about."""

    _fields: dict = {}

    def __init__(self, data: dict | None = None):
        self._data = dict(data or {})

    def __getattr__(self, name):
        fields = type(self)._fields
        if name in fields:
            value = self._data.get(name)
            if value is None:
                default = fields[name]
                return default() if callable(default) else default
            return value
        raise AttributeError(name)

    def set(self, name: str, value) -> None:
        self._data[name] = value

    def to_dict(self) -> dict:
        return dict(self._data)

    @classmethod
    def load(cls, path: str | Path):
        return cls(read_json(path))

    def save(self, path: str | Path) -> None:
        write_json_atomic(path, self._data)


class GlobalConfig(_JSONConfig):
    _fields = {
        "search_paths": list,
        "iteration_delay_minutes": 0,
        "iteration_delay_fuzz": 0,
        "overload_retry_minutes": 10,
        "vcs": "",
        "agent_provider": "",
        "model_overrides": dict,
    }


class ProjectConfig(_JSONConfig):
    _fields = {
        "default_acceptance_criteria": list,
        "ac_templates": list,
        "vcs": "",
        "agent_provider": "",
        "model_overrides": dict,
    }


def load_global_config(config: Config) -> GlobalConfig:
    return GlobalConfig.load(config.global_config_path)


def load_project_config(config: Config) -> ProjectConfig:
    return ProjectConfig.load(config.project_config_path)


def merged_model_overrides(global_cfg: GlobalConfig, project_cfg: ProjectConfig) -> dict:
    """Project overrides win over global ones."""
    overrides = dict(global_cfg.model_overrides)
    overrides.update(project_cfg.model_overrides)
    return overrides
