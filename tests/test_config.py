"""Tests for configuration loading."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

from juggle.config import (
    Config,
    GlobalConfig,
    ProjectConfig,
    load_global_config,
    merged_model_overrides,
)


class TestConfig:
    def test_from_env(self):
        env = {
            "JUGGLE_PROJECT_DIR": "/work/proj",
            "JUGGLE_CONFIG_HOME": "/home/me",
            "JUGGLE_AGENT_PROVIDER": "opencode",
            "JUGGLE_LOG_LEVEL": "debug",
        }
        with patch.dict("os.environ", env, clear=True):
            config = Config.from_env()
        assert config.project_dir == Path("/work/proj")
        assert config.juggle_dir == Path("/work/proj/.juggle")
        assert config.global_config_path == Path("/home/me/.juggle/config.json")
        assert config.agent_provider == "opencode"
        assert config.log_level == "DEBUG"

    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            config = Config.from_env()
        assert config.dir_name == ".juggle"
        assert config.agent_provider is None


class TestFileConfigs:
    def test_missing_file_uses_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = Config(config_home=Path(tmp))
            cfg = load_global_config(config)
        assert cfg.overload_retry_minutes == 10
        assert cfg.search_paths == []
        assert cfg.model_overrides == {}

    def test_unknown_fields_preserved(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps({"vcs": "jj", "future_setting": {"x": 1}}))

            cfg = GlobalConfig.load(path)
            assert cfg.vcs == "jj"
            cfg.set("iteration_delay_minutes", 2)
            cfg.save(path)

            data = json.loads(path.read_text())
        assert data == {"vcs": "jj", "future_setting": {"x": 1}, "iteration_delay_minutes": 2}

    def test_model_overrides_project_wins(self):
        global_cfg = GlobalConfig({"model_overrides": {"small": "a", "large": "b"}})
        project_cfg = ProjectConfig({"model_overrides": {"large": "c"}})
        assert merged_model_overrides(global_cfg, project_cfg) == {"small": "a", "large": "c"}
