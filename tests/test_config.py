from __future__ import annotations

import logging
import tomllib
from pathlib import Path

import pytest

from taskpipe.config import TaskpipeConfig, init_config, load_config
from taskpipe.defaults import (
    API_DEFAULTS,
    CACHE_DEFAULTS,
    PIPELINE_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)

NO_ENV: dict[str, str] = {}


def _write_toml(tmp_path: Path, content: str) -> None:
    d = tmp_path / ".taskpipe"
    d.mkdir()
    (d / "taskpipe.toml").write_text(content)


class TestLoadConfigDefaults:
    def test_returns_api_defaults_when_no_toml(self, tmp_path: Path):
        cfg = load_config(tmp_path, NO_ENV)
        assert isinstance(cfg, TaskpipeConfig)
        assert cfg.api.base_url == API_DEFAULTS["base_url"]
        assert cfg.api.api_key == ""
        assert cfg.api.workspace_id == ""

    def test_returns_timeout_defaults_when_no_toml(self, tmp_path: Path):
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.timeouts.git == TIMEOUT_DEFAULTS["git"]
        assert cfg.timeouts.tests == TIMEOUT_DEFAULTS["tests"]

    def test_test_timeout_is_longer_than_git_and_network(self, tmp_path: Path):
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.timeouts.tests > cfg.timeouts.git
        assert cfg.timeouts.tests > cfg.timeouts.network

    def test_returns_cache_defaults_when_no_toml(self, tmp_path: Path):
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.cache.profile_ttl_seconds == CACHE_DEFAULTS["profile_ttl_seconds"]
        assert cfg.cache.convention_ttl_seconds == CACHE_DEFAULTS["convention_ttl_seconds"]

    def test_empty_test_commands_mean_autodetect(self, tmp_path: Path):
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.test_commands == {}

    def test_pipeline_defaults(self, tmp_path: Path):
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.pipeline.on_autofix_declined == "proceed"
        assert cfg.pipeline.host == PIPELINE_DEFAULTS["host"]


class TestLoadConfigPartialOverrides:
    def test_overrides_api_partially(self, tmp_path: Path):
        _write_toml(tmp_path, '[api]\nworkspace_id = "ws-1"\n')
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.api.workspace_id == "ws-1"
        assert cfg.api.base_url == API_DEFAULTS["base_url"]

    def test_overrides_single_timeout(self, tmp_path: Path):
        _write_toml(tmp_path, "[timeout]\ntests = 600\n")
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.timeouts.tests == 600
        assert cfg.timeouts.git == TIMEOUT_DEFAULTS["git"]

    def test_test_command_overrides(self, tmp_path: Path):
        _write_toml(tmp_path, '[tests]\nunit = "make test"\ne2e = ""\n')
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.test_commands == {"unit": "make test"}

    def test_abort_policy(self, tmp_path: Path):
        _write_toml(tmp_path, '[pipeline]\non_autofix_declined = "abort"\n')
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.pipeline.on_autofix_declined == "abort"

    def test_unknown_policy_falls_back_to_proceed(self, tmp_path: Path, caplog):
        _write_toml(tmp_path, '[pipeline]\non_autofix_declined = "explode"\n')
        with caplog.at_level(logging.WARNING, logger="taskpipe.config"):
            cfg = load_config(tmp_path, NO_ENV)
        assert cfg.pipeline.on_autofix_declined == "proceed"
        assert "explode" in caplog.text

    def test_sections_not_overridden_keep_defaults(self, tmp_path: Path):
        _write_toml(tmp_path, "[cache]\nprofile_ttl_seconds = 5\n")
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.cache.profile_ttl_seconds == 5
        assert cfg.timeouts.git == TIMEOUT_DEFAULTS["git"]


class TestEnvironmentOverrides:
    def test_env_overrides_toml(self, tmp_path: Path):
        _write_toml(tmp_path, '[api]\napi_key = "from-file"\n')
        cfg = load_config(tmp_path, {"TASKPIPE_API_KEY": "from-env"})
        assert cfg.api.api_key == "from-env"

    def test_env_sets_url_and_workspace(self, tmp_path: Path):
        cfg = load_config(
            tmp_path,
            {"TASKPIPE_API_URL": "http://localhost:3000/api/v1", "TASKPIPE_WORKSPACE_ID": "ws"},
        )
        assert cfg.api.base_url == "http://localhost:3000/api/v1"
        assert cfg.api.workspace_id == "ws"

    def test_empty_env_value_is_ignored(self, tmp_path: Path):
        _write_toml(tmp_path, '[api]\napi_key = "from-file"\n')
        cfg = load_config(tmp_path, {"TASKPIPE_API_KEY": ""})
        assert cfg.api.api_key == "from-file"

    def test_reads_process_environment_by_default(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("TASKPIPE_WORKSPACE_ID", "ws-env")
        cfg = load_config(tmp_path)
        assert cfg.api.workspace_id == "ws-env"


class TestLoadConfigCorruptToml:
    def test_corrupt_toml_returns_defaults(self, tmp_path: Path, caplog):
        _write_toml(tmp_path, "{{{{not valid toml!!!!")
        with caplog.at_level(logging.WARNING, logger="taskpipe.config"):
            cfg = load_config(tmp_path, NO_ENV)
        assert cfg.timeouts.git == TIMEOUT_DEFAULTS["git"]
        assert "Failed to parse" in caplog.text

    def test_binary_garbage_returns_defaults(self, tmp_path: Path, caplog):
        d = tmp_path / ".taskpipe"
        d.mkdir()
        (d / "taskpipe.toml").write_bytes(b"\x80\x81\x82\x83")
        with caplog.at_level(logging.WARNING, logger="taskpipe.config"):
            cfg = load_config(tmp_path, NO_ENV)
        assert cfg.api.base_url == API_DEFAULTS["base_url"]
        assert "Failed to parse" in caplog.text


class TestInitConfig:
    def test_creates_config_file(self, tmp_path: Path):
        path = init_config(tmp_path)
        assert path.exists()
        assert path.name == "taskpipe.toml"
        assert path.read_text() == generate_toml()

    def test_creates_taskpipe_dir(self, tmp_path: Path):
        init_config(tmp_path)
        assert (tmp_path / ".taskpipe").is_dir()

    def test_backs_up_existing_file(self, tmp_path: Path):
        _write_toml(tmp_path, "# old config\n")

        init_config(tmp_path)

        backup = tmp_path / ".taskpipe" / "taskpipe.toml.bak"
        assert backup.read_text() == "# old config\n"
        assert (tmp_path / ".taskpipe" / "taskpipe.toml").read_text() == generate_toml()

    def test_written_file_loads_back_to_defaults(self, tmp_path: Path):
        init_config(tmp_path)
        cfg = load_config(tmp_path, NO_ENV)
        assert cfg.timeouts.tests == TIMEOUT_DEFAULTS["tests"]
        assert cfg.pipeline.on_autofix_declined == "proceed"

    @pytest.mark.parametrize("section", ["api", "timeout", "cache", "tests", "pipeline"])
    def test_generated_toml_has_section(self, tmp_path: Path, section: str):
        path = init_config(tmp_path)
        assert section in tomllib.loads(path.read_text())
