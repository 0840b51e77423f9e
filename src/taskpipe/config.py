from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from taskpipe.defaults import (
    API_DEFAULTS,
    CACHE_DEFAULTS,
    CONTEXT_DIR,
    PIPELINE_DEFAULTS,
    TEST_COMMAND_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "taskpipe.toml"
CONFIG_DIR = CONTEXT_DIR

_ENV_OVERRIDES = {
    "TASKPIPE_API_URL": "base_url",
    "TASKPIPE_API_KEY": "api_key",
    "TASKPIPE_WORKSPACE_ID": "workspace_id",
}

AUTOFIX_DECLINED_POLICIES = ("proceed", "abort")


@dataclass
class ApiConfig:
    base_url: str
    api_key: str
    workspace_id: str


@dataclass
class TimeoutConfig:
    git: int
    network: int
    convention: int
    host_cli: int
    tests: int


@dataclass
class CacheConfig:
    profile_ttl_seconds: int
    convention_ttl_seconds: int


@dataclass
class PipelineConfig:
    host: str
    on_autofix_declined: str
    agent_command: str


@dataclass
class TaskpipeConfig:
    api: ApiConfig
    timeouts: TimeoutConfig = field(
        default_factory=lambda: TimeoutConfig(**TIMEOUT_DEFAULTS),
    )
    cache: CacheConfig = field(
        default_factory=lambda: CacheConfig(**CACHE_DEFAULTS),
    )
    test_commands: dict[str, str] = field(default_factory=dict)
    pipeline: PipelineConfig = field(
        default_factory=lambda: PipelineConfig(**PIPELINE_DEFAULTS),
    )


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return {
        "api": dict(API_DEFAULTS),
        "timeout": dict(TIMEOUT_DEFAULTS),
        "cache": dict(CACHE_DEFAULTS),
        "tests": dict(TEST_COMMAND_DEFAULTS),
        "pipeline": dict(PIPELINE_DEFAULTS),
    }


def _apply_env(data: dict, environ: Mapping[str, str]) -> dict:
    api = dict(data.get("api", {}))
    for var, key in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            api[key] = value
    return {**data, "api": api}


def _config_from_dict(data: dict) -> TaskpipeConfig:
    pipeline = dict(data.get("pipeline", PIPELINE_DEFAULTS))
    if pipeline.get("on_autofix_declined") not in AUTOFIX_DECLINED_POLICIES:
        logger.warning(
            "Unknown on_autofix_declined policy %r, using 'proceed'",
            pipeline.get("on_autofix_declined"),
        )
        pipeline["on_autofix_declined"] = "proceed"
    return TaskpipeConfig(
        api=ApiConfig(**data.get("api", API_DEFAULTS)),
        timeouts=TimeoutConfig(**data.get("timeout", TIMEOUT_DEFAULTS)),
        cache=CacheConfig(**data.get("cache", CACHE_DEFAULTS)),
        test_commands={
            k: v for k, v in data.get("tests", {}).items() if isinstance(v, str) and v
        },
        pipeline=PipelineConfig(**pipeline),
    )


def load_config(
    project_root: Path, environ: Mapping[str, str] | None = None
) -> TaskpipeConfig:
    """Load config: source defaults, .taskpipe/taskpipe.toml, then env overrides."""
    env = os.environ if environ is None else environ
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(_apply_env(defaults, env))

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Failed to parse %s: %s", toml_path, exc)
        return _config_from_dict(_apply_env(defaults, env))

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(_apply_env(merged, env))


def init_config(project_root: Path) -> Path:
    """Write .taskpipe/taskpipe.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path
