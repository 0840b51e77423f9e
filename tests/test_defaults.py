from __future__ import annotations

import tomllib
from typing import ClassVar

import pytest

from taskpipe.convention import preset_convention, validate_convention
from taskpipe.defaults import (
    API_DEFAULTS,
    CACHE_DEFAULTS,
    CONVENTION_PRESETS,
    DEFAULT_BRANCH_CONVENTION,
    FALLBACK_TASK_TYPE_MAPPING,
    PIPELINE_DEFAULTS,
    PROFILE_PRESETS,
    TEST_COMMAND_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)
from taskpipe.models import CodeReviewProfile, CodeStyleProfile

# ---------------------------------------------------------------------------
# Structure & type checks
# ---------------------------------------------------------------------------


class TestApiDefaults:
    expected_keys: ClassVar[set[str]] = {"base_url", "api_key", "workspace_id"}

    def test_keys(self):
        assert set(API_DEFAULTS) == self.expected_keys

    def test_no_secret_shipped(self):
        assert API_DEFAULTS["api_key"] == ""


class TestTimeoutDefaults:
    expected_keys: ClassVar[set[str]] = {"git", "network", "convention", "host_cli", "tests"}

    def test_keys(self):
        assert set(TIMEOUT_DEFAULTS) == self.expected_keys

    def test_all_values_are_positive_ints(self):
        for v in TIMEOUT_DEFAULTS.values():
            assert isinstance(v, int)
            assert v > 0

    def test_tests_run_in_minutes_not_seconds(self):
        assert TIMEOUT_DEFAULTS["tests"] >= 60
        assert TIMEOUT_DEFAULTS["tests"] > TIMEOUT_DEFAULTS["git"]


class TestCacheDefaults:
    def test_ttls(self):
        assert CACHE_DEFAULTS["profile_ttl_seconds"] == 60
        assert CACHE_DEFAULTS["convention_ttl_seconds"] == 300


class TestTestCommandDefaults:
    def test_keys_are_test_types(self):
        assert set(TEST_COMMAND_DEFAULTS) == {"unit", "integration", "e2e"}

    def test_empty_means_autodetect(self):
        assert all(v == "" for v in TEST_COMMAND_DEFAULTS.values())


class TestPipelineDefaults:
    def test_autofix_declined_proceeds(self):
        assert PIPELINE_DEFAULTS["on_autofix_declined"] == "proceed"


# ---------------------------------------------------------------------------
# Built-in conventions and profiles
# ---------------------------------------------------------------------------


class TestConventionDefaults:
    def test_default_preset_is_default_convention(self):
        assert CONVENTION_PRESETS["default"] is DEFAULT_BRANCH_CONVENTION

    def test_fallback_mapping_is_task(self):
        assert FALLBACK_TASK_TYPE_MAPPING["taskType"] == "task"

    @pytest.mark.parametrize("name", sorted(CONVENTION_PRESETS))
    def test_presets_validate_cleanly(self, name: str):
        assert validate_convention(preset_convention(name)) == []


class TestProfilePresets:
    @pytest.mark.parametrize("preset", ["default", "strict"])
    def test_presets_parse(self, preset: str):
        CodeReviewProfile.model_validate(PROFILE_PRESETS[preset]["code_review"])
        style = CodeStyleProfile.model_validate(PROFILE_PRESETS[preset]["code_style"])
        assert style.testing_policy is not None

    def test_strict_requires_more(self):
        strict = CodeStyleProfile.model_validate(PROFILE_PRESETS["strict"]["code_style"])
        assert strict.testing_policy.test_required_when.db_query_changed is True
        assert strict.testing_policy.allow_skip_with_reason is False


# ---------------------------------------------------------------------------
# TOML generation
# ---------------------------------------------------------------------------


class TestGenerateToml:
    def test_round_trips_through_tomllib(self):
        parsed = tomllib.loads(generate_toml())
        assert parsed["api"] == API_DEFAULTS
        assert parsed["timeout"] == TIMEOUT_DEFAULTS
        assert parsed["cache"] == CACHE_DEFAULTS
        assert parsed["tests"] == TEST_COMMAND_DEFAULTS
        assert parsed["pipeline"] == PIPELINE_DEFAULTS

    def test_ends_with_newline(self):
        assert generate_toml().endswith("\n")
