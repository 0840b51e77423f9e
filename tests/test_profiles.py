from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from taskpipe.api import ApiError, NetworkError
from taskpipe.models import AgentProfile, CodeReviewProfile
from taskpipe.profiles import ProfileManager, builtin_review_profile, builtin_style_profile


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _profile(pid: str, ptype: str, config: dict, *, default: bool = False) -> AgentProfile:
    return AgentProfile(id=pid, type=ptype, name=pid, config=config, is_default=default)


@pytest.fixture()
def client() -> MagicMock:
    c = MagicMock()
    c.has_credentials = True
    c.list_profiles.return_value = [
        _profile("r1", "code_review", {"strictness": "low"}),
        _profile("r2", "code_review", {"strictness": "high"}, default=True),
        _profile("s1", "code_style", {"language_stack": ["python"]}),
    ]
    return c


class TestBuiltins:
    def test_default_presets(self) -> None:
        assert builtin_review_profile().strictness == "medium"
        assert builtin_style_profile().testing_policy is not None


class TestGetAllProfiles:
    def test_no_workspace(self, client: MagicMock) -> None:
        assert ProfileManager(client, None).get_all_profiles() == []
        client.list_profiles.assert_not_called()

    def test_cached_within_ttl(self, client: MagicMock) -> None:
        clock = FakeClock()
        manager = ProfileManager(client, "ws", ttl_seconds=60, clock=clock)
        manager.get_all_profiles()
        clock.now += 59
        manager.get_all_profiles()
        assert client.list_profiles.call_count == 1

    def test_refetched_after_ttl(self, client: MagicMock) -> None:
        clock = FakeClock()
        manager = ProfileManager(client, "ws", ttl_seconds=60, clock=clock)
        manager.get_all_profiles()
        clock.now += 61
        manager.get_all_profiles()
        assert client.list_profiles.call_count == 2

    def test_failure_serves_stale(self, client: MagicMock, caplog) -> None:
        clock = FakeClock()
        manager = ProfileManager(client, "ws", ttl_seconds=60, clock=clock)
        first = manager.get_all_profiles()
        clock.now += 61
        client.list_profiles.side_effect = NetworkError("down")

        assert manager.get_all_profiles() == first
        assert "Failed to fetch profiles" in caplog.text

    def test_failure_without_cache_is_empty(self, client: MagicMock) -> None:
        client.list_profiles.side_effect = NetworkError("down")
        assert ProfileManager(client, "ws").get_all_profiles() == []

    def test_no_credentials(self, client: MagicMock) -> None:
        client.has_credentials = False
        assert ProfileManager(client, "ws").get_all_profiles() == []
        client.list_profiles.assert_not_called()


class TestActiveProfiles:
    def test_default_flag_wins(self, client: MagicMock) -> None:
        assert ProfileManager(client, "ws").get_active_review_profile().strictness == "high"

    def test_first_when_no_default(self, client: MagicMock) -> None:
        client.list_profiles.return_value = [
            _profile("s1", "code_style", {"language_stack": ["go"]}),
            _profile("s2", "code_style", {"language_stack": ["rust"]}),
        ]
        style = ProfileManager(client, "ws").get_active_style_profile()
        assert style.language_stack == ["go"]

    def test_invalid_config_is_skipped(self, client: MagicMock, caplog) -> None:
        client.list_profiles.return_value = [
            _profile("bad", "code_review", {"strictness": "extreme"}, default=True),
            _profile("ok", "code_review", {"strictness": "low"}),
        ]
        review = ProfileManager(client, "ws").get_active_review_profile()
        assert review.strictness == "low"
        assert "Skipping invalid" in caplog.text

    def test_builtin_when_none_available(self, client: MagicMock) -> None:
        client.list_profiles.return_value = []
        manager = ProfileManager(client, "ws")
        assert manager.get_active_review_profile() == builtin_review_profile()
        assert manager.get_active_style_profile() == builtin_style_profile()


class TestMutations:
    def test_create_accepts_model_and_invalidates(self, client: MagicMock) -> None:
        manager = ProfileManager(client, "ws")
        manager.get_all_profiles()

        manager.create_profile("code_review", "Strict", CodeReviewProfile(strictness="high"))

        kwargs = client.create_profile.call_args.kwargs
        assert kwargs["config"]["strictness"] == "high"
        assert kwargs["is_default"] is False
        manager.get_all_profiles()
        assert client.list_profiles.call_count == 2

    def test_update_and_delete_invalidate(self, client: MagicMock) -> None:
        manager = ProfileManager(client, "ws")
        manager.get_all_profiles()
        manager.update_profile("r1", {"name": "Renamed"})
        manager.get_all_profiles()
        manager.delete_profile("r1")
        manager.get_all_profiles()

        client.update_profile.assert_called_once_with("ws", "r1", {"name": "Renamed"})
        client.delete_profile.assert_called_once_with("ws", "r1")
        assert client.list_profiles.call_count == 3

    def test_failed_mutation_still_invalidates(self, client: MagicMock) -> None:
        manager = ProfileManager(client, "ws")
        manager.get_all_profiles()
        client.delete_profile.side_effect = ApiError("nope", 404)

        with pytest.raises(ApiError):
            manager.delete_profile("r1")
        manager.get_all_profiles()
        assert client.list_profiles.call_count == 2

    def test_mutation_without_workspace(self, client: MagicMock) -> None:
        with pytest.raises(ApiError):
            ProfileManager(client, None).delete_profile("r1")
