"""Workspace review and style profiles with a short-lived cache."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from taskpipe.api import ApiError, TaskosClient
from taskpipe.cache import TTLCache
from taskpipe.defaults import CACHE_DEFAULTS, PROFILE_PRESETS
from taskpipe.models import AgentProfile, CodeReviewProfile, CodeStyleProfile, ProfileType

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def builtin_review_profile(preset: str = "default") -> CodeReviewProfile:
    return CodeReviewProfile.model_validate(PROFILE_PRESETS[preset]["code_review"])


def builtin_style_profile(preset: str = "default") -> CodeStyleProfile:
    return CodeStyleProfile.model_validate(PROFILE_PRESETS[preset]["code_style"])


class ProfileManager:
    """Fetches workspace profiles and resolves the active one per type.

    Reads never raise: a failed fetch serves the previous list, and a
    missing or invalid profile resolves to the built-in default.
    """

    def __init__(
        self,
        client: TaskosClient | None,
        workspace_id: str | None,
        *,
        ttl_seconds: float = CACHE_DEFAULTS["profile_ttl_seconds"],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.workspace_id = workspace_id
        self._cache: TTLCache[list[AgentProfile]] = TTLCache(ttl_seconds, clock=clock)

    def invalidate(self) -> None:
        self._cache.invalidate()

    def get_all_profiles(self) -> list[AgentProfile]:
        if not self.workspace_id:
            return []
        cached = self._cache.get_fresh(self.workspace_id)
        if cached is not None:
            return cached

        if self._client is None or not self._client.has_credentials:
            return self._cache.get_stale(self.workspace_id) or []
        try:
            profiles = self._client.list_profiles(self.workspace_id)
        except (ApiError, ValidationError) as exc:
            logger.warning("Failed to fetch profiles: %s", exc)
            return self._cache.get_stale(self.workspace_id) or []

        self._cache.put(self.workspace_id, profiles)
        return profiles

    def _active(self, profile_type: ProfileType, model: type[M]) -> M | None:
        candidates = [p for p in self.get_all_profiles() if p.type == profile_type]
        candidates.sort(key=lambda p: not p.is_default)
        for profile in candidates:
            try:
                return model.model_validate(profile.config)
            except ValidationError as exc:
                logger.warning("Skipping invalid %s profile %r: %s", profile_type, profile.name, exc)
        return None

    def get_active_review_profile(self) -> CodeReviewProfile:
        """Default-flagged review profile, else the first one, else the built-in."""
        return self._active("code_review", CodeReviewProfile) or builtin_review_profile()

    def get_active_style_profile(self) -> CodeStyleProfile:
        return self._active("code_style", CodeStyleProfile) or builtin_style_profile()

    def _require_client(self) -> tuple[TaskosClient, str]:
        if self._client is None or not self.workspace_id:
            raise ApiError("No API client or workspace configured")
        return self._client, self.workspace_id

    def create_profile(
        self,
        profile_type: ProfileType,
        name: str,
        config: BaseModel | dict[str, Any],
        is_default: bool = False,
    ) -> AgentProfile:
        client, workspace_id = self._require_client()
        if isinstance(config, BaseModel):
            config = config.model_dump()
        try:
            return client.create_profile(
                workspace_id,
                profile_type=profile_type,
                name=name,
                config=config,
                is_default=is_default,
            )
        finally:
            self.invalidate()

    def update_profile(self, profile_id: str, updates: dict[str, Any]) -> AgentProfile:
        client, workspace_id = self._require_client()
        try:
            return client.update_profile(workspace_id, profile_id, updates)
        finally:
            self.invalidate()

    def delete_profile(self, profile_id: str) -> None:
        client, workspace_id = self._require_client()
        try:
            client.delete_profile(workspace_id, profile_id)
        finally:
            self.invalidate()
