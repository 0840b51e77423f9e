"""Branch, commit and PR-title conventions.

The pure functions render names from a ``BranchConventionConfig``; the
``ConventionManager`` wraps them with a per-workspace config fetched from the
task service, cached for a few minutes and falling back to the built-in
convention whenever the service cannot be reached.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from taskpipe.api import ApiError, TaskosClient
from taskpipe.cache import TTLCache
from taskpipe.defaults import (
    CACHE_DEFAULTS,
    CONVENTION_PRESETS,
    DEFAULT_BRANCH_CONVENTION,
    FALLBACK_TASK_TYPE_MAPPING,
    TIMEOUT_DEFAULTS,
)
from taskpipe.models import (
    BranchConventionConfig,
    RenderContext,
    RenderedConvention,
    TaskTypeMapping,
)

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_MULTI_HYPHEN_RE = re.compile(r"-{2,}")

TITLE_MAX_LENGTH = 50
USERNAME_MAX_LENGTH = 20
SHORT_ID_LENGTH = 8


def default_convention() -> BranchConventionConfig:
    return BranchConventionConfig.model_validate(DEFAULT_BRANCH_CONVENTION)


def preset_convention(name: str) -> BranchConventionConfig:
    """Named preset (``default``, ``git-flow``, ...). Raises KeyError if unknown."""
    return BranchConventionConfig.model_validate(CONVENTION_PRESETS[name])


def sanitize_segment(raw: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """Lower-case *raw* and reduce it to ``[a-z0-9-]`` with no edge hyphens.

    Idempotent: sanitizing an already sanitized segment returns it unchanged.
    """
    value = _NON_ALNUM_RE.sub("-", raw.lower())
    value = _MULTI_HYPHEN_RE.sub("-", value).strip("-")
    # Truncation can expose a trailing hyphen.
    return value[:max_length].strip("-")


def resolve_mapping(
    config: BranchConventionConfig, task_type: str | None = None
) -> TaskTypeMapping:
    """Mapping for *task_type*, else the default type, else the first, else built-in."""
    key = (task_type or config.default_task_type).lower()
    for mapping in config.task_type_mappings:
        if mapping.task_type.lower() == key:
            return mapping

    default_key = config.default_task_type.lower()
    for mapping in config.task_type_mappings:
        if mapping.task_type.lower() == default_key:
            return mapping

    if config.task_type_mappings:
        return config.task_type_mappings[0]
    return TaskTypeMapping.model_validate(FALLBACK_TASK_TYPE_MAPPING)


def render_pattern(pattern: str, variables: dict[str, str]) -> str:
    """Replace every ``{key}`` for the keys in *variables*; leave others untouched."""
    result = pattern
    for key, value in variables.items():
        result = result.replace(f"{{{key}}}", value)
    return result


def render_convention(
    config: BranchConventionConfig, ctx: RenderContext
) -> RenderedConvention:
    mapping = resolve_mapping(config, ctx.task_type)
    username = (
        sanitize_segment(ctx.username, USERNAME_MAX_LENGTH) if ctx.username else ""
    )
    variables = {
        "branchPrefix": mapping.branch_prefix,
        "gitPrefix": mapping.git_prefix,
        "title": sanitize_segment(ctx.task_title),
        "id": sanitize_segment(ctx.task_id[:SHORT_ID_LENGTH], SHORT_ID_LENGTH),
        "taskType": mapping.task_type,
        "username": username or "user",
    }
    return RenderedConvention(
        branch_name=render_pattern(config.branch_pattern, variables),
        pr_title=render_pattern(config.pr_title_pattern, variables),
        commit_message=render_pattern(config.commit_pattern, variables),
        base_branch=config.default_base_branch,
    )


# ── Validation ───────────────────────────────────────────────────────


@dataclass
class ConventionIssue:
    field: str
    message: str


def validate_convention(config: BranchConventionConfig) -> list[ConventionIssue]:
    issues: list[ConventionIssue] = []

    if not config.task_type_mappings:
        issues.append(
            ConventionIssue("taskTypeMappings", "At least one task type mapping is required")
        )

    seen: set[str] = set()
    for i, mapping in enumerate(config.task_type_mappings):
        prefix = f"taskTypeMappings[{i}]"
        if not mapping.task_type.strip():
            issues.append(ConventionIssue(f"{prefix}.taskType", "Task type is required"))
        if not mapping.git_prefix.strip():
            issues.append(ConventionIssue(f"{prefix}.gitPrefix", "Git prefix is required"))
        if not mapping.branch_prefix.strip():
            issues.append(
                ConventionIssue(f"{prefix}.branchPrefix", "Branch prefix is required")
            )
        key = mapping.task_type.strip().lower()
        if key and key in seen:
            issues.append(
                ConventionIssue(
                    f"{prefix}.taskType", f'Duplicate task type: "{mapping.task_type}"'
                )
            )
        if key:
            seen.add(key)

    if "{title}" not in config.branch_pattern:
        issues.append(
            ConventionIssue("branchPattern", 'Branch pattern must include "{title}" placeholder')
        )
    if not config.pr_title_pattern.strip():
        issues.append(ConventionIssue("prTitlePattern", "PR title pattern is required"))
    if not config.commit_pattern.strip():
        issues.append(ConventionIssue("commitPattern", "Commit pattern is required"))
    if not config.default_base_branch.strip():
        issues.append(ConventionIssue("defaultBaseBranch", "Default base branch is required"))
    if config.default_task_type and config.default_task_type.lower() not in seen:
        issues.append(
            ConventionIssue(
                "defaultTaskType",
                f'Default task type "{config.default_task_type}" not found in mappings',
            )
        )
    return issues


# ── Manager ──────────────────────────────────────────────────────────


class ConventionManager:
    """Per-workspace convention config with TTL cache and offline fallback."""

    def __init__(
        self,
        client: TaskosClient | None,
        *,
        ttl_seconds: float = CACHE_DEFAULTS["convention_ttl_seconds"],
        timeout_seconds: float = TIMEOUT_DEFAULTS["convention"],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._timeout = timeout_seconds
        self._cache: TTLCache[BranchConventionConfig] = TTLCache(ttl_seconds, clock=clock)

    def get_config(self, workspace_id: str | None) -> BranchConventionConfig:
        if not workspace_id:
            return default_convention()

        cached = self._cache.get_fresh(workspace_id)
        if cached is not None:
            return cached

        fetched = self._fetch(workspace_id)
        if fetched is not None:
            self._cache.put(workspace_id, fetched)
            return fetched

        stale = self._cache.get_stale(workspace_id)
        if stale is not None:
            logger.warning("Using stale branch convention for workspace %s", workspace_id)
            return stale
        return default_convention()

    def _fetch(self, workspace_id: str) -> BranchConventionConfig | None:
        if self._client is None or not self._client.has_credentials:
            return None
        try:
            raw, _is_custom = self._client.get_branch_convention(
                workspace_id, timeout=self._timeout
            )
            config = BranchConventionConfig.model_validate(raw)
        except (ApiError, ValidationError) as exc:
            logger.warning(
                "Branch convention fetch failed for workspace %s: %s", workspace_id, exc
            )
            return None

        for issue in validate_convention(config):
            logger.warning("Branch convention %s: %s", issue.field, issue.message)
        return config

    def render(self, workspace_id: str | None, ctx: RenderContext) -> RenderedConvention:
        return render_convention(self.get_config(workspace_id), ctx)

    def invalidate(self, workspace_id: str | None = None) -> None:
        """Clear cached config (e.g. after the user changes settings)."""
        self._cache.invalidate(workspace_id)
