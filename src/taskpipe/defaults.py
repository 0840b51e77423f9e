"""Compiled-in default configuration values for taskpipe.

This module is the single source of truth for all default settings,
including the built-in branch convention and review/style profiles that
the pipeline falls back to when the remote service is unreachable.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Any, Final

API_DEFAULTS: Final[dict[str, str]] = {
    "base_url": "https://www.task-os.app/api/v1",
    "api_key": "",
    "workspace_id": "",
}

TIMEOUT_DEFAULTS: Final[dict[str, int]] = {
    "git": 30,
    "network": 10,
    "convention": 5,
    "host_cli": 30,
    "tests": 120,
}

CACHE_DEFAULTS: Final[dict[str, int]] = {
    "profile_ttl_seconds": 60,
    "convention_ttl_seconds": 300,
}

TEST_COMMAND_DEFAULTS: Final[dict[str, str]] = {
    "unit": "",
    "integration": "",
    "e2e": "",
}

PIPELINE_DEFAULTS: Final[dict[str, str]] = {
    "host": "github.com",
    "on_autofix_declined": "proceed",
    "agent_command": "",
}

CONTEXT_DIR: Final = ".taskpipe"

# ── Branch conventions ──────────────────────────────────────────────

DEFAULT_TASK_TYPE_MAPPINGS: Final[list[dict[str, str]]] = [
    {"taskType": "feature", "gitPrefix": "feat", "branchPrefix": "feature"},
    {"taskType": "bug", "gitPrefix": "fix", "branchPrefix": "bugfix"},
    {"taskType": "task", "gitPrefix": "chore", "branchPrefix": "task"},
    {"taskType": "hotfix", "gitPrefix": "hotfix", "branchPrefix": "hotfix"},
    {"taskType": "docs", "gitPrefix": "docs", "branchPrefix": "docs"},
    {"taskType": "refactor", "gitPrefix": "refactor", "branchPrefix": "refactor"},
]

FALLBACK_TASK_TYPE_MAPPING: Final[dict[str, str]] = DEFAULT_TASK_TYPE_MAPPINGS[2]

DEFAULT_BRANCH_CONVENTION: Final[dict[str, Any]] = {
    "taskTypeMappings": DEFAULT_TASK_TYPE_MAPPINGS,
    "branchPattern": "{branchPrefix}/{title}-{id}",
    "prTitlePattern": "{gitPrefix}: {title}",
    "commitPattern": "{gitPrefix}: {title}",
    "defaultBaseBranch": "main",
    "defaultTaskType": "task",
}

_FLOW_MAPPINGS: Final[list[dict[str, str]]] = [
    {"taskType": "feature", "gitPrefix": "feat", "branchPrefix": "feat"},
    {"taskType": "bug", "gitPrefix": "fix", "branchPrefix": "fix"},
    {"taskType": "task", "gitPrefix": "chore", "branchPrefix": "chore"},
    {"taskType": "hotfix", "gitPrefix": "fix", "branchPrefix": "fix"},
    {"taskType": "docs", "gitPrefix": "docs", "branchPrefix": "docs"},
    {"taskType": "refactor", "gitPrefix": "refactor", "branchPrefix": "refactor"},
]

CONVENTION_PRESETS: Final[dict[str, dict[str, Any]]] = {
    "default": DEFAULT_BRANCH_CONVENTION,
    "git-flow": {
        "taskTypeMappings": [
            {"taskType": "feature", "gitPrefix": "feat", "branchPrefix": "feature"},
            {"taskType": "bug", "gitPrefix": "fix", "branchPrefix": "bugfix"},
            {"taskType": "hotfix", "gitPrefix": "hotfix", "branchPrefix": "hotfix"},
            {"taskType": "release", "gitPrefix": "release", "branchPrefix": "release"},
            {"taskType": "task", "gitPrefix": "chore", "branchPrefix": "feature"},
            {"taskType": "docs", "gitPrefix": "docs", "branchPrefix": "feature"},
            {"taskType": "refactor", "gitPrefix": "refactor", "branchPrefix": "feature"},
        ],
        "branchPattern": "{branchPrefix}/{title}-{id}",
        "prTitlePattern": "{gitPrefix}: {title}",
        "commitPattern": "{gitPrefix}: {title}",
        "defaultBaseBranch": "develop",
        "defaultTaskType": "feature",
    },
    "github-flow": {
        "taskTypeMappings": _FLOW_MAPPINGS,
        "branchPattern": "{branchPrefix}/{title}",
        "prTitlePattern": "{gitPrefix}: {title}",
        "commitPattern": "{gitPrefix}({taskType}): {title}",
        "defaultBaseBranch": "main",
        "defaultTaskType": "feature",
    },
    "trunk-based": {
        "taskTypeMappings": _FLOW_MAPPINGS,
        "branchPattern": "{username}/{branchPrefix}/{title}",
        "prTitlePattern": "{gitPrefix}: {title} [{id}]",
        "commitPattern": "{gitPrefix}: {title}",
        "defaultBaseBranch": "main",
        "defaultTaskType": "feature",
    },
    "conventional": {
        "taskTypeMappings": [
            *_FLOW_MAPPINGS,
            {"taskType": "test", "gitPrefix": "test", "branchPrefix": "test"},
            {"taskType": "ci", "gitPrefix": "ci", "branchPrefix": "ci"},
            {"taskType": "perf", "gitPrefix": "perf", "branchPrefix": "perf"},
        ],
        "branchPattern": "{gitPrefix}/{title}-{id}",
        "prTitlePattern": "{gitPrefix}: {title}",
        "commitPattern": "{gitPrefix}: {title}",
        "defaultBaseBranch": "main",
        "defaultTaskType": "feature",
    },
}

# ── Profiles ────────────────────────────────────────────────────────

DEFAULT_CODE_REVIEW_PROFILE: Final[dict[str, Any]] = {
    "strictness": "medium",
    "focus_areas": ["readability", "error-handling", "types", "testing"],
    "rules": [
        {
            "id": "no-any",
            "description": 'Avoid using "any" type - use proper types or "unknown"',
            "severity": "warn",
            "applies_to": "all",
        },
        {
            "id": "error-handling",
            "description": "All async operations must have proper error handling",
            "severity": "warn",
            "applies_to": "all",
        },
        {
            "id": "function-length",
            "description": "Functions should not exceed 50 lines",
            "severity": "info",
            "applies_to": "all",
        },
    ],
    "required_checks": [
        "No console.log left in production code",
        "No hardcoded secrets or credentials",
    ],
    "feedback_format": "summary+inline",
    "tone": "neutral",
}

DEFAULT_CODE_STYLE_PROFILE: Final[dict[str, Any]] = {
    "language_stack": ["typescript", "react", "node"],
    "patterns_preferred": [],
    "patterns_avoid": [],
    "architecture_constraints": [],
    "naming_conventions": [
        "camelCase for variables and functions",
        "PascalCase for classes and components",
        "UPPER_SNAKE_CASE for constants",
    ],
    "error_handling_policy": (
        "Use try-catch for async operations, return meaningful error messages"
    ),
    "linting_formatting_policy": "align with repo config",
    "testing_policy": {
        "test_required_when": {
            "business_logic_changed": True,
            "api_changed": True,
            "db_query_changed": False,
            "bugfix": True,
        },
        "test_types_required": ["unit"],
        "minimum_expectations": ["tests for new code paths"],
        "allow_skip_with_reason": True,
    },
}

STRICT_CODE_REVIEW_PROFILE: Final[dict[str, Any]] = {
    "strictness": "high",
    "focus_areas": [
        "security",
        "performance",
        "readability",
        "testing",
        "edge-cases",
        "api-contracts",
        "error-handling",
        "logging",
        "types",
        "architecture",
    ],
    "rules": [
        {
            "id": "no-any",
            "description": 'Never use "any" type - use proper types, generics, or "unknown"',
            "severity": "blocker",
            "applies_to": "all",
        },
        {
            "id": "error-handling",
            "description": (
                "All async operations must have proper error handling "
                "with specific error types"
            ),
            "severity": "blocker",
            "applies_to": "all",
        },
        {
            "id": "function-length",
            "description": "Functions must not exceed 40 lines",
            "severity": "warn",
            "applies_to": "all",
        },
        {
            "id": "api-tests",
            "description": "Every API endpoint change must have corresponding test coverage",
            "severity": "blocker",
            "applies_to": "backend",
        },
        {
            "id": "no-magic-numbers",
            "description": "No magic numbers - use named constants",
            "severity": "warn",
            "applies_to": "all",
        },
        {
            "id": "input-validation",
            "description": "All user inputs must be validated and sanitized",
            "severity": "blocker",
            "applies_to": "all",
        },
        {
            "id": "no-secrets",
            "description": "No hardcoded secrets, tokens, or credentials",
            "severity": "blocker",
            "applies_to": "all",
        },
        {
            "id": "logging",
            "description": "Critical operations must have structured logging",
            "severity": "warn",
            "applies_to": "backend",
        },
    ],
    "required_checks": [
        'No "any" types',
        "No functions over 40 lines",
        "All API changes have tests",
        "No hardcoded secrets",
        "Input validation on all endpoints",
        "Proper error handling on all async operations",
    ],
    "feedback_format": "summary+inline",
    "tone": "strict",
}

STRICT_CODE_STYLE_PROFILE: Final[dict[str, Any]] = {
    "language_stack": ["typescript", "react", "node"],
    "patterns_preferred": [
        "Repository Pattern",
        "Dependency Injection",
        "Factory Pattern",
        "Strategy Pattern",
    ],
    "patterns_avoid": [
        "God objects",
        "Spaghetti code",
        "Tight coupling",
        "Service locator anti-pattern",
    ],
    "architecture_constraints": [
        "Thin controllers - no business logic in route handlers",
        "Clean architecture - separate concerns into layers",
        "Single Responsibility Principle for all classes/modules",
        "Use interfaces for dependency boundaries",
    ],
    "naming_conventions": [
        "camelCase for variables and functions",
        "PascalCase for classes, components, and interfaces",
        "UPPER_SNAKE_CASE for constants and enums",
        "Use descriptive names - no abbreviations except well-known ones (e.g., id, url)",
    ],
    "error_handling_policy": (
        "Use typed errors with error codes. Never swallow errors silently. "
        "Always provide context in error messages."
    ),
    "linting_formatting_policy": "align with repo config",
    "testing_policy": {
        "test_required_when": {
            "business_logic_changed": True,
            "api_changed": True,
            "db_query_changed": True,
            "bugfix": True,
        },
        "test_types_required": ["unit", "integration"],
        "minimum_expectations": [
            "Tests for all new code paths",
            "Regression test for every bugfix",
            "Integration tests for API endpoints",
            "Edge case coverage for business logic",
        ],
        "allow_skip_with_reason": False,
    },
}

PROFILE_PRESETS: Final[dict[str, dict[str, dict[str, Any]]]] = {
    "default": {
        "code_review": DEFAULT_CODE_REVIEW_PROFILE,
        "code_style": DEFAULT_CODE_STYLE_PROFILE,
    },
    "strict": {
        "code_review": STRICT_CODE_REVIEW_PROFILE,
        "code_style": STRICT_CODE_STYLE_PROFILE,
    },
}

# ── TOML rendering ──────────────────────────────────────────────────

_BARE_KEY_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def _quote_key(key: str) -> str:
    if key and all(c in _BARE_KEY_CHARS for c in key):
        return key
    return f'"{key}"'


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    msg = f"Unsupported type: {type(value)}"
    raise TypeError(msg)


def _section_to_toml(name: str, data: dict[str, object]) -> str:
    lines = [f"[{name}]"]
    for key, value in data.items():
        lines.append(f"{_quote_key(key)} = {_format_toml_value(value)}")
    return "\n".join(lines)


def generate_toml() -> str:
    """Generate a TOML configuration string from compiled-in defaults."""
    sections = [
        _section_to_toml("api", API_DEFAULTS),
        _section_to_toml("timeout", TIMEOUT_DEFAULTS),
        _section_to_toml("cache", CACHE_DEFAULTS),
        _section_to_toml("tests", TEST_COMMAND_DEFAULTS),
        _section_to_toml("pipeline", PIPELINE_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
