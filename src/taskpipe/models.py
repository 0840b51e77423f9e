"""Pydantic models defining the data contracts of the taskpipe pipeline.

Remote-service payloads (tasks, profiles, branch conventions, review
responses) are validated into these models at the client boundary, so every
downstream stage works with fully-populated values. Models that travel over
the wire in camelCase declare aliases and accept either spelling.
"""

from __future__ import annotations

from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator

Severity = Literal["info", "warn", "blocker"]
RiskLevel = Literal["low", "medium", "high"]
TestType = Literal["unit", "integration", "e2e"]
TestOutcome = Literal["pass", "fail", "skipped"]
ProfileType = Literal["code_review", "code_style"]

TEST_TYPES: tuple[str, ...] = ("unit", "integration", "e2e")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Tasks ───────────────────────────────────────────────────────────


class TaskStep(_CamelModel):
    id: str
    content: str
    completed: bool = False
    order_index: int = Field(default=0, alias="orderIndex")


class TaskTag(BaseModel):
    id: str = ""
    name: str
    color: str | None = None


class Task(_CamelModel):
    id: str
    title: str
    description: str | None = None
    status: str = "todo"
    priority: str = "medium"
    due_date: str | None = Field(default=None, alias="dueDate")
    start_date: str | None = Field(default=None, alias="startDate")
    workspace_id: str | None = Field(default=None, alias="workspaceId")
    steps: list[TaskStep] = Field(default_factory=list)
    tags: list[TaskTag] = Field(default_factory=list)

    def ordered_steps(self) -> list[TaskStep]:
        return sorted(self.steps, key=lambda s: s.order_index)


# ── Profiles ────────────────────────────────────────────────────────


class ReviewRule(BaseModel):
    id: str = ""
    description: str
    severity: Severity = "warn"
    applies_to: str = "all"
    examples: list[str] = Field(default_factory=list)


class CodeReviewProfile(BaseModel):
    strictness: RiskLevel = "medium"
    focus_areas: list[str] = Field(default_factory=list)
    rules: list[ReviewRule] = Field(default_factory=list)
    required_checks: list[str] = Field(default_factory=list)
    feedback_format: str = "summary+inline"
    tone: str = "neutral"


class TestRequiredWhen(BaseModel):
    business_logic_changed: bool = False
    api_changed: bool = False
    db_query_changed: bool = False
    bugfix: bool = False


class TestCommands(BaseModel):
    unit: str | None = None
    integration: str | None = None
    e2e: str | None = None

    def get(self, test_type: str) -> str | None:
        value = getattr(self, test_type, None)
        return value or None

    def is_empty(self) -> bool:
        return not any(self.get(t) for t in TEST_TYPES)


class TestingPolicy(BaseModel):
    test_required_when: TestRequiredWhen = Field(default_factory=TestRequiredWhen)
    test_types_required: list[TestType] = Field(default_factory=list)
    minimum_expectations: list[str] = Field(default_factory=list)
    allow_skip_with_reason: bool = True
    test_commands: TestCommands | None = None


class CodeStyleProfile(BaseModel):
    language_stack: list[str] = Field(default_factory=list)
    patterns_preferred: list[str] = Field(default_factory=list)
    patterns_avoid: list[str] = Field(default_factory=list)
    architecture_constraints: list[str] = Field(default_factory=list)
    naming_conventions: list[str] = Field(default_factory=list)
    error_handling_policy: str = ""
    linting_formatting_policy: str = ""
    testing_policy: TestingPolicy | None = None


class AgentProfile(_CamelModel):
    id: str
    workspace_id: str | None = Field(default=None, alias="workspaceId")
    type: ProfileType
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    is_default: bool = Field(default=False, alias="isDefault")


# ── Branch conventions ──────────────────────────────────────────────


class TaskTypeMapping(_CamelModel):
    task_type: str = Field(alias="taskType")
    git_prefix: str = Field(alias="gitPrefix")
    branch_prefix: str = Field(alias="branchPrefix")


class BranchConventionConfig(_CamelModel):
    task_type_mappings: list[TaskTypeMapping] = Field(alias="taskTypeMappings")
    branch_pattern: str = Field(alias="branchPattern")
    pr_title_pattern: str = Field(alias="prTitlePattern")
    commit_pattern: str = Field(alias="commitPattern")
    default_base_branch: str = Field(alias="defaultBaseBranch")
    default_task_type: str = Field(alias="defaultTaskType")


class RenderContext(BaseModel):
    task_title: str
    task_id: str
    task_type: str | None = None
    username: str | None = None


class RenderedConvention(BaseModel):
    branch_name: str
    pr_title: str
    commit_message: str
    base_branch: str


# ── Test runs ───────────────────────────────────────────────────────


class TestSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    duration_ms: int = 0


class TestFailure(BaseModel):
    test_name: str
    file: str | None = None
    message: str | None = None


class TestRunResult(BaseModel):
    tests_required: bool
    reason: str
    commands_run: list[str] = Field(default_factory=list)
    result: TestOutcome
    summary: TestSummary = Field(default_factory=TestSummary)
    failures: list[TestFailure] = Field(default_factory=list)
    logs_snippet: str = ""
    requirement_unmet: bool = False


# ── Reviews ─────────────────────────────────────────────────────────


class TestStatus(BaseModel):
    status: Literal["pass", "fail", "skipped", "not_run"] = "not_run"
    reason: str | None = None


class ReviewFinding(BaseModel):
    file: str = "unknown"
    line_range: str | None = None
    severity: Severity = "info"
    category: str = "general"
    message: str = ""
    suggested_fix: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: object) -> object:
        return value if value in get_args(Severity) else "info"

    @field_validator("line_range", mode="before")
    @classmethod
    def _coerce_line_range(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        if isinstance(value, (list, tuple)):
            return "-".join(str(v) for v in value) or None
        return value

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line_range}" if self.line_range else self.file


class CodeReviewResult(BaseModel):
    summary: str = "Review completed"
    risk_level: RiskLevel = "medium"
    test_status: TestStatus = Field(default_factory=TestStatus)
    findings: list[ReviewFinding] = Field(default_factory=list)
    required_actions: list[str] = Field(default_factory=list)
    optional_suggestions: list[str] = Field(default_factory=list)

    @field_validator("risk_level", mode="before")
    @classmethod
    def _coerce_risk_level(cls, value: object) -> object:
        return value if value in get_args(RiskLevel) else "medium"

    def findings_by_severity(self, severity: str) -> list[ReviewFinding]:
        return [f for f in self.findings if f.severity == severity]


# ── Pipeline ────────────────────────────────────────────────────────


class PipelineResult(BaseModel):
    success: bool = False
    stages_completed: list[str] = Field(default_factory=list)
    diff_summary: str = ""
    test_result: TestRunResult | None = None
    review_result: CodeReviewResult | None = None
    autofix_attempted: bool = False
    autofix_successful: bool = False
    pr_url: str | None = None
    pr_body: str = ""
    blockers: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cancelled: bool = False
    rerun_required: bool = False
