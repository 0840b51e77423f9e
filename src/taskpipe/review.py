"""Self code review through the remote AI review endpoint, plus its PR rendering."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from taskpipe.api import ApiError, TaskosClient
from taskpipe.models import CodeReviewProfile, CodeReviewResult, TestRunResult, TestStatus

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 100_000
MAX_CHANGED_FILES = 500
MAX_CONTEXT_CHARS = 5_000
MANUAL_REVIEW_ACTION = "Manual review required - automated review failed"

_RISK_BADGES = {"low": "🟢 Low", "medium": "🟡 Medium", "high": "🔴 High"}
_SEVERITY_ICONS = {"blocker": "🔴", "warn": "🟡", "info": "🔵"}


def _drop_nulls(value: Any) -> Any:
    """Remove ``None`` values recursively so model defaults apply to them."""
    if isinstance(value, dict):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_nulls(v) for v in value if v is not None]
    return value


def parse_review_response(data: dict[str, Any]) -> CodeReviewResult:
    """Validate a raw review response into a fully-populated result."""
    return CodeReviewResult.model_validate(_drop_nulls(data))


def failed_review(reason: str) -> CodeReviewResult:
    return CodeReviewResult(
        summary=f"Review failed: {reason}",
        risk_level="high",
        test_status=TestStatus(status="not_run", reason="Review API call failed"),
        required_actions=[MANUAL_REVIEW_ACTION],
    )


class ReviewClient:
    def __init__(self, client: TaskosClient | None) -> None:
        self._client = client

    def build_payload(
        self,
        diff: str,
        changed_files: list[str],
        review_profile: CodeReviewProfile,
        test_result: TestRunResult | None = None,
        project_context: str | None = None,
    ) -> dict[str, Any]:
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"
        payload: dict[str, Any] = {
            "diff": diff,
            "changedFiles": changed_files[:MAX_CHANGED_FILES],
            "reviewProfile": review_profile.model_dump(),
        }
        if project_context:
            payload["projectContext"] = project_context[:MAX_CONTEXT_CHARS]
        if test_result is not None:
            payload["testResults"] = {
                "result": test_result.result,
                "summary": test_result.summary.model_dump(),
                "failures": [f.model_dump() for f in test_result.failures],
            }
        return payload

    def review_diff(
        self,
        diff: str,
        changed_files: list[str],
        review_profile: CodeReviewProfile,
        test_result: TestRunResult | None = None,
        project_context: str | None = None,
    ) -> CodeReviewResult:
        """Review *diff*; a failed call yields a high-risk result demanding manual review."""
        if self._client is None or not self._client.has_credentials:
            return failed_review("API client is not configured")

        payload = self.build_payload(
            diff, changed_files, review_profile, test_result, project_context
        )
        try:
            data = self._client.review_code(payload)
            return parse_review_response(data)
        except (ApiError, ValidationError) as exc:
            logger.warning("Code review failed: %s", exc)
            return failed_review(str(exc) or type(exc).__name__)


def has_blockers(result: CodeReviewResult) -> bool:
    return bool(result.findings_by_severity("blocker") or result.required_actions)


def format_for_pr(result: CodeReviewResult) -> str:
    blockers = result.findings_by_severity("blocker")
    warnings = result.findings_by_severity("warn")
    infos = result.findings_by_severity("info")

    lines = [
        "## Self Code Review",
        "",
        f"**Summary:** {result.summary}",
        f"**Risk Level:** {_RISK_BADGES.get(result.risk_level, result.risk_level)}",
        "",
        "| Blockers | Warnings | Info |",
        "| :---: | :---: | :---: |",
        f"| {len(blockers)} | {len(warnings)} | {len(infos)} |",
        "",
    ]

    if result.findings:
        lines += ["### Findings", ""]
        for finding in result.findings:
            icon = _SEVERITY_ICONS.get(finding.severity, "⚪")
            lines.append(
                f"{icon} **[{finding.severity.upper()}]** `{finding.location}`"
                f" - *{finding.category}*"
            )
            lines.append(f"  {finding.message}")
            if finding.suggested_fix:
                lines.append(f"  > **Suggested fix:** {finding.suggested_fix}")
            lines.append("")
    else:
        lines += ["*No findings - code looks clean!*", ""]

    if result.required_actions:
        lines.append("### Required Actions")
        lines += [f"- [ ] {action}" for action in result.required_actions]
        lines.append("")

    if result.optional_suggestions:
        lines += ["<details>", "<summary>Optional Suggestions</summary>", ""]
        lines += [f"- {s}" for s in result.optional_suggestions]
        lines += ["</details>", ""]

    return "\n".join(lines)
