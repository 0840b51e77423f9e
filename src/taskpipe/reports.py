"""Markdown documents the pipeline produces: the autofix prompt and the PR body."""

from __future__ import annotations

from taskpipe.models import (
    CodeReviewProfile,
    CodeReviewResult,
    PipelineResult,
    Task,
    TestRunResult,
)
from taskpipe.review import format_for_pr

AUTOFIX_LOG_MAX_CHARS = 1500
WHY_MAX_CHARS = 500

_RESULT_EMOJI = {"pass": "✅", "fail": "❌", "skipped": "⏭️"}


def build_autofix_prompt(
    task: Task,
    test_result: TestRunResult | None,
    review_result: CodeReviewResult,
) -> str:
    lines = [
        "# AUTOFIX REQUIRED",
        "",
        f'The pipeline for task "{task.title}" found issues that need to be fixed.',
        "",
    ]

    if test_result is not None and test_result.result == "fail":
        summary = test_result.summary
        lines += ["## Failed Tests", f"{summary.failed} of {summary.total} tests failed.", ""]
        for failure in test_result.failures:
            where = f" ({failure.file})" if failure.file else ""
            lines.append(f"- **{failure.test_name}**{where}")
            if failure.message:
                lines.append(f"  Error: {failure.message}")
        lines.append("")
        if test_result.logs_snippet:
            lines += ["```", test_result.logs_snippet[:AUTOFIX_LOG_MAX_CHARS], "```", ""]

    blockers = review_result.findings_by_severity("blocker")
    if blockers:
        lines.append("## Code Review Blockers")
        for finding in blockers:
            lines.append(f"- **{finding.location}** [{finding.category}]")
            lines.append(f"  {finding.message}")
            if finding.suggested_fix:
                lines.append(f"  > Fix: {finding.suggested_fix}")
        lines.append("")

    if review_result.required_actions:
        lines.append("## Required Actions")
        lines += [f"- {a}" for a in review_result.required_actions]
        lines.append("")

    lines += [
        "## Instructions",
        "Please fix ALL the issues listed above. After fixing:",
        "1. Make sure all tests pass",
        "2. Address every blocker from the code review",
        "3. Follow the code style profile of this project",
    ]
    return "\n".join(lines)


def _test_section(test_result: TestRunResult | None) -> list[str]:
    lines = ["## Test Results"]
    if test_result is None:
        return lines + ["- Tests not executed", ""]

    required = "Yes" if test_result.tests_required else "No"
    emoji = _RESULT_EMOJI.get(test_result.result, "❓")
    lines += [
        f"- **Required:** {required} ({test_result.reason})",
        f"- **Status:** {emoji} {test_result.result.upper()}",
    ]
    if test_result.commands_run:
        lines.append(f"- **Commands:** {', '.join(f'`{c}`' for c in test_result.commands_run)}")
    summary = test_result.summary
    if summary.total > 0:
        lines.append(
            f"- **Results:** {summary.passed} passed, {summary.failed} failed "
            f"out of {summary.total} ({summary.duration_ms}ms)"
        )
    if test_result.failures:
        lines += ["", "<details>", "<summary>Failed Tests</summary>", ""]
        for failure in test_result.failures:
            where = f" in `{failure.file}`" if failure.file else ""
            lines.append(f"- `{failure.test_name}`{where}")
            if failure.message:
                lines.append(f"  > {failure.message}")
        lines.append("</details>")
    lines.append("")
    return lines


def _checklist(review_result: CodeReviewResult, review_profile: CodeReviewProfile) -> list[str]:
    lines = ["## Checklist"]
    if not review_profile.required_checks:
        return lines + [
            "- [x] Code follows project conventions",
            "- [x] Error handling implemented",
            "",
        ]
    blocker_messages = [f.message.lower() for f in review_result.findings_by_severity("blocker")]
    for check in review_profile.required_checks:
        violated = any(check.lower() in message for message in blocker_messages)
        lines.append(f"- [{' ' if violated else 'x'}] {check}")
    lines.append("")
    return lines


def build_pr_body(
    task: Task,
    result: PipelineResult,
    review_result: CodeReviewResult,
    test_result: TestRunResult | None,
    review_profile: CodeReviewProfile,
) -> str:
    lines = [
        "## What Changed",
        review_result.summary or "Changes implemented as described in the task.",
        "",
        "## Why",
        f"**Task:** {task.title}",
    ]
    if task.description:
        lines.append(task.description[:WHY_MAX_CHARS])
    lines.append("")

    lines += _test_section(test_result)
    lines.append(format_for_pr(review_result))
    lines += _checklist(review_result, review_profile)

    if result.blockers:
        lines.append("## Known Issues / Blockers")
        lines += [f"- {b}" for b in result.blockers]
        lines.append("")

    lines += ["---", f"*Created via taskpipe* | Task ID: `{task.id}`"]
    return "\n".join(lines)
