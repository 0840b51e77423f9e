"""Hand a task to an external code-generating agent.

The hand-off is file based: a context file and a prompt file under
``.taskpipe/``. When an agent command is configured it is launched in the
background with the prompt file path as its last argument.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from taskpipe.api import ApiError, TaskosClient
from taskpipe.defaults import API_DEFAULTS, CONTEXT_DIR
from taskpipe.git_ops import GitError, GitRepo
from taskpipe.models import CodeReviewProfile, CodeStyleProfile, Task
from taskpipe.shell import UserPrompt

logger = logging.getLogger(__name__)

GITIGNORE_ENTRY = f"{CONTEXT_DIR}/"
STASH_MESSAGE = "taskpipe: auto-stash before task branch"


@dataclass
class AgentDispatch:
    success: bool
    method: str
    branch: str | None = None
    context_path: Path | None = None
    prompt_path: Path | None = None


class Agent(Protocol):
    def send(
        self, task: Task, prompt: str | None = None, create_branch: bool = True
    ) -> AgentDispatch: ...


def _testing_conditions(style: CodeStyleProfile) -> list[str]:
    policy = style.testing_policy
    if policy is None:
        return []
    when = policy.test_required_when
    labels = [
        (when.business_logic_changed, "business logic changes"),
        (when.api_changed, "API changes"),
        (when.db_query_changed, "database query changes"),
        (when.bugfix, "bug fixes"),
    ]
    return [label for enabled, label in labels if enabled]


def _style_section(style: CodeStyleProfile) -> list[str]:
    lines = ["## Code Style Requirements (MANDATORY)", ""]
    if style.language_stack:
        lines += [f"**Tech Stack:** {', '.join(style.language_stack)}", ""]
    if style.patterns_preferred:
        lines.append("**Required Design Patterns:**")
        lines += [f"- Use {p}" for p in style.patterns_preferred]
        lines.append("")
    if style.patterns_avoid:
        lines.append("**Patterns to AVOID:**")
        lines += [f"- DO NOT use {p}" for p in style.patterns_avoid]
        lines.append("")
    if style.architecture_constraints:
        lines.append("**Architecture Constraints:**")
        lines += [f"- {c}" for c in style.architecture_constraints]
        lines.append("")
    if style.naming_conventions:
        lines.append("**Naming Conventions:**")
        lines += [f"- {n}" for n in style.naming_conventions]
        lines.append("")
    if style.error_handling_policy:
        lines += [f"**Error Handling:** {style.error_handling_policy}", ""]

    policy = style.testing_policy
    if policy is not None:
        lines.append("**Testing Requirements:**")
        conditions = _testing_conditions(style)
        if conditions:
            lines.append(f"- You MUST write tests when: {', '.join(conditions)}")
        if policy.test_types_required:
            lines.append(f"- Required test types: {', '.join(policy.test_types_required)}")
        lines += [f"- {e}" for e in policy.minimum_expectations]
        if not policy.allow_skip_with_reason:
            lines.append("- Tests CANNOT be skipped under any circumstances")
        lines.append("")
    return lines


def _review_section(review: CodeReviewProfile) -> list[str]:
    lines = [
        "## Code Review Standards (your code WILL be reviewed against these)",
        "",
        f"**Strictness Level:** {review.strictness.upper()}",
        "",
    ]
    if review.required_checks:
        lines.append("**Required Checks (blockers if violated):**")
        lines += [f"- {c}" for c in review.required_checks]
        lines.append("")
    blocker_rules = [r for r in review.rules if r.severity == "blocker"]
    if blocker_rules:
        lines.append("**Blocker Rules:**")
        lines += [f"- {r.description}" for r in blocker_rules]
        lines.append("")
    return lines


def generate_prompt(
    task: Task,
    style_profile: CodeStyleProfile | None = None,
    review_profile: CodeReviewProfile | None = None,
) -> str:
    """Markdown brief for an agent working on *task*."""
    lines = [f"# Task: {task.title}", ""]

    if task.description:
        lines += ["## Description", task.description, ""]

    lines += [
        "## Context",
        f"- **Priority:** {task.priority.upper()}",
        f"- **Status:** {task.status.replace('_', ' ')}",
        f"- **Task ID:** `{task.id}`",
    ]
    if task.due_date:
        lines.append(f"- **Due Date:** {task.due_date[:10]}")
    lines.append("")

    steps = task.ordered_steps()
    if steps:
        lines.append("## Requirements / Checklist")
        for index, step in enumerate(steps, start=1):
            mark = "✅" if step.completed else "☐"
            lines.append(f"{index}. {mark} {step.content} (stepId: `{step.id}`)")
        lines.append("")
        incomplete = sum(1 for s in steps if not s.completed)
        if incomplete:
            lines += [f"> Focus on the {incomplete} incomplete item(s) above.", ""]

    if task.tags:
        lines += ["## Tags", ", ".join(f"`{t.name}`" for t in task.tags), ""]

    if style_profile is not None:
        lines += _style_section(style_profile)
    if review_profile is not None:
        lines += _review_section(review_profile)

    has_policy = style_profile is not None and style_profile.testing_policy is not None
    lines += [
        "## Instructions",
        "Please implement this task following these guidelines:",
        "1. Follow the existing code patterns and conventions in this project",
        "2. Write clean, well-documented code",
        "3. Include proper error handling",
        "4. Write tests as specified in the Testing Requirements above"
        if has_policy
        else "4. Add relevant tests if applicable",
        "5. Make sure all existing tests still pass",
        "",
        f"Task context is in `{CONTEXT_DIR}/task-{task.id}.json`. "
        "Status was set to **in_progress** when this task was dispatched.",
        "",
        f"When you are done, run `taskpipe run {task.id}` to test, review and open a PR.",
        "After completing the implementation, provide a summary of all changes made.",
    ]
    return "\n".join(lines)


class AgentService:
    """File-based agent hand-off for one working tree."""

    def __init__(
        self,
        root: Path,
        *,
        git: GitRepo | None = None,
        client: TaskosClient | None = None,
        prompt: UserPrompt | None = None,
        api_base_url: str = API_DEFAULTS["base_url"],
        workspace_id: str | None = None,
        agent_command: str = "",
    ) -> None:
        self.root = root
        self.git = git
        self.client = client
        self.prompt = prompt
        self.api_base_url = api_base_url
        self.workspace_id = workspace_id
        self.agent_command = agent_command

    @property
    def context_dir(self) -> Path:
        return self.root / CONTEXT_DIR

    # ── Branch ───────────────────────────────────────────────────────

    def _prepare_branch(self, task: Task, task_type: str | None) -> tuple[bool, str | None]:
        """Returns ``(proceed, branch)``; ``proceed`` is False only if the user cancels."""
        if self.git is None or not self.git.is_repo():
            return True, None
        try:
            if self.git.has_uncommitted_changes():
                confirmed = self.prompt is not None and self.prompt.confirm(
                    "You have uncommitted changes. Creating a task branch will stash them. Continue?",
                    "Yes, stash & continue",
                    "Cancel",
                )
                if not confirmed:
                    return False, None
                try:
                    self.git.stash(STASH_MESSAGE)
                except GitError as exc:
                    logger.warning("Stash failed, continuing: %s", exc)
            workspace_id = task.workspace_id or self.workspace_id
            return True, self.git.create_task_branch(task.id, task.title, workspace_id, task_type)
        except GitError as exc:
            logger.warning("Task branch creation failed (non-fatal): %s", exc)
            return True, None

    # ── Context files ────────────────────────────────────────────────

    def ensure_gitignore(self) -> None:
        path = self.root / ".gitignore"
        content = path.read_text(errors="replace") if path.is_file() else ""
        if any(line.strip() == GITIGNORE_ENTRY for line in content.splitlines()):
            return
        sep = "" if not content or content.endswith("\n") else "\n"
        with path.open("a") as fh:
            fh.write(f"{sep}\n# taskpipe agent context (contains no secrets)\n{GITIGNORE_ENTRY}\n")

    def write_task_context(self, task: Task, branch: str | None) -> Path:
        """Write ``task-<id>.json``; the API key is never included."""
        self.context_dir.mkdir(parents=True, exist_ok=True)
        self.ensure_gitignore()
        context = {
            "taskId": task.id,
            "workspaceId": task.workspace_id or self.workspace_id,
            "baseUrl": self.api_base_url,
            "title": task.title,
            "branchName": branch,
            "sentAt": datetime.now(UTC).isoformat(),
        }
        path = self.context_dir / f"task-{task.id}.json"
        path.write_text(json.dumps(context, indent=2))
        return path

    def remove_task_context(self, task_id: str) -> None:
        (self.context_dir / f"task-{task_id}.json").unlink(missing_ok=True)

    def write_prompt(self, task: Task, prompt: str) -> Path:
        self.context_dir.mkdir(parents=True, exist_ok=True)
        path = self.context_dir / f"prompt-{task.id}.md"
        path.write_text(prompt)
        return path

    # ── Dispatch ─────────────────────────────────────────────────────

    def _mark_in_progress(self, task: Task) -> None:
        if self.client is None or not self.client.has_credentials:
            return
        try:
            self.client.update_task(task.id, status="in_progress")
        except ApiError as exc:
            logger.warning("Failed to set task %s in progress: %s", task.id, exc)

    def _launch(self, prompt_path: Path) -> bool:
        argv = [*shlex.split(self.agent_command), str(prompt_path)]
        try:
            subprocess.Popen(
                argv,
                cwd=self.root,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Could not launch agent %r: %s", argv[0], exc)
            return False
        logger.info("Launched agent: %s", " ".join(argv))
        return True

    def send(
        self,
        task: Task,
        prompt: str | None = None,
        create_branch: bool = True,
        *,
        task_type: str | None = None,
    ) -> AgentDispatch:
        branch = None
        if create_branch:
            proceed, branch = self._prepare_branch(task, task_type)
            if not proceed:
                return AgentDispatch(success=False, method="cancelled")

        try:
            context_path = self.write_task_context(task, branch)
            prompt_path = self.write_prompt(task, prompt or generate_prompt(task))
        except OSError as exc:
            logger.error("Failed to write agent hand-off files: %s", exc)
            return AgentDispatch(success=False, method="failed", branch=branch)

        self._mark_in_progress(task)

        method = "file"
        if self.agent_command and self._launch(prompt_path):
            method = "command"
        return AgentDispatch(
            success=True,
            method=method,
            branch=branch,
            context_path=context_path,
            prompt_path=prompt_path,
        )
