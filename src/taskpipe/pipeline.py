"""The task pipeline: diff, tests, self-review, optional autofix, PR.

Stages run strictly in sequence and each completed stage is appended to
``PipelineResult.stages_completed``. The run can stop early (nothing to do,
cancellation, autofix hand-off, unexpected error) but :meth:`Pipeline.run`
always returns a result and never raises.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from taskpipe.agent import Agent, AgentService, generate_prompt
from taskpipe.api import ApiError, TaskosClient
from taskpipe.config import TaskpipeConfig
from taskpipe.convention import ConventionManager
from taskpipe.git_ops import GitError, GitRepo
from taskpipe.models import (
    CodeReviewProfile,
    CodeReviewResult,
    CodeStyleProfile,
    PipelineResult,
    Task,
    TestRunResult,
)
from taskpipe.profiles import ProfileManager
from taskpipe.reports import build_autofix_prompt, build_pr_body
from taskpipe.review import ReviewClient
from taskpipe.shell import NoticeLevel, NullReporter, ProgressReporter, ScriptedPrompt, UserPrompt
from taskpipe.testing import TestRunner, determine_test_requirements

logger = logging.getLogger(__name__)

STAGE_ORDER = [
    "get_diff",
    "determine_tests",
    "run_tests",
    "self_review",
    "autofix",
    "build_pr",
    "open_pr",
]


@dataclass
class PullRequestOptions:
    title: str | None = None
    commit_message: str | None = None
    base_branch: str | None = None
    task_type: str | None = None


def _finding_line(category: str, file: str, message: str) -> str:
    return f"[{category}] {file}: {message}"


class Pipeline:
    """Runs the stage machine against injected collaborators."""

    def __init__(
        self,
        git: GitRepo,
        test_runner: TestRunner,
        review: ReviewClient,
        profiles: ProfileManager,
        *,
        client: TaskosClient | None = None,
        agent: Agent | None = None,
        reporter: ProgressReporter | None = None,
        prompt: UserPrompt | None = None,
        on_autofix_declined: str = "proceed",
        workspace_id: str | None = None,
    ) -> None:
        self.git = git
        self.test_runner = test_runner
        self.review = review
        self.profiles = profiles
        self.client = client
        self.agent = agent
        self.reporter = reporter or NullReporter()
        self.prompt = prompt or ScriptedPrompt(answer=False)
        self.on_autofix_declined = on_autofix_declined
        self.workspace_id = workspace_id

    @classmethod
    def from_config(
        cls,
        root: Path,
        config: TaskpipeConfig,
        *,
        reporter: ProgressReporter | None = None,
        prompt: UserPrompt | None = None,
    ) -> Pipeline:
        client = TaskosClient(
            config.api.base_url,
            config.api.api_key,
            timeout_seconds=config.timeouts.network,
        )
        conventions = ConventionManager(
            client,
            ttl_seconds=config.cache.convention_ttl_seconds,
            timeout_seconds=config.timeouts.convention,
        )
        git = GitRepo(
            root,
            conventions=conventions,
            timeout_seconds=config.timeouts.git,
            host_cli_timeout_seconds=config.timeouts.host_cli,
            host=config.pipeline.host,
        )
        workspace_id = config.api.workspace_id or None
        agent = AgentService(
            root,
            git=git,
            client=client,
            prompt=prompt,
            api_base_url=config.api.base_url,
            workspace_id=workspace_id,
            agent_command=config.pipeline.agent_command,
        )
        return cls(
            git,
            TestRunner(
                root,
                configured_commands=config.test_commands,
                timeout_seconds=config.timeouts.tests,
            ),
            ReviewClient(client),
            ProfileManager(
                client, workspace_id, ttl_seconds=config.cache.profile_ttl_seconds
            ),
            client=client,
            agent=agent,
            reporter=reporter,
            prompt=prompt,
            on_autofix_declined=config.pipeline.on_autofix_declined,
            workspace_id=workspace_id,
        )

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    # ── Shell interaction (never fails the run) ──────────────────────

    def _report(self, percent: int, label: str) -> None:
        try:
            self.reporter.report(percent, label)
        except Exception:
            logger.warning("Progress reporter failed at %s", label, exc_info=True)

    def _notify(self, level: NoticeLevel, message: str) -> None:
        try:
            self.prompt.notify(level, message)
        except Exception:
            logger.warning("Notification failed: %s", message, exc_info=True)

    # ── Run ──────────────────────────────────────────────────────────

    def _resolve_task(self, task: Task | str) -> Task:
        if isinstance(task, Task):
            return task
        if self.client is None or not self.client.has_credentials:
            raise ApiError(f"Cannot fetch task {task}: API client is not configured")
        return self.client.get_task(task)

    def run(
        self,
        task: Task | str,
        options: PullRequestOptions | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PipelineResult:
        """Run the pipeline for *task* (a ``Task`` or a task id to fetch)."""
        result = PipelineResult()
        try:
            self._run(self._resolve_task(task), options or PullRequestOptions(), cancel_event, result)
        except Exception as exc:
            logger.exception("Pipeline failed")
            result.blockers.append(f"Pipeline error: {exc}")
            result.success = False
            self._notify("error", f"Pipeline failed: {exc}")
        return result

    def _run(
        self,
        task: Task,
        options: PullRequestOptions,
        cancel_event: threading.Event | None,
        result: PipelineResult,
    ) -> None:
        def cancelled() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Pipeline cancelled after %s", result.stages_completed)
                result.cancelled = True
                return True
            return False

        workspace_id = task.workspace_id or self.workspace_id

        self._report(5, "Loading profiles...")
        style_profile = self.profiles.get_active_style_profile()
        review_profile = self.profiles.get_active_review_profile()
        if cancelled():
            return

        # get_diff
        self._report(15, "Getting changes...")
        diff = self.git.full_diff()
        changed_files = self.git.changed_files()
        has_uncommitted = self.git.has_uncommitted_changes()
        if has_uncommitted:
            try:
                uncommitted = self.git.uncommitted_diff()
                if uncommitted and uncommitted not in diff:
                    diff = f"{diff}\n{uncommitted}" if diff else uncommitted
                changed_files = list(
                    dict.fromkeys(
                        [
                            *changed_files,
                            *self.git.uncommitted_files(),
                            *self.git.untracked_files(),
                        ]
                    )
                )
            except GitError as exc:
                logger.warning("Could not merge uncommitted changes: %s", exc)

        if not diff and not changed_files and not has_uncommitted:
            self._notify("warning", "No changes detected. Make sure you have made changes to your code.")
            return

        result.diff_summary = (
            self.git.diff_summary() if diff else f"{len(changed_files)} file(s) changed"
        )
        result.stages_completed.append("get_diff")
        if cancelled():
            return

        # determine_tests
        self._report(25, "Analyzing test requirements...")
        requirement = determine_test_requirements(changed_files, diff, style_profile)
        result.stages_completed.append("determine_tests")
        if cancelled():
            return

        # run_tests
        if requirement.required:
            self._report(40, "Running tests...")
            commands = self.test_runner.detect_test_commands(style_profile)
            test_result = self.test_runner.run_tests(commands, requirement.types)
            if test_result.requirement_unmet:
                result.warnings.append(
                    f"Tests required but no command available for: {', '.join(requirement.types)}"
                )
            if test_result.result == "fail":
                result.warnings.append(
                    f"Tests failed: {test_result.summary.failed} of "
                    f"{test_result.summary.total} tests failed"
                )
        else:
            test_result = TestRunResult(
                tests_required=False, reason=requirement.reason, result="skipped"
            )
        result.test_result = test_result
        result.stages_completed.append("run_tests")
        if cancelled():
            return

        # self_review
        self._report(60, "Performing code review...")
        review_result = self.review.review_diff(
            diff,
            changed_files,
            review_profile,
            test_result,
            f"Task: {task.title}\nDescription: {task.description or 'N/A'}",
        )
        result.review_result = review_result
        result.stages_completed.append("self_review")
        self._collect_review(review_result, result)

        if test_result.result == "fail":
            result.blockers.append(
                f"Tests failed: {test_result.summary.failed} tests failed. Fix before merge."
            )
        if cancelled():
            return

        # autofix
        if result.blockers:
            self._report(70, "Preparing autofix...")
            result.autofix_attempted = True
            result.stages_completed.append("autofix")
            if self._autofix(task, test_result, review_result, style_profile, review_profile, result):
                return
            if cancelled():
                return

        # build_pr
        self._report(85, "Building PR...")
        result.pr_body = build_pr_body(task, result, review_result, test_result, review_profile)
        result.stages_completed.append("build_pr")
        if cancelled():
            return

        # open_pr
        self._report(90, "Creating pull request...")
        if self.git.has_uncommitted_changes():
            message = (
                f"{options.commit_message}\n\nTask: {task.id}" if options.commit_message else None
            )
            commit = self.git.commit_and_push(
                task.id, task.title, message, workspace_id, options.task_type
            )
            logger.info("Committed %s on %s", commit.commit_hash, commit.branch)

        result.pr_url = self.git.create_pull_request(
            task.id,
            options.title or task.title,
            task.description or "",
            custom_body=result.pr_body,
            workspace_id=workspace_id,
            task_type=options.task_type,
            base_branch=options.base_branch,
        )
        result.stages_completed.append("open_pr")
        result.success = True
        self._report(100, "Pipeline complete!")

    @staticmethod
    def _collect_review(review_result: CodeReviewResult, result: PipelineResult) -> None:
        for finding in review_result.findings:
            line = _finding_line(finding.category, finding.file, finding.message)
            if finding.severity == "blocker":
                result.blockers.append(line)
            elif finding.severity == "warn":
                result.warnings.append(line)
        result.blockers += [f"Required action: {a}" for a in review_result.required_actions]

    def _autofix(
        self,
        task: Task,
        test_result: TestRunResult,
        review_result: CodeReviewResult,
        style_profile: CodeStyleProfile,
        review_profile: CodeReviewProfile,
        result: PipelineResult,
    ) -> bool:
        """Offer the agent hand-off. Returns True when the run must stop here."""
        accepted = self.prompt.confirm(
            f"Pipeline found {len(result.blockers)} blocker(s). Send autofix prompt to the agent?",
            "Send to agent",
            "Skip autofix",
        )
        if not accepted:
            if self.on_autofix_declined == "abort":
                logger.info("Autofix declined; aborting before PR")
                return True
            return False

        if self.agent is None:
            result.warnings.append("Autofix requested but no agent is configured")
            return False

        fix_task = task.model_copy(
            update={
                "title": f"[AUTOFIX] {task.title}",
                "description": build_autofix_prompt(task, test_result, review_result),
            }
        )
        dispatch = self.agent.send(
            fix_task,
            prompt=generate_prompt(fix_task, style_profile, review_profile),
            create_branch=False,
        )
        if not dispatch.success:
            result.warnings.append(f"Autofix hand-off failed ({dispatch.method})")
            return False

        result.autofix_successful = False
        result.rerun_required = True
        self._notify(
            "info",
            "Autofix prompt sent to the agent. Run the pipeline again after it makes changes.",
        )
        return True
