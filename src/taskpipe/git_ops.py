"""Source-control adapter around the ``git`` and ``gh`` command-line tools.

Every command is spawned from an argument vector (never through a shell),
with the working directory pinned to the project root and a bounded
timeout. Failures surface as :class:`GitError` carrying the captured stderr.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from taskpipe.convention import ConventionManager, default_convention, render_convention
from taskpipe.defaults import PIPELINE_DEFAULTS, TIMEOUT_DEFAULTS
from taskpipe.models import RenderContext, RenderedConvention

logger = logging.getLogger(__name__)

_HEAD_BRANCH_RE = re.compile(r"HEAD branch:\s*(\S+)")
_NO_CHANGES = "No changes detected."


class GitError(RuntimeError):
    """Raised when a git (or host CLI) command fails, times out or is missing."""

    def __init__(
        self,
        message: str,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class CommitResult:
    branch: str
    commit_hash: str


@dataclass
class RepoSlug:
    owner: str
    repo: str


def _split_lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def find_project_root(start: Path | str | None = None) -> Path:
    """Top-level of the work tree containing *start*, or *start* itself."""
    path = Path(start or Path.cwd()).resolve()
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=path,
            capture_output=True,
            text=True,
            timeout=TIMEOUT_DEFAULTS["git"],
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return path
    top = result.stdout.strip()
    if result.returncode == 0 and top:
        return Path(top)
    return path


class GitRepo:
    """Git operations for a single working tree."""

    def __init__(
        self,
        root: Path | str,
        *,
        conventions: ConventionManager | None = None,
        timeout_seconds: float = TIMEOUT_DEFAULTS["git"],
        host_cli_timeout_seconds: float = TIMEOUT_DEFAULTS["host_cli"],
        host: str = PIPELINE_DEFAULTS["host"],
        remote: str = "origin",
    ) -> None:
        self.root = Path(root).resolve()
        self.conventions = conventions
        self.host = host
        self.remote = remote
        self._timeout = timeout_seconds
        self._host_cli_timeout = host_cli_timeout_seconds

    # ── Process plumbing ─────────────────────────────────────────────

    def _exec(
        self, args: list[str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                args,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"{' '.join(args[:3])} timed out after {timeout:g}s"
            raise GitError(msg, args) from exc
        except FileNotFoundError as exc:
            raise GitError(f"{args[0]} executable not found", args) from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            detail = stderr or (result.stdout or "").strip() or "unknown error"
            raise GitError(
                f"{' '.join(args[:3])} failed: {detail}",
                args,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def _run_git(self, *args: str) -> str:
        return self._exec(["git", *args], self._timeout).stdout.strip()

    # ── Status ───────────────────────────────────────────────────────

    def is_repo(self) -> bool:
        try:
            return self._run_git("rev-parse", "--is-inside-work-tree") == "true"
        except GitError:
            return False

    def current_branch(self) -> str:
        return self._run_git("branch", "--show-current")

    def has_uncommitted_changes(self) -> bool:
        return bool(self._run_git("status", "--porcelain"))

    def untracked_files(self) -> list[str]:
        return _split_lines(self._run_git("ls-files", "--others", "--exclude-standard"))

    def username(self) -> str | None:
        try:
            return self._run_git("config", "user.name") or None
        except GitError:
            return None

    # ── Conventions ──────────────────────────────────────────────────

    def _render(
        self,
        task_id: str,
        title: str,
        workspace_id: str | None,
        task_type: str | None,
    ) -> RenderedConvention:
        ctx = RenderContext(
            task_title=title,
            task_id=task_id,
            task_type=task_type,
            username=self.username(),
        )
        if self.conventions is not None and workspace_id:
            return self.conventions.render(workspace_id, ctx)
        return render_convention(default_convention(), ctx)

    # ── Branches ─────────────────────────────────────────────────────

    def branch_exists(self, name: str) -> bool:
        return bool(self._run_git("branch", "--list", name))

    def checkout(self, name: str, *, create: bool = False) -> None:
        if create:
            self._run_git("checkout", "-b", name)
        else:
            self._run_git("checkout", name)

    def create_task_branch(
        self,
        task_id: str,
        title: str,
        workspace_id: str | None = None,
        task_type: str | None = None,
    ) -> str:
        """Switch to the task's branch, creating it when it does not exist yet."""
        branch = self._render(task_id, title, workspace_id, task_type).branch_name
        if self.branch_exists(branch):
            self.checkout(branch)
        else:
            self.checkout(branch, create=True)
        logger.info("On task branch %s", branch)
        return branch

    def stash(self, message: str) -> None:
        self._run_git("stash", "push", "-m", message)

    # ── Diffs ────────────────────────────────────────────────────────

    def diff_summary(self) -> str:
        """Stat summary of commits ahead of the default branch plus the working tree."""
        try:
            staged = self._run_git("diff", "--cached", "--stat")
            unstaged = self._run_git("diff", "--stat")
            untracked = self._run_git("ls-files", "--others", "--exclude-standard")
        except GitError as exc:
            logger.warning("Unable to get diff summary: %s", exc)
            return "Unable to get diff summary."

        parts = []
        committed = self._committed_stat()
        if committed:
            parts.append(f"Committed:\n{committed}")
        if staged:
            parts.append(f"Staged:\n{staged}")
        if unstaged:
            parts.append(f"Modified:\n{unstaged}")
        if untracked:
            parts.append(f"New files:\n{untracked}")
        return "\n".join(parts) if parts else _NO_CHANGES

    def _committed_stat(self) -> str:
        try:
            return self._run_git("diff", f"{self.default_branch()}...HEAD", "--stat")
        except GitError as exc:
            logger.debug("No committed range for diff summary: %s", exc)
            return ""

    def full_diff(self) -> str:
        """Diff against the default branch, else staged + unstaged. Never raises."""
        try:
            base = self.default_branch()
            try:
                return self._run_git("diff", f"{base}...HEAD")
            except GitError:
                staged = self._run_git("diff", "--cached")
                unstaged = self._run_git("diff")
                return "\n".join(part for part in (staged, unstaged) if part)
        except GitError as exc:
            logger.warning("Unable to compute diff: %s", exc)
            return ""

    def changed_files(self) -> list[str]:
        """Changed paths relative to the default branch, else the working tree."""
        try:
            base = self.default_branch()
            try:
                return _dedupe(_split_lines(self._run_git("diff", "--name-only", f"{base}...HEAD")))
            except GitError:
                staged = self._run_git("diff", "--cached", "--name-only")
                unstaged = self._run_git("diff", "--name-only")
                untracked = self._run_git("ls-files", "--others", "--exclude-standard")
                return _dedupe(_split_lines("\n".join([staged, unstaged, untracked])))
        except GitError as exc:
            logger.warning("Unable to list changed files: %s", exc)
            return []

    def uncommitted_diff(self) -> str:
        return self._run_git("diff", "HEAD")

    def uncommitted_files(self) -> list[str]:
        return _split_lines(self._run_git("diff", "HEAD", "--name-only"))

    # ── Commit / push ────────────────────────────────────────────────

    def commit_and_push(
        self,
        task_id: str,
        title: str,
        message: str | None = None,
        workspace_id: str | None = None,
        task_type: str | None = None,
    ) -> CommitResult:
        if message is None:
            rendered = self._render(task_id, title, workspace_id, task_type)
            message = f"{rendered.commit_message}\n\nTask: {task_id}"

        self._run_git("add", "-A")
        self._run_git("commit", "-m", message)
        branch = self.current_branch()

        try:
            self._run_git("push", "-u", self.remote, branch)
        except GitError as exc:
            logger.info("push -u failed (%s), retrying plain push", exc)
            self._run_git("push", self.remote, branch)

        commit_hash = self._run_git("rev-parse", "--short", "HEAD")
        return CommitResult(branch=branch, commit_hash=commit_hash)

    # ── Remote ───────────────────────────────────────────────────────

    def remote_url(self) -> str | None:
        try:
            return self._run_git("remote", "get-url", self.remote) or None
        except GitError:
            return None

    def repo_slug(self) -> RepoSlug | None:
        """Owner/repo parsed from an https or ssh remote URL on the code host."""
        url = self.remote_url()
        if not url:
            return None
        pattern = re.compile(rf"{re.escape(self.host)}[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")
        match = pattern.search(url)
        if not match:
            return None
        return RepoSlug(owner=match.group(1), repo=match.group(2))

    def default_branch(self) -> str:
        try:
            output = self._run_git("remote", "show", self.remote)
            match = _HEAD_BRANCH_RE.search(output)
            if match and match.group(1) != "(unknown)":
                return match.group(1)
        except GitError:
            pass

        for candidate in ("main", "master"):
            try:
                self._run_git("rev-parse", "--verify", candidate)
                return candidate
            except GitError:
                continue
        return "master"

    # ── Pull requests ────────────────────────────────────────────────

    def compare_url(
        self, slug: RepoSlug, base: str, branch: str, title: str, body: str
    ) -> str:
        return (
            f"https://{self.host}/{slug.owner}/{slug.repo}/compare/{base}...{branch}"
            f"?expand=1&title={quote(title, safe='')}&body={quote(body, safe='')}"
        )

    def create_pull_request(
        self,
        task_id: str,
        title: str,
        description: str,
        custom_body: str | None = None,
        workspace_id: str | None = None,
        task_type: str | None = None,
        base_branch: str | None = None,
    ) -> str:
        """Open a PR with ``gh``; on any failure return a prefilled compare URL."""
        slug = self.repo_slug()
        if slug is None:
            msg = f"Could not detect a {self.host} repository from the remote URL"
            raise GitError(msg)

        branch = self.current_branch()
        rendered = self._render(task_id, title, workspace_id, task_type)
        if base_branch is None:
            base_branch = (
                rendered.base_branch
                if self.conventions is not None and workspace_id
                else self.default_branch()
            )
        body = custom_body or (
            f"## Task\n\n**Task:** {title}\n**Task ID:** {task_id}\n\n---\n\n{description}"
        )

        try:
            result = self._exec(
                [
                    "gh",
                    "pr",
                    "create",
                    "--title",
                    rendered.pr_title,
                    "--body",
                    body,
                    "--base",
                    base_branch,
                    "--head",
                    branch,
                ],
                self._host_cli_timeout,
            )
            url = result.stdout.strip().splitlines()
            if url:
                return url[-1].strip()
        except GitError as exc:
            logger.warning("gh pr create failed, falling back to compare URL: %s", exc)

        return self.compare_url(slug, base_branch, branch, rendered.pr_title, body)
