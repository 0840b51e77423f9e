from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from taskpipe.agent import GITIGNORE_ENTRY, STASH_MESSAGE, AgentService, generate_prompt
from taskpipe.api import ServerError
from taskpipe.git_ops import GitError
from taskpipe.models import CodeStyleProfile, Task, TaskStep, TaskTag
from taskpipe.profiles import builtin_review_profile, builtin_style_profile
from taskpipe.shell import ScriptedPrompt


@pytest.fixture()
def task() -> Task:
    return Task(
        id="abc12345",
        title="Fix login bug",
        description="Users cannot log in",
        status="in_review",
        priority="high",
        due_date="2026-11-01T00:00:00Z",
        workspace_id="ws",
        steps=[
            TaskStep(id="s2", content="Write test", completed=False, order_index=2),
            TaskStep(id="s1", content="Reproduce", completed=True, order_index=1),
        ],
        tags=[TaskTag(name="auth")],
    )


@pytest.fixture()
def git() -> MagicMock:
    repo = MagicMock()
    repo.is_repo.return_value = True
    repo.has_uncommitted_changes.return_value = False
    repo.create_task_branch.return_value = "bugfix/fix-login-bug-abc12345"
    return repo


@pytest.fixture()
def client() -> MagicMock:
    c = MagicMock()
    c.has_credentials = True
    c.api_key = "super-secret-key"
    return c


class TestGeneratePrompt:
    def test_sections(self, task: Task) -> None:
        text = generate_prompt(task)
        assert text.startswith("# Task: Fix login bug")
        assert "## Description\nUsers cannot log in" in text
        assert "- **Priority:** HIGH" in text
        assert "- **Status:** in review" in text
        assert "- **Due Date:** 2026-11-01" in text
        assert "`auth`" in text
        assert "4. Add relevant tests if applicable" in text
        assert "taskpipe run abc12345" in text

    def test_steps_are_ordered_and_marked(self, task: Task) -> None:
        text = generate_prompt(task)
        assert "1. ✅ Reproduce (stepId: `s1`)" in text
        assert "2. ☐ Write test (stepId: `s2`)" in text
        assert "> Focus on the 1 incomplete item(s) above." in text

    def test_profiles_add_standards(self, task: Task) -> None:
        text = generate_prompt(task, builtin_style_profile(), builtin_review_profile())
        assert "## Code Style Requirements (MANDATORY)" in text
        assert "- You MUST write tests when: business logic changes, API changes, bug fixes" in text
        assert "## Code Review Standards" in text
        assert "**Strictness Level:** MEDIUM" in text
        assert "4. Write tests as specified in the Testing Requirements above" in text

    def test_strict_skip_policy(self, task: Task) -> None:
        style = CodeStyleProfile.model_validate(
            {"testing_policy": {"allow_skip_with_reason": False}}
        )
        assert "Tests CANNOT be skipped" in generate_prompt(task, style)

    def test_minimal_task(self) -> None:
        text = generate_prompt(Task(id="t1", title="Tidy"))
        assert "## Description" not in text
        assert "## Requirements / Checklist" not in text
        assert "## Tags" not in text


class TestContextFiles:
    def test_context_never_contains_api_key(
        self, tmp_path: Path, task: Task, client: MagicMock
    ) -> None:
        service = AgentService(tmp_path, client=client, api_base_url="https://api.test/v1")
        path = service.write_task_context(task, "bugfix/x")

        raw = path.read_text()
        data = json.loads(raw)
        assert set(data) == {"taskId", "workspaceId", "baseUrl", "title", "branchName", "sentAt"}
        assert data["baseUrl"] == "https://api.test/v1"
        assert data["branchName"] == "bugfix/x"
        assert "super-secret-key" not in raw
        assert path == tmp_path / ".taskpipe" / "task-abc12345.json"

    def test_gitignore_created(self, tmp_path: Path) -> None:
        AgentService(tmp_path).ensure_gitignore()
        lines = (tmp_path / ".gitignore").read_text().splitlines()
        assert GITIGNORE_ENTRY in lines

    def test_gitignore_appended_once(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("node_modules/")
        service = AgentService(tmp_path)
        service.ensure_gitignore()
        service.ensure_gitignore()

        content = (tmp_path / ".gitignore").read_text()
        assert content.startswith("node_modules/\n")
        assert content.count(GITIGNORE_ENTRY) == 1

    def test_gitignore_with_non_utf8_bytes(self, tmp_path: Path) -> None:
        original = b"build/\n# caf\xe9\n"
        (tmp_path / ".gitignore").write_bytes(original)
        service = AgentService(tmp_path)
        service.ensure_gitignore()
        service.ensure_gitignore()

        data = (tmp_path / ".gitignore").read_bytes()
        assert data.startswith(original)
        assert data.count(GITIGNORE_ENTRY.encode()) == 1

    def test_remove_context(self, tmp_path: Path, task: Task) -> None:
        service = AgentService(tmp_path)
        path = service.write_task_context(task, None)
        service.remove_task_context(task.id)
        service.remove_task_context(task.id)
        assert not path.exists()


class TestSend:
    def test_file_dispatch(
        self, tmp_path: Path, task: Task, git: MagicMock, client: MagicMock
    ) -> None:
        service = AgentService(tmp_path, git=git, client=client)

        dispatch = service.send(task, prompt="do it", task_type="bug")

        assert dispatch.success
        assert dispatch.method == "file"
        assert dispatch.branch == "bugfix/fix-login-bug-abc12345"
        assert dispatch.prompt_path is not None
        assert dispatch.prompt_path.read_text() == "do it"
        git.create_task_branch.assert_called_once_with("abc12345", "Fix login bug", "ws", "bug")
        client.update_task.assert_called_once_with("abc12345", status="in_progress")

    def test_generates_prompt_when_missing(self, tmp_path: Path, task: Task) -> None:
        dispatch = AgentService(tmp_path).send(task)
        assert dispatch.prompt_path is not None
        assert dispatch.prompt_path.read_text().startswith("# Task: Fix login bug")
        assert dispatch.branch is None

    def test_uncommitted_changes_declined(
        self, tmp_path: Path, task: Task, git: MagicMock
    ) -> None:
        git.has_uncommitted_changes.return_value = True
        prompt = ScriptedPrompt(answer=False)
        service = AgentService(tmp_path, git=git, prompt=prompt)

        dispatch = service.send(task)

        assert not dispatch.success
        assert dispatch.method == "cancelled"
        assert len(prompt.questions) == 1
        git.stash.assert_not_called()
        assert not (tmp_path / ".taskpipe").exists()

    def test_uncommitted_changes_stashed(
        self, tmp_path: Path, task: Task, git: MagicMock
    ) -> None:
        git.has_uncommitted_changes.return_value = True
        service = AgentService(tmp_path, git=git, prompt=ScriptedPrompt(answer=True))

        assert service.send(task).success
        git.stash.assert_called_once_with(STASH_MESSAGE)

    def test_branch_failure_is_not_fatal(
        self, tmp_path: Path, task: Task, git: MagicMock, caplog
    ) -> None:
        git.create_task_branch.side_effect = GitError("checkout failed")
        dispatch = AgentService(tmp_path, git=git).send(task)
        assert dispatch.success
        assert dispatch.branch is None
        assert "non-fatal" in caplog.text

    def test_skip_branch(self, tmp_path: Path, task: Task, git: MagicMock) -> None:
        AgentService(tmp_path, git=git).send(task, create_branch=False)
        git.create_task_branch.assert_not_called()

    def test_status_update_failure_is_logged(
        self, tmp_path: Path, task: Task, client: MagicMock, caplog
    ) -> None:
        client.update_task.side_effect = ServerError("boom", 500)
        assert AgentService(tmp_path, client=client).send(task).success
        assert "in progress" in caplog.text

    @patch("taskpipe.agent.subprocess.Popen")
    def test_agent_command_launched(
        self, mock_popen: MagicMock, tmp_path: Path, task: Task
    ) -> None:
        service = AgentService(tmp_path, agent_command="my-agent --headless")

        dispatch = service.send(task)

        assert dispatch.method == "command"
        argv = mock_popen.call_args[0][0]
        assert argv[:2] == ["my-agent", "--headless"]
        assert argv[2] == str(tmp_path / ".taskpipe" / "prompt-abc12345.md")
        assert mock_popen.call_args.kwargs["start_new_session"] is True

    @patch("taskpipe.agent.subprocess.Popen")
    def test_agent_launch_failure_falls_back_to_file(
        self, mock_popen: MagicMock, tmp_path: Path, task: Task
    ) -> None:
        mock_popen.side_effect = FileNotFoundError("my-agent")
        dispatch = AgentService(tmp_path, agent_command="my-agent").send(task)
        assert dispatch.success
        assert dispatch.method == "file"
