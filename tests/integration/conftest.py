from __future__ import annotations

import subprocess
from pathlib import Path

import pytest


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture()
def remote(tmp_path: Path) -> Path:
    path = tmp_path / "remote.git"
    path.mkdir()
    git(path, "init", "--bare", "-b", "main")
    return path


@pytest.fixture()
def project_root(tmp_path: Path, remote: Path) -> Path:
    """A work tree on ``main`` with one pushed commit and a local bare origin."""
    root = tmp_path / "project"
    root.mkdir()
    git(root, "init", "-b", "main")
    git(root, "config", "user.name", "Test Dev")
    git(root, "config", "user.email", "dev@example.test")
    git(root, "config", "commit.gpgsign", "false")
    (root / "README.md").write_text("# Widgets\n")
    (root / "src" / "services").mkdir(parents=True)
    (root / "src" / "services" / "auth.py").write_text("def login():\n    return False\n")
    git(root, "add", "-A")
    git(root, "commit", "-m", "initial")
    git(root, "remote", "add", "origin", str(remote))
    git(root, "push", "-u", "origin", "main")
    return root


@pytest.fixture()
def run_git():
    return git
