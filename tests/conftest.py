import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so `import managed_indexer...` works locally
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_indexer_env(monkeypatch, tmp_path):
    """Keep the developer's credentials and project mappings out of tests."""
    for key in list(os.environ):
        if key.startswith("MANAGED_INDEXER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MANAGED_INDEXER_PROJECTS_FILE", str(tmp_path / "no-projects.json"))
    yield


def _git(cwd, *args):
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def git_repo(tmp_path):
    """A real repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not available")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "app.py").write_text("print('hi')\n")
    (repo / "docs").mkdir()
    (repo / "docs" / "read me.md").write_text("# readme\n")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def git():
    return _git
