"""
Tests for the git CLI wrapper, against a throwaway repository.
"""

import shutil
import subprocess

import pytest

from flowci.git_facts import git

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _run(repo, *args):
    subprocess.run(
        ["git", "-c", "user.email=ci@example.com", "-c", "user.name=ci", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    _run(tmp_path, "init", "-q", "-b", "main")
    (tmp_path / "a.txt").write_text("a\n")
    _run(tmp_path, "add", "a.txt")
    _run(tmp_path, "commit", "-q", "-m", "first")
    return tmp_path


class TestGit:
    """Tests for git helpers."""

    def test_branch_and_sha(self, repo):
        assert git.current_branch(repo) == "main"
        assert len(git.head_sha(repo)) == 40

    def test_dirty_tree_reports_working_changes(self, repo):
        (repo / "a.txt").write_text("changed\n")
        (repo / "new.txt").write_text("n\n")
        head, files = git.changed_files_since("origin/main", cwd=repo)
        assert head is None
        assert files == ["a.txt", "new.txt"]

    def test_clean_tree_diffs_last_commit(self, repo):
        (repo / "b.txt").write_text("b\n")
        _run(repo, "add", "b.txt")
        _run(repo, "commit", "-q", "-m", "second")
        head, files = git.changed_files_since("origin/main", cwd=repo)
        assert head == git.head_sha(repo)
        assert files == ["b.txt"]

    def test_not_a_repo(self, tmp_path):
        with pytest.raises(git.GitError):
            git.head_sha(tmp_path)
