import shutil
import subprocess

import pytest

from matrixci.git_facts.git import changed_since, get_current_ref, head_sha, run_context

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo, *args):
    subprocess.run(
        ["git", "-c", "user.name=ci", "-c", "user.email=ci@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    git(tmp_path, "init", "-q", "-b", "main")
    (tmp_path / "README").write_text("hello\n")
    git(tmp_path, "add", "README")
    git(tmp_path, "commit", "-q", "-m", "first")
    return tmp_path


def test_current_ref_and_sha(repo):
    assert get_current_ref(repo) == "refs/heads/main"
    assert len(head_sha(repo)) == 40


def test_tag_on_detached_head(repo):
    git(repo, "tag", "v1.0")
    git(repo, "checkout", "-q", "--detach")
    assert get_current_ref(repo) == "refs/tags/v1.0"


def test_changed_files_of_dirty_tree(repo):
    (repo / "src.c").write_text("int main;\n")
    (repo / "README").write_text("changed\n")
    assert changed_since(cwd=repo) == ["README", "src.c"]


def test_changed_files_of_clean_tree_fall_back_to_last_commit(repo):
    (repo / "lib.c").write_text("x\n")
    git(repo, "add", "lib.c")
    git(repo, "commit", "-q", "-m", "second")
    assert changed_since(cwd=repo) == ["lib.c"]


def test_run_context_from_checkout(repo):
    ctx = run_context(event="pull_request", git_diff=True, env={"A": "1"}, cwd=repo)
    assert ctx.branch == "main"
    assert ctx.tag == ""
    assert ctx.event == "pull_request"
    assert ctx.sha == head_sha(repo)
    assert ctx.changed_files == ("README",)
    assert ctx.env == {"A": "1"}


def test_run_context_outside_a_repository(tmp_path):
    ctx = run_context(ref="refs/tags/v2", cwd=tmp_path)
    assert ctx.sha == ""
    assert ctx.tag == "v2"
    assert ctx.changed_files is None


def test_explicit_changed_files_win(tmp_path):
    ctx = run_context(use_git=False, changed=["a.py"])
    assert ctx.changed_files == ("a.py",)
