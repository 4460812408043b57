"""Tests for heartbeat.git_utils module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest


def git_calls(mock_run):
    return [c[0][0] for c in mock_run.call_args_list]


class TestResolveWorktreePath:

    def test_uses_project_id(self, temp_dir):
        from heartbeat.git_utils import resolve_worktree_path

        path = resolve_worktree_path("/repos/app", "fix/issue-7", "proj-a", temp_dir)

        assert path == temp_dir / "proj-a" / "fix/issue-7"

    def test_falls_back_to_repo_name(self, temp_dir):
        from heartbeat.git_utils import resolve_worktree_path

        assert resolve_worktree_path("/repos/app", "b", base_dir=temp_dir) == temp_dir / "app" / "b"

    def test_default_base_from_environment(self, temp_dir):
        from heartbeat.git_utils import resolve_worktree_path

        # HEARTBEAT_WORKTREE_DIR is set by the heartbeat_home fixture
        assert resolve_worktree_path("/repos/app", "b", "p") == temp_dir / "worktrees" / "p" / "b"


class TestCreateWorktree:

    def test_recreates_branch_from_head(self, temp_dir):
        """Stale branch is deleted locally and remotely before worktree add."""
        from heartbeat.git_utils import create_worktree

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="")

            path = create_worktree(temp_dir / "repo", "specflow-f-001", "proj-a", temp_dir / "wt")

        assert path == temp_dir / "wt" / "proj-a" / "specflow-f-001"
        calls = git_calls(mock_run)
        assert ["branch", "-D", "specflow-f-001"] in calls
        assert ["push", "origin", "--delete", "specflow-f-001"] in calls
        assert calls[-1] == ["worktree", "add", "-b", "specflow-f-001", str(path)]

    def test_stale_directory_removed(self, temp_dir):
        from heartbeat.git_utils import create_worktree

        stale = temp_dir / "wt" / "proj-a" / "b"
        stale.mkdir(parents=True)
        (stale / "leftover.txt").write_text("x")

        def fake_git(args, cwd=None, check=True):
            if args[:2] == ["worktree", "remove"]:
                return MagicMock(returncode=1, stderr="not a worktree")
            return MagicMock(returncode=0, stdout="")

        with patch("heartbeat.git_utils.run_git", side_effect=fake_git) as mock_run:
            create_worktree(temp_dir / "repo", "b", "proj-a", temp_dir / "wt")

        assert not (stale / "leftover.txt").exists()
        assert ["worktree", "prune"] in git_calls(mock_run)

    def test_add_failure_propagates(self, temp_dir):
        from heartbeat.git_utils import create_worktree

        def fake_git(args, cwd=None, check=True):
            if args[:2] == ["worktree", "add"]:
                raise subprocess.CalledProcessError(128, ["git"] + args, stderr="fatal")
            return MagicMock(returncode=0, stdout="")

        with patch("heartbeat.git_utils.run_git", side_effect=fake_git):
            with pytest.raises(subprocess.CalledProcessError):
                create_worktree(temp_dir / "repo", "b", "proj-a", temp_dir / "wt")


class TestEnsureWorktree:

    def test_existing_checkout_reused(self, temp_dir):
        from heartbeat.git_utils import ensure_worktree

        worktree = temp_dir / "wt"
        worktree.mkdir()
        (worktree / ".git").write_text("gitdir: ...")

        with patch("heartbeat.git_utils.run_git") as mock_run:
            assert ensure_worktree(temp_dir / "repo", worktree, "b") == worktree

        mock_run.assert_not_called()

    def test_missing_worktree_readded_for_branch(self, temp_dir):
        from heartbeat.git_utils import ensure_worktree

        worktree = temp_dir / "wt"

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="")
            ensure_worktree(temp_dir / "repo", worktree, "specflow-f-001")

        assert git_calls(mock_run)[-1] == ["worktree", "add", str(worktree), "specflow-f-001"]

    def test_deleted_branch_recreated(self, temp_dir):
        from heartbeat.git_utils import ensure_worktree

        worktree = temp_dir / "wt"

        def fake_git(args, cwd=None, check=True):
            if args == ["worktree", "add", str(worktree), "b"]:
                raise subprocess.CalledProcessError(128, ["git"] + args)
            return MagicMock(returncode=0, stdout="")

        with patch("heartbeat.git_utils.run_git", side_effect=fake_git) as mock_run:
            ensure_worktree(temp_dir / "repo", worktree, "b")

        assert git_calls(mock_run)[-1] == ["worktree", "add", "-b", "b", str(worktree)]


class TestRemoveWorktree:

    def test_success(self):
        from heartbeat.git_utils import remove_worktree

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stderr="")
            assert remove_worktree("/repo", "/wt") is True

        assert git_calls(mock_run) == [["worktree", "remove", "--force", "/wt"]]

    def test_failure_prunes(self):
        from heartbeat.git_utils import remove_worktree

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stderr="is not a working tree")
            assert remove_worktree("/repo", "/wt") is False

        assert ["worktree", "prune"] in git_calls(mock_run)


class TestFindOwningRepo:

    def test_plain_directory(self, temp_dir):
        from heartbeat.git_utils import find_owning_repo

        with patch("heartbeat.git_utils.run_git") as mock_run:
            assert find_owning_repo(temp_dir) is None

        mock_run.assert_not_called()

    def test_linked_worktree(self, temp_dir):
        from heartbeat.git_utils import find_owning_repo

        wt = temp_dir / "wt"
        wt.mkdir()
        (wt / ".git").write_text("gitdir: /repo/.git/worktrees/wt\n")

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="/repo/.git\n")
            assert find_owning_repo(wt) == Path("/repo")

        assert git_calls(mock_run) == [["rev-parse", "--git-common-dir"]]


class TestStash:

    def test_clean_tree_not_stashed(self):
        from heartbeat.git_utils import stash_if_dirty

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="")
            assert stash_if_dirty("/repo") is False

        assert git_calls(mock_run) == [["status", "--porcelain"]]

    def test_dirty_tree_stashed_with_untracked(self):
        from heartbeat.git_utils import stash_if_dirty

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=" M src/app.py\n")
            assert stash_if_dirty("/repo") is True

        stash = git_calls(mock_run)[-1]
        assert stash[:2] == ["stash", "push"]
        assert "--include-untracked" in stash

    def test_pop_reports_conflict(self):
        from heartbeat.git_utils import pop_stash

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=1)
            assert pop_stash("/repo") is False


class TestCommitAll:

    def test_nothing_to_commit(self):
        from heartbeat.git_utils import commit_all

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="")
            assert commit_all("/wt", "msg") is None

        assert ["commit", "-m", "msg"] not in git_calls(mock_run)

    def test_returns_new_sha(self):
        from heartbeat.git_utils import commit_all

        def fake_git(args, cwd=None, check=True):
            if args == ["status", "--porcelain"]:
                return MagicMock(returncode=0, stdout="A  new.py\n")
            if args == ["rev-parse", "HEAD"]:
                return MagicMock(returncode=0, stdout="deadbeef\n")
            return MagicMock(returncode=0, stdout="")

        with patch("heartbeat.git_utils.run_git", side_effect=fake_git) as mock_run:
            assert commit_all("/wt", "Fix #7: Crash") == "deadbeef"

        assert ["add", "-A"] in git_calls(mock_run)
        assert ["commit", "-m", "Fix #7: Crash"] in git_calls(mock_run)


class TestCreatePr:

    def test_existing_pr_returned(self):
        from heartbeat.git_utils import create_pr

        with patch("heartbeat.git_utils.run_gh") as mock_gh:
            mock_gh.return_value = MagicMock(
                returncode=0, stdout='{"number": 17, "url": "https://github.com/o/r/pull/17"}',
            )
            pr = create_pr("/wt", "title", "body", "main", "fix/issue-7")

        assert pr.number == 17
        assert mock_gh.call_count == 1

    def test_new_pr_parsed_from_url(self):
        from heartbeat.git_utils import create_pr

        def fake_gh(args, cwd=None, check=True):
            if args[:2] == ["pr", "view"]:
                return MagicMock(returncode=1, stdout="")
            return MagicMock(returncode=0, stdout="Creating pull request\nhttps://github.com/o/r/pull/42\n")

        with patch("heartbeat.git_utils.run_gh", side_effect=fake_gh) as mock_gh:
            pr = create_pr("/wt", "Fix #7: Crash", "Fixes #7", "main", "fix/issue-7")

        assert pr.number == 42
        assert pr.url == "https://github.com/o/r/pull/42"
        create_args = mock_gh.call_args_list[-1][0][0]
        assert create_args[create_args.index("--base") + 1] == "main"
        assert create_args[create_args.index("--head") + 1] == "fix/issue-7"

    def test_head_defaults_to_current_branch(self):
        from heartbeat.git_utils import create_pr

        with patch("heartbeat.git_utils.run_git") as mock_git, \
             patch("heartbeat.git_utils.run_gh") as mock_gh:
            mock_git.return_value = MagicMock(returncode=0, stdout="feature-x\n")
            mock_gh.return_value = MagicMock(returncode=0, stdout='{"number": 3, "url": "u/pull/3"}')

            create_pr("/wt", "t", "b", "main")

        assert mock_gh.call_args[0][0][2] == "feature-x"


class TestChangedFiles:

    def test_lists_non_empty_lines(self):
        from heartbeat.git_utils import get_changed_files

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="src/a.py\n\nREADME.md\n")
            assert get_changed_files("/wt", "main") == ["src/a.py", "README.md"]

        assert git_calls(mock_run) == [["diff", "--name-only", "main...HEAD"]]

    def test_commits_ahead(self):
        from heartbeat.git_utils import has_commits_ahead

        with patch("heartbeat.git_utils.run_git") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="3\n")
            assert has_commits_ahead("/wt", "main") is True

            mock_run.return_value = MagicMock(returncode=128, stdout="")
            assert has_commits_ahead("/wt", "main") is False
