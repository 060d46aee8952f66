import hashlib
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path

from deploy_guardian.gitops import GitCommandError, LocalRepository


def _git_available() -> bool:
    return shutil.which("git") is not None


def _run_git(args: list[str], cwd: Path) -> None:
    subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )


class LocalRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        if not _git_available():
            self.skipTest("git binary not found")
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)

    def _init_repo(self) -> Path:
        repo = self.root / "repo"
        repo.mkdir()
        _run_git(["init", "--initial-branch=main"], repo)
        _run_git(["config", "user.email", "bot@example.com"], repo)
        _run_git(["config", "user.name", "Deploy Guardian"], repo)
        (repo / "package.json").write_text('{"name": "app"}', encoding="utf-8")
        _run_git(["add", "package.json"], repo)
        _run_git(["commit", "-m", "initial"], repo)
        return repo

    def test_snapshot_of_clean_checkout(self) -> None:
        repo = LocalRepository(self._init_repo())
        state = repo.snapshot()
        self.assertEqual(len(state.commit), 40)
        self.assertEqual(state.short_commit, state.commit[:8])
        self.assertEqual(state.branch, "main")
        self.assertFalse(state.has_changes)
        self.assertFalse(state.has_untracked)

    def test_snapshot_detects_local_changes(self) -> None:
        path = self._init_repo()
        (path / "notes.txt").write_text("draft", encoding="utf-8")
        state = LocalRepository(path).snapshot()
        self.assertTrue(state.has_changes)
        self.assertTrue(state.has_untracked)

    def test_file_hash_matches_md5sum(self) -> None:
        path = self._init_repo()
        expected = hashlib.md5(b'{"name": "app"}').hexdigest()
        self.assertEqual(LocalRepository(path).file_hash("package.json"), expected)

    def test_git_failure_raises(self) -> None:
        not_a_repo = self.root / "plain"
        not_a_repo.mkdir()
        with self.assertRaises(GitCommandError) as ctx:
            LocalRepository(not_a_repo).head_commit()
        self.assertNotEqual(ctx.exception.exit_code, 0)


if __name__ == "__main__":
    unittest.main()
