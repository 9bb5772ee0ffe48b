from __future__ import annotations

import shutil
import subprocess
import tempfile
import unittest
from unittest import mock
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
import compare_harness as harness  # noqa: E402
from compare_harness import _core_extract as harness_extract  # noqa: E402
from compare_harness import core as harness_core  # noqa: E402


def git(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return proc.stdout.strip()


@unittest.skipIf(shutil.which("git") is None, "git is not installed")
class ReferenceExtractorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo_root = Path(self.temp_dir.name).resolve() / "repo"
        self.repo_root.mkdir()
        git(self.repo_root, "init", "-q")
        (self.repo_root / "svm.h").write_text("#define LIBSVM_VERSION 300\n", encoding="utf-8")
        (self.repo_root / "svm.cpp").write_text("// reference\n", encoding="utf-8")
        git(self.repo_root, "add", "svm.h", "svm.cpp")
        git(self.repo_root, "commit", "-q", "-m", "reference")
        git(self.repo_root, "branch", "upstream")
        self.upstream_commit = git(self.repo_root, "rev-parse", "upstream")

        (self.repo_root / "svm.h").write_text("#define LIBSVM_VERSION 336\n", encoding="utf-8")
        git(self.repo_root, "commit", "-q", "-am", "current")
        (self.repo_root / "svm.cpp").write_text("// uncommitted work\n", encoding="utf-8")
        self.config = harness.build_config({}, repo_root=self.repo_root, jobs=1)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_resolve_revision_pins_commit(self) -> None:
        handle = harness_core.resolve_revision(self.repo_root, "upstream")
        self.assertEqual(handle.commit, self.upstream_commit)

    def test_unknown_revision_is_unavailable(self) -> None:
        with self.assertRaises(harness.RevisionUnavailableError):
            harness_core.resolve_revision(self.repo_root, "no-such-branch")

    def test_extract_materializes_reference_without_touching_working_tree(self) -> None:
        tree = harness.extract_reference_tree(self.config)
        self.assertFalse(tree.reused)
        self.assertEqual(tree.root, self.config.reference.source_dir)
        self.assertEqual((tree.root / "svm.h").read_text(encoding="utf-8"), "#define LIBSVM_VERSION 300\n")
        self.assertEqual((tree.root / "svm.cpp").read_text(encoding="utf-8"), "// reference\n")
        self.assertEqual((self.repo_root / "svm.cpp").read_text(encoding="utf-8"), "// uncommitted work\n")
        self.assertEqual(tree.file_count, 2)

    def test_valid_tree_is_reused(self) -> None:
        harness.extract_reference_tree(self.config)
        marker = self.config.reference.source_dir / "local-marker"
        marker.write_text("kept", encoding="utf-8")
        second = harness.extract_reference_tree(self.config)
        self.assertTrue(second.reused)
        self.assertTrue(marker.exists())

    def test_stale_tree_is_replaced(self) -> None:
        harness.extract_reference_tree(self.config)
        stamp = self.config.reference.source_dir / harness_core.REVISION_STAMP
        harness_core.write_json(stamp, {"name": "upstream", "commit": "0" * 40})
        (self.config.reference.source_dir / "leftover.txt").write_text("stale", encoding="utf-8")
        tree = harness.extract_reference_tree(self.config)
        self.assertFalse(tree.reused)
        self.assertFalse((tree.root / "leftover.txt").exists())

    def test_revision_without_header_is_unavailable(self) -> None:
        git(self.repo_root, "checkout", "-q", "--orphan", "empty")
        git(self.repo_root, "rm", "-q", "-r", "-f", "--cached", ".")
        (self.repo_root / "other.txt").write_text("x", encoding="utf-8")
        git(self.repo_root, "add", "other.txt")
        git(self.repo_root, "commit", "-q", "-m", "no header")
        config = harness.build_config({}, repo_root=self.repo_root, revision="empty", jobs=1)
        with self.assertRaises(harness.RevisionUnavailableError) as ctx:
            harness.extract_reference_tree(config)
        self.assertIn("does not contain 'svm.h'", str(ctx.exception))
        self.assertFalse(config.reference.source_dir.exists())

    def test_sandbox_must_not_contain_working_tree(self) -> None:
        config = harness.build_config(
            {"reference": {"source_dir": "."}},
            repo_root=self.repo_root,
            jobs=1,
        )
        with self.assertRaises(harness.HarnessError):
            harness.extract_reference_tree(config)
        self.assertTrue((self.repo_root / "svm.h").exists())


class GitUnavailableTests(unittest.TestCase):
    def test_missing_git_is_revision_unavailable(self) -> None:
        with mock.patch.object(harness_extract.shutil, "which", return_value=None):
            with self.assertRaises(harness.RevisionUnavailableError):
                harness_core.resolve_revision(Path("."), "upstream")


if __name__ == "__main__":
    unittest.main()
