from __future__ import annotations

import contextlib
import io
import tempfile
import unittest
from unittest import mock
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
import compare_harness as harness  # noqa: E402
from compare_harness import _core_build as harness_build  # noqa: E402
from compare_harness import core as harness_core  # noqa: E402

BUILD_SCRIPT = """#!/bin/sh
set -e
echo run >> "$(dirname "$0")/runs.log"
if [ -f "$(dirname "$0")/FAIL" ]; then
  echo "svm.cpp:1: error: broken" >&2
  exit 1
fi
mkdir -p "$1"
printf 'archive-%s' "$(cat "$(dirname "$0")/svm.cpp")" > "$1/libsvm.a"
"""

API_PASS = {"status": "pass", "missing_symbols": [], "reason": "ok"}


class IsolatedBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo_root = Path(self.temp_dir.name).resolve()
        (self.repo_root / "svm.h").write_text("int svm_train(void);\n", encoding="utf-8")
        (self.repo_root / "svm.cpp").write_text("int svm_train(void) { return 1; }\n", encoding="utf-8")
        script = self.repo_root / "build.sh"
        script.write_text(BUILD_SCRIPT, encoding="utf-8")
        script.chmod(0o755)
        self.config = harness.build_config(
            {"current": {"recipe": "command", "build_command": ["sh", "{source_dir}/build.sh", "{build_dir}"]}},
            repo_root=self.repo_root,
            jobs=1,
        )
        self.api_patch = mock.patch.object(harness_build, "check_bundle_api", return_value=dict(API_PASS))
        self.api_mock = self.api_patch.start()

    def tearDown(self) -> None:
        self.api_patch.stop()
        self.temp_dir.cleanup()

    def _runs(self) -> int:
        log = self.repo_root / "runs.log"
        return len(log.read_text(encoding="utf-8").splitlines()) if log.exists() else 0

    def _ensure(self, force: bool = False) -> harness.ArtifactBundle:
        revision_id = harness_core.side_revision_id(self.config, "current")
        with contextlib.redirect_stdout(io.StringIO()):
            return harness.ensure_bundle(self.config, "current", revision_id, force=force)

    def test_build_installs_fixed_layout(self) -> None:
        bundle = self._ensure()
        self.assertTrue(bundle.rebuilt)
        self.assertEqual(bundle.recipe, "command")
        self.assertEqual(bundle.archive_path, self.config.archive_path("current"))
        self.assertEqual(bundle.header_file, self.config.header_file("current"))
        self.assertTrue(bundle.is_complete())
        self.assertEqual(bundle.install_dir, self.config.install_dir("current"))
        self.assertTrue((self.config.install_dir("current") / harness_core.ARTIFACT_STAMP).is_file())

    def test_second_build_reuses_valid_bundle(self) -> None:
        first = self._ensure()
        second = self._ensure()
        self.assertEqual(self._runs(), 1)
        self.assertFalse(second.rebuilt)
        self.assertEqual(first.cache_key, second.cache_key)
        self.assertEqual(first.archive_path.read_bytes(), second.archive_path.read_bytes())

    def test_force_rebuilds(self) -> None:
        self._ensure()
        self._ensure(force=True)
        self.assertEqual(self._runs(), 2)

    def test_source_change_invalidates_bundle(self) -> None:
        first = self._ensure()
        (self.repo_root / "svm.cpp").write_text("int svm_train(void) { return 2; }\n", encoding="utf-8")
        second = self._ensure()
        self.assertTrue(second.rebuilt)
        self.assertNotEqual(first.cache_key, second.cache_key)
        self.assertEqual(self._runs(), 2)

    def test_tampered_archive_invalidates_bundle(self) -> None:
        bundle = self._ensure()
        bundle.archive_path.write_bytes(b"corrupted")
        self.assertFalse(harness_core.is_bundle_valid(self.config, "current", bundle.cache_key))
        self._ensure()
        self.assertEqual(self._runs(), 2)

    def test_failed_build_is_build_unavailable(self) -> None:
        (self.repo_root / "FAIL").write_text("", encoding="utf-8")
        with self.assertRaises(harness.BuildUnavailableError) as ctx:
            self._ensure()
        self.assertIn("broken", str(ctx.exception))
        self.assertFalse(self.config.archive_path("current").exists())

    def test_unrunnable_build_script_is_build_unavailable(self) -> None:
        script = self.repo_root / "build.sh"
        script.chmod(0o644)
        self.config = harness.build_config(
            {"current": {"recipe": "command", "build_command": ["{source_dir}/build.sh", "{build_dir}"]}},
            repo_root=self.repo_root,
            jobs=1,
        )
        with self.assertRaises(harness.BuildUnavailableError) as ctx:
            self._ensure()
        self.assertIn("unable to run", str(ctx.exception))
        self.assertFalse(self.config.archive_path("current").exists())

    def test_api_mismatch_removes_install(self) -> None:
        self.api_mock.return_value = {
            "status": "fail",
            "missing_symbols": ["svm_train"],
            "reason": "archive does not define 1 header symbol(s): svm_train",
        }
        with self.assertRaises(harness.BuildUnavailableError) as ctx:
            self._ensure()
        self.assertIn("inconsistent", str(ctx.exception))
        self.assertFalse(self.config.install_dir("current").exists())

    def test_source_digest_ignores_build_root_and_unrelated_files(self) -> None:
        before = harness_core.source_digest(self.repo_root, exclude=[self.config.build_root])
        self._ensure()
        (self.repo_root / "notes.txt").write_text("irrelevant", encoding="utf-8")
        (self.repo_root / ".git").mkdir()
        (self.repo_root / ".git" / "HEAD.h").write_text("x", encoding="utf-8")
        after = harness_core.source_digest(self.repo_root, exclude=[self.config.build_root])
        self.assertEqual(before, after)

    def test_cache_key_depends_on_revision_and_recipe(self) -> None:
        key_a = harness_core.compute_cache_key(self.config, "reference", "commit:aaa")
        key_b = harness_core.compute_cache_key(self.config, "reference", "commit:bbb")
        self.assertNotEqual(key_a, key_b)
        self.assertEqual(key_a, harness_core.compute_cache_key(self.config, "reference", "commit:aaa"))
        self.assertEqual(harness_core.side_revision_id(self.config, "reference", commit="abc"), "commit:abc")

    def test_prebuilt_current_is_copied_into_layout(self) -> None:
        prebuilt = self.repo_root / "prebuilt"
        (prebuilt / "include").mkdir(parents=True)
        (prebuilt / "libsvm.a").write_bytes(b"!<arch>\nprebuilt")
        (prebuilt / "include" / "svm.h").write_text("int svm_train(void);\n", encoding="utf-8")
        config = harness.build_config(
            {"current": {"archive": "prebuilt/libsvm.a", "include_dir": "prebuilt/include"}},
            repo_root=self.repo_root,
            jobs=1,
        )
        revision_id = harness_core.side_revision_id(config, "current")
        self.assertTrue(revision_id.startswith("prebuilt:"))
        bundle = harness.ensure_bundle(config, "current", revision_id)
        self.assertEqual(bundle.recipe, "prebuilt")
        self.assertEqual(config.archive_path("current").read_bytes(), b"!<arch>\nprebuilt")


class RecipeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()
        self.source = self.root / "tree"
        self.source.mkdir()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _side(self, **kwargs: object) -> harness_core.SideConfig:
        return harness_core.SideConfig(name="reference", source_dir=self.source, **kwargs)

    def test_detect_recipe(self) -> None:
        self.assertEqual(harness_core.detect_recipe(self._side()), "direct")
        (self.source / "Makefile").write_text("all:\n", encoding="utf-8")
        self.assertEqual(harness_core.detect_recipe(self._side()), "make")
        (self.source / "CMakeLists.txt").write_text("project(x)\n", encoding="utf-8")
        self.assertEqual(harness_core.detect_recipe(self._side()), "cmake")
        self.assertEqual(harness_core.detect_recipe(self._side(build_command=("make",))), "command")
        self.assertEqual(harness_core.detect_recipe(self._side(recipe="direct")), "direct")

    def test_render_build_command(self) -> None:
        rendered = harness_core.render_build_command(
            ("make", "-C", "{source_dir}", "-j{jobs}", "PREFIX={install_dir}"),
            {"{source_dir}": "/src", "{jobs}": "4", "{install_dir}": "/out"},
        )
        self.assertEqual(rendered, ["make", "-C", "/src", "-j4", "PREFIX=/out"])

    def test_make_recipe_builds_a_copy_of_the_source_tree(self) -> None:
        config = harness.build_config(
            {"reference": {"source_dir": str(self.source)}},
            repo_root=self.root,
            jobs=3,
        )
        (self.source / "svm.cpp").write_text("int svm_train(void) { return 0; }\n", encoding="utf-8")
        build_dir = self.root / "out"
        work_tree = build_dir / "src"
        calls: list[list[str]] = []

        def fake_run_tool(command: list[str], cwd: Path | None = None) -> None:
            calls.append(command)
            if len(calls) == 1:
                (work_tree / "svm.o").write_bytes(b"\x7fELF")

        with mock.patch.object(harness_build.shutil, "which", return_value="/usr/bin/make"):
            with mock.patch.object(harness_build, "run_tool", side_effect=fake_run_tool):
                harness_build._run_make_recipe(config, config.reference, build_dir, build_dir / "stage")
        self.assertEqual(calls[0], ["/usr/bin/make", "-C", str(work_tree), "-j3", "svm.o"])
        self.assertEqual(calls[1], ["ar", "rcs", str(build_dir / "libsvm.a"), str(work_tree / "svm.o")])
        self.assertTrue((work_tree / "svm.cpp").is_file())
        self.assertFalse((self.source / "svm.o").exists())


if __name__ == "__main__":
    unittest.main()
