from __future__ import annotations

import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
import compare_harness as harness  # noqa: E402
from compare_harness import core as harness_core  # noqa: E402

FAKE_COMPILER = """#!/bin/sh
out=""
src=""
include=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2; continue ;;
    -I*) include="${1#-I}" ;;
    *.cpp|*.c) src="$1" ;;
  esac
  shift
done
if grep -q FAIL_COMPILE "$src"; then
  echo "$src: error: intentional failure" >&2
  exit 1
fi
side=$(cat "$include/side.txt")
printf '#!/bin/sh\\nprintf "side:%s\\\\n"\\n' "$side" > "$out"
chmod +x "$out"
"""


class ProbeMatrixTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo_root = Path(self.temp_dir.name).resolve()
        self.compiler = compiler = self.repo_root / "fake-cxx"
        compiler.write_text(FAKE_COMPILER, encoding="utf-8")
        compiler.chmod(0o755)
        self.probe_dir = self.repo_root / "tests" / "comparison" / "test_cases"
        self.probe_dir.mkdir(parents=True)
        self.config = harness.build_config(
            {"toolchain": {"cxx": str(compiler), "cc": str(compiler)}},
            repo_root=self.repo_root,
            jobs=4,
        )
        self.bundles = {side: self._bundle(side) for side in harness_core.SIDES}

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _bundle(self, side: str) -> harness.ArtifactBundle:
        header_dir = self.config.header_dir(side)
        header_dir.mkdir(parents=True)
        self.config.header_file(side).write_text("int svm_train(void);\n", encoding="utf-8")
        (header_dir / "side.txt").write_text(side, encoding="utf-8")
        self.config.archive_path(side).parent.mkdir(parents=True)
        self.config.archive_path(side).write_bytes(b"!<arch>\n")
        return harness.ArtifactBundle(
            side=side,
            archive_path=self.config.archive_path(side),
            header_dir=header_dir,
            header_file=self.config.header_file(side),
            cache_key=f"key-{side}",
            recipe="direct",
            rebuilt=True,
        )

    def _probe(self, name: str, body: str = "int main() { return 0; }\n") -> None:
        (self.probe_dir / name).write_text(body, encoding="utf-8")

    def _build(self, force: bool = False) -> dict:
        with contextlib.redirect_stdout(io.StringIO()):
            return harness.build_probe_matrix(self.config, self.bundles, force=force)

    def test_discover_probes(self) -> None:
        self._probe("predict.cpp")
        self._probe("model_io.test.cpp")
        self._probe("readme.txt")
        self._probe("bad name.cpp")
        self._probe("predict.c")
        probes, warnings = harness_core.discover_probes(self.config.probes)
        self.assertEqual([probe.name for probe in probes], ["model_io", "predict"])
        self.assertEqual(len(warnings), 2)

    def test_missing_probe_directory_yields_warning(self) -> None:
        self.probe_dir.rmdir()
        probes, warnings = harness_core.discover_probes(self.config.probes)
        self.assertEqual(probes, [])
        self.assertIn("probe directory not found", warnings[0])

    def test_matrix_builds_two_binaries_per_probe(self) -> None:
        for name in ["alpha.cpp", "beta.cpp", "gamma.c"]:
            self._probe(name)
        manifest = self._build()
        output_dir = self.config.probes.output_dir
        self.assertEqual(manifest["counts"], {"built": 6, "failed": 0, "up_to_date": 0})
        for name in ["alpha", "beta", "gamma"]:
            for side in harness_core.SIDES:
                binary = output_dir / f"compare_{side}_{name}"
                self.assertTrue(binary.is_file(), binary)
                self.assertTrue(os.access(binary, os.X_OK))
        written = json.loads((output_dir / harness_core.MATRIX_MANIFEST).read_text(encoding="utf-8"))
        self.assertEqual(written["probe_count"], 3)

    def test_each_binary_links_only_its_own_side(self) -> None:
        self._probe("alpha.cpp")
        self._build()
        targets = harness_core.plan_probe_matrix(
            self.config, self.bundles, harness_core.discover_probes(self.config.probes)[0]
        )
        for target in targets:
            command = " ".join(target.command)
            own = str(self.config.install_dir(target.side))
            other = "reference" if target.side == "current" else "current"
            self.assertIn(own, command)
            self.assertNotIn(str(self.config.install_dir(other)), command)

        pairs = harness.discover_probe_pairs(self.config.probes.output_dir, "compare")
        result = harness.run_probe_pair(pairs[0])
        self.assertEqual(result.current.stdout, b"side:current\n")
        self.assertEqual(result.reference.stdout, b"side:reference\n")
        self.assertEqual(result.outcome, harness.ComparisonOutcome.MISMATCH)

    def test_failed_probe_compile_leaves_no_binary(self) -> None:
        self._probe("good.cpp")
        self._probe("broken.cpp", "FAIL_COMPILE\n")
        output_dir = self.config.probes.output_dir
        output_dir.mkdir(parents=True)
        stale = output_dir / "compare_current_broken"
        stale.write_text("#!/bin/sh\n", encoding="utf-8")

        manifest = self._build(force=True)
        self.assertEqual(manifest["counts"]["failed"], 2)
        self.assertEqual(manifest["counts"]["built"], 2)
        self.assertFalse(stale.exists())
        failed = [item for item in manifest["targets"] if item["status"] == "failed"]
        self.assertIn("intentional failure", failed[0]["stderr_tail"])

        with contextlib.redirect_stdout(io.StringIO()):
            summary = harness.run_binary_directory(output_dir, color="never")
        self.assertEqual(summary.total, 1)
        self.assertEqual(summary.skipped, 0)

    def test_rebuild_is_incremental(self) -> None:
        self._probe("alpha.cpp")
        self._probe("beta.cpp")
        self._build()
        manifest = self._build()
        self.assertEqual(manifest["counts"], {"built": 0, "failed": 0, "up_to_date": 4})

    def test_changed_compile_flags_trigger_rebuild(self) -> None:
        self._probe("alpha.cpp")
        self.config = harness.build_config(
            {"toolchain": {"cxx": str(self.compiler), "cc": str(self.compiler)}, "probes": {"cflags": ["-DVAL=1"]}},
            repo_root=self.repo_root,
            jobs=4,
        )
        self._build()
        self.config = harness.build_config(
            {"toolchain": {"cxx": str(self.compiler), "cc": str(self.compiler)}, "probes": {"cflags": ["-DVAL=2"]}},
            repo_root=self.repo_root,
            jobs=4,
        )
        manifest = self._build()
        self.assertEqual(manifest["counts"], {"built": 2, "failed": 0, "up_to_date": 0})
        self.assertTrue(all("-DVAL=2" in item["command"] for item in manifest["targets"]))

        unchanged = self._build()
        self.assertEqual(unchanged["counts"], {"built": 0, "failed": 0, "up_to_date": 2})

    def test_replaced_bundle_triggers_rebuild(self) -> None:
        self._probe("alpha.cpp")
        self._build()
        current = self.bundles["current"]
        self.bundles["current"] = harness.ArtifactBundle(
            side="current",
            archive_path=current.archive_path,
            header_dir=current.header_dir,
            header_file=current.header_file,
            cache_key="key-current-older-prebuilt",
            recipe="prebuilt",
            rebuilt=True,
        )
        manifest = self._build()
        statuses = {item["side"]: item["status"] for item in manifest["targets"]}
        self.assertEqual(statuses, {"current": "built", "reference": "up_to_date"})

    def test_removed_probe_binaries_are_pruned(self) -> None:
        self._probe("alpha.cpp")
        output_dir = self.config.probes.output_dir
        output_dir.mkdir(parents=True)
        for side in harness_core.SIDES:
            (output_dir / f"compare_{side}_gone").write_text("#!/bin/sh\n", encoding="utf-8")
        manifest = self._build()
        self.assertEqual(sorted(manifest["pruned"]), ["compare_current_gone", "compare_reference_gone"])
        self.assertFalse((output_dir / "compare_current_gone").exists())

    def test_cross_linked_bundle_is_refused(self) -> None:
        self._probe("alpha.cpp")
        crossed = dict(self.bundles)
        reference = self.bundles["reference"]
        crossed["reference"] = harness.ArtifactBundle(
            side="reference",
            archive_path=reference.archive_path,
            header_dir=self.config.header_dir("current"),
            header_file=self.config.header_file("current"),
            cache_key=reference.cache_key,
            recipe=reference.recipe,
            rebuilt=False,
        )
        probes, _ = harness_core.discover_probes(self.config.probes)
        with self.assertRaises(harness.HarnessError):
            harness_core.plan_probe_matrix(self.config, crossed, probes)

    def test_missing_bundle_is_refused(self) -> None:
        with self.assertRaises(harness.HarnessError):
            harness_core.plan_probe_matrix(self.config, {"current": self.bundles["current"]}, [])

    def test_binary_names_follow_convention(self) -> None:
        expected = "compare_reference_model_io" + (".exe" if os.name == "nt" else "")
        self.assertEqual(harness_core.binary_name("compare", "reference", "model_io"), expected)
        self.assertEqual(harness_core.probe_name_for(Path("model_io.test.cpp")), "model_io")


if __name__ == "__main__":
    unittest.main()
