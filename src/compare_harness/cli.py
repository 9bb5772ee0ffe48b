from __future__ import annotations

import argparse
import sys

from .core import SIDES, HarnessError
from .commands import (
    command_build,
    command_compare,
    command_extract,
    command_isolate,
    command_list_probes,
    command_matrix,
    command_run,
)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to harness config JSON (defaults apply when omitted).")
    parser.add_argument(
        "--repo-root",
        help="Checkout holding the current sources (default: config repo_root, else current directory).",
    )
    parser.add_argument("--build-root", help="Sandbox root for extracted trees, bundles and binaries.")
    parser.add_argument("--jobs", type=int, help="Parallel build jobs (default: host core count).")
    parser.add_argument("--color", choices=["auto", "always", "never"], help="Colourize console output.")


def add_build_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--revision", help="Reference branch, tag or commit (default: config, else 'upstream').")
    parser.add_argument("--force", action="store_true", help="Rebuild even when cached artifacts are valid.")


def add_runner_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--prefix", help="Binary name prefix (default: config probes.prefix, else 'compare').")
    parser.add_argument("--timeout", type=float, help="Per-binary timeout in seconds; a timeout counts as a crash.")
    parser.add_argument("--run-jobs", type=int, help="Probe pairs to run concurrently (default: 1).")
    parser.add_argument("--diff-lines", type=int, help="Output lines shown per side on mismatch (default: 20).")
    parser.add_argument(
        "--diagnostics",
        choices=["first", "all"],
        help="Print diagnostics for the first mismatch only, or for every mismatch.",
    )
    parser.add_argument("--report", help="Write JSON run report to path.")
    parser.add_argument("--markdown-report", help="Write Markdown run report to path.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="compare-harness",
        description="Differential comparison of a native library against a pinned reference revision.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    extract = sub.add_parser("extract", help="Materialize the reference revision into its sandbox.")
    add_common_arguments(extract)
    add_build_arguments(extract)
    extract.set_defaults(func=command_extract)

    build = sub.add_parser("build", help="Extract and build the current and reference bundles.")
    add_common_arguments(build)
    add_build_arguments(build)
    build.add_argument("--output", help="Write bundle availability JSON to path.")
    build.set_defaults(func=command_build)

    matrix = sub.add_parser("matrix", help="Build bundles and compile every probe against both sides.")
    add_common_arguments(matrix)
    add_build_arguments(matrix)
    matrix.add_argument("--strict", action="store_true", help="Exit 1 when any probe fails to compile.")
    matrix.set_defaults(func=command_matrix)

    run = sub.add_parser("run", help="Run every probe pair found in a binary directory.")
    run.add_argument("bin_dir", help="Directory holding <prefix>_current_* and <prefix>_reference_* binaries.")
    add_common_arguments(run)
    add_runner_arguments(run)
    run.set_defaults(func=command_run)

    compare = sub.add_parser("compare", help="Full pipeline: extract, build, compile matrix, run.")
    add_common_arguments(compare)
    add_build_arguments(compare)
    compare.add_argument("--skip-build", action="store_true", help="Only run already-built probe binaries.")
    compare.add_argument("--timeout", type=float, help="Per-binary timeout in seconds; a timeout counts as a crash.")
    compare.add_argument("--run-jobs", type=int, help="Probe pairs to run concurrently (default: 1).")
    compare.add_argument("--report", help="Write JSON run report to path.")
    compare.add_argument("--markdown-report", help="Write Markdown run report to path.")
    compare.set_defaults(func=command_compare)

    list_probes = sub.add_parser("list-probes", help="List probe sources discovered in the probe directory.")
    add_common_arguments(list_probes)
    list_probes.add_argument("--verbose", action="store_true", help="Also print each probe's source path.")
    list_probes.set_defaults(func=command_list_probes)

    isolate = sub.add_parser("isolate", help="Write a symbol-renamed copy of one side's bundle.")
    add_common_arguments(isolate)
    isolate.add_argument("--side", choices=list(SIDES), default="reference", help="Bundle to rename.")
    isolate.add_argument("--suffix", help="Identifier suffix (default: _<side>).")
    isolate.add_argument("--output-dir", help="Output directory (default: <build-root>/<side>/renamed).")
    isolate.set_defaults(func=command_isolate)

    return parser


def build_runner_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="compare-runner",
        description="Run <prefix>_current_<name> / <prefix>_reference_<name> pairs and compare their output.",
    )
    parser.add_argument("bin_dir", help="Directory holding the probe binaries.")
    add_common_arguments(parser)
    add_runner_arguments(parser)
    parser.set_defaults(func=command_run)
    return parser


def _dispatch(args: argparse.Namespace) -> int:
    try:
        return int(args.func(args))
    except HarnessError as exc:
        print(f"compare_harness error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("compare_harness: interrupted", file=sys.stderr)
        return 130


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


def runner_main(argv: list[str] | None = None) -> int:
    parser = build_runner_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
