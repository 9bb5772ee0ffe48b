from __future__ import annotations

import argparse
import dataclasses

from ..core import *  # noqa: F401,F403
from .common import config_from_args, optional_path


def command_run(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    overrides: dict[str, Any] = {}
    if args.diff_lines is not None:
        overrides["diff_lines"] = max(1, int(args.diff_lines))
    if args.diagnostics is not None:
        overrides["diagnostics"] = args.diagnostics
    if overrides:
        config = dataclasses.replace(config, **overrides)

    summary = run_binary_directory(
        Path(args.bin_dir),
        prefix=args.prefix or config.probes.prefix,
        timeout=config.timeout_seconds,
        run_jobs=config.run_jobs,
        diff_lines=config.diff_lines,
        diagnostics=config.diagnostics,
        color=config.color,
        report_path=optional_path(args.report),
        markdown_path=optional_path(args.markdown_report),
    )
    return summary.exit_code
