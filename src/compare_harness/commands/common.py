from __future__ import annotations

import argparse

from ..core import *  # noqa: F401,F403


def config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config_path = Path(args.config).resolve() if getattr(args, "config", None) else None
    return load_config(
        config_path,
        repo_root=getattr(args, "repo_root", None),
        build_root=getattr(args, "build_root", None),
        revision=getattr(args, "revision", None),
        jobs=getattr(args, "jobs", None),
        run_jobs=getattr(args, "run_jobs", None),
        timeout_seconds=getattr(args, "timeout", None),
        color=getattr(args, "color", None),
    )


def optional_path(value: str | None) -> Path | None:
    if not value:
        return None
    return Path(value).resolve()
