from __future__ import annotations

import argparse

from ..core import *  # noqa: F401,F403
from .common import config_from_args, optional_path


def command_extract(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    availability = prepare_reference_tree(config)
    if not availability.enabled:
        return 0
    tree = availability.tree
    state = "reused" if tree.reused else "extracted"
    print(f"Reference '{tree.revision.name}' ({tree.revision.commit[:12]}) {state}: {tree.root} ({tree.file_count} files)")
    return 0


def command_build(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    availability = prepare_bundles(config, force=args.force)
    output = optional_path(args.output)
    if output is not None:
        write_json(output, availability.as_dict())
        print(f"Wrote {output}")
    return 0


def command_matrix(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    availability, manifest = prepare_probe_matrix(config, force=args.force)
    if manifest is None:
        return 0
    print(f"Manifest: {config.probes.output_dir / MATRIX_MANIFEST}")
    if args.strict and manifest["counts"]["failed"]:
        return 1
    return 0


def command_compare(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    summary = run_pipeline(
        config,
        skip_build=args.skip_build,
        force=args.force,
        report_path=optional_path(args.report),
        markdown_path=optional_path(args.markdown_report),
    )
    return summary.exit_code


def command_list_probes(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    probes, warnings = discover_probes(config.probes)
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)
    for probe in probes:
        if args.verbose:
            print(f"{probe.name}\t{to_repo_relative(probe.source_path, config.repo_root)}")
        else:
            print(probe.name)
    return 0


def command_isolate(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    result = isolate_bundle(
        config,
        args.side,
        suffix=args.suffix,
        output_dir=optional_path(args.output_dir),
    )
    print(f"Renamed header: {result['header']}")
    print(f"Renamed archive: {result['archive']}")
    print(f"Symbol map: {result['symbol_map']} ({len(result['renamed_symbols'])} symbols)")
    return 0
