from __future__ import annotations

from ._core_base import *  # noqa: F401,F403
from ._core_build import ArtifactBundle, compute_cache_key, ensure_bundle, is_bundle_valid, load_bundle, side_revision_id
from ._core_extract import IsolatedSourceTree, RevisionHandle, extract_reference_tree, resolve_revision
from ._core_matrix import build_probe_matrix, print_matrix_summary
from ._core_runner import RunSummary, run_binary_directory
from ._core_symbols import write_renamed_bundle


@dataclass(frozen=True)
class ComparisonAvailability:
    enabled: bool
    reason: str = ""
    revision: RevisionHandle | None = None
    tree: IsolatedSourceTree | None = None
    bundles: dict[str, ArtifactBundle] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "reason": self.reason,
            "revision": self.revision.as_dict() if self.revision else None,
            "tree": self.tree.as_dict() if self.tree else None,
            "bundles": {side: bundle.as_dict() for side, bundle in sorted(self.bundles.items())},
        }


def disabled(reason: str) -> ComparisonAvailability:
    print(f"Reference comparison disabled: {reason}")
    return ComparisonAvailability(enabled=False, reason=reason)


def prepare_reference_tree(config: HarnessConfig) -> ComparisonAvailability:
    """Resolve and extract the reference revision, degrading to a disabled record on failure."""
    try:
        revision = resolve_revision(config.repo_root, config.revision)
        tree = extract_reference_tree(config, revision)
    except RevisionUnavailableError as exc:
        return disabled(str(exc))
    return ComparisonAvailability(enabled=True, revision=revision, tree=tree)


def _prepare_reference_bundle(
    config: HarnessConfig,
    force: bool,
) -> tuple[ArtifactBundle, RevisionHandle | None, IsolatedSourceTree | None]:
    if config.reference.is_prebuilt:
        return ensure_bundle(config, SIDE_REFERENCE, side_revision_id(config, SIDE_REFERENCE), force=force), None, None

    revision = resolve_revision(config.repo_root, config.revision)
    revision_id = side_revision_id(config, SIDE_REFERENCE, commit=revision.commit)
    cache_key = compute_cache_key(config, SIDE_REFERENCE, revision_id)
    # An installed bundle for this commit makes re-extracting the tree unnecessary.
    if not force and is_bundle_valid(config, SIDE_REFERENCE, cache_key):
        return load_bundle(config, SIDE_REFERENCE), revision, None
    tree = extract_reference_tree(config, revision)
    return ensure_bundle(config, SIDE_REFERENCE, revision_id, force=force), revision, tree


def prepare_bundles(config: HarnessConfig, *, force: bool = False) -> ComparisonAvailability:
    """Produce both artifact bundles, or a disabled record explaining why comparison is off.

    Missing revisions, missing tools and failed builds are all soft failures here: the caller
    gets ``enabled=False`` and the rest of the test suite carries on.
    """
    try:
        reference, revision, tree = _prepare_reference_bundle(config, force)
        current = ensure_bundle(config, SIDE_CURRENT, side_revision_id(config, SIDE_CURRENT), force=force)
    except (RevisionUnavailableError, BuildUnavailableError) as exc:
        return disabled(str(exc))

    bundles = {SIDE_CURRENT: current, SIDE_REFERENCE: reference}
    for side, bundle in sorted(bundles.items()):
        state = "rebuilt" if bundle.rebuilt else "cached"
        print(f"[{side}] {bundle.archive_path} ({state}, key {bundle.cache_key[:12]})")
    return ComparisonAvailability(enabled=True, revision=revision, tree=tree, bundles=bundles)


def prepare_probe_matrix(config: HarnessConfig, *, force: bool = False) -> tuple[ComparisonAvailability, dict[str, Any] | None]:
    availability = prepare_bundles(config, force=force)
    if not availability.enabled:
        return availability, None
    try:
        manifest = build_probe_matrix(config, availability.bundles, force=force)
    except BuildUnavailableError as exc:
        return disabled(str(exc)), None
    print_matrix_summary(manifest)
    return availability, manifest


def run_configured_comparisons(
    config: HarnessConfig,
    *,
    report_path: Path | None = None,
    markdown_path: Path | None = None,
) -> RunSummary:
    return run_binary_directory(
        config.probes.output_dir,
        prefix=config.probes.prefix,
        timeout=config.timeout_seconds,
        run_jobs=config.run_jobs,
        diff_lines=config.diff_lines,
        diagnostics=config.diagnostics,
        color=config.color,
        report_path=report_path,
        markdown_path=markdown_path,
    )


def run_pipeline(
    config: HarnessConfig,
    *,
    skip_build: bool = False,
    force: bool = False,
    report_path: Path | None = None,
    markdown_path: Path | None = None,
) -> RunSummary:
    """Extract, build, compile the probe matrix and run it.

    With ``skip_build`` only the runner is invoked over whatever binaries already exist.
    A disabled comparison yields an empty summary, which counts as success.
    """
    if not skip_build:
        availability, _ = prepare_probe_matrix(config, force=force)
        if not availability.enabled:
            return RunSummary()
    return run_configured_comparisons(config, report_path=report_path, markdown_path=markdown_path)


def isolate_bundle(
    config: HarnessConfig,
    side: str,
    *,
    suffix: str | None = None,
    output_dir: Path | None = None,
) -> dict[str, Any]:
    """Write a symbol-renamed copy of an installed bundle so it can share a link with the other side."""
    config.side(side)
    bundle = load_bundle(config, side)
    if not bundle.is_complete():
        raise BuildUnavailableError(f"{side} bundle is incomplete under '{bundle.install_dir}'")
    effective_suffix = suffix or f"_{side}"
    target_dir = output_dir or (config.side_root(side) / "renamed")
    if target_dir.exists():
        shutil.rmtree(target_dir)
    result = write_renamed_bundle(
        header_path=bundle.header_file,
        archive_path=bundle.archive_path,
        output_dir=target_dir,
        suffix=effective_suffix,
        symbol_prefixes=config.symbol_prefixes,
        objcopy=config.toolchain.objcopy,
    )
    result["side"] = side
    result["suffix"] = effective_suffix
    write_json(target_dir / "renamed.json", result)
    return result
