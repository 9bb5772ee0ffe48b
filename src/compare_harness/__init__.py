from .core import (
    ArtifactBundle,
    BuildUnavailableError,
    ComparisonAvailability,
    ComparisonOutcome,
    HarnessConfig,
    HarnessError,
    PairResult,
    ProbePair,
    RevisionUnavailableError,
    RunSummary,
    build_config,
    build_probe_matrix,
    discover_probe_pairs,
    ensure_bundle,
    extract_reference_tree,
    load_config,
    prepare_bundles,
    run_binary_directory,
    run_comparisons,
    run_pipeline,
    run_probe_pair,
)

__all__ = [
    "ArtifactBundle",
    "BuildUnavailableError",
    "ComparisonAvailability",
    "ComparisonOutcome",
    "HarnessConfig",
    "HarnessError",
    "PairResult",
    "ProbePair",
    "RevisionUnavailableError",
    "RunSummary",
    "build_config",
    "build_probe_matrix",
    "discover_probe_pairs",
    "ensure_bundle",
    "extract_reference_tree",
    "load_config",
    "prepare_bundles",
    "run_binary_directory",
    "run_comparisons",
    "run_pipeline",
    "run_probe_pair",
]
