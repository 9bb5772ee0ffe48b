from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed

from ._core_base import *  # noqa: F401,F403
from ._core_build import ArtifactBundle
from ._core_symbols import assert_side_isolation

MATRIX_MANIFEST = "matrix.json"
PROBE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class ProbeDescriptor:
    name: str
    source_path: Path


@dataclass(frozen=True)
class ProbeTarget:
    probe: ProbeDescriptor
    side: str
    output_path: Path
    command: tuple[str, ...]

    @property
    def target_name(self) -> str:
        return self.output_path.name


def probe_name_for(path: Path) -> str:
    # Everything before the first dot, so "model_io.test.cpp" is probe "model_io".
    return path.name.split(".", 1)[0]


def binary_name(prefix: str, side: str, probe_name: str) -> str:
    name = f"{prefix}_{side}_{probe_name}"
    if os.name == "nt":
        name += ".exe"
    return name


def discover_probes(probe_cfg: ProbeConfig) -> tuple[list[ProbeDescriptor], list[str]]:
    """List every probe source in the probe directory.

    Returns the probes sorted by name plus warnings for files that cannot become a probe
    (unusable names, or a second file mapping to an already-taken name).
    """
    warnings: list[str] = []
    if not probe_cfg.source_dir.is_dir():
        return [], [f"probe directory not found: {probe_cfg.source_dir}"]

    suffixes = {item.lower() for item in probe_cfg.suffixes}
    probes: dict[str, ProbeDescriptor] = {}
    for path in sorted(probe_cfg.source_dir.iterdir()):
        if not path.is_file() or path.suffix.lower() not in suffixes:
            continue
        name = probe_name_for(path)
        if not PROBE_NAME_PATTERN.match(name):
            warnings.append(f"ignoring probe '{path.name}': name '{name}' is not a valid target name")
            continue
        if name in probes:
            warnings.append(
                f"ignoring probe '{path.name}': name '{name}' already used by '{probes[name].source_path.name}'"
            )
            continue
        probes[name] = ProbeDescriptor(name=name, source_path=path.resolve())
    return [probes[name] for name in sorted(probes)], warnings


def probe_compile_command(
    config: HarnessConfig,
    bundle: ArtifactBundle,
    probe: ProbeDescriptor,
    output_path: Path,
) -> list[str]:
    compiler = resolve_compiler(config.toolchain, language_for_source(probe.source_path))
    return [
        compiler,
        *config.probes.cflags,
        f"-I{bundle.header_dir}",
        str(probe.source_path),
        str(bundle.archive_path),
        *config.probes.ldflags,
        "-o",
        str(output_path),
    ]


def plan_probe_matrix(
    config: HarnessConfig,
    bundles: dict[str, ArtifactBundle],
    probes: list[ProbeDescriptor],
) -> list[ProbeTarget]:
    """Two targets per probe, each compiled against exactly one side's bundle."""
    for side in SIDES:
        bundle = bundles.get(side)
        if bundle is None:
            raise HarnessError(f"no {side} bundle available for the probe matrix")
        if not bundle.is_complete():
            raise BuildUnavailableError(f"{side} bundle is incomplete: {bundle.archive_path}, {bundle.header_file}")

    targets: list[ProbeTarget] = []
    for probe in probes:
        for side in SIDES:
            bundle = bundles[side]
            foreign = [other.install_dir for name, other in bundles.items() if name != side]
            output_path = config.probes.output_dir / binary_name(config.probes.prefix, side, probe.name)
            command = probe_compile_command(config, bundle, probe, output_path)
            assert_side_isolation(command, own_roots=[bundle.install_dir], foreign_roots=foreign)
            targets.append(ProbeTarget(probe=probe, side=side, output_path=output_path, command=tuple(command)))
    return targets


def target_fingerprint(target: ProbeTarget, bundle: ArtifactBundle) -> str:
    return stable_hash({"command": list(target.command), "bundle": bundle.cache_key})


def read_target_fingerprints(output_dir: Path) -> dict[str, str]:
    manifest_path = output_dir / MATRIX_MANIFEST
    if not manifest_path.is_file():
        return {}
    try:
        manifest = load_json(manifest_path)
    except HarnessError:
        return {}
    fingerprints: dict[str, str] = {}
    for item in manifest.get("targets", []):
        if isinstance(item, dict) and item.get("target") and item.get("fingerprint"):
            fingerprints[str(item["target"])] = str(item["fingerprint"])
    return fingerprints


def is_target_up_to_date(target: ProbeTarget, bundle: ArtifactBundle, recorded_fingerprint: str | None) -> bool:
    """True when the binary exists, was built by the same command and is newer than its inputs."""
    if not target.output_path.is_file():
        return False
    if recorded_fingerprint != target_fingerprint(target, bundle):
        return False
    built_at = target.output_path.stat().st_mtime
    inputs = [target.probe.source_path, bundle.archive_path, bundle.header_file]
    return all(path.is_file() and path.stat().st_mtime <= built_at for path in inputs)


def compile_probe_target(target: ProbeTarget) -> dict[str, Any]:
    start = time.perf_counter()
    result: dict[str, Any] = {
        "target": target.target_name,
        "probe": target.probe.name,
        "side": target.side,
        "source": str(target.probe.source_path),
        "output": str(target.output_path),
        "command": format_command(list(target.command)),
    }
    try:
        proc = subprocess.run(list(target.command), capture_output=True, text=True)
    except OSError as exc:
        result.update({"status": "failed", "exit_code": None, "stderr_tail": str(exc)})
        return result
    result["elapsed_ms"] = round((time.perf_counter() - start) * 1000.0, 3)
    result["exit_code"] = proc.returncode
    if proc.returncode != 0:
        # A failed compile must leave no binary behind, otherwise a stale one would be compared.
        if target.output_path.exists():
            target.output_path.unlink()
        result["status"] = "failed"
        result["stderr_tail"] = tail_text(proc.stderr or proc.stdout or "")
        return result
    result["status"] = "built"
    return result


def prune_stale_binaries(output_dir: Path, prefix: str, probe_names: set[str]) -> list[str]:
    removed: list[str] = []
    if not output_dir.is_dir():
        return removed
    for side in SIDES:
        marker = f"{prefix}_{side}_"
        for path in sorted(output_dir.glob(f"{marker}*")):
            name = path.name[len(marker):]
            if name.endswith(".exe"):
                name = name[: -len(".exe")]
            if path.is_file() and name not in probe_names:
                path.unlink()
                removed.append(path.name)
    return removed


def build_probe_matrix(
    config: HarnessConfig,
    bundles: dict[str, ArtifactBundle],
    *,
    force: bool = False,
) -> dict[str, Any]:
    """Compile every probe against both bundles in parallel and write the matrix manifest.

    A compile failure only removes that one binary; the runner later skips its pair.
    """
    probes, warnings = discover_probes(config.probes)
    output_dir = config.probes.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    removed = prune_stale_binaries(output_dir, config.probes.prefix, {probe.name for probe in probes})

    targets = plan_probe_matrix(config, bundles, probes)
    recorded = {} if force else read_target_fingerprints(output_dir)
    fingerprints = {target.target_name: target_fingerprint(target, bundles[target.side]) for target in targets}
    results: list[dict[str, Any]] = []
    pending: list[ProbeTarget] = []
    for target in targets:
        if not force and is_target_up_to_date(target, bundles[target.side], recorded.get(target.target_name)):
            results.append(
                {
                    "target": target.target_name,
                    "probe": target.probe.name,
                    "side": target.side,
                    "source": str(target.probe.source_path),
                    "output": str(target.output_path),
                    "command": format_command(list(target.command)),
                    "status": "up_to_date",
                }
            )
        else:
            pending.append(target)

    if pending:
        with ThreadPoolExecutor(max_workers=max(1, config.jobs)) as pool:
            futures = [pool.submit(compile_probe_target, target) for target in pending]
            for future in as_completed(futures):
                results.append(future.result())

    results.sort(key=lambda item: (item["probe"], SIDES.index(item["side"])))
    counts = {"built": 0, "failed": 0, "up_to_date": 0}
    for item in results:
        counts[item["status"]] += 1
        item["fingerprint"] = fingerprints[item["target"]]

    manifest = {
        "tool": {"name": "compare_harness", "version": TOOL_VERSION},
        "generated_at_utc": utc_timestamp_now(),
        "prefix": config.probes.prefix,
        "probe_dir": str(config.probes.source_dir),
        "output_dir": str(output_dir),
        "probe_count": len(probes),
        "target_count": len(results),
        "counts": counts,
        "warnings": warnings,
        "pruned": removed,
        "bundles": {side: bundle.as_dict() for side, bundle in sorted(bundles.items())},
        "targets": results,
    }
    write_json(output_dir / MATRIX_MANIFEST, manifest)
    return manifest


def print_matrix_summary(manifest: dict[str, Any]) -> None:
    for warning in manifest.get("warnings", []):
        print(f"warning: {warning}")
    for item in manifest.get("targets", []):
        if item.get("status") != "failed":
            continue
        print(f"[{item['side']}] {item['probe']}: compile failed (exit {item.get('exit_code')})")
        for line in str(item.get("stderr_tail") or "").splitlines()[:20]:
            print(f"    {line}")
    counts = manifest.get("counts", {})
    print(
        f"Probe matrix: {manifest.get('probe_count', 0)} probe(s), "
        f"{counts.get('built', 0)} built, {counts.get('up_to_date', 0)} up to date, "
        f"{counts.get('failed', 0)} failed -> {manifest.get('output_dir')}"
    )
