from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable

from ._core_base import *  # noqa: F401,F403

BANNER = "=" * 47


class ComparisonOutcome(str, Enum):
    PASS = "pass"
    MISMATCH = "mismatch"
    CURRENT_CRASHED = "current_crashed"
    REFERENCE_CRASHED = "reference_crashed"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        return self in {
            ComparisonOutcome.MISMATCH,
            ComparisonOutcome.CURRENT_CRASHED,
            ComparisonOutcome.REFERENCE_CRASHED,
        }


FAILURE_LABELS = {
    ComparisonOutcome.MISMATCH: "output mismatch",
    ComparisonOutcome.CURRENT_CRASHED: "current version crashed",
    ComparisonOutcome.REFERENCE_CRASHED: "reference version crashed",
}


@dataclass(frozen=True)
class ProbePair:
    name: str
    current_binary: Path
    reference_binary: Path

    def missing_sides(self) -> list[str]:
        missing: list[str] = []
        for side, path in ((SIDE_CURRENT, self.current_binary), (SIDE_REFERENCE, self.reference_binary)):
            if not path.is_file() or not os.access(path, os.X_OK):
                missing.append(side)
        return missing

    def is_complete(self) -> bool:
        return not self.missing_sides()


@dataclass(frozen=True)
class SideRun:
    side: str
    exit_code: int | None
    stdout: bytes
    stderr: bytes
    elapsed_ms: float
    error: str | None = None

    @property
    def crashed(self) -> bool:
        return self.exit_code != 0

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def describe_failure(self) -> str:
        if self.error:
            return self.error
        if self.exit_code is not None and self.exit_code < 0:
            return f"killed by signal {-self.exit_code}"
        return f"exit code {self.exit_code}"


@dataclass(frozen=True)
class PairResult:
    pair: ProbePair
    outcome: ComparisonOutcome
    reason: str
    current: SideRun | None = None
    reference: SideRun | None = None
    warnings: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.pair.name

    @property
    def failed(self) -> bool:
        return self.outcome.is_failure


@dataclass(frozen=True)
class RunSummary:
    results: tuple[PairResult, ...] = ()

    @property
    def total(self) -> int:
        return sum(1 for item in self.results if item.outcome is not ComparisonOutcome.SKIPPED)

    @property
    def passed(self) -> int:
        return sum(1 for item in self.results if item.outcome is ComparisonOutcome.PASS)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.results if item.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.results if item.outcome is ComparisonOutcome.SKIPPED)

    @property
    def exit_code(self) -> int:
        return 0 if self.failed == 0 else 1

    def counts(self) -> dict[str, int]:
        return {"total": self.total, "passed": self.passed, "failed": self.failed, "skipped": self.skipped}


def _strip_exe(name: str) -> str:
    return name[: -len(".exe")] if name.endswith(".exe") else name


def discover_probe_pairs(bin_dir: Path, prefix: str) -> list[ProbePair]:
    """Pair up ``<prefix>_current_<name>`` and ``<prefix>_reference_<name>`` binaries by name.

    A name seen on only one side still yields a pair; it is incomplete and will be skipped.
    """
    if not bin_dir.is_dir():
        return []
    names: set[str] = set()
    for side in SIDES:
        marker = f"{prefix}_{side}_"
        for path in bin_dir.glob(f"{marker}*"):
            name = _strip_exe(path.name[len(marker):])
            if name:
                names.add(name)

    suffix = ".exe" if os.name == "nt" else ""
    return [
        ProbePair(
            name=name,
            current_binary=bin_dir / f"{prefix}_{SIDE_CURRENT}_{name}{suffix}",
            reference_binary=bin_dir / f"{prefix}_{SIDE_REFERENCE}_{name}{suffix}",
        )
        for name in sorted(names)
    ]


def run_probe_binary(
    path: Path,
    side: str,
    *,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> SideRun:
    start = time.perf_counter()
    try:
        proc = subprocess.run(
            [str(path)],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        return SideRun(
            side=side,
            exit_code=None,
            stdout=exc.stdout or b"",
            stderr=exc.stderr or b"",
            elapsed_ms=round((time.perf_counter() - start) * 1000.0, 3),
            error=f"timed out after {timeout}s",
        )
    except OSError as exc:
        return SideRun(
            side=side,
            exit_code=None,
            stdout=b"",
            stderr=b"",
            elapsed_ms=round((time.perf_counter() - start) * 1000.0, 3),
            error=f"failed to start: {exc}",
        )
    return SideRun(
        side=side,
        exit_code=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
        elapsed_ms=round((time.perf_counter() - start) * 1000.0, 3),
    )


def parse_probe_output(text: str) -> tuple[list[tuple[str, str]], list[str]]:
    """Split probe output into ``(key, value)`` entries and contract violations."""
    entries: list[tuple[str, str]] = []
    violations: list[str] = []
    for index, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        if ":" not in line:
            violations.append(f"line {index}: missing ':' separator: {line[:80]!r}")
            continue
        key, value = line.split(":", 1)
        if not key.strip():
            violations.append(f"line {index}: empty key")
            continue
        entries.append((key, value))
    return entries, violations


def diff_probe_outputs(current_text: str, reference_text: str) -> list[str]:
    current_entries, _ = parse_probe_output(current_text)
    reference_entries, _ = parse_probe_output(reference_text)
    current_map = dict(current_entries)
    reference_map = dict(reference_entries)
    ordered_keys = list(dict.fromkeys([key for key, _ in current_entries] + [key for key, _ in reference_entries]))

    differences: list[str] = []
    for key in ordered_keys:
        if key not in reference_map:
            differences.append(f"{key}: only in current ({current_map[key]})")
        elif key not in current_map:
            differences.append(f"{key}: only in reference ({reference_map[key]})")
        elif current_map[key] != reference_map[key]:
            differences.append(f"{key}: current={current_map[key]} reference={reference_map[key]}")
    return differences


def classify_runs(current: SideRun, reference: SideRun) -> tuple[ComparisonOutcome, str]:
    # Crash classification wins; outputs of a crashed run are never diffed.
    if current.crashed:
        reason = f"current version crashed ({current.describe_failure()})"
        if reference.crashed:
            reason += f"; reference also failed ({reference.describe_failure()})"
        return ComparisonOutcome.CURRENT_CRASHED, reason
    if reference.crashed:
        return ComparisonOutcome.REFERENCE_CRASHED, f"reference version crashed ({reference.describe_failure()})"
    if current.stdout == reference.stdout:
        return ComparisonOutcome.PASS, "outputs identical"
    return ComparisonOutcome.MISMATCH, "output mismatch"


def run_probe_pair(
    pair: ProbePair,
    *,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> PairResult:
    missing = pair.missing_sides()
    if missing:
        return PairResult(
            pair=pair,
            outcome=ComparisonOutcome.SKIPPED,
            reason=f"executable not found ({', '.join(missing)})",
        )

    current = run_probe_binary(pair.current_binary, SIDE_CURRENT, timeout=timeout, env=env)
    reference = run_probe_binary(pair.reference_binary, SIDE_REFERENCE, timeout=timeout, env=env)
    outcome, reason = classify_runs(current, reference)

    warnings: list[str] = []
    if outcome is not ComparisonOutcome.CURRENT_CRASHED and outcome is not ComparisonOutcome.REFERENCE_CRASHED:
        for run in (current, reference):
            _, violations = parse_probe_output(run.stdout_text())
            warnings.extend(f"{run.side} output contract: {item}" for item in violations[:5])
    return PairResult(
        pair=pair,
        outcome=outcome,
        reason=reason,
        current=current,
        reference=reference,
        warnings=tuple(warnings),
    )


def run_comparisons(
    pairs: list[ProbePair],
    *,
    timeout: float | None = None,
    run_jobs: int = 1,
    env: dict[str, str] | None = None,
    on_result: Callable[[PairResult], None] | None = None,
) -> RunSummary:
    """Run every pair and collect the outcomes in discovery order.

    With ``run_jobs > 1`` pairs execute concurrently, but results are only reported and
    summarized once all of them have finished.
    """
    results: list[PairResult] = []
    if run_jobs <= 1 or len(pairs) <= 1:
        for pair in pairs:
            result = run_probe_pair(pair, timeout=timeout, env=env)
            results.append(result)
            if on_result is not None:
                on_result(result)
        return RunSummary(results=tuple(results))

    with ThreadPoolExecutor(max_workers=run_jobs) as pool:
        results = list(pool.map(lambda item: run_probe_pair(item, timeout=timeout, env=env), pairs))
    if on_result is not None:
        for result in results:
            on_result(result)
    return RunSummary(results=tuple(results))


def head_lines(text: str, limit: int) -> list[str]:
    return text.splitlines()[:limit]


def render_pair_diagnostics(result: PairResult, max_lines: int) -> list[str]:
    lines: list[str] = []
    if result.current is None or result.reference is None:
        return lines
    if result.outcome is ComparisonOutcome.MISMATCH:
        current_text = result.current.stdout_text()
        reference_text = result.reference.stdout_text()
        lines.append("  Current output:")
        lines.extend(f"    {line}" for line in head_lines(current_text, max_lines))
        lines.append("")
        lines.append("  Reference output:")
        lines.extend(f"    {line}" for line in head_lines(reference_text, max_lines))
        differences = diff_probe_outputs(current_text, reference_text)
        if differences:
            lines.append("")
            lines.append("  Differing keys:")
            lines.extend(f"    {item}" for item in differences[:max_lines])
    elif result.outcome in {ComparisonOutcome.CURRENT_CRASHED, ComparisonOutcome.REFERENCE_CRASHED}:
        crashed = result.current if result.outcome is ComparisonOutcome.CURRENT_CRASHED else result.reference
        stderr_lines = head_lines(crashed.stderr_text(), max_lines)
        if stderr_lines:
            lines.append(f"  {crashed.side.capitalize()} stderr:")
            lines.extend(f"    {line}" for line in stderr_lines)
    return lines


class ConsoleReporter:
    """Prints per-pair progress and the final summary in the shell runner's format."""

    def __init__(self, *, color: bool, diff_lines: int = 20, diagnostics: str = "first") -> None:
        self.color = color
        self.diff_lines = diff_lines
        self.diagnostics = diagnostics
        self._mismatch_shown = False

    def banner(self, title: str) -> None:
        print(BANNER)
        print(title)
        print(BANNER)

    def on_result(self, result: PairResult) -> None:
        if result.outcome is ComparisonOutcome.SKIPPED:
            print(paint(f"Skipping {result.name}: {result.reason}", ANSI_YELLOW, self.color))
            return
        if result.outcome is ComparisonOutcome.PASS:
            print(f"Testing {result.name}... {paint('PASS', ANSI_GREEN, self.color)}")
        else:
            label = FAILURE_LABELS[result.outcome]
            print(f"Testing {result.name}... {paint(f'FAIL ({label})', ANSI_RED, self.color)}")
            if result.reason != label:
                print(f"  {result.reason}")
        for warning in result.warnings:
            print(paint(f"  warning: {warning}", ANSI_YELLOW, self.color))

        if result.outcome is ComparisonOutcome.MISMATCH:
            if self._mismatch_shown and self.diagnostics != "all":
                return
            self._mismatch_shown = True
        if result.failed:
            diagnostics = render_pair_diagnostics(result, self.diff_lines)
            if diagnostics:
                print("")
                for line in diagnostics:
                    print(line)
                print("")

    def summary(self, summary: RunSummary) -> None:
        if not summary.results:
            print(paint("No comparison tests found", ANSI_YELLOW, self.color))
        print("")
        self.banner("Comparison Test Summary")
        print(f"Total:   {summary.total}")
        print(paint(f"Passed:  {summary.passed}", ANSI_GREEN, self.color))
        failed_line = f"Failed:  {summary.failed}"
        print(paint(failed_line, ANSI_RED, self.color) if summary.failed else failed_line)
        if summary.skipped:
            print(paint(f"Skipped: {summary.skipped}", ANSI_YELLOW, self.color))
        print("")
        print(
            f"Summary: total={summary.total} passed={summary.passed} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )


def _side_run_payload(run: SideRun | None, max_lines: int) -> dict[str, Any] | None:
    if run is None:
        return None
    return {
        "exit_code": run.exit_code,
        "error": run.error,
        "elapsed_ms": run.elapsed_ms,
        "stdout_head": head_lines(run.stdout_text(), max_lines),
        "stderr_tail": tail_text(run.stderr_text()),
    }


def build_run_report(summary: RunSummary, *, bin_dir: Path, prefix: str, max_lines: int = 20) -> dict[str, Any]:
    cases: list[dict[str, Any]] = []
    for result in summary.results:
        case: dict[str, Any] = {
            "name": result.name,
            "outcome": result.outcome.value,
            "reason": result.reason,
            "current_binary": str(result.pair.current_binary),
            "reference_binary": str(result.pair.reference_binary),
            "current": _side_run_payload(result.current, max_lines),
            "reference": _side_run_payload(result.reference, max_lines),
            "warnings": list(result.warnings),
        }
        if result.outcome is ComparisonOutcome.MISMATCH and result.current and result.reference:
            case["differences"] = diff_probe_outputs(result.current.stdout_text(), result.reference.stdout_text())
            case["unified_diff"] = compute_unified_diff(
                result.reference.stdout_text(),
                result.current.stdout_text(),
                f"{SIDE_REFERENCE}/{result.name}",
                f"{SIDE_CURRENT}/{result.name}",
            )
        cases.append(case)

    report = {
        "schema_version": REPORT_SCHEMA_VERSION,
        "tool": {"name": "compare_harness", "version": TOOL_VERSION},
        "generated_at_utc": utc_timestamp_now(),
        "bin_dir": str(bin_dir),
        "prefix": prefix,
        "comparison_policy": "byte-exact stdout",
        "status": "pass" if summary.failed == 0 else "fail",
        "summary": summary.counts(),
        "cases": cases,
    }
    validate_with_schema("report", report)
    return report


def write_markdown_run_report(path: Path, report: dict[str, Any]) -> None:
    summary = report.get("summary", {})
    lines: list[str] = []
    lines.append(f"# Comparison Report ({report.get('status', 'unknown')})")
    lines.append("")
    lines.append(f"- Binary directory: `{report.get('bin_dir')}`")
    lines.append(f"- Comparison policy: `{report.get('comparison_policy')}`")
    lines.append(f"- Total: `{summary.get('total', 0)}`")
    lines.append(f"- Passed: `{summary.get('passed', 0)}`")
    lines.append(f"- Failed: `{summary.get('failed', 0)}`")
    lines.append(f"- Skipped: `{summary.get('skipped', 0)}`")
    lines.append("")

    failing = [case for case in report.get("cases", []) if case.get("outcome") not in {"pass", "skipped"}]
    skipped = [case for case in report.get("cases", []) if case.get("outcome") == "skipped"]
    if failing:
        lines.append("## Failing Pairs")
        for case in failing:
            lines.append(f"- `{case['name']}`: {case['reason']}")
            for item in case.get("differences", [])[:10]:
                lines.append(f"  - {item}")
        lines.append("")
    if skipped:
        lines.append("## Skipped Pairs")
        for case in skipped:
            lines.append(f"- `{case['name']}`: {case['reason']}")
        lines.append("")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as exc:
        raise HarnessError(f"Unable to write report '{path}': {exc}") from exc


def run_binary_directory(
    bin_dir: Path,
    *,
    prefix: str = "compare",
    timeout: float | None = None,
    run_jobs: int = 1,
    diff_lines: int = 20,
    diagnostics: str = "first",
    color: str = "auto",
    report_path: Path | None = None,
    markdown_path: Path | None = None,
) -> RunSummary:
    """Differential Runner entry point: discover, run, print and (optionally) persist reports."""
    reporter = ConsoleReporter(color=color_enabled(color), diff_lines=diff_lines, diagnostics=diagnostics)
    reporter.banner("Running Upstream Comparison Tests")
    print("")
    pairs = discover_probe_pairs(bin_dir, prefix)
    summary = run_comparisons(pairs, timeout=timeout, run_jobs=run_jobs, on_result=reporter.on_result)
    reporter.summary(summary)

    if report_path is not None or markdown_path is not None:
        report = build_run_report(summary, bin_dir=bin_dir, prefix=prefix, max_lines=diff_lines)
        if report_path is not None:
            write_json(report_path, report)
            print(f"Wrote {report_path}")
        if markdown_path is not None:
            write_markdown_run_report(markdown_path, report)
            print(f"Wrote {markdown_path}")
    return summary
