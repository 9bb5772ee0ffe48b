from __future__ import annotations

import datetime as dt
import difflib
import hashlib
import json
import os
import re
import shlex
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema

TOOL_VERSION = "1.0.0"
REPORT_SCHEMA_VERSION = 1
SIDE_CURRENT = "current"
SIDE_REFERENCE = "reference"
SIDES = (SIDE_CURRENT, SIDE_REFERENCE)
RECIPES = ("auto", "command", "cmake", "make", "direct")
DEFAULT_PROBE_SUFFIXES = (".cpp", ".cc", ".cxx", ".c")
C_SOURCE_SUFFIXES = {".c"}
STDERR_TAIL_CHARS = 1600

ANSI_RED = "\033[0;31m"
ANSI_GREEN = "\033[0;32m"
ANSI_YELLOW = "\033[1;33m"
ANSI_BLUE = "\033[0;34m"
ANSI_RESET = "\033[0m"


class HarnessError(Exception):
    pass


class RevisionUnavailableError(HarnessError):
    pass


class BuildUnavailableError(HarnessError):
    pass


@dataclass(frozen=True)
class SideConfig:
    name: str
    source_dir: Path
    recipe: str = "auto"
    build_command: tuple[str, ...] = ()
    cmake_args: tuple[str, ...] = ()
    make_targets: tuple[str, ...] = ("svm.o",)
    objects: tuple[str, ...] = ("svm.o",)
    sources: tuple[str, ...] = ("svm.cpp",)
    header_path: str = "svm.h"
    cflags: tuple[str, ...] = ("-O2", "-fPIC")
    prebuilt_archive: Path | None = None
    prebuilt_include_dir: Path | None = None

    @property
    def is_prebuilt(self) -> bool:
        return self.prebuilt_archive is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_dir": str(self.source_dir),
            "recipe": self.recipe,
            "build_command": list(self.build_command),
            "cmake_args": list(self.cmake_args),
            "make_targets": list(self.make_targets),
            "objects": list(self.objects),
            "sources": list(self.sources),
            "header_path": self.header_path,
            "cflags": list(self.cflags),
            "prebuilt_archive": str(self.prebuilt_archive) if self.prebuilt_archive else None,
            "prebuilt_include_dir": str(self.prebuilt_include_dir) if self.prebuilt_include_dir else None,
        }


@dataclass(frozen=True)
class ProbeConfig:
    source_dir: Path
    output_dir: Path
    prefix: str = "compare"
    suffixes: tuple[str, ...] = DEFAULT_PROBE_SUFFIXES
    cflags: tuple[str, ...] = ("-O2",)
    ldflags: tuple[str, ...] = ("-lm",)

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_dir": str(self.source_dir),
            "output_dir": str(self.output_dir),
            "prefix": self.prefix,
            "suffixes": list(self.suffixes),
            "cflags": list(self.cflags),
            "ldflags": list(self.ldflags),
        }


@dataclass(frozen=True)
class ToolchainConfig:
    cc: str | None = None
    cxx: str | None = None
    ar: str = "ar"
    objcopy: str = "objcopy"

    def as_dict(self) -> dict[str, Any]:
        return {"cc": self.cc, "cxx": self.cxx, "ar": self.ar, "objcopy": self.objcopy}


@dataclass(frozen=True)
class HarnessConfig:
    """Every knob of one harness invocation.

    Built once from the config file and CLI overrides, then passed to each component.
    Nothing downstream reads environment variables to change behaviour.
    """

    repo_root: Path
    build_root: Path
    revision: str
    current: SideConfig
    reference: SideConfig
    probes: ProbeConfig
    libname: str = "libsvm"
    header: str = "svm"
    symbol_prefixes: tuple[str, ...] = ("svm_", "libsvm_")
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    jobs: int = 1
    run_jobs: int = 1
    timeout_seconds: float | None = None
    diff_lines: int = 20
    diagnostics: str = "first"
    color: str = "auto"

    def side(self, name: str) -> SideConfig:
        if name == SIDE_CURRENT:
            return self.current
        if name == SIDE_REFERENCE:
            return self.reference
        raise HarnessError(f"Unknown side '{name}'. Known sides: {', '.join(SIDES)}")

    def side_root(self, name: str) -> Path:
        return self.build_root / name

    def install_dir(self, name: str) -> Path:
        return self.side_root(name) / "install"

    def archive_path(self, name: str) -> Path:
        return self.install_dir(name) / "lib" / f"{self.libname}.a"

    def header_dir(self, name: str) -> Path:
        return self.install_dir(name) / "include"

    def header_file(self, name: str) -> Path:
        return self.header_dir(name) / f"{self.header}.h"

    def as_dict(self) -> dict[str, Any]:
        return {
            "repo_root": str(self.repo_root),
            "build_root": str(self.build_root),
            "revision": self.revision,
            "libname": self.libname,
            "header": self.header,
            "symbol_prefixes": list(self.symbol_prefixes),
            "current": self.current.as_dict(),
            "reference": self.reference.as_dict(),
            "probes": self.probes.as_dict(),
            "toolchain": self.toolchain.as_dict(),
            "jobs": self.jobs,
            "run_jobs": self.run_jobs,
            "timeout_seconds": self.timeout_seconds,
            "diff_lines": self.diff_lines,
            "diagnostics": self.diagnostics,
            "color": self.color,
        }


def normalize_ws(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def strip_c_comments(content: str) -> str:
    content = re.sub(r"/\*.*?\*/", "", content, flags=re.S)
    content = re.sub(r"//.*?$", "", content, flags=re.M)
    return content


def load_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise HarnessError(f"Unable to read JSON file '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise HarnessError(f"Invalid JSON in '{path}': {exc}") from exc
    if not isinstance(payload, dict):
        raise HarnessError(f"JSON root in '{path}' must be an object")
    return payload


def write_json(path: Path, value: dict[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(value, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except OSError as exc:
        raise HarnessError(f"Unable to write JSON file '{path}': {exc}") from exc


def get_schema_path(kind: str) -> Path:
    base = Path(__file__).resolve().parent / "schemas"
    mapping = {
        "config": base / "config.schema.json",
        "report": base / "report.schema.json",
    }
    if kind not in mapping:
        raise HarnessError(f"Unknown schema kind: {kind}")
    return mapping[kind]


def validate_with_schema(kind: str, payload: dict[str, Any]) -> None:
    schema_path = get_schema_path(kind)
    if not schema_path.exists():
        raise HarnessError(f"schema file not found: {schema_path}")
    schema_payload = load_json(schema_path)
    try:
        jsonschema.validate(payload, schema_payload)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(item) for item in exc.absolute_path) or "<root>"
        raise HarnessError(f"{kind} failed JSON schema validation at '{location}': {exc.message}") from exc


def ensure_relative_path(root: Path, value: str | Path) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return root / path


def to_repo_relative(path: Path, repo_root: Path) -> str:
    try:
        return str(path.resolve().relative_to(repo_root.resolve()))
    except ValueError:
        return str(path.resolve())


def normalize_string_list(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return tuple()
    if not isinstance(value, list):
        raise HarnessError(f"Config field '{key}' must be an array when specified.")
    out: list[str] = []
    for idx, item in enumerate(value):
        if not isinstance(item, str) or not item:
            raise HarnessError(f"Config field '{key}[{idx}]' must be a non-empty string.")
        out.append(item)
    return tuple(out)


def now_utc() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


def utc_timestamp_now() -> str:
    return now_utc().isoformat()


def detect_cores() -> int:
    count = os.cpu_count()
    if isinstance(count, int) and count > 0:
        return count
    return 4


def stable_hash(value: Any) -> str:
    payload = json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def tail_text(value: str, limit: int = STDERR_TAIL_CHARS) -> str:
    text = value.strip()
    if len(text) > limit:
        return text[-limit:]
    return text


def format_command(command: list[str]) -> str:
    return " ".join(shlex.quote(item) for item in command)


def run_tool(command: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Run a build tool, raising BuildUnavailableError with the stderr tail on failure."""
    try:
        return subprocess.run(command, cwd=cwd, capture_output=True, text=True, check=True)
    except FileNotFoundError as exc:
        raise BuildUnavailableError(f"tool not found: {command[0]}") from exc
    except OSError as exc:
        raise BuildUnavailableError(f"unable to run {command[0]}: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        message = tail_text(exc.stderr or "") or tail_text(exc.stdout or "") or "unknown command failure"
        raise BuildUnavailableError(
            f"command failed (exit {exc.returncode}): {format_command(command)}; error={message}"
        ) from exc


def compute_unified_diff(old_content: str, new_content: str, old_label: str, new_label: str) -> str:
    diff_lines = difflib.unified_diff(
        old_content.replace("\r\n", "\n").splitlines(),
        new_content.replace("\r\n", "\n").splitlines(),
        fromfile=old_label,
        tofile=new_label,
        lineterm="",
    )
    return "\n".join(diff_lines)


def _dedupe_non_empty_strings(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in values:
        value = raw.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def _default_compiler_candidates(language: str) -> list[str]:
    candidates: list[str] = []
    env_key = "CC" if language == "c" else "CXX"
    value = os.environ.get(env_key)
    if isinstance(value, str) and value.strip():
        candidates.append(value.strip())
    if language == "c":
        candidates.extend(["cc", "gcc", "clang"])
    else:
        candidates.extend(["c++", "g++", "clang++"])
    return _dedupe_non_empty_strings(candidates)


def _resolve_executable_candidate(candidate: str) -> str | None:
    expanded = os.path.expanduser(os.path.expandvars(candidate.strip()))
    if not expanded:
        return None

    # Explicit path (absolute or relative with separators).
    if any(sep in expanded for sep in ["/", "\\"]):
        candidate_path = Path(expanded)
        if candidate_path.exists():
            return str(candidate_path)
        return None

    return shutil.which(expanded)


def resolve_compiler(toolchain: ToolchainConfig, language: str) -> str:
    explicit = toolchain.cc if language == "c" else toolchain.cxx
    candidates = _dedupe_non_empty_strings(([explicit] if explicit else []) + _default_compiler_candidates(language))
    for candidate in candidates:
        resolved = _resolve_executable_candidate(candidate)
        if resolved:
            return resolved
    kind = "C" if language == "c" else "C++"
    raise BuildUnavailableError(
        f"{kind} compiler not found; tried: {', '.join(candidates)}. "
        "Configure toolchain.cc/toolchain.cxx or set CC/CXX."
    )


def language_for_source(path: Path) -> str:
    return "c" if path.suffix.lower() in C_SOURCE_SUFFIXES else "c++"


def color_enabled(mode: str, stream: Any = None) -> bool:
    if mode == "always":
        return True
    if mode == "never":
        return False
    target = stream if stream is not None else sys.stdout
    isatty = getattr(target, "isatty", None)
    return bool(isatty and isatty())


def paint(text: str, ansi: str, enabled: bool) -> str:
    if not enabled:
        return text
    return f"{ansi}{text}{ANSI_RESET}"


def _side_from_payload(
    name: str,
    payload: dict[str, Any],
    default_source_dir: Path,
    repo_root: Path,
) -> SideConfig:
    label = f"config.{name}"
    source_value = payload.get("source_dir")
    source_dir = ensure_relative_path(repo_root, source_value).resolve() if source_value else default_source_dir
    recipe = str(payload.get("recipe", "auto"))
    if recipe not in RECIPES:
        raise HarnessError(f"{label}.recipe must be one of {', '.join(RECIPES)}")
    build_command = normalize_string_list(payload.get("build_command"), f"{label}.build_command")
    if recipe == "command" and not build_command:
        raise HarnessError(f"{label}.build_command is required when recipe is 'command'")

    defaults = SideConfig(name=name, source_dir=source_dir)
    prebuilt_archive = None
    prebuilt_include_dir = None
    if payload.get("archive") or payload.get("include_dir"):
        if not (payload.get("archive") and payload.get("include_dir")):
            raise HarnessError(f"{label}.archive and {label}.include_dir must be specified together")
        prebuilt_archive = ensure_relative_path(repo_root, payload["archive"]).resolve()
        prebuilt_include_dir = ensure_relative_path(repo_root, payload["include_dir"]).resolve()

    def _list_or_default(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        if key not in payload:
            return default
        return normalize_string_list(payload.get(key), f"{label}.{key}")

    return SideConfig(
        name=name,
        source_dir=source_dir,
        recipe=recipe,
        build_command=build_command,
        cmake_args=_list_or_default("cmake_args", defaults.cmake_args),
        make_targets=_list_or_default("make_targets", defaults.make_targets),
        objects=_list_or_default("objects", defaults.objects),
        sources=_list_or_default("sources", defaults.sources),
        header_path=str(payload.get("header_path", defaults.header_path)),
        cflags=_list_or_default("cflags", defaults.cflags),
        prebuilt_archive=prebuilt_archive,
        prebuilt_include_dir=prebuilt_include_dir,
    )


def validate_config_payload(payload: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise HarnessError("config root must be an object")
    validate_with_schema("config", payload)

    library = payload.get("library") or {}
    for key in ["libname", "header"]:
        value = library.get(key)
        if value is not None and not re.match(r"^[A-Za-z_][A-Za-z0-9_.+-]*$", str(value)):
            raise HarnessError(f"config.library.{key} must be a plain file stem, got {value!r}")
    probes = payload.get("probes") or {}
    for suffix in probes.get("suffixes") or []:
        if not suffix.startswith("."):
            raise HarnessError(f"config.probes.suffixes entries must start with '.', got {suffix!r}")


def build_config(
    payload: dict[str, Any] | None = None,
    *,
    repo_root: str | Path | None = None,
    build_root: str | Path | None = None,
    revision: str | None = None,
    jobs: int | None = None,
    run_jobs: int | None = None,
    timeout_seconds: float | None = None,
    color: str | None = None,
) -> HarnessConfig:
    """Merge a (validated) config payload with explicit overrides into a HarnessConfig."""
    data = dict(payload or {})
    validate_config_payload(data)

    root = Path(repo_root if repo_root is not None else data.get("repo_root", ".")).resolve()
    build_root_path = ensure_relative_path(
        root, build_root if build_root is not None else data.get("build_root", "build/compare")
    ).resolve()

    library = data.get("library") or {}
    reference_payload = dict(data.get("reference") or {})
    current_payload = dict(data.get("current") or {})
    probes_payload = dict(data.get("probes") or {})
    toolchain_payload = dict(data.get("toolchain") or {})

    reference = _side_from_payload(
        SIDE_REFERENCE,
        reference_payload,
        default_source_dir=build_root_path / SIDE_REFERENCE / "src",
        repo_root=root,
    )
    current = _side_from_payload(SIDE_CURRENT, current_payload, default_source_dir=root, repo_root=root)

    probe_defaults = ProbeConfig(source_dir=root, output_dir=root)
    probes = ProbeConfig(
        source_dir=ensure_relative_path(
            root, probes_payload.get("source_dir", "tests/comparison/test_cases")
        ).resolve(),
        output_dir=ensure_relative_path(
            root, probes_payload.get("output_dir", build_root_path / "bin" / "comparison")
        ).resolve(),
        prefix=str(probes_payload.get("prefix", probe_defaults.prefix)),
        suffixes=(
            normalize_string_list(probes_payload["suffixes"], "config.probes.suffixes")
            if "suffixes" in probes_payload
            else probe_defaults.suffixes
        ),
        cflags=(
            normalize_string_list(probes_payload["cflags"], "config.probes.cflags")
            if "cflags" in probes_payload
            else probe_defaults.cflags
        ),
        ldflags=(
            normalize_string_list(probes_payload["ldflags"], "config.probes.ldflags")
            if "ldflags" in probes_payload
            else probe_defaults.ldflags
        ),
    )

    toolchain = ToolchainConfig(
        cc=toolchain_payload.get("cc"),
        cxx=toolchain_payload.get("cxx"),
        ar=str(toolchain_payload.get("ar", "ar")),
        objcopy=str(toolchain_payload.get("objcopy", "objcopy")),
    )

    effective_jobs = jobs if jobs is not None else data.get("jobs")
    effective_run_jobs = run_jobs if run_jobs is not None else data.get("run_jobs", 1)
    effective_timeout = timeout_seconds if timeout_seconds is not None else data.get("timeout_seconds")
    effective_color = color if color is not None else data.get("color", "auto")
    if effective_color not in {"auto", "always", "never"}:
        raise HarnessError("color must be one of auto, always, never")

    return HarnessConfig(
        repo_root=root,
        build_root=build_root_path,
        revision=str(revision if revision is not None else reference_payload.get("revision", "upstream")),
        current=current,
        reference=reference,
        probes=probes,
        libname=str(library.get("libname", "libsvm")),
        header=str(library.get("header", "svm")),
        symbol_prefixes=(
            normalize_string_list(library["symbol_prefixes"], "config.library.symbol_prefixes")
            if "symbol_prefixes" in library
            else ("svm_", "libsvm_")
        ),
        toolchain=toolchain,
        jobs=max(1, int(effective_jobs)) if effective_jobs else detect_cores(),
        run_jobs=max(1, int(effective_run_jobs)),
        timeout_seconds=float(effective_timeout) if effective_timeout else None,
        diff_lines=max(1, int(data.get("diff_lines", 20))),
        diagnostics=str(data.get("diagnostics", "first")),
        color=str(effective_color),
    )


def load_config(path: Path | None, **overrides: Any) -> HarnessConfig:
    payload = load_json(path) if path is not None else {}
    if path is not None and "repo_root" in payload and overrides.get("repo_root") is None:
        overrides["repo_root"] = ensure_relative_path(path.parent, payload["repo_root"])
    return build_config(payload, **overrides)
