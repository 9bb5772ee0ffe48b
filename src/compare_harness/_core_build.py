from __future__ import annotations

from ._core_base import *  # noqa: F401,F403
from ._core_symbols import check_bundle_api

ARTIFACT_STAMP = ".artifact.json"
DIGEST_SUFFIXES = {".c", ".cc", ".cpp", ".cxx", ".h", ".hh", ".hpp", ".hxx", ".def", ".cmake", ".in", ".mk"}
DIGEST_NAMES = {"CMakeLists.txt", "Makefile", "makefile", "GNUmakefile"}


@dataclass(frozen=True)
class ArtifactBundle:
    side: str
    archive_path: Path
    header_dir: Path
    header_file: Path
    cache_key: str
    recipe: str
    rebuilt: bool
    api_check: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def install_dir(self) -> Path:
        return self.archive_path.parent.parent

    def is_complete(self) -> bool:
        return self.archive_path.is_file() and self.header_file.is_file()

    def as_dict(self) -> dict[str, Any]:
        return {
            "side": self.side,
            "archive_path": str(self.archive_path),
            "header_dir": str(self.header_dir),
            "header_file": str(self.header_file),
            "cache_key": self.cache_key,
            "recipe": self.recipe,
            "rebuilt": self.rebuilt,
            "api_check": dict(self.api_check),
        }


def source_digest(source_dir: Path, exclude: list[Path]) -> str:
    """Content digest of every build-relevant file below ``source_dir``."""
    if not source_dir.is_dir():
        raise BuildUnavailableError(f"source directory not found: {source_dir}")
    excluded = [path.resolve() for path in exclude]
    digest = hashlib.sha256()
    for path in sorted(source_dir.rglob("*")):
        if not path.is_file():
            continue
        rel_parts = path.relative_to(source_dir).parts
        if any(part.startswith(".") for part in rel_parts):
            continue
        if path.suffix.lower() not in DIGEST_SUFFIXES and path.name not in DIGEST_NAMES:
            continue
        resolved = path.resolve()
        if any(resolved == root or root in resolved.parents for root in excluded):
            continue
        digest.update("/".join(rel_parts).encode("utf-8"))
        digest.update(b"\0")
        digest.update(file_sha256(path).encode("ascii"))
    return digest.hexdigest()


def side_revision_id(config: HarnessConfig, side: str, commit: str | None = None) -> str:
    """Identify the sources a side is built from: a commit for the reference, content for current."""
    side_cfg = config.side(side)
    if commit:
        return f"commit:{commit}"
    if side_cfg.prebuilt_archive is not None and side_cfg.prebuilt_include_dir is not None:
        if not side_cfg.prebuilt_archive.is_file():
            raise BuildUnavailableError(f"prebuilt archive not found: {side_cfg.prebuilt_archive}")
        header = side_cfg.prebuilt_include_dir / f"{config.header}.h"
        if not header.is_file():
            raise BuildUnavailableError(f"prebuilt header not found: {header}")
        return f"prebuilt:{file_sha256(side_cfg.prebuilt_archive)}:{file_sha256(header)}"
    return f"content:{source_digest(side_cfg.source_dir, exclude=[config.build_root])}"


def compute_cache_key(config: HarnessConfig, side: str, revision_id: str) -> str:
    side_cfg = config.side(side).as_dict()
    side_cfg.pop("source_dir", None)
    return stable_hash(
        {
            "tool_version": TOOL_VERSION,
            "side": side,
            "revision": revision_id,
            "libname": config.libname,
            "header": config.header,
            "build": side_cfg,
            "toolchain": config.toolchain.as_dict(),
        }
    )


def read_artifact_stamp(install_dir: Path) -> dict[str, Any] | None:
    stamp_path = install_dir / ARTIFACT_STAMP
    if not stamp_path.is_file():
        return None
    try:
        return load_json(stamp_path)
    except HarnessError:
        return None


def is_bundle_valid(config: HarnessConfig, side: str, cache_key: str) -> bool:
    """True when the installed bundle was built for ``cache_key`` and is byte-identical to what was recorded."""
    stamp = read_artifact_stamp(config.install_dir(side))
    if stamp is None or stamp.get("cache_key") != cache_key:
        return False
    archive = config.archive_path(side)
    header = config.header_file(side)
    if not archive.is_file() or not header.is_file():
        return False
    return stamp.get("archive_sha256") == file_sha256(archive) and stamp.get("header_sha256") == file_sha256(header)


def load_bundle(config: HarnessConfig, side: str) -> ArtifactBundle:
    stamp = read_artifact_stamp(config.install_dir(side))
    if stamp is None:
        raise BuildUnavailableError(f"no installed {side} bundle under '{config.install_dir(side)}'")
    return ArtifactBundle(
        side=side,
        archive_path=config.archive_path(side),
        header_dir=config.header_dir(side),
        header_file=config.header_file(side),
        cache_key=str(stamp.get("cache_key")),
        recipe=str(stamp.get("recipe")),
        rebuilt=False,
        api_check=dict(stamp.get("api_check") or {}),
    )


def detect_recipe(side_cfg: SideConfig) -> str:
    if side_cfg.recipe != "auto":
        return side_cfg.recipe
    if side_cfg.is_prebuilt:
        return "prebuilt"
    if side_cfg.build_command:
        return "command"
    if (side_cfg.source_dir / "CMakeLists.txt").is_file():
        return "cmake"
    if any((side_cfg.source_dir / name).is_file() for name in ["GNUmakefile", "makefile", "Makefile"]):
        return "make"
    return "direct"


def render_build_command(template: tuple[str, ...], replacements: dict[str, str]) -> list[str]:
    rendered: list[str] = []
    for token in template:
        current = token
        for key, value in replacements.items():
            current = current.replace(key, value)
        if current:
            rendered.append(current)
    return rendered


def _archive_objects(config: HarnessConfig, objects: list[Path], output: Path) -> None:
    missing = [str(item) for item in objects if not item.is_file()]
    if missing:
        raise BuildUnavailableError(f"expected object files were not produced: {', '.join(missing)}")
    output.parent.mkdir(parents=True, exist_ok=True)
    if output.exists():
        output.unlink()
    run_tool([config.toolchain.ar, "rcs", str(output), *[str(item) for item in objects]])


def _copy_source_tree(config: HarnessConfig, source_dir: Path, destination: Path) -> None:
    excluded = {config.build_root.resolve(), destination.resolve()}

    def ignore(directory: str, names: list[str]) -> list[str]:
        return [name for name in names if name == ".git" or (Path(directory) / name).resolve() in excluded]

    try:
        shutil.copytree(source_dir, destination, ignore=ignore, dirs_exist_ok=True)
    except OSError as exc:
        raise BuildUnavailableError(f"unable to stage sources from '{source_dir}': {exc}") from exc


def _run_command_recipe(config: HarnessConfig, side_cfg: SideConfig, build_dir: Path, stage_dir: Path) -> None:
    command = render_build_command(
        side_cfg.build_command,
        {
            "{source_dir}": str(side_cfg.source_dir),
            "{build_dir}": str(build_dir),
            "{install_dir}": str(stage_dir),
            "{jobs}": str(config.jobs),
        },
    )
    if not command:
        raise HarnessError(f"{side_cfg.name}.build_command renders to an empty command")
    run_tool(command, cwd=side_cfg.source_dir)


def _run_cmake_recipe(config: HarnessConfig, side_cfg: SideConfig, build_dir: Path, stage_dir: Path) -> None:
    cmake = shutil.which("cmake")
    if cmake is None:
        raise BuildUnavailableError("cmake not found; the source tree uses a CMake build")
    run_tool(
        [
            cmake,
            "-S",
            str(side_cfg.source_dir),
            "-B",
            str(build_dir),
            "-DCMAKE_BUILD_TYPE=Release",
            f"-DCMAKE_INSTALL_PREFIX={stage_dir}",
            "-DCMAKE_POSITION_INDEPENDENT_CODE=ON",
            *side_cfg.cmake_args,
        ]
    )
    run_tool([cmake, "--build", str(build_dir), "--parallel", str(config.jobs)])
    # Projects without install rules still leave their archive in the build tree.
    try:
        run_tool([cmake, "--install", str(build_dir)])
    except BuildUnavailableError as exc:
        print(f"[{side_cfg.name}] cmake install step skipped: {exc}")


def _run_make_recipe(config: HarnessConfig, side_cfg: SideConfig, build_dir: Path, stage_dir: Path) -> None:
    make = shutil.which("make") or shutil.which("gmake")
    if make is None:
        raise BuildUnavailableError("make not found; the source tree uses a Makefile build")
    # make writes objects next to the sources, so it runs on a copy inside the build dir.
    work_tree = build_dir / "src"
    _copy_source_tree(config, side_cfg.source_dir, work_tree)
    run_tool([make, "-C", str(work_tree), f"-j{config.jobs}", *side_cfg.make_targets])
    objects = [ensure_relative_path(work_tree, item) for item in side_cfg.objects]
    _archive_objects(config, objects, build_dir / f"{config.libname}.a")


def _run_direct_recipe(config: HarnessConfig, side_cfg: SideConfig, build_dir: Path, stage_dir: Path) -> None:
    object_dir = build_dir / "obj"
    object_dir.mkdir(parents=True, exist_ok=True)
    objects: list[Path] = []
    for source in side_cfg.sources:
        source_path = ensure_relative_path(side_cfg.source_dir, source)
        if not source_path.is_file():
            raise BuildUnavailableError(f"{side_cfg.name} source file not found: {source_path}")
        compiler = resolve_compiler(config.toolchain, language_for_source(source_path))
        output = object_dir / f"{source_path.stem}.o"
        run_tool(
            [
                compiler,
                "-c",
                *side_cfg.cflags,
                f"-I{source_path.parent}",
                f"-I{side_cfg.source_dir}",
                str(source_path),
                "-o",
                str(output),
            ]
        )
        objects.append(output)
    _archive_objects(config, objects, build_dir / f"{config.libname}.a")


RECIPE_RUNNERS = {
    "command": _run_command_recipe,
    "cmake": _run_cmake_recipe,
    "make": _run_make_recipe,
    "direct": _run_direct_recipe,
}


def _archive_names(libname: str) -> list[str]:
    names = [f"{libname}.a"]
    if not libname.startswith("lib"):
        names.append(f"lib{libname}.a")
    return names


def locate_built_archive(config: HarnessConfig, search_roots: list[Path]) -> Path:
    names = _archive_names(config.libname)
    for root in search_roots:
        for name in names:
            for candidate in (root / name, root / "lib" / name, root / "lib64" / name):
                if candidate.is_file():
                    return candidate
    for root in search_roots:
        if not root.is_dir():
            continue
        for name in names:
            matches = sorted(root.rglob(name))
            if matches:
                return matches[0]
    raise BuildUnavailableError(
        f"build finished but no archive named {' or '.join(names)} was found under "
        + ", ".join(str(root) for root in search_roots)
    )


def locate_public_header(config: HarnessConfig, side_cfg: SideConfig, stage_dir: Path) -> Path:
    name = f"{config.header}.h"
    candidates = [stage_dir / "include" / name, ensure_relative_path(side_cfg.source_dir, side_cfg.header_path)]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    if (stage_dir / "include").is_dir():
        matches = sorted((stage_dir / "include").rglob(name))
        if matches:
            return matches[0]
    raise BuildUnavailableError(f"public header '{name}' not found for {side_cfg.name} side")


def install_bundle_files(config: HarnessConfig, side: str, archive: Path, header: Path, include_tree: Path | None) -> None:
    install_dir = config.install_dir(side)
    lib_dir = install_dir / "lib"
    include_dir = config.header_dir(side)
    lib_dir.mkdir(parents=True, exist_ok=True)
    include_dir.mkdir(parents=True, exist_ok=True)
    if include_tree is not None and include_tree.is_dir():
        shutil.copytree(include_tree, include_dir, dirs_exist_ok=True)
    shutil.copy2(archive, config.archive_path(side))
    shutil.copy2(header, config.header_file(side))


def ensure_bundle(
    config: HarnessConfig,
    side: str,
    revision_id: str,
    *,
    force: bool = False,
) -> ArtifactBundle:
    """Build and install one side's bundle unless a valid one for the same cache key exists.

    Raises BuildUnavailableError on any build or API-consistency failure; callers treat that
    the same way as an unresolved reference revision.
    """
    side_cfg = config.side(side)
    cache_key = compute_cache_key(config, side, revision_id)
    if not force and is_bundle_valid(config, side, cache_key):
        return load_bundle(config, side)

    side_root = config.side_root(side)
    install_dir = config.install_dir(side)
    build_dir = side_root / "build"
    stage_dir = side_root / "stage"
    for path in (install_dir, build_dir, stage_dir):
        if path.exists():
            shutil.rmtree(path)
    build_dir.mkdir(parents=True, exist_ok=True)

    recipe = detect_recipe(side_cfg)
    if recipe == "prebuilt":
        archive = side_cfg.prebuilt_archive
        header = side_cfg.prebuilt_include_dir / f"{config.header}.h"
        install_bundle_files(config, side, archive, header, side_cfg.prebuilt_include_dir)
    else:
        if not side_cfg.source_dir.is_dir():
            raise BuildUnavailableError(f"{side} source directory not found: {side_cfg.source_dir}")
        runner = RECIPE_RUNNERS.get(recipe)
        if runner is None:
            raise HarnessError(f"Unsupported build recipe '{recipe}' for {side} side")
        start = time.perf_counter()
        runner(config, side_cfg, build_dir, stage_dir)
        archive = locate_built_archive(config, [build_dir, stage_dir])
        header = locate_public_header(config, side_cfg, stage_dir)
        install_bundle_files(config, side, archive, header, None)
        print(f"[{side}] built with recipe '{recipe}' in {time.perf_counter() - start:.1f}s")

    api_check = check_bundle_api(config.header_file(side), config.archive_path(side), config.symbol_prefixes)
    if api_check["status"] == "fail":
        shutil.rmtree(install_dir, ignore_errors=True)
        raise BuildUnavailableError(f"{side} bundle is inconsistent: {api_check['reason']}")

    write_json(
        install_dir / ARTIFACT_STAMP,
        {
            "side": side,
            "cache_key": cache_key,
            "revision": revision_id,
            "recipe": recipe,
            "archive_sha256": file_sha256(config.archive_path(side)),
            "header_sha256": file_sha256(config.header_file(side)),
            "api_check": api_check,
            "built_at_utc": utc_timestamp_now(),
        },
    )
    return ArtifactBundle(
        side=side,
        archive_path=config.archive_path(side),
        header_dir=config.header_dir(side),
        header_file=config.header_file(side),
        cache_key=cache_key,
        recipe=recipe,
        rebuilt=True,
        api_check=api_check,
    )
