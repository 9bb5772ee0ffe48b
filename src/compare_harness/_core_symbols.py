from __future__ import annotations

from ._core_base import *  # noqa: F401,F403


@dataclass(frozen=True)
class HeaderApi:
    functions: tuple[str, ...]
    variables: tuple[str, ...]
    types: tuple[str, ...]
    constants: tuple[str, ...]
    macros: tuple[str, ...]
    include_guard: str | None

    @property
    def linker_symbols(self) -> tuple[str, ...]:
        return tuple(sorted(set(self.functions) | set(self.variables)))

    @property
    def identifiers(self) -> tuple[str, ...]:
        names = set(self.functions) | set(self.variables) | set(self.types) | set(self.constants) | set(self.macros)
        return tuple(sorted(names))


def parse_nm_exports(output: str) -> list[str]:
    exports: set[str] = set()
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.endswith(":"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        type_code = parts[-2]
        symbol = parts[-1]
        if len(type_code) != 1:
            continue
        # Lowercase codes are local symbols, except GNU unique "u".
        if type_code == "U":
            continue
        if not (type_code.isupper() or type_code == "u"):
            continue
        exports.add(symbol)
    return sorted(exports)


def parse_readelf_exports(output: str) -> list[str]:
    exports: set[str] = set()
    for raw_line in output.splitlines():
        parts = raw_line.split()
        if len(parts) < 8:
            continue
        number_token = parts[0]
        if not number_token.endswith(":") or not number_token[:-1].isdigit():
            continue
        bind = parts[4].upper()
        visibility = parts[5].upper()
        section = parts[6].upper()
        name = parts[7]
        if section == "UND":
            continue
        if bind not in {"GLOBAL", "WEAK", "GNU_UNIQUE", "UNIQUE"}:
            continue
        if visibility in {"HIDDEN", "INTERNAL"}:
            continue
        if name and name != "0":
            exports.add(name)
    return sorted(exports)


def build_archive_listing_specs(archive_path: Path) -> list[tuple[str, list[str], str]]:
    if sys.platform == "darwin":
        return [
            ("nm", ["nm", "-gU", str(archive_path)], "nm"),
            ("llvm-nm", ["llvm-nm", "-gU", str(archive_path)], "nm"),
        ]
    return [
        ("nm", ["nm", "-g", "--defined-only", str(archive_path)], "nm"),
        ("llvm-nm", ["llvm-nm", "-g", "--defined-only", str(archive_path)], "nm"),
        ("readelf", ["readelf", "-Ws", str(archive_path)], "readelf"),
    ]


def canonicalize_symbol(symbol: str) -> str:
    # Mach-O prefixes C symbols with an underscore.
    if sys.platform == "darwin" and symbol.startswith("_"):
        return symbol[1:]
    return symbol


def list_archive_exports(archive_path: Path) -> dict[str, Any]:
    """List the globally defined symbols of a static archive.

    Returns ``available=False`` when no listing tool is installed, so callers can degrade
    to file-presence checks instead of failing.
    """
    if not archive_path.is_file():
        raise HarnessError(f"archive not found: {archive_path}")

    tool_errors: list[str] = []
    for tool_name, command, parse_format in build_archive_listing_specs(archive_path):
        if shutil.which(command[0]) is None:
            continue
        try:
            proc = subprocess.run(command, check=True, capture_output=True, text=True)
        except OSError as exc:
            tool_errors.append(f"{format_command(command)}: {exc}")
            continue
        except subprocess.CalledProcessError as exc:
            message = exc.stderr.strip() or exc.stdout.strip() or "unknown command failure"
            tool_errors.append(f"{format_command(command)}: {message}")
            continue
        if parse_format == "readelf":
            parsed = parse_readelf_exports(proc.stdout)
        else:
            parsed = parse_nm_exports(proc.stdout)
        # First successful tool wins; parsers disagree on edge cases.
        return {
            "available": True,
            "tool": tool_name,
            "symbols": sorted({canonicalize_symbol(item) for item in parsed}),
            "raw_symbols": sorted(set(parsed)),
            "errors": tool_errors,
        }

    return {"available": False, "tool": None, "symbols": [], "raw_symbols": [], "errors": tool_errors}


def _matches_prefix(name: str, prefixes: tuple[str, ...]) -> bool:
    if not prefixes:
        return True
    return any(name.startswith(prefix) for prefix in prefixes)


def _strip_preprocessor_lines(content: str) -> str:
    lines = [line for line in content.splitlines() if not line.lstrip().startswith("#")]
    return "\n".join(lines)


def _strip_extern_c_blocks(content: str) -> str:
    text = re.sub(r'extern\s+"C"\s*\{', " ", content)
    return text


def _remove_brace_bodies(content: str) -> str:
    out: list[str] = []
    depth = 0
    for ch in content:
        if ch == "{":
            depth += 1
            continue
        if ch == "}":
            depth = max(0, depth - 1)
            continue
        if depth == 0:
            out.append(ch)
    return "".join(out)


def parse_header_api(content: str, symbol_prefixes: tuple[str, ...]) -> HeaderApi:
    """Extract the public identifiers a C header declares.

    Functions and ``extern`` variables become linker symbols; struct names and enum
    constants are only lexical identifiers but still collide when two copies of the
    header share one translation unit.
    """
    guard_match = re.search(r"^\s*#\s*ifndef\s+([A-Za-z_]\w*)\s*\n\s*#\s*define\s+\1\b", content, flags=re.M)
    include_guard = guard_match.group(1) if guard_match else None
    macros = {
        match.group(1)
        for match in re.finditer(r"^\s*#\s*define\s+([A-Za-z_]\w*)", content, flags=re.M)
        if match.group(1) != include_guard
    }

    text = strip_c_comments(content)
    text = _strip_extern_c_blocks(_strip_preprocessor_lines(text))

    types: set[str] = set()
    for match in re.finditer(r"\b(?:struct|union|enum)\s+([A-Za-z_]\w*)\s*\{", text):
        types.add(match.group(1))
    for match in re.finditer(r"\btypedef\b[^;{]*?(?:\{[^}]*\})?\s*\**\s*([A-Za-z_]\w*)\s*;", text, flags=re.S):
        types.add(match.group(1))

    constants: set[str] = set()
    for match in re.finditer(r"\benum\b[^{;]*\{([^}]*)\}", text, flags=re.S):
        for entry in match.group(1).split(","):
            name = entry.split("=", 1)[0].strip()
            if re.match(r"^[A-Za-z_]\w*$", name):
                constants.add(name)

    top_level = _remove_brace_bodies(text)
    functions: set[str] = set()
    variables: set[str] = set()
    for statement in top_level.split(";"):
        decl = normalize_ws(statement)
        if not decl or decl.startswith("typedef"):
            continue
        func_match = re.search(r"([A-Za-z_]\w*)\s*\((?:[^()]|\([^()]*\))*\)\s*$", decl)
        if func_match:
            functions.add(func_match.group(1))
            continue
        if decl.startswith("extern "):
            var_match = re.search(r"([A-Za-z_]\w*)\s*(?:\[[^\]]*\])?\s*$", decl)
            if var_match:
                variables.add(var_match.group(1))

    return HeaderApi(
        functions=tuple(sorted(name for name in functions if _matches_prefix(name, symbol_prefixes))),
        variables=tuple(sorted(name for name in variables if _matches_prefix(name, symbol_prefixes))),
        types=tuple(sorted(name for name in types if _matches_prefix(name, symbol_prefixes))),
        constants=tuple(sorted(constants)),
        macros=tuple(sorted(macros)),
        include_guard=include_guard,
    )


def check_bundle_api(header_path: Path, archive_path: Path, symbol_prefixes: tuple[str, ...]) -> dict[str, Any]:
    """Check that the archive defines every linker symbol its header declares."""
    if not header_path.is_file():
        return {"status": "fail", "missing_symbols": [], "reason": f"header not found: {header_path}"}
    if not archive_path.is_file():
        return {"status": "fail", "missing_symbols": [], "reason": f"archive not found: {archive_path}"}

    api = parse_header_api(header_path.read_text(encoding="utf-8", errors="replace"), symbol_prefixes)
    listing = list_archive_exports(archive_path)
    if not listing["available"]:
        return {
            "status": "unchecked",
            "missing_symbols": [],
            "reason": "no symbol listing tool available (nm, llvm-nm, readelf)",
        }
    exported = set(listing["symbols"])
    missing = sorted(name for name in api.linker_symbols if name not in exported)
    if missing:
        return {
            "status": "fail",
            "missing_symbols": missing,
            "reason": f"archive does not define {len(missing)} header symbol(s): {', '.join(missing[:10])}",
        }
    return {"status": "pass", "missing_symbols": [], "reason": f"{len(api.linker_symbols)} header symbols defined"}


def assert_side_isolation(command: list[str], own_roots: list[Path], foreign_roots: list[Path]) -> None:
    """Refuse a compiler invocation that can see the other side's include or lib root."""
    resolved_own = [root.resolve() for root in own_roots]
    resolved_foreign = [root.resolve() for root in foreign_roots]
    for token in command:
        raw = token[2:] if token.startswith(("-I", "-L")) and len(token) > 2 else token
        candidate = Path(raw)
        if not candidate.is_absolute():
            continue
        resolved = candidate.resolve()
        for foreign in resolved_foreign:
            if any(resolved == own or own in resolved.parents for own in resolved_own):
                continue
            if resolved == foreign or foreign in resolved.parents:
                raise HarnessError(
                    f"side isolation violated: '{token}' points into foreign artifact root '{foreign}'"
                )


def rename_identifiers(content: str, identifiers: list[str], suffix: str) -> str:
    """Lexically append ``suffix`` to every whole-word occurrence of the given identifiers."""
    if not identifiers:
        return content
    ordered = sorted(set(identifiers), key=len, reverse=True)
    pattern = re.compile(r"\b(" + "|".join(re.escape(item) for item in ordered) + r")\b")
    return pattern.sub(lambda match: f"{match.group(1)}{suffix}", content)


def render_renamed_header(content: str, api: HeaderApi, suffix: str) -> str:
    identifiers = list(api.identifiers)
    if api.include_guard:
        identifiers.append(api.include_guard)
    renamed = rename_identifiers(content, identifiers, suffix)
    banner = (
        "/* Generated by compare_harness: public identifiers renamed with suffix "
        f"'{suffix}' so this header can share a translation unit with the original. */\n"
    )
    return banner + renamed


def render_redefine_syms_map(defined_symbols: list[str], suffix: str) -> str:
    """One ``old new`` line per globally defined archive symbol.

    Internal C++ classes and template instantiations are renamed along with the public C
    API, otherwise two archives built from the same sources still define the same names.
    """
    lines = [f"{name} {name}{suffix}" for name in sorted(set(defined_symbols))]
    return "\n".join(lines) + ("\n" if lines else "")


def write_renamed_bundle(
    *,
    header_path: Path,
    archive_path: Path,
    output_dir: Path,
    suffix: str,
    symbol_prefixes: tuple[str, ...],
    objcopy: str = "objcopy",
) -> dict[str, Any]:
    """Write a suffixed copy of one side's bundle for in-process dual linking."""
    if not re.match(r"^_?[A-Za-z0-9_]+$", suffix):
        raise HarnessError(f"rename suffix must be an identifier fragment, got {suffix!r}")
    content = header_path.read_text(encoding="utf-8")
    api = parse_header_api(content, symbol_prefixes)
    if not api.linker_symbols:
        raise HarnessError(f"no public symbols matching {list(symbol_prefixes)} found in '{header_path}'")

    listing = list_archive_exports(archive_path)
    if not listing["available"]:
        raise BuildUnavailableError("symbol renaming needs nm, llvm-nm or readelf on PATH")
    defined = list(listing.get("raw_symbols") or listing["symbols"])
    exported = set(listing["symbols"])

    include_dir = output_dir / "include"
    lib_dir = output_dir / "lib"
    include_dir.mkdir(parents=True, exist_ok=True)
    lib_dir.mkdir(parents=True, exist_ok=True)

    renamed_header = include_dir / f"{header_path.stem}{suffix}.h"
    renamed_header.write_text(render_renamed_header(content, api, suffix), encoding="utf-8")

    syms_map = output_dir / "redefine-syms.txt"
    syms_map.write_text(render_redefine_syms_map(defined, suffix), encoding="utf-8")

    renamed_archive = lib_dir / f"{archive_path.stem}{suffix}{archive_path.suffix}"
    run_tool([objcopy, f"--redefine-syms={syms_map}", str(archive_path), str(renamed_archive)])

    return {
        "header": str(renamed_header),
        "archive": str(renamed_archive),
        "symbol_map": str(syms_map),
        "public_symbols": [f"{name}{suffix}" for name in api.linker_symbols if name in exported],
        "renamed_symbols": [f"{name}{suffix}" for name in sorted(set(defined))],
        "renamed_identifiers": len(api.identifiers),
    }
