from __future__ import annotations

import io
import tarfile

from ._core_base import *  # noqa: F401,F403

REVISION_STAMP = ".compare_revision.json"


@dataclass(frozen=True)
class RevisionHandle:
    name: str
    commit: str

    def as_dict(self) -> dict[str, str]:
        return {"name": self.name, "commit": self.commit}


@dataclass(frozen=True)
class IsolatedSourceTree:
    revision: RevisionHandle
    root: Path
    reused: bool
    file_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision.as_dict(),
            "root": str(self.root),
            "reused": self.reused,
            "file_count": self.file_count,
        }


def find_git() -> str:
    git = shutil.which("git")
    if git is None:
        raise RevisionUnavailableError("git executable not found; reference revision cannot be resolved")
    return git


def resolve_revision(repo_root: Path, name: str) -> RevisionHandle:
    """Pin a branch/tag name to the commit it currently points at."""
    git = find_git()
    command = [git, "rev-parse", "--verify", "--quiet", f"{name}^{{commit}}"]
    try:
        proc = subprocess.run(command, cwd=repo_root, capture_output=True, text=True)
    except OSError as exc:
        raise RevisionUnavailableError(f"unable to run git in '{repo_root}': {exc}") from exc
    commit = proc.stdout.strip()
    if proc.returncode != 0 or not commit:
        raise RevisionUnavailableError(f"revision '{name}' not found in repository '{repo_root}'")
    return RevisionHandle(name=name, commit=commit)


def read_revision_stamp(tree_root: Path) -> dict[str, Any] | None:
    stamp_path = tree_root / REVISION_STAMP
    if not stamp_path.is_file():
        return None
    try:
        return load_json(stamp_path)
    except HarnessError:
        return None


def is_tree_valid(tree_root: Path, revision: RevisionHandle, sentinel: str) -> bool:
    stamp = read_revision_stamp(tree_root)
    if stamp is None or stamp.get("commit") != revision.commit:
        return False
    return (tree_root / sentinel).is_file()


def _guard_sandbox(tree_root: Path, repo_root: Path) -> None:
    resolved_tree = tree_root.resolve()
    resolved_repo = repo_root.resolve()
    if resolved_tree == resolved_repo or resolved_tree in resolved_repo.parents:
        raise HarnessError(
            f"reference source dir '{tree_root}' would overwrite the working tree at '{repo_root}'"
        )


def _safe_members(archive: tarfile.TarFile) -> list[tarfile.TarInfo]:
    members: list[tarfile.TarInfo] = []
    for member in archive.getmembers():
        name = member.name
        if name.startswith("/") or ".." in Path(name).parts:
            raise RevisionUnavailableError(f"refusing to extract unsafe archive member '{name}'")
        if member.issym() or member.islnk():
            continue
        members.append(member)
    return members


def _count_files(root: Path) -> int:
    return sum(1 for path in root.rglob("*") if path.is_file() and path.name != REVISION_STAMP)


def extract_reference_tree(config: HarnessConfig, revision: RevisionHandle | None = None) -> IsolatedSourceTree:
    """Materialize the reference revision into its sandbox directory.

    A tree stamped with the same commit and still holding the public header is reused as-is.
    Anything else at that path is removed and re-extracted with ``git archive``; the working
    tree is never touched.
    """
    handle = revision or resolve_revision(config.repo_root, config.revision)
    tree_root = config.reference.source_dir
    sentinel = config.reference.header_path
    _guard_sandbox(tree_root, config.repo_root)

    if is_tree_valid(tree_root, handle, sentinel):
        return IsolatedSourceTree(revision=handle, root=tree_root, reused=True, file_count=_count_files(tree_root))

    if tree_root.exists():
        shutil.rmtree(tree_root)
    tree_root.mkdir(parents=True, exist_ok=True)

    git = find_git()
    command = [git, "archive", "--format=tar", handle.commit]
    try:
        proc = subprocess.run(command, cwd=config.repo_root, capture_output=True)
    except OSError as exc:
        raise RevisionUnavailableError(f"unable to run git: {exc}") from exc
    if proc.returncode != 0:
        message = tail_text(proc.stderr.decode("utf-8", errors="replace")) or "unknown git error"
        raise RevisionUnavailableError(f"git archive failed for '{handle.name}': {message}")

    with tarfile.open(fileobj=io.BytesIO(proc.stdout), mode="r:") as archive:
        members = _safe_members(archive)
        if hasattr(tarfile, "data_filter"):
            archive.extractall(tree_root, members=members, filter="data")
        else:
            archive.extractall(tree_root, members=members)

    if not (tree_root / sentinel).is_file():
        shutil.rmtree(tree_root, ignore_errors=True)
        raise RevisionUnavailableError(
            f"revision '{handle.name}' ({handle.commit[:12]}) does not contain '{sentinel}'"
        )

    write_json(
        tree_root / REVISION_STAMP,
        {
            "name": handle.name,
            "commit": handle.commit,
            "extracted_at_utc": utc_timestamp_now(),
        },
    )
    return IsolatedSourceTree(revision=handle, root=tree_root, reused=False, file_count=_count_files(tree_root))
