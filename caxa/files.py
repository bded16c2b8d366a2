"""File selection for the packaged application tree."""

from collections.abc import Iterable
from dataclasses import dataclass
import logging
import os
import pathlib

from pathspec import GitIgnoreSpec

from caxa.errors import ValidationError


DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    # Version control.
    ".git",
    ".hg",
    ".svn",
    ".gitignore",
    ".gitattributes",
    # CI configuration.
    ".github",
    ".gitlab",
    ".gitlab-ci.yml",
    ".circleci",
    ".travis.yml",
    "azure-pipelines.yml",
    # Lockfiles.
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    # Caches and build outputs.
    "__pycache__",
    "*.pyc",
    "*.pyo",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".tox",
    "/build/",
    "/dist/",
    "*.egg-info",
    ".DS_Store",
)


@dataclass(frozen=True, slots=True)
class FileEntry:
    """A file selected for packaging.

    :ivar relpath: Path relative to the input root, always ``/``-separated.
    :ivar kind: Either ``regular`` or ``symlink``.
    :ivar symlink_target: Link target as stored on disk (kind=symlink).
    """

    relpath: str
    kind: str
    symlink_target: str | None = None

    @property
    def is_symlink(self) -> bool:
        return self.kind == "symlink"


def compile_excludes(patterns: Iterable[str]) -> GitIgnoreSpec:
    """Compile gitignore-style exclusion patterns.

    :param patterns: Pattern lines (blank lines and ``#`` comments are ignored).
    :returns: Compiled spec.
    """

    return GitIgnoreSpec.from_lines(list(patterns))


def select_files(
    root: pathlib.Path,
    *,
    exclude_patterns: Iterable[str] = DEFAULT_EXCLUDE_PATTERNS,
    exclude_relpaths: Iterable[str] = (),
    logger: logging.Logger | None = None,
) -> list[FileEntry]:
    """Resolve a directory into an ordered list of files to package.

    Directories matched by a pattern are pruned without being descended into.
    Symlinks are never followed; they are reported with their target.

    :param root: Input directory.
    :param exclude_patterns: Gitignore-style patterns relative to ``root``.
    :param exclude_relpaths: Exact relative paths (and everything below them) to skip.
    :param logger: Optional logger for debug output.
    :returns: File entries in sorted walk order.
    :raises ValidationError: If ``root`` is not a directory.
    """

    if logger is None:
        logger = logging.getLogger("caxa")

    if root.is_dir() is False:
        raise ValidationError(f"Input path is not a directory: {root}")

    spec: GitIgnoreSpec = compile_excludes(exclude_patterns)
    exclude_parts: list[tuple[str, ...]] = [
        pathlib.PurePosixPath(p).parts for p in sorted(set(exclude_relpaths))
    ]

    def is_excluded(relpath: str, *, is_dir: bool) -> bool:
        parts: tuple[str, ...] = pathlib.PurePosixPath(relpath).parts
        for ex in exclude_parts:
            if len(parts) >= len(ex) and parts[0 : len(ex)] == ex:
                return True
        if is_dir is True:
            return spec.match_file(relpath + "/")
        return spec.match_file(relpath)

    entries: list[FileEntry] = []
    skipped: int = 0

    for root_str, dirs, files in os.walk(root, topdown=True, followlinks=False):
        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: str = root_path.relative_to(root).as_posix()
        prefix: str = "" if rel_root == "." else f"{rel_root}/"

        keep_dirs: list[str] = []
        linked_dirs: list[str] = []
        for d in sorted(dirs):
            rel: str = prefix + d
            if (root_path / d).is_symlink() is True:
                linked_dirs.append(d)
                continue
            if is_excluded(rel, is_dir=True) is True:
                skipped += 1
                continue
            keep_dirs.append(d)
        dirs[:] = keep_dirs

        for name in sorted([*files, *linked_dirs]):
            rel_file: str = prefix + name
            if is_excluded(rel_file, is_dir=False) is True:
                skipped += 1
                continue
            path: pathlib.Path = root_path / name
            if path.is_symlink() is True:
                entries.append(
                    FileEntry(relpath=rel_file, kind="symlink", symlink_target=os.readlink(path))
                )
            else:
                entries.append(FileEntry(relpath=rel_file, kind="regular"))

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"caxa: selected {len(entries)} files ({skipped} paths excluded) from {root}")
    return entries
