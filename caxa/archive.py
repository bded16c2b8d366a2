"""Payload archiving.

The payload is a single gzip-compressed tar stream holding the selected
application files and, optionally, the interpreter binary. The same module
provides the extraction used by the Python bootstrap runtime.
"""

from collections.abc import Iterable
from dataclasses import dataclass
import io
import logging
import os
import pathlib
import shutil
import tarfile
import time

from caxa.errors import ArchiveWriteError, BootstrapError, BuildError
from caxa.files import FileEntry


@dataclass(frozen=True, slots=True)
class RuntimeBinary:
    """Interpreter binary to embed in the payload.

    :ivar source: Binary on the build machine.
    :ivar relpath: ``/``-separated destination inside the application root.
    """

    source: pathlib.Path
    relpath: str


def _validate_compresslevel(compresslevel: int) -> None:
    """Validate a gzip compression level.

    :param compresslevel: Compression level (0-9).
    :raises BuildError: If the level is out of range.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise BuildError(f"Invalid compresslevel={compresslevel}; expected 0-9.")


def _normalize_owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    return info


def _executable(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info = _normalize_owner(info)
    info.mode = info.mode | 0o755
    return info


def _add_member(
    tf: tarfile.TarFile,
    source: pathlib.Path,
    *,
    arcname: str,
    executable: bool = False,
) -> None:
    """Add one file or symlink without recursing.

    A second name for an already archived inode is stored as a regular file
    carrying its own content, never as a hard-link member.

    :param tf: Open archive.
    :param source: File on disk.
    :param arcname: Member name.
    :param executable: Force the executable bits.
    """

    info: tarfile.TarInfo = tf.gettarinfo(str(source), arcname=arcname)
    info = _executable(info) if executable is True else _normalize_owner(info)
    if info.islnk() is True:
        info.type = tarfile.REGTYPE
        info.linkname = ""
        info.size = os.stat(source).st_size
    if info.isreg() is True:
        with open(source, "rb") as f:
            tf.addfile(info, f)
        return
    tf.addfile(info)


def build_payload(
    entries: Iterable[FileEntry],
    root: pathlib.Path,
    *,
    runtime: RuntimeBinary | None = None,
    compresslevel: int = 6,
    logger: logging.Logger | None = None,
) -> bytes:
    """Build the compressed payload stream.

    :param entries: Files to archive, in order.
    :param root: Directory the entries are relative to.
    :param runtime: Optional interpreter binary to add after the files.
    :param compresslevel: gzip compression level.
    :param logger: Optional logger for progress output.
    :returns: ``tar.gz`` bytes.
    :raises ArchiveWriteError: If a file cannot be read.
    """

    if logger is None:
        logger = logging.getLogger("caxa")
    _validate_compresslevel(compresslevel)

    t0: float = time.perf_counter()
    count: int = 0
    buf: io.BytesIO = io.BytesIO()
    try:
        with tarfile.open(fileobj=buf, mode="w:gz", compresslevel=compresslevel) as tf:
            for entry in entries:
                _add_member(tf, root / entry.relpath, arcname=entry.relpath)
                count += 1
            if runtime is not None:
                _add_member(tf, runtime.source, arcname=runtime.relpath, executable=True)
                count += 1
    except OSError as e:
        raise ArchiveWriteError(f"Failed to archive payload: {e}") from e

    data: bytes = buf.getvalue()
    t1: float = time.perf_counter()
    logger.info(
        f"caxa: payload built ({count} members, {len(data) / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s"
    )
    return data


def extract_payload(payload: bytes, dest_dir: pathlib.Path) -> None:
    """Safely extract a payload into a destination directory.

    Regular files keep their permission bits and symlinks are recreated as
    symlinks. Hard-link members become copies of their already extracted
    target. Other member types are ignored.

    :param payload: ``tar.gz`` bytes.
    :param dest_dir: Destination directory.
    :raises BootstrapError: If the payload is corrupt or holds an unsafe path.
    """

    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tf:
            for info in tf:
                parts: tuple[str, ...] = _safe_parts(info.name)
                for i in range(1, len(parts)):
                    if dest_dir.joinpath(*parts[:i]).is_symlink() is True:
                        raise BootstrapError(f"Refusing to extract through a symlink: {info.name!r}")
                out_path: pathlib.Path = dest_dir.joinpath(*parts)
                if info.isdir() is True:
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                if info.issym() is True:
                    out_path.parent.mkdir(parents=True, exist_ok=True)
                    if out_path.is_symlink() is True or out_path.exists() is True:
                        out_path.unlink()
                    os.symlink(info.linkname, out_path)
                    continue
                if info.islnk() is True:
                    _extract_hardlink(info, dest_dir=dest_dir, out_path=out_path)
                    continue
                if info.isfile() is False:
                    continue

                out_path.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(info)
                if src is None:
                    continue
                with src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                os.chmod(out_path, info.mode & 0o777)
    except (tarfile.TarError, EOFError, OSError) as e:
        raise BootstrapError(f"Failed to extract payload: {e}") from e


def _extract_hardlink(info: tarfile.TarInfo, *, dest_dir: pathlib.Path, out_path: pathlib.Path) -> None:
    target_parts: tuple[str, ...] = _safe_parts(info.linkname)
    for i in range(1, len(target_parts) + 1):
        if dest_dir.joinpath(*target_parts[:i]).is_symlink() is True:
            raise BootstrapError(f"Refusing to link through a symlink: {info.name!r} -> {info.linkname!r}")
    target: pathlib.Path = dest_dir.joinpath(*target_parts)
    if target.is_file() is False:
        raise BootstrapError(f"Hard link target missing: {info.name!r} -> {info.linkname!r}")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(target, out_path)
    os.chmod(out_path, info.mode & 0o777)


def _safe_parts(name: str) -> tuple[str, ...]:
    """Validate an archive member name.

    :param name: Member name.
    :returns: Path components.
    :raises BootstrapError: If the name is absolute or escapes the destination.
    """

    if "\\" in name:
        raise BootstrapError(f"Refusing to extract backslash path: {name!r}")
    p = pathlib.PurePosixPath(name)
    if p.is_absolute() is True:
        raise BootstrapError(f"Refusing to extract absolute path: {name!r}")
    if ".." in p.parts:
        raise BootstrapError(f"Refusing to extract parent-traversal path: {name!r}")
    if len(p.parts) > 0 and ":" in p.parts[0]:
        raise BootstrapError(f"Refusing to extract drive-like path: {name!r}")
    return p.parts
