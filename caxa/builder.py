"""Artifact builder.

This module turns an application directory into one of three artifacts,
picked from the output file name:

- ``*.app``: a macOS application bundle (directory tree, no payload).
- ``*.sh``: a POSIX shell launcher followed by the payload and metadata.
- anything else: a pre-built native stub followed by the payload and metadata.

A ``binary-metadata.json`` SBOM is written next to the artifact.
"""

from dataclasses import dataclass
import enum
import logging
import os
import pathlib
import secrets
import shutil
import string
import sys
import time

from caxa.archive import RuntimeBinary, build_payload
from caxa.compressor import Compressor, UpxCompressor
from caxa.errors import ArchiveWriteError, BuildError, ValidationError
from caxa.files import DEFAULT_EXCLUDE_PATTERNS, FileEntry, select_files
from caxa.launcher import (
    ARCHIVE_SEPARATOR,
    ArtifactMetadata,
    footer_bytes,
    render_bundle_scripts,
    render_shell_launcher,
)
from caxa.sbom import DEFAULT_METADATA_FILENAME, SBOMDocument, build_sbom
from caxa.target import TargetConfig, TargetResolutionError, host_target_config, stub_filename


STUBS_DIR: pathlib.Path = pathlib.Path(__file__).resolve().parent / "stubs"

_IDENTIFIER_ALPHABET: str = string.ascii_lowercase + string.digits
_LAUNCHER_SUFFIXES: tuple[str, ...] = (".exe", ".app", ".sh")


class ArtifactShape(enum.Enum):
    """Kind of artifact produced by a build."""

    NATIVE = "native"
    SHELL = "shell"
    BUNDLE = "bundle"


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """Everything needed to build one artifact.

    :ivar input_dir: Application directory.
    :ivar output_path: Artifact path; its suffix selects the shape.
    :ivar command: Command tokens; ``{{caxa}}`` is replaced by the application root.
    :ivar target: Platform/architecture the artifact is built for.
    :ivar include_runtime: Embed the interpreter binary.
    :ivar exclude_patterns: Gitignore-style patterns of files to leave out.
    :ivar identifier: Extraction identifier (derived from the output name when ``None``).
    :ivar uncompression_message: Message printed while the payload is extracted.
    :ivar compress: Run the external compressor on the native stub.
    :ivar compressor_args: Extra compressor arguments.
    :ivar force: Overwrite an existing output.
    :ivar stub_path: Stub override (defaults to the bundled stub for ``target``).
    :ivar runtime_path: Interpreter binary override (defaults to ``sys.executable``).
    :ivar metadata_filename: File name of the SBOM written next to the output.
    :ivar compresslevel: gzip level for the payload.
    """

    input_dir: pathlib.Path
    output_path: pathlib.Path
    command: tuple[str, ...]
    target: TargetConfig
    include_runtime: bool = True
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    identifier: str | None = None
    uncompression_message: str | None = None
    compress: bool = False
    compressor_args: tuple[str, ...] = ()
    force: bool = True
    stub_path: pathlib.Path | None = None
    runtime_path: pathlib.Path | None = None
    metadata_filename: str = DEFAULT_METADATA_FILENAME
    compresslevel: int = 6


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Outputs of a successful build.

    :ivar shape: Artifact shape.
    :ivar output_path: Artifact path.
    :ivar metadata_path: SBOM path.
    :ivar identifier: Extraction identifier baked into the artifact.
    """

    shape: ArtifactShape
    output_path: pathlib.Path
    metadata_path: pathlib.Path
    identifier: str


def shape_for_output(output_path: pathlib.Path) -> ArtifactShape:
    """Pick the artifact shape from the output suffix.

    :param output_path: Output path.
    :returns: ``BUNDLE`` for ``.app``, ``SHELL`` for ``.sh``, else ``NATIVE``.
    """

    suffix: str = output_path.suffix
    if suffix == ".app":
        return ArtifactShape.BUNDLE
    if suffix == ".sh":
        return ArtifactShape.SHELL
    return ArtifactShape.NATIVE


def artifact_name(output_path: pathlib.Path) -> str:
    """Return the output file name without a launcher suffix."""

    name: str = output_path.name
    for suffix in _LAUNCHER_SUFFIXES:
        if name.endswith(suffix) is True and len(name) > len(suffix):
            return name[: -len(suffix)]
    return name


def generate_identifier(output_path: pathlib.Path) -> str:
    """Derive a build-unique identifier such as ``myapp/k3j9x0q2vd``.

    :param output_path: Output path.
    :returns: Identifier.
    """

    suffix: str = "".join(secrets.choice(_IDENTIFIER_ALPHABET) for _ in range(10))
    return f"{artifact_name(output_path)}/{suffix}"


def runtime_relpath(target: TargetConfig) -> str:
    """Return where the interpreter binary lives inside the application root."""

    if target.is_windows is True:
        return "bin/python.exe"
    return "bin/python"


def build_artifact(
    request: BuildRequest,
    *,
    compressor: Compressor | None = None,
    logger: logging.Logger | None = None,
) -> BuildResult:
    """Build an artifact and its SBOM.

    A failure at any step aborts the build. Output written before the failure
    is left in place.

    :param request: Build request.
    :param compressor: Compressor used when ``request.compress`` is set
        (defaults to :class:`~caxa.compressor.UpxCompressor`).
    :param logger: Optional logger for realtime build progress output.
    :returns: Build result.
    :raises BuildError: If the build fails.
    """

    if logger is None:
        logger = logging.getLogger("caxa")

    t_total0: float = time.perf_counter()
    shape: ArtifactShape = _validate_request(request)
    stub: pathlib.Path | None = None
    if shape is ArtifactShape.NATIVE:
        stub = _resolve_stub(request)
    runtime: RuntimeBinary | None = None
    if request.include_runtime is True:
        runtime = _resolve_runtime(request, logger=logger)

    identifier: str = request.identifier if request.identifier is not None else generate_identifier(request.output_path)
    _validate_identifier(identifier)

    output_path: pathlib.Path = request.output_path
    metadata_path: pathlib.Path = output_path.parent / request.metadata_filename

    logger.info(f"caxa: input={request.input_dir}")
    logger.info(f"caxa: output={output_path} ({shape.value})")
    logger.info(f"caxa: target={request.target.os_name}-{request.target.arch} identifier={identifier}")

    _remove_existing(output_path, logger=logger)

    entries: list[FileEntry] = select_files(
        request.input_dir,
        exclude_patterns=request.exclude_patterns,
        exclude_relpaths=_compute_stage_excludes(
            input_dir=request.input_dir,
            output_path=output_path,
            metadata_path=metadata_path,
        ),
        logger=logger,
    )
    logger.info(f"caxa: selected {len(entries)} files")

    sbom: SBOMDocument = build_sbom(
        entries,
        request.input_dir,
        include_runtime=runtime is not None,
        parent_name=artifact_name(output_path),
        runtime_relpath=runtime.relpath if runtime is not None else None,
        logger=logger,
    )

    metadata: ArtifactMetadata = ArtifactMetadata(
        identifier=identifier,
        command=request.command,
        uncompression_message=request.uncompression_message,
    )

    t_write0: float = time.perf_counter()
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if shape is ArtifactShape.BUNDLE:
            if request.compress is True:
                logger.warning("caxa: compression only applies to native artifacts; skipping")
            _write_bundle(request=request, entries=entries, runtime=runtime)
        else:
            payload: bytes = build_payload(
                entries,
                request.input_dir,
                runtime=runtime,
                compresslevel=request.compresslevel,
                logger=logger,
            )
            if shape is ArtifactShape.SHELL:
                if request.compress is True:
                    logger.warning("caxa: compression only applies to native artifacts; skipping")
                _write_shell(output_path=output_path, metadata=metadata, payload=payload)
            else:
                if stub is None:
                    raise BuildError("Internal error: native build without a stub.")
                _write_native(
                    output_path=output_path,
                    stub=stub,
                    metadata=metadata,
                    payload=payload,
                    request=request,
                    compressor=compressor if compressor is not None else UpxCompressor(logger=logger),
                    logger=logger,
                )
        sbom.write(metadata_path)
    except OSError as e:
        raise ArchiveWriteError(f"Failed to write {output_path}: {e}") from e
    t_write1: float = time.perf_counter()
    logger.info(f"caxa: wrote {output_path} in {t_write1 - t_write0:.2f}s")
    logger.info(f"caxa: wrote {metadata_path}")

    t_total1: float = time.perf_counter()
    logger.info(f"caxa: done in {t_total1 - t_total0:.2f}s")
    return BuildResult(
        shape=shape,
        output_path=output_path,
        metadata_path=metadata_path,
        identifier=identifier,
    )


def _validate_request(request: BuildRequest) -> ArtifactShape:
    """Check preconditions that must hold before anything is written.

    :param request: Build request.
    :returns: Artifact shape.
    :raises ValidationError: If the request is invalid.
    """

    if request.input_dir.exists() is False:
        raise ValidationError(f"Input path does not exist: {request.input_dir}")
    if request.input_dir.is_dir() is False:
        raise ValidationError(f"Input path is not a directory: {request.input_dir}")

    output_path: pathlib.Path = request.output_path
    input_resolved: pathlib.Path = request.input_dir.resolve()
    output_resolved: pathlib.Path = output_path.resolve()
    if output_resolved == input_resolved or output_resolved in input_resolved.parents:
        raise ValidationError(
            f"Output path must not be the input directory or contain it: {output_path}"
        )
    if request.force is False and (output_path.exists() is True or output_path.is_symlink() is True):
        raise ValidationError(f"Output already exists: {output_path}")

    if len(request.command) == 0:
        raise ValidationError("A command is required.")

    shape: ArtifactShape = shape_for_output(output_path)
    target: TargetConfig = request.target
    if target.is_windows is True and output_path.name.endswith(".exe") is False:
        raise ValidationError(f"Windows executables must end in '.exe': {output_path.name}")
    if shape is ArtifactShape.BUNDLE and target.is_macos is False:
        raise ValidationError("macOS application bundles (.app) can only be built for darwin targets.")
    if shape is ArtifactShape.SHELL and target.is_windows is True:
        raise ValidationError("Shell launchers (.sh) are not supported on Windows targets.")
    return shape


def _validate_identifier(identifier: str) -> None:
    p = pathlib.PurePosixPath(identifier)
    if len(identifier) == 0 or p.is_absolute() is True or ".." in p.parts or "\\" in identifier:
        raise ValidationError(f"Identifier must be a relative path without '..': {identifier!r}")


def _resolve_stub(request: BuildRequest) -> pathlib.Path:
    stub: pathlib.Path
    if request.stub_path is not None:
        stub = request.stub_path
    else:
        stub = STUBS_DIR / stub_filename(request.target)
    if stub.is_file() is False:
        raise ValidationError(
            f"No stub available for {request.target.os_name}-{request.target.arch}: {stub} "
            "(pass --stub or build a .sh/.app artifact)"
        )
    return stub


def _resolve_runtime(request: BuildRequest, *, logger: logging.Logger) -> RuntimeBinary:
    source: pathlib.Path
    if request.runtime_path is not None:
        source = request.runtime_path
    else:
        source = pathlib.Path(sys.executable).resolve()
    if source.is_file() is False:
        raise ValidationError(f"Interpreter binary not found: {source}")

    host_label: str = "host"
    try:
        host: TargetConfig | None = host_target_config()
        host_label = f"{host.os_name}-{host.arch}"
    except TargetResolutionError:
        host = None
    if request.runtime_path is None and host != request.target:
        logger.warning(
            f"caxa: embedding the {host_label} interpreter in a "
            f"{request.target.os_name}-{request.target.arch} artifact; pass --runtime to override"
        )
    return RuntimeBinary(source=source, relpath=runtime_relpath(request.target))


def _compute_stage_excludes(
    *,
    input_dir: pathlib.Path,
    output_path: pathlib.Path,
    metadata_path: pathlib.Path,
) -> set[str]:
    """Compute relative paths to exclude so outputs are never packaged.

    :param input_dir: Input directory.
    :param output_path: Output artifact path.
    :param metadata_path: SBOM path.
    :returns: Set of relative paths (POSIX-style) to exclude.
    """

    root_resolved: pathlib.Path = input_dir.resolve()
    excludes: set[str] = set()
    for p in (output_path, metadata_path):
        resolved: pathlib.Path = p.resolve()
        if resolved.is_relative_to(root_resolved) is True and resolved != root_resolved:
            excludes.add(resolved.relative_to(root_resolved).as_posix())
    return excludes


def _remove_existing(output_path: pathlib.Path, *, logger: logging.Logger) -> None:
    try:
        if output_path.is_dir() is True and output_path.is_symlink() is False:
            logger.info(f"caxa: removing existing {output_path}")
            shutil.rmtree(output_path)
        elif output_path.exists() is True or output_path.is_symlink() is True:
            logger.info(f"caxa: removing existing {output_path}")
            output_path.unlink()
    except OSError as e:
        raise ArchiveWriteError(f"Failed to remove existing output {output_path}: {e}") from e


def _make_executable(path: pathlib.Path) -> None:
    path.chmod(path.stat().st_mode | 0o755)


def _write_native(
    *,
    output_path: pathlib.Path,
    stub: pathlib.Path,
    metadata: ArtifactMetadata,
    payload: bytes,
    request: BuildRequest,
    compressor: Compressor,
    logger: logging.Logger,
) -> None:
    """Write ``stub + separator + payload + footer``.

    The compressor runs on the bare stub, before anything is appended.
    """

    shutil.copyfile(stub, output_path)
    _make_executable(output_path)
    if request.compress is True:
        t0: float = time.perf_counter()
        compressor.compress(output_path, request.compressor_args)
        t1: float = time.perf_counter()
        logger.info(f"caxa: compressed stub in {t1 - t0:.2f}s")

    with open(output_path, "ab") as f:
        f.write(ARCHIVE_SEPARATOR)
        f.write(payload)
        f.write(footer_bytes(metadata))


def _write_shell(*, output_path: pathlib.Path, metadata: ArtifactMetadata, payload: bytes) -> None:
    script: str = render_shell_launcher(metadata, payload_size=len(payload))
    with open(output_path, "wb") as f:
        f.write(script.encode("utf-8"))
        f.write(ARCHIVE_SEPARATOR)
        f.write(payload)
        f.write(footer_bytes(metadata))
    _make_executable(output_path)


def _write_bundle(
    *,
    request: BuildRequest,
    entries: list[FileEntry],
    runtime: RuntimeBinary | None,
) -> None:
    """Write the ``Contents/`` tree of a macOS application bundle."""

    name: str = artifact_name(request.output_path)
    contents: pathlib.Path = request.output_path / "Contents"
    macos_dir: pathlib.Path = contents / "MacOS"
    resources_dir: pathlib.Path = contents / "Resources"
    app_dir: pathlib.Path = resources_dir / "application"
    macos_dir.mkdir(parents=True, exist_ok=True)
    app_dir.mkdir(parents=True, exist_ok=True)

    trampoline, launcher = render_bundle_scripts(name, request.command)
    for path, text in ((macos_dir / name, trampoline), (resources_dir / name, launcher)):
        path.write_text(text, encoding="utf-8")
        _make_executable(path)

    for entry in entries:
        dst: pathlib.Path = app_dir.joinpath(*entry.relpath.split("/"))
        dst.parent.mkdir(parents=True, exist_ok=True)
        if entry.is_symlink is True and entry.symlink_target is not None:
            os.symlink(entry.symlink_target, dst)
            continue
        shutil.copy2(request.input_dir / entry.relpath, dst)

    if runtime is not None:
        dst_runtime: pathlib.Path = app_dir.joinpath(*runtime.relpath.split("/"))
        dst_runtime.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(runtime.source, dst_runtime)
        _make_executable(dst_runtime)
