"""Runtime bootstrap protocol.

Every launch of an artifact goes through the same steps:

1. Derive the application slot and the lock slot from the temporary root and
   the build identifier.
2. If the application slot exists and no lock is held, extraction is complete.
3. Otherwise try to create the lock directory. Directory creation fails when
   the directory exists, which makes it the mutual-exclusion primitive.
   Losers wait for the lock to disappear and start over.
4. The lock holder extracts the payload into the application slot and removes
   the lock. Removing the lock is the commit point.
5. The command runs with the ``{{caxa}}`` placeholder replaced by the
   application slot.

This is the same protocol the shell launcher and the native stubs implement.
The temporary root, lock primitive and sleep function are passed in
explicitly so the protocol can be exercised without touching the real
temporary directory.
"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from typing import TextIO

from caxa.archive import extract_payload
from caxa.errors import BootstrapError
from caxa.launcher import ArtifactMetadata, parse_artifact, substitute_placeholder


TEMP_DIR_ENV: str = "CAXA_TEMP_DIR"
PROGRESS_INTERVAL: float = 2.0


@dataclass(frozen=True, slots=True)
class ApplicationSlot:
    """Per-identifier locations under the temporary root.

    :ivar application_dir: Where the payload is extracted.
    :ivar lock_dir: Lock held while extracting.
    """

    application_dir: pathlib.Path
    lock_dir: pathlib.Path

    def is_ready(self) -> bool:
        return self.application_dir.is_dir() is True and self.lock_dir.exists() is False


def default_temp_root(environ: Mapping[str, str] | None = None) -> pathlib.Path:
    """Return the temporary root shared by all caxa artifacts.

    :param environ: Environment to read ``CAXA_TEMP_DIR`` from (defaults to ``os.environ``).
    :returns: Temporary root directory.
    """

    if environ is None:
        environ = os.environ
    override: str | None = environ.get(TEMP_DIR_ENV)
    if override is not None and len(override) > 0:
        return pathlib.Path(override)
    return pathlib.Path(tempfile.gettempdir()) / "caxa"


def application_slot(temp_root: pathlib.Path, identifier: str) -> ApplicationSlot:
    return ApplicationSlot(
        application_dir=temp_root / "applications" / identifier,
        lock_dir=temp_root / "locks" / identifier,
    )


def try_mkdir_lock(lock_dir: pathlib.Path) -> bool:
    """Try to take the extraction lock.

    :param lock_dir: Lock directory.
    :returns: ``True`` if this call created the lock.
    """

    lock_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        lock_dir.mkdir()
    except FileExistsError:
        return False
    return True


def prepare_application(
    metadata: ArtifactMetadata,
    payload: bytes,
    *,
    temp_root: pathlib.Path,
    acquire_lock: Callable[[pathlib.Path], bool] = try_mkdir_lock,
    extract: Callable[[bytes, pathlib.Path], None] = extract_payload,
    sleep: Callable[[float], None] = time.sleep,
    poll_interval: float = 0.05,
    max_poll_interval: float = 1.0,
    progress_interval: float = PROGRESS_INTERVAL,
    stderr: TextIO | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Make sure the payload is extracted, extracting it at most once.

    Waiting has no timeout: a lock left behind by a crashed process blocks
    later launches until it is removed by hand.

    :param metadata: Artifact metadata (identifier and message are used).
    :param payload: ``tar.gz`` payload bytes.
    :param temp_root: Temporary root holding applications and locks.
    :param acquire_lock: Lock primitive; returns ``True`` when the lock was taken.
    :param extract: Payload extraction function.
    :param sleep: Sleep function used while waiting for another extraction.
    :param poll_interval: First wait interval in seconds.
    :param max_poll_interval: Upper bound for the exponential backoff.
    :param progress_interval: Seconds between progress dots after the uncompression message.
    :param stderr: Stream for the uncompression message (defaults to ``sys.stderr``).
    :param logger: Optional logger.
    :returns: Absolute application root.
    :raises BootstrapError: If extraction fails.
    """

    if logger is None:
        logger = logging.getLogger("caxa")
    if stderr is None:
        stderr = sys.stderr

    slot: ApplicationSlot = application_slot(temp_root.absolute(), metadata.identifier)

    while True:
        if slot.is_ready() is True:
            return slot.application_dir

        if acquire_lock(slot.lock_dir) is True:
            if slot.application_dir.is_dir() is False:
                _extract_holding_lock(
                    slot=slot,
                    payload=payload,
                    extract=extract,
                    message=metadata.uncompression_message,
                    progress_interval=progress_interval,
                    stderr=stderr,
                    logger=logger,
                )
            _release_lock(slot.lock_dir)
            return slot.application_dir

        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"caxa: waiting for extraction lock {slot.lock_dir}")
        delay: float = poll_interval
        while slot.lock_dir.exists() is True:
            sleep(delay)
            delay = min(delay * 2, max_poll_interval)


def _extract_holding_lock(
    *,
    slot: ApplicationSlot,
    payload: bytes,
    extract: Callable[[bytes, pathlib.Path], None],
    message: str | None,
    progress_interval: float,
    stderr: TextIO,
    logger: logging.Logger,
) -> None:
    """Extract the payload while holding the lock.

    The uncompression message is followed by a dot every ``progress_interval``
    seconds and terminated by a newline once extraction ends.
    """

    done: threading.Event = threading.Event()
    ticker: threading.Thread | None = None
    if message is not None:
        stderr.write(message)
        stderr.flush()
        ticker = threading.Thread(
            target=_print_progress,
            args=(stderr, done, progress_interval),
            daemon=True,
        )
        ticker.start()

    t0: float = time.perf_counter()
    try:
        slot.application_dir.mkdir(parents=True)
        extract(payload, slot.application_dir)
    except Exception:
        shutil.rmtree(slot.application_dir, ignore_errors=True)
        _release_lock(slot.lock_dir)
        raise
    finally:
        if ticker is not None:
            done.set()
            ticker.join()
            stderr.write("\n")
            stderr.flush()
    t1: float = time.perf_counter()
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"caxa: extracted into {slot.application_dir} in {t1 - t0:.2f}s")


def _print_progress(stderr: TextIO, done: threading.Event, interval: float) -> None:
    while done.wait(interval) is False:
        stderr.write(".")
        stderr.flush()


def _release_lock(lock_dir: pathlib.Path) -> None:
    try:
        lock_dir.rmdir()
    except FileNotFoundError:
        pass


def run_application(
    metadata: ArtifactMetadata,
    app_dir: pathlib.Path,
    argv: Sequence[str],
    *,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> int:
    """Run the artifact's command against an extracted application.

    :param metadata: Artifact metadata.
    :param app_dir: Application root replacing the placeholder.
    :param argv: Extra user arguments appended to the command.
    :param runner: Process runner (``subprocess.run`` compatible).
    :returns: The command's exit code.
    :raises BootstrapError: If there is no command or it cannot be started.
    """

    args: list[str] = substitute_placeholder(metadata.command, str(app_dir))
    args.extend(argv)
    if len(args) == 0:
        raise BootstrapError("no command defined")

    try:
        proc = runner(args, check=False)
    except OSError as e:
        raise BootstrapError(f"execution failed: {e}") from e
    return proc.returncode


def launch(
    artifact_path: pathlib.Path,
    argv: Sequence[str],
    *,
    temp_root: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> int:
    """Launch a native or shell artifact through the Python runtime.

    :param artifact_path: Artifact produced by ``caxa build``.
    :param argv: Extra user arguments.
    :param temp_root: Temporary root override (defaults to :func:`default_temp_root`).
    :param logger: Optional logger.
    :returns: The command's exit code.
    :raises BootstrapError: If the artifact is corrupted or cannot be extracted.
    """

    try:
        data: bytes = artifact_path.read_bytes()
    except OSError as e:
        raise BootstrapError(f"failed to read executable: {e}") from e

    metadata, payload = parse_artifact(data)
    if temp_root is None:
        temp_root = default_temp_root()
    app_dir: pathlib.Path = prepare_application(metadata, payload, temp_root=temp_root, logger=logger)
    return run_application(metadata, app_dir, argv)
