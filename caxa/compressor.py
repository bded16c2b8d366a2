"""External binary compressor adapter."""

from collections.abc import Sequence
import logging
import pathlib
import shutil
import subprocess
from typing import Protocol

from caxa.errors import ExternalToolError


class Compressor(Protocol):
    """Compresses an executable in place."""

    def compress(self, path: pathlib.Path, args: Sequence[str]) -> None:
        ...


class UpxCompressor:
    """Compress native stubs with ``upx``.

    :param executable: Name or path of the ``upx`` binary.
    :param logger: Optional logger for debug output.
    """

    def __init__(self, executable: str = "upx", *, logger: logging.Logger | None = None) -> None:
        self.executable: str = executable
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("caxa")

    def compress(self, path: pathlib.Path, args: Sequence[str]) -> None:
        """Run the compressor on ``path``.

        :param path: Executable to compress in place.
        :param args: Extra compressor arguments.
        :raises ExternalToolError: If the tool is missing or fails.
        """

        resolved: str | None = shutil.which(self.executable)
        if resolved is None:
            raise ExternalToolError(
                f"Compression requested but {self.executable!r} was not found on PATH."
            )

        cmd: list[str] = [resolved, *args, str(path)]
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"caxa: running compressor: {' '.join(cmd)}")

        try:
            proc = subprocess.run(cmd, check=False)
        except OSError as e:
            raise ExternalToolError(f"Failed to start compressor: {e}") from e
        if proc.returncode != 0:
            raise ExternalToolError(f"Compressor failed (exit={proc.returncode}): {' '.join(cmd)}")
