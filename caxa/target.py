"""Target resolution helpers.

This module is intentionally small and "pragmatic":

- It accepts either a caxa stub selector (e.g. ``linux-x64``) or a Rust-like
  target triple (e.g. ``x86_64-unknown-linux-gnu``).
- It produces the platform/architecture pair used to pick a pre-built stub
  and to enforce per-platform output constraints.
"""

from dataclasses import dataclass
import platform
import sys


class TargetResolutionError(ValueError):
    """Raised when a target spec cannot be resolved to a stub selector."""


@dataclass(frozen=True, slots=True)
class TargetConfig:
    """Build target configuration.

    :ivar os_name: Stub platform name (``linux``, ``darwin`` or ``win32``).
    :ivar arch: Stub architecture name (e.g. ``x64``, ``arm64``).
    """

    os_name: str
    arch: str

    @property
    def is_windows(self) -> bool:
        return self.os_name == "win32"

    @property
    def is_macos(self) -> bool:
        return self.os_name == "darwin"


_OS_NAMES: frozenset[str] = frozenset({"linux", "darwin", "win32"})

_ARCH_MAP: dict[str, str] = {
    "x64": "x64",
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "ia32": "ia32",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "arm": "arm",
    "armv7": "arm",
    "armv7l": "arm",
}


def resolve_target_config(*, target: str = "native") -> TargetConfig:
    """Resolve a user-supplied target into a :class:`~TargetConfig`.

    :param target: ``native``, a ``<os>-<arch>`` selector or a target triple.
    :returns: Resolved target config.
    :raises TargetResolutionError: If the target cannot be resolved.
    """

    if target == "native":
        return host_target_config()

    parts: list[str] = target.lower().split("-")
    if len(parts) == 2:
        os_name: str = _normalize_os(parts[0])
        if os_name not in _OS_NAMES:
            raise TargetResolutionError(f"Unsupported platform in target {target!r}.")
        return TargetConfig(os_name=os_name, arch=_normalize_arch(parts[1], target=target))

    if len(parts) < 3:
        raise TargetResolutionError(
            f"Unrecognized target spec {target!r}. Provide '<os>-<arch>' or a Rust triple."
        )

    arch: str = _normalize_arch(parts[0], target=target)
    os_part: str = parts[2]
    if os_part == "linux":
        return TargetConfig(os_name="linux", arch=arch)
    if os_part == "darwin":
        return TargetConfig(os_name="darwin", arch=arch)
    if os_part == "windows":
        return TargetConfig(os_name="win32", arch=arch)

    raise TargetResolutionError(
        f"Unrecognized OS in target triple {target!r} (os={os_part!r})."
    )


def host_target_config() -> TargetConfig:
    """Describe the machine running the build.

    :returns: Target config for the host.
    :raises TargetResolutionError: If the host platform is not supported.
    """

    os_name: str = _normalize_os(sys.platform)
    if os_name not in _OS_NAMES:
        raise TargetResolutionError(f"Unsupported host platform: {sys.platform!r}")
    return TargetConfig(os_name=os_name, arch=_normalize_arch(platform.machine(), target="native"))


def stub_filename(target: TargetConfig) -> str:
    """Return the file name of the pre-built stub for a target.

    :param target: Target configuration.
    :returns: File name such as ``stub--linux--x64``.
    """

    return f"stub--{target.os_name}--{target.arch}"


def _normalize_os(value: str) -> str:
    v: str = value.lower()
    if v.startswith("linux") is True:
        return "linux"
    if v in {"darwin", "macos", "macosx", "apple"}:
        return "darwin"
    if v in {"win32", "windows", "win", "cygwin"}:
        return "win32"
    return v


def _normalize_arch(machine: str, *, target: str) -> str:
    """Normalize a machine string into a stub architecture name.

    :param machine: Raw machine string (e.g. from ``platform.machine()``).
    :param target: Original target spec (for error messages).
    :returns: Normalized architecture.
    :raises TargetResolutionError: If the architecture is not supported.
    """

    arch: str | None = _ARCH_MAP.get(machine.lower())
    if arch is None:
        raise TargetResolutionError(f"Unsupported architecture {machine!r} in target {target!r}.")
    return arch
