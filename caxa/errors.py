"""Exceptions shared by the build pipeline and the runtime bootstrap."""


class BuildError(RuntimeError):
    """Raised when building an artifact fails."""


class ValidationError(BuildError):
    """Raised before any write when a build request is invalid."""


class ExternalToolError(BuildError):
    """Raised when an external tool is missing or exits with an error."""


class ArchiveWriteError(BuildError):
    """Raised when the payload or the output cannot be written."""


class ManifestParseError(ValueError):
    """Raised when a package manifest cannot be parsed."""


class BootstrapError(RuntimeError):
    """Raised when a produced artifact cannot be prepared for execution."""
