"""Launcher generation and the artifact trailer format.

Native and shell artifacts share one layout::

    [stub or script]\\nCAXACAXACAXA\\n[tar.gz payload]\\n[metadata JSON]

The native stub finds the payload by searching for the separator, the shell
launcher by line count. The metadata JSON is always a single line, so it is
everything after the last newline of the file.
"""

from collections.abc import Sequence
from dataclasses import dataclass
import json
import re
import shlex
import textwrap

from caxa.errors import BootstrapError


ARCHIVE_SEPARATOR: bytes = b"\nCAXACAXACAXA\n"
FOOTER_SEPARATOR: bytes = b"\n"

PLACEHOLDER_RE: re.Pattern[str] = re.compile(r"\{\{\s*caxa\s*\}\}")
_TEMPLATE_MARKER_RE: re.Pattern[str] = re.compile(r"__CAXA_(MESSAGE_BEGIN|MESSAGE_END)__\n|__CAXA_([A-Z]+(?:_[A-Z]+)*)__")


@dataclass(frozen=True, slots=True)
class ArtifactMetadata:
    """Trailing metadata record read by the launcher at run time.

    :ivar identifier: Build identifier namespacing the extraction slot.
    :ivar command: Command tokens, possibly holding the ``{{caxa}}`` placeholder.
    :ivar uncompression_message: Optional message printed while extracting.
    """

    identifier: str
    command: tuple[str, ...]
    uncompression_message: str | None = None

    def to_json_bytes(self) -> bytes:
        record: dict[str, object] = {
            "identifier": self.identifier,
            "command": list(self.command),
        }
        if self.uncompression_message is not None:
            record["uncompressionMessage"] = self.uncompression_message
        return json.dumps(record, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "ArtifactMetadata":
        """Parse a trailer record.

        :param data: JSON bytes.
        :returns: Metadata.
        :raises BootstrapError: If the record is malformed.
        """

        try:
            record: object = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BootstrapError(f"invalid footer json: {e}") from e
        if isinstance(record, dict) is False:
            raise BootstrapError("invalid footer json: not an object")

        identifier: object = record.get("identifier")
        command: object = record.get("command")
        message: object = record.get("uncompressionMessage")
        if isinstance(identifier, str) is False or len(identifier) == 0:
            raise BootstrapError("invalid footer json: missing identifier")
        if isinstance(command, list) is False or all(isinstance(c, str) for c in command) is False:
            raise BootstrapError("invalid footer json: command must be a list of strings")
        return cls(
            identifier=identifier,
            command=tuple(command),
            uncompression_message=message if isinstance(message, str) and len(message) > 0 else None,
        )


def substitute_placeholder(command: Sequence[str], app_dir: str) -> list[str]:
    """Replace every ``{{caxa}}`` placeholder with the application root.

    Each token is rewritten independently, so tokens holding whitespace stay
    single arguments.

    :param command: Command tokens.
    :param app_dir: Absolute application root.
    :returns: Rewritten tokens.
    """

    return [PLACEHOLDER_RE.sub(lambda _m: app_dir, token) for token in command]


def footer_bytes(metadata: ArtifactMetadata) -> bytes:
    return FOOTER_SEPARATOR + metadata.to_json_bytes()


def parse_artifact(data: bytes) -> tuple[ArtifactMetadata, bytes]:
    """Split an artifact into its metadata and payload.

    :param data: Whole artifact contents.
    :returns: ``(metadata, payload)``.
    :raises BootstrapError: If the artifact is corrupted.
    """

    footer_idx: int = data.rfind(FOOTER_SEPARATOR)
    if footer_idx < 0:
        raise BootstrapError("footer not found")
    metadata: ArtifactMetadata = ArtifactMetadata.from_json_bytes(data[footer_idx + 1 :])

    archive_idx: int = data.find(ARCHIVE_SEPARATOR)
    if archive_idx < 0:
        raise BootstrapError("archive separator not found")
    start: int = archive_idx + len(ARCHIVE_SEPARATOR)
    if start > footer_idx:
        raise BootstrapError("archive separator found after footer")
    return metadata, data[start:footer_idx]


def shell_command(command: Sequence[str], *, app_dir_var: str = "CAXA_APPLICATION_DIRECTORY") -> str:
    """Render command tokens as double-quoted shell words.

    The placeholder becomes a reference to ``app_dir_var``; everything else is
    escaped so it reaches the program verbatim.

    :param command: Command tokens.
    :param app_dir_var: Shell variable holding the application root.
    :returns: Shell words joined by spaces.
    """

    words: list[str] = []
    for token in command:
        segments: list[str] = PLACEHOLDER_RE.split(token)
        escaped: list[str] = [_escape_double_quoted(s) for s in segments]
        words.append('"' + ("${" + app_dir_var + "}").join(escaped) + '"')
    return " ".join(words)


def _escape_double_quoted(text: str) -> str:
    out: str = text.replace("\\", "\\\\")
    for ch in ('"', "$", "`"):
        out = out.replace(ch, "\\" + ch)
    return out


def render_shell_launcher(metadata: ArtifactMetadata, *, payload_size: int) -> str:
    """Render the POSIX shell launcher.

    The returned script has no trailing newline; it is followed in the artifact
    by :data:`ARCHIVE_SEPARATOR`, so the payload starts two lines after the
    script's last line.

    :param metadata: Identifier, command and message baked into the script.
    :param payload_size: Payload length in bytes.
    :returns: Script text.
    """

    message_begin: str = ""
    message_end: str = ""
    if metadata.uncompression_message is not None:
        message_begin = (
            f"      printf '%s' {shlex.quote(metadata.uncompression_message)} >&2\n"
            "      ( while sleep 2 >/dev/null 2>&1; do printf '.' >&2; done ) >/dev/null &\n"
            "      CAXA_PROGRESS=$!\n"
        )
        message_end = (
            '      kill "$CAXA_PROGRESS" 2>/dev/null\n'
            "      printf '\\n' >&2\n"
        )

    values: dict[str, str] = {
        "IDENTIFIER": shlex.quote(metadata.identifier),
        "PAYLOAD_SIZE": str(payload_size),
        "PAYLOAD_LINE": "0",
        "COMMAND": shell_command(metadata.command),
        "MESSAGE_BEGIN": message_begin,
        "MESSAGE_END": message_end,
    }
    # The separator line follows the script; the payload starts right after it.
    script_lines: int = _fill_template(values).count("\n") + 1
    values["PAYLOAD_LINE"] = str(script_lines + 2)
    return _fill_template(values)


def _fill_template(values: dict[str, str]) -> str:
    # One pass, so substituted values are never scanned for markers.
    script: str = _TEMPLATE_MARKER_RE.sub(lambda m: values[m.group(1) or m.group(2)], _SHELL_TEMPLATE)
    return script.rstrip("\n")


def render_bundle_scripts(name: str, command: Sequence[str]) -> tuple[str, str]:
    """Render the two scripts of a macOS application bundle.

    :param name: Bundle name (used as the script file name).
    :param command: Command tokens.
    :returns: ``(Contents/MacOS script, Contents/Resources script)``.
    """

    trampoline: str = (
        "#!/bin/sh\n"
        f'open "$(dirname "$0")/../Resources/"{shlex.quote(name)}\n'
    )
    resources: str = (
        "#!/bin/sh\n"
        'CAXA_APPLICATION_DIRECTORY="$(cd "$(dirname "$0")" && pwd)/application"\n'
        f'exec {shell_command(command)} "$@"\n'
    )
    return trampoline, resources


_SHELL_TEMPLATE: str = textwrap.dedent(
    r'''
    #!/bin/sh
    # This file was generated by caxa. The application payload is appended
    # after this script and extracted once per identifier.

    CAXA_IDENTIFIER=__CAXA_IDENTIFIER__
    CAXA_TEMPORARY_DIRECTORY="${CAXA_TEMP_DIR:-${TMPDIR:-/tmp}/caxa}"
    CAXA_APPLICATION_DIRECTORY="$CAXA_TEMPORARY_DIRECTORY/applications/$CAXA_IDENTIFIER"
    CAXA_LOCK="$CAXA_TEMPORARY_DIRECTORY/locks/$CAXA_IDENTIFIER"

    while [ ! -d "$CAXA_APPLICATION_DIRECTORY" ] || [ -d "$CAXA_LOCK" ]; do
      mkdir -p "$(dirname "$CAXA_LOCK")" "$(dirname "$CAXA_APPLICATION_DIRECTORY")"
      if mkdir "$CAXA_LOCK" 2>/dev/null; then
        if [ ! -d "$CAXA_APPLICATION_DIRECTORY" ]; then
    __CAXA_MESSAGE_BEGIN__
          mkdir "$CAXA_APPLICATION_DIRECTORY"
          tail -n +__CAXA_PAYLOAD_LINE__ "$0" | head -c __CAXA_PAYLOAD_SIZE__ | tar -xzf - -C "$CAXA_APPLICATION_DIRECTORY"
          CAXA_STATUS=$?
    __CAXA_MESSAGE_END__
          if [ "$CAXA_STATUS" -ne 0 ]; then
            rm -rf "$CAXA_APPLICATION_DIRECTORY"
            rmdir "$CAXA_LOCK"
            echo "caxa: failed to extract the application payload" >&2
            exit 1
          fi
        fi
        rmdir "$CAXA_LOCK"
      else
        # Another launch is extracting; retry once it releases the lock.
        while [ -d "$CAXA_LOCK" ]; do
          sleep 1
        done
      fi
    done

    exec __CAXA_COMMAND__ "$@"
    '''
).lstrip()
