import json

import pytest

from caxa.errors import BootstrapError
from caxa.launcher import (
    ARCHIVE_SEPARATOR,
    ArtifactMetadata,
    footer_bytes,
    parse_artifact,
    render_bundle_scripts,
    render_shell_launcher,
    shell_command,
    substitute_placeholder,
)


def test_placeholder_substitution():
    command = ["{{caxa}}/bin/python", "{{ caxa }}/main.py", "two words", "--flag=x"]
    assert substitute_placeholder(command, "/tmp/caxa/applications/app/abc") == [
        "/tmp/caxa/applications/app/abc/bin/python",
        "/tmp/caxa/applications/app/abc/main.py",
        "two words",
        "--flag=x",
    ]


def test_placeholder_twice_in_one_token_and_backslashes():
    root = "C:\\Users\\me\\caxa\\app"
    assert substitute_placeholder(["{{caxa}};{{caxa}}"], root) == [f"{root};{root}"]


def test_metadata_footer_is_single_line():
    metadata = ArtifactMetadata(
        identifier="app/abc",
        command=("node", "{{caxa}}/index.js"),
        uncompression_message="line one\nline two",
    )
    footer = footer_bytes(metadata)
    assert footer.startswith(b"\n")
    assert b"\n" not in footer[1:]
    assert json.loads(footer[1:]) == {
        "identifier": "app/abc",
        "command": ["node", "{{caxa}}/index.js"],
        "uncompressionMessage": "line one\nline two",
    }


def test_parse_artifact():
    metadata = ArtifactMetadata(identifier="test-id", command=("node", "index.js"))
    payload = b"mock-compressed-data\nwith a newline"
    data = b"some-binary-code-here" + ARCHIVE_SEPARATOR + payload + footer_bytes(metadata)

    parsed, parsed_payload = parse_artifact(data)
    assert parsed == metadata
    assert parsed_payload == payload


@pytest.mark.parametrize(
    "data",
    [
        b"no newline at all",
        b"stub\nnot json",
        b"stub without separator\n" + json.dumps({"identifier": "x", "command": []}).encode(),
        b"stub" + ARCHIVE_SEPARATOR + b"payload\n" + json.dumps({"command": ["a"]}).encode(),
    ],
)
def test_parse_artifact_rejects_corruption(data):
    with pytest.raises(BootstrapError):
        parse_artifact(data)


def test_shell_command_quoting():
    words = shell_command(["{{caxa}}/bin/python", "two words", 'say "$HOME" `x` \\n'])
    assert words == (
        '"${CAXA_APPLICATION_DIRECTORY}/bin/python" "two words" '
        '"say \\"\\$HOME\\" \\`x\\` \\\\n"'
    )


def test_shell_launcher_payload_line():
    metadata = ArtifactMetadata(
        identifier="app/abc",
        command=("{{caxa}}/bin/python", "{{caxa}}/main.py"),
        uncompression_message="Unpacking, it's the first run...",
    )
    script = render_shell_launcher(metadata, payload_size=1234)

    assert script.startswith("#!/bin/sh\n")
    assert script.endswith("\n") is False
    lines = script.split("\n")
    assert f"tail -n +{len(lines) + 2} " in script
    assert "head -c 1234 " in script
    assert "CAXA_IDENTIFIER=app/abc" in script
    assert "'Unpacking, it'\"'\"'s the first run...'" in script
    assert '"${CAXA_APPLICATION_DIRECTORY}/main.py" "$@"' in script
    assert "__CAXA_" not in script


def test_shell_launcher_without_message():
    script = render_shell_launcher(ArtifactMetadata(identifier="x/y", command=("true",)), payload_size=1)
    assert "printf" not in script


def test_shell_launcher_markers_in_user_values_stay_literal():
    message = "__CAXA_COMMAND__ tail -n +__CAXA_PAYLOAD_LINE__ __CAXA_PAYLOAD_SIZE__"
    metadata = ArtifactMetadata(
        identifier="app/abc",
        command=("echo", "__CAXA_IDENTIFIER__"),
        uncompression_message=message,
    )
    script = render_shell_launcher(metadata, payload_size=42)

    lines = script.split("\n")
    assert f'tail -n +{len(lines) + 2} "$0" | head -c 42 ' in script
    assert f"printf '%s' '{message}' >&2" in script
    assert 'exec "echo" "__CAXA_IDENTIFIER__" "$@"' in script
    assert "CAXA_IDENTIFIER=app/abc" in script


def test_shell_launcher_progress_ticker_wraps_extraction():
    metadata = ArtifactMetadata(identifier="x/y", command=("true",), uncompression_message="Unpacking")
    script = render_shell_launcher(metadata, payload_size=1)

    start = script.index("CAXA_PROGRESS=$!")
    extract = script.index("tar -xzf -")
    stop = script.index('kill "$CAXA_PROGRESS"')
    assert start < extract < stop
    assert "printf '%s' Unpacking >&2" in script


def test_bundle_scripts():
    trampoline, resources = render_bundle_scripts("My App", ["{{caxa}}/bin/python", "{{caxa}}/main.py"])
    assert trampoline == '#!/bin/sh\nopen "$(dirname "$0")/../Resources/"\'My App\'\n'
    assert 'CAXA_APPLICATION_DIRECTORY="$(cd "$(dirname "$0")" && pwd)/application"' in resources
    assert resources.endswith(
        'exec "${CAXA_APPLICATION_DIRECTORY}/bin/python" "${CAXA_APPLICATION_DIRECTORY}/main.py" "$@"\n'
    )
