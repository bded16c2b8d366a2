import json
import os
import pathlib
import sys

import pytest

from caxa.target import TargetConfig


symlinks_supported = pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")

RECORD_ARGS_SCRIPT: str = (
    "import json, pathlib, sys\n"
    "pathlib.Path(sys.argv[-1]).write_text(json.dumps(sys.argv[1:-1]), encoding='utf-8')\n"
)


def snapshot_tree(root: pathlib.Path) -> dict[str, tuple[str, object]]:
    """Map every file below ``root`` to its content or symlink target."""

    out: dict[str, tuple[str, object]] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        base = pathlib.Path(dirpath)
        for name in [*dirnames, *filenames]:
            p = base / name
            rel = p.relative_to(root).as_posix()
            if p.is_symlink():
                out[rel] = ("link", os.readlink(p))
            elif p.is_file():
                out[rel] = ("file", p.read_bytes())
    return out


@pytest.fixture
def linux_x64() -> TargetConfig:
    return TargetConfig(os_name="linux", arch="x64")


@pytest.fixture
def darwin_x64() -> TargetConfig:
    return TargetConfig(os_name="darwin", arch="x64")


@pytest.fixture
def win32_x64() -> TargetConfig:
    return TargetConfig(os_name="win32", arch="x64")


@pytest.fixture
def app_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    """A small application with a root manifest and one installed dependency."""

    root = tmp_path / "app"
    (root / "data").mkdir(parents=True)
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / ".git").mkdir()

    (root / "main.py").write_text(RECORD_ARGS_SCRIPT, encoding="utf-8")
    (root / "data" / "readme.txt").write_text("hello\n", encoding="utf-8")
    (root / ".git" / "config").write_text("[core]\n", encoding="utf-8")
    (root / "package.json").write_text(
        json.dumps(
            {
                "name": "@scope/app",
                "version": "2.5.0",
                "description": "Root package",
                "dependencies": {"dep": "^1.0.1", "missing": "^3.0.0"},
            }
        ),
        encoding="utf-8",
    )
    (root / "node_modules" / "dep" / "package.json").write_text(
        json.dumps({"name": "dep", "version": "1.0.1"}),
        encoding="utf-8",
    )
    if sys.platform != "win32":
        os.symlink("data/readme.txt", root / "readme-link")
    return root


@pytest.fixture
def fake_stub(tmp_path: pathlib.Path) -> pathlib.Path:
    stub = tmp_path / "stubs" / "stub--linux--x64"
    stub.parent.mkdir(parents=True)
    stub.write_bytes(b"\x7fELF-not-really-a-stub\x00\x01")
    return stub


@pytest.fixture
def fake_runtime(tmp_path: pathlib.Path) -> pathlib.Path:
    runtime = tmp_path / "runtime" / "python"
    runtime.parent.mkdir(parents=True)
    runtime.write_bytes(b"#!fake interpreter\n")
    return runtime
