import pathlib

import pytest

from caxa.errors import ValidationError
from caxa.files import DEFAULT_EXCLUDE_PATTERNS, FileEntry, select_files
from conftest import symlinks_supported


def _touch(root: pathlib.Path, rel: str) -> None:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(rel, encoding="utf-8")


def test_exclude_patterns(tmp_path):
    for rel in [
        "main.py",
        "app.log",
        "secrets/key.txt",
        "nested/run.log",
        "nested/deep/kept.txt",
        "nested/deep/ignored/x.txt",
        "nested/deep/ignored/sub/y.txt",
    ]:
        _touch(tmp_path, rel)

    entries = select_files(tmp_path, exclude_patterns=["secrets", "**/*.log", "nested/deep/ignored"])
    paths = [e.relpath for e in entries]

    assert paths == ["main.py", "nested/deep/kept.txt"]
    for p in paths:
        assert p.startswith("secrets/") is False
        assert p.endswith(".log") is False
        assert p.startswith("nested/deep/ignored/") is False


def test_default_excludes(tmp_path):
    for rel in [
        "index.js",
        ".git/HEAD",
        ".github/workflows/ci.yml",
        "package-lock.json",
        "build/out.bin",
        "src/build/keep.txt",
        "pkg/__pycache__/mod.cpython-312.pyc",
        "pkg/mod.py",
    ]:
        _touch(tmp_path, rel)

    paths = [e.relpath for e in select_files(tmp_path, exclude_patterns=DEFAULT_EXCLUDE_PATTERNS)]
    assert paths == ["index.js", "pkg/mod.py", "src/build/keep.txt"]


def test_exclude_relpaths(tmp_path):
    _touch(tmp_path, "main.py")
    _touch(tmp_path, "dist-out/app")
    _touch(tmp_path, "binary-metadata.json")

    entries = select_files(
        tmp_path,
        exclude_patterns=[],
        exclude_relpaths={"dist-out/app", "binary-metadata.json"},
    )
    assert [e.relpath for e in entries] == ["main.py"]


@symlinks_supported
def test_symlinks_are_reported_not_followed(tmp_path):
    _touch(tmp_path, "real/file.txt")
    (tmp_path / "link-file").symlink_to("real/file.txt")
    (tmp_path / "link-dir").symlink_to("real")

    entries = select_files(tmp_path, exclude_patterns=[])
    assert entries == [
        FileEntry(relpath="link-dir", kind="symlink", symlink_target="real"),
        FileEntry(relpath="link-file", kind="symlink", symlink_target="real/file.txt"),
        FileEntry(relpath="real/file.txt", kind="regular"),
    ]


def test_select_files_requires_directory(tmp_path):
    f = tmp_path / "file.txt"
    f.write_text("x", encoding="utf-8")
    with pytest.raises(ValidationError):
        select_files(f)
