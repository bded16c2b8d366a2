import io
import os
import stat
import sys
import tarfile

import pytest

from caxa.archive import RuntimeBinary, build_payload, extract_payload
from caxa.errors import BootstrapError, BuildError
from caxa.files import select_files
from conftest import snapshot_tree, symlinks_supported


def test_payload_round_trip(app_dir, tmp_path):
    entries = select_files(app_dir)
    payload = build_payload(entries, app_dir)

    dest = tmp_path / "out"
    extract_payload(payload, dest)

    got = snapshot_tree(dest)
    assert set(got) == {e.relpath for e in entries}
    for entry in entries:
        if entry.is_symlink:
            assert got[entry.relpath] == ("link", entry.symlink_target)
        else:
            assert got[entry.relpath] == ("file", (app_dir / entry.relpath).read_bytes())
    assert ".git/config" not in got


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
def test_runtime_binary_is_executable(app_dir, fake_runtime, tmp_path):
    fake_runtime.chmod(0o644)
    payload = build_payload(
        select_files(app_dir),
        app_dir,
        runtime=RuntimeBinary(source=fake_runtime, relpath="bin/python"),
    )

    dest = tmp_path / "out"
    extract_payload(payload, dest)
    extracted = dest / "bin" / "python"
    assert extracted.read_bytes() == fake_runtime.read_bytes()
    assert extracted.stat().st_mode & stat.S_IXUSR


def test_owner_fields_are_normalized(app_dir):
    payload = build_payload(select_files(app_dir), app_dir)
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tf:
        for info in tf:
            assert (info.uid, info.gid, info.uname, info.gname) == (0, 0, "", "")


def test_invalid_compresslevel(app_dir):
    with pytest.raises(BuildError):
        build_payload([], app_dir, compresslevel=10)


@pytest.mark.parametrize("name", ["../escape.txt", "/abs.txt", "a/../../b.txt", "c:/x.txt"])
def test_extract_refuses_unsafe_paths(tmp_path, name):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        data = b"x"
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))

    with pytest.raises(BootstrapError):
        extract_payload(buf.getvalue(), tmp_path / "dest")


def test_extract_rejects_garbage(tmp_path):
    with pytest.raises(BootstrapError):
        extract_payload(b"definitely not gzip", tmp_path / "dest")


@symlinks_supported
def test_extract_refuses_writing_through_symlink(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        link = tarfile.TarInfo("out")
        link.type = tarfile.SYMTYPE
        link.linkname = str(tmp_path / "elsewhere")
        tf.addfile(link)
        data = b"x"
        info = tarfile.TarInfo("out/file.txt")
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))

    (tmp_path / "elsewhere").mkdir()
    with pytest.raises(BootstrapError):
        extract_payload(buf.getvalue(), tmp_path / "dest")
    assert (tmp_path / "elsewhere" / "file.txt").exists() is False


@pytest.mark.skipif(hasattr(os, "link") is False, reason="hard links unsupported")
def test_hardlinked_files_round_trip(tmp_path):
    root = tmp_path / "app"
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "a.js").write_text("module.exports = 1;\n", encoding="utf-8")
    os.link(root / "a.js", root / "b.js")
    os.link(root / "a.js", root / "node_modules" / "dep" / "index.js")

    entries = select_files(root)
    payload = build_payload(entries, root)

    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tf:
        assert all(m.isreg() for m in tf.getmembers())

    dest = tmp_path / "dest"
    extract_payload(payload, dest)
    tree = snapshot_tree(dest)
    for relpath in ("a.js", "b.js", "node_modules/dep/index.js"):
        assert tree[relpath] == ("file", b"module.exports = 1;\n")


def test_extract_copies_hardlink_members(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        data = b"shared"
        info = tarfile.TarInfo("lib/a.txt")
        info.size = len(data)
        info.mode = 0o644
        tf.addfile(info, io.BytesIO(data))
        link = tarfile.TarInfo("lib/b.txt")
        link.type = tarfile.LNKTYPE
        link.linkname = "lib/a.txt"
        link.mode = 0o644
        tf.addfile(link)

    dest = tmp_path / "dest"
    extract_payload(buf.getvalue(), dest)
    assert (dest / "lib" / "b.txt").read_bytes() == b"shared"
    assert (dest / "lib" / "b.txt").is_symlink() is False


def test_extract_rejects_dangling_hardlink(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        link = tarfile.TarInfo("b.txt")
        link.type = tarfile.LNKTYPE
        link.linkname = "../outside.txt"
        tf.addfile(link)

    with pytest.raises(BootstrapError):
        extract_payload(buf.getvalue(), tmp_path / "dest")
