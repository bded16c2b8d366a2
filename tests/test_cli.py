import json
import sys

import pytest

from caxa.archive import extract_payload
from caxa.cli import main
from caxa.launcher import parse_artifact


def test_build_then_run(tmp_path, app_dir, fake_stub, fake_runtime, capsys):
    out = tmp_path / "out" / "app"
    code = main(
        [
            "build",
            str(app_dir),
            "-o",
            str(out),
            "--target",
            "linux-x64",
            "--stub",
            str(fake_stub),
            "--runtime",
            str(fake_runtime),
            "--identifier",
            "app/cli0000001",
            "-m",
            "Unpacking...",
            "--",
            sys.executable,
            "{{caxa}}/main.py",
            "{{ caxa }}",
        ]
    )
    assert code == 0
    assert out.is_file()
    assert (tmp_path / "out" / "binary-metadata.json").is_file()

    record = tmp_path / "argv.json"
    temp_root = tmp_path / "caxa-temp"
    code = main(["run", str(out), "--temp-dir", str(temp_root), "--", str(record)])
    assert code == 0

    app_root = temp_root / "applications" / "app" / "cli0000001"
    assert json.loads(record.read_text(encoding="utf-8")) == [str(app_root.absolute())]
    assert (app_root / "bin" / "python").read_bytes() == fake_runtime.read_bytes()
    assert "Unpacking...\n" in capsys.readouterr().err


def test_build_reports_invalid_input(tmp_path, capsys):
    code = main(["build", str(tmp_path / "missing"), "-o", str(tmp_path / "app.sh"), "--target", "linux-x64", "--", "true"])
    assert code == 1
    err = capsys.readouterr().err
    assert "caxa: Input path does not exist" in err


def test_build_reports_unknown_target(tmp_path, app_dir, capsys):
    code = main(["build", str(app_dir), "-o", str(tmp_path / "app.sh"), "--target", "plan9-mips", "--", "true"])
    assert code == 1
    assert capsys.readouterr().err.startswith("caxa: ")


def test_build_requires_command(tmp_path, app_dir):
    with pytest.raises(SystemExit) as exc:
        main(["build", str(app_dir), "-o", str(tmp_path / "app.sh")])
    assert exc.value.code == 2


def test_exclude_replaces_defaults(tmp_path, app_dir):
    out = tmp_path / "out" / "app.sh"
    code = main(
        [
            "build",
            str(app_dir),
            "-o",
            str(out),
            "--target",
            "linux-x64",
            "--no-include-runtime",
            "-e",
            "data/",
            "-q",
            "--",
            "true",
        ]
    )
    assert code == 0

    _, payload = parse_artifact(out.read_bytes())
    dest = tmp_path / "extracted"
    dest.mkdir()
    extract_payload(payload, dest)
    assert (dest / "data").exists() is False
    assert (dest / ".git" / "config").is_file()


def test_run_reports_corrupted_artifact(tmp_path, capsys):
    broken = tmp_path / "broken"
    broken.write_bytes(b"not an artifact")
    code = main(["run", str(broken), "--temp-dir", str(tmp_path / "t")])
    assert code == 1
    assert "caxa: footer not found" in capsys.readouterr().err


def test_compressor_arg_accepts_dash_value_with_equals(tmp_path, app_dir, capsys):
    out = tmp_path / "out" / "app.sh"
    code = main(
        [
            "build",
            str(app_dir),
            "-o",
            str(out),
            "--target",
            "linux-x64",
            "--no-include-runtime",
            "--compress",
            "--compressor-arg=--best",
            "--",
            "true",
        ]
    )
    assert code == 0
    assert out.is_file()
    assert "compression only applies to native artifacts" in capsys.readouterr().err
