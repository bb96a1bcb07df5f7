import os
import pathlib
import shutil
import zipfile

import pytest

from elf_standalone import builder, cli
from elf_standalone.runtime import PAYLOAD_MEMBER


def test_missing_argument(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 1

    err = capsys.readouterr().err
    assert "usage: elf-standalone" in err
    assert "missing executable" in err


def test_nonexistent_path(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([str(tmp_path / "nope")]) == 1

    assert "does not exist" in capsys.readouterr().err


def test_script_is_rejected_without_output(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    script = tmp_path / "hello.sh"
    script.write_text("#!/bin/sh\necho hello\n")
    os.chmod(script, 0o755)
    monkeypatch.chdir(tmp_path)

    code = cli.main([str(script), "--file-tool", "no-such-file-tool-for-tests"])

    assert code == 1
    assert "not an ELF executable" in capsys.readouterr().err
    assert not (tmp_path / "hello.sh_standalone").exists()


def test_non_executable_file(tmp_path: pathlib.Path, make_elf, capsys: pytest.CaptureFixture[str]) -> None:
    prog = make_elf(tmp_path / "prog", mode=0o644)

    assert cli.main([str(prog)]) == 1
    assert "not executable" in capsys.readouterr().err


def test_bad_compresslevel(tmp_path: pathlib.Path, make_elf, capsys: pytest.CaptureFixture[str]) -> None:
    prog = make_elf(tmp_path / "prog")

    assert cli.main([str(prog), "--compresslevel", "42"]) == 1
    assert "compresslevel" in capsys.readouterr().err


def test_build_success(
    tmp_path: pathlib.Path,
    make_elf,
    fake_ldd_output: str,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prog = make_elf(tmp_path / "in" / "prog", interp="/lib64/ld-linux-x86-64.so.2")
    out = tmp_path / "dist" / "prog_standalone"
    monkeypatch.setattr(builder, "run_ldd", lambda path, ldd, logger: fake_ldd_output)

    code = cli.main([str(prog), "-o", str(out), "--file-tool", "no-such-file-tool-for-tests"])

    assert code == 0
    captured = capsys.readouterr()
    assert "copying" in captured.out
    assert "lib/libA.so.1" in captured.out
    assert f"wrote {out}" in captured.out
    assert captured.err == ""
    with zipfile.ZipFile(out) as zf:
        assert PAYLOAD_MEMBER in zf.namelist()


def test_quiet_hides_progress(
    tmp_path: pathlib.Path,
    make_elf,
    fake_ldd_output: str,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prog = make_elf(tmp_path / "prog")
    monkeypatch.setattr(builder, "run_ldd", lambda path, ldd, logger: fake_ldd_output)

    code = cli.main([str(prog), "-q", "-o", str(tmp_path / "out"), "--file-tool", "no-such-file-tool-for-tests"])

    assert code == 0
    assert capsys.readouterr().out == ""


def test_unreadable_library_is_a_clean_error(
    tmp_path: pathlib.Path,
    make_elf,
    fake_libs: dict[str, pathlib.Path],
    fake_ldd_output: str,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prog = make_elf(tmp_path / "prog")
    out = tmp_path / "prog_standalone"
    monkeypatch.setattr(builder, "run_ldd", lambda path, ldd, logger: fake_ldd_output)
    real_copy2 = shutil.copy2

    def copy2(src: pathlib.Path, dst: pathlib.Path) -> object:
        if pathlib.Path(src) == fake_libs["libA"]:
            raise PermissionError(13, "Permission denied", str(src))
        return real_copy2(src, dst)

    monkeypatch.setattr(builder.shutil, "copy2", copy2)

    code = cli.main([str(prog), "-o", str(out), "--file-tool", "no-such-file-tool-for-tests"])

    assert code == 1
    err = capsys.readouterr().err
    assert "elf-standalone: error: Staging failed" in err
    assert "Permission denied" in err
    assert not out.exists()
