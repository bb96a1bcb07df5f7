"""Shared fixtures for elf-standalone tests."""

import logging
import os
import pathlib
import struct
from collections.abc import Callable

import pytest


ET_EXEC = 2
ET_DYN = 3
EM_X86_64 = 62
EM_AARCH64 = 183

_PT_DYNAMIC = 2
_PT_INTERP = 3
_DT_FLAGS_1 = 0x6FFFFFFB
_DF_1_PIE = 0x08000000


def build_elf_image(
    *,
    e_type: int = ET_EXEC,
    machine: int = EM_X86_64,
    interp: str | None = None,
    pie_flag: bool = False,
    elf_class: int = 64,
    byte_order: str = "little",
) -> bytes:
    """Build a minimal ELF image with optional PT_INTERP / PT_DYNAMIC segments."""

    e = "<" if byte_order == "little" else ">"
    ident = b"\x7fELF" + bytes([1 if elf_class == 32 else 2, 1 if byte_order == "little" else 2, 1, 0]) + bytes(8)

    ehsize = 64 if elf_class == 64 else 52
    phentsize = 56 if elf_class == 64 else 32

    segments: list[tuple[int, bytes]] = []
    if interp is not None:
        segments.append((_PT_INTERP, interp.encode("utf-8") + b"\x00"))
    if pie_flag is True:
        if elf_class == 64:
            dyn = struct.pack(f"{e}qQ", _DT_FLAGS_1, _DF_1_PIE) + struct.pack(f"{e}qQ", 0, 0)
        else:
            dyn = struct.pack(f"{e}iI", _DT_FLAGS_1, _DF_1_PIE) + struct.pack(f"{e}iI", 0, 0)
        segments.append((_PT_DYNAMIC, dyn))

    phnum = len(segments)
    data_off = ehsize + phentsize * phnum

    if elf_class == 64:
        header = ident + struct.pack(
            f"{e}HHIQQQIHHHHHH", e_type, machine, 1, 0, ehsize, 0, 0, ehsize, phentsize, phnum, 64, 0, 0
        )
    else:
        header = ident + struct.pack(
            f"{e}HHIIIIIHHHHHH", e_type, machine, 1, 0, ehsize, 0, 0, ehsize, phentsize, phnum, 40, 0, 0
        )

    phdrs = b""
    body = b""
    for p_type, blob in segments:
        offset = data_off + len(body)
        if elf_class == 64:
            phdrs += struct.pack(f"{e}IIQQQQQQ", p_type, 4, offset, offset, offset, len(blob), len(blob), 8)
        else:
            phdrs += struct.pack(f"{e}IIIIIIII", p_type, offset, offset, offset, len(blob), len(blob), 4, 4)
        body += blob

    # Pad so the image looks like more than a bare header.
    return header + phdrs + body + bytes(64)


@pytest.fixture
def make_elf() -> Callable[..., pathlib.Path]:
    """Return a helper that writes a synthetic ELF file and returns its path."""

    def _make(path: pathlib.Path, *, mode: int = 0o755, **kwargs: object) -> pathlib.Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_elf_image(**kwargs))  # type: ignore[arg-type]
        os.chmod(path, mode)
        return path

    return _make


@pytest.fixture
def test_logger(caplog: pytest.LogCaptureFixture) -> logging.Logger:
    """A logger that propagates to caplog regardless of CLI logging setup."""

    logger = logging.getLogger("elf_standalone_tests")
    logger.propagate = True
    caplog.set_level(logging.DEBUG, logger="elf_standalone_tests")
    return logger


@pytest.fixture
def fake_libs(tmp_path: pathlib.Path) -> dict[str, pathlib.Path]:
    """Create fake library and loader files on disk."""

    root = tmp_path / "sysroot"
    (root / "lib").mkdir(parents=True)
    (root / "lib64").mkdir(parents=True)

    lib_a = root / "lib" / "libA.so.1"
    lib_a.write_bytes(b"libA contents")
    lib_b = root / "lib" / "libB.so.2"
    lib_b.write_bytes(b"libB contents")
    loader = root / "lib64" / "ld-linux-x86-64.so.2"
    loader.write_bytes(b"loader contents")
    os.chmod(loader, 0o755)

    return {"libA": lib_a, "libB": lib_b, "loader": loader}


def ldd_transcript(libs: dict[str, pathlib.Path]) -> str:
    """Render an ldd-style report for the ``fake_libs`` fixture."""

    return (
        "\tlinux-vdso.so.1 (0x00007ffd5a1f3000)\n"
        f"\tlibA.so.1 => {libs['libA']} (0x00007f3c1a000000)\n"
        f"\tlibB.so.2 => {libs['libB']} (0x00007f3c19e00000)\n"
        f"\t{libs['loader']} (0x00007f3c1a200000)\n"
    )


@pytest.fixture
def fake_ldd_output(fake_libs: dict[str, pathlib.Path]) -> str:
    return ldd_transcript(fake_libs)


@pytest.fixture
def artifact_factory(tmp_path: pathlib.Path) -> Callable[..., tuple[pathlib.Path, str]]:
    """Return a helper that writes an artifact from in-memory ``bin/`` and ``lib/`` files.

    ``files`` maps ``bin/<name>`` / ``lib/<name>`` to ``(content, mode)``.
    """

    from elf_standalone.builder import archive_tree, payload_digest, render_runtime, write_artifact

    counter: list[int] = [0]

    def _make(
        *,
        binary_name: str,
        loader_name: str,
        files: dict[str, tuple[bytes, int]],
    ) -> tuple[pathlib.Path, str]:
        counter[0] += 1
        staging = tmp_path / f"artifact-staging-{counter[0]}"
        (staging / "bin").mkdir(parents=True)
        (staging / "lib").mkdir(parents=True)
        for rel, (content, mode) in files.items():
            path = staging / rel
            path.write_bytes(content)
            os.chmod(path, mode)

        blob = archive_tree(staging)
        digest = payload_digest(blob)
        source = render_runtime(binary_name=binary_name, loader_name=loader_name, digest=digest)
        out = tmp_path / f"artifact-{counter[0]}" / f"{binary_name}_standalone"
        write_artifact(output_path=out, runtime_source=source, payload=blob)
        return out, digest

    return _make
