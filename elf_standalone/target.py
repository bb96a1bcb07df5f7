"""Executable inspection helpers.

This module is intentionally small and "pragmatic":

- It reads just enough of an ELF image (identification, file header and
  program headers) to tell static, dynamic and position-independent
  executables apart and to report the CPU architecture.
- It provides the media-type check used to validate packager input, either
  through the ``file`` utility or through the built-in header sniffer when
  ``file`` is not installed.
"""

from dataclasses import dataclass
import pathlib
import shutil
import struct
import subprocess


class ElfFormatError(ValueError):
    """Raised when a file is not a parseable ELF image."""


class MediaTypeError(RuntimeError):
    """Raised when the media-type inspector cannot classify a file."""


MIME_EXECUTABLE: str = "application/x-executable"
MIME_PIE_EXECUTABLE: str = "application/x-pie-executable"
MIME_SHAREDLIB: str = "application/x-sharedlib"

EXECUTABLE_MEDIA_TYPES: frozenset[str] = frozenset({MIME_EXECUTABLE, MIME_PIE_EXECUTABLE})

_ELF_MAGIC: bytes = b"\x7fELF"

_ET_REL: int = 1
_ET_EXEC: int = 2
_ET_DYN: int = 3
_ET_CORE: int = 4

_PT_LOAD: int = 1
_PT_DYNAMIC: int = 2
_PT_INTERP: int = 3

_DT_NULL: int = 0
_DT_FLAGS_1: int = 0x6FFFFFFB
_DF_1_PIE: int = 0x08000000

_MACHINE_NAMES: dict[int, str] = {
    3: "i386",
    8: "mips",
    20: "ppc",
    21: "ppc64",
    22: "s390x",
    40: "arm",
    62: "x86_64",
    183: "aarch64",
    243: "riscv",
    258: "loongarch64",
}


@dataclass(frozen=True, slots=True)
class ElfInfo:
    """Header-level facts about an ELF image.

    :ivar elf_class: ``32`` or ``64``.
    :ivar byte_order: ``little`` or ``big``.
    :ivar e_type: Raw ``e_type`` value (``ET_EXEC``, ``ET_DYN``, ...).
    :ivar machine: Raw ``e_machine`` value.
    :ivar arch: Human-readable architecture name.
    :ivar interpreter: ``PT_INTERP`` path, or ``None`` when absent.
    :ivar pie_flag: Whether ``DT_FLAGS_1`` carries ``DF_1_PIE``.
    """

    elf_class: int
    byte_order: str
    e_type: int
    machine: int
    arch: str
    interpreter: str | None
    pie_flag: bool

    @property
    def kind(self) -> str:
        """Classify the image as ``static``, ``dynamic``, ``pie``, ``sharedlib`` or ``other``."""

        if self.e_type == _ET_EXEC:
            if self.interpreter is None:
                return "static"
            return "dynamic"
        if self.e_type == _ET_DYN:
            if self.interpreter is not None or self.pie_flag is True:
                return "pie"
            return "sharedlib"
        return "other"


def _arch_name(*, machine: int, elf_class: int, byte_order: str) -> str:
    """Map ``e_machine`` to an architecture name.

    :param machine: Raw ``e_machine`` value.
    :param elf_class: ``32`` or ``64``.
    :param byte_order: ``little`` or ``big``.
    :returns: Architecture name (``machine-<n>`` when unknown).
    """

    name: str | None = _MACHINE_NAMES.get(machine)
    if name is None:
        return f"machine-{machine}"
    if name == "ppc64" and byte_order == "little":
        return "ppc64le"
    if name == "riscv":
        return f"riscv{elf_class}"
    if name == "mips" and elf_class == 64:
        return "mips64"
    return name


def parse_elf_header(data: bytes) -> ElfInfo:
    """Parse the ELF identification, file header and program headers.

    Both ELF classes and both byte orders are supported.

    :param data: Leading bytes of the file (the whole file is fine).
    :returns: Parsed header facts.
    :raises ElfFormatError: If ``data`` is not a well-formed ELF header.
    """

    if len(data) < 52 or data[0:4] != _ELF_MAGIC:
        raise ElfFormatError("not an ELF image")

    ei_class: int = data[4]
    ei_data: int = data[5]
    if ei_class not in (1, 2):
        raise ElfFormatError(f"unknown ELF class {ei_class}")
    if ei_data not in (1, 2):
        raise ElfFormatError(f"unknown ELF data encoding {ei_data}")

    elf_class: int = 32 if ei_class == 1 else 64
    byte_order: str = "little" if ei_data == 1 else "big"
    e: str = "<" if ei_data == 1 else ">"

    try:
        e_type: int
        e_machine: int
        e_type, e_machine = struct.unpack_from(f"{e}HH", data, 16)
        if elf_class == 64:
            e_phoff: int = struct.unpack_from(f"{e}Q", data, 32)[0]
            e_phentsize: int = struct.unpack_from(f"{e}H", data, 54)[0]
            e_phnum: int = struct.unpack_from(f"{e}H", data, 56)[0]
        else:
            e_phoff = struct.unpack_from(f"{e}I", data, 28)[0]
            e_phentsize = struct.unpack_from(f"{e}H", data, 42)[0]
            e_phnum = struct.unpack_from(f"{e}H", data, 44)[0]
    except struct.error as exc:
        raise ElfFormatError("truncated ELF header") from exc

    interpreter: str | None = None
    dyn_off: int | None = None
    dyn_size: int | None = None

    i: int = 0
    while i < e_phnum:
        ph_base: int = e_phoff + i * e_phentsize
        try:
            p_type: int = struct.unpack_from(f"{e}I", data, ph_base)[0]
            if elf_class == 64:
                p_offset: int = struct.unpack_from(f"{e}Q", data, ph_base + 8)[0]
                p_filesz: int = struct.unpack_from(f"{e}Q", data, ph_base + 32)[0]
            else:
                p_offset = struct.unpack_from(f"{e}I", data, ph_base + 4)[0]
                p_filesz = struct.unpack_from(f"{e}I", data, ph_base + 16)[0]
        except struct.error:
            break

        if p_type == _PT_INTERP:
            raw: bytes = data[p_offset : p_offset + p_filesz]
            text: str = raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")
            if len(text) > 0:
                interpreter = text
        elif p_type == _PT_DYNAMIC:
            dyn_off = p_offset
            dyn_size = p_filesz

        i += 1

    pie_flag: bool = False
    if dyn_off is not None and dyn_size is not None:
        pie_flag = _dynamic_has_pie_flag(
            data=data,
            dyn_off=dyn_off,
            dyn_size=dyn_size,
            elf_class=elf_class,
            endian=e,
        )

    return ElfInfo(
        elf_class=elf_class,
        byte_order=byte_order,
        e_type=e_type,
        machine=e_machine,
        arch=_arch_name(machine=e_machine, elf_class=elf_class, byte_order=byte_order),
        interpreter=interpreter,
        pie_flag=pie_flag,
    )


def _dynamic_has_pie_flag(*, data: bytes, dyn_off: int, dyn_size: int, elf_class: int, endian: str) -> bool:
    """Scan the dynamic section for ``DT_FLAGS_1 & DF_1_PIE``."""

    entry_size: int = 16 if elf_class == 64 else 8
    fmt: str = f"{endian}qQ" if elf_class == 64 else f"{endian}iI"
    dyn_end: int = dyn_off + dyn_size
    pos: int = dyn_off
    while pos + entry_size <= dyn_end:
        try:
            d_tag: int
            d_val: int
            d_tag, d_val = struct.unpack_from(fmt, data, pos)
        except struct.error:
            return False
        if d_tag == _DT_NULL:
            return False
        if d_tag == _DT_FLAGS_1:
            return (d_val & _DF_1_PIE) != 0
        pos += entry_size
    return False


def read_elf_info(path: pathlib.Path) -> ElfInfo:
    """Read and parse the ELF headers of a file on disk.

    :param path: File to inspect.
    :returns: Parsed header facts.
    :raises ElfFormatError: If the file is not an ELF image.
    """

    with open(path, "rb") as f:
        data: bytes = f.read()
    return parse_elf_header(data)


def sniff_media_type(path: pathlib.Path) -> str:
    """Classify a file the way ``file --brief --mime-type`` does for the cases we care about.

    :param path: File to inspect.
    :returns: MIME-like type string.
    """

    with open(path, "rb") as f:
        data: bytes = f.read()

    if len(data) == 0:
        return "inode/x-empty"

    if data[0:4] != _ELF_MAGIC:
        if data.startswith(b"#!") is True:
            return "text/x-shellscript"
        try:
            data[0:4096].decode("utf-8")
        except UnicodeDecodeError:
            return "application/octet-stream"
        return "text/plain"

    try:
        info: ElfInfo = parse_elf_header(data)
    except ElfFormatError:
        return "application/octet-stream"

    if info.e_type == _ET_EXEC:
        return MIME_EXECUTABLE
    if info.e_type == _ET_DYN:
        if info.kind == "pie":
            return MIME_PIE_EXECUTABLE
        return MIME_SHAREDLIB
    if info.e_type == _ET_REL:
        return "application/x-object"
    if info.e_type == _ET_CORE:
        return "application/x-coredump"
    return "application/octet-stream"


def file_media_type(path: pathlib.Path, *, file_tool: str = "file") -> str:
    """Ask the ``file`` utility for a file's media type.

    :param path: File to inspect.
    :param file_tool: ``file`` executable to run.
    :returns: MIME-like type string.
    :raises MediaTypeError: If the tool is missing or fails.
    """

    cmd: list[str] = [file_tool, "--brief", "--mime-type", str(path)]
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise MediaTypeError(f"Couldn't find {file_tool!r}. Is 'file' installed?") from exc

    if proc.returncode != 0:
        raise MediaTypeError(
            f"{file_tool} failed (exit={proc.returncode}): {proc.stderr.strip() or proc.stdout.strip()}"
        )
    return proc.stdout.strip()


def detect_media_type(path: pathlib.Path, *, file_tool: str | None = "file") -> str:
    """Detect a file's media type, preferring the ``file`` utility.

    :param path: File to inspect.
    :param file_tool: ``file`` executable, or ``None`` to always use the sniffer.
    :returns: MIME-like type string.
    """

    if file_tool is not None and shutil.which(file_tool) is not None:
        return file_media_type(path, file_tool=file_tool)
    return sniff_media_type(path)
