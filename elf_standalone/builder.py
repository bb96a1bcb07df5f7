"""Artifact builder.

This module implements the packaging side:

- It validates that the input is an executable ELF file.
- It asks the dependency inspector for the shared libraries and the dynamic
  loader, and copies them with the executable into a ``bin/`` + ``lib/``
  staging tree.
- It archives the tree into a deterministic tar.gz, hashes it, and writes a
  single artifact: a ``python3`` shebang followed by a zip holding the
  bootstrap runtime (``__main__.py``) and the archive (``payload.tar.gz``).
"""

from dataclasses import dataclass
import gzip
import hashlib
import importlib.resources
import io
import logging
import os
import pathlib
import shutil
import stat
import tarfile
import tempfile
import time
import zipfile

from elf_standalone.deps import (
    DependencyClosure,
    DependencyInspectionError,
    resolve_dependencies,
    run_ldd,
)
from elf_standalone.runtime import PAYLOAD_MEMBER
from elf_standalone.target import (
    EXECUTABLE_MEDIA_TYPES,
    ElfFormatError,
    ElfInfo,
    MediaTypeError,
    detect_media_type,
    read_elf_info,
)


class BuildError(RuntimeError):
    """Raised when packaging fails."""


class InputError(BuildError):
    """Raised when the packager input is unusable."""


class ExecutableNotFoundError(InputError):
    """Raised when the input path does not exist."""


class NotExecutableError(InputError):
    """Raised when the input is not a regular file with an execute bit."""


class NotELFError(InputError):
    """Raised when the input is not an ELF executable."""


class ToolingError(BuildError):
    """Raised when an external tool or the archive/hash step fails."""


_BINARY_NAME_PLACEHOLDER: str = '"__ELF_STANDALONE_BINARY_NAME__"'
_LOADER_NAME_PLACEHOLDER: str = '"__ELF_STANDALONE_LOADER_NAME__"'
_PAYLOAD_SHA256_PLACEHOLDER: str = '"__ELF_STANDALONE_PAYLOAD_SHA256__"'

_SHEBANG: bytes = b"#!/usr/bin/env python3\n"
_ZIP_EPOCH: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while staging files.

    :ivar files_copied: Number of files copied.
    :ivar bytes_copied: Total bytes copied.
    """

    files_copied: int
    bytes_copied: int


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Outcome of a packaging run.

    :ivar output_path: Written artifact.
    :ivar binary_name: Bundled binary basename.
    :ivar loader_name: Bundled loader basename (empty for static binaries).
    :ivar digest: SHA-256 of the archive payload.
    :ivar libraries: Number of libraries bundled (loader excluded).
    """

    output_path: pathlib.Path
    binary_name: str
    loader_name: str
    digest: str
    libraries: int


def _validate_compresslevel(compresslevel: int) -> None:
    """Validate a gzip compression level.

    :param compresslevel: Compression level (0-9).
    :raises BuildError: If the level is out of range.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise BuildError(f"Invalid compresslevel={compresslevel}; expected 0-9.")


def validate_executable(path: pathlib.Path, *, file_tool: str | None = "file") -> str:
    """Check that ``path`` is an executable ELF program.

    Only reads the file; nothing is created.

    :param path: Candidate executable.
    :param file_tool: ``file`` executable, or ``None`` to use the built-in sniffer.
    :returns: Detected media type.
    :raises ExecutableNotFoundError: If the path does not exist.
    :raises NotExecutableError: If it is not a regular file with an execute bit.
    :raises NotELFError: If its media type is not an ELF executable.
    :raises ToolingError: If the media-type inspector fails.
    """

    if path.exists() is False:
        raise ExecutableNotFoundError(f"Input path does not exist: {path}")
    if path.is_file() is False:
        raise NotExecutableError(f"Input path is not a regular file: {path}")

    mode: int = path.stat().st_mode
    if mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH) == 0:
        raise NotExecutableError(f"Input path is not executable: {path}")

    try:
        media_type: str = detect_media_type(path, file_tool=file_tool)
    except MediaTypeError as exc:
        raise ToolingError(str(exc)) from exc

    if media_type not in EXECUTABLE_MEDIA_TYPES:
        raise NotELFError(
            f"Input is not an ELF executable (media type {media_type!r}): {path}"
        )
    return media_type


def _copy_file(*, src: pathlib.Path, dst: pathlib.Path) -> int:
    """Copy one file (following symlinks) and return its size.

    :raises ToolingError: If the file cannot be read or written.
    """

    try:
        shutil.copy2(src, dst)
        return dst.stat().st_size
    except OSError as exc:
        raise ToolingError(f"Staging failed: cannot copy {src}: {exc}") from exc


def stage_tree(
    *,
    staging_root: pathlib.Path,
    executable: pathlib.Path,
    closure: DependencyClosure,
    logger: logging.Logger,
) -> CopyStats:
    """Populate ``bin/`` and ``lib/`` under ``staging_root``.

    :param staging_root: Empty staging directory.
    :param executable: Program to bundle.
    :param closure: Libraries and loader to bundle.
    :param logger: Logger for progress output.
    :returns: Copy statistics.
    :raises ToolingError: If a file cannot be staged.
    """

    bin_dir: pathlib.Path = staging_root / "bin"
    lib_dir: pathlib.Path = staging_root / "lib"
    try:
        bin_dir.mkdir(parents=True, exist_ok=True)
        lib_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ToolingError(f"Staging failed: {exc}") from exc

    files_copied: int = 0
    bytes_copied: int = 0

    logger.info(f"elf-standalone: copying {executable} -> bin/{executable.name}")
    bytes_copied += _copy_file(src=executable, dst=bin_dir / executable.name)
    files_copied += 1

    staged_names: dict[str, pathlib.Path] = {}
    for lib in closure.libraries:
        prior: pathlib.Path | None = staged_names.get(lib.name)
        if prior is not None:
            logger.warning(
                f"elf-standalone: warning: {lib} has the same name as {prior}; keeping {prior}"
            )
            continue
        logger.info(f"elf-standalone: copying {lib} -> lib/{lib.name}")
        bytes_copied += _copy_file(src=lib, dst=lib_dir / lib.name)
        staged_names[lib.name] = lib
        files_copied += 1

    if closure.loader is not None:
        if closure.loader_name in staged_names:
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"elf-standalone: loader {closure.loader_name} already staged")
        else:
            logger.info(f"elf-standalone: copying loader {closure.loader} -> lib/{closure.loader_name}")
            bytes_copied += _copy_file(src=closure.loader, dst=lib_dir / closure.loader_name)
            files_copied += 1

    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)


def _tar_info(name: str, *, directory: bool, size: int = 0, executable: bool = False) -> tarfile.TarInfo:
    """Build a tar header with every host-specific field zeroed."""

    info: tarfile.TarInfo = tarfile.TarInfo(name)
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if directory is True:
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        return info
    info.size = size
    info.mode = 0o755 if executable is True else 0o644
    return info


def archive_tree(staging_root: pathlib.Path, *, compresslevel: int = 9) -> bytes:
    """Archive ``bin/`` and ``lib/`` into deterministic tar.gz bytes.

    Member names are relative to ``staging_root``; entries are sorted and all
    timestamps and ownership fields are zeroed so the same inputs always give
    the same bytes.

    :param staging_root: Populated staging directory.
    :param compresslevel: gzip compression level.
    :returns: Archive bytes.
    :raises ToolingError: If archiving fails.
    """

    buf: io.BytesIO = io.BytesIO()
    try:
        with gzip.GzipFile(filename="", mode="wb", fileobj=buf, compresslevel=compresslevel, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tf:
                for top in ("bin", "lib"):
                    top_dir: pathlib.Path = staging_root / top
                    tf.addfile(_tar_info(top, directory=True))
                    for p in sorted(top_dir.iterdir(), key=lambda q: q.name):
                        st: os.stat_result = p.stat()
                        info: tarfile.TarInfo = _tar_info(
                            f"{top}/{p.name}",
                            directory=False,
                            size=st.st_size,
                            executable=(st.st_mode & 0o111) != 0,
                        )
                        with open(p, "rb") as f:
                            tf.addfile(info, f)
    except (OSError, tarfile.TarError) as exc:
        raise ToolingError(f"Archive creation failed: {exc}") from exc

    return buf.getvalue()


def payload_digest(blob: bytes) -> str:
    """Hash the archive payload with SHA-256.

    :param blob: Archive bytes.
    :returns: Hex digest.
    :raises ToolingError: If the digest comes out empty.
    """

    digest: str = hashlib.sha256(blob).hexdigest()
    if len(digest) == 0:
        raise ToolingError("Hash computation produced an empty digest.")
    return digest


def _runtime_template() -> str:
    return importlib.resources.files("elf_standalone").joinpath("runtime.py").read_text(encoding="utf-8")


def render_runtime(*, binary_name: str, loader_name: str, digest: str) -> str:
    """Render the bootstrap runtime with this build's configuration.

    :param binary_name: Bundled binary basename.
    :param loader_name: Bundled loader basename, or ``""``.
    :param digest: Payload SHA-256 hex digest.
    :returns: Python source for the artifact's ``__main__.py``.
    :raises BuildError: If a placeholder is missing or ambiguous.
    """

    runtime: str = _runtime_template()
    values: list[tuple[str, str]] = [
        (_BINARY_NAME_PLACEHOLDER, binary_name),
        (_LOADER_NAME_PLACEHOLDER, loader_name),
        (_PAYLOAD_SHA256_PLACEHOLDER, digest),
    ]
    for placeholder, value in values:
        count: int = runtime.count(placeholder)
        if count != 1:
            raise BuildError(
                f"Internal error: runtime template has {count} occurrences of {placeholder}; expected 1."
            )
        runtime = runtime.replace(placeholder, repr(value))
    return runtime


def write_artifact(*, output_path: pathlib.Path, runtime_source: str, payload: bytes) -> None:
    """Write the self-extracting artifact and mark it executable.

    The file is written next to ``output_path`` and renamed into place, so a
    failure never leaves a partial artifact behind.

    :param output_path: Destination path.
    :param runtime_source: Rendered runtime source.
    :param payload: Archive bytes (stored uncompressed in the zip).
    """

    buf: io.BytesIO = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        main_info: zipfile.ZipInfo = zipfile.ZipInfo("__main__.py", date_time=_ZIP_EPOCH)
        main_info.compress_type = zipfile.ZIP_DEFLATED
        main_info.external_attr = 0o644 << 16
        zf.writestr(main_info, runtime_source.encode("utf-8"))

        payload_info: zipfile.ZipInfo = zipfile.ZipInfo(PAYLOAD_MEMBER, date_time=_ZIP_EPOCH)
        payload_info.compress_type = zipfile.ZIP_STORED
        payload_info.external_attr = 0o644 << 16
        zf.writestr(payload_info, payload)

    tmp_path: pathlib.Path | None = None
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        # Unique per run: concurrent builds to one output never share a temp file.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent)
        tmp_path = pathlib.Path(tmp_name)
        with os.fdopen(fd, "wb") as f:
            f.write(_SHEBANG)
            f.write(buf.getvalue())
        os.chmod(tmp_path, 0o755)
        tmp_path.replace(output_path)
    except OSError as exc:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise BuildError(f"Cannot write artifact {output_path}: {exc}") from exc


def build_standalone(
    *,
    executable: pathlib.Path,
    output_path: pathlib.Path | None = None,
    ldd: str = "ldd",
    file_tool: str | None = "file",
    compresslevel: int = 9,
    logger: logging.Logger | None = None,
) -> BuildResult:
    """Package an executable with its libraries and loader.

    :param executable: Program to bundle.
    :param output_path: Artifact path (defaults to ``./<name>_standalone``).
    :param ldd: Dependency inspector command line.
    :param file_tool: ``file`` executable, or ``None`` to use the built-in sniffer.
    :param compresslevel: gzip compression level for the payload.
    :param logger: Optional logger for realtime progress output.
    :returns: Build result.
    :raises BuildError: If packaging fails.
    """

    if logger is None:
        logger = logging.getLogger("elf_standalone")

    _validate_compresslevel(compresslevel)

    t_total0: float = time.perf_counter()
    media_type: str = validate_executable(executable, file_tool=file_tool)
    logger.info(f"elf-standalone: input={executable} ({media_type})")

    elf_info: ElfInfo | None
    try:
        elf_info = read_elf_info(executable)
    except ElfFormatError:
        elf_info = None
    if elf_info is not None:
        logger.info(f"elf-standalone: arch={elf_info.arch} kind={elf_info.kind}")

    if output_path is None:
        output_path = pathlib.Path.cwd() / f"{executable.name}_standalone"
    logger.info(f"elf-standalone: output={output_path}")

    t_deps0: float = time.perf_counter()
    try:
        ldd_output: str = run_ldd(executable, ldd=ldd, logger=logger)
    except DependencyInspectionError as exc:
        raise ToolingError(str(exc)) from exc

    closure: DependencyClosure = resolve_dependencies(
        ldd_output=ldd_output,
        logger=logger,
        interpreter_hint=elf_info.interpreter if elf_info is not None else None,
    )
    t_deps1: float = time.perf_counter()
    logger.info(
        f"elf-standalone: resolved {len(closure.libraries)} libraries"
        f"{' + loader ' + closure.loader_name if closure.loader is not None else ''}"
        f" in {t_deps1 - t_deps0:.2f}s"
    )

    with tempfile.TemporaryDirectory(prefix="elf_standalone_build_") as td:
        staging_root: pathlib.Path = pathlib.Path(td) / "staging"
        staging_root.mkdir(parents=True, exist_ok=True)

        stats: CopyStats = stage_tree(
            staging_root=staging_root,
            executable=executable,
            closure=closure,
            logger=logger,
        )
        logger.info(
            f"elf-standalone: staged {stats.files_copied} files ({stats.bytes_copied / (1024 * 1024):.1f} MiB)"
        )

        t_archive0: float = time.perf_counter()
        blob: bytes = archive_tree(staging_root, compresslevel=compresslevel)
        digest: str = payload_digest(blob)
        t_archive1: float = time.perf_counter()
        logger.info(
            f"elf-standalone: payload archived ({len(blob) / (1024 * 1024):.1f} MiB) "
            f"in {t_archive1 - t_archive0:.2f}s"
        )
        logger.info(f"elf-standalone: sha256={digest}")

    runtime_source: str = render_runtime(
        binary_name=executable.name,
        loader_name=closure.loader_name,
        digest=digest,
    )
    write_artifact(output_path=output_path, runtime_source=runtime_source, payload=blob)

    t_total1: float = time.perf_counter()
    out_size: int = output_path.stat().st_size
    logger.info(
        f"elf-standalone: wrote {output_path} ({out_size / (1024 * 1024):.1f} MiB) in {t_total1 - t_total0:.2f}s"
    )

    return BuildResult(
        output_path=output_path,
        binary_name=executable.name,
        loader_name=closure.loader_name,
        digest=digest,
        libraries=len(closure.libraries),
    )
