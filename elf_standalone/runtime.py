#!/usr/bin/env python3
# Bootstrap runtime for elf-standalone artifacts.
#
# The packager copies this module verbatim into every artifact as __main__.py,
# substituting the three configuration values below. It must only import from
# the standard library.
#
# On every run it checks the per-user cache for an extracted copy of the
# embedded payload, extracts it when missing or broken (private temp dir, then
# one atomic rename), and replaces the current process with the bundled
# program, started through the bundled dynamic loader when there is one.

from collections.abc import Mapping, Sequence
import hashlib
import io
import os
import pathlib
import shutil
import sys
import tarfile
import tempfile
from typing import NoReturn
import zipfile


BINARY_NAME: str = "__ELF_STANDALONE_BINARY_NAME__"
LOADER_NAME: str = "__ELF_STANDALONE_LOADER_NAME__"
PAYLOAD_SHA256: str = "__ELF_STANDALONE_PAYLOAD_SHA256__"

PAYLOAD_MEMBER: str = "payload.tar.gz"
PAYLOADS_DIRNAME: str = "standalone_payloads"

CACHE_DIR_ENV: str = "ELF_STANDALONE_CACHE_DIR"
DEBUG_ENV: str = "ELF_STANDALONE_DEBUG"


class BootstrapError(RuntimeError):
    """Raised when the artifact cannot prepare or launch its program."""


class ExtractionError(BootstrapError):
    """Raised when the embedded payload cannot be extracted."""


class PublishError(BootstrapError):
    """Raised when an extracted payload cannot be moved into the cache."""


class LaunchError(BootstrapError):
    """Raised when the cached program cannot be executed."""


def _parse_env_bool(value: str) -> bool | None:
    """Parse a string into a boolean.

    :param value: Raw environment variable string.
    :returns: Parsed boolean, or ``None`` if unknown.
    """

    v: str = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return None


def _debug_enabled() -> bool:
    raw: str | None = os.environ.get(DEBUG_ENV)
    if raw is None or len(raw) == 0:
        return False
    return _parse_env_bool(raw) is True


def _trace(message: str) -> None:
    """Write a progress line to stderr when ``ELF_STANDALONE_DEBUG`` is set."""

    if _debug_enabled() is True:
        sys.stderr.write(f"elf-standalone: {message}\n")


def _is_file(path: pathlib.Path) -> bool:
    # EACCES or ENAMETOOLONG on the way to the entry means it is unusable.
    try:
        return path.is_file()
    except OSError:
        return False


def _is_executable_file(path: pathlib.Path) -> bool:
    return _is_file(path) is True and os.access(path, os.X_OK) is True


def cache_root(environ: Mapping[str, str]) -> pathlib.Path:
    """Resolve the cache root directory.

    ``ELF_STANDALONE_CACHE_DIR`` wins, then ``XDG_CACHE_HOME``, then ``~/.cache``.

    :param environ: Environment to consult.
    :returns: Cache root (may not exist yet).
    :raises ExtractionError: If no home directory can be determined.
    """

    override: str | None = environ.get(CACHE_DIR_ENV)
    if override is not None and len(override) > 0:
        return pathlib.Path(override)

    xdg: str | None = environ.get("XDG_CACHE_HOME")
    if xdg is not None and len(xdg) > 0:
        return pathlib.Path(xdg)

    home: str | None = environ.get("HOME")
    if home is not None and len(home) > 0:
        return pathlib.Path(home) / ".cache"
    try:
        return pathlib.Path.home() / ".cache"
    except (RuntimeError, KeyError) as exc:
        raise ExtractionError(
            f"cannot determine a cache directory; set {CACHE_DIR_ENV} or XDG_CACHE_HOME ({exc})"
        ) from exc


def cache_dir_for(*, root: pathlib.Path, binary_name: str, digest: str) -> pathlib.Path:
    """Return the cache entry directory for one artifact version.

    :param root: Cache root.
    :param binary_name: Bundled binary basename.
    :param digest: Payload SHA-256 hex digest.
    :returns: ``<root>/standalone_payloads/<binary_name>-<digest>``.
    """

    return root / PAYLOADS_DIRNAME / f"{binary_name}-{digest}"


def cache_is_valid(cache_dir: pathlib.Path, *, binary_name: str, loader_name: str) -> bool:
    """Check whether a cache entry can be launched from.

    An entry is valid when ``bin/<binary_name>`` is an executable file and, if a
    loader is expected, ``lib/<loader_name>`` is a file.

    :param cache_dir: Cache entry directory.
    :param binary_name: Bundled binary basename.
    :param loader_name: Bundled loader basename, or ``""``.
    :returns: ``True`` if the entry is complete.
    """

    if _is_executable_file(cache_dir / "bin" / binary_name) is False:
        return False
    if len(loader_name) == 0:
        return True
    return _is_file(cache_dir / "lib" / loader_name)


def read_payload(artifact: pathlib.Path, *, expected_sha256: str) -> bytes:
    """Read and verify the archive embedded in an artifact.

    The artifact is a zip with a script prefix; the zip trailer records where
    the payload member starts and how long it is.

    :param artifact: Path of the running artifact.
    :param expected_sha256: Digest recorded at packaging time.
    :returns: Payload (tar.gz) bytes.
    :raises ExtractionError: If the payload is missing or corrupt.
    """

    try:
        with zipfile.ZipFile(artifact, "r") as zf:
            payload: bytes = zf.read(PAYLOAD_MEMBER)
    except (OSError, KeyError, zipfile.BadZipFile) as exc:
        raise ExtractionError(f"cannot read payload from {artifact}: {exc}") from exc

    digest: str = hashlib.sha256(payload).hexdigest()
    if digest != expected_sha256:
        raise ExtractionError("payload checksum mismatch (corrupt file)")
    return payload


def safe_extract(payload: bytes, dest_dir: pathlib.Path) -> None:
    """Safely extract tar.gz bytes into a destination directory.

    Only regular files and directories with relative, non-escaping names are
    accepted. Permission bits are restored from the archive.

    :param payload: tar.gz bytes.
    :param dest_dir: Destination directory.
    :raises ExtractionError: If the archive is unreadable or unsafe.
    """

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tf:
            for member in tf.getmembers():
                name: str = member.name
                p = pathlib.PurePosixPath(name)
                if p.is_absolute() is True:
                    raise ExtractionError(f"refusing to extract absolute path: {name!r}")
                if ".." in p.parts:
                    raise ExtractionError(f"refusing to extract parent-traversal path: {name!r}")

                out_path: pathlib.Path = dest_dir.joinpath(*p.parts)
                if member.isdir() is True:
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                if member.isfile() is False:
                    raise ExtractionError(f"refusing to extract non-regular member: {name!r}")

                out_path.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(member)
                if src is None:
                    raise ExtractionError(f"cannot read archive member: {name!r}")
                with src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                os.chmod(out_path, member.mode & 0o777)
    except (OSError, tarfile.TarError, EOFError) as exc:
        raise ExtractionError(f"extraction failed: {exc}") from exc


def publish(
    *,
    staging_dir: pathlib.Path,
    cache_dir: pathlib.Path,
    binary_name: str,
    loader_name: str,
) -> bool:
    """Move a fully extracted tree into place as the cache entry.

    The move is a single rename, so concurrent readers see either no entry or
    a complete one. If another process published a valid entry first, that
    entry is kept.

    :param staging_dir: Populated private extraction directory.
    :param cache_dir: Cache entry directory.
    :param binary_name: Bundled binary basename.
    :param loader_name: Bundled loader basename, or ``""``.
    :returns: ``True`` if ``staging_dir`` was renamed, ``False`` if an existing
        valid entry was adopted instead.
    :raises PublishError: If the entry cannot be replaced and no valid entry exists.
    """

    try:
        if cache_dir.is_symlink() is True or cache_dir.is_file() is True:
            cache_dir.unlink(missing_ok=True)
        elif cache_dir.exists() is True:
            if cache_is_valid(cache_dir, binary_name=binary_name, loader_name=loader_name) is True:
                _trace(f"adopting entry published concurrently: {cache_dir}")
                return False
            _trace(f"removing stale cache entry {cache_dir}")
            shutil.rmtree(cache_dir, ignore_errors=True)

        cache_dir.parent.mkdir(parents=True, exist_ok=True)
        os.rename(staging_dir, cache_dir)
    except OSError as exc:
        if cache_is_valid(cache_dir, binary_name=binary_name, loader_name=loader_name) is True:
            _trace(f"lost publish race; adopting {cache_dir}")
            return False
        raise PublishError(
            f"cannot publish {cache_dir}: {exc} (extracted files kept in {staging_dir})"
        ) from exc

    return True


def ensure_cache(
    *,
    artifact: pathlib.Path,
    root: pathlib.Path,
    binary_name: str,
    loader_name: str,
    digest: str,
) -> pathlib.Path:
    """Return a valid cache entry for this artifact, extracting it if needed.

    :param artifact: Path of the running artifact.
    :param root: Cache root.
    :param binary_name: Bundled binary basename.
    :param loader_name: Bundled loader basename, or ``""``.
    :param digest: Payload SHA-256 hex digest.
    :returns: Cache entry directory.
    :raises BootstrapError: If extraction or publishing fails.
    """

    cache_dir: pathlib.Path = cache_dir_for(root=root, binary_name=binary_name, digest=digest)
    if cache_is_valid(cache_dir, binary_name=binary_name, loader_name=loader_name) is True:
        _trace(f"cache hit: {cache_dir}")
        return cache_dir

    _trace(f"cache miss: {cache_dir}")
    payloads_dir: pathlib.Path = cache_dir.parent
    try:
        payloads_dir.mkdir(parents=True, exist_ok=True)
        staging_dir: pathlib.Path = pathlib.Path(
            tempfile.mkdtemp(prefix=f".{cache_dir.name}.", suffix=".tmp", dir=payloads_dir)
        )
    except OSError as exc:
        raise ExtractionError(f"no viable extraction directory under {payloads_dir}: {exc}") from exc

    keep_staging: bool = False
    try:
        payload: bytes = read_payload(artifact, expected_sha256=digest)
        safe_extract(payload, staging_dir)
        try:
            os.chmod(staging_dir, 0o755)
        except OSError as exc:
            raise ExtractionError(f"cannot prepare {staging_dir}: {exc}") from exc
        _trace(f"extracted payload into {staging_dir}")
        try:
            publish(
                staging_dir=staging_dir,
                cache_dir=cache_dir,
                binary_name=binary_name,
                loader_name=loader_name,
            )
        except PublishError:
            keep_staging = True
            raise
    finally:
        if keep_staging is False and staging_dir.exists() is True:
            shutil.rmtree(staging_dir, ignore_errors=True)

    return cache_dir


def launch(
    *,
    cache_dir: pathlib.Path,
    binary_name: str,
    loader_name: str,
    args: Sequence[str],
    environ: Mapping[str, str],
) -> NoReturn:
    """Replace the current process with the cached program.

    :param cache_dir: Valid cache entry directory.
    :param binary_name: Bundled binary basename.
    :param loader_name: Bundled loader basename, or ``""``.
    :param args: Arguments to forward, without ``argv[0]``.
    :param environ: Base environment for the program.
    :raises LaunchError: If neither the loader nor the binary can be executed.
    """

    lib_dir: pathlib.Path = cache_dir / "lib"
    program: pathlib.Path = cache_dir / "bin" / binary_name

    env: dict[str, str] = dict(environ)
    inherited: str = env.get("LD_LIBRARY_PATH", "")
    if len(inherited) > 0:
        env["LD_LIBRARY_PATH"] = f"{lib_dir}{os.pathsep}{inherited}"
    else:
        env["LD_LIBRARY_PATH"] = str(lib_dir)

    if len(loader_name) > 0:
        loader: pathlib.Path = lib_dir / loader_name
        if _is_executable_file(loader) is True:
            argv: list[str] = [str(loader), "--library-path", str(lib_dir), str(program), *args]
            _trace(f"exec via loader {loader}")
            try:
                os.execve(str(loader), argv, env)
            except OSError as exc:
                _trace(f"cannot execute loader {loader}: {exc}")
        _trace(f"loader {loader} unusable; executing {program} directly")

    if _is_executable_file(program) is False:
        raise LaunchError(f"{program} is not executable")

    _trace(f"exec {program}")
    try:
        os.execve(str(program), [str(program), *args], env)
    except OSError as exc:
        raise LaunchError(f"cannot execute {program}: {exc}") from exc
    raise AssertionError("unreachable")


def run(
    *,
    artifact: pathlib.Path,
    binary_name: str,
    loader_name: str,
    digest: str,
    args: Sequence[str],
    environ: Mapping[str, str],
) -> int:
    """Prepare the cache and launch the program.

    :returns: Exit code; only returned on failure, success replaces the process.
    """

    try:
        root: pathlib.Path = cache_root(environ)
        cache_dir: pathlib.Path = ensure_cache(
            artifact=artifact,
            root=root,
            binary_name=binary_name,
            loader_name=loader_name,
            digest=digest,
        )
        launch(
            cache_dir=cache_dir,
            binary_name=binary_name,
            loader_name=loader_name,
            args=args,
            environ=environ,
        )
    except BootstrapError as exc:
        sys.stderr.write(f"elf-standalone: error: {exc}\n")
        return 1
    except OSError as exc:
        sys.stderr.write(f"elf-standalone: error: cannot use cache: {exc}\n")
        return 1


def _artifact_path() -> pathlib.Path:
    # Inside an artifact this module is "<artifact>/__main__.py"; the artifact
    # is a file, so the path cannot be resolved through it.
    return pathlib.Path(os.path.abspath(__file__)).parent


def main(argv: list[str] | None = None) -> int:
    """Artifact entrypoint.

    :param argv: Arguments to forward (defaults to ``sys.argv[1:]``).
    :returns: Exit code on failure.
    """

    args: list[str] = sys.argv[1:] if argv is None else argv
    return run(
        artifact=_artifact_path(),
        binary_name=BINARY_NAME,
        loader_name=LOADER_NAME,
        digest=PAYLOAD_SHA256,
        args=args,
        environ=dict(os.environ),
    )


if __name__ == "__main__":
    raise SystemExit(main())
