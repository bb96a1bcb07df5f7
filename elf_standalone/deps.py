"""Shared-library dependency discovery.

The dependency inspector (``ldd`` or anything that prints the same report) is
treated as a black box: its combined stdout/stderr is captured as one text and
parsed with an explicit line grammar:

- ``libfoo.so.1 => /abs/path/libfoo.so.1 (0x...)``: resolved mapping
- ``libfoo.so.1 => not found``: unresolved entry
- ``linux-vdso.so.1 (0x...)``: virtual entry provided by the kernel
- ``not a dynamic executable`` / ``statically linked``: static marker

Independently, the first path naming an ``ld-linux*.so*`` file is taken as the
dynamic loader.
"""

from dataclasses import dataclass
import logging
import pathlib
import re
import shlex
import subprocess


class DependencyInspectionError(RuntimeError):
    """Raised when the dependency inspector cannot be run."""


_RESOLVED_RE: re.Pattern[str] = re.compile(
    r"^\s*(?P<name>\S+)\s+=>\s+(?P<path>/\S+)(?:\s+\(0x[0-9a-fA-F]+\))?\s*$"
)
_NOT_FOUND_RE: re.Pattern[str] = re.compile(r"^\s*(?P<name>\S+)\s+=>\s+not found\s*$")
_VIRTUAL_RE: re.Pattern[str] = re.compile(
    r"^\s*(?P<name>[^/\s]\S*)\s+(?:=>\s+)?\(0x[0-9a-fA-F]+\)\s*$"
)
_INTERP_LINE_RE: re.Pattern[str] = re.compile(r"^\s*/\S+\s+\(0x[0-9a-fA-F]+\)\s*$")
_LOADER_RE: re.Pattern[str] = re.compile(r"(/[^\s()]*ld-linux[^\s/()]*\.so(?:\.\d+)*)")

_STATIC_MARKERS: tuple[str, ...] = ("not a dynamic executable", "statically linked")


@dataclass(frozen=True, slots=True)
class LddReport:
    """Structured view of one dependency-inspector report.

    :ivar resolved: Resolved library paths, deduplicated in first-seen order.
    :ivar missing: Library names reported as ``not found``.
    :ivar virtual: Names of kernel-provided entries with no on-disk file.
    :ivar loader: First path naming the dynamic loader, or ``None``.
    :ivar static: Whether the report says the binary is not dynamically linked.
    :ivar unrecognized: Non-empty lines that matched no rule.
    """

    resolved: tuple[str, ...]
    missing: tuple[str, ...]
    virtual: tuple[str, ...]
    loader: str | None
    static: bool
    unrecognized: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class DependencyClosure:
    """Filesystem-checked dependency set for one executable.

    :ivar libraries: Regular files to copy into ``lib/``.
    :ivar skipped: Resolved paths skipped because no regular file backs them.
    :ivar missing: Library names the inspector could not resolve.
    :ivar loader: Dynamic loader to bundle, or ``None``.
    :ivar loader_name: Basename of ``loader`` (empty string when absent).
    :ivar static: Whether the inspector flagged the binary as static.
    """

    libraries: tuple[pathlib.Path, ...]
    skipped: tuple[str, ...]
    missing: tuple[str, ...]
    loader: pathlib.Path | None
    loader_name: str
    static: bool


def parse_ldd_output(text: str) -> LddReport:
    """Parse a dependency-inspector report.

    :param text: Combined stdout/stderr of the inspector.
    :returns: Structured report.
    """

    resolved: list[str] = []
    seen: set[str] = set()
    missing: list[str] = []
    virtual: list[str] = []
    unrecognized: list[str] = []
    static: bool = False

    for raw_line in text.splitlines():
        line: str = raw_line.strip()
        if len(line) == 0:
            continue

        if any(marker in line for marker in _STATIC_MARKERS) is True:
            static = True
            continue

        m = _RESOLVED_RE.match(line)
        if m is not None:
            path: str = m.group("path")
            if path not in seen:
                seen.add(path)
                resolved.append(path)
            continue

        m = _NOT_FOUND_RE.match(line)
        if m is not None:
            missing.append(m.group("name"))
            continue

        m = _VIRTUAL_RE.match(line)
        if m is not None:
            virtual.append(m.group("name"))
            continue

        # Interpreter lines ("/lib64/ld-linux-x86-64.so.2 (0x...)") only feed loader detection.
        if _INTERP_LINE_RE.match(line) is not None:
            continue

        unrecognized.append(line)

    loader_match = _LOADER_RE.search(text)
    loader: str | None = loader_match.group(1) if loader_match is not None else None

    return LddReport(
        resolved=tuple(resolved),
        missing=tuple(missing),
        virtual=tuple(virtual),
        loader=loader,
        static=static,
        unrecognized=tuple(unrecognized),
    )


def run_ldd(path: pathlib.Path, *, ldd: str = "ldd", logger: logging.Logger | None = None) -> str:
    """Run the dependency inspector and capture its combined output.

    ``ldd`` may carry arguments (e.g. an emulator invocation); it is split with
    shell rules. A non-zero exit status is not an error: ``ldd`` exits 1 for
    static binaries and the report text says why.

    :param path: Executable to inspect.
    :param ldd: Inspector command line.
    :param logger: Optional logger for debug output.
    :returns: Combined stdout/stderr text.
    :raises DependencyInspectionError: If the inspector cannot be started.
    """

    cmd: list[str] = [*shlex.split(ldd), str(path)]
    if logger is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"elf-standalone: running inspector: {' '.join(cmd)}")

    try:
        proc = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except FileNotFoundError as exc:
        raise DependencyInspectionError(f"Couldn't find {cmd[0]!r}. Is 'ldd' installed?") from exc

    if logger is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"elf-standalone: inspector exit={proc.returncode}")
    return proc.stdout.decode("utf-8", errors="replace")


def resolve_dependencies(
    *,
    ldd_output: str,
    logger: logging.Logger,
    interpreter_hint: str | None = None,
) -> DependencyClosure:
    """Turn an inspector report into the set of files to bundle.

    :param ldd_output: Combined inspector output for the executable.
    :param logger: Logger for the per-library trace and warnings.
    :param interpreter_hint: ``PT_INTERP`` of the executable, if known. Only used
        to warn when the report names no loader.
    :returns: Dependency closure.
    """

    report: LddReport = parse_ldd_output(ldd_output)

    if logger.isEnabledFor(logging.DEBUG) is True:
        for line in report.unrecognized:
            logger.debug(f"elf-standalone: ignoring inspector line: {line!r}")
        for name in report.virtual:
            logger.debug(f"elf-standalone: virtual entry (provided by the kernel): {name}")

    libraries: list[pathlib.Path] = []
    skipped: list[str] = []

    if report.static is True:
        logger.info("elf-standalone: inspector reports a static executable; no libraries to bundle")
    else:
        for raw in report.resolved:
            lib: pathlib.Path = pathlib.Path(raw)
            if lib.is_file() is True:
                if logger.isEnabledFor(logging.DEBUG) is True:
                    logger.debug(f"elf-standalone: resolved {lib}")
                libraries.append(lib)
            else:
                logger.info(f"elf-standalone: skipping {lib} (no file on disk)")
                skipped.append(raw)

        for name in report.missing:
            logger.warning(f"elf-standalone: warning: library not found by inspector: {name}")

        if len(libraries) == 0:
            logger.warning(
                "elf-standalone: warning: no libraries resolved and the inspector did not report a "
                "static executable; the artifact will launch the binary directly"
            )

    loader: pathlib.Path | None = None
    loader_name: str = ""
    if report.loader is not None:
        candidate: pathlib.Path = pathlib.Path(report.loader)
        if candidate.is_file() is True:
            loader = candidate
            loader_name = candidate.name
            logger.info(f"elf-standalone: loader {candidate}")
        else:
            logger.warning(f"elf-standalone: warning: loader {candidate} named by inspector does not exist")
    elif interpreter_hint is not None:
        logger.warning(
            f"elf-standalone: warning: executable requests interpreter {interpreter_hint} "
            "but the inspector named no loader"
        )

    return DependencyClosure(
        libraries=tuple(libraries),
        skipped=tuple(skipped),
        missing=report.missing,
        loader=loader,
        loader_name=loader_name,
        static=report.static,
    )
