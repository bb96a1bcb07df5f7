"""Command line interface for elf-standalone."""

import argparse
import logging
import pathlib
import sys

from elf_standalone.builder import BuildError, build_standalone


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the elf-standalone logger.

    Progress goes to stdout; warnings and errors go to stderr.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("elf_standalone")
    logger.setLevel(level)
    logger.propagate = False

    formatter: logging.Formatter = logging.Formatter("%(message)s")

    out_handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
    out_handler.setLevel(level)
    out_handler.addFilter(lambda record: record.levelno < logging.WARNING)
    out_handler.setFormatter(formatter)

    err_handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    err_handler.setLevel(max(level, logging.WARNING))
    err_handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(out_handler)
    logger.addHandler(err_handler)
    return logger


def main(argv: list[str] | None = None) -> int:
    """Run the elf-standalone CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="elf-standalone",
        description=(
            "Bundle an ELF executable, its shared libraries and the dynamic loader "
            "into one self-extracting file."
        ),
    )
    parser.add_argument(
        "executable",
        type=pathlib.Path,
        nargs="?",
        help="Path to the executable to bundle.",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output path (defaults to ./<name>_standalone).",
    )
    parser.add_argument(
        "--ldd",
        type=str,
        default="ldd",
        help=(
            "Dependency inspector command (default: ldd). May include arguments, "
            "e.g. an emulator wrapper for foreign-architecture binaries."
        ),
    )
    parser.add_argument(
        "--file-tool",
        type=str,
        default="file",
        help="Media-type inspector (default: file). Falls back to a built-in ELF check if missing.",
    )
    parser.add_argument(
        "--compresslevel",
        type=int,
        default=9,
        help="gzip compression level for the payload (0-9).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    if ns.executable is None:
        parser.print_usage(sys.stderr)
        logger.error("elf-standalone: error: missing executable argument")
        return 1

    try:
        build_standalone(
            executable=ns.executable,
            output_path=ns.output,
            ldd=ns.ldd,
            file_tool=ns.file_tool,
            compresslevel=ns.compresslevel,
            logger=logger,
        )
    except BuildError as exc:
        logger.error(f"elf-standalone: error: {exc}")
        return 1
    return 0
