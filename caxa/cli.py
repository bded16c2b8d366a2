"""Command line interface for caxa."""

import argparse
import logging
import pathlib
import sys

from caxa.bootstrap import launch
from caxa.builder import BuildRequest, build_artifact
from caxa.errors import BootstrapError, BuildError
from caxa.files import DEFAULT_EXCLUDE_PATTERNS
from caxa.sbom import DEFAULT_METADATA_FILENAME
from caxa.target import TargetConfig, TargetResolutionError, resolve_target_config


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the caxa logger.

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

    logger: logging.Logger = logging.getLogger("caxa")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_logging_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="caxa",
        description="Package an application directory into a single executable.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build an executable, shell launcher or macOS application bundle.",
        description=(
            "The output suffix selects the artifact: '.app' builds a macOS bundle, "
            "'.sh' a shell launcher, anything else a native executable. "
            "Use '{{caxa}}' in the command to refer to the extracted application."
        ),
    )
    p_build.add_argument(
        "input",
        type=pathlib.Path,
        help="Application directory to package.",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        required=True,
        help="Output path (.app, .sh, or an executable name; '.exe' on Windows).",
    )
    p_build.add_argument(
        "--no-force",
        dest="force",
        action="store_false",
        help="Fail if the output already exists.",
    )
    p_build.add_argument(
        "-e",
        "--exclude",
        action="append",
        default=None,
        help="Gitignore-style pattern to exclude (repeatable). Replaces the default list.",
    )
    p_build.add_argument(
        "--no-include-runtime",
        dest="include_runtime",
        action="store_false",
        help="Do not embed the interpreter binary.",
    )
    p_build.add_argument(
        "--runtime",
        type=pathlib.Path,
        default=None,
        help="Interpreter binary to embed (defaults to the running interpreter).",
    )
    p_build.add_argument(
        "--target",
        type=str,
        default="native",
        help=(
            "Target as '<os>-<arch>' (e.g. linux-x64, darwin-arm64, win32-x64) or a "
            "target triple (e.g. x86_64-unknown-linux-gnu). Use 'native' for the current host."
        ),
    )
    p_build.add_argument(
        "--stub",
        type=pathlib.Path,
        default=None,
        help="Native stub to use instead of the bundled one for --target.",
    )
    p_build.add_argument(
        "--identifier",
        type=str,
        default=None,
        help="Extraction identifier (defaults to '<output name>/<random suffix>').",
    )
    p_build.add_argument(
        "-m",
        "--uncompression-message",
        type=str,
        default=None,
        help="Message printed on stderr while the payload is extracted.",
    )
    p_build.add_argument(
        "--compress",
        action="store_true",
        help="Compress the native stub with upx.",
    )
    p_build.add_argument(
        "--compressor-arg",
        dest="compressor_args",
        action="append",
        default=[],
        help=(
            "Extra argument passed to upx (repeatable). "
            "Values starting with a dash need the = form: --compressor-arg=--best."
        ),
    )
    p_build.add_argument(
        "--metadata-filename",
        type=str,
        default=DEFAULT_METADATA_FILENAME,
        help="File name of the SBOM written next to the output.",
    )
    _add_logging_flags(p_build)

    p_run = subparsers.add_parser(
        "run",
        help="Run a native or shell artifact with the Python bootstrap.",
    )
    p_run.add_argument(
        "artifact",
        type=pathlib.Path,
        help="Artifact produced by 'caxa build'.",
    )
    p_run.add_argument(
        "--temp-dir",
        type=pathlib.Path,
        default=None,
        help="Temporary root for extracted applications (defaults to $CAXA_TEMP_DIR or <tmp>/caxa).",
    )
    _add_logging_flags(p_run)
    return parser


def _split_trailing(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first ``--``.

    :param argv: Raw arguments.
    :returns: ``(caxa arguments, trailing arguments)``.
    """

    if "--" not in argv:
        return argv, []
    idx: int = argv.index("--")
    return argv[0:idx], argv[idx + 1 :]


def main(argv: list[str] | None = None) -> int:
    """Run the caxa CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    if argv is None:
        argv = sys.argv[1:]
    own_args, trailing = _split_trailing(list(argv))

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(own_args)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    if ns.command == "build":
        if len(trailing) == 0:
            parser.error("build: a command is required after '--'")
        try:
            target_cfg: TargetConfig = resolve_target_config(target=ns.target)
            request: BuildRequest = BuildRequest(
                input_dir=ns.input,
                output_path=ns.output,
                command=tuple(trailing),
                target=target_cfg,
                include_runtime=ns.include_runtime,
                exclude_patterns=tuple(ns.exclude) if ns.exclude is not None else DEFAULT_EXCLUDE_PATTERNS,
                identifier=ns.identifier,
                uncompression_message=ns.uncompression_message,
                compress=ns.compress,
                compressor_args=tuple(ns.compressor_args),
                force=ns.force,
                stub_path=ns.stub,
                runtime_path=ns.runtime,
                metadata_filename=ns.metadata_filename,
            )
            build_artifact(request, logger=logger)
        except (BuildError, TargetResolutionError) as e:
            logger.error(f"caxa: {e}")
            return 1
        return 0

    if ns.command == "run":
        try:
            return launch(
                ns.artifact,
                trailing,
                temp_root=ns.temp_dir,
                logger=logger,
            )
        except BootstrapError as e:
            logger.error(f"caxa: {e}")
            return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
