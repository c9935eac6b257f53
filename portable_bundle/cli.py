"""Command line interface for portable-bundle."""

import argparse
import logging
import pathlib
import sys

from portable_bundle.builder import BundleResult, build_bundle, failure_message
from portable_bundle.config import BundleConfig, config_from_environ, read_list_file, resolve_bundle_config
from portable_bundle.verify import VerificationReport, verify_tree


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the portable-bundle logger.

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

    logger: logging.Logger = logging.getLogger("portable_bundle")
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


def _optional_list(path: pathlib.Path | None) -> tuple[str, ...]:
    if path is None:
        return ()
    return read_list_file(path)


def _build_config(ns: argparse.Namespace, parser: argparse.ArgumentParser) -> BundleConfig:
    """Turn parsed ``build`` arguments into a :class:`BundleConfig`.

    :param ns: Parsed arguments.
    :param parser: Parser, for usage errors.
    :returns: Resolved config.
    """

    if ns.from_env is True:
        return config_from_environ()

    missing: list[str] = []
    if ns.source is None:
        missing.append("SOURCE")
    if ns.output is None:
        missing.append("-o/--output")
    if ns.closure_paths is None:
        missing.append("--closure-paths")
    if len(missing) > 0:
        parser.error(f"build requires {', '.join(missing)} (or --from-env)")

    return resolve_bundle_config(
        source_root=ns.source,
        output_dir=ns.output,
        closure_paths=[pathlib.Path(p) for p in read_list_file(ns.closure_paths)],
        platform=ns.platform,
        system_patterns=_optional_list(ns.system_libs),
        host_patterns=_optional_list(ns.host_libs),
        use_default_system_libs=ns.no_default_system_libs is False,
        extra_dirs=_optional_list(ns.extra_dirs),
        warn_on_binary_data=ns.warn_on_binary_data,
        store_prefix=ns.store_prefix,
    )


def main(argv: list[str] | None = None) -> int:
    """Run the portable-bundle CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="portable-bundle",
        description=(
            "Turn a built bin/ + lib/ tree into a relocatable bundle that no longer "
            "references the build store."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Trace, copy, rewrite and verify a bundle.",
    )
    p_build.add_argument(
        "source",
        type=pathlib.Path,
        nargs="?",
        default=None,
        help="Pre-built tree containing bin/ and lib/.",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output directory for the bundle.",
    )
    p_build.add_argument(
        "--closure-paths",
        type=pathlib.Path,
        default=None,
        help="File listing candidate dependency roots, one per line, in priority order.",
    )
    p_build.add_argument(
        "--platform",
        type=str,
        default="native",
        help="Target platform: native, linux or darwin.",
    )
    p_build.add_argument(
        "--system-libs",
        type=pathlib.Path,
        default=None,
        help="File of extra system library globs (left to the host OS).",
    )
    p_build.add_argument(
        "--host-libs",
        type=pathlib.Path,
        default=None,
        help="File of host-provided library globs (referenced but not copied).",
    )
    p_build.add_argument(
        "--extra-dirs",
        type=pathlib.Path,
        default=None,
        help="File of source-relative directories to copy verbatim.",
    )
    p_build.add_argument(
        "--no-default-system-libs",
        action="store_true",
        help="Do not include the built-in system library list.",
    )
    p_build.add_argument(
        "--warn-on-binary-data",
        action="store_true",
        help="Warn about store paths embedded in binary data instead of failing.",
    )
    p_build.add_argument(
        "--store-prefix",
        type=str,
        default="/nix/store",
        help="Build-store prefix that must not appear in the bundle.",
    )
    p_build.add_argument(
        "--from-env",
        action="store_true",
        help=(
            "Read settings from DRV_PATH, out, CLOSURE_PATHS, IS_DARWIN, SYSTEM_LIBS, "
            "HOST_LIBS, EXTRA_DIRS and WARN_ON_BINARY_DATA."
        ),
    )
    _add_logging_flags(p_build)

    p_verify = subparsers.add_parser(
        "verify",
        help="Only check an existing tree for non-portable references.",
    )
    p_verify.add_argument(
        "tree",
        type=pathlib.Path,
        help="Bundle directory to check.",
    )
    p_verify.add_argument(
        "--store-prefix",
        type=str,
        default="/nix/store",
        help="Build-store prefix that must not appear in the bundle.",
    )
    p_verify.add_argument(
        "--warn-on-binary-data",
        action="store_true",
        help="Warn about store paths embedded in binary data instead of failing.",
    )
    _add_logging_flags(p_verify)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    if ns.command == "build":
        config: BundleConfig = _build_config(ns, parser)
        result: BundleResult = build_bundle(config, logger=logger)
        return result.exit_code

    if ns.command == "verify":
        if ns.tree.is_dir() is False:
            parser.error(f"not a directory: {ns.tree}")
        report: VerificationReport = verify_tree(
            ns.tree,
            store_prefix=ns.store_prefix.rstrip("/"),
            warn_on_binary_data=ns.warn_on_binary_data,
            logger=logger,
        )
        if report.ok is False:
            logger.error(f"portable-bundle: {failure_message(report)}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")
