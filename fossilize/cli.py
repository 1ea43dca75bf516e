"""Command line interface for fossilize."""

import argparse
import logging
import lzma
import os
import pathlib
import sys
import tarfile
import zipfile

from fossilize import __version__
from fossilize.archive import EntryNotFoundError
from fossilize.builder import DEFAULT_CONCURRENCY, BuildError, BuildOptions, build
from fossilize.bundle import BundleError, ManifestError
from fossilize.process import ProcessError
from fossilize.runtime import NODE_DIST_URL, DownloadError
from fossilize.target import TargetResolutionError
from fossilize.unsign import UnsignError
from fossilize.versions import NODE_VERSIONS_INDEX_URL, ResolutionError


_RUN_ERRORS: tuple[type[BaseException], ...] = (
    ManifestError,
    TargetResolutionError,
    ResolutionError,
    BundleError,
    ProcessError,
    DownloadError,
    EntryNotFoundError,
    UnsignError,
    lzma.LZMAError,
    EOFError,
    tarfile.TarError,
    zipfile.BadZipFile,
    OSError,
)


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the fossilize logger.

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

    logger: logging.Logger = logging.getLogger("fossilize")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _positive_int(value: str) -> int:
    n: int = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return n


def _positive_float(value: str) -> float:
    n: float = float(value)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {value!r}")
    return n


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="fossilize",
        description="Create Node.js single executable application binaries across platforms.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build standalone executables.",
    )
    p_build.add_argument(
        "entrypoint",
        type=pathlib.Path,
        nargs="?",
        default=pathlib.Path("."),
        help="Path to the file or project (directory with package.json) to fossilize.",
    )
    p_build.add_argument(
        "-n",
        "--node-version",
        type=str,
        default="lts",
        help="Node.js version: exact (22.11.0), partial (22, 20.3), 'latest', 'lts' or 'local'.",
    )
    p_build.add_argument(
        "-p",
        "--platforms",
        type=str,
        nargs="+",
        default=None,
        help="Target platforms such as linux-x64, darwin-arm64, win-x64. Defaults to the host.",
    )
    p_build.add_argument(
        "-a",
        "--assets",
        type=pathlib.Path,
        nargs="+",
        default=[],
        help="Files to embed as SEA assets (keyed by file name).",
    )
    p_build.add_argument(
        "-m",
        "--asset-manifest",
        type=pathlib.Path,
        default=None,
        help="Path to a Vite manifest.json; the manifest and its files are embedded as assets.",
    )
    p_build.add_argument(
        "-o",
        "--out-dir",
        type=pathlib.Path,
        default=pathlib.Path("dist-bin"),
        help="Output directory (cleared before building).",
    )
    p_build.add_argument(
        "--cache-dir",
        type=pathlib.Path,
        default=None,
        help="Cache directory for Node.js binaries (defaults to .node-cache).",
    )
    p_build.add_argument(
        "--no-cache",
        action="store_true",
        help="Do not use the cache for Node.js binaries.",
    )
    p_build.add_argument(
        "--no-bundle",
        action="store_true",
        help="Do not bundle the entrypoint using esbuild.",
    )
    p_build.add_argument(
        "--sign",
        action="store_true",
        help="Sign (and notarize when APPLE_API_KEY_PATH is set) macOS binaries.",
    )
    p_build.add_argument(
        "-j",
        "--concurrency",
        type=_positive_int,
        default=DEFAULT_CONCURRENCY,
        help="Maximum number of platforms built at the same time.",
    )
    p_build.add_argument(
        "--platform-timeout",
        type=_positive_float,
        default=None,
        help="Fail a platform that takes longer than this many seconds.",
    )
    p_build.add_argument(
        "--node-path",
        type=pathlib.Path,
        default=None,
        help="Node.js executable used to generate the SEA blob.",
    )
    p_build.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    p_build.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass twice to only show errors.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the fossilize CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    if ns.command == "build":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        options: BuildOptions = BuildOptions(
            entrypoint=ns.entrypoint,
            node_version=ns.node_version,
            platforms=tuple(ns.platforms or ()),
            assets=tuple(ns.assets),
            asset_manifest=ns.asset_manifest,
            out_dir=ns.out_dir,
            cache_dir=ns.cache_dir,
            no_cache=ns.no_cache,
            no_bundle=ns.no_bundle,
            sign=ns.sign,
            concurrency=ns.concurrency,
            platform_timeout=ns.platform_timeout,
            node_path=ns.node_path,
            dist_url=os.environ.get("FOSSILIZE_NODE_MIRROR") or NODE_DIST_URL,
            index_url=os.environ.get("FOSSILIZE_NODE_INDEX_URL") or NODE_VERSIONS_INDEX_URL,
            node_env=os.environ.get("NODE_ENV") or "development",
        )

        try:
            build(options, logger=logger)
        except BuildError as e:
            logger.error(f"fossilize: {e}")
            return 1
        except _RUN_ERRORS as e:
            logger.error(f"fossilize: error: {e}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")


if __name__ == "__main__":
    raise SystemExit(main())
