"""Command line interface for worker-bundler."""

import argparse
import logging
import pathlib
import sys

from worker_bundler import LOGGER_NAME
from worker_bundler.builder import BuildOptions, bundle_server
from worker_bundler.config import ProjectConfig, load_project_config
from worker_bundler.engine import EsbuildEngine
from worker_bundler.errors import BuildError


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the worker-bundler logger.

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

    logger: logging.Logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def main(argv: list[str] | None = None) -> int:
    """Run the worker-bundler CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="worker-bundler",
        description="Bundle a framework server build into a single worker module.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Bundle the server build output.",
    )
    p_build.add_argument(
        "app_path",
        type=pathlib.Path,
        help="Application directory.",
    )
    p_build.add_argument(
        "--output-dir",
        type=pathlib.Path,
        default=None,
        help="Build output directory (defaults to <app_path>/.open-next).",
    )
    p_build.add_argument(
        "--monorepo-root",
        type=pathlib.Path,
        default=None,
        help="Workspace root when the app lives in a monorepo (defaults to app_path).",
    )
    p_build.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="Configuration file (defaults to <app_path>/worker-bundler.toml when present).",
    )
    p_build.add_argument(
        "--esbuild",
        type=str,
        default=None,
        help="Path to the esbuild executable.",
    )
    p_build.add_argument(
        "--no-minify",
        action="store_true",
        help="Do not minify the bundle.",
    )
    p_build.add_argument(
        "--debug",
        action="store_true",
        help="Debug build (implies --no-minify).",
    )
    p_build.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p_build.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )

    ns = parser.parse_args(argv)
    if ns.command == "build":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        app_path: pathlib.Path = ns.app_path
        options: BuildOptions = BuildOptions(
            app_path=app_path,
            output_dir=ns.output_dir if ns.output_dir is not None else app_path / ".open-next",
            monorepo_root=ns.monorepo_root if ns.monorepo_root is not None else app_path,
            minify=not ns.no_minify,
            debug=ns.debug,
        )
        try:
            config: ProjectConfig = load_project_config(app_path=app_path, config_path=ns.config)
            engine: EsbuildEngine = EsbuildEngine(
                executable=ns.esbuild,
                search_dirs=(options.app_path, options.monorepo_root),
                logger=logger,
            )
            bundle_path: pathlib.Path = bundle_server(options, config=config, engine=engine, logger=logger)
        except BuildError as e:
            logger.error(f"worker-bundler: build failed: {e}")
            return 1

        print(bundle_path.resolve())
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")
