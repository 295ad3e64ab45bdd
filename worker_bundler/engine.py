"""Bundling engine boundary.

The bundler itself (graph resolution, tree shaking, minification) is the
``esbuild`` executable. This module describes what is asked of it
(:class:`BuildRequest`), what comes back (:class:`BuildResult`), and how the
content updater is attached: :func:`visit_source_tree` walks the server tree and
feeds every source file through the updater. The tree itself is left alone; the
builder writes the committed edits for the engine run and restores the
originals afterwards.
"""

from dataclasses import dataclass, field
import json
import logging
import os
import pathlib
import shutil
import subprocess
import tempfile
import time
from typing import Protocol

from worker_bundler import LOGGER_NAME
from worker_bundler.errors import BundleError
from worker_bundler.rewrite import ContentUpdater

SOURCE_SUFFIXES: frozenset[str] = frozenset((".js", ".mjs", ".cjs"))

ESBUILD_ENV_VAR: str = "ESBUILD_BINARY"


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """Inputs for one engine invocation.

    :ivar entry_point: Entry module.
    :ivar outfile: Bundled output file.
    :ivar external: Module ids the engine must not inline.
    :ivar alias: Module id to substitute path, consulted before resolution.
    :ivar define: Global identifier to JS expression substitutions.
    :ivar conditions: Package export conditions.
    :ivar banner_js: Text prepended to the output.
    :ivar minify: Minify whitespace and syntax (identifiers are never renamed).
    """

    entry_point: pathlib.Path
    outfile: pathlib.Path
    external: tuple[str, ...] = ()
    alias: dict[str, str] = field(default_factory=dict)
    define: dict[str, str] = field(default_factory=dict)
    conditions: tuple[str, ...] = ()
    banner_js: str = ""
    minify: bool = False
    format: str = "esm"
    target: str = "esnext"
    platform: str = "node"


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Engine output.

    :ivar outfile: Bundled output file.
    :ivar metafile: Per-module size and dependency metadata.
    """

    outfile: pathlib.Path
    metafile: dict[str, object]


@dataclass(frozen=True, slots=True)
class VisitStats:
    """Counters from a visit pass.

    :ivar files_seen: Source files found under the root.
    :ivar files_visited: Files read and handed to the updater.
    :ivar files_rewritten: Files with committed edits in the updater ledger.
    """

    files_seen: int
    files_visited: int
    files_rewritten: int


class BundlingEngine(Protocol):
    """What the pipeline needs from a bundler."""

    def visit(self, source_root: pathlib.Path, updater: ContentUpdater) -> VisitStats:
        """Run the content updater over the sources the engine will bundle."""

    def bundle(self, request: BuildRequest) -> BuildResult:
        """Bundle ``request.entry_point`` into ``request.outfile``."""


def visit_source_tree(
    source_root: pathlib.Path,
    updater: ContentUpdater,
    *,
    logger: logging.Logger | None = None,
) -> VisitStats:
    """Feed every JS source under ``source_root`` through ``updater``.

    Virtual paths are POSIX paths relative to ``source_root``. Files are visited
    in sorted order. Committed edits stay in the updater ledger; nothing is
    written to disk.

    :param source_root: Root of the tree to visit.
    :param updater: Assembled content updater.
    :param logger: Optional logger.
    :returns: Visit counters.
    :raises RuleApplicationError: If a rule fails on any file.
    """

    if logger is None:
        logger = logging.getLogger(LOGGER_NAME)

    t0: float = time.perf_counter()
    paths: list[pathlib.Path] = []
    for root_str, dirs, files in os.walk(source_root):
        dirs.sort()
        for name in files:
            if os.path.splitext(name)[1] in SOURCE_SUFFIXES:
                paths.append(pathlib.Path(root_str) / name)
    paths.sort()

    visited: int = 0
    for p in paths:
        rel: str = p.relative_to(source_root).as_posix()
        if updater.wants(rel) is False:
            continue
        content: str = p.read_text(encoding="utf-8", errors="surrogateescape")
        updater.on_file_visited(rel, content)
        visited += 1

    pending: dict[str, str] = updater.pending_edits

    t1: float = time.perf_counter()
    logger.info(
        f"worker-bundler: rewrite pass visited {visited}/{len(paths)} files, "
        f"committed {len(pending)} edits in {t1 - t0:.2f}s"
    )
    return VisitStats(files_seen=len(paths), files_visited=visited, files_rewritten=len(pending))


class EsbuildEngine:
    """Drive the ``esbuild`` executable.

    :param executable: Explicit esbuild path. Falls back to ``$ESBUILD_BINARY``,
        ``PATH`` and then ``node_modules/.bin`` under ``search_dirs``.
    :param search_dirs: Directories whose ``node_modules/.bin`` may hold esbuild.
    :param logger: Optional logger.
    """

    def __init__(
        self,
        *,
        executable: str | None = None,
        search_dirs: tuple[pathlib.Path, ...] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self._executable: str | None = executable
        self._search_dirs: tuple[pathlib.Path, ...] = search_dirs
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger(LOGGER_NAME)

    def visit(self, source_root: pathlib.Path, updater: ContentUpdater) -> VisitStats:
        return visit_source_tree(source_root, updater, logger=self._logger)

    def bundle(self, request: BuildRequest) -> BuildResult:
        """Run esbuild for ``request``.

        :param request: Build request.
        :returns: Build result with the parsed metafile.
        :raises BundleError: If esbuild is missing or exits non-zero.
        """

        exe: str = self._resolve_executable()
        request.outfile.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="worker_bundler_meta_") as td:
            meta_path: pathlib.Path = pathlib.Path(td) / "meta.json"
            cmd: list[str] = [exe, *esbuild_arguments(request, metafile=meta_path)]
            if self._logger.isEnabledFor(logging.DEBUG) is True:
                self._logger.debug(f"worker-bundler: running esbuild: {' '.join(cmd)}")

            t0: float = time.perf_counter()
            try:
                proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
            except OSError as e:
                raise BundleError(f"Could not run esbuild ({exe}): {e}") from e
            t1: float = time.perf_counter()

            if proc.returncode != 0:
                raise BundleError(f"esbuild failed (exit={proc.returncode}):\n{proc.stderr.strip()}")
            self._logger.info(f"worker-bundler: esbuild finished in {t1 - t0:.2f}s")

            try:
                metafile: dict[str, object] = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise BundleError(f"esbuild did not produce a readable metafile: {e}") from e

        return BuildResult(outfile=request.outfile, metafile=metafile)

    def _resolve_executable(self) -> str:
        if self._executable is not None:
            return self._executable
        from_env: str | None = os.environ.get(ESBUILD_ENV_VAR)
        if from_env:
            return from_env
        on_path: str | None = shutil.which("esbuild")
        if on_path is not None:
            return on_path
        for d in self._search_dirs:
            local: str | None = shutil.which("esbuild", path=str(d / "node_modules" / ".bin"))
            if local is not None:
                return local
        raise BundleError(
            f"esbuild executable not found; install esbuild, pass --esbuild, or set ${ESBUILD_ENV_VAR}."
        )


def esbuild_arguments(request: BuildRequest, *, metafile: pathlib.Path) -> list[str]:
    """Translate a request into esbuild CLI arguments.

    :param request: Build request.
    :param metafile: Where esbuild writes its metafile.
    :returns: Argument list (without the executable).
    """

    args: list[str] = [
        str(request.entry_point),
        "--bundle",
        f"--outfile={request.outfile}",
        f"--format={request.format}",
        f"--target={request.target}",
        f"--platform={request.platform}",
        "--legal-comments=none",
        f"--metafile={metafile}",
        f"--conditions={','.join(request.conditions)}",
    ]
    if request.minify is True:
        args.extend(["--minify-whitespace", "--minify-syntax"])
    for module_id in request.external:
        args.append(f"--external:{module_id}")
    for module_id, target in request.alias.items():
        args.append(f"--alias:{module_id}={target}")
    for key, value in request.define.items():
        args.append(f"--define:{key}={value}")
    if request.banner_js != "":
        args.append(f"--banner:js={request.banner_js}")
    return args
