"""Server bundle builder.

This module sequences a build:

- It reads the framework's ``required-server-files.json`` and detects which
  server compilation mode (webpack or turbopack) produced the tree.
- It computes the module resolution policy and assembles the content updater.
- It runs the bundling engine: a rewrite pass over the server tree, then a
  single bundle of ``index.mjs`` into ``handler.mjs``. Rewritten sources are
  written in place for the engine and restored once it returns.
- It normalizes require markers in the artifact, writes the metadata sidecar
  and, for monorepos, a re-export shim at the server function root.
"""

from dataclasses import dataclass, replace
import json
import logging
import pathlib
import shutil
import time

from worker_bundler import LOGGER_NAME
from worker_bundler.config import BundleConfiguration, ProjectConfig
from worker_bundler.engine import BuildRequest, BuildResult, BundlingEngine, EsbuildEngine, VisitStats
from worker_bundler.errors import ConfigurationError, RuleApplicationError
from worker_bundler.patching import PatchReport, PatchStrategy, patch_bundled_artifact
from worker_bundler.policy import (
    ResolutionPolicy,
    alias_missing_optional_dependencies,
    compute_resolution_policy,
    resolve_custom_aliases,
)
from worker_bundler.rewrite import (
    COMMIT_RULE_ID,
    ContentUpdater,
    Effect,
    ExternalEffect,
    RewriteRule,
    SourceReplacementEffect,
    assemble_updater,
)

SERVER_FILES_MANIFEST: str = "required-server-files.json"
TURBOPACK_RUNTIME_RELPATH: str = "server/chunks/[turbopack]_runtime.js"
ENTRY_FILENAME: str = "index.mjs"
BUNDLE_FILENAME: str = "handler.mjs"
METADATA_SUFFIX: str = ".meta.json"
SHIM_DIR_RELPATH: str = "worker-templates/shims"

_TEMPLATES_DIR: pathlib.Path = pathlib.Path(__file__).resolve().parent / "templates"

# Imported rather than read from globalThis: node:timers itself uses globalThis.
TIMERS_BANNER: str = 'import {setInterval, clearInterval, setTimeout, clearTimeout} from "node:timers"'


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Where the build reads from and writes to.

    :ivar app_path: Application directory.
    :ivar output_dir: Build output directory holding ``server-functions/default``.
    :ivar monorepo_root: Workspace root (equal to ``app_path`` outside monorepos).
    :ivar minify: Minify whitespace and syntax.
    :ivar debug: Debug build; disables minification.
    """

    app_path: pathlib.Path
    output_dir: pathlib.Path
    monorepo_root: pathlib.Path
    minify: bool = True
    debug: bool = False

    @property
    def package_path(self) -> str:
        """Application path relative to the monorepo root (POSIX, ``.`` when equal)."""

        app: pathlib.Path = self.app_path.resolve()
        root: pathlib.Path = self.monorepo_root.resolve()
        if app.is_relative_to(root) is False:
            raise ConfigurationError(f"Application {app} is not inside monorepo root {root}")
        return app.relative_to(root).as_posix()

    @property
    def is_monorepo(self) -> bool:
        return self.app_path.resolve() != self.monorepo_root.resolve()

    @property
    def server_function_dir(self) -> pathlib.Path:
        return self.output_dir / "server-functions" / "default"

    @property
    def server_app_dir(self) -> pathlib.Path:
        return self.server_function_dir / self.package_path

    @property
    def dot_next_dir(self) -> pathlib.Path:
        return self.server_app_dir / ".next"

    @property
    def bundle_path(self) -> pathlib.Path:
        return self.server_app_dir / BUNDLE_FILENAME


@dataclass(frozen=True, slots=True)
class ServerManifest:
    """What the build needs from the framework's server manifest.

    :ivar next_config: The framework ``config`` object.
    :ivar use_turbopack: The server was compiled by turbopack.
    """

    next_config: dict[str, object]
    use_turbopack: bool


def read_server_manifest(dot_next_dir: pathlib.Path) -> ServerManifest:
    """Read ``required-server-files.json`` and detect the compilation mode.

    :param dot_next_dir: The framework's ``.next`` directory in the server tree.
    :returns: Server manifest.
    :raises ConfigurationError: If the manifest is missing, unparsable or has no ``config`` object.
    """

    manifest_path: pathlib.Path = dot_next_dir / SERVER_FILES_MANIFEST
    try:
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Server manifest not found: {manifest_path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read server manifest {manifest_path}: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("config"), dict):
        raise ConfigurationError(f"Server manifest {manifest_path} has no 'config' object")

    return ServerManifest(
        next_config=payload["config"],
        use_turbopack=(dot_next_dir / TURBOPACK_RUNTIME_RELPATH).exists(),
    )


def needs_experimental_react(next_config: dict[str, object]) -> bool:
    """Check if the app uses features that need the experimental React build."""

    experimental = next_config.get("experimental")
    if not isinstance(experimental, dict):
        return False
    for key in ("ppr", "taint", "viewTransition", "routerBFCache"):
        if experimental.get(key):
            return True
    return False


def build_defines(manifest: ServerManifest) -> dict[str, str]:
    """Compute the global substitutions handed to the bundler.

    :param manifest: Server manifest.
    :returns: Identifier to JS expression map.
    """

    config_json: str = json.dumps(manifest.next_config, separators=(",", ":"))
    defines: dict[str, str] = {
        # The framework reads its standalone config from this variable as a JSON string.
        "process.env.__NEXT_PRIVATE_STANDALONE_CONFIG": json.dumps(config_json),
        "__dirname": '""',
        "__non_webpack_require__": "require",
    }
    if manifest.use_turbopack is False:
        defines["process.env.TURBOPACK"] = "false"
    defines["process.env.NEXT_RUNTIME"] = '"nodejs"'
    defines["process.env.NODE_ENV"] = '"production"'
    defines["process.env.__NEXT_EXPERIMENTAL_REACT"] = "true" if needs_experimental_react(manifest.next_config) else "false"
    defines["process.env.__NEXT_TRUST_HOST_HEADER"] = "true"
    return defines


def install_shims(output_dir: pathlib.Path) -> pathlib.Path:
    """Copy the shim modules into the build output.

    :param output_dir: Build output directory.
    :returns: Directory holding the shims.
    """

    shim_root: pathlib.Path = output_dir / SHIM_DIR_RELPATH
    shutil.copytree(_TEMPLATES_DIR / "shims", shim_root, dirs_exist_ok=True)
    return shim_root


class SourceEdits:
    """Edits written into the server tree for one engine run.

    The engine reads the module graph from disk, so committed rewrites and
    source replacements are written in place. The original bytes of every
    touched file are kept and put back by :meth:`restore`, leaving the tree
    as the framework produced it and ready for another build.

    :param source_root: Root the rewrite pass visited.
    """

    def __init__(self, source_root: pathlib.Path) -> None:
        self._root: pathlib.Path = source_root.resolve()
        self._originals: dict[pathlib.Path, bytes | None] = {}

    def write(self, rel: str, content: str, *, rule_id: str) -> None:
        """Write ``content`` to ``rel`` under the source root.

        :param rel: Virtual (source-root relative, POSIX) path.
        :param content: New file content.
        :param rule_id: Rule reported if ``rel`` escapes the source root.
        :raises RuleApplicationError: If ``rel`` points outside the source root.
        """

        target: pathlib.Path = (self._root / rel).resolve()
        if target.is_relative_to(self._root) is False:
            raise RuleApplicationError(rule_id, rel, f"path escapes {self._root}")
        if target not in self._originals:
            self._originals[target] = target.read_bytes() if target.exists() is True else None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8", errors="surrogateescape")

    def restore(self) -> int:
        """Put every touched file back; files that did not exist are removed.

        :returns: Number of files restored.
        """

        restored: int = 0
        while len(self._originals) > 0:
            target, original = self._originals.popitem()
            if original is None:
                target.unlink(missing_ok=True)
            else:
                target.write_bytes(original)
            restored += 1
        return restored


def apply_effects(
    request: BuildRequest,
    effects: tuple[Effect, ...],
    *,
    edits: SourceEdits,
    logger: logging.Logger,
) -> BuildRequest:
    """Apply effects collected during the rewrite pass.

    External effects are appended to the request (once each); source
    replacements are written through ``edits`` and must stay inside the
    source root.

    :param request: Request built from the resolution policy.
    :param effects: Collected effects, in emission order.
    :param edits: Edit ledger for the server tree.
    :param logger: Logger.
    :returns: Updated request.
    :raises RuleApplicationError: If a replacement points outside the source root.
    """

    external: list[str] = list(request.external)
    for effect in effects:
        if isinstance(effect, ExternalEffect):
            if effect.module_id not in external:
                external.append(effect.module_id)
                logger.info(f"worker-bundler: marked {effect.module_id!r} external")
        elif isinstance(effect, SourceReplacementEffect):
            edits.write(effect.path, effect.content, rule_id="source-replacement")
            logger.info(f"worker-bundler: replaced source {effect.path}")
    return replace(request, external=tuple(external))


def write_metadata_sidecar(result: BuildResult) -> pathlib.Path:
    """Write the engine metafile next to the artifact."""

    sidecar: pathlib.Path = pathlib.Path(f"{result.outfile}{METADATA_SUFFIX}")
    sidecar.write_text(json.dumps(result.metafile, indent=2), encoding="utf-8")
    return sidecar


def write_monorepo_entry(options: BuildOptions) -> pathlib.Path:
    """Re-export the nested bundle from the server function root.

    :param options: Build options.
    :returns: Path of the re-export module.
    """

    entry: pathlib.Path = options.server_function_dir / BUNDLE_FILENAME
    entry.write_text(
        f'export {{ handler }} from "./{options.package_path}/{BUNDLE_FILENAME}";',
        encoding="utf-8",
    )
    return entry


def _output_paths(options: BuildOptions) -> list[pathlib.Path]:
    paths: list[pathlib.Path] = [
        options.bundle_path,
        pathlib.Path(f"{options.bundle_path}{METADATA_SUFFIX}"),
    ]
    if options.is_monorepo is True:
        paths.append(options.server_function_dir / BUNDLE_FILENAME)
    return paths


def _remove_outputs(options: BuildOptions) -> None:
    for p in _output_paths(options):
        p.unlink(missing_ok=True)


def bundle_server(
    options: BuildOptions,
    *,
    config: ProjectConfig | None = None,
    engine: BundlingEngine | None = None,
    extra_rules: tuple[RewriteRule, ...] = (),
    large_patch: PatchStrategy | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Bundle the server tree into a single worker module.

    :param options: Build options.
    :param config: Project configuration (defaults when ``None``).
    :param engine: Bundling engine (esbuild when ``None``).
    :param extra_rules: Rewrite rules registered after the config-declared ones.
    :param large_patch: Optional strategy override for large artifacts.
    :param logger: Optional logger.
    :returns: Path of the bundled module.
    :raises BuildError: On any fatal condition; no bundle is left behind.
    """

    if logger is None:
        logger = logging.getLogger(LOGGER_NAME)
    if config is None:
        config = ProjectConfig()
    if engine is None:
        engine = EsbuildEngine(search_dirs=(options.app_path, options.monorepo_root), logger=logger)

    t_total0: float = time.perf_counter()
    manifest: ServerManifest = read_server_manifest(options.dot_next_dir)
    entry_point: pathlib.Path = options.server_app_dir / ENTRY_FILENAME
    if entry_point.is_file() is False:
        raise ConfigurationError(f"Server entry not found: {entry_point}")

    logger.info("worker-bundler: bundling the server...")
    logger.info(f"worker-bundler: server={options.server_app_dir}")
    logger.info(f"worker-bundler: mode={'turbopack' if manifest.use_turbopack is True else 'webpack'}")

    bundle_config: BundleConfiguration = resolve_custom_aliases(config.bundle, base_dir=options.app_path)
    shim_root: pathlib.Path = install_shims(options.output_dir)
    policy: ResolutionPolicy = compute_resolution_policy(bundle_config, shim_root)
    policy, stubbed = alias_missing_optional_dependencies(
        policy,
        config=bundle_config,
        search_roots=[options.server_function_dir, options.server_app_dir],
        shim_root=shim_root,
    )
    if len(stubbed) > 0:
        logger.info(f"worker-bundler: optional dependencies not installed: {', '.join(stubbed)}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"worker-bundler: {len(policy.external)} external, {len(policy.aliases)} aliased modules")

    updater: ContentUpdater = assemble_updater(config.bundle.rewrites, extra=extra_rules, logger=logger)

    _remove_outputs(options)
    try:
        stats: VisitStats = engine.visit(options.server_function_dir, updater)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"worker-bundler: visit stats={stats}")

        request: BuildRequest = BuildRequest(
            entry_point=entry_point,
            outfile=options.bundle_path,
            external=policy.external,
            alias=dict(policy.aliases),
            define=build_defines(manifest),
            conditions=("workerd",) if config.use_workerd_condition is True else (),
            banner_js=TIMERS_BANNER,
            minify=options.minify is True and options.debug is False,
        )
        edits: SourceEdits = SourceEdits(options.server_function_dir)
        try:
            for rel, content in sorted(updater.pending_edits.items()):
                edits.write(rel, content, rule_id=COMMIT_RULE_ID)
            request = apply_effects(request, updater.effects, edits=edits, logger=logger)
            result: BuildResult = engine.bundle(request)
        finally:
            restored: int = edits.restore()
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"worker-bundler: restored {restored} rewritten source files")

        report: PatchReport = patch_bundled_artifact(result.outfile, large=large_patch, logger=logger)
        logger.info(
            f"worker-bundler: bundle {result.outfile.stat().st_size / (1024 * 1024):.1f} MiB "
            f"(patch={report.strategy}, patched={report.patched})"
        )
        write_metadata_sidecar(result)

        if options.is_monorepo is True:
            write_monorepo_entry(options)
    except Exception:
        _remove_outputs(options)
        raise

    t_total1: float = time.perf_counter()
    logger.info(f"worker-bundler: worker saved in {options.bundle_path} ({t_total1 - t_total0:.2f}s)")
    return options.bundle_path
