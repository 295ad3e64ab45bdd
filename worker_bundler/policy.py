"""Module resolution policy.

Decides, per module id, whether the bundler inlines it, leaves it external for
the host runtime, or replaces it with a shim. Everything here is a pure function
of the configuration and the default tables, apart from the helpers that look
at the filesystem: custom alias validation (:func:`resolve_custom_aliases`) and
:func:`alias_missing_optional_dependencies`.
"""

from dataclasses import dataclass, field, replace
import pathlib
import types
from typing import Mapping

from worker_bundler.config import BundleConfiguration
from worker_bundler.defaults import DEFAULT_TABLES, DefaultTables
from worker_bundler.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class ShimPaths:
    """Locations of the four substitute modules.

    :ivar empty: Empty-exports shim.
    :ivar throw: Shim that throws when used.
    :ivar fetch: Shim re-exporting the runtime's native fetch.
    :ivar env: Shim for env loaders.
    """

    empty: str
    throw: str
    fetch: str
    env: str

    @classmethod
    def under(cls, shim_root: pathlib.Path) -> "ShimPaths":
        """Build the shim paths for a shim directory.

        :param shim_root: Directory holding ``empty.js``, ``throw.js``, ``fetch.js`` and ``env.js``.
        :returns: Shim paths.
        """

        return cls(
            empty=str(shim_root / "empty.js"),
            throw=str(shim_root / "throw.js"),
            fetch=str(shim_root / "fetch.js"),
            env=str(shim_root / "env.js"),
        )


@dataclass(frozen=True, slots=True)
class ResolutionPolicy:
    """Resolution decisions for one pipeline run.

    A module id may be both aliased and external; the engine consults the alias
    first and never inlines whatever the alias resolves to.

    :ivar external: Modules left to the host runtime, in declaration order.
    :ivar aliases: Module id to substitute module path.
    """

    external: tuple[str, ...]
    aliases: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "aliases", types.MappingProxyType(dict(self.aliases)))

    @property
    def external_set(self) -> frozenset[str]:
        return frozenset(self.external)

    def with_aliases(self, extra: Mapping[str, str]) -> "ResolutionPolicy":
        """Return a copy with ``extra`` added; existing aliases are kept."""

        merged: dict[str, str] = dict(extra)
        merged.update(self.aliases)
        return ResolutionPolicy(external=self.external, aliases=merged)


def compute_external(
    config: BundleConfiguration,
    defaults: DefaultTables = DEFAULT_TABLES,
) -> list[str]:
    """Compute the list of modules the bundler must not inline.

    :param config: User bundle configuration.
    :param defaults: Built-in tables.
    :returns: Defaults followed by user entries (or the user entries alone).
    """

    if config.include_defaults is True:
        return [*defaults.external, *config.external]
    return list(config.external)


def compute_alias_map(
    config: BundleConfiguration,
    shim_root: pathlib.Path,
    defaults: DefaultTables = DEFAULT_TABLES,
) -> dict[str, str]:
    """Compute the module id to substitute path map.

    The map is built in passes and a later pass overwrites any earlier entry for
    the same module id: default stub tables, then the user's stub lists, then
    ``custom_aliases`` verbatim.

    :param config: User bundle configuration.
    :param shim_root: Directory holding the shim modules.
    :param defaults: Built-in tables.
    :returns: Alias map.
    """

    shims: ShimPaths = ShimPaths.under(shim_root)
    passes: list[tuple[tuple[str, ...], str]] = []
    if config.include_defaults is True:
        passes.extend(
            [
                (defaults.stub_empty, shims.empty),
                (defaults.stub_throw, shims.throw),
                (defaults.stub_fetch, shims.fetch),
                (defaults.stub_env, shims.env),
                (defaults.stub_styled_jsx, shims.empty),
            ]
        )
    passes.extend(
        [
            (config.stub_empty, shims.empty),
            (config.stub_throw, shims.throw),
            (config.stub_fetch, shims.fetch),
            (config.stub_env, shims.env),
        ]
    )

    alias: dict[str, str] = {}
    for module_ids, target in passes:
        for module_id in module_ids:
            alias[module_id] = target

    # Custom aliases take precedence over every stub category.
    for module_id, target in config.custom_aliases.items():
        alias[module_id] = target

    return alias


def compute_resolution_policy(
    config: BundleConfiguration,
    shim_root: pathlib.Path,
    defaults: DefaultTables = DEFAULT_TABLES,
) -> ResolutionPolicy:
    """Compute the full policy for one run.

    :param config: User bundle configuration.
    :param shim_root: Directory holding the shim modules.
    :param defaults: Built-in tables.
    :returns: Resolution policy.
    """

    return ResolutionPolicy(
        external=tuple(compute_external(config, defaults)),
        aliases=compute_alias_map(config, shim_root, defaults),
    )


def validate_custom_aliases(config: BundleConfiguration, *, base_dir: pathlib.Path) -> None:
    """Check that custom alias targets given as filesystem paths exist.

    Bare package ids (``preact/compat``) are left to the bundling engine.

    :param config: User bundle configuration.
    :param base_dir: Directory relative targets are resolved against.
    :raises ConfigurationError: If a path target is missing.
    """

    for module_id, target in config.custom_aliases.items():
        if _looks_like_path(target) is False:
            continue
        candidate: pathlib.Path = _anchor(target, base_dir)
        if candidate.exists() is False:
            raise ConfigurationError(
                f"Custom alias for {module_id!r} points to a missing file: {target} (resolved to {candidate})"
            )


def resolve_custom_aliases(config: BundleConfiguration, *, base_dir: pathlib.Path) -> BundleConfiguration:
    """Validate custom aliases and anchor relative path targets to ``base_dir``.

    The bundling engine resolves path aliases against its own working
    directory, so ``./shims/rn.js`` is rewritten to an absolute path under
    ``base_dir``. Bare package ids are kept as written.

    :param config: User bundle configuration.
    :param base_dir: Directory relative targets are resolved against.
    :returns: Configuration whose path targets are absolute.
    :raises ConfigurationError: If a path target is missing.
    """

    validate_custom_aliases(config, base_dir=base_dir)
    anchored: dict[str, str] = {}
    for module_id, target in config.custom_aliases.items():
        if _looks_like_path(target) is True:
            anchored[module_id] = str(_anchor(target, base_dir))
        else:
            anchored[module_id] = target
    return replace(config, custom_aliases=anchored)


def alias_missing_optional_dependencies(
    policy: ResolutionPolicy,
    *,
    config: BundleConfiguration,
    search_roots: list[pathlib.Path],
    shim_root: pathlib.Path,
    defaults: DefaultTables = DEFAULT_TABLES,
) -> tuple[ResolutionPolicy, list[str]]:
    """Route optional dependencies that are not installed to the throw shim.

    Installed optional dependencies are bundled normally; modules that already
    have an alias keep it.

    :param policy: Policy computed from the configuration.
    :param config: User bundle configuration.
    :param search_roots: Directories whose ``node_modules`` are searched.
    :param shim_root: Directory holding the shim modules.
    :param defaults: Built-in tables.
    :returns: Updated policy and the module ids that were stubbed.
    """

    if config.include_defaults is False:
        return policy, []

    throw_shim: str = ShimPaths.under(shim_root).throw
    missing: list[str] = []
    for module_id in defaults.optional_dependencies:
        if module_id in policy.aliases:
            continue
        if _module_installed(module_id, search_roots) is False:
            missing.append(module_id)

    if len(missing) == 0:
        return policy, []
    return policy.with_aliases({module_id: throw_shim for module_id in missing}), missing


def _looks_like_path(target: str) -> bool:
    if target.startswith("./") or target.startswith("../"):
        return True
    return pathlib.Path(target).is_absolute()


def _anchor(target: str, base_dir: pathlib.Path) -> pathlib.Path:
    candidate: pathlib.Path = pathlib.Path(target)
    if candidate.is_absolute() is True:
        return candidate
    return (base_dir / candidate).resolve()


def _module_installed(module_id: str, search_roots: list[pathlib.Path]) -> bool:
    """Check if a module id can be found under any ``node_modules`` directory.

    :param module_id: Package name, optionally with a subpath.
    :param search_roots: Directories whose ``node_modules`` are searched.
    :returns: ``True`` if a matching directory or file exists.
    """

    for root in search_roots:
        candidate: pathlib.Path = root / "node_modules" / module_id
        if candidate.exists() is True:
            return True
        for suffix in (".js", ".cjs", ".mjs"):
            if pathlib.Path(f"{candidate}{suffix}").is_file() is True:
                return True
    return False
