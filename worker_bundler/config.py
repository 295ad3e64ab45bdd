"""User configuration loading.

The configuration lives in an optional ``worker-bundler.toml`` next to the
application. It has two tables:

- ``[bundle]`` controls module resolution (externals, stubs, aliases) and may
  declare literal ``[[bundle.rewrites]]`` rules.
- ``[build]`` holds the remaining build knobs.

Missing keys fall back to defaults. Unknown keys and wrong types are rejected
with a :class:`~worker_bundler.errors.ConfigurationError` naming the field.
"""

from dataclasses import dataclass, field
import pathlib
import re
import tomllib
import types
from typing import Mapping

from worker_bundler.errors import ConfigurationError

CONFIG_FILENAME: str = "worker-bundler.toml"


@dataclass(frozen=True, slots=True)
class LiteralRewrite:
    """A config-declared literal rewrite rule.

    :ivar id: Rule identifier used in diagnostics.
    :ivar path: Regular expression searched against a file's virtual path.
    :ivar find: Literal text to replace (all occurrences).
    :ivar replace: Replacement text.
    :ivar required: Whether a missing ``find`` text aborts the build.
    """

    id: str
    path: str
    find: str
    replace: str
    required: bool = True


@dataclass(frozen=True, slots=True)
class BundleConfiguration:
    """Module resolution settings supplied by the user.

    :ivar external: Extra modules the bundler must never inline.
    :ivar stub_empty: Modules replaced with the empty shim.
    :ivar stub_throw: Modules replaced with the throwing shim.
    :ivar stub_fetch: Modules replaced with the fetch shim.
    :ivar stub_env: Modules replaced with the env shim.
    :ivar custom_aliases: Module id to replacement path; applied last.
    :ivar include_defaults: Merge the built-in tables when ``True``.
    :ivar rewrites: Literal rewrite rules, in declaration order.
    """

    external: tuple[str, ...] = ()
    stub_empty: tuple[str, ...] = ()
    stub_throw: tuple[str, ...] = ()
    stub_fetch: tuple[str, ...] = ()
    stub_env: tuple[str, ...] = ()
    custom_aliases: Mapping[str, str] = field(default_factory=dict)
    include_defaults: bool = True
    rewrites: tuple[LiteralRewrite, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "custom_aliases", types.MappingProxyType(dict(self.custom_aliases)))


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    """Fully loaded configuration.

    :ivar bundle: Module resolution settings.
    :ivar use_workerd_condition: Enable the ``workerd`` export condition.
    :ivar source: File the configuration was read from, if any.
    """

    bundle: BundleConfiguration = field(default_factory=BundleConfiguration)
    use_workerd_condition: bool = True
    source: pathlib.Path | None = None


_BUNDLE_LIST_KEYS: tuple[str, ...] = ("external", "stub_empty", "stub_throw", "stub_fetch", "stub_env")
_BUNDLE_KEYS: frozenset[str] = frozenset(
    (*_BUNDLE_LIST_KEYS, "custom_aliases", "include_defaults", "rewrites")
)
_BUILD_KEYS: frozenset[str] = frozenset(("use_workerd_condition",))
_REWRITE_KEYS: frozenset[str] = frozenset(("id", "path", "find", "replace", "required"))


def load_project_config(
    *,
    app_path: pathlib.Path,
    config_path: pathlib.Path | None = None,
) -> ProjectConfig:
    """Load the project configuration.

    :param app_path: Application directory searched for ``worker-bundler.toml``.
    :param config_path: Optional explicit configuration file.
    :returns: Loaded configuration (defaults when no file exists).
    :raises ConfigurationError: If the file is unreadable or invalid.
    """

    path: pathlib.Path
    if config_path is not None:
        if config_path.is_file() is False:
            raise ConfigurationError(f"Config file does not exist: {config_path}")
        path = config_path
    else:
        path = app_path / CONFIG_FILENAME
        if path.is_file() is False:
            return ProjectConfig()

    try:
        with path.open("rb") as handle:
            payload: dict[str, object] = tomllib.load(handle)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

    return parse_project_config(payload, source=path)


def parse_project_config(payload: dict[str, object], *, source: pathlib.Path | None = None) -> ProjectConfig:
    """Build a :class:`ProjectConfig` from a decoded TOML document.

    :param payload: Top-level TOML table.
    :param source: Optional file the payload came from.
    :returns: Validated configuration.
    :raises ConfigurationError: If a field is unknown or has the wrong type.
    """

    unknown: set[str] = set(payload) - {"bundle", "build"}
    if len(unknown) > 0:
        raise ConfigurationError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

    bundle_table: dict[str, object] = _get_table(payload, "bundle")
    build_table: dict[str, object] = _get_table(payload, "build")
    _reject_unknown(bundle_table, _BUNDLE_KEYS, "bundle")
    _reject_unknown(build_table, _BUILD_KEYS, "build")

    lists: dict[str, tuple[str, ...]] = {}
    for key in _BUNDLE_LIST_KEYS:
        lists[key] = _tuple_of_strings(bundle_table.get(key, []), f"bundle.{key}")

    bundle: BundleConfiguration = BundleConfiguration(
        external=lists["external"],
        stub_empty=lists["stub_empty"],
        stub_throw=lists["stub_throw"],
        stub_fetch=lists["stub_fetch"],
        stub_env=lists["stub_env"],
        custom_aliases=_dict_of_strings(bundle_table.get("custom_aliases", {}), "bundle.custom_aliases"),
        include_defaults=_bool(bundle_table.get("include_defaults", True), "bundle.include_defaults"),
        rewrites=_rewrites(bundle_table.get("rewrites", [])),
    )
    return ProjectConfig(
        bundle=bundle,
        use_workerd_condition=_bool(
            build_table.get("use_workerd_condition", True), "build.use_workerd_condition"
        ),
        source=source,
    )


def _get_table(payload: dict[str, object], key: str) -> dict[str, object]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{key}' must be a table.")
    return value


def _reject_unknown(table: dict[str, object], allowed: frozenset[str], section: str) -> None:
    unknown: set[str] = set(table) - allowed
    if len(unknown) > 0:
        names: str = ", ".join(f"{section}.{k}" for k in sorted(unknown))
        raise ConfigurationError(f"Unknown config field(s): {names}")


def _tuple_of_strings(value: object, name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ConfigurationError(f"Config field '{name}' must be a list of strings.")
    for item in value:
        if not isinstance(item, str):
            raise ConfigurationError(f"Config field '{name}' must contain only strings.")
    return tuple(value)


def _dict_of_strings(value: object, name: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config field '{name}' must be a table of strings.")
    for k, v in value.items():
        if not isinstance(v, str):
            raise ConfigurationError(f"Config field '{name}.{k}' must be a string.")
    return dict(value)


def _bool(value: object, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"Config field '{name}' must be a boolean.")
    return value


def _rewrites(value: object) -> tuple[LiteralRewrite, ...]:
    if not isinstance(value, list):
        raise ConfigurationError("Config field 'bundle.rewrites' must be an array of tables.")

    rules: list[LiteralRewrite] = []
    seen: set[str] = set()
    for i, item in enumerate(value):
        name: str = f"bundle.rewrites[{i}]"
        if not isinstance(item, dict):
            raise ConfigurationError(f"Config field '{name}' must be a table.")
        _reject_unknown(item, _REWRITE_KEYS, name)
        fields: dict[str, str] = {}
        for key in ("id", "path", "find", "replace"):
            raw = item.get(key)
            if not isinstance(raw, str):
                raise ConfigurationError(f"Config field '{name}.{key}' must be a string.")
            fields[key] = raw
        if fields["find"] == "":
            raise ConfigurationError(f"Config field '{name}.find' must not be empty.")
        try:
            re.compile(fields["path"])
        except re.error as e:
            raise ConfigurationError(f"Config field '{name}.path' is not a valid regex: {e}") from e
        if fields["id"] in seen:
            raise ConfigurationError(f"Duplicate rewrite id {fields['id']!r} in '{name}'.")
        seen.add(fields["id"])
        rules.append(
            LiteralRewrite(
                id=fields["id"],
                path=fields["path"],
                find=fields["find"],
                replace=fields["replace"],
                required=_bool(item.get("required", True), f"{name}.required"),
            )
        )
    return tuple(rules)
