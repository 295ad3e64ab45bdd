from __future__ import annotations

from pathlib import Path

import pytest

from worker_bundler.config import BundleConfiguration
from worker_bundler.defaults import DefaultTables
from worker_bundler.errors import ConfigurationError
from worker_bundler.policy import (
    ShimPaths,
    compute_alias_map,
    compute_resolution_policy,
    resolve_custom_aliases,
    validate_custom_aliases,
)

TABLES = DefaultTables(
    external=("ext-default",),
    stub_empty=("shared", "empty-default"),
    stub_throw=("shared", "throw-default"),
    stub_fetch=("fetch-default",),
    stub_env=("env-default",),
    stub_styled_jsx=("styled-jsx",),
    optional_dependencies=(),
)


def test_alias_map_without_defaults_contains_only_user_entries(tmp_path: Path) -> None:
    shims = ShimPaths.under(tmp_path)
    config = BundleConfiguration(
        stub_empty=("a",),
        stub_throw=("b",),
        stub_fetch=("c",),
        stub_env=("d",),
        custom_aliases={"e": "preact/compat"},
        include_defaults=False,
    )

    alias = compute_alias_map(config, tmp_path, TABLES)

    assert alias == {
        "a": shims.empty,
        "b": shims.throw,
        "c": shims.fetch,
        "d": shims.env,
        "e": "preact/compat",
    }


def test_later_default_pass_overwrites_earlier_one(tmp_path: Path) -> None:
    alias = compute_alias_map(BundleConfiguration(), tmp_path, TABLES)

    assert alias["shared"] == ShimPaths.under(tmp_path).throw
    assert alias["styled-jsx"] == ShimPaths.under(tmp_path).empty
    assert alias["fetch-default"] == ShimPaths.under(tmp_path).fetch


def test_user_stub_lists_override_defaults(tmp_path: Path) -> None:
    config = BundleConfiguration(stub_env=("throw-default",), stub_fetch=("env-default",))

    alias = compute_alias_map(config, tmp_path, TABLES)

    assert alias["throw-default"] == ShimPaths.under(tmp_path).env
    assert alias["env-default"] == ShimPaths.under(tmp_path).fetch


@pytest.mark.parametrize("module_id", ["empty-default", "throw-default", "fetch-default", "env-default", "styled-jsx"])
def test_custom_alias_has_final_precedence(tmp_path: Path, module_id: str) -> None:
    config = BundleConfiguration(
        stub_empty=(module_id,),
        stub_throw=(module_id,),
        custom_aliases={module_id: "./vendor/replacement.js"},
    )

    alias = compute_alias_map(config, tmp_path, TABLES)

    assert alias[module_id] == "./vendor/replacement.js"


def test_resolution_policy_may_both_alias_and_externalize(tmp_path: Path) -> None:
    config = BundleConfiguration(external=("empty-default",))

    policy = compute_resolution_policy(config, tmp_path, TABLES)

    assert "empty-default" in policy.external_set
    assert policy.aliases["empty-default"] == ShimPaths.under(tmp_path).empty
    assert policy.external == ("ext-default", "empty-default")


def test_missing_custom_alias_file_is_rejected(tmp_path: Path) -> None:
    config = BundleConfiguration(custom_aliases={"heavy": "./shims/heavy.js"})

    with pytest.raises(ConfigurationError, match="heavy"):
        validate_custom_aliases(config, base_dir=tmp_path)


def test_existing_custom_alias_file_and_package_ids_are_accepted(tmp_path: Path) -> None:
    (tmp_path / "shims").mkdir()
    (tmp_path / "shims" / "heavy.js").write_text("export default {};", encoding="utf-8")
    config = BundleConfiguration(
        custom_aliases={"heavy": "./shims/heavy.js", "react": "preact/compat"},
    )

    validate_custom_aliases(config, base_dir=tmp_path)


def test_relative_alias_targets_are_anchored_to_base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app = tmp_path / "app"
    (app / "shims").mkdir(parents=True)
    (app / "shims" / "rn.js").write_text("export default {};", encoding="utf-8")
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    config = BundleConfiguration(
        custom_aliases={"react-native": "./shims/rn.js", "react": "preact/compat"},
    )

    resolved = resolve_custom_aliases(config, base_dir=app)

    assert resolved.custom_aliases["react-native"] == str((app / "shims" / "rn.js").resolve())
    assert resolved.custom_aliases["react"] == "preact/compat"
    assert config.custom_aliases["react-native"] == "./shims/rn.js"


def test_policy_and_config_alias_maps_are_read_only(tmp_path: Path) -> None:
    source = {"heavy": "preact/compat"}
    config = BundleConfiguration(custom_aliases=source)
    policy = compute_resolution_policy(config, tmp_path, TABLES)

    source["heavy"] = "changed-later"
    with pytest.raises(TypeError):
        config.custom_aliases["other"] = "x"  # type: ignore[index]
    with pytest.raises(TypeError):
        policy.aliases["heavy"] = "x"  # type: ignore[index]

    assert config.custom_aliases["heavy"] == "preact/compat"
    assert policy.aliases["heavy"] == "preact/compat"
    assert policy.with_aliases({"extra": "y"}).aliases["heavy"] == "preact/compat"
