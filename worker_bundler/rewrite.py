"""Rewrite rules and the content updater.

A :class:`RewriteRule` pairs a matcher (path and/or content regex) with a
transform. The :class:`ContentUpdater` owns the ordered rule registry for one
pipeline run and is handed to the bundling engine, which calls
:meth:`ContentUpdater.on_file_visited` once per source file. Matching rules run
in registration order, each seeing the previous rule's output. The terminal
commit rule is appended by the constructor and records the final text in the
pending-edit ledger; the builder writes the ledger into the tree for the
engine run and restores the original files afterwards.

Rules that need a change outside the visited file (another module made
external, another file replaced) emit an effect through the
:class:`RuleContext`. Effects are collected and applied after the visit pass,
never while the engine is walking the tree.
"""

from dataclasses import dataclass, field
import logging
import re
import threading
from typing import Iterable, Protocol

from worker_bundler import LOGGER_NAME
from worker_bundler.config import LiteralRewrite
from worker_bundler.errors import RuleApplicationError

COMMIT_RULE_ID: str = "commit"


@dataclass(frozen=True, slots=True)
class ExternalEffect:
    """Ask the bundler to leave ``module_id`` to the host runtime."""

    module_id: str


@dataclass(frozen=True, slots=True)
class SourceReplacementEffect:
    """Replace the content of another file under the source root.

    :ivar path: Virtual (source-root relative, POSIX) path of the file.
    :ivar content: New file content.
    """

    path: str
    content: str


Effect = ExternalEffect | SourceReplacementEffect


@dataclass(slots=True)
class RuleContext:
    """Per-visit context handed to a rule transform.

    :ivar path: Virtual path of the visited file.
    :ivar original: File content before any rule ran.
    """

    path: str
    original: str
    emitted: list[Effect] = field(default_factory=list)

    def emit(self, effect: Effect) -> None:
        self.emitted.append(effect)


class TransformFn(Protocol):
    """Rule transform signature."""

    def __call__(self, content: str, ctx: RuleContext) -> str:
        """Return the rewritten content."""


@dataclass(frozen=True, slots=True)
class RewriteRule:
    """A stateless rewrite rule.

    :ivar id: Identifier used in diagnostics.
    :ivar transform: Content transform.
    :ivar path_pattern: Regex searched against the virtual path (``None`` matches all).
    :ivar content_pattern: Regex searched against the content (``None`` matches all).
    """

    id: str
    transform: TransformFn
    path_pattern: re.Pattern[str] | None = None
    content_pattern: re.Pattern[str] | None = None

    def matches_path(self, path: str) -> bool:
        if self.path_pattern is None:
            return True
        return self.path_pattern.search(path) is not None

    def matches(self, path: str, content: str) -> bool:
        if self.matches_path(path) is False:
            return False
        if self.content_pattern is None:
            return True
        return self.content_pattern.search(content) is not None


class ContentUpdater:
    """Ordered rewrite pipeline for a single bundling pass.

    The commit rule is always the last entry of :attr:`rules`; :meth:`register`
    inserts new rules in front of it.

    :param rules: Rules to register, in order.
    :param logger: Optional logger.
    """

    def __init__(self, rules: Iterable[RewriteRule] = (), *, logger: logging.Logger | None = None) -> None:
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger(LOGGER_NAME)
        self._pending: dict[str, str] = {}
        self._effects: list[Effect] = []
        self._lock: threading.Lock = threading.Lock()
        commit: RewriteRule = RewriteRule(id=COMMIT_RULE_ID, transform=self._commit)
        self._rules: tuple[RewriteRule, ...] = (*rules, commit)

    @property
    def rules(self) -> tuple[RewriteRule, ...]:
        return self._rules

    @property
    def pending_edits(self) -> dict[str, str]:
        """Committed file contents keyed by virtual path (a copy)."""

        with self._lock:
            return dict(self._pending)

    @property
    def effects(self) -> tuple[Effect, ...]:
        with self._lock:
            return tuple(self._effects)

    def register(self, rule: RewriteRule) -> None:
        """Append ``rule`` to the registry, ahead of the commit step."""

        self._rules = (*self._rules[:-1], rule, self._rules[-1])

    def wants(self, path: str) -> bool:
        """Check if any non-commit rule could match ``path``.

        Lets the engine skip reading files that no rule cares about.
        """

        for rule in self._rules[:-1]:
            if rule.matches_path(path) is True:
                return True
        return False

    def on_file_visited(self, path: str, content: str) -> str:
        """Apply every matching rule to one visited file.

        :param path: Virtual path of the file.
        :param content: File content as read by the engine.
        :returns: Content after all matching rules ran.
        :raises RuleApplicationError: If any rule fails.
        """

        ctx: RuleContext = RuleContext(path=path, original=content)
        for rule in self._rules:
            if rule.matches(path, content) is False:
                continue
            try:
                content = rule.transform(content, ctx)
            except RuleApplicationError:
                raise
            except Exception as e:
                raise RuleApplicationError(rule.id, path, f"{type(e).__name__}: {e}") from e
            if not isinstance(content, str):
                raise RuleApplicationError(rule.id, path, "transform did not return text")

        if len(ctx.emitted) > 0:
            with self._lock:
                self._effects.extend(ctx.emitted)
        return content

    def _commit(self, content: str, ctx: RuleContext) -> str:
        if content != ctx.original:
            with self._lock:
                self._pending[ctx.path] = content
            if self._logger.isEnabledFor(logging.DEBUG) is True:
                self._logger.debug(f"worker-bundler: rewrote {ctx.path}")
        return content


def literal_rule(
    *,
    rule_id: str,
    path: str,
    find: str,
    replace: str,
    required: bool = True,
    logger: logging.Logger | None = None,
) -> RewriteRule:
    """Build a rule replacing every occurrence of ``find`` in matching files.

    :param rule_id: Rule identifier.
    :param path: Regex searched against the virtual path.
    :param find: Literal text to replace.
    :param replace: Replacement text.
    :param required: Raise when ``find`` is absent; otherwise warn and keep the file as is.
    :param logger: Optional logger for the not-found warning.
    :returns: Rewrite rule.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger(LOGGER_NAME)

    def transform(content: str, ctx: RuleContext) -> str:
        if find not in content:
            if required is True:
                raise RuleApplicationError(rule_id, ctx.path, f"expected text not found: {find!r}")
            log.warning(f"worker-bundler: rule {rule_id!r} found nothing to patch in {ctx.path}")
            return content
        return content.replace(find, replace)

    return RewriteRule(id=rule_id, transform=transform, path_pattern=re.compile(path))


def rules_from_config(rewrites: Iterable[LiteralRewrite], *, logger: logging.Logger | None = None) -> list[RewriteRule]:
    """Turn ``[[bundle.rewrites]]`` entries into literal rules, preserving order."""

    return [
        literal_rule(
            rule_id=r.id,
            path=r.path,
            find=r.find,
            replace=r.replace,
            required=r.required,
            logger=logger,
        )
        for r in rewrites
    ]


_ASSET_IMPORT_RE: re.Pattern[str] = re.compile(r"""["'][^"'\s]+(\.wasm\?module|\.wasm|\.bin)["']""")


def _mark_asset_imports_external(content: str, ctx: RuleContext) -> str:
    # esbuild matches a wildcard external against the import path as written;
    # a literal relative path would only be compared after resolution.
    seen: set[str] = set()
    for m in _ASSET_IMPORT_RE.finditer(content):
        pattern: str = f"*{m.group(1)}"
        if pattern not in seen:
            seen.add(pattern)
            ctx.emit(ExternalEffect(module_id=pattern))
    return content


def wasm_module_external() -> RewriteRule:
    """Leave ``.wasm``, ``.wasm?module`` and ``.bin`` imports to the runtime's module loader."""

    return RewriteRule(
        id="wasm-module-external",
        transform=_mark_asset_imports_external,
        path_pattern=re.compile(r"\.(?:m|c)?js$"),
        content_pattern=_ASSET_IMPORT_RE,
    )


_DEPD_EARLY_RETURN: str = "\n  return arguments[0];"
# Wrappers that already return early are left as they are.
_DEPD_WRAP_RE: re.Pattern[str] = re.compile(
    r"(function wrap(?:function|property) ?\((?:fn|obj), [^)]*\) \{)(?!" + re.escape(_DEPD_EARLY_RETURN) + r")"
)


def depd_deprecations(*, logger: logging.Logger | None = None) -> RewriteRule:
    """Stop ``depd`` from generating wrapper code at runtime.

    The worker runtime forbids ``eval`` and ``new Function``; the wrappers only
    print deprecation warnings, so they return the wrapped value untouched.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger(LOGGER_NAME)

    def transform(content: str, ctx: RuleContext) -> str:
        patched, count = _DEPD_WRAP_RE.subn(lambda m: m.group(1) + _DEPD_EARLY_RETURN, content)
        if count == 0 and _DEPD_EARLY_RETURN not in content:
            log.warning(f"worker-bundler: depd wrappers not found in {ctx.path}; left unpatched")
        return patched

    return RewriteRule(
        id="depd-deprecations",
        transform=transform,
        path_pattern=re.compile(r"(?:^|/)node_modules/depd/index\.js$"),
    )


def builtin_rules(*, logger: logging.Logger | None = None) -> list[RewriteRule]:
    """Rules registered ahead of config-declared rules on every build."""

    return [wasm_module_external(), depd_deprecations(logger=logger)]


def assemble_updater(
    rewrites: Iterable[LiteralRewrite] = (),
    *,
    extra: Iterable[RewriteRule] = (),
    logger: logging.Logger | None = None,
) -> ContentUpdater:
    """Assemble the updater: built-ins, config rules, ``extra``, then commit.

    :param rewrites: Config-declared literal rules.
    :param extra: Additional rules supplied by the caller.
    :param logger: Optional logger.
    :returns: Content updater.
    """

    rules: list[RewriteRule] = [*builtin_rules(logger=logger), *rules_from_config(rewrites, logger=logger)]
    rules.extend(extra)
    return ContentUpdater(rules, logger=logger)

