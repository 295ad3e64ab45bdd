"""Post-bundle marker normalization.

When esbuild renames its CommonJS ``require`` helper to avoid collisions it
emits ``__require(``, ``__require2(``, ``__require.resolve`` and so on. The
worker runtime provides ``require`` directly, so these markers are rewritten
back to ``require(`` / ``require.`` after bundling.

How the file is patched depends on its size:

- up to :data:`IN_PROCESS_MAX_BYTES`: load, substitute, write back;
- up to :data:`EXTERNAL_TOOL_MAX_BYTES`: ``sed`` in place (or a chunked
  streaming rewrite on hosts without ``sed``);
- above that: skip with a warning.

Both substitutions are idempotent, so re-running the patch is a no-op.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import re
import shutil
import subprocess
import sys
import tempfile
from typing import Protocol

from worker_bundler import LOGGER_NAME
from worker_bundler.errors import PatchToolError

MIB: int = 1024 * 1024
IN_PROCESS_MAX_BYTES: int = 100 * MIB
EXTERNAL_TOOL_MAX_BYTES: int = 500 * MIB

_MARKER_RE: re.Pattern[str] = re.compile(r"__require[0-9]*(?=[(.])")

# Anything at the end of a chunk that could still grow into a marker.
_PARTIAL_MARKER_RE: re.Pattern[str] = re.compile(r"_(?:_(?:r(?:e(?:q(?:u(?:i(?:r(?:e[0-9]*)?)?)?)?)?)?)?)?\Z")
_PARTIAL_SCAN_CHARS: int = 64

SED_EXPRESSIONS: tuple[str, ...] = (
    r"s/__require\([0-9]*\)(/require(/g",
    r"s/__require\([0-9]*\)\./require./g",
)


def normalize_markers(text: str) -> str:
    """Rewrite ``__require<digits>(`` and ``__require<digits>.`` in one pass.

    :param text: Bundled code.
    :returns: Code using ``require(`` / ``require.``.
    """

    return _MARKER_RE.sub("require", text)


@dataclass(frozen=True, slots=True)
class PatchReport:
    """Outcome of the patch step.

    :ivar strategy: Name of the strategy that ran.
    :ivar size: Artifact size in bytes when measured.
    :ivar patched: ``True`` if the artifact was patched.
    """

    strategy: str
    size: int
    patched: bool


class PatchStrategy(Protocol):
    """One way of normalizing markers in an artifact on disk."""

    name: str

    def apply(self, path: pathlib.Path, *, size: int, logger: logging.Logger) -> bool:
        """Patch ``path`` in place; return ``True`` if it was patched."""


class InProcessPatch:
    """Load the whole artifact, substitute, write it back."""

    name: str = "in-process"

    def apply(self, path: pathlib.Path, *, size: int, logger: logging.Logger) -> bool:
        code: str = path.read_text(encoding="utf-8", errors="surrogateescape")
        patched: str = normalize_markers(code)
        if patched != code:
            path.write_text(patched, encoding="utf-8", errors="surrogateescape")
        return True


class SedPatch:
    """Run ``sed`` in place, once per marker pattern.

    Any failure is logged and the artifact is left unpatched; there is no
    in-process fallback at this size.

    :param executable: ``sed`` executable.
    :param platform: Platform string used to pick the in-place flag syntax.
    """

    name: str = "sed"

    def __init__(self, *, executable: str = "sed", platform: str = sys.platform) -> None:
        self._executable: str = executable
        self._platform: str = platform

    def apply(self, path: pathlib.Path, *, size: int, logger: logging.Logger) -> bool:
        logger.info(f"worker-bundler: bundle is {size / MIB:.0f} MiB, using sed for patching")
        try:
            for expr in SED_EXPRESSIONS:
                self._run(expr, path)
        except PatchToolError as e:
            logger.warning(f"worker-bundler: sed patching failed, skipping: {e}")
            return False
        return True

    def _run(self, expr: str, path: pathlib.Path) -> None:
        """Run one in-place substitution.

        :param expr: sed expression.
        :param path: Artifact path.
        :raises PatchToolError: If sed cannot run or exits non-zero.
        """

        # BSD sed needs an explicit backup suffix for -i.
        needs_backup: bool = self._platform == "darwin"
        in_place: str = "-i.bak" if needs_backup is True else "-i"
        cmd: list[str] = [self._executable, in_place, expr, str(path)]
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            raise PatchToolError(f"could not run {self._executable}: {e}") from e
        if proc.returncode != 0:
            raise PatchToolError(f"{' '.join(cmd)} exited with {proc.returncode}: {proc.stderr.strip()}")
        if needs_backup is True:
            backup: pathlib.Path = pathlib.Path(f"{path}.bak")
            try:
                backup.unlink()
            except OSError as e:
                raise PatchToolError(f"could not remove sed backup {backup}: {e}") from e


class StreamingPatch:
    """Substitute chunk by chunk into a temporary file, then replace the artifact.

    Memory use is bounded by ``chunk_chars``. A possible partial marker at the
    end of a chunk is carried over to the next one.

    :param chunk_chars: Characters read per chunk.
    """

    name: str = "streaming"

    def __init__(self, *, chunk_chars: int = 4 * MIB) -> None:
        if chunk_chars < _PARTIAL_SCAN_CHARS:
            raise ValueError(f"chunk_chars must be >= {_PARTIAL_SCAN_CHARS}")
        self._chunk_chars: int = chunk_chars

    def apply(self, path: pathlib.Path, *, size: int, logger: logging.Logger) -> bool:
        logger.info(f"worker-bundler: bundle is {size / MIB:.0f} MiB, using streaming patch")
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        tmp: pathlib.Path = pathlib.Path(tmp_name)
        try:
            with (
                open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as src,
                open(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as dst,
            ):
                carry: str = ""
                while True:
                    chunk: str = src.read(self._chunk_chars)
                    if chunk == "":
                        break
                    buf: str = normalize_markers(carry + chunk)
                    m = _PARTIAL_MARKER_RE.search(buf, max(0, len(buf) - _PARTIAL_SCAN_CHARS))
                    cut: int = m.start() if m is not None else len(buf)
                    dst.write(buf[0:cut])
                    carry = buf[cut:]
                dst.write(carry)
            shutil.copymode(path, tmp)
            os.replace(tmp, path)
        finally:
            if tmp.exists() is True:
                tmp.unlink()
        return True


class SkipPatch:
    """Leave the artifact untouched and warn about its size."""

    name: str = "skip"

    def apply(self, path: pathlib.Path, *, size: int, logger: logging.Logger) -> bool:
        logger.warning(
            f"worker-bundler: bundle is {size / MIB:.0f} MiB, above {EXTERNAL_TOOL_MAX_BYTES // MIB} MiB; "
            "skipping require patching. Consider reducing bundle size."
        )
        return False


def default_large_file_strategy() -> PatchStrategy:
    """``sed`` when the host has it, the streaming patch otherwise."""

    sed: str | None = shutil.which("sed")
    if sed is None:
        return StreamingPatch()
    return SedPatch(executable=sed)


def select_patch_strategy(size: int, *, large: PatchStrategy | None = None) -> PatchStrategy:
    """Pick the strategy for an artifact of ``size`` bytes.

    :param size: Artifact size in bytes.
    :param large: Strategy for the middle tier (defaults to :func:`default_large_file_strategy`).
    :returns: Strategy instance.
    """

    if size > EXTERNAL_TOOL_MAX_BYTES:
        return SkipPatch()
    if size > IN_PROCESS_MAX_BYTES:
        return large if large is not None else default_large_file_strategy()
    return InProcessPatch()


def patch_bundled_artifact(
    path: pathlib.Path,
    *,
    large: PatchStrategy | None = None,
    logger: logging.Logger | None = None,
) -> PatchReport:
    """Normalize require markers in the bundled artifact.

    :param path: Bundled artifact.
    :param large: Optional middle-tier strategy override.
    :param logger: Optional logger.
    :returns: Patch report.
    """

    if logger is None:
        logger = logging.getLogger(LOGGER_NAME)

    size: int = path.stat().st_size
    strategy: PatchStrategy = select_patch_strategy(size, large=large)
    patched: bool = strategy.apply(path, size=size, logger=logger)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"worker-bundler: patch strategy={strategy.name} size={size} patched={patched}")
    return PatchReport(strategy=strategy.name, size=size, patched=patched)
