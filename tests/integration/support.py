from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

from worker_bundler.builder import BuildOptions
from worker_bundler.engine import BuildRequest, BuildResult, VisitStats, visit_source_tree
from worker_bundler.errors import BundleError
from worker_bundler.rewrite import ContentUpdater

_IMPORT_RE = re.compile(r"""^\s*import\s+(?:[^"';]+\s+from\s+)?["']([^"']+)["'];?[ \t]*$""", re.MULTILINE)

HEAVY_SOURCE = 'export default "HEAVY_REAL_SOURCE";\n'

DEFAULT_PAGE = 'export function render(x) {\n  return MARKER("react") + __require2("fs") + x;\n}\n'

DEFAULT_ENTRY = (
    'import { render } from "./.next/server/page.js";\n'
    'import heavy from "heavy-pkg";\n'
    "export const handler = () => render(heavy);\n"
)


class FakeEngine:
    """Concatenating stand-in for esbuild.

    Follows ``import`` statements, consulting aliases first and externals
    second, and records every request it receives.
    """

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.requests: list[BuildRequest] = []
        self.visited: list[VisitStats] = []

    def visit(self, source_root: Path, updater: ContentUpdater) -> VisitStats:
        stats = visit_source_tree(source_root, updater)
        self.visited.append(stats)
        return stats

    def bundle(self, request: BuildRequest) -> BuildResult:
        self.requests.append(request)
        if self.fail is True:
            request.outfile.write_text("partial", encoding="utf-8")
            raise BundleError("fake engine failure")

        inputs: dict[str, dict[str, object]] = {}
        parts: list[str] = []

        def include(path: Path) -> None:
            key = str(path)
            if key in inputs:
                return
            text = path.read_text(encoding="utf-8")
            imports: list[dict[str, object]] = []
            inputs[key] = {"bytes": len(text.encode("utf-8")), "imports": imports}
            for m in _IMPORT_RE.finditer(text):
                module_id = m.group(1)
                if module_id in request.alias:
                    target = Path(request.alias[module_id])
                elif _is_external(module_id, request.external):
                    imports.append({"path": module_id, "external": True})
                    continue
                elif module_id.startswith("."):
                    target = path.parent / module_id
                else:
                    target = _find_package(path.parent, module_id)
                imports.append({"path": str(target)})
                include(target)
            parts.append(f"// {key}\n{_IMPORT_RE.sub('', text)}")

        include(request.entry_point)
        output = request.banner_js + "\n" + "\n".join(parts)
        request.outfile.write_text(output, encoding="utf-8")
        metafile: dict[str, object] = {
            "inputs": inputs,
            "outputs": {str(request.outfile): {"bytes": len(output.encode("utf-8"))}},
        }
        return BuildResult(outfile=request.outfile, metafile=metafile)


def _is_external(module_id: str, external: tuple[str, ...]) -> bool:
    for pattern in external:
        if "*" in pattern:
            prefix, _, suffix = pattern.partition("*")
            if module_id.startswith(prefix) and module_id.endswith(suffix):
                return True
        elif module_id == pattern:
            return True
    return False


def _find_package(start: Path, module_id: str) -> Path:
    for d in (start, *start.parents):
        candidate = d / "node_modules" / module_id / "index.js"
        if candidate.is_file():
            return candidate
    raise BundleError(f"Could not resolve {module_id!r}")


@dataclass
class ServerTree:
    options: BuildOptions

    @property
    def root(self) -> Path:
        return self.options.server_function_dir

    @property
    def app(self) -> Path:
        return self.options.server_app_dir

    def write(self, rel: str, text: str) -> Path:
        path = self.app / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path


def make_server_tree(
    tmp_path: Path,
    *,
    package_path: str = ".",
    manifest: object = None,
    page: str = DEFAULT_PAGE,
    entry: str = DEFAULT_ENTRY,
) -> ServerTree:
    monorepo_root = tmp_path / "repo"
    app_path = monorepo_root / package_path
    app_path.mkdir(parents=True, exist_ok=True)
    options = BuildOptions(
        app_path=app_path,
        output_dir=app_path / ".open-next",
        monorepo_root=monorepo_root,
        minify=False,
    )
    tree = ServerTree(options=options)
    if manifest is None:
        manifest = {"version": 1, "config": {"foo": 1}}
    tree.write(".next/required-server-files.json", json.dumps(manifest))
    tree.write(".next/server/page.js", page)
    tree.write("index.mjs", entry)
    heavy = tree.root / "node_modules" / "heavy-pkg" / "index.js"
    heavy.parent.mkdir(parents=True, exist_ok=True)
    heavy.write_text(HEAVY_SOURCE, encoding="utf-8")
    return tree

