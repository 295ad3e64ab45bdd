"""Built-in module resolution tables.

These tables are merged with the user's ``[bundle]`` configuration; they are
never modified at runtime. Set ``include_defaults = false`` to opt out of all of
them at once.
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DefaultTables:
    """The default module id tables, one per resolution treatment.

    :ivar external: Modules never bundled; resolved by the host at runtime.
    :ivar stub_empty: Modules replaced with an empty-exports shim.
    :ivar stub_throw: Modules replaced with a shim that throws when called.
    :ivar stub_fetch: Fetch polyfills replaced with the runtime's native fetch.
    :ivar stub_env: Env loaders replaced with a shim (values are inlined).
    :ivar stub_styled_jsx: Pages-router styling support, replaced with the empty shim.
    :ivar optional_dependencies: Bundled when installed, throw shim otherwise.
    """

    external: tuple[str, ...]
    stub_empty: tuple[str, ...]
    stub_throw: tuple[str, ...]
    stub_fetch: tuple[str, ...]
    stub_env: tuple[str, ...]
    stub_styled_jsx: tuple[str, ...]
    optional_dependencies: tuple[str, ...]


DEFAULT_OPTIONAL_DEPENDENCIES: tuple[str, ...] = (
    "caniuse-lite",
    "critters",
    "jimp",
    "probe-image-size",
    # `server.edge` is not available in react-dom@18
    "react-dom/server.edge",
    "styled-jsx",
)

DEFAULT_EXTERNAL: tuple[str, ...] = (
    "./middleware/handler.mjs",
    "@tensorflow/tfjs-node",
)

DEFAULT_STUB_EMPTY: tuple[str, ...] = (
    # Dev/test tooling
    "typescript",
    "jsdom",
    "coffee-script",
    "eslint",
    "prettier",
    "jest",
    # Heavy server-side SDKs
    "googleapis",
    "@google-cloud/speech",
    "@google-cloud/text-to-speech",
    "@google-cloud/storage",
    "@google-cloud/translate",
    "@google-cloud/bigquery",
    "@google-cloud/firestore",
    "@google-cloud/common",
    "google-gax",
    "@grpc/grpc-js",
    "@grpc/proto-loader",
    "twilio",
    "puppeteer",
    "puppeteer-core",
    "sharp",
    "ioredis",
    "hume",
    "openai",
    "@mediapipe/tasks-vision",
    "firebase-admin",
    "firebase-admin/app",
    "firebase-admin/auth",
    "firebase-admin/firestore",
    "firebase-admin/storage",
    "firebase-admin/messaging",
    "firebase-admin/database",
    "@modelcontextprotocol/sdk",
    # The worker runtime has native web streams
    "web-streams-polyfill",
    "web-streams-polyfill/dist/ponyfill.es2018.js",
    "iconv-lite",
    "vm2",
    "acorn",
    "critters",
    "source-map",
    "source-map-js",
    "next/dist/compiled/edge-runtime",
    # The worker runtime has builtin WebSockets
    "next/dist/compiled/ws",
)

DEFAULT_STUB_THROW: tuple[str, ...] = (
    # Pulls several MB of dependencies
    "next/dist/compiled/@ampproject/toolbox-optimizer",
)

DEFAULT_STUB_FETCH: tuple[str, ...] = (
    "next/dist/compiled/node-fetch",
    "node-fetch",
)

DEFAULT_STUB_ENV: tuple[str, ...] = ("@next/env",)

DEFAULT_STUB_STYLED_JSX: tuple[str, ...] = ("styled-jsx",)

DEFAULT_TABLES: DefaultTables = DefaultTables(
    external=DEFAULT_EXTERNAL,
    stub_empty=DEFAULT_STUB_EMPTY,
    stub_throw=DEFAULT_STUB_THROW,
    stub_fetch=DEFAULT_STUB_FETCH,
    stub_env=DEFAULT_STUB_ENV,
    stub_styled_jsx=DEFAULT_STUB_STYLED_JSX,
    optional_dependencies=DEFAULT_OPTIONAL_DEPENDENCIES,
)
