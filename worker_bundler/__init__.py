"""worker-bundler.

A build utility that bundles a framework server build into a single ESM module
that runs inside a size- and API-limited worker runtime.
"""

__all__: list[str] = ["LOGGER_NAME", "__version__"]

__version__: str = "0.1.0"

LOGGER_NAME: str = "worker_bundler"
