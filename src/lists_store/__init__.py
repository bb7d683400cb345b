"""
lists-store — encrypted layered object persistence for the Lists application.

Purpose
- Package root. Defines package-level metadata and import boundaries.

Layout
- ``persistence``: model loader, encrypted store handles, object caches.
- ``lifecycle``: notification center and process hooks that trigger flushes.
- ``coordinator``: the persistence coordinator wiring the stack together.
- ``config`` / ``observability``: TOML configuration, structured logging, metrics.

Import boundary rules
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
