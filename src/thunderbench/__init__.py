"""
thunderbench

Weighted, multi-case HTTP benchmarks driven by an external load generator
(wrk). Groups of cases run in parallel or in sequence, per-case reports are
parsed and merged into group and overall statistics, and several target
servers can be benchmarked one after another and ranked.

Public API surface is intentionally small; prefer using the CLI entrypoint.
"""

from __future__ import annotations

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml.
__version__ = "0.1.0"
