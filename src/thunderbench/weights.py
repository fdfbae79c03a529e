from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Final, Protocol

from .errors import ConfigurationError

WEIGHT_SUM_TOLERANCE: Final[float] = 0.01

# Absorbs float noise such as 33.33 + 33.33 + 33.34 != 100.0 exactly.
_EPS: Final[float] = 1e-9


class Weighted(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def weight(self) -> float: ...


def validate_weights(cases: Sequence[Weighted], *, group: str | None = None) -> None:
    """
    Validate a set of case weights.

    - each weight must be within [0, 100]
    - names must be unique
    - weights must sum to 100 within +/- 0.01
    """
    where = f" in group {group!r}" if group is not None else ""

    seen: set[str] = set()
    for c in cases:
        if c.name in seen:
            raise ConfigurationError(f"duplicate case name {c.name!r}{where}")
        seen.add(c.name)

        w = c.weight
        if isinstance(w, bool) or not isinstance(w, (int, float)) or math.isnan(w):
            raise ConfigurationError(f"case {c.name!r}{where}: weight must be a number, got {w!r}")
        if w < 0 or w > 100:
            raise ConfigurationError(
                f"case {c.name!r}{where}: weight must be within 0-100, got {w:g}"
            )

    total = sum(float(c.weight) for c in cases)
    if abs(total - 100.0) > WEIGHT_SUM_TOLERANCE + _EPS:
        raise ConfigurationError(f"weights{where} must sum to 100, got {total:g}")


def distribute(cases: Sequence[Weighted], total_requests: int) -> dict[str, int]:
    """
    Split `total_requests` across cases by weight (largest-remainder method).

    Every case first receives floor(weight * total / 100). The leftover units are
    handed out one at a time, cycling through the non-zero-weight cases ordered
    by weight descending (ties keep declaration order). The result always sums
    to exactly `total_requests`.

    Raises
    ------
    ConfigurationError
        If `total_requests` is not positive or the weights are invalid.
    """
    if isinstance(total_requests, bool) or not isinstance(total_requests, int):
        raise ConfigurationError(f"total requests must be an integer, got {total_requests!r}")
    if total_requests <= 0:
        raise ConfigurationError(f"total requests must be > 0, got {total_requests}")

    validate_weights(cases)

    result: dict[str, int] = {
        c.name: math.floor(float(c.weight) * total_requests / 100.0) for c in cases
    }

    remainder = total_requests - sum(result.values())

    # sorted() is stable, so equal weights keep declaration order.
    ranked = [c for c in sorted(cases, key=lambda c: c.weight, reverse=True) if c.weight > 0]

    i = 0
    while remainder > 0:
        result[ranked[i % len(ranked)].name] += 1
        remainder -= 1
        i += 1

    # Weights summing to slightly over 100 can over-allocate; take units back
    # from the lowest-weight cases first.
    i = 0
    while remainder < 0:
        name = ranked[len(ranked) - 1 - (i % len(ranked))].name
        if result[name] > 0:
            result[name] -= 1
            remainder += 1
        i += 1

    return result


__all__ = [
    "WEIGHT_SUM_TOLERANCE",
    "Weighted",
    "distribute",
    "validate_weights",
]
