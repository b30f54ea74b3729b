from __future__ import annotations

from collections import Counter


# Process-local counters; the worker and API each report their own.
_counters: Counter[str] = Counter()


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    _counters.clear()
