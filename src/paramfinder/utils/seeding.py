from __future__ import annotations

from typing import Sequence, TypeVar

import math

_MASK32 = 0xFFFFFFFF
FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619

T = TypeVar("T")


def fnv1a32(text: str) -> int:
    """32-bit FNV-1a hash over the UTF-16 code units of ``text``."""
    value = FNV_OFFSET_BASIS
    encoded = text.encode("utf-16-le")
    for pos in range(0, len(encoded), 2):
        value ^= encoded[pos] | (encoded[pos + 1] << 8)
        value = (value * FNV_PRIME) & _MASK32
    return value


def cell_seed(run_seed: int | float, strategy_key: str, timeframe: str) -> int:
    if not math.isfinite(float(run_seed)):
        raise ValueError(f"run seed must be finite, got {run_seed!r}")
    return fnv1a32(f"{int(run_seed)}|{strategy_key}|{timeframe}")


class Mulberry32:
    """Small deterministic PRNG yielding floats in [0, 1)."""

    def __init__(self, seed: int | float) -> None:
        self._state = (int(math.floor(seed)) & _MASK32) or 1

    def random(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & _MASK32
        t = self._state
        t = ((t ^ (t >> 15)) * (t | 1)) & _MASK32
        t = (t ^ ((t + (((t ^ (t >> 7)) * (t | 61)) & _MASK32)) & _MASK32)) & _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296.0

    def randint(self, upper: int) -> int:
        """Integer in [0, upper)."""
        return int(self.random() * upper)

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self.random()


def seeded_subset(items: Sequence[T], budget: int, seed: int) -> list[T]:
    """
    Pick ``budget`` items with a seeded partial Fisher-Yates shuffle.

    The chosen items keep their original relative order so downstream
    processing stays in scheduler order.
    """

    count = len(items)
    if budget >= count:
        return list(items)
    if budget <= 0:
        return []
    rng = Mulberry32(seed)
    indices = list(range(count))
    for pos in range(budget):
        swap = pos + rng.randint(count - pos)
        indices[pos], indices[swap] = indices[swap], indices[pos]
    return [items[idx] for idx in sorted(indices[:budget])]
