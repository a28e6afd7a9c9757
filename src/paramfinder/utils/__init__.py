from __future__ import annotations

from .seeding import Mulberry32, cell_seed, fnv1a32, seeded_subset

__all__ = ["Mulberry32", "cell_seed", "fnv1a32", "seeded_subset"]
