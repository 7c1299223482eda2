"""
Random number generation utilities.

Placement runs must be reproducible: every consumer of randomness draws
from a numpy Generator derived from the run seed plus a stream key, so the
candidate sequence of one layer never depends on how many numbers a
sibling layer consumed.
"""

import hashlib
from typing import Union

import numpy as np

Seed = Union[int, str]


def seed_to_int(seed: Seed) -> int:
    """
    Convert a seed to a non-negative integer.

    Integers pass through; strings are hashed so that "forest_demo" always
    maps to the same value across interpreter runs (unlike ``hash()``).

    Args:
        seed: Integer or string seed

    Returns:
        Non-negative integer seed
    """
    if isinstance(seed, (int, np.integer)):
        return abs(int(seed))
    digest = hashlib.sha256(str(seed).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "little")


def create_rng(seed: Seed, *stream: int) -> np.random.Generator:
    """
    Create an independent generator for a (seed, stream...) pair.

    Args:
        seed: Run seed
        *stream: Stream keys, e.g. a layer index

    Returns:
        numpy Generator
    """
    entropy = [seed_to_int(seed)] + [abs(int(s)) for s in stream]
    return np.random.default_rng(np.random.SeedSequence(entropy))
