"""Seeded coherent noise."""

import numpy as np
from opensimplex import OpenSimplex

from .fields import ArrayLike


class NoiseField:
    """
    Perlin-style 2D noise remapped to [0, 1].

    Wraps OpenSimplex so every consumer gets its own deterministic field
    from an integer seed.
    """

    def __init__(self, seed: int = 0):
        self.seed = int(seed)
        self._gen = OpenSimplex(seed=self.seed)

    def value(self, x: float, z: float) -> float:
        """Noise at a single point."""
        return min(1.0, max(0.0, (self._gen.noise2(float(x), float(z)) + 1.0) * 0.5))

    def sample(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        """Noise at arbitrary (broadcastable) points."""
        if np.ndim(x) == 0 and np.ndim(z) == 0:
            return self.value(x, z)
        xs, zs = np.broadcast_arrays(np.asarray(x, dtype=np.float64), np.asarray(z, dtype=np.float64))
        flat = np.fromiter(
            (self._gen.noise2(a, b) for a, b in zip(xs.ravel(), zs.ravel())),
            dtype=np.float64,
            count=xs.size,
        )
        return np.clip((flat.reshape(xs.shape) + 1.0) * 0.5, 0.0, 1.0)

    def grid(self, xs: np.ndarray, zs: np.ndarray) -> np.ndarray:
        """
        Noise on the lattice ``xs`` x ``zs``.

        Returns:
            Array indexed ``[ix, iz]`` with shape (len(xs), len(zs))
        """
        # noise2array returns rows along its second argument
        values = self._gen.noise2array(np.asarray(xs, dtype=np.float64), np.asarray(zs, dtype=np.float64))
        return np.clip((values.T + 1.0) * 0.5, 0.0, 1.0)
