"""
Height sources consumed by terrain analysis.

The analyzer depends on a single narrow capability: a region and a
``height(x, z)`` query that broadcasts over numpy arrays. Anything that
provides those two members is a HeightSource; the adapters below cover the
common cases of a raw heightmap array, a plain Python function and a flat
placeholder.
"""

from typing import Callable, Protocol, runtime_checkable

import numpy as np

from .fields import ArrayLike, Bounds, bilinear


@runtime_checkable
class HeightSource(Protocol):
    """Terrain height provider."""

    @property
    def bounds(self) -> Bounds:
        ...

    def height(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        ...


class ArrayHeightSource:
    """
    Heightmap array spanning a region.

    The array is indexed ``[ix, iz]`` like the analysis grids and is
    resampled bilinearly, so any resolution can be analysed at any other.
    """

    def __init__(self, heights: np.ndarray, bounds: Bounds):
        heights = np.asarray(heights, dtype=np.float64)
        if heights.ndim != 2 or min(heights.shape) < 1:
            raise ValueError(f"Heightmap must be a 2-D array, got shape {heights.shape}")
        self._heights = heights
        self._bounds = bounds

    @property
    def bounds(self) -> Bounds:
        return self._bounds

    @property
    def shape(self):
        return self._heights.shape

    def height(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        u, v = self._bounds.normalize(x, z)
        nx, nz = self._heights.shape
        return bilinear(self._heights, u * (nx - 1), v * (nz - 1))


class FunctionHeightSource:
    """Wraps a ``f(x, z) -> height`` callable."""

    def __init__(
        self,
        func: Callable[[ArrayLike, ArrayLike], ArrayLike],
        bounds: Bounds,
        vectorized: bool = True,
    ):
        """
        Args:
            func: Height function
            bounds: Region the function describes
            vectorized: Whether ``func`` accepts numpy arrays; scalar-only
                functions are wrapped with ``np.vectorize``
        """
        self._func = func if vectorized else np.vectorize(func, otypes=[np.float64])
        self._bounds = bounds

    @property
    def bounds(self) -> Bounds:
        return self._bounds

    def height(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        result = self._func(x, z)
        if np.ndim(x) == 0 and np.ndim(z) == 0:
            return float(result)
        # Constant functions return a scalar; broadcast to the query shape
        return np.broadcast_to(np.asarray(result, dtype=np.float64), np.broadcast(x, z).shape)


class FlatHeightSource:
    """Constant height, used when no terrain is available."""

    def __init__(self, bounds: Bounds, value: float = 0.5):
        self._bounds = bounds
        self.value = float(value)

    @property
    def bounds(self) -> Bounds:
        return self._bounds

    def height(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        if np.ndim(x) == 0 and np.ndim(z) == 0:
            return self.value
        return np.full(np.broadcast(x, z).shape, self.value)
