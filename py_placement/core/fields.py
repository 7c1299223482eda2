"""
Continuous terrain descriptor fields.

A FieldSampler holds one NxN grid per terrain channel (height, slope,
moisture, temperature, exposure), every value normalised to [0, 1], and
answers bilinear point queries in world coordinates.

Grids are indexed ``[ix, iz]``: the first axis runs along world X and the
second along world Z. A world position maps to grid space as
``clamp01((p - min) / size) * (N - 1)``, so the grid corners coincide with
the region corners.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple, Union

import numpy as np

Position = Tuple[float, float]
ArrayLike = Union[float, np.ndarray]

# Distance reported when no water exists in the analysed region
NO_WATER_DISTANCE = 1000.0


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned region on the horizontal (x, z) plane."""

    min_x: float
    min_z: float
    size_x: float
    size_z: float

    def __post_init__(self):
        if self.size_x <= 0 or self.size_z <= 0:
            raise ValueError(
                f"Bounds must have positive size, got {self.size_x}x{self.size_z}"
            )

    @classmethod
    def from_size(cls, size_x: float, size_z: float) -> "Bounds":
        """Region anchored at the origin."""
        return cls(0.0, 0.0, float(size_x), float(size_z))

    @property
    def max_x(self) -> float:
        return self.min_x + self.size_x

    @property
    def max_z(self) -> float:
        return self.min_z + self.size_z

    @property
    def center(self) -> Position:
        return (self.min_x + self.size_x * 0.5, self.min_z + self.size_z * 0.5)

    @property
    def area(self) -> float:
        return self.size_x * self.size_z

    def contains(self, x: float, z: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_z <= z <= self.max_z

    def normalize(self, x: ArrayLike, z: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """Map world coordinates to [0, 1] region space (clamped)."""
        u = np.clip((np.asarray(x, dtype=np.float64) - self.min_x) / self.size_x, 0.0, 1.0)
        v = np.clip((np.asarray(z, dtype=np.float64) - self.min_z) / self.size_z, 0.0, 1.0)
        return u, v

    def grid_coordinates(self, resolution: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        World coordinates of the nodes of a resolution x resolution grid.

        Returns:
            (xs, zs) 1-D arrays of length ``resolution``
        """
        steps = np.linspace(0.0, 1.0, resolution) if resolution > 1 else np.zeros(1)
        xs = self.min_x + steps * self.size_x
        zs = self.min_z + steps * self.size_z
        return xs, zs


class FieldChannel(str, Enum):
    """Terrain descriptor channels."""

    HEIGHT = "height"
    SLOPE = "slope"
    MOISTURE = "moisture"
    TEMPERATURE = "temperature"
    EXPOSURE = "exposure"


class FieldSample(NamedTuple):
    """All channel values at one position."""

    height: float
    slope: float
    moisture: float
    temperature: float
    exposure: float


def bilinear(grid: np.ndarray, gx: ArrayLike, gz: ArrayLike) -> ArrayLike:
    """
    Bilinear interpolation of ``grid`` at fractional grid coordinates.

    Coordinates are expected inside ``[0, N-1]``; the upper neighbour is
    clamped to the last row/column.
    """
    nx, nz = grid.shape
    gx = np.asarray(gx, dtype=np.float64)
    gz = np.asarray(gz, dtype=np.float64)

    x1 = np.floor(gx).astype(np.intp)
    z1 = np.floor(gz).astype(np.intp)
    x1 = np.clip(x1, 0, nx - 1)
    z1 = np.clip(z1, 0, nz - 1)
    x2 = np.minimum(x1 + 1, nx - 1)
    z2 = np.minimum(z1 + 1, nz - 1)

    fx = gx - x1
    fz = gz - z1

    v1 = grid[x1, z1] + (grid[x2, z1] - grid[x1, z1]) * fx
    v2 = grid[x1, z2] + (grid[x2, z2] - grid[x1, z2]) * fx
    result = v1 + (v2 - v1) * fz

    if result.ndim == 0:
        return float(result)
    return result


class FieldSampler:
    """Bilinear-queryable grids of terrain descriptors."""

    def __init__(
        self,
        bounds: Bounds,
        channels: Dict[FieldChannel, np.ndarray],
        water_distance: Optional[np.ndarray] = None,
    ):
        """
        Initialize the sampler.

        Args:
            bounds: World region covered by the grids
            channels: One square grid per FieldChannel; values are clipped to [0, 1]
            water_distance: Optional grid of distances to the nearest water
                cell in world units
        """
        missing = [c.value for c in FieldChannel if c not in channels]
        if missing:
            raise ValueError(f"Missing field channels: {missing}")

        shapes = {channels[c].shape for c in FieldChannel}
        if len(shapes) != 1:
            raise ValueError(f"Field channels differ in shape: {shapes}")
        shape = shapes.pop()
        if len(shape) != 2 or shape[0] != shape[1] or shape[0] < 1:
            raise ValueError(f"Field channels must be square grids, got {shape}")

        self.bounds = bounds
        self.resolution = shape[0]
        self._channels = {
            c: np.clip(np.asarray(channels[c], dtype=np.float64), 0.0, 1.0)
            for c in FieldChannel
        }

        if water_distance is None:
            water_distance = np.full(shape, NO_WATER_DISTANCE)
        elif water_distance.shape != shape:
            raise ValueError("Water distance grid must match the channel grids")
        self._water_distance = np.asarray(water_distance, dtype=np.float64)

    def grid(self, channel: FieldChannel) -> np.ndarray:
        """Raw grid for a channel (read-only view)."""
        view = self._channels[FieldChannel(channel)].view()
        view.flags.writeable = False
        return view

    @property
    def water_distance_grid(self) -> np.ndarray:
        view = self._water_distance.view()
        view.flags.writeable = False
        return view

    def world_to_grid(self, x: ArrayLike, z: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """World position to fractional grid coordinates."""
        u, v = self.bounds.normalize(x, z)
        scale = self.resolution - 1
        return u * scale, v * scale

    def sample(self, channel: FieldChannel, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        """Bilinear sample of one channel; accepts scalars or arrays."""
        gx, gz = self.world_to_grid(x, z)
        return bilinear(self._channels[FieldChannel(channel)], gx, gz)

    def height_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        return self.sample(FieldChannel.HEIGHT, x, z)

    def slope_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        return self.sample(FieldChannel.SLOPE, x, z)

    def moisture_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        return self.sample(FieldChannel.MOISTURE, x, z)

    def temperature_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        return self.sample(FieldChannel.TEMPERATURE, x, z)

    def exposure_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        return self.sample(FieldChannel.EXPOSURE, x, z)

    def water_distance_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        """Distance (world units) to the nearest water cell."""
        gx, gz = self.world_to_grid(x, z)
        return bilinear(self._water_distance, gx, gz)

    def sample_all(self, x: float, z: float) -> FieldSample:
        """Every channel at a single position."""
        gx, gz = self.world_to_grid(x, z)
        return FieldSample(
            *(float(bilinear(self._channels[c], gx, gz)) for c in FieldChannel)
        )

    def statistics(self) -> Dict[str, Dict[str, float]]:
        """
        Summary statistics per channel.

        Returns:
            Mapping channel name -> {"min", "mean", "max"}
        """
        return {
            c.value: {
                "min": float(np.min(grid)),
                "mean": float(np.mean(grid)),
                "max": float(np.max(grid)),
            }
            for c, grid in self._channels.items()
        }
