"""
Biome classification from terrain fields.

This module implements:
- Height band / temperature x moisture classification with soft thresholds
- Majority-vote boundary smoothing
- Biodiversity scoring (climate curves, biome weighting, noise hotspots, edge effect)
- Biome compatibility lookup used by soft biome rules
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional

import numpy as np
import structlog
from scipy import ndimage

from .curves import Curve
from .fields import ArrayLike, Bounds, FieldChannel, FieldSampler, bilinear
from .noise import NoiseField

logger = structlog.get_logger()


class BiomeType(IntEnum):
    """Biome types used by placement rules."""

    DESERT = 0
    FOREST = 1
    GRASSLAND = 2
    MOUNTAIN = 3
    TUNDRA = 4
    TROPICAL = 5
    TEMPERATE = 6
    SWAMP = 7


# Biome names for display
BIOME_NAMES = {
    BiomeType.DESERT: "Desert",
    BiomeType.FOREST: "Forest",
    BiomeType.GRASSLAND: "Grassland",
    BiomeType.MOUNTAIN: "Mountain",
    BiomeType.TUNDRA: "Tundra",
    BiomeType.TROPICAL: "Tropical",
    BiomeType.TEMPERATE: "Temperate",
    BiomeType.SWAMP: "Swamp",
}

BIODIVERSITY_MULTIPLIERS = {
    BiomeType.TROPICAL: 1.5,
    BiomeType.FOREST: 1.2,
    BiomeType.TEMPERATE: 1.1,
    BiomeType.SWAMP: 1.3,
    BiomeType.GRASSLAND: 0.9,
    BiomeType.MOUNTAIN: 0.8,
    BiomeType.DESERT: 0.4,
    BiomeType.TUNDRA: 0.3,
}

# Symmetric partial matches; identical biomes score 1.0
_COMPATIBLE_PAIRS = {
    frozenset((BiomeType.FOREST, BiomeType.TEMPERATE)): 0.8,
    frozenset((BiomeType.GRASSLAND, BiomeType.TEMPERATE)): 0.7,
    frozenset((BiomeType.FOREST, BiomeType.TROPICAL)): 0.6,
}
DEFAULT_COMPATIBILITY = 0.3


def biome_compatibility(a: BiomeType, b: BiomeType) -> float:
    """How well a biome substitutes for another (0..1, symmetric)."""
    if a == b:
        return 1.0
    return _COMPATIBLE_PAIRS.get(frozenset((BiomeType(a), BiomeType(b))), DEFAULT_COMPATIBILITY)


def _default_temperature_curve() -> Curve:
    return Curve.from_keys((0.0, 0.2), (0.3, 0.8), (0.7, 1.0), (1.0, 0.6))


def _default_moisture_curve() -> Curve:
    return Curve.from_keys((0.0, 0.1), (0.6, 1.0), (1.0, 0.8))


@dataclass(frozen=True)
class BiomeOptions:
    """Biome classification options."""

    biome_resolution: int = 128
    transition_sharpness: float = 2.0
    smooth_boundaries: bool = True
    smoothing_radius: int = 2
    seed: int = 0

    # Temperature thresholds (normalised)
    cold_threshold: float = 0.2
    cool_threshold: float = 0.4
    warm_threshold: float = 0.6
    hot_threshold: float = 0.8

    # Moisture thresholds
    arid_threshold: float = 0.2
    dry_threshold: float = 0.4
    moist_threshold: float = 0.6
    wet_threshold: float = 0.8

    # Height thresholds
    lowland_threshold: float = 0.3
    hill_threshold: float = 0.6
    mountain_threshold: float = 0.8

    # Biodiversity
    calculate_biodiversity: bool = True
    biodiversity_noise_scale: float = 0.1
    biodiversity_noise_weight: float = 0.3
    edge_effect_weight: float = 0.3
    biodiversity_by_temperature: Optional[Curve] = None
    biodiversity_by_moisture: Optional[Curve] = None

    def __post_init__(self):
        if self.biome_resolution < 2:
            raise ValueError("biome_resolution must be at least 2")
        if self.transition_sharpness <= 0:
            raise ValueError("transition_sharpness must be positive")


class BiomeMap:
    """Biome label grid plus biodiversity grid over a region."""

    def __init__(self, bounds: Bounds, labels: np.ndarray, biodiversity: np.ndarray):
        if labels.shape != biodiversity.shape or labels.shape[0] != labels.shape[1]:
            raise ValueError("Biome and biodiversity grids must be square and equal in shape")
        self.bounds = bounds
        self.resolution = labels.shape[0]
        self.labels = labels.astype(np.uint8)
        self.biodiversity = np.clip(biodiversity.astype(np.float64), 0.0, 1.0)

    def _nearest_cell(self, x: ArrayLike, z: ArrayLike):
        u, v = self.bounds.normalize(x, z)
        scale = self.resolution - 1
        return np.rint(u * scale).astype(np.intp), np.rint(v * scale).astype(np.intp)

    def biome_at(self, x: float, z: float) -> BiomeType:
        """Biome of the nearest cell."""
        ix, iz = self._nearest_cell(x, z)
        return BiomeType(int(self.labels[ix, iz]))

    def biomes_at(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Vectorised biome lookup; returns raw uint8 labels."""
        ix, iz = self._nearest_cell(x, z)
        return self.labels[ix, iz]

    def biodiversity_at(self, x: ArrayLike, z: ArrayLike) -> ArrayLike:
        """Bilinear biodiversity."""
        u, v = self.bounds.normalize(x, z)
        scale = self.resolution - 1
        return bilinear(self.biodiversity, u * scale, v * scale)

    def compatibility_at(self, x: float, z: float, target: BiomeType) -> float:
        return biome_compatibility(self.biome_at(x, z), target)

    def statistics(self) -> Dict[str, Dict[str, float]]:
        """
        Get statistics about biome distribution.

        Returns:
            Dictionary biome name -> {"percentage", "mean_biodiversity"}
        """
        stats = {}
        total = self.labels.size
        unique_biomes, counts = np.unique(self.labels, return_counts=True)

        for biome_id, count in zip(unique_biomes, counts):
            biome_type = BiomeType(int(biome_id))
            stats[BIOME_NAMES[biome_type]] = {
                "percentage": float(count) / total * 100.0,
                "mean_biodiversity": float(self.biodiversity[self.labels == biome_id].mean()),
            }

        return stats


class BiomeClassifier:
    """Handles biome classification based on terrain fields."""

    def __init__(self, options: Optional[BiomeOptions] = None):
        """
        Initialize biome classifier.

        Args:
            options: Biome classification options
        """
        self.options = options or BiomeOptions()

    def classify(
        self, bounds: Bounds, sampler: FieldSampler, options: Optional[BiomeOptions] = None
    ) -> BiomeMap:
        """
        Classify biomes over a region.

        Args:
            bounds: Region to classify
            sampler: Terrain fields covering the region
            options: Overrides the classifier's default options for this call

        Returns:
            BiomeMap at ``biome_resolution``
        """
        opts = options or self.options
        res = opts.biome_resolution
        logger.info("Classifying biomes", resolution=res)

        xs, zs = bounds.grid_coordinates(res)
        grid_x, grid_z = np.meshgrid(xs, zs, indexing="ij")
        height = sampler.sample(FieldChannel.HEIGHT, grid_x, grid_z)
        temperature = sampler.sample(FieldChannel.TEMPERATURE, grid_x, grid_z)
        moisture = sampler.sample(FieldChannel.MOISTURE, grid_x, grid_z)

        labels = self.classify_cells(height, temperature, moisture, opts)

        if opts.smooth_boundaries and opts.smoothing_radius > 0:
            labels = self.smooth_boundaries(labels, opts.smoothing_radius)

        if opts.calculate_biodiversity:
            biodiversity = self.calculate_biodiversity(labels, temperature, moisture, opts)
        else:
            biodiversity = np.zeros(labels.shape)

        biome_map = BiomeMap(bounds, labels, biodiversity)
        logger.info(
            "Biome classification completed",
            unique_biomes=len(np.unique(labels)),
            mean_biodiversity=round(float(biodiversity.mean()), 3),
        )
        return biome_map

    def classify_cells(
        self,
        height: ArrayLike,
        temperature: ArrayLike,
        moisture: ArrayLike,
        options: Optional[BiomeOptions] = None,
    ) -> np.ndarray:
        """
        Classify raw cell values.

        Decision order: high altitude, hill band, lowland, then the general
        temperature x moisture table. Returns uint8 labels shaped like the
        inputs.
        """
        o = options or self.options
        h = np.asarray(height, dtype=np.float64)
        t = np.asarray(temperature, dtype=np.float64)
        m = np.asarray(moisture, dtype=np.float64)
        f = 1.0 / o.transition_sharpness

        alpine = h > o.mountain_threshold - f * 0.1
        hill = ~alpine & (h > o.hill_threshold - f * 0.05)
        lowland = ~alpine & ~hill & (h <= o.lowland_threshold + f * 0.05)
        general = ~alpine & ~hill & ~lowland

        # Alpine
        alpine_biome = np.where(t < o.cold_threshold + f * 0.1, BiomeType.TUNDRA, BiomeType.MOUNTAIN)

        # Hills
        hill_biome = np.select(
            [(t < o.cool_threshold) & (m > o.moist_threshold), m < o.dry_threshold],
            [BiomeType.FOREST, BiomeType.GRASSLAND],
            default=BiomeType.TEMPERATE,
        )

        # Lowlands
        lowland_biome = np.select(
            [
                m > o.wet_threshold,
                (t > o.warm_threshold) & (m > o.moist_threshold),
                m > o.moist_threshold,
            ],
            [BiomeType.SWAMP, BiomeType.TROPICAL, BiomeType.FOREST],
            default=BiomeType.GRASSLAND,
        )

        # Temperature x moisture table
        cold = t < o.cold_threshold + f * 0.05
        cool = ~cold & (t < o.cool_threshold)
        mild = ~cold & ~cool & (t < o.warm_threshold)
        warm = ~cold & ~cool & ~mild & (t < o.hot_threshold)
        hot = ~cold & ~cool & ~mild & ~warm

        cool_biome = np.where(m < o.dry_threshold, BiomeType.GRASSLAND, BiomeType.TEMPERATE)
        mild_biome = np.select(
            [m < o.arid_threshold, m < o.moist_threshold, m < o.wet_threshold],
            [BiomeType.DESERT, BiomeType.GRASSLAND, BiomeType.FOREST],
            default=BiomeType.SWAMP,
        )
        warm_biome = np.select(
            [m < o.arid_threshold, m > o.wet_threshold],
            [BiomeType.DESERT, BiomeType.TROPICAL],
            default=BiomeType.FOREST,
        )
        hot_biome = np.where(m < o.dry_threshold, BiomeType.DESERT, BiomeType.TROPICAL)

        general_biome = np.select(
            [cold, cool, mild, warm, hot],
            [BiomeType.TUNDRA, cool_biome, mild_biome, warm_biome, hot_biome],
        )

        labels = np.select(
            [alpine, hill, lowland, general],
            [alpine_biome, hill_biome, lowland_biome, general_biome],
        )
        return labels.astype(np.uint8)

    def smooth_boundaries(self, labels: np.ndarray, radius: int) -> np.ndarray:
        """
        Majority vote over the in-bounds (2r+1)^2 neighbourhood.

        A cell keeps its own biome when it is among the most frequent;
        otherwise the lowest-valued biome among the most frequent wins.
        """
        kernel = np.ones((2 * radius + 1, 2 * radius + 1), dtype=np.int32)
        counts = np.stack(
            [
                ndimage.convolve((labels == biome).astype(np.int32), kernel, mode="constant", cval=0)
                for biome in BiomeType
            ]
        )

        best = counts.max(axis=0)
        own_count = np.take_along_axis(counts, labels[np.newaxis].astype(np.intp), axis=0)[0]
        dominant = counts.argmax(axis=0).astype(np.uint8)

        return np.where(own_count == best, labels, dominant).astype(np.uint8)

    def edge_effect(self, labels: np.ndarray, weight: float = 0.3) -> np.ndarray:
        """Fraction of in-bounds 3x3 neighbours with a different biome, times ``weight``."""
        kernel = np.ones((3, 3), dtype=np.int32)
        neighbours = ndimage.convolve(
            np.ones(labels.shape, dtype=np.int32), kernel, mode="constant", cval=0
        ) - 1

        same = np.zeros(labels.shape, dtype=np.int32)
        for biome in BiomeType:
            mask = labels == biome
            if not mask.any():
                continue
            count = ndimage.convolve(mask.astype(np.int32), kernel, mode="constant", cval=0)
            same[mask] = count[mask] - 1

        different = neighbours - same
        return np.where(neighbours > 0, different / np.maximum(neighbours, 1), 0.0) * weight

    def calculate_biodiversity(
        self,
        labels: np.ndarray,
        temperature: np.ndarray,
        moisture: np.ndarray,
        options: Optional[BiomeOptions] = None,
    ) -> np.ndarray:
        """
        Biodiversity grid.

        Mean of the climate response curves, scaled by the biome
        multiplier, noise hotspots and the boundary edge effect.
        """
        o = options or self.options
        temp_curve = o.biodiversity_by_temperature or _default_temperature_curve()
        moisture_curve = o.biodiversity_by_moisture or _default_moisture_curve()

        base = (temp_curve.evaluate(temperature) + moisture_curve.evaluate(moisture)) * 0.5

        multipliers = np.array([BIODIVERSITY_MULTIPLIERS[b] for b in BiomeType])
        biome_multiplier = multipliers[labels]

        coords = np.arange(labels.shape[0]) * o.biodiversity_noise_scale
        noise = NoiseField(o.seed).grid(coords, coords)

        edge = self.edge_effect(labels, o.edge_effect_weight)

        biodiversity = base * biome_multiplier * (1.0 + noise * o.biodiversity_noise_weight) * (1.0 + edge)
        return np.clip(biodiversity, 0.0, 1.0)


def get_biome_statistics(biome_map: BiomeMap) -> Dict[str, float]:
    """Percentage of cells per biome name."""
    return {name: entry["percentage"] for name, entry in biome_map.statistics().items()}
