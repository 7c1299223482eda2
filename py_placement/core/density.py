"""
Adaptive placement density.

This module implements:
- Per-position density from environment response curves and noise
- Centre falloff, clustering and competition from already-placed objects
- Biome weighting by layer type and plant succession by category
- A coarse global density grid for layer-level average density
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import structlog

from .biomes import BiomeMap, BiomeType
from .curves import Curve
from .fields import Bounds, FieldSample, FieldSampler, Position
from .layers import EcosystemRole, PlacementLayer, PlacementLayerType, PlantCategory
from .noise import NoiseField
from .spatial_grid import SpatialPlacementGrid

logger = structlog.get_logger()

DEFAULT_TEMPERATURE_CURVE = Curve.from_keys((0.0, 0.2), (0.3, 1.0), (0.7, 1.2), (1.0, 0.8))
DEFAULT_MOISTURE_CURVE = Curve.from_keys((0.0, 0.1), (0.6, 1.5), (1.0, 1.0))
DEFAULT_HEIGHT_CURVE = Curve.from_keys((0.0, 1.2), (0.5, 1.0), (1.0, 0.3))
DEFAULT_SLOPE_CURVE = Curve.from_keys((0.0, 1.0), (0.3, 0.8), (0.7, 0.3), (1.0, 0.1))

# Layer names recognised when no plant category is configured
_CATEGORY_NAMES = {
    "grass": PlantCategory.GRASS,
    "herb": PlantCategory.GRASS,
    "bush": PlantCategory.SHRUB,
    "shrub": PlantCategory.SHRUB,
    "tree": PlantCategory.TREE,
    "forest": PlantCategory.TREE,
}

# Vegetation density per biome; other layer types are unaffected
_VEGETATION_BIOME_FACTORS = {
    BiomeType.TROPICAL: 1.5,
    BiomeType.FOREST: 1.3,
    BiomeType.DESERT: 0.2,
    BiomeType.TUNDRA: 0.4,
    BiomeType.MOUNTAIN: 0.6,
}


@dataclass(frozen=True)
class DensityOptions:
    """Density model options."""

    adaptive_density: bool = True
    clustering: bool = True
    competition: bool = True
    succession: bool = False

    global_multiplier: float = 1.0
    global_falloff: Optional[Curve] = None
    global_resolution: int = 128
    noise_scale: float = 0.1
    noise_influence: float = 0.3
    seed: int = 0

    temperature_curve: Curve = DEFAULT_TEMPERATURE_CURVE
    moisture_curve: Curve = DEFAULT_MOISTURE_CURVE
    height_curve: Curve = DEFAULT_HEIGHT_CURVE
    slope_curve: Curve = DEFAULT_SLOPE_CURVE

    # Clustering
    cluster_radius: float = 15.0
    cluster_strength: float = 2.0
    max_cluster_size: int = 20
    cluster_decay_rate: float = 0.1

    # Competition
    competition_radius: float = 8.0
    competition_strength: float = 0.5
    competitive_species: Tuple[str, ...] = ()

    # Succession
    primary_succession: bool = True
    secondary_succession: bool = True
    succession_rate: float = 0.01

    def __post_init__(self):
        if self.global_multiplier < 0:
            raise ValueError("global_multiplier must not be negative")
        if self.max_cluster_size < 1:
            raise ValueError("max_cluster_size must be at least 1")
        if self.global_resolution < 1:
            raise ValueError("global_resolution must be at least 1")


def plant_category_of(layer: PlacementLayer) -> Optional[PlantCategory]:
    """Configured plant category, else one inferred from the layer name."""
    if layer.plant_category is not None:
        return layer.plant_category
    return _CATEGORY_NAMES.get(layer.name.lower())


def biome_density_factor(layer: PlacementLayer, biome: BiomeType) -> float:
    if layer.layer_type != PlacementLayerType.VEGETATION:
        return 1.0

    name = layer.name.lower()
    if biome == BiomeType.GRASSLAND:
        is_grass = plant_category_of(layer) == PlantCategory.GRASS or "grass" in name
        return 1.4 if is_grass else 0.8
    if biome == BiomeType.SWAMP:
        return 1.6 if "water" in name else 1.1
    return _VEGETATION_BIOME_FACTORS.get(biome, 1.0)


def distance_from_center(bounds: Bounds, x: float, z: float) -> float:
    """Distance to the region centre normalised by half the larger side."""
    cx, cz = bounds.center
    max_distance = max(bounds.size_x, bounds.size_z) * 0.5
    return min(1.0, math.hypot(x - cx, z - cz) / max_distance)


class DensityField:
    """Per-position and per-layer density model."""

    def __init__(self, options: Optional[DensityOptions] = None):
        """
        Initialize density field.

        Args:
            options: Density model options
        """
        self.options = options or DensityOptions()
        self._noise = NoiseField(self.options.seed)
        self._global_grid: Optional[np.ndarray] = None
        self._global_bounds: Optional[Bounds] = None

    def density_at(
        self,
        layer: PlacementLayer,
        position: Position,
        sampler: FieldSampler,
        biome_map: BiomeMap,
        grid: Optional[SpatialPlacementGrid] = None,
        sim_time: float = 0.0,
    ) -> float:
        """
        Density for a layer at a world position.

        Args:
            layer: Layer being placed
            position: (x, z) world position
            sampler: Terrain fields
            biome_map: Biome classification
            grid: Placed objects, for clustering and competition
            sim_time: Simulation clock driving the slow succession term

        Returns:
            Density, never negative
        """
        opts = self.options
        base = layer.base_density * opts.global_multiplier
        if not opts.adaptive_density:
            return max(0.0, base)

        x, z = position
        env = sampler.sample_all(x, z)

        density = (
            base
            * opts.temperature_curve.evaluate(env.temperature)
            * opts.moisture_curve.evaluate(env.moisture)
            * opts.height_curve.evaluate(env.height)
            * opts.slope_curve.evaluate(env.slope)
        )

        if layer.use_noise_density:
            density *= self.noise_factor(x, z)

        if opts.succession:
            density *= self.succession_factor(layer, env, sim_time)

        if layer.density_falloff is not None:
            density *= max(0.0, layer.density_falloff.evaluate(distance_from_center(sampler.bounds, x, z)))

        if grid is not None:
            if opts.clustering:
                density *= self.cluster_factor(layer, position, grid)
            if opts.competition:
                density *= self.competition_factor(layer, position, grid)

        density *= biome_density_factor(layer, biome_map.biome_at(x, z))

        return max(0.0, float(density))

    def noise_factor(self, x: float, z: float) -> float:
        opts = self.options
        value = self._noise.value(x * opts.noise_scale, z * opts.noise_scale)
        return 1.0 + (value - 0.5) * opts.noise_influence

    def cluster_factor(self, layer: PlacementLayer, position: Position, grid: SpatialPlacementGrid) -> float:
        """Producers grow in clusters up to a size, then thin out."""
        if layer.ecosystem_role != EcosystemRole.PRODUCER:
            return 1.0

        opts = self.options
        nearby = grid.count_nearby(position, opts.cluster_radius, layer.name)
        max_size = opts.max_cluster_size

        if nearby == 0:
            return 1.0
        if nearby < max_size * 0.3:
            return 1.0 + opts.cluster_strength * (nearby / max_size)
        if nearby < max_size:
            return 1.0
        overpopulation = (nearby - max_size) / max_size
        return max(0.1, 1.0 - overpopulation * opts.cluster_decay_rate)

    def competitors_of(self, layer: PlacementLayer) -> Tuple[str, ...]:
        names = self.options.competitive_species + layer.competing_species
        return tuple(dict.fromkeys(names))

    def competition_factor(self, layer: PlacementLayer, position: Position, grid: SpatialPlacementGrid) -> float:
        competitors = self.competitors_of(layer)
        if not competitors:
            return 1.0

        opts = self.options
        count = sum(
            1
            for obj in grid.iter_radius(position, opts.competition_radius)
            if obj.is_alive and obj.matches_any(competitors)
        )
        if count == 0:
            return 1.0
        return max(0.1, 1.0 - count * opts.competition_strength)

    @staticmethod
    def succession_stage(height: float, moisture: float, sim_time: float = 0.0) -> float:
        """Ecological maturity in [0, 1]; wet lowlands mature fastest."""
        base_stage = moisture * 0.7 + (1.0 - height) * 0.3
        time_effect = math.sin(sim_time * 0.001) * 0.1 + 0.5
        return min(1.0, max(0.0, base_stage * time_effect))

    def succession_factor(self, layer: PlacementLayer, env: FieldSample, sim_time: float = 0.0) -> float:
        opts = self.options
        rate = opts.succession_rate
        stage = self.succession_stage(env.height, env.moisture, sim_time)
        category = plant_category_of(layer)
        factor = 1.0

        if category == PlantCategory.GRASS:
            if opts.primary_succession and stage < 0.3:
                factor = 1.0 + rate * 10.0
            elif stage > 0.7:
                factor = 1.0 - rate * 5.0
        elif category == PlantCategory.SHRUB:
            if opts.secondary_succession and 0.3 < stage < 0.8:
                factor = 1.0 + rate * 8.0
        elif category == PlantCategory.TREE:
            if opts.secondary_succession and stage > 0.6:
                factor = 1.0 + rate * 15.0
            elif stage < 0.2:
                factor = 1.0 - rate * 3.0

        return min(2.0, max(0.1, factor))

    # Global coarse grid

    def build_global_grid(self, bounds: Bounds) -> np.ndarray:
        """Coarse grid of global falloff times noise over a region."""
        opts = self.options
        res = opts.global_resolution
        logger.info("Generating global density grid", resolution=res)

        xs, zs = bounds.grid_coordinates(res)
        grid_x, grid_z = np.meshgrid(xs, zs, indexing="ij")

        if opts.global_falloff is not None:
            cx, cz = bounds.center
            max_distance = max(bounds.size_x, bounds.size_z) * 0.5
            distance = np.clip(np.hypot(grid_x - cx, grid_z - cz) / max_distance, 0.0, 1.0)
            base = np.maximum(0.0, opts.global_falloff.evaluate(distance))
        else:
            base = np.ones((res, res))

        coords = np.arange(res) * opts.noise_scale
        noise = self._noise.grid(coords, coords)
        noise_factor = 1.0 + (noise - 0.5) * opts.noise_influence

        self._global_grid = base * noise_factor
        self._global_bounds = bounds
        return self._global_grid

    @property
    def global_grid(self) -> Optional[np.ndarray]:
        return self._global_grid

    def invalidate(self):
        """Drop the cached global grid; it is rebuilt on next use."""
        self._global_grid = None
        self._global_bounds = None

    def layer_average_density(self, layer: PlacementLayer, bounds: Bounds) -> float:
        """Layer density averaged over a sparse sample of the global grid."""
        opts = self.options
        if not opts.adaptive_density:
            return layer.base_density * opts.global_multiplier

        if self._global_grid is None or self._global_bounds != bounds:
            self.build_global_grid(bounds)

        step = max(1, opts.global_resolution // 16)
        samples = self._global_grid[::step, ::step]
        average = float(samples.mean()) if samples.size else 1.0
        return layer.base_density * average * opts.global_multiplier

    def density_grid(
        self,
        layer: PlacementLayer,
        sampler: FieldSampler,
        biome_map: BiomeMap,
        resolution: int = 64,
        grid: Optional[SpatialPlacementGrid] = None,
        sim_time: float = 0.0,
    ) -> np.ndarray:
        """Density heatmap for a layer over the sampler's region, indexed ``[ix, iz]``."""
        xs, zs = sampler.bounds.grid_coordinates(resolution)
        heatmap = np.zeros((resolution, resolution))
        for i, x in enumerate(xs):
            for j, z in enumerate(zs):
                heatmap[i, j] = self.density_at(layer, (x, z), sampler, biome_map, grid, sim_time)
        return heatmap

    def statistics(self) -> Dict[str, float]:
        """Min/mean/max of the global grid, empty before it is built."""
        if self._global_grid is None:
            return {}
        return {
            "min": float(self._global_grid.min()),
            "mean": float(self._global_grid.mean()),
            "max": float(self._global_grid.max()),
        }
