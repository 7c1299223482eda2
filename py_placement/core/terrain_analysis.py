"""
Terrain analysis for placement decisions.

This module implements:
- Heightmap resampling to a fixed analysis resolution
- Slope from central differences with steep-slope boost and smoothing
- Moisture from altitude, noise, nearby water and rain shadows
- Temperature from lapse rate, latitude, season and terrain shadowing
- Sky exposure from horizon occlusion in the four cardinal directions
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
import structlog
from scipy import ndimage

from .curves import Curve
from .fields import NO_WATER_DISTANCE, Bounds, FieldChannel, FieldSampler
from .height_source import FlatHeightSource, HeightSource
from .noise import NoiseField
from .errors import ConfigurationError

logger = structlog.get_logger()

# Normalised temperature 1.0 corresponds to this many °C
TEMPERATURE_SCALE = 40.0

# Values used for channels whose analysis is switched off
NEUTRAL_CHANNEL_VALUES = {
    FieldChannel.SLOPE: 0.0,
    FieldChannel.MOISTURE: 0.5,
    FieldChannel.TEMPERATURE: 0.5,
    FieldChannel.EXPOSURE: 1.0,
}

CARDINAL_DIRECTIONS = ((1, 0), (0, 1), (-1, 0), (0, -1))


class WaterKind(str, Enum):
    LAKE = "lake"
    RIVER = "river"


@dataclass(frozen=True)
class WaterFeature:
    """Known water body: a disc of ``radius`` world units around (x, z)."""

    x: float
    z: float
    radius: float = 0.0
    kind: WaterKind = WaterKind.LAKE


@dataclass(frozen=True)
class TerrainAnalysisOptions:
    """Terrain analysis options."""

    analysis_resolution: int = 256
    seed: int = 0

    enable_slope: bool = True
    enable_moisture: bool = True
    enable_temperature: bool = True
    enable_exposure: bool = True

    # Raw heights are mapped from this range onto [0, 1]
    height_range: Tuple[float, float] = (0.0, 1.0)

    # Slope
    slope_threshold: float = 30.0  # Degrees above which slopes are boosted
    slope_boost: float = 1.5
    slope_gradient_scale: float = 1.0  # Multiplier on the normalised height gradient
    use_smooth_slope: bool = True
    slope_smooth_radius: int = 2

    # Moisture
    moisture_noise_frequency: float = 10.0
    moisture_noise_amplitude: float = 0.3
    moisture_decay_distance: float = 50.0  # In analysis cells
    river_moisture_influence: float = 2.0
    lake_moisture_influence: float = 1.5
    water_level: Optional[float] = None  # Normalised heights below this are water
    water_features: Tuple[WaterFeature, ...] = ()

    # Rain shadow
    wind_direction: Tuple[float, float] = (1.0, 0.0)
    rain_shadow_steps: int = 10
    rain_shadow_height_margin: float = 0.1
    rain_shadow_strength: float = 0.5
    rain_shadow_floor: float = 0.2

    # Temperature
    base_temperature: float = 20.0  # °C
    temperature_lapse_rate: float = 6.5  # °C per unit of normalised height x 100
    latitude_amplitude: float = 0.3
    seasonal_variation: Optional[Curve] = None
    season_phase: float = 0.0
    seasonal_amplitude: float = 0.2

    # Shadows
    sun_direction: Tuple[float, float, float] = (0.3, 0.7, 0.3)
    calculate_shadows: bool = True
    shadow_ray_steps: int = 10
    shadow_cooling: float = 5.0

    # Exposure
    exposure_probe_distance: int = 20
    exposure_slope_factor: float = 0.3

    def __post_init__(self):
        if self.analysis_resolution < 2:
            raise ValueError("analysis_resolution must be at least 2")
        lo, hi = self.height_range
        if hi <= lo:
            raise ValueError(f"Invalid height range {self.height_range}")


def _shifted(grid: np.ndarray, ix: np.ndarray, iz: np.ndarray, active: np.ndarray) -> np.ndarray:
    """Values of ``grid`` at (ix, iz) where ``active``; zero elsewhere."""
    out = np.zeros(grid.shape, dtype=np.float64)
    out[active] = grid[ix[active], iz[active]]
    return out


class TerrainAnalyzer:
    """Builds FieldSamplers from a height source."""

    def __init__(self, options: Optional[TerrainAnalysisOptions] = None):
        """
        Initialize terrain analyzer.

        Args:
            options: Terrain analysis options
        """
        self.options = options or TerrainAnalysisOptions()

    def analyze(
        self,
        height_source: Optional[HeightSource],
        options: Optional[TerrainAnalysisOptions] = None,
        bounds: Optional[Bounds] = None,
    ) -> FieldSampler:
        """
        Analyze terrain and build a FieldSampler.

        Args:
            height_source: Terrain heights; None yields a flat mid-height field
            options: Overrides the analyzer's default options for this call
            bounds: Region to analyze; defaults to the height source's bounds

        Returns:
            FieldSampler with all five channels populated
        """
        opts = options or self.options

        if height_source is None:
            if bounds is None:
                raise ConfigurationError("Bounds are required when no height source is given")
            logger.warning("No height source found, using flat terrain", bounds=bounds)
            height_source = FlatHeightSource(bounds, 0.5)
        region = bounds or height_source.bounds

        logger.info(
            "Analyzing terrain",
            resolution=opts.analysis_resolution,
            size_x=region.size_x,
            size_z=region.size_z,
        )

        heights = self.extract_heights(height_source, region, opts)
        n = opts.analysis_resolution

        if opts.enable_slope:
            slope = self.calculate_slope(heights, opts)
        else:
            slope = np.full((n, n), NEUTRAL_CHANNEL_VALUES[FieldChannel.SLOPE])

        water_cells, water_world = self.calculate_water_distance(heights, region, opts)

        if opts.enable_moisture:
            moisture = self.calculate_moisture(heights, water_cells, opts)
        else:
            moisture = np.full((n, n), NEUTRAL_CHANNEL_VALUES[FieldChannel.MOISTURE])

        if opts.enable_temperature:
            temperature = self.calculate_temperature(heights, opts)
        else:
            temperature = np.full((n, n), NEUTRAL_CHANNEL_VALUES[FieldChannel.TEMPERATURE])

        if opts.enable_exposure:
            exposure = self.calculate_exposure(heights, opts)
        else:
            exposure = np.full((n, n), NEUTRAL_CHANNEL_VALUES[FieldChannel.EXPOSURE])

        sampler = FieldSampler(
            region,
            {
                FieldChannel.HEIGHT: heights,
                FieldChannel.SLOPE: slope,
                FieldChannel.MOISTURE: moisture,
                FieldChannel.TEMPERATURE: temperature,
                FieldChannel.EXPOSURE: exposure,
            },
            water_distance=water_world,
        )

        logger.info("Terrain analysis completed", **{
            f"{name}_mean": round(stats["mean"], 3)
            for name, stats in sampler.statistics().items()
        })
        return sampler

    def extract_heights(
        self, height_source: HeightSource, bounds: Bounds, opts: TerrainAnalysisOptions
    ) -> np.ndarray:
        """Sample the height source on the analysis grid and normalise to [0, 1]."""
        xs, zs = bounds.grid_coordinates(opts.analysis_resolution)
        grid_x, grid_z = np.meshgrid(xs, zs, indexing="ij")
        raw = np.asarray(height_source.height(grid_x, grid_z), dtype=np.float64)
        if raw.shape != grid_x.shape:
            raw = np.broadcast_to(raw, grid_x.shape)

        lo, hi = opts.height_range
        heights = (raw - lo) / (hi - lo)
        if not np.all(np.isfinite(heights)):
            raise ValueError("Height source returned non-finite values")
        return np.clip(heights, 0.0, 1.0)

    def _raw_slope(self, heights: np.ndarray, opts: TerrainAnalysisOptions) -> np.ndarray:
        """Per-cell slope in [0, 1] before smoothing."""
        padded = np.pad(heights, 1, mode="edge")
        h_east = padded[2:, 1:-1]
        h_west = padded[:-2, 1:-1]
        h_north = padded[1:-1, :-2]
        h_south = padded[1:-1, 2:]

        grad_x = h_east - h_west
        grad_z = h_north - h_south
        magnitude = np.sqrt(grad_x ** 2 + grad_z ** 2) * opts.slope_gradient_scale
        slope = np.degrees(np.arctan(magnitude))

        steep = slope > opts.slope_threshold
        slope[steep] = opts.slope_threshold + (slope[steep] - opts.slope_threshold) * opts.slope_boost

        return np.clip(slope / 90.0, 0.0, 1.0)

    def calculate_slope(self, heights: np.ndarray, opts: TerrainAnalysisOptions) -> np.ndarray:
        """Slope channel, optionally smoothed over the in-bounds neighbourhood."""
        logger.info("Calculating slope")
        slope = self._raw_slope(heights, opts)
        if opts.use_smooth_slope and opts.slope_smooth_radius > 0:
            slope = smooth_map(slope, opts.slope_smooth_radius)
        return slope

    def water_mask(self, heights: np.ndarray, bounds: Bounds, opts: TerrainAnalysisOptions):
        """
        Cells covered by water.

        Returns:
            (is_water, is_lake) boolean grids
        """
        n = heights.shape[0]
        is_water = np.zeros(heights.shape, dtype=bool)
        is_lake = np.zeros(heights.shape, dtype=bool)

        if opts.water_level is not None:
            below = heights < opts.water_level
            is_water |= below
            is_lake |= below

        if opts.water_features:
            xs, zs = bounds.grid_coordinates(n)
            grid_x, grid_z = np.meshgrid(xs, zs, indexing="ij")
            cell_size = max(bounds.size_x, bounds.size_z) / (n - 1)
            for feature in opts.water_features:
                # Always mark at least the cell containing the feature centre
                reach = max(feature.radius, cell_size * 0.5)
                inside = (grid_x - feature.x) ** 2 + (grid_z - feature.z) ** 2 <= reach ** 2
                is_water |= inside
                if feature.kind == WaterKind.LAKE:
                    is_lake |= inside

        return is_water, is_lake

    def calculate_water_distance(
        self, heights: np.ndarray, bounds: Bounds, opts: TerrainAnalysisOptions
    ):
        """
        Distance from every cell to the nearest water cell.

        Returns:
            ((distance_in_cells, nearest_is_lake), distance_in_world_units);
            the first element is None when the region holds no water
        """
        is_water, is_lake = self.water_mask(heights, bounds, opts)
        n = heights.shape[0]

        if not is_water.any():
            return None, np.full(heights.shape, NO_WATER_DISTANCE)

        indices = ndimage.distance_transform_edt(
            ~is_water, return_distances=False, return_indices=True
        )
        ix, iz = np.indices(heights.shape)
        dx = ix - indices[0]
        dz = iz - indices[1]

        cells = np.sqrt(dx ** 2 + dz ** 2)
        world = np.sqrt(
            (dx * bounds.size_x / (n - 1)) ** 2 + (dz * bounds.size_z / (n - 1)) ** 2
        )
        nearest_is_lake = is_lake[indices[0], indices[1]]

        logger.info(
            "Water distance calculated",
            water_cells=int(is_water.sum()),
            lake_cells=int(is_lake.sum()),
        )
        return (cells, nearest_is_lake), world

    def calculate_moisture(self, heights: np.ndarray, water, opts: TerrainAnalysisOptions) -> np.ndarray:
        """
        Moisture channel.

        Low ground is wetter; noise breaks up the gradient; cells near water
        gain moisture; terrain rising upwind casts a rain shadow.
        """
        logger.info("Calculating moisture")
        n = heights.shape[0]

        coords = np.arange(n) / n * opts.moisture_noise_frequency
        noise = NoiseField(opts.seed).grid(coords, coords)
        moisture = np.clip(1.0 - heights + noise * opts.moisture_noise_amplitude, 0.0, 1.0)

        if water is not None:
            moisture = self._add_water_influence(moisture, water, opts)

        moisture = moisture * self.calculate_rain_shadow(heights, opts)
        return np.clip(moisture, 0.0, 1.0)

    def _add_water_influence(self, moisture: np.ndarray, water, opts: TerrainAnalysisOptions) -> np.ndarray:
        distance, nearest_is_lake = water
        decay = opts.moisture_decay_distance
        near = distance < decay

        influence = np.where(near, 1.0 - distance / decay, 0.0)
        strength = np.where(
            nearest_is_lake, opts.lake_moisture_influence, opts.river_moisture_influence
        )
        return np.minimum(1.0, moisture + influence * strength)

    def calculate_rain_shadow(self, heights: np.ndarray, opts: TerrainAnalysisOptions) -> np.ndarray:
        """
        Multiplicative moisture attenuation from upwind terrain.

        Walks upwind from every cell; the first cell higher than the current
        one by the margin sets the attenuation.
        """
        n = heights.shape[0]
        wind = np.asarray(opts.wind_direction, dtype=np.float64)
        norm = np.linalg.norm(wind)
        if norm == 0:
            return np.ones_like(heights)
        wind = wind / norm

        factor = np.ones_like(heights)
        ix, iz = np.indices(heights.shape)
        active = np.ones(heights.shape, dtype=bool)

        for step in range(1, opts.rain_shadow_steps + 1):
            cx = ix - int(round(wind[0] * step))
            cz = iz - int(round(wind[1] * step))
            active &= (cx >= 0) & (cx < n) & (cz >= 0) & (cz < n)
            if not active.any():
                break

            upwind = _shifted(heights, cx, cz, active)
            hit = active & (upwind > heights + opts.rain_shadow_height_margin)
            shadow = 1.0 - (upwind - heights) * opts.rain_shadow_strength
            factor[hit] = np.maximum(opts.rain_shadow_floor, shadow[hit])
            active &= ~hit

        return factor

    def calculate_shadow(self, heights: np.ndarray, opts: TerrainAnalysisOptions) -> np.ndarray:
        """Shadow intensity in [0, 1] from terrain between each cell and the sun."""
        n = heights.shape[0]
        sun = np.asarray(opts.sun_direction, dtype=np.float64)
        norm = np.linalg.norm(sun)
        if norm == 0:
            return np.zeros_like(heights)
        sun = sun / norm

        intensity = np.zeros_like(heights)
        ix, iz = np.indices(heights.shape)
        active = np.ones(heights.shape, dtype=bool)

        for step in range(1, opts.shadow_ray_steps + 1):
            cx = ix - int(round(sun[0] * step))
            cz = iz - int(round(sun[2] * step))
            active &= (cx >= 0) & (cx < n) & (cz >= 0) & (cz < n)
            if not active.any():
                break

            blocker = _shifted(heights, cx, cz, active)
            expected = heights + sun[1] * step * 0.1
            occluded = active & (blocker > expected)
            intensity[occluded] += (blocker[occluded] - expected[occluded]) * 0.1

        return np.clip(intensity, 0.0, 1.0)

    def calculate_temperature(self, heights: np.ndarray, opts: TerrainAnalysisOptions) -> np.ndarray:
        """
        Temperature channel.

        Combines the base temperature with altitude lapse, a latitude band
        along Z, an optional seasonal curve and shadow cooling, then
        normalises by TEMPERATURE_SCALE.
        """
        logger.info("Calculating temperatures")
        n = heights.shape[0]

        latitude = (np.arange(n) / n)[np.newaxis, :]
        height_effect = heights * (opts.temperature_lapse_rate / 100.0)
        latitude_effect = np.cos(latitude * np.pi) * opts.latitude_amplitude

        seasonal_effect = 0.0
        if opts.seasonal_variation is not None:
            seasonal_effect = opts.seasonal_variation.evaluate(opts.season_phase) * opts.seasonal_amplitude

        shadow_effect = 0.0
        if opts.calculate_shadows:
            shadow_effect = self.calculate_shadow(heights, opts) * opts.shadow_cooling

        temperature = (
            opts.base_temperature
            - height_effect
            + latitude_effect
            + seasonal_effect
            - shadow_effect
        )
        return np.clip(temperature / TEMPERATURE_SCALE, 0.0, 1.0)

    def calculate_exposure(self, heights: np.ndarray, opts: TerrainAnalysisOptions) -> np.ndarray:
        """Sky exposure: mean of four horizon probes, raised on slopes."""
        logger.info("Calculating exposure")
        n = heights.shape[0]
        ix, iz = np.indices(heights.shape)
        total = np.zeros_like(heights)

        for dx, dz in CARDINAL_DIRECTIONS:
            exposure = np.ones_like(heights)
            active = np.ones(heights.shape, dtype=bool)
            for distance in range(1, opts.exposure_probe_distance + 1):
                cx = ix + dx * distance
                cz = iz + dz * distance
                active &= (cx >= 0) & (cx < n) & (cz >= 0) & (cz < n)
                if not active.any():
                    break

                diff = _shifted(heights, cx, cz, active) - heights
                blocked = active & (diff > distance * 0.05)
                blockage = np.clip(diff / (distance * 0.1), 0.0, 1.0)
                exposure = np.where(blocked, np.minimum(exposure, 1.0 - blockage * 0.5), exposure)
            total += exposure

        exposure = total / len(CARDINAL_DIRECTIONS)
        slope_modifier = 1.0 + self._raw_slope(heights, opts) * opts.exposure_slope_factor
        return np.clip(exposure * slope_modifier, 0.0, 1.0)


def smooth_map(values: np.ndarray, radius: int) -> np.ndarray:
    """Box average over the in-bounds (2r+1)^2 neighbourhood of every cell."""
    size = 2 * radius + 1
    sums = ndimage.uniform_filter(values.astype(np.float64), size=size, mode="constant", cval=0.0)
    counts = ndimage.uniform_filter(np.ones_like(values, dtype=np.float64), size=size, mode="constant", cval=0.0)
    return sums / counts
