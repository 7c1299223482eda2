"""Tests for terrain analysis."""

import pytest
import numpy as np

from py_placement.core.errors import ConfigurationError
from py_placement.core.fields import Bounds, FieldChannel, NO_WATER_DISTANCE
from py_placement.core.height_source import ArrayHeightSource, FlatHeightSource, FunctionHeightSource
from py_placement.core.curves import Curve
from py_placement.core.terrain_analysis import (
    TerrainAnalysisOptions,
    TerrainAnalyzer,
    WaterFeature,
    WaterKind,
    smooth_map,
)


class TestTerrainAnalyzer:
    """Test terrain field analysis."""

    @pytest.fixture
    def bounds(self):
        return Bounds.from_size(100, 100)

    @pytest.fixture
    def options(self):
        return TerrainAnalysisOptions(analysis_resolution=32, seed=7)

    @pytest.fixture
    def ridge_source(self, bounds):
        """A ridge running along Z in the middle of the region."""
        return FunctionHeightSource(lambda x, z: np.exp(-((x - 50.0) / 12.0) ** 2) + 0.0 * z, bounds)

    def test_all_channels_in_unit_range(self, ridge_source, options):
        """Test that every analysed channel lies in [0, 1]."""
        sampler = TerrainAnalyzer(options).analyze(ridge_source)
        for channel in FieldChannel:
            grid = sampler.grid(channel)
            assert grid.shape == (32, 32)
            assert grid.min() >= 0.0
            assert grid.max() <= 1.0

    def test_missing_height_source_is_flat(self, bounds, options):
        """Test that analysing without a height source yields flat terrain."""
        sampler = TerrainAnalyzer(options).analyze(None, bounds=bounds)
        assert np.allclose(sampler.grid(FieldChannel.HEIGHT), 0.5)
        assert np.allclose(sampler.grid(FieldChannel.SLOPE), 0.0)

    def test_missing_height_source_needs_bounds(self, options):
        """Test that a missing height source needs explicit bounds."""
        with pytest.raises(ConfigurationError):
            TerrainAnalyzer(options).analyze(None)

    def test_height_range_normalisation(self, bounds):
        """Test normalisation of heights by the configured range."""
        options = TerrainAnalysisOptions(analysis_resolution=8, height_range=(0.0, 200.0))
        sampler = TerrainAnalyzer(options).analyze(FlatHeightSource(bounds, 50.0))
        assert np.allclose(sampler.grid(FieldChannel.HEIGHT), 0.25)

    def test_invalid_height_range(self):
        """Test that an empty height range is rejected."""
        with pytest.raises(ValueError):
            TerrainAnalysisOptions(height_range=(1.0, 1.0))

    def test_non_finite_heights_rejected(self, bounds, options):
        """Test that NaN heights are rejected."""
        source = FunctionHeightSource(lambda x, z: np.full(np.shape(x), np.nan), bounds)
        with pytest.raises(ValueError):
            TerrainAnalyzer(options).analyze(source)

    def test_slope_peaks_on_ridge_flanks(self, ridge_source, options):
        """Test that slope is steepest on the ridge flanks."""
        sampler = TerrainAnalyzer(options).analyze(ridge_source)
        flank = sampler.slope_at(38, 50)
        crest = sampler.slope_at(50, 50)
        flat = sampler.slope_at(2, 50)
        assert flank > crest
        assert flank > flat

    def test_raw_slope_of_flat_grid_is_zero(self, options):
        """Test that a flat grid has zero slope."""
        slope = TerrainAnalyzer(options)._raw_slope(np.full((8, 8), 0.4), options)
        assert np.all(slope == 0.0)

    def test_slope_boost_above_threshold(self):
        """Test the slope boost above the threshold angle."""
        options = TerrainAnalysisOptions(analysis_resolution=8, use_smooth_slope=False)
        analyzer = TerrainAnalyzer(options)
        heights = np.tile(np.linspace(0.0, 7.0, 8)[:, np.newaxis], (1, 8))
        slope = analyzer._raw_slope(heights, options)
        # atan(2) is about 63.4 degrees before the boost
        expected = (30.0 + (np.degrees(np.arctan(2.0)) - 30.0) * 1.5) / 90.0
        assert slope[4, 4] == pytest.approx(min(1.0, expected))

    def test_disabled_channels_are_neutral(self, ridge_source):
        """Test that disabled channels fall back to neutral values."""
        options = TerrainAnalysisOptions(
            analysis_resolution=16,
            enable_slope=False,
            enable_moisture=False,
            enable_temperature=False,
            enable_exposure=False,
        )
        sampler = TerrainAnalyzer(options).analyze(ridge_source)
        assert np.all(sampler.grid(FieldChannel.SLOPE) == 0.0)
        assert np.all(sampler.grid(FieldChannel.MOISTURE) == 0.5)
        assert np.all(sampler.grid(FieldChannel.TEMPERATURE) == 0.5)
        assert np.all(sampler.grid(FieldChannel.EXPOSURE) == 1.0)

    def test_lower_ground_is_wetter(self, bounds):
        """Test that moisture is higher on low ground."""
        heights = np.tile(np.linspace(0.0, 1.0, 32)[:, np.newaxis], (1, 32))
        options = TerrainAnalysisOptions(analysis_resolution=32, moisture_noise_amplitude=0.0)
        sampler = TerrainAnalyzer(options).analyze(ArrayHeightSource(heights, bounds))
        assert sampler.moisture_at(5, 50) > sampler.moisture_at(95, 50)

    def test_water_features_raise_moisture(self, bounds):
        """Test that water features raise nearby moisture."""
        base = TerrainAnalysisOptions(analysis_resolution=32, seed=1)
        with_lake = TerrainAnalysisOptions(
            analysis_resolution=32,
            seed=1,
            water_features=(WaterFeature(20.0, 20.0, 5.0, WaterKind.LAKE),),
        )
        source = FlatHeightSource(bounds, 0.9)
        dry = TerrainAnalyzer(base).analyze(source)
        wet = TerrainAnalyzer(with_lake).analyze(source)
        assert wet.moisture_at(25, 25) > dry.moisture_at(25, 25)

    def test_water_distance(self, bounds):
        """Test distance to the nearest water feature."""
        options = TerrainAnalysisOptions(
            analysis_resolution=11,
            water_features=(WaterFeature(0.0, 0.0, 0.0, WaterKind.RIVER),),
        )
        sampler = TerrainAnalyzer(options).analyze(FlatHeightSource(bounds))
        assert sampler.water_distance_at(0, 0) == pytest.approx(0.0)
        assert sampler.water_distance_at(30, 40) == pytest.approx(50.0)

    def test_water_level_marks_lakes(self, bounds):
        """Test that cells below the water level count as lakes."""
        heights = np.zeros((16, 16))
        heights[8:, :] = 0.8
        options = TerrainAnalysisOptions(analysis_resolution=16, water_level=0.2)
        analyzer = TerrainAnalyzer(options)
        is_water, is_lake = analyzer.water_mask(heights, bounds, options)
        assert is_water[:8].all() and not is_water[8:].any()
        assert np.array_equal(is_water, is_lake)

    def test_no_water_distance(self, bounds, options):
        """Test the water distance sentinel when there is no water."""
        sampler = TerrainAnalyzer(options).analyze(FlatHeightSource(bounds))
        assert np.all(sampler.water_distance_grid == NO_WATER_DISTANCE)

    def test_rain_shadow_behind_ridge(self, options):
        """Test the rain shadow cast behind a ridge."""
        heights = np.zeros((32, 32))
        heights[10, :] = 0.9
        shadow = TerrainAnalyzer(options).calculate_rain_shadow(heights, options)
        # Wind blows toward +X, so cells just past the ridge are shadowed
        assert shadow[12, 5] == pytest.approx(max(0.2, 1.0 - 0.9 * 0.5))
        assert shadow[5, 5] == 1.0

    def test_higher_ground_is_colder(self, bounds):
        """Test temperature lapse with height."""
        options = TerrainAnalysisOptions(analysis_resolution=16, calculate_shadows=False, temperature_lapse_rate=400.0)
        heights = np.tile(np.linspace(0.0, 1.0, 16)[:, np.newaxis], (1, 16))
        sampler = TerrainAnalyzer(options).analyze(ArrayHeightSource(heights, bounds))
        assert sampler.temperature_at(0, 50) > sampler.temperature_at(100, 50)

    def test_seasonal_variation(self, bounds):
        """Test seasonal temperature offset."""
        season = Curve.linear(0.0, -1.0, 1.0, 1.0)
        summer = TerrainAnalysisOptions(analysis_resolution=8, seasonal_variation=season, season_phase=1.0)
        winter = TerrainAnalysisOptions(analysis_resolution=8, seasonal_variation=season, season_phase=0.0)
        source = FlatHeightSource(bounds)
        warm = TerrainAnalyzer(summer).analyze(source).temperature_at(50, 50)
        cold = TerrainAnalyzer(winter).analyze(source).temperature_at(50, 50)
        assert warm - cold == pytest.approx(0.4 / 40.0)

    def test_shadow_zero_on_flat_ground(self, options):
        """Test that flat ground casts no shadow."""
        shadow = TerrainAnalyzer(options).calculate_shadow(np.full((16, 16), 0.5), options)
        assert np.all(shadow == 0.0)

    def test_exposure_reduced_at_foot_of_cliff(self, options):
        """Test that exposure drops at the foot of a cliff."""
        heights = np.zeros((32, 32))
        heights[16:, :] = 1.0
        exposure = TerrainAnalyzer(options).calculate_exposure(heights, options)
        assert exposure[14, 5] < exposure[2, 5]

    def test_deterministic(self, ridge_source, options):
        """Test that analysis is deterministic for a seed."""
        a = TerrainAnalyzer(options).analyze(ridge_source)
        b = TerrainAnalyzer(options).analyze(ridge_source)
        for channel in FieldChannel:
            np.testing.assert_array_equal(a.grid(channel), b.grid(channel))

    def test_bounds_override(self, ridge_source, options):
        """Test analysis restricted to a sub-region."""
        sub = Bounds(40, 0, 20, 100)
        sampler = TerrainAnalyzer(options).analyze(ridge_source, bounds=sub)
        assert sampler.bounds == sub
        assert sampler.height_at(50, 50) == pytest.approx(1.0, abs=1e-2)


class TestSmoothMap:
    """Test in-bounds box smoothing."""

    def test_constant_map_unchanged_at_edges(self):
        """Test that smoothing a constant map leaves it unchanged."""
        values = np.full((6, 6), 0.3)
        np.testing.assert_allclose(smooth_map(values, 2), 0.3)

    def test_spike_spreads(self):
        """Test that a single spike spreads over its neighbours."""
        values = np.zeros((5, 5))
        values[2, 2] = 9.0
        smoothed = smooth_map(values, 1)
        assert smoothed[2, 2] == pytest.approx(1.0)
        assert smoothed[1, 1] == pytest.approx(1.0)
        # Corner has four in-bounds neighbours, none of them the spike
        assert smoothed[0, 0] == 0.0
