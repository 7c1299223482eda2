"""Tests for biome classification."""

import pytest
import numpy as np

from py_placement.core.biomes import (
    BIOME_NAMES,
    BiomeClassifier,
    BiomeMap,
    BiomeOptions,
    BiomeType,
    biome_compatibility,
    get_biome_statistics,
)
from py_placement.core.fields import Bounds, FieldChannel, FieldSampler
from py_placement.core.height_source import FunctionHeightSource
from py_placement.core.terrain_analysis import TerrainAnalysisOptions, TerrainAnalyzer


def constant_sampler(bounds, height, temperature, moisture, n=8):
    channels = {c: np.full((n, n), 0.5) for c in FieldChannel}
    channels[FieldChannel.HEIGHT] = np.full((n, n), height)
    channels[FieldChannel.TEMPERATURE] = np.full((n, n), temperature)
    channels[FieldChannel.MOISTURE] = np.full((n, n), moisture)
    return FieldSampler(bounds, channels)


class TestBiomeClassification:
    """Test per-cell biome decisions."""

    @pytest.fixture
    def classifier(self):
        return BiomeClassifier(BiomeOptions(biome_resolution=8))

    @pytest.mark.parametrize(
        "height, temperature, moisture, expected",
        [
            # High altitude
            (0.9, 0.1, 0.5, BiomeType.TUNDRA),
            (0.9, 0.5, 0.5, BiomeType.MOUNTAIN),
            # Hills
            (0.7, 0.3, 0.7, BiomeType.FOREST),
            (0.7, 0.5, 0.3, BiomeType.GRASSLAND),
            (0.7, 0.5, 0.5, BiomeType.TEMPERATE),
            # Lowlands
            (0.2, 0.5, 0.9, BiomeType.SWAMP),
            (0.2, 0.7, 0.7, BiomeType.TROPICAL),
            (0.2, 0.3, 0.7, BiomeType.FOREST),
            (0.2, 0.5, 0.3, BiomeType.GRASSLAND),
            # Temperature x moisture table
            (0.45, 0.1, 0.5, BiomeType.TUNDRA),
            (0.45, 0.3, 0.3, BiomeType.GRASSLAND),
            (0.45, 0.3, 0.5, BiomeType.TEMPERATE),
            (0.45, 0.5, 0.1, BiomeType.DESERT),
            (0.45, 0.5, 0.7, BiomeType.FOREST),
            (0.45, 0.5, 0.9, BiomeType.SWAMP),
            (0.45, 0.7, 0.5, BiomeType.FOREST),
            (0.45, 0.7, 0.9, BiomeType.TROPICAL),
            (0.45, 0.9, 0.3, BiomeType.DESERT),
            (0.45, 0.9, 0.5, BiomeType.TROPICAL),
        ],
    )
    def test_classify_cells(self, classifier, height, temperature, moisture, expected):
        """Test biome decisions for single cells across the altitude bands."""
        labels = classifier.classify_cells(np.array([height]), np.array([temperature]), np.array([moisture]))
        assert BiomeType(int(labels[0])) == expected

    def test_sharpness_moves_band_edges(self):
        """Test that transition sharpness shifts where bands begin."""
        # With soft transitions the alpine band starts below the mountain threshold
        soft = BiomeClassifier(BiomeOptions(transition_sharpness=0.5))
        sharp = BiomeClassifier(BiomeOptions(transition_sharpness=100.0))
        h, t, m = np.array([0.75]), np.array([0.5]), np.array([0.5])
        assert soft.classify_cells(h, t, m)[0] == BiomeType.MOUNTAIN
        assert sharp.classify_cells(h, t, m)[0] == BiomeType.TEMPERATE

    def test_uniform_region(self):
        """Test classification of a uniform region."""
        bounds = Bounds.from_size(50, 50)
        sampler = constant_sampler(bounds, 0.2, 0.5, 0.9)
        biome_map = BiomeClassifier(BiomeOptions(biome_resolution=8)).classify(bounds, sampler)
        assert np.all(biome_map.labels == BiomeType.SWAMP)
        assert biome_map.biome_at(10, 10) == BiomeType.SWAMP


class TestBoundarySmoothing:
    """Test majority-vote smoothing."""

    @pytest.fixture
    def classifier(self):
        return BiomeClassifier()

    def test_isolated_cell_absorbed(self, classifier):
        """Test that an isolated cell takes its neighbours' biome."""
        labels = np.full((5, 5), BiomeType.GRASSLAND, dtype=np.uint8)
        labels[2, 2] = BiomeType.DESERT
        smoothed = classifier.smooth_boundaries(labels, 1)
        assert np.all(smoothed == BiomeType.GRASSLAND)

    def test_tie_keeps_own_biome(self, classifier):
        """Test that a cell keeps its biome on a tied vote."""
        labels = np.array([[BiomeType.DESERT, BiomeType.FOREST]], dtype=np.uint8)
        smoothed = classifier.smooth_boundaries(labels, 1)
        np.testing.assert_array_equal(smoothed, labels)

    def test_tie_between_others_picks_lowest(self, classifier):
        """Test that a tie between other biomes picks the lowest id."""
        f, g, s = BiomeType.FOREST, BiomeType.GRASSLAND, BiomeType.SWAMP
        labels = np.array([[f, g, f], [g, s, g], [f, g, f]], dtype=np.uint8)
        smoothed = classifier.smooth_boundaries(labels, 1)
        assert smoothed[1, 1] == BiomeType.FOREST

    def test_edge_effect(self, classifier):
        """Test edge effect weights at biome boundaries."""
        labels = np.zeros((3, 3), dtype=np.uint8)
        labels[1, 1] = BiomeType.FOREST
        edge = classifier.edge_effect(labels, weight=1.0)
        assert edge[1, 1] == pytest.approx(1.0)
        # Corner: three in-bounds neighbours, one differs
        assert edge[0, 0] == pytest.approx(1.0 / 3.0)


class TestBiomeMap:
    """Test biome map queries and statistics."""

    @pytest.fixture
    def bounds(self):
        return Bounds.from_size(100, 100)

    @pytest.fixture
    def analysed(self, bounds):
        source = FunctionHeightSource(lambda x, z: x / 100.0 * 0.9 + 0.0 * z, bounds)
        sampler = TerrainAnalyzer(TerrainAnalysisOptions(analysis_resolution=32, seed=3)).analyze(source)
        return sampler

    def test_idempotent(self, bounds, analysed):
        """Test that classifying twice gives identical maps."""
        classifier = BiomeClassifier(BiomeOptions(biome_resolution=16, seed=3))
        a = classifier.classify(bounds, analysed)
        b = classifier.classify(bounds, analysed)
        np.testing.assert_array_equal(a.labels, b.labels)
        np.testing.assert_array_equal(a.biodiversity, b.biodiversity)

    def test_biodiversity_in_unit_range(self, bounds, analysed):
        """Test that biodiversity lies in [0, 1]."""
        biome_map = BiomeClassifier(BiomeOptions(biome_resolution=16)).classify(bounds, analysed)
        assert biome_map.biodiversity.min() >= 0.0
        assert biome_map.biodiversity.max() <= 1.0

    def test_biodiversity_disabled(self, bounds, analysed):
        """Test that disabling biodiversity leaves it at zero."""
        options = BiomeOptions(biome_resolution=16, calculate_biodiversity=False)
        biome_map = BiomeClassifier(options).classify(bounds, analysed)
        assert np.all(biome_map.biodiversity == 0.0)

    def test_statistics(self, bounds):
        """Test per-biome coverage and mean biodiversity."""
        labels = np.zeros((4, 4), dtype=np.uint8)
        labels[:2] = BiomeType.FOREST
        biodiversity = np.where(labels == BiomeType.FOREST, 0.8, 0.2)
        biome_map = BiomeMap(bounds, labels, biodiversity)

        stats = biome_map.statistics()
        assert stats["Forest"]["percentage"] == pytest.approx(50.0)
        assert stats["Desert"]["mean_biodiversity"] == pytest.approx(0.2)
        assert get_biome_statistics(biome_map) == {"Desert": 50.0, "Forest": 50.0}

    def test_nearest_cell_lookup(self, bounds):
        """Test nearest-cell biome lookup."""
        labels = np.zeros((2, 2), dtype=np.uint8)
        labels[1, 0] = BiomeType.SWAMP
        biome_map = BiomeMap(bounds, labels, np.zeros((2, 2)))
        assert biome_map.biome_at(90, 10) == BiomeType.SWAMP
        assert biome_map.biome_at(10, 10) == BiomeType.DESERT
        np.testing.assert_array_equal(
            biome_map.biomes_at(np.array([90.0, 10.0]), np.array([10.0, 90.0])), [BiomeType.SWAMP, BiomeType.DESERT]
        )

    def test_biodiversity_bilinear(self, bounds):
        """Test bilinear biodiversity queries."""
        biodiversity = np.array([[0.0, 0.0], [1.0, 1.0]])
        biome_map = BiomeMap(bounds, np.zeros((2, 2), dtype=np.uint8), biodiversity)
        assert biome_map.biodiversity_at(50, 50) == pytest.approx(0.5)

    def test_shape_mismatch_rejected(self, bounds):
        """Test that mismatched label and biodiversity grids are rejected."""
        with pytest.raises(ValueError):
            BiomeMap(bounds, np.zeros((2, 2)), np.zeros((3, 3)))

    def test_every_biome_named(self):
        """Test that every biome has a display name."""
        assert set(BIOME_NAMES) == set(BiomeType)


class TestCompatibility:
    """Test biome compatibility lookup."""

    def test_identity(self):
        """Test that a biome is fully compatible with itself."""
        for biome in BiomeType:
            assert biome_compatibility(biome, biome) == 1.0

    def test_symmetric_pairs(self):
        """Test compatibility of the listed biome pairs in both orders."""
        assert biome_compatibility(BiomeType.FOREST, BiomeType.TEMPERATE) == 0.8
        assert biome_compatibility(BiomeType.TEMPERATE, BiomeType.FOREST) == 0.8
        assert biome_compatibility(BiomeType.TEMPERATE, BiomeType.GRASSLAND) == 0.7
        assert biome_compatibility(BiomeType.TROPICAL, BiomeType.FOREST) == 0.6

    def test_default(self):
        """Test the default compatibility of unlisted pairs."""
        assert biome_compatibility(BiomeType.DESERT, BiomeType.SWAMP) == 0.3

    def test_compatibility_at(self):
        """Test compatibility lookup at a position."""
        bounds = Bounds.from_size(10, 10)
        labels = np.full((2, 2), BiomeType.FOREST, dtype=np.uint8)
        biome_map = BiomeMap(bounds, labels, np.zeros((2, 2)))
        assert biome_map.compatibility_at(5, 5, BiomeType.TEMPERATE) == 0.8
