"""
Core placement functionality.
"""

from .fields import Bounds, FieldChannel, FieldSample, FieldSampler
from .height_source import ArrayHeightSource, FlatHeightSource, FunctionHeightSource, HeightSource
from .curves import Curve
from .errors import AnalysisFailure, ConfigurationError, PlacementError
from .terrain_analysis import TerrainAnalysisOptions, TerrainAnalyzer, WaterFeature, WaterKind
from .biomes import BiomeClassifier, BiomeMap, BiomeOptions, BiomeType, get_biome_statistics
from .layers import EcosystemRole, PlacementLayer, PlacementLayerType, PlacementRule, PlantCategory, Variation
from .spatial_grid import PlacedObject, SpatialPlacementGrid
from .density import DensityField, DensityOptions
from .rules import CustomRuleRegistry, RuleEngine, RuleEngineOptions, RuleEvaluationResult
from .ecosystem import EcosystemOptions, EcosystemSimulator, EnvironmentParams
from .orchestrator import (
    PipelineState,
    PlacementOrchestrator,
    PlacementReport,
    PlacementRequest,
    PlacementRun,
)

__all__ = ['Bounds', 'FieldChannel', 'FieldSample', 'FieldSampler',
           'ArrayHeightSource', 'FlatHeightSource', 'FunctionHeightSource', 'HeightSource',
           'Curve', 'AnalysisFailure', 'ConfigurationError', 'PlacementError',
           'TerrainAnalysisOptions', 'TerrainAnalyzer', 'WaterFeature', 'WaterKind',
           'BiomeClassifier', 'BiomeMap', 'BiomeOptions', 'BiomeType', 'get_biome_statistics',
           'EcosystemRole', 'PlacementLayer', 'PlacementLayerType', 'PlacementRule', 'PlantCategory', 'Variation',
           'PlacedObject', 'SpatialPlacementGrid', 'DensityField', 'DensityOptions',
           'CustomRuleRegistry', 'RuleEngine', 'RuleEngineOptions', 'RuleEvaluationResult',
           'EcosystemOptions', 'EcosystemSimulator', 'EnvironmentParams',
           'PipelineState', 'PlacementOrchestrator', 'PlacementReport', 'PlacementRequest', 'PlacementRun']
