"""
Placement layer catalog model.

Layers and rules are frozen pydantic models: they are built once (in code,
from a preset or from a JSON catalog) and shared read-only by every stage
of a run.
"""

from enum import Enum
from typing import Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .biomes import BiomeType
from .curves import Curve

Range = Tuple[float, float]


class PlacementLayerType(str, Enum):
    VEGETATION = "vegetation"
    STRUCTURE = "structure"
    DECORATION = "decoration"
    PARTICLE = "particle"
    AUDIO = "audio"
    LIGHTING = "lighting"


class EcosystemRole(str, Enum):
    PRODUCER = "producer"  # Plants
    CONSUMER = "consumer"  # Animals
    DECOMPOSER = "decomposer"
    NEUTRAL = "neutral"  # Non-living


class PlantCategory(str, Enum):
    """Coarse plant groups used by succession."""

    GRASS = "grass"  # Grass and herbs
    SHRUB = "shrub"
    TREE = "tree"


class PlacementRule(BaseModel):
    """
    One weighted acceptance gate.

    Every condition that is set contributes a score in [0, 1]; the rule
    score is their product. Slope ranges are in degrees and temperature
    ranges in °C; height and moisture are normalised.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "rule"
    enabled: bool = True
    weight: float = Field(1.0, ge=0.0)

    height_range: Optional[Range] = None
    slope_range: Optional[Range] = None
    moisture_range: Optional[Range] = None
    temperature_range: Optional[Range] = None

    allowed_biomes: Optional[Tuple[BiomeType, ...]] = None
    soft_biome_match: bool = False

    water_distance_range: Optional[Range] = None

    min_distance_to_others: Optional[float] = Field(None, gt=0.0)
    avoid_tags: Tuple[str, ...] = ()

    custom_rule: Optional[str] = None

    @field_validator("height_range", "slope_range", "moisture_range", "temperature_range", "water_distance_range")
    @classmethod
    def _ordered_range(cls, value):
        if value is not None and value[0] > value[1]:
            raise ValueError(f"Range minimum exceeds maximum: {value}")
        return value

    @field_validator("allowed_biomes", mode="before")
    @classmethod
    def _biome_names(cls, value):
        # Catalog files may name biomes instead of using their numeric values
        if value is None:
            return value
        return tuple(BiomeType[v.upper()] if isinstance(v, str) else v for v in value)


class Variation(BaseModel):
    """Per-instance transform variation."""

    model_config = ConfigDict(frozen=True)

    random_rotation: bool = True
    random_scale: bool = True
    min_scale: float = Field(0.8, gt=0.0)
    max_scale: float = Field(1.2, gt=0.0)
    surface_offset: float = 0.0

    @model_validator(mode="after")
    def _scale_order(self):
        if self.min_scale > self.max_scale:
            raise ValueError("min_scale must not exceed max_scale")
        return self


class PlacementLayer(BaseModel):
    """What to place, where and how densely."""

    model_config = ConfigDict(frozen=True)

    name: str
    layer_type: PlacementLayerType = PlacementLayerType.VEGETATION
    enabled: bool = True
    priority: float = 1.0

    prefabs: Tuple[str, ...] = ()
    prefab_weights: Optional[Tuple[float, ...]] = None

    base_density: float = Field(1.0, ge=0.0)
    density_falloff: Optional[Curve] = None
    use_noise_density: bool = True

    rules: Tuple[PlacementRule, ...] = ()
    require_all_rules: bool = False

    variation: Variation = Variation()

    ecosystem_role: EcosystemRole = EcosystemRole.PRODUCER
    species: Optional[str] = None
    tags: Tuple[str, ...] = ()
    competing_species: Tuple[str, ...] = ()
    required_species: Tuple[str, ...] = ()
    influence_radius: float = Field(5.0, ge=0.0)
    plant_category: Optional[PlantCategory] = None

    @model_validator(mode="after")
    def _weights_match_prefabs(self):
        if self.prefab_weights is not None:
            if len(self.prefab_weights) != len(self.prefabs):
                raise ValueError(
                    f"Layer '{self.name}' has {len(self.prefab_weights)} weights for {len(self.prefabs)} prefabs"
                )
            if any(w < 0 for w in self.prefab_weights):
                raise ValueError(f"Layer '{self.name}' has negative prefab weights")
        return self

    @property
    def species_name(self) -> str:
        """Species tag; defaults to the layer name."""
        return self.species or self.name

    @property
    def enabled_rules(self) -> Tuple[PlacementRule, ...]:
        return tuple(rule for rule in self.rules if rule.enabled)

    def select_prefab(self, rng: np.random.Generator) -> Optional[str]:
        """
        Pick a prefab reference.

        Weighted when weights are configured and sum above zero, uniform
        otherwise. Returns None for layers without prefabs.
        """
        if not self.prefabs:
            return None

        if self.prefab_weights is not None and sum(self.prefab_weights) > 0:
            total = sum(self.prefab_weights)
            target = rng.random() * total
            cumulative = 0.0
            for prefab, weight in zip(self.prefabs, self.prefab_weights):
                cumulative += weight
                if target <= cumulative:
                    return prefab
            return self.prefabs[-1]

        return self.prefabs[int(rng.integers(0, len(self.prefabs)))]
