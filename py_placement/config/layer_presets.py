"""
Built-in placement layer presets and a JSON catalog loader.

A catalog file is either a JSON list of layer objects or an object with a
"layers" list. An entry may name a preset and override some of its fields:

    {"preset": "tree", "name": "Oak", "prefabs": ["oak_a", "oak_b"]}
"""

import json
from pathlib import Path
from typing import Dict, List, Union

from ..core.biomes import BiomeType
from ..core.errors import ConfigurationError
from ..core.layers import (
    EcosystemRole,
    PlacementLayer,
    PlacementLayerType,
    PlacementRule,
    PlantCategory,
    Variation,
)

PRESETS: Dict[str, PlacementLayer] = {
    "grass": PlacementLayer(
        name="grass",
        prefabs=("grass_clump",),
        base_density=2.0,
        plant_category=PlantCategory.GRASS,
        tags=("grass", "ground_cover"),
        influence_radius=1.0,
        rules=(
            PlacementRule(name="lowland", height_range=(0.0, 0.7)),
            PlacementRule(name="gentle_slope", slope_range=(0.0, 35.0), weight=0.5),
        ),
        variation=Variation(min_scale=0.6, max_scale=1.4),
    ),
    "shrub": PlacementLayer(
        name="shrub",
        prefabs=("shrub_small", "shrub_large"),
        prefab_weights=(0.7, 0.3),
        base_density=0.6,
        plant_category=PlantCategory.SHRUB,
        tags=("shrub",),
        competing_species=("tree",),
        influence_radius=2.0,
        rules=(
            PlacementRule(name="moist_ground", moisture_range=(0.2, 1.0)),
            PlacementRule(name="not_too_steep", slope_range=(0.0, 40.0)),
        ),
    ),
    "tree": PlacementLayer(
        name="tree",
        prefabs=("tree_a", "tree_b", "tree_c"),
        base_density=0.4,
        plant_category=PlantCategory.TREE,
        tags=("tree",),
        competing_species=("tree",),
        influence_radius=5.0,
        rules=(
            PlacementRule(
                name="forest_biomes",
                allowed_biomes=(BiomeType.FOREST, BiomeType.TEMPERATE, BiomeType.TROPICAL),
                soft_biome_match=True,
            ),
            PlacementRule(name="below_treeline", height_range=(0.0, 0.8)),
            PlacementRule(name="sheltered", custom_rule="wind_exposure", weight=0.5),
        ),
        variation=Variation(min_scale=0.8, max_scale=1.3),
    ),
    "rock": PlacementLayer(
        name="rock",
        layer_type=PlacementLayerType.DECORATION,
        prefabs=("rock_small", "rock_medium", "boulder"),
        prefab_weights=(0.6, 0.3, 0.1),
        base_density=0.15,
        ecosystem_role=EcosystemRole.NEUTRAL,
        tags=("rock",),
        use_noise_density=False,
        rules=(PlacementRule(name="spacing", min_distance_to_others=3.0, avoid_tags=("rock",)),),
        variation=Variation(min_scale=0.5, max_scale=2.0),
    ),
    "water_reed": PlacementLayer(
        name="water_reed",
        prefabs=("reed",),
        base_density=1.0,
        plant_category=PlantCategory.GRASS,
        tags=("reed", "wetland"),
        rules=(
            PlacementRule(name="near_water", water_distance_range=(0.0, 20.0)),
            PlacementRule(name="wet", moisture_range=(0.5, 1.0)),
        ),
        require_all_rules=True,
    ),
    "house": PlacementLayer(
        name="house",
        layer_type=PlacementLayerType.STRUCTURE,
        prefabs=("house_small", "house_large"),
        base_density=0.02,
        ecosystem_role=EcosystemRole.NEUTRAL,
        use_noise_density=False,
        tags=("structure", "house"),
        influence_radius=10.0,
        rules=(
            PlacementRule(name="flat_ground", slope_range=(0.0, 10.0)),
            PlacementRule(name="dry_land", water_distance_range=(15.0, 1000.0)),
            PlacementRule(name="spacing", min_distance_to_others=20.0, avoid_tags=("structure",)),
        ),
        require_all_rules=True,
        variation=Variation(random_scale=False),
    ),
}


def get_preset(name: str) -> PlacementLayer:
    """
    Get a layer preset by name.

    Raises:
        ConfigurationError: If no preset has that name
    """
    try:
        return PRESETS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown layer preset '{name}'. Available: {', '.join(list_presets())}"
        ) from None


def list_presets() -> List[str]:
    return sorted(PRESETS)


def _layer_from_entry(entry: dict) -> PlacementLayer:
    entry = dict(entry)
    preset_name = entry.pop("preset", None)
    if preset_name is None:
        return PlacementLayer.model_validate(entry)

    base = get_preset(preset_name).model_dump()
    base.update(entry)
    return PlacementLayer.model_validate(base)


def load_layer_catalog(source: Union[str, Path]) -> List[PlacementLayer]:
    """
    Load placement layers from a JSON catalog file.

    Args:
        source: Path to the catalog

    Returns:
        Layers in file order

    Raises:
        ConfigurationError: If the file is malformed or names an unknown preset
        pydantic.ValidationError: If a layer entry is invalid
    """
    path = Path(source)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Layer catalog {path} is not valid JSON: {e}") from e

    entries = data.get("layers") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigurationError(f"Layer catalog {path} must contain a list of layers")

    layers = [_layer_from_entry(entry) for entry in entries]
    names = [layer.name for layer in layers]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate layer names in catalog: {duplicates}")
    return layers
