"""
Example demonstrating layered object placement on procedural terrain.
"""

import numpy as np
import matplotlib.pyplot as plt
from py_placement.config import get_preset, settings
from py_placement.core import (
    Bounds, FieldChannel, FunctionHeightSource, PlacementOrchestrator, PlacementRequest,
    TerrainAnalysisOptions, WaterFeature, WaterKind
)
from py_placement.utils import configure_logging


def island(x, z):
    """Single island with a ridge running north-south."""
    dx = (x - 256.0) / 256.0
    dz = (z - 256.0) / 256.0
    dome = np.clip(1.0 - np.sqrt(dx ** 2 + dz ** 2), 0.0, 1.0)
    ridge = 0.3 * np.exp(-(dx * 6.0) ** 2) * dome
    return dome * 0.7 + ridge


def main():
    configure_logging(settings.log_level, "console")

    seed = "placement_demo"
    bounds = Bounds.from_size(512, 512)
    terrain = FunctionHeightSource(island, bounds)

    # Two lakes on the eastern slope feed the reeds
    lakes = (
        WaterFeature(x=370.0, z=180.0, radius=18.0),
        WaterFeature(x=330.0, z=330.0, radius=12.0, kind=WaterKind.LAKE),
    )
    terrain_options = TerrainAnalysisOptions(
        analysis_resolution=128,
        water_level=0.1,
        water_features=lakes,
    )

    layers = (
        get_preset("tree"),
        get_preset("shrub"),
        get_preset("grass"),
        get_preset("water_reed"),
        get_preset("rock"),
        get_preset("house"),
    )

    placed = []

    def place(prefab, position, rotation, scale):
        placed.append((prefab, position))
        return len(placed)

    orchestrator = PlacementOrchestrator.from_settings(place=place)

    print("Placing objects...")
    report = orchestrator.run(
        PlacementRequest(
            layers=layers,
            height_source=terrain,
            seed=seed,
            terrain_options=terrain_options,
            simulate_ecosystem=True,
            ecosystem_ticks=5,
        )
    )

    print(f"Placed {report.placed} objects (state: {report.state.value})")
    for name, stats in report.layers.items():
        print(f"  {name:12s} {stats.placed:6d} / {stats.attempts:6d} attempts "
              f"({stats.acceptance_rate:.0%} accepted)")
    for biome, stats in report.biome_statistics.items():
        print(f"  {biome:12s} {stats['percentage']:5.1f}%")
    if report.ecosystem_statistics:
        print(f"Mean organism health: {report.ecosystem_statistics['mean_health']:.2f}")

    # Visualize results
    fig, axes = plt.subplots(2, 2, figsize=(12, 10))
    extent = (bounds.min_x, bounds.max_x, bounds.min_z, bounds.max_z)

    # Height map
    ax = axes[0, 0]
    heights = orchestrator.sampler.grid(FieldChannel.HEIGHT)
    image = ax.imshow(heights.T, origin='lower', extent=extent, cmap='terrain')
    ax.set_title('Elevation')
    plt.colorbar(image, ax=ax, label='Height')

    # Density heatmap for the tree layer
    ax = axes[0, 1]
    image = ax.imshow(orchestrator.density_heatmap(layers[0], resolution=64).T,
                      origin='lower', extent=extent, cmap='YlGn')
    ax.set_title('Tree density')
    plt.colorbar(image, ax=ax, label='Objects / 100 units²')

    # Biodiversity
    ax = axes[1, 0]
    image = ax.imshow(orchestrator.biodiversity_heatmap().T,
                      origin='lower', extent=extent, cmap='viridis', vmin=0, vmax=1)
    ax.set_title('Biodiversity')
    plt.colorbar(image, ax=ax)

    # Placed objects by layer
    ax = axes[1, 1]
    colors = {
        'tree': 'darkgreen', 'shrub': 'olive', 'grass': 'yellowgreen',
        'water_reed': 'teal', 'rock': 'grey', 'house': 'red'
    }
    for name, color in colors.items():
        points = np.array([o.position for o in orchestrator.grid.objects() if o.layer_name == name])
        if len(points):
            ax.scatter(points[:, 0], points[:, 1], s=2, c=color, label=name)
    ax.set_title('Placed objects')
    ax.set_xlim(bounds.min_x, bounds.max_x)
    ax.set_ylim(bounds.min_z, bounds.max_z)
    ax.set_aspect('equal')
    ax.legend(loc='upper right', markerscale=4, fontsize=8)

    plt.tight_layout()
    plt.savefig('placement_demo.png', dpi=150)
    print("Saved visualization to placement_demo.png")


if __name__ == "__main__":
    main()
