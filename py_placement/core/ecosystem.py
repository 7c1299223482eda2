"""
Lightweight ecological feedback on placed producers.

This module implements:
- Organism seeding from producer-role placed objects (capped)
- Environmental fitness and climate-drift stress by ecosystem role
- Species interaction and natural selection from neighbour scans
- Synchronous ticks and per-organism incremental ticks
"""

import itertools
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

import numpy as np
import structlog
from scipy.spatial import cKDTree

from .fields import FieldChannel, FieldSampler, Position
from .layers import EcosystemRole
from .spatial_grid import PlacedObject, SpatialPlacementGrid
from .terrain_analysis import TEMPERATURE_SCALE

logger = structlog.get_logger()

# Climate sensitivity by role: producers stable, consumers most sensitive
ROLE_SENSITIVITY = {
    EcosystemRole.PRODUCER: 0.8,
    EcosystemRole.CONSUMER: 1.1,
    EcosystemRole.DECOMPOSER: 0.6,
    EcosystemRole.NEUTRAL: 1.0,
}


@dataclass(frozen=True)
class EcosystemOptions:
    """Ecosystem simulation options."""

    simulation_speed: float = 1.0
    max_organisms: int = 10000
    biodiversity_target: float = 0.8

    species_interaction: bool = True
    natural_selection: bool = True
    environment_affects_growth: bool = True
    climate_change_rate: float = 0.01

    interaction_radius: float = 10.0
    competition_radius: float = 5.0

    # Records at or below the threshold are dropped after a tick when enabled
    remove_dead: bool = False
    death_threshold: float = 0.0

    def __post_init__(self):
        if self.max_organisms < 0:
            raise ValueError("max_organisms must not be negative")
        if self.simulation_speed < 0:
            raise ValueError("simulation_speed must not be negative")


@dataclass(frozen=True)
class EnvironmentParams:
    """Global climate driving environmental fitness."""

    temperature: float = 20.0  # °C
    humidity: float = 0.6

    @classmethod
    def from_fields(cls, sampler: FieldSampler) -> "EnvironmentParams":
        """Region-average climate from analysed fields."""
        return cls(
            temperature=float(sampler.grid(FieldChannel.TEMPERATURE).mean()) * TEMPERATURE_SCALE,
            humidity=float(sampler.grid(FieldChannel.MOISTURE).mean()),
        )


@dataclass
class OrganismRecord:
    id: int
    object_id: int
    species: str
    position: Position
    role: EcosystemRole = EcosystemRole.PRODUCER
    health: float = 1.0
    age: float = 0.0

    reproduction_rate: float = 0.1
    mortality_rate: float = 0.05
    competitiveness: float = 0.5
    environmental_tolerance: float = 0.8
    adaptability: float = 1.0


class EcosystemSimulator:
    """Evolves organism health and age under environmental and competitive pressure."""

    def __init__(self, options: Optional[EcosystemOptions] = None):
        """
        Initialize ecosystem simulator.

        Args:
            options: Ecosystem simulation options
        """
        self.options = options or EcosystemOptions()
        self.organisms: List[OrganismRecord] = []
        self.skipped = 0
        self.elapsed = 0.0
        self._objects: Dict[int, PlacedObject] = {}
        self._ids = itertools.count(1)

    def reset(self):
        self.organisms = []
        self.skipped = 0
        self.elapsed = 0.0
        self._objects = {}

    def seed(self, grid: SpatialPlacementGrid) -> int:
        """
        Create one record per producer in the grid.

        Producers beyond ``max_organisms`` are skipped and counted.

        Returns:
            Number of records created
        """
        self.reset()
        for obj in grid.objects():
            if obj.ecosystem_role != EcosystemRole.PRODUCER:
                continue
            if len(self.organisms) >= self.options.max_organisms:
                self.skipped += 1
                continue
            self.organisms.append(
                OrganismRecord(
                    id=next(self._ids),
                    object_id=obj.id,
                    species=obj.species or "unknown",
                    position=obj.position,
                    role=obj.ecosystem_role,
                    health=obj.health,
                    age=obj.age,
                )
            )
            self._objects[obj.id] = obj

        if self.skipped:
            logger.warning(
                "Organism cap reached",
                max_organisms=self.options.max_organisms,
                skipped=self.skipped,
            )
        logger.info("Ecosystem initialized", organisms=len(self.organisms))
        return len(self.organisms)

    def tick(self, env: Optional[EnvironmentParams] = None, dt: float = 1.0):
        """Advance every organism by ``dt``."""
        for _ in self.iter_tick(env, dt):
            pass

    def iter_tick(self, env: Optional[EnvironmentParams] = None, dt: float = 1.0) -> Iterator[int]:
        """
        Advance every organism by ``dt``, yielding after each update.

        Yields:
            Number of organisms updated so far in this tick
        """
        if dt < 0:
            raise ValueError(f"Time step must not be negative, got {dt}")
        env = env or EnvironmentParams()
        if not self.organisms:
            return

        neighbours = self._neighbour_lists()
        for i, organism in enumerate(self.organisms):
            self.update_organism(i, organism, env, dt, neighbours)
            yield i + 1

        self.elapsed += dt
        if self.options.remove_dead:
            self.remove_dead()

    def _neighbour_lists(self):
        """Indices of organisms within the interaction and competition radii, per organism."""
        opts = self.options
        points = np.array([o.position for o in self.organisms], dtype=np.float64)
        tree = cKDTree(points)
        interaction = tree.query_ball_point(points, opts.interaction_radius)
        competition = tree.query_ball_point(points, opts.competition_radius)
        return points, interaction, competition

    def update_organism(self, index: int, organism: OrganismRecord, env: EnvironmentParams, dt: float, neighbours):
        opts = self.options
        points, interaction, competition = neighbours

        if opts.environment_affects_growth:
            organism.health *= self.environmental_fitness(env)

        if opts.climate_change_rate > 0:
            stress = self.climate_stress(organism)
            organism.health *= 1.0 - stress * opts.climate_change_rate * dt
            organism.adaptability = max(0.0, organism.adaptability - opts.climate_change_rate * dt * 0.1)

        if opts.species_interaction:
            same, other = self._count_within(index, points, interaction[index], opts.interaction_radius)
            organism.health *= self.interaction_effect(same, other)

        if opts.natural_selection:
            same, _ = self._count_within(index, points, competition[index], opts.competition_radius)
            self.apply_natural_selection(organism, same)

        organism.age += dt * opts.simulation_speed
        organism.health = min(1.0, max(0.0, organism.health))

    def _count_within(self, index: int, points: np.ndarray, candidates: List[int], radius: float):
        """(same-species, other-species) neighbours strictly closer than ``radius``."""
        species = self.organisms[index].species
        same = other = 0
        for j in candidates:
            if j == index:
                continue
            if np.hypot(*(points[j] - points[index])) >= radius:
                continue
            if self.organisms[j].species == species:
                same += 1
            else:
                other += 1
        return same, other

    @staticmethod
    def environmental_fitness(env: EnvironmentParams) -> float:
        fitness = 1.0
        if env.temperature < 0.0 or env.temperature > 40.0:
            fitness *= 0.8
        if env.humidity < 0.2 or env.humidity > 0.9:
            fitness *= 0.9
        return fitness

    @staticmethod
    def climate_stress(organism: OrganismRecord) -> float:
        base_stress = 1.0 - organism.environmental_tolerance
        adaptability_modifier = 1.0 - organism.adaptability
        # Older organisms are more fragile
        age_stress = (organism.age - 50.0) / 50.0 * 0.2 if organism.age > 50.0 else 0.0
        role = ROLE_SENSITIVITY.get(organism.role, 1.0)
        return min(1.0, max(0.0, (base_stress + adaptability_modifier + age_stress) * role))

    @staticmethod
    def interaction_effect(same_species: int, other_species: int) -> float:
        effect = (0.95 ** same_species) * (1.01 ** other_species)
        return min(1.2, max(0.8, effect))

    def selection_pressure(self, organism: OrganismRecord, competitors: int) -> float:
        capacity = len(self.organisms) / self.options.max_organisms if self.options.max_organisms else 1.0
        pressure = capacity * 0.4
        pressure += min(1.0, competitors / 5.0) * 0.3
        pressure += (1.0 - organism.environmental_tolerance) * 0.3
        return min(1.0, max(0.0, pressure))

    def apply_natural_selection(self, organism: OrganismRecord, competitors: int):
        pressure = self.selection_pressure(organism, competitors)

        if organism.health < 0.3 and pressure > 0.7:
            organism.health *= 0.98

        if organism.health > 0.8 and pressure < 0.3:
            organism.reproduction_rate = min(organism.reproduction_rate * 1.01, 0.5)

        if organism.age > 80.0:
            organism.health *= 0.995

    def remove_dead(self) -> int:
        threshold = self.options.death_threshold
        alive = [o for o in self.organisms if o.health > threshold]
        removed = len(self.organisms) - len(alive)
        if removed:
            self.organisms = alive
            logger.info("Removed dead organisms", removed=removed)
        return removed

    def write_back(self, grid: Optional[SpatialPlacementGrid] = None) -> int:
        """
        Copy organism health and age onto their placed objects.

        Args:
            grid: When given, only objects still registered in it are updated

        Returns:
            Number of objects updated
        """
        registered = None
        if grid is not None:
            registered = {obj.id for obj in grid.objects()}

        updated = 0
        for organism in self.organisms:
            obj = self._objects.get(organism.object_id)
            if obj is None or (registered is not None and obj.id not in registered):
                continue
            obj.health = organism.health
            obj.age = organism.age
            updated += 1
        return updated

    def statistics(self) -> Dict[str, float]:
        total = len(self.organisms)
        healthy = sum(1 for o in self.organisms if o.health > 0.5)
        return {
            "total": total,
            "healthy": healthy,
            "unhealthy": total - healthy,
            "mean_health": float(np.mean([o.health for o in self.organisms])) if total else 0.0,
            "species": len({o.species for o in self.organisms}),
            "skipped": self.skipped,
            "elapsed": self.elapsed,
            "biodiversity_target": self.options.biodiversity_target,
        }
