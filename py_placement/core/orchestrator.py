"""
Placement pipeline.

The orchestrator runs analyze -> classify -> build grid -> place layers ->
(optionally) simulate ecosystem. The whole pipeline is a generator that
yields after every unit of work, so a PlacementRun can be advanced in
bounded slices or run to completion; cancelling a run closes the generator
and leaves already-placed objects in the grid.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import structlog

from .biomes import BiomeClassifier, BiomeMap, BiomeOptions, BiomeType
from .density import DensityField, DensityOptions
from .ecosystem import EcosystemOptions, EcosystemSimulator, EnvironmentParams
from .errors import AnalysisFailure, ConfigurationError, PlacementError
from .fields import Bounds, FieldSampler, Position
from .height_source import HeightSource
from .layers import PlacementLayer, PlacementLayerType
from .rules import CustomRuleRegistry, RuleEngine, RuleEngineOptions
from .spatial_grid import PlacedObject, SpatialPlacementGrid
from .terrain_analysis import TerrainAnalysisOptions, TerrainAnalyzer
from ..utils.random import create_rng

logger = structlog.get_logger()

PlaceCallback = Callable[[Optional[str], Tuple[float, float, float], float, float], Any]

# Progress reached at the end of each stage
STAGE_PROGRESS = {
    "analysis": 0.25,
    "classification": 0.5,
    "placing": 0.9,
    "ecosystem": 1.0,
}

# Stream ids under each layer's index
CANDIDATE_STREAM = 0
VARIATION_STREAM = 1


class PipelineState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    CLASSIFYING_BIOMES = "classifying_biomes"
    BUILDING_GRID = "building_grid"
    PLACING = "placing"
    SIMULATING_ECOSYSTEM = "simulating_ecosystem"
    ERROR = "error"


@dataclass(frozen=True)
class PlacementRequest:
    """Everything one pipeline run needs."""

    layers: Tuple[PlacementLayer, ...]
    height_source: Optional[HeightSource] = None
    bounds: Optional[Bounds] = None
    seed: Union[int, str] = 0
    grid_cell_size: float = 5.0
    layer_types: Optional[Tuple[PlacementLayerType, ...]] = None

    simulate_ecosystem: bool = False
    ecosystem_ticks: int = 1
    tick_dt: float = 1.0
    environment: Optional[EnvironmentParams] = None
    sim_time: float = 0.0

    terrain_options: Optional[TerrainAnalysisOptions] = None
    biome_options: Optional[BiomeOptions] = None
    reuse_analysis: bool = True

    @property
    def region(self) -> Optional[Bounds]:
        if self.bounds is not None:
            return self.bounds
        if self.height_source is not None:
            return self.height_source.bounds
        return None


@dataclass
class LayerStatistics:
    layer: str
    attempts: int = 0
    placed: int = 0
    rejected_by_rules: int = 0
    rejected_by_density: int = 0
    error: Optional[str] = None

    @property
    def acceptance_rate(self) -> float:
        return self.placed / self.attempts if self.attempts else 0.0


@dataclass
class PlacementReport:
    state: PipelineState
    placed: int
    layers: Dict[str, LayerStatistics]
    error: Optional[str] = None
    cancelled: bool = False
    biome_statistics: Dict[str, Dict[str, float]] = field(default_factory=dict)
    ecosystem_statistics: Dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.IDLE and not self.cancelled and self.error is None


class PlacementRun:
    """
    Resumable continuation of one pipeline run.

    ``advance(budget)`` performs up to ``budget`` units of work (placement
    attempts, organism updates or stage transitions) and returns whether
    the run has finished.
    """

    def __init__(self, orchestrator: "PlacementOrchestrator", request: PlacementRequest):
        self.orchestrator = orchestrator
        self.request = request
        self.progress = 0.0
        self.layer_stats: Dict[str, LayerStatistics] = {}
        self.error: Optional[str] = None
        self.finished = False
        self.cancelled = False
        self._steps: Iterator[None] = orchestrator._pipeline(request, self)

    def advance(self, budget: Optional[int] = None) -> bool:
        if self.finished:
            return True
        budget = budget if budget is not None else self.orchestrator.steps_per_slice
        if budget < 1:
            raise ValueError(f"Budget must be at least 1, got {budget}")

        for _ in range(budget):
            try:
                next(self._steps)
            except StopIteration:
                self.finished = True
                break

        self.orchestrator._emit_progress(self)
        return self.finished

    def run_to_completion(self) -> PlacementReport:
        while not self.advance(self.orchestrator.steps_per_slice):
            pass
        return self.report

    def cancel(self):
        """Drop the pending continuation; nothing is rolled back."""
        if self.finished:
            return
        self._steps.close()
        self.finished = True
        self.cancelled = True
        self.orchestrator._release(self)

    @property
    def report(self) -> PlacementReport:
        return self.orchestrator._build_report(self)


class PlacementOrchestrator:
    """Composition root of the placement pipeline."""

    def __init__(
        self,
        analyzer: Optional[TerrainAnalyzer] = None,
        classifier: Optional[BiomeClassifier] = None,
        density: Optional[DensityField] = None,
        rules: Optional[RuleEngine] = None,
        ecosystem: Optional[EcosystemSimulator] = None,
        place: Optional[PlaceCallback] = None,
        destroy: Optional[Callable[[Any], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_complete: Optional[Callable[[PlacementReport], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        steps_per_slice: int = 50,
        vegetation_cell_size: float = 5.0,
        structure_cell_size: float = 10.0,
    ):
        """
        Initialize the orchestrator.

        Args:
            analyzer: Terrain analyzer
            classifier: Biome classifier
            density: Density model
            rules: Rule engine
            ecosystem: Ecosystem simulator
            place: ``place(prefab, (x, y, z), rotation, scale) -> handle`` host callback
            destroy: ``destroy(handle)`` host callback used when clearing
            on_progress: Receives overall progress in [0, 1]
            on_complete: Receives the final report of a successful run
            on_error: Receives a human-readable reason for every reported error
            steps_per_slice: Default work budget for ``PlacementRun.advance``
            vegetation_cell_size: Grid cell size used by ``place_vegetation``
            structure_cell_size: Grid cell size used by ``place_structures``
        """
        self.analyzer = analyzer or TerrainAnalyzer()
        self.classifier = classifier or BiomeClassifier()
        self.density = density or DensityField()
        self.rules = rules or RuleEngine()
        self.ecosystem = ecosystem or EcosystemSimulator()
        self.place = place
        self.destroy = destroy
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error
        self.steps_per_slice = steps_per_slice
        self.vegetation_cell_size = vegetation_cell_size
        self.structure_cell_size = structure_cell_size

        self.sampler: Optional[FieldSampler] = None
        self.biome_map: Optional[BiomeMap] = None
        self.grid: Optional[SpatialPlacementGrid] = None

        self._state = PipelineState.IDLE
        self._active_run: Optional[PlacementRun] = None
        self._last_run: Optional[PlacementRun] = None
        self._analysis_key = None
        self._last_emitted = -1.0

    @classmethod
    def from_settings(
        cls,
        settings=None,
        place: Optional[PlaceCallback] = None,
        destroy: Optional[Callable[[Any], None]] = None,
        registry: Optional[CustomRuleRegistry] = None,
        **callbacks,
    ) -> "PlacementOrchestrator":
        """
        Build an orchestrator whose components are configured from Settings.

        Args:
            settings: Settings instance; defaults to the module-level settings
            place: Host instantiation callback
            destroy: Host destruction callback
            registry: Custom rule hooks
            **callbacks: on_progress / on_complete / on_error
        """
        if settings is None:
            from ..config.config import settings as default_settings

            settings = default_settings

        seed = settings.seed
        return cls(
            analyzer=TerrainAnalyzer(
                TerrainAnalysisOptions(analysis_resolution=settings.analysis_resolution, seed=seed)
            ),
            classifier=BiomeClassifier(
                BiomeOptions(biome_resolution=settings.biome_resolution, seed=seed)
            ),
            density=DensityField(
                DensityOptions(
                    adaptive_density=settings.adaptive_density,
                    global_multiplier=settings.global_density_multiplier,
                    global_resolution=settings.density_grid_resolution,
                    seed=seed,
                )
            ),
            rules=RuleEngine(
                RuleEngineOptions(
                    threshold=settings.rule_threshold,
                    enable_cache=settings.enable_rule_cache,
                    max_cache_size=settings.rule_cache_size,
                    cache_ttl=settings.rule_cache_ttl,
                ),
                registry=registry,
            ),
            ecosystem=EcosystemSimulator(
                EcosystemOptions(
                    max_organisms=settings.max_organisms,
                    simulation_speed=settings.simulation_speed,
                )
            ),
            place=place,
            destroy=destroy,
            steps_per_slice=settings.placement_steps_per_slice,
            vegetation_cell_size=settings.vegetation_grid_cell_size,
            structure_cell_size=settings.structure_grid_cell_size,
            **callbacks,
        )

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._active_run is not None and not self._active_run.finished

    # Entry points

    def run(self, request: PlacementRequest) -> PlacementReport:
        """Run the whole pipeline synchronously."""
        return self.start(request).run_to_completion()

    def start(self, request: PlacementRequest) -> PlacementRun:
        """Begin an incremental run; advance it with ``PlacementRun.advance``."""
        if self.is_running:
            error = ConfigurationError("A placement run is already active")
            self._report_error(error)
            raise error

        # Statistics and rule verdicts are reported per layer name
        names = [layer.name for layer in request.layers]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            error = ConfigurationError(f"Duplicate layer names in request: {duplicates}")
            self._report_error(error)
            raise error

        run = PlacementRun(self, request)
        self._active_run = run
        self._last_run = run
        self._last_emitted = -1.0
        logger.info(
            "Placement run started",
            layers=len(request.layers),
            seed=request.seed,
            simulate_ecosystem=request.simulate_ecosystem,
        )
        return run

    def stop(self):
        """Cancel the active run and return to Idle; placed objects stay."""
        if self._active_run is not None and not self._active_run.finished:
            self._active_run.cancel()
            logger.info("Placement run stopped", placed=self.placed_count())
        self._active_run = None
        self._state = PipelineState.IDLE

    def place_vegetation(self, request: PlacementRequest) -> PlacementReport:
        return self.run(
            dataclasses.replace(
                request,
                layer_types=(PlacementLayerType.VEGETATION,),
                grid_cell_size=self.vegetation_cell_size,
            )
        )

    def place_structures(self, request: PlacementRequest) -> PlacementReport:
        return self.run(
            dataclasses.replace(
                request,
                layer_types=(PlacementLayerType.STRUCTURE,),
                grid_cell_size=self.structure_cell_size,
            )
        )

    # Pipeline

    def _pipeline(self, request: PlacementRequest, run: PlacementRun) -> Iterator[None]:
        try:
            bounds = request.region
            if bounds is None:
                raise ConfigurationError("Placement request needs bounds or a height source")

            self._state = PipelineState.ANALYZING
            yield
            self._analyze(request, bounds)
            self._set_progress(run, STAGE_PROGRESS["analysis"], force=True)

            self._state = PipelineState.CLASSIFYING_BIOMES
            yield
            self._classify(request, bounds)
            self._set_progress(run, STAGE_PROGRESS["classification"], force=True)

            self._state = PipelineState.BUILDING_GRID
            yield
            self._build_grid(bounds, request.grid_cell_size)

            self._state = PipelineState.PLACING
            yield
            yield from self._place_layers(request, bounds, run)
            self._set_progress(run, STAGE_PROGRESS["placing"], force=True)

            if request.simulate_ecosystem:
                self._state = PipelineState.SIMULATING_ECOSYSTEM
                yield
                yield from self._simulate(request, run)

        except PlacementError as e:
            self._fail(run, e)
            return
        except Exception as e:
            logger.exception("Placement pipeline failed", state=self._state.value)
            self._fail(run, e)
            return

        self._complete(run)

    def _analyze(self, request: PlacementRequest, bounds: Bounds):
        key = (
            id(request.height_source),
            bounds,
            request.terrain_options,
            request.biome_options,
        )
        if request.reuse_analysis and self.sampler is not None and key == self._analysis_key:
            logger.info("Reusing terrain analysis")
            return

        self.biome_map = None
        try:
            self.sampler = self.analyzer.analyze(request.height_source, request.terrain_options, bounds)
        except ConfigurationError:
            raise
        except Exception as e:
            raise AnalysisFailure("Terrain analysis", str(e)) from e
        self._analysis_key = key
        self.density.invalidate()
        self.rules.clear_cache()

    def _classify(self, request: PlacementRequest, bounds: Bounds):
        if self.biome_map is not None:
            return
        try:
            self.biome_map = self.classifier.classify(bounds, self.sampler, request.biome_options)
        except Exception as e:
            self._analysis_key = None
            raise AnalysisFailure("Biome classification", str(e)) from e

    def _build_grid(self, bounds: Bounds, cell_size: float):
        if self.grid is None:
            self.grid = SpatialPlacementGrid(bounds, cell_size, destroy=self.destroy)
            logger.info("Placement grid built", cell_size=cell_size, objects=0)
        else:
            self.grid.rebuild(bounds, cell_size)

    def _eligible_layers(self, request: PlacementRequest) -> List[Tuple[int, PlacementLayer]]:
        """(stream index, layer) pairs in placement order."""
        eligible = [
            (index, layer)
            for index, layer in enumerate(request.layers)
            if layer.enabled and (request.layer_types is None or layer.layer_type in request.layer_types)
        ]
        # Stable: equal priorities keep catalog order
        return sorted(eligible, key=lambda pair: -pair[1].priority)

    def _place_layers(self, request: PlacementRequest, bounds: Bounds, run: PlacementRun) -> Iterator[None]:
        layers = self._eligible_layers(request)
        if not layers:
            self._report_error(ConfigurationError("No enabled placement layers to place"))
            return

        start = STAGE_PROGRESS["classification"]
        span = (STAGE_PROGRESS["placing"] - start) / len(layers)

        for position, (index, layer) in enumerate(layers):
            stats = LayerStatistics(layer.name)
            run.layer_stats[layer.name] = stats
            layer_start = start + span * position
            try:
                yield from self._place_layer(request, bounds, index, layer, stats, run, layer_start, span)
            except PlacementError as e:
                stats.error = str(e)
                self._report_error(e)
            except Exception as e:
                logger.exception("Layer placement failed", layer=layer.name)
                stats.error = str(e)
                self._report_error(e)

            logger.info(
                "Layer placed",
                layer=layer.name,
                attempts=stats.attempts,
                placed=stats.placed,
                rejected_by_rules=stats.rejected_by_rules,
                rejected_by_density=stats.rejected_by_density,
            )

    def _place_layer(
        self,
        request: PlacementRequest,
        bounds: Bounds,
        index: int,
        layer: PlacementLayer,
        stats: LayerStatistics,
        run: PlacementRun,
        progress_start: float,
        progress_span: float,
    ) -> Iterator[None]:
        if not layer.prefabs:
            raise ConfigurationError(f"Layer '{layer.name}' has no prefabs")

        candidates = create_rng(request.seed, index, CANDIDATE_STREAM)
        variation = create_rng(request.seed, index, VARIATION_STREAM)

        average_density = self.density.layer_average_density(layer, bounds)
        attempts = int(round(bounds.area * average_density / 100.0))
        stats.attempts = attempts
        reference = layer.base_density * self.density.options.global_multiplier

        for attempt in range(attempts):
            x = candidates.random() * bounds.size_x + bounds.min_x
            z = candidates.random() * bounds.size_z + bounds.min_z
            roll = candidates.random()
            candidate = (x, z)

            if not self.rules.evaluate(layer, candidate, self.sampler, self.biome_map, self.grid):
                stats.rejected_by_rules += 1
            else:
                density = self.density.density_at(
                    layer, candidate, self.sampler, self.biome_map, self.grid, request.sim_time
                )
                probability = min(1.0, density / reference) if reference > 0 else 0.0
                if roll < probability:
                    self._place_object(request, layer, candidate, variation)
                    stats.placed += 1
                else:
                    stats.rejected_by_density += 1

            self._set_progress(run, progress_start + progress_span * (attempt + 1) / attempts)
            yield

    def _place_object(
        self,
        request: PlacementRequest,
        layer: PlacementLayer,
        position: Position,
        rng: np.random.Generator,
    ) -> PlacedObject:
        x, z = position
        if request.height_source is not None:
            height = float(request.height_source.height(x, z))
        else:
            height = float(self.sampler.height_at(x, z))
        height += layer.variation.surface_offset

        prefab = layer.select_prefab(rng)
        variation = layer.variation
        rotation = rng.random() * 360.0 if variation.random_rotation else 0.0
        if variation.random_scale:
            scale = variation.min_scale + (variation.max_scale - variation.min_scale) * rng.random()
        else:
            scale = 1.0

        handle = self.place(prefab, (x, height, z), rotation, scale) if self.place else None

        obj = PlacedObject(
            position=position,
            layer_name=layer.name,
            layer_type=layer.layer_type,
            species=layer.species_name,
            tags=layer.tags,
            ecosystem_role=layer.ecosystem_role,
            influence_radius=layer.influence_radius,
            prefab=prefab,
            height=height,
            rotation=rotation,
            scale=scale,
            handle=handle,
        )
        return self.grid.register(obj)

    def _simulate(self, request: PlacementRequest, run: PlacementRun) -> Iterator[None]:
        self.ecosystem.seed(self.grid)
        env = request.environment or EnvironmentParams.from_fields(self.sampler)
        start = STAGE_PROGRESS["placing"]
        span = STAGE_PROGRESS["ecosystem"] - start
        ticks = max(0, request.ecosystem_ticks)
        total = max(1, ticks * len(self.ecosystem.organisms))

        done = 0
        for _ in range(ticks):
            for _ in self.ecosystem.iter_tick(env, request.tick_dt):
                done += 1
                self._set_progress(run, start + span * done / total)
                yield

        updated = self.ecosystem.write_back(self.grid)
        logger.info("Ecosystem simulation completed", ticks=ticks, updated=updated, **{
            k: v for k, v in self.ecosystem.statistics().items() if k in ("total", "healthy", "mean_health")
        })

    # State and callbacks

    def _complete(self, run: PlacementRun):
        self._state = PipelineState.IDLE
        self._active_run = None
        self._set_progress(run, 1.0, force=True)
        report = self._build_report(run)
        logger.info("Placement run completed", placed=report.placed)
        if self.on_complete is not None:
            self.on_complete(report)

    def _fail(self, run: PlacementRun, error: Exception):
        reason = str(error)
        self._state = PipelineState.ERROR
        self._active_run = None
        run.error = reason
        logger.error("Placement run failed", reason=reason)
        if self.on_error is not None:
            self.on_error(reason)

    def _release(self, run: PlacementRun):
        """Return to Idle if ``run`` is the active run."""
        if self._active_run is run:
            self._active_run = None
            self._state = PipelineState.IDLE

    def _report_error(self, error: Exception):
        logger.warning("Placement stage aborted", reason=str(error))
        if self.on_error is not None:
            self.on_error(str(error))

    def _set_progress(self, run: PlacementRun, value: float, force: bool = False):
        run.progress = min(1.0, max(run.progress, value))
        if force:
            self._emit_progress(run)

    def _emit_progress(self, run: PlacementRun):
        if self.on_progress is None or run.progress == self._last_emitted:
            return
        self._last_emitted = run.progress
        self.on_progress(run.progress)

    def _build_report(self, run: PlacementRun) -> PlacementReport:
        return PlacementReport(
            state=self._state,
            placed=self.placed_count(),
            layers=dict(run.layer_stats),
            error=run.error,
            cancelled=run.cancelled,
            biome_statistics=self.biome_statistics(),
            ecosystem_statistics=self.ecosystem_statistics(),
        )

    # Queries

    def placed_count(self) -> int:
        return self.grid.total_count() if self.grid is not None else 0

    def layer_statistics(self) -> Dict[str, LayerStatistics]:
        """Per-layer statistics of the most recent run."""
        if self._last_run is None:
            return {}
        return {name: dataclasses.replace(stats) for name, stats in self._last_run.layer_stats.items()}

    def density_heatmap(self, layer: PlacementLayer, resolution: int = 64) -> np.ndarray:
        if self.sampler is None or self.biome_map is None:
            raise ConfigurationError("Terrain has not been analyzed yet")
        return self.density.density_grid(layer, self.sampler, self.biome_map, resolution, self.grid)

    def biodiversity_heatmap(self) -> np.ndarray:
        if self.biome_map is None:
            raise ConfigurationError("Biomes have not been classified yet")
        return self.biome_map.biodiversity.copy()

    def biome_statistics(self) -> Dict[str, Dict[str, float]]:
        return self.biome_map.statistics() if self.biome_map is not None else {}

    def ecosystem_statistics(self) -> Dict[str, float]:
        return self.ecosystem.statistics()

    def biome_at(self, x: float, z: float) -> Optional[BiomeType]:
        return self.biome_map.biome_at(x, z) if self.biome_map is not None else None

    def clear_all_placements(self) -> int:
        if self.grid is None:
            return 0
        removed = self.grid.clear_all()
        self.ecosystem.reset()
        return removed

    def invalidate_analysis(self):
        """Force terrain analysis and biome classification on the next run."""
        self.sampler = None
        self.biome_map = None
        self._analysis_key = None
        self.density.invalidate()
        self.rules.clear_cache()
        logger.info("Analysis invalidated")
