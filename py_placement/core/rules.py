"""
Placement rule evaluation.

Each enabled rule scores a candidate position in [0, 1] as the product of
its active conditions. Scores are aggregated per layer either as a strict
conjunction (``require_all_rules``) or as a weighted average compared with
a threshold. Verdicts are cached per layer and quantised position for a
limited time.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, NamedTuple, Optional, Tuple

import structlog

from .biomes import BiomeMap, biome_compatibility
from .fields import FieldSampler, Position
from .layers import PlacementLayer, PlacementRule
from .spatial_grid import SpatialPlacementGrid
from .terrain_analysis import TEMPERATURE_SCALE

logger = structlog.get_logger()

# Normalised slope 1.0 is a vertical face
SLOPE_SCALE_DEGREES = 90.0

ROCK_TAG = "rock"

CustomRule = Callable[[Position, FieldSampler, BiomeMap, Optional[SpatialPlacementGrid]], float]
CacheKey = Tuple[PlacementLayer, float, float]


@dataclass(frozen=True)
class RuleEngineOptions:
    """Rule engine options."""

    threshold: float = 0.5
    weighted: bool = True
    enable_cache: bool = True
    max_cache_size: int = 1000
    cache_ttl: float = 60.0  # Seconds
    cache_quantum: float = 5.0  # World units
    debug_logging: bool = False

    def __post_init__(self):
        if self.max_cache_size < 1:
            raise ValueError("max_cache_size must be at least 1")
        if self.cache_quantum <= 0:
            raise ValueError("cache_quantum must be positive")


class RuleEvaluationResult(NamedTuple):
    can_place: bool
    score: float
    evaluated_rules: int
    cached: bool = False


@dataclass
class RuleCacheEntry:
    can_place: bool
    score: float
    evaluated_rules: int
    timestamp: float


def range_score(value: float, low: float, high: float) -> float:
    """Triangular score: 1 at the range midpoint, 0 at and beyond its ends."""
    if value < low or value > high:
        return 0.0
    half_width = (high - low) * 0.5
    if half_width == 0:
        return 1.0
    center = (low + high) * 0.5
    return max(0.0, 1.0 - abs(value - center) / half_width)


# Built-in custom rules


def proximity_to_rocks(position, sampler, biome_map, grid=None) -> float:
    """A few rocks nearby is ideal; none is poor; many is worse."""
    rocks = grid.count_nearby(position, 10.0, ROCK_TAG) if grid is not None else 0
    if 1 <= rocks <= 3:
        return 1.0
    if rocks == 0:
        return 0.3
    return 0.1


def sun_exposure(position, sampler, biome_map, grid=None) -> float:
    slope = sampler.slope_at(*position)
    if slope < 0.3:
        return 0.8
    if slope < 0.6:
        return 1.0
    return 0.4


def wind_exposure(position, sampler, biome_map, grid=None) -> float:
    height = sampler.height_at(*position)
    if height > 0.8:
        return 0.2
    if height > 0.6:
        return 0.6
    return 1.0


BUILTIN_RULES: Dict[str, CustomRule] = {
    "proximity_to_rocks": proximity_to_rocks,
    "sun_exposure": sun_exposure,
    "wind_exposure": wind_exposure,
}


class CustomRuleRegistry:
    """Named scoring hooks referenced by ``PlacementRule.custom_rule``."""

    def __init__(self, include_builtins: bool = True):
        self._rules: Dict[str, CustomRule] = dict(BUILTIN_RULES) if include_builtins else {}

    def register(self, name: str, rule: Optional[CustomRule] = None):
        """
        Register a hook; usable directly or as a decorator.

        Example:
            @registry.register("near_road")
            def near_road(position, sampler, biome_map, grid):
                ...
        """
        if rule is None:
            def decorator(func: CustomRule) -> CustomRule:
                self._rules[name] = func
                return func
            return decorator
        self._rules[name] = rule
        return rule

    def unregister(self, name: str):
        self._rules.pop(name, None)

    def get(self, name: str) -> Optional[CustomRule]:
        return self._rules.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._rules

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)


class RuleEngine:
    """Evaluates layer rules at candidate positions, with a TTL cache."""

    def __init__(
        self,
        options: Optional[RuleEngineOptions] = None,
        registry: Optional[CustomRuleRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rule engine.

        Args:
            options: Rule engine options
            registry: Custom rule hooks; defaults to the built-in rules
            clock: Time source in seconds used for cache expiry
        """
        self.options = options or RuleEngineOptions()
        self.registry = registry if registry is not None else CustomRuleRegistry()
        self.clock = clock

        self._cache: Dict[CacheKey, RuleCacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def evaluate(
        self,
        layer: PlacementLayer,
        position: Position,
        sampler: FieldSampler,
        biome_map: BiomeMap,
        grid: Optional[SpatialPlacementGrid] = None,
    ) -> bool:
        """Whether the layer may place an object at ``position``."""
        return self.evaluate_detailed(layer, position, sampler, biome_map, grid).can_place

    def evaluate_detailed(
        self,
        layer: PlacementLayer,
        position: Position,
        sampler: FieldSampler,
        biome_map: BiomeMap,
        grid: Optional[SpatialPlacementGrid] = None,
    ) -> RuleEvaluationResult:
        """
        Evaluate all enabled rules of a layer.

        Args:
            layer: Layer being placed
            position: (x, z) world position
            sampler: Terrain fields
            biome_map: Biome classification
            grid: Placed objects, for neighbour and required-species checks

        Returns:
            RuleEvaluationResult; ``cached`` is True when served from the cache
        """
        rules = layer.enabled_rules
        if not rules and not layer.required_species:
            return RuleEvaluationResult(True, 1.0, 0)

        opts = self.options
        key = self.cache_key(layer, position)
        if opts.enable_cache:
            entry = self._lookup(key)
            if entry is not None:
                return RuleEvaluationResult(entry.can_place, entry.score, entry.evaluated_rules, True)

        if not self._required_species_present(layer, position, grid):
            result = RuleEvaluationResult(False, 0.0, 0)
        else:
            result = self._aggregate(layer, rules, position, sampler, biome_map, grid)

        if opts.enable_cache:
            self._store(key, result)

        if opts.debug_logging and not result.can_place:
            logger.debug(
                "Position rejected by rules",
                layer=layer.name,
                x=round(position[0], 2),
                z=round(position[1], 2),
                score=round(result.score, 3),
            )
        return result

    def _required_species_present(self, layer, position, grid) -> bool:
        if not layer.required_species or grid is None:
            return True
        return any(
            obj.is_alive and obj.matches_any(layer.required_species)
            for obj in grid.iter_radius(position, layer.influence_radius)
        )

    def _aggregate(self, layer, rules, position, sampler, biome_map, grid) -> RuleEvaluationResult:
        if not rules:
            return RuleEvaluationResult(True, 1.0, 0)

        opts = self.options
        total_score = 0.0
        total_weight = 0.0
        all_passed = True

        for rule in rules:
            score = self.score_rule(rule, position, sampler, biome_map, grid)

            if layer.require_all_rules and score <= 0.0:
                all_passed = False
                break

            weight = rule.weight if opts.weighted else 1.0
            total_score += score * weight
            total_weight += weight

        average = total_score / total_weight if total_weight > 0 else 0.0
        if layer.require_all_rules:
            can_place = all_passed
        else:
            can_place = average >= opts.threshold

        return RuleEvaluationResult(can_place, average, len(rules))

    def score_rule(
        self,
        rule: PlacementRule,
        position: Position,
        sampler: FieldSampler,
        biome_map: BiomeMap,
        grid: Optional[SpatialPlacementGrid] = None,
    ) -> float:
        """Product of the rule's active condition scores."""
        x, z = position
        score = 1.0

        if rule.height_range is not None:
            score *= range_score(sampler.height_at(x, z), *rule.height_range)

        if rule.slope_range is not None:
            score *= range_score(sampler.slope_at(x, z) * SLOPE_SCALE_DEGREES, *rule.slope_range)

        if rule.moisture_range is not None:
            score *= range_score(sampler.moisture_at(x, z), *rule.moisture_range)

        if rule.temperature_range is not None:
            score *= range_score(sampler.temperature_at(x, z) * TEMPERATURE_SCALE, *rule.temperature_range)

        if rule.allowed_biomes:
            biome = biome_map.biome_at(x, z)
            if biome in rule.allowed_biomes:
                biome_score = 1.0
            elif rule.soft_biome_match:
                biome_score = max(biome_compatibility(biome, allowed) for allowed in rule.allowed_biomes)
            else:
                biome_score = 0.0
            score *= biome_score

        if rule.water_distance_range is not None:
            score *= range_score(sampler.water_distance_at(x, z), *rule.water_distance_range)

        if rule.min_distance_to_others is not None and grid is not None:
            if grid.is_occupied(position, rule.min_distance_to_others, avoid_tags=rule.avoid_tags):
                score = 0.0

        if rule.custom_rule:
            score *= self.evaluate_custom_rule(rule.custom_rule, position, sampler, biome_map, grid)

        return score

    def evaluate_custom_rule(self, name, position, sampler, biome_map, grid=None) -> float:
        hook = self.registry.get(name)
        if hook is None:
            logger.warning("Custom rule not found", rule=name)
            return 0.5
        return min(1.0, max(0.0, float(hook(position, sampler, biome_map, grid))))

    # Cache

    def cache_key(self, layer: PlacementLayer, position: Position) -> CacheKey:
        """Keyed by the whole layer: equally named layers with different settings get separate entries."""
        q = self.options.cache_quantum
        return (layer, round(position[0] / q) * q, round(position[1] / q) * q)

    def _lookup(self, key: CacheKey) -> Optional[RuleCacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None
        if self.clock() - entry.timestamp > self.options.cache_ttl:
            del self._cache[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def _store(self, key: CacheKey, result: RuleEvaluationResult):
        if key not in self._cache and len(self._cache) >= self.options.max_cache_size:
            self._evict()
        # Re-insert so dict order tracks write time
        self._cache.pop(key, None)
        self._cache[key] = RuleCacheEntry(
            result.can_place, result.score, result.evaluated_rules, self.clock()
        )

    def _evict(self):
        now = self.clock()
        stale_after = self.options.cache_ttl * 0.5
        stale = [k for k, e in self._cache.items() if now - e.timestamp > stale_after]
        for k in stale:
            del self._cache[k]
        evicted = len(stale)

        # Still full: drop the oldest writes
        while len(self._cache) >= self.options.max_cache_size:
            del self._cache[next(iter(self._cache))]
            evicted += 1

        self._evictions += evicted
        logger.debug("Rule cache evicted entries", evicted=evicted, remaining=len(self._cache))

    def clear_cache(self):
        self._cache.clear()
        logger.info("Rule cache cleared")

    def cache_statistics(self) -> Dict[str, float]:
        lookups = self._hits + self._misses
        return {
            "entries": len(self._cache),
            "max_size": self.options.max_cache_size,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }
