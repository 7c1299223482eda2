"""
Uniform-cell spatial index of placed objects.

Objects are bucketed by ``floor((p - min) / cell_size)``. Radius queries
sweep the cells within ``ceil(radius / cell_size)`` and filter by exact
Euclidean distance, so the cost of proximity checks grows with the number
of objects near the query rather than with the total placed.
"""

import itertools
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from .fields import Bounds, Position
from .layers import EcosystemRole, PlacementLayerType

logger = structlog.get_logger()

Cell = Tuple[int, int]

_object_ids = itertools.count(1)


@dataclass(eq=False)
class PlacedObject:
    """An accepted placement and its ecological state."""

    position: Position
    layer_name: str
    layer_type: PlacementLayerType = PlacementLayerType.VEGETATION
    species: str = ""
    tags: Tuple[str, ...] = ()
    ecosystem_role: EcosystemRole = EcosystemRole.NEUTRAL
    health: float = 1.0
    age: float = 0.0
    influence_radius: float = 5.0
    prefab: Optional[str] = None
    height: float = 0.0
    rotation: float = 0.0
    scale: float = 1.0
    handle: Any = None
    cell: Optional[Cell] = None
    id: int = field(default_factory=lambda: next(_object_ids))

    @property
    def is_alive(self) -> bool:
        return self.health > 0.0

    def matches(self, name: str) -> bool:
        """True when ``name`` is this object's layer, species or one of its tags."""
        return name == self.layer_name or name == self.species or name in self.tags

    def matches_any(self, names: Iterable[str]) -> bool:
        return any(self.matches(name) for name in names)


class SpatialPlacementGrid:
    """Spatial hash of PlacedObjects over a region."""

    def __init__(
        self,
        bounds: Bounds,
        cell_size: float = 5.0,
        destroy: Optional[Callable[[Any], None]] = None,
    ):
        """
        Initialize the grid.

        Args:
            bounds: Region the grid is anchored to; objects outside it are
                still accepted and bucketed into out-of-range cells
            cell_size: Cell edge length in world units
            destroy: Called with each object's host handle when objects are cleared
        """
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self.bounds = bounds
        self.cell_size = float(cell_size)
        self.destroy = destroy
        self._cells: Dict[Cell, List[PlacedObject]] = defaultdict(list)
        self._count = 0

    @property
    def grid_size(self) -> Tuple[int, int]:
        return (
            math.ceil(self.bounds.size_x / self.cell_size),
            math.ceil(self.bounds.size_z / self.cell_size),
        )

    def cell_of(self, position: Position) -> Cell:
        x, z = position
        return (
            math.floor((x - self.bounds.min_x) / self.cell_size),
            math.floor((z - self.bounds.min_z) / self.cell_size),
        )

    def register(self, obj: PlacedObject) -> PlacedObject:
        """Add an object to the bucket matching its position."""
        cell = self.cell_of(obj.position)
        obj.cell = cell
        self._cells[cell].append(obj)
        self._count += 1
        return obj

    def unregister(self, obj: PlacedObject) -> bool:
        """Remove an object without destroying it; False if it was not registered."""
        bucket = self._cells.get(obj.cell)
        if not bucket:
            return False
        for i, candidate in enumerate(bucket):
            if candidate is obj:
                del bucket[i]
                if not bucket:
                    del self._cells[obj.cell]
                self._count -= 1
                obj.cell = None
                return True
        return False

    def move(self, obj: PlacedObject, position: Position):
        """Update an object's position, re-bucketing it when it changes cell."""
        new_cell = self.cell_of(position)
        if new_cell != obj.cell:
            if not self.unregister(obj):
                raise KeyError(f"Object {obj.id} is not registered")
            obj.position = position
            self.register(obj)
        else:
            obj.position = position

    def _cells_within(self, center: Position, radius: float) -> Iterator[List[PlacedObject]]:
        reach = math.ceil(radius / self.cell_size)
        cx, cz = self.cell_of(center)
        for ix in range(cx - reach, cx + reach + 1):
            for iz in range(cz - reach, cz + reach + 1):
                bucket = self._cells.get((ix, iz))
                if bucket:
                    yield bucket

    def iter_radius(self, center: Position, radius: float) -> Iterator[PlacedObject]:
        """Lazily yield objects whose distance to ``center`` is at most ``radius``."""
        if radius < 0:
            return
        x, z = center
        radius_sq = radius * radius
        for bucket in self._cells_within(center, radius):
            for obj in bucket:
                dx = obj.position[0] - x
                dz = obj.position[1] - z
                if dx * dx + dz * dz <= radius_sq:
                    yield obj

    def query_radius(self, center: Position, radius: float) -> List[PlacedObject]:
        return list(self.iter_radius(center, radius))

    def is_occupied(
        self,
        position: Position,
        radius: float,
        avoid_tags: Optional[Iterable[str]] = None,
        ignore_tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Whether any relevant object lies within ``radius``.

        With ``avoid_tags`` only objects matching one of them count;
        objects matching ``ignore_tags`` never count. Stops at the first hit.
        """
        avoid = tuple(avoid_tags or ())
        ignore = tuple(ignore_tags or ())
        for obj in self.iter_radius(position, radius):
            if ignore and obj.matches_any(ignore):
                continue
            if not avoid or obj.matches_any(avoid):
                return True
        return False

    def count_nearby(self, position: Position, radius: float, name: str, min_health: float = 0.0) -> int:
        """Living objects within ``radius`` whose layer, species or tags match ``name``."""
        return sum(
            1
            for obj in self.iter_radius(position, radius)
            if obj.is_alive and obj.health >= min_health and obj.matches(name)
        )

    def objects(self) -> Iterator[PlacedObject]:
        for bucket in self._cells.values():
            yield from bucket

    def __iter__(self) -> Iterator[PlacedObject]:
        return self.objects()

    def __len__(self) -> int:
        return self._count

    def total_count(self) -> int:
        return self._count

    def counts_by_layer(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for obj in self.objects():
            counts[obj.layer_name] += 1
        return dict(counts)

    def cells(self) -> Dict[Cell, List[PlacedObject]]:
        """Read-only snapshot of the non-empty buckets."""
        return {cell: list(bucket) for cell, bucket in self._cells.items()}

    def _destroy(self, objects: Iterable[PlacedObject]):
        if self.destroy is None:
            return
        for obj in objects:
            if obj.handle is not None:
                self.destroy(obj.handle)

    def clear_cell(self, cell: Cell) -> int:
        """Destroy and drop every object in one cell; returns how many were removed."""
        bucket = self._cells.pop(cell, None)
        if not bucket:
            return 0
        self._destroy(bucket)
        for obj in bucket:
            obj.cell = None
        self._count -= len(bucket)
        return len(bucket)

    def clear_all(self) -> int:
        """Destroy and drop every object."""
        removed = self._count
        for bucket in self._cells.values():
            self._destroy(bucket)
            for obj in bucket:
                obj.cell = None
        self._cells.clear()
        self._count = 0
        logger.info("Placement grid cleared", removed=removed)
        return removed

    def rebuild(self, bounds: Optional[Bounds] = None, cell_size: Optional[float] = None):
        """Re-bucket every object under new bounds and/or cell size."""
        existing = list(self.objects())
        if bounds is not None:
            self.bounds = bounds
        if cell_size is not None:
            if cell_size <= 0:
                raise ValueError(f"cell_size must be positive, got {cell_size}")
            self.cell_size = float(cell_size)

        self._cells = defaultdict(list)
        self._count = 0
        for obj in existing:
            self.register(obj)

        logger.info(
            "Placement grid built",
            cell_size=self.cell_size,
            grid_size=self.grid_size,
            objects=self._count,
        )
