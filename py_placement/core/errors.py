"""Error types raised by the placement pipeline."""


class PlacementError(Exception):
    """Base class for placement pipeline errors."""


class ConfigurationError(PlacementError):
    """Missing or empty layer, degenerate bounds, or another unmet precondition."""


class AnalysisFailure(PlacementError):
    """Terrain or biome analysis failed; the whole run is aborted."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"{stage} failed: {reason}")
