"""Response curves used by density and biodiversity calculations."""

from typing import Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, field_validator

from .fields import ArrayLike


class Curve(BaseModel):
    """
    Piecewise-linear curve through ``(t, value)`` keyframes.

    Inputs outside the key range evaluate to the nearest end value, so
    boundary inputs never extrapolate to negative values.
    """

    model_config = ConfigDict(frozen=True)

    keys: Tuple[Tuple[float, float], ...]

    @field_validator("keys")
    @classmethod
    def _sorted_keys(cls, keys):
        if not keys:
            raise ValueError("Curve needs at least one key")
        return tuple(sorted((float(t), float(v)) for t, v in keys))

    @classmethod
    def from_keys(cls, *keys: Sequence[float]) -> "Curve":
        return cls(keys=tuple(tuple(k) for k in keys))

    @classmethod
    def linear(cls, t0: float, v0: float, t1: float, v1: float) -> "Curve":
        return cls(keys=((t0, v0), (t1, v1)))

    @classmethod
    def constant(cls, value: float) -> "Curve":
        return cls(keys=((0.0, value),))

    def evaluate(self, t: ArrayLike) -> ArrayLike:
        ts = [k[0] for k in self.keys]
        vs = [k[1] for k in self.keys]
        result = np.interp(t, ts, vs)
        if np.ndim(result) == 0:
            return float(result)
        return result

    def __call__(self, t: ArrayLike) -> ArrayLike:
        return self.evaluate(t)
