"""Deformation parameters, defaults and JSON parameter files."""

import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_DT = 0.016
GRAVITY = (0.0, -9.81, 0.0)

# Default shape-matching settings of the interactive viewer.
DEFAULT_BETA = 0.8
DEFAULT_TAU = 0.8
DEFAULT_PERTURBATION = 1e-4
DEFAULT_DAMPING = 0.1
DEFAULT_RESTORE_SPEED = 0.05

MIN_TAU = 1e-6


class DeformationMode(str, Enum):
    ROTATION = "rotation"
    LINEAR = "linear"
    QUADRATIC = "quadratic"


@dataclass
class DeformationParams:
    """Per-body shape-matching and integration settings.

    ``max_displacement`` is in model units and bounds both the current
    relative positions fed to the fit and each goal's distance from the
    centroid. None scales the bound with the rest shape.
    ``gravity`` is a constant acceleration added to every unpinned particle.
    With ``auto_restore`` set, every step taken without pending forces also
    moves displaced particles ``restore_speed`` of the way back to rest.
    """
    mode: DeformationMode = DeformationMode.LINEAR
    beta: float = DEFAULT_BETA
    tau: float = DEFAULT_TAU
    perturbation: float = DEFAULT_PERTURBATION
    damping_factor: float = DEFAULT_DAMPING
    max_displacement: Optional[float] = None
    gravity: Tuple[float, float, float] = field(default=(0.0, 0.0, 0.0))
    auto_restore: bool = False
    restore_speed: float = DEFAULT_RESTORE_SPEED

    def __post_init__(self):
        self.validate()

    def validate(self) -> "DeformationParams":
        """Coerce and clamp every field into its valid range, in place."""
        if not isinstance(self.mode, DeformationMode):
            try:
                self.mode = DeformationMode(str(self.mode).lower())
            except ValueError:
                raise ValueError(f"Unknown deformation mode: {self.mode!r}") from None

        self.beta = self._clamped("beta", self.beta, 0.0, 1.0)
        self.tau = self._clamped("tau", self.tau, MIN_TAU, math.inf)
        self.perturbation = self._clamped("perturbation", self.perturbation, 0.0, math.inf)
        self.damping_factor = self._clamped("damping_factor", self.damping_factor, 0.0, 1.0)
        if self.max_displacement is not None:
            self.max_displacement = self._clamped("max_displacement", self.max_displacement, 1e-9, math.inf)
        self.auto_restore = bool(self.auto_restore)
        self.restore_speed = self._clamped("restore_speed", self.restore_speed, 0.0, 1.0)

        gravity = tuple(float(g) for g in self.gravity)
        if len(gravity) != 3 or not all(math.isfinite(g) for g in gravity):
            raise ValueError(f"gravity must be a finite 3-vector, got {self.gravity!r}")
        self.gravity = gravity
        return self

    @staticmethod
    def _clamped(name: str, value: Any, lo: float, hi: float) -> float:
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"{name} must be a number, got NaN")
        clamped = max(lo, min(hi, value))
        if clamped != value:
            logger.warning("%s=%g out of range, clamped to %g", name, value, clamped)
        return clamped

    def replace(self, **overrides) -> "DeformationParams":
        """Return a validated copy with some fields replaced."""
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown parameters: {sorted(unknown)}")
        data = asdict(self)
        data.update(overrides)
        return DeformationParams(**data)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["gravity"] = list(self.gravity)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DeformationParams":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown parameters: %s", sorted(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


def load_params(path: Union[str, Path]) -> DeformationParams:
    """Load parameters from a JSON file."""
    with open(path) as f:
        return DeformationParams.from_dict(json.load(f))


def save_params(params: DeformationParams, path: Union[str, Path]) -> None:
    with open(path, "w") as f:
        json.dump(params.to_dict(), f, indent=2)
