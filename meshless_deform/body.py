"""
Deformable body: particle state plus the per-frame shape-matching step.

A Body owns every array the kernel needs (rest shape, masses, velocities,
force accumulator, pinned mask); nothing is kept in module-level state. The
module-level functions mirror the Body methods for hosts that prefer a
functional interface.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import numpy as np
import torch

from .config import DeformationMode, DeformationParams
from .guard import Condition, all_finite, sanitize_masses
from .integrator import integrate
from .sampler import PointsLike, as_points
from .shape_matching import ShapeMatchingConstraint, shape_matching_loss

logger = logging.getLogger(__name__)

VectorLike = Union[torch.Tensor, np.ndarray, Sequence[float]]

# Particles closer than this to their rest position are not restored.
RESTORE_TOLERANCE = 1e-3


@dataclass
class StepResult:
    """Outcome of Body.step.

    On a dimension mismatch the body is left untouched and ``positions`` /
    ``velocities`` hold its previous state.
    """
    positions: torch.Tensor
    velocities: torch.Tensor
    conditions: List[Condition] = field(default_factory=list)
    mode: Optional[DeformationMode] = None
    goals: Optional[torch.Tensor] = None

    @property
    def ok(self) -> bool:
        return Condition.DIMENSION_MISMATCH not in self.conditions


class Body(torch.nn.Module):
    """
    A fixed-size set of particles deformed by shape matching.

    Particle identity is the row index into the buffers; the count never
    changes after construction.
    """

    def __init__(self, rest_positions: PointsLike, masses: Optional[VectorLike] = None,
                 params: Optional[DeformationParams] = None, dtype: torch.dtype = torch.float64):
        super().__init__()
        rest = as_points(rest_positions, dtype=dtype).clone()
        n = rest.shape[0]
        if n == 0:
            raise ValueError("A body needs at least one particle")
        if not all_finite(rest):
            raise ValueError("Rest positions must be finite")

        if masses is None:
            mass_tensor = torch.ones(n, dtype=dtype)
        else:
            mass_tensor = torch.as_tensor(np.asarray(masses, dtype=np.float64), dtype=dtype).reshape(-1)
            if mass_tensor.shape[0] != n:
                raise ValueError(f"Got {mass_tensor.shape[0]} masses for {n} particles")
            mass_tensor, _ = sanitize_masses(mass_tensor)

        self.shape_constraint = ShapeMatchingConstraint(rest, mass_tensor, params)

        # Particle state
        self.register_buffer('positions', rest.clone())
        self.register_buffer('velocities', torch.zeros_like(rest))
        self.register_buffer('forces', torch.zeros_like(rest))
        self.register_buffer('fixed_mask', torch.zeros(n, dtype=torch.bool))

        logger.debug("Created body with %d particles", n)

    @property
    def n_particles(self) -> int:
        return self.positions.shape[0]

    @property
    def rest_positions(self) -> torch.Tensor:
        return self.shape_constraint.rest_positions

    @property
    def masses(self) -> torch.Tensor:
        return self.shape_constraint.masses

    @property
    def params(self) -> DeformationParams:
        return self.shape_constraint.params

    @property
    def fixed_indices(self) -> List[int]:
        return torch.nonzero(self.fixed_mask).flatten().tolist()

    def _check_index(self, index: int) -> int:
        index = int(index)
        if not 0 <= index < self.n_particles:
            raise IndexError(f"Particle index {index} out of range [0, {self.n_particles})")
        return index

    def _vector(self, value: VectorLike) -> torch.Tensor:
        vec = torch.as_tensor(np.asarray(value, dtype=np.float64), dtype=self.positions.dtype,
                              device=self.positions.device).reshape(-1)
        if vec.shape[0] != 3:
            raise ValueError(f"Expected a 3-vector, got {vec.shape[0]} components")
        return vec

    def set_params(self, params: Optional[DeformationParams] = None, **overrides) -> DeformationParams:
        """Replace the parameters, optionally overriding individual fields."""
        base = params if params is not None else self.params
        self.shape_constraint.params = base.replace(**overrides)
        return self.shape_constraint.params

    def set_fixed(self, index: int, fixed: bool = True) -> None:
        index = self._check_index(index)
        self.fixed_mask[index] = bool(fixed)

    def toggle_fixed(self, index: int) -> bool:
        """Flip the pinned state of a particle and return the new state."""
        index = self._check_index(index)
        fixed = not bool(self.fixed_mask[index])
        self.set_fixed(index, fixed)
        return fixed

    def closest_particle(self, point: VectorLike) -> int:
        """Index of the particle nearest to a world-space point."""
        distances = torch.linalg.norm(self.positions - self._vector(point), dim=-1)
        return int(torch.argmin(distances))

    def add_force(self, index: int, force: VectorLike) -> None:
        """Accumulate a force on one particle; consumed by the next step."""
        index = self._check_index(index)
        self.forces[index] += self._vector(force)

    def apply_directional_force(self, force: VectorLike) -> None:
        """Accumulate the same force on every unpinned particle."""
        movable = (~self.fixed_mask).unsqueeze(-1)
        self.forces += torch.where(movable, self._vector(force), torch.zeros_like(self.forces))

    def apply_random_force(self, force: VectorLike, generator: Optional[torch.Generator] = None,
                           min_fraction: float = 0.2, max_fraction: float = 0.4) -> List[int]:
        """
        Push a random subset of unpinned particles.

        Between min_fraction and max_fraction of the particles (at least one)
        are drawn with replacement; each draw adds force scaled by a factor in
        [0.8, 1.2). Pinned draws are skipped.

        Returns:
            Indices that received a force
        """
        force = self._vector(force)
        n = self.n_particles
        fraction = min_fraction + float(torch.rand(1, generator=generator)) * (max_fraction - min_fraction)
        count = max(1, math.floor(n * fraction))
        indices = torch.randint(0, n, (count,), generator=generator)
        jitter = 0.8 + torch.rand(count, generator=generator, dtype=force.dtype) * 0.4

        touched = []
        for index, scale in zip(indices.tolist(), jitter.tolist()):
            if bool(self.fixed_mask[index]):
                continue
            self.forces[index] += force * scale
            touched.append(index)
        return touched

    def add_pick_force(self, index: int, target: VectorLike, strength: float = 10.0) -> None:
        """Spring force pulling one particle toward a drag target."""
        index = self._check_index(index)
        self.forces[index] += strength * (self._vector(target) - self.positions[index])

    def reset(self) -> None:
        """Put every particle back at rest with zero velocity and force."""
        self.positions.copy_(self.rest_positions)
        self.velocities.zero_()
        self.forces.zero_()

    def auto_restore(self, speed: Optional[float] = None) -> bool:
        """
        Move displaced unpinned particles part of the way back to rest.

        Does nothing while forces are pending. Particles within
        RESTORE_TOLERANCE of their rest position are left alone.

        Args:
            speed: Fraction of the offset removed, in [0, 1]; params.restore_speed if None

        Returns:
            True if any particle moved
        """
        speed = self.params.restore_speed if speed is None else float(speed)
        if not 0.0 <= speed <= 1.0:
            raise ValueError(f"Restore speed must be in [0, 1], got {speed}")
        if bool(self.forces.any()):
            return False

        offset = self.rest_positions - self.positions
        displaced = (torch.linalg.norm(offset, dim=-1) > RESTORE_TOLERANCE) & ~self.fixed_mask
        if not bool(displaced.any()):
            return False
        self.positions = torch.where(displaced.unsqueeze(-1), self.positions + speed * offset, self.positions)
        return True

    def goal_residual(self, reduction: str = 'sum') -> torch.Tensor:
        """Mass-weighted squared distance of the current shape from its goals."""
        return shape_matching_loss(self.rest_positions, self.positions, self.masses, self.params, reduction)

    def step(self, current_positions: PointsLike, dt: float, masses: Optional[VectorLike] = None) -> StepResult:
        """
        Run one shape-matching and integration step.

        Args:
            current_positions: Freshly sampled world-space positions, N points
            dt: Time step
            masses: Optional per-step mass override of length N

        Returns:
            StepResult with the post-integration positions
        """
        dt = float(dt)
        if not math.isfinite(dt) or dt <= 0:
            raise ValueError(f"Time step must be positive and finite, got {dt}")

        n = self.n_particles
        try:
            current = as_points(current_positions, dtype=self.positions.dtype, device=self.positions.device)
        except ValueError as e:
            logger.warning("Rejected step: %s", e)
            return self._rejected()
        if current.shape[0] != n:
            logger.warning("Rejected step: %d positions for %d particles", current.shape[0], n)
            return self._rejected()

        had_forces = bool(self.forces.any())
        conditions: List[Condition] = []
        if masses is None:
            step_masses = self.masses
        else:
            step_masses = torch.as_tensor(np.asarray(masses, dtype=np.float64), dtype=self.positions.dtype,
                                          device=self.positions.device).reshape(-1)
            if step_masses.shape[0] != n:
                logger.warning("Rejected step: %d masses for %d particles", step_masses.shape[0], n)
                return self._rejected()
        step_masses, replaced = sanitize_masses(step_masses)
        if replaced:
            conditions.append(Condition.INVALID_MASSES)

        goal = self.shape_constraint(current, self.fixed_mask, step_masses)
        conditions.extend(goal.conditions)

        positions, velocities, reset_mask = integrate(
            current, self.velocities, self.forces, step_masses, goal.goals,
            self.rest_positions, self.fixed_mask, dt, self.params,
        )
        if bool(reset_mask.any()):
            conditions.append(Condition.NUMERIC_OVERFLOW)

        self.positions = positions
        self.velocities = velocities
        self.forces.zero_()
        if self.params.auto_restore and not had_forces:
            self.auto_restore()

        return StepResult(
            self.positions.clone(),
            velocities.clone(),
            list(dict.fromkeys(conditions)),
            goal.mode,
            goal.goals,
        )

    def _rejected(self) -> StepResult:
        return StepResult(self.positions.clone(), self.velocities.clone(), [Condition.DIMENSION_MISMATCH])

    def forward(self, current_positions: PointsLike, dt: float) -> StepResult:
        return self.step(current_positions, dt)


def create_body(rest_positions: PointsLike, masses: Optional[VectorLike] = None,
                params: Optional[DeformationParams] = None) -> Body:
    """Snapshot a rest shape into a new body with unit (or given) masses."""
    return Body(rest_positions, masses, params)


def set_params(body: Body, params: Optional[DeformationParams] = None, **overrides) -> DeformationParams:
    return body.set_params(params, **overrides)


def set_fixed(body: Body, index: int, fixed: bool = True) -> None:
    body.set_fixed(index, fixed)


def add_force(body: Body, index: int, force: VectorLike) -> None:
    body.add_force(index, force)


def step(body: Body, current_positions: PointsLike, dt: float, masses: Optional[VectorLike] = None) -> StepResult:
    return body.step(current_positions, dt, masses)


def reset(body: Body) -> None:
    body.reset()
