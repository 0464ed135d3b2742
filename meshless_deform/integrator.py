"""
Semi-implicit velocity integration toward shape-matching goal positions.
"""

import logging
import torch
from typing import Tuple

from .config import DeformationParams
from .guard import finite_rows

logger = logging.getLogger(__name__)


def integrate(
    positions: torch.Tensor,
    velocities: torch.Tensor,
    forces: torch.Tensor,
    masses: torch.Tensor,
    goals: torch.Tensor,
    rest_positions: torch.Tensor,
    fixed_mask: torch.Tensor,
    dt: float,
    params: DeformationParams,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Advance every non-fixed particle by one step of size dt.

        v += (goal - x) * dt / tau + (f / m + g) * dt - v * damping
        x += v * dt

    Fixed particles keep their position and get zero velocity. Afterwards any
    particle whose position or velocity is not finite is put back at its rest
    position with zero velocity.

    Args:
        positions: Current positions of shape (N, 3)
        velocities: Velocities of shape (N, 3)
        forces: Accumulated external forces of shape (N, 3)
        masses: Positive masses of shape (N,)
        goals: Goal positions of shape (N, 3)
        rest_positions: Rest positions of shape (N, 3)
        fixed_mask: Boolean mask of pinned particles, shape (N,)
        dt: Time step
        params: Deformation parameters (tau, damping_factor, gravity)

    Returns:
        Tuple of (positions, velocities, reset_mask) where reset_mask marks the
        particles that were recovered to their rest position
    """
    gravity = torch.tensor(params.gravity, dtype=positions.dtype, device=positions.device)
    movable = (~fixed_mask).unsqueeze(-1)

    elasticity = (goals - positions) * (dt / params.tau)
    acceleration = forces / masses.unsqueeze(-1) + gravity

    new_velocities = velocities + elasticity + acceleration * dt - velocities * params.damping_factor
    new_positions = positions + new_velocities * dt

    new_velocities = torch.where(movable, new_velocities, torch.zeros_like(new_velocities))
    new_positions = torch.where(movable, new_positions, positions)

    # Particle-scoped recovery
    reset_mask = ~(finite_rows(new_positions) & finite_rows(new_velocities))
    if bool(reset_mask.any()):
        logger.warning("Resetting %d non-finite particles to rest", int(reset_mask.sum()))
        new_positions[reset_mask] = rest_positions[reset_mask]
        new_velocities[reset_mask] = 0.0

    return new_positions, new_velocities, reset_mask
