"""
Utility functions for shape matching operations.
"""

import logging
import torch
from typing import Optional

from .guard import finite_rows

logger = logging.getLogger(__name__)


def compute_center_of_mass(positions: torch.Tensor, masses: Optional[torch.Tensor] = None) -> torch.Tensor:
    """
    Compute the mass-weighted center of a point set.

    Points with non-finite coordinates (or non-finite masses) are left out of
    the sum. If the remaining total mass is zero the unweighted mean is used,
    and if no valid point remains the origin is returned.

    Args:
        positions: Positions of shape (N, 3)
        masses: Optional masses of shape (N,). If None, uniform masses are assumed.

    Returns:
        Center of mass of shape (3,)
    """
    valid = finite_rows(positions)
    if masses is not None:
        valid = valid & torch.isfinite(masses)

    if not bool(valid.all()):
        logger.warning("Excluding %d non-finite points from centroid", int((~valid).sum()))
    if not bool(valid.any()):
        return torch.zeros(positions.shape[-1], dtype=positions.dtype, device=positions.device)

    points = positions[valid]
    if masses is None:
        return torch.mean(points, dim=0)

    weights = masses[valid]
    total_mass = torch.sum(weights)
    if total_mass == 0:
        return torch.mean(points, dim=0)
    # Weighted center of mass
    weighted_sum = torch.sum(points * weights.unsqueeze(-1), dim=0)
    return weighted_sum / total_mass


def relative_positions(positions: torch.Tensor, center: torch.Tensor) -> torch.Tensor:
    """Positions relative to a center, shape (N, 3)."""
    return positions - center.unsqueeze(-2)


def quadratic_features(q: torch.Tensor) -> torch.Tensor:
    """
    Extend relative positions to quadratic feature vectors.

    Args:
        q: Relative positions of shape (N, 3)

    Returns:
        Features of shape (N, 9) ordered [x, y, z, x², y², z², xy, yz, zx]
    """
    x, y, z = q.unbind(-1)
    return torch.stack([x, y, z, x * x, y * y, z * z, x * y, y * z, z * x], dim=-1)


def cross_covariance(p: torch.Tensor, q: torch.Tensor, masses: torch.Tensor) -> torch.Tensor:
    """
    Accumulate A_pq = sum_i m_i * p_i * q_i^T.

    Terms whose operands are non-finite are skipped. With no valid term left
    the identity-shaped matrix is returned.

    Args:
        p: Current relative positions of shape (N, 3)
        q: Rest relative positions (N, 3) or quadratic features (N, 9)
        masses: Masses of shape (N,)

    Returns:
        Matrix of shape (3, 3), or (3, 9) for quadratic features
    """
    valid = finite_rows(p) & finite_rows(q) & torch.isfinite(masses)
    if not bool(valid.any()):
        return torch.eye(p.shape[-1], q.shape[-1], dtype=p.dtype, device=p.device)

    weighted_p = p[valid] * masses[valid].unsqueeze(-1)  # (M, 3)
    return torch.matmul(weighted_p.transpose(-2, -1), q[valid])


def auto_covariance(q: torch.Tensor, masses: torch.Tensor) -> torch.Tensor:
    """
    Accumulate A_qq = sum_i m_i * q_i * q_i^T.

    Args:
        q: Rest relative positions (N, 3) or quadratic features (N, 9)
        masses: Masses of shape (N,)

    Returns:
        Symmetric matrix of shape (3, 3) or (9, 9)
    """
    return cross_covariance(q, q, masses)


def apply_transformation(positions: torch.Tensor, transform: torch.Tensor, translation: torch.Tensor) -> torch.Tensor:
    """
    Apply a linear map and translation to positions.

    Args:
        positions: Positions (or feature vectors) of shape (N, D)
        transform: Matrix of shape (3, D)
        translation: Translation vector of shape (3,)

    Returns:
        Transformed positions of shape (N, 3)
    """
    # T @ positions^T -> (3, N) -> (N, 3)
    transformed = torch.matmul(transform, positions.transpose(-2, -1)).transpose(-2, -1)
    return transformed + translation.unsqueeze(-2)
