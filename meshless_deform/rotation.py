"""
Rotation extraction from the A_pq cross-covariance matrix.

The iterative extractor approximates the orthogonal polar factor of A_pq and
always hands back a proper rotation, falling back to a Gram-Schmidt frame when
the iteration breaks down.
"""

import logging
import math
import torch
from typing import List

from .guard import (
    DEGENERATE_TOLERANCE,
    SINGULAR_TOLERANCE,
    SingularMatrixError,
    all_finite,
    invert_matrix,
    relative_determinant,
)

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
CONVERGENCE_TOLERANCE = 1e-12

# A basis vector closer than this to a coordinate axis is snapped onto it.
AXIS_SNAP_THRESHOLD = 0.8

# Largest accepted deviation of det(R) from 1.
DETERMINANT_TOLERANCE = 0.1


def extract_rotation(A_pq: torch.Tensor, max_iterations: int = MAX_ITERATIONS) -> torch.Tensor:
    """
    Extract a proper rotation from A_pq.

    Runs the fixed-point iteration R <- 0.5 * (R + R^-T), which converges to the
    orthogonal polar factor. The start value is A_pq rescaled to unit RMS
    singular value; the polar factor does not depend on that scale.

    Args:
        A_pq: Cross-covariance matrix of shape (3, 3)
        max_iterations: Upper bound on fixed-point iterations

    Returns:
        Rotation matrix of shape (3, 3) with det close to +1, or the identity
        when A_pq is degenerate
    """
    eye = torch.eye(3, dtype=A_pq.dtype, device=A_pq.device)
    if not all_finite(A_pq):
        logger.warning("Non-finite A_pq, using identity rotation")
        return eye

    norm = torch.linalg.norm(A_pq)
    if norm < DEGENERATE_TOLERANCE:
        return eye

    R = A_pq * (math.sqrt(3.0) / norm)
    try:
        for _ in range(max_iterations):
            if relative_determinant(R).abs() < SINGULAR_TOLERANCE:
                raise SingularMatrixError("singular polar iterate")
            R_next = 0.5 * (R + invert_matrix(R).transpose(-2, -1))
            if not all_finite(R_next):
                raise SingularMatrixError("non-finite polar iterate")
            step = torch.linalg.norm(R_next - R)
            R = R_next
            if step < CONVERGENCE_TOLERANCE:
                break
    except SingularMatrixError as e:
        logger.debug("Polar iteration abandoned (%s), orthogonalizing columns", e)
        R = gram_schmidt(A_pq)

    if abs(float(torch.linalg.det(R)) - 1.0) > DETERMINANT_TOLERANCE:
        R = gram_schmidt(R)
    return R


def gram_schmidt(matrix: torch.Tensor, snap_threshold: float = AXIS_SNAP_THRESHOLD) -> torch.Tensor:
    """
    Build a right-handed orthonormal frame from the columns of a 3x3 matrix.

    The first two columns are orthonormalized in order; a candidate that lies
    within snap_threshold of a coordinate axis is replaced by that axis when the
    axis is orthogonal to the frame built so far. The third column is the cross
    product of the first two, so the result is always a proper rotation.

    Args:
        matrix: Matrix of shape (3, 3)
        snap_threshold: Minimum |cosine| with an axis that triggers snapping

    Returns:
        Rotation matrix of shape (3, 3)
    """
    axes = torch.eye(3, dtype=matrix.dtype, device=matrix.device)
    basis: List[torch.Tensor] = []
    for k in range(2):
        v = matrix[:, k].clone()
        for b in basis:
            v = v - torch.dot(v, b) * b
        length = torch.linalg.norm(v)
        if not all_finite(v) or length < DEGENERATE_TOLERANCE:
            v = _least_aligned_axis(axes, basis)
        else:
            v = v / length
        basis.append(_snap_to_axis(v, axes, basis, snap_threshold))

    basis.append(torch.linalg.cross(basis[0], basis[1]))
    return torch.stack(basis, dim=1)


def _snap_to_axis(v: torch.Tensor, axes: torch.Tensor, basis: List[torch.Tensor], threshold: float) -> torch.Tensor:
    j = int(torch.argmax(v.abs()))
    if v[j].abs() <= threshold:
        return v
    axis = axes[j] * torch.sign(v[j])
    if all(float(torch.dot(axis, b).abs()) < 1e-9 for b in basis):
        return axis
    return v


def _least_aligned_axis(axes: torch.Tensor, basis: List[torch.Tensor]) -> torch.Tensor:
    if not basis:
        return axes[0].clone()
    overlap = [sum(float(torch.dot(axes[j], b).abs()) for b in basis) for j in range(3)]
    v = axes[overlap.index(min(overlap))].clone()
    for b in basis:
        v = v - torch.dot(v, b) * b
    return v / torch.linalg.norm(v)


def axis_angle_to_rotation_matrix(axis, angle: float, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """
    Rotation of angle radians about axis (any non-zero 3-vector).

    Rodrigues' formula: R = I + sin(a) K + (1 - cos(a)) K^2 with K the
    cross-product matrix of the unit axis.
    """
    axis = torch.as_tensor(axis, dtype=dtype)
    x, y, z = (axis / torch.linalg.norm(axis)).tolist()
    K = torch.tensor([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=dtype)
    return torch.eye(3, dtype=dtype) + math.sin(angle) * K + (1.0 - math.cos(angle)) * torch.matmul(K, K)
