"""
Numerical safeguards shared by every stage of the deformation pipeline.

Finite-value checks, singularity checks and magnitude clamps live here so the
solver and the integrator call into one place instead of duplicating them.
"""

import logging
from enum import Enum
from typing import Optional, Tuple

import torch

logger = logging.getLogger(__name__)

# Matrix inversion: a pivot smaller than this fraction of the largest entry
# marks the matrix as singular. Shared by the 3x3 and 9x9 paths.
SINGULAR_TOLERANCE = 1e-8

# Relative-position sets with a total magnitude below this are coincident.
DEGENERATE_TOLERANCE = 1e-10

# Bound on every element of a linear/quadratic transform.
ELEMENT_BOUND = 5.0

# Volume normalization scale factor range.
MIN_VOLUME_SCALE = 0.1
MAX_VOLUME_SCALE = 10.0

# Default displacement bound as a multiple of the rest shape radius.
DISPLACEMENT_SCALE = 10.0


class Condition(str, Enum):
    """Non-fatal conditions raised while stepping a body."""
    DIMENSION_MISMATCH = "dimension_mismatch"
    DEGENERATE_CONFIGURATION = "degenerate_configuration"
    SINGULAR_MATRIX = "singular_matrix"
    NUMERIC_OVERFLOW = "numeric_overflow"
    ALL_FIXED = "all_fixed"
    NON_FINITE_INPUT = "non_finite_input"
    INVALID_MASSES = "invalid_masses"


class NumericFailure(ArithmeticError):
    """A fit produced unusable numbers; the solver moves to a simpler mode."""


class SingularMatrixError(NumericFailure):
    """Raised by invert_matrix when no usable pivot is found."""


def all_finite(x: torch.Tensor) -> bool:
    return bool(torch.isfinite(x).all())


def finite_rows(x: torch.Tensor) -> torch.Tensor:
    """
    Boolean mask of rows whose every component is finite.

    Args:
        x: Tensor of shape (N, D)

    Returns:
        Mask of shape (N,)
    """
    return torch.isfinite(x).all(dim=-1)


def is_degenerate(p: torch.Tensor, q: torch.Tensor, tol: float = DEGENERATE_TOLERANCE) -> bool:
    """True when either relative-position set has near-zero total magnitude."""
    p_mag = torch.linalg.norm(p)
    q_mag = torch.linalg.norm(q)
    return bool(p_mag < tol or q_mag < tol)


def clamp_norm(vectors: torch.Tensor, max_norm: float) -> torch.Tensor:
    """
    Scale down any row whose Euclidean norm exceeds max_norm, keeping its direction.

    Args:
        vectors: Tensor of shape (N, D)
        max_norm: Upper bound on each row norm

    Returns:
        Clamped tensor of the same shape
    """
    norms = torch.linalg.norm(vectors, dim=-1, keepdim=True)
    scale = torch.where(norms > max_norm, max_norm / norms, torch.ones_like(norms))
    return vectors * scale


def clamp_elements(matrix: torch.Tensor, bound: float = ELEMENT_BOUND) -> torch.Tensor:
    return matrix.clamp(min=-bound, max=bound)


def sanitize_masses(masses: torch.Tensor) -> Tuple[torch.Tensor, bool]:
    """
    Replace non-finite or non-positive masses with 1.0.

    Returns:
        Tuple of (masses, replaced) where replaced tells whether anything changed.
    """
    valid = torch.isfinite(masses) & (masses > 0)
    if bool(valid.all()):
        return masses, False
    logger.warning("%d invalid masses replaced with 1.0", int((~valid).sum()))
    return torch.where(valid, masses, torch.ones_like(masses)), True


def _eliminate(augmented: torch.Tensor, n: int, tol: float) -> torch.Tensor:
    """Gauss-Jordan elimination over the first n columns, with partial pivoting."""
    scale = augmented[:, :n].abs().max()
    if scale == 0:
        raise SingularMatrixError("zero matrix")

    for col in range(n):
        # Partial pivoting: bring the largest remaining entry onto the diagonal
        pivot_row = col + int(torch.argmax(augmented[col:, col].abs()))
        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]

        pivot = augmented[col, col]
        if pivot.abs() < tol * scale:
            raise SingularMatrixError(f"pivot {float(pivot):.3e} in column {col}")

        augmented[col] = augmented[col] / pivot
        factors = augmented[:, col].clone()
        factors[col] = 0.0
        augmented = augmented - factors.unsqueeze(-1) * augmented[col].unsqueeze(0)
    return augmented


def _check_square(matrix: torch.Tensor) -> int:
    n = matrix.shape[0]
    if matrix.shape != (n, n):
        raise ValueError(f"Expected a square matrix, got shape {tuple(matrix.shape)}")
    if not all_finite(matrix):
        raise SingularMatrixError("matrix contains non-finite values")
    return n


def invert_matrix(matrix: torch.Tensor, tol: float = SINGULAR_TOLERANCE, regularization: float = 0.0) -> torch.Tensor:
    """
    Invert a small square matrix by Gauss-Jordan elimination with partial pivoting.

    Used for the 3x3 and 9x9 rest covariance matrices. A pivot whose magnitude
    falls below tol times the largest entry is treated as singular. Singularity
    is always judged on ``matrix`` itself; with a non-zero regularization the
    returned inverse is that of ``matrix + regularization * I``, so a small
    diagonal shift never hides a rank-deficient matrix.

    Args:
        matrix: Square matrix of shape (n, n)
        tol: Relative pivot tolerance
        regularization: Diagonal shift applied before inverting

    Returns:
        Inverse of shape (n, n)

    Raises:
        SingularMatrixError: if the matrix is singular or contains non-finite values
    """
    n = _check_square(matrix)
    eye = torch.eye(n, dtype=matrix.dtype, device=matrix.device)
    if regularization:
        _eliminate(matrix.clone(), n, tol)
        matrix = matrix + regularization * eye

    augmented = _eliminate(torch.cat([matrix.clone(), eye], dim=1), n, tol)
    inverse = augmented[:, n:]
    if not all_finite(inverse):
        raise SingularMatrixError("inverse contains non-finite values")
    return inverse


def relative_determinant(matrix: torch.Tensor) -> torch.Tensor:
    """Determinant of a 3x3 matrix normalized by the cube of its largest entry."""
    scale = matrix.abs().max()
    if scale == 0:
        return torch.zeros((), dtype=matrix.dtype, device=matrix.device)
    return torch.linalg.det(matrix / scale)


def displacement_bound(q: torch.Tensor, max_displacement: Optional[float] = None) -> float:
    """
    Resolve the per-particle displacement bound for one rest shape.

    An explicit max_displacement is used as given. Otherwise the bound is
    DISPLACEMENT_SCALE times the largest rest distance from the centroid, so
    the default never cuts into the rest shape whatever its size.

    Args:
        q: Rest relative positions of shape (N, 3)
        max_displacement: Configured bound in model units, or None

    Returns:
        Bound on the norm of relative positions and goal displacements
    """
    if max_displacement is not None:
        return float(max_displacement)
    norms = torch.linalg.norm(q[finite_rows(q)], dim=-1)
    radius = float(norms.max()) if norms.numel() else 0.0
    return DISPLACEMENT_SCALE * radius
