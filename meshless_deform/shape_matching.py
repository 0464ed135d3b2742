"""
Based on Müller et al. "Meshless Deformations Based on Shape Matching".

Computes per-particle goal positions from the best-fit rotation, linear or
quadratic transform that maps the rest shape onto the current shape. Each mode
is one pure function; compute_goal_positions dispatches on the mode and walks
the fallback chain quadratic -> linear -> rotation -> identity.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import torch

from .config import DeformationMode, DeformationParams
from .guard import (
    ELEMENT_BOUND,
    MAX_VOLUME_SCALE,
    MIN_VOLUME_SCALE,
    Condition,
    NumericFailure,
    SingularMatrixError,
    all_finite,
    clamp_elements,
    clamp_norm,
    displacement_bound,
    finite_rows,
    invert_matrix,
    is_degenerate,
    sanitize_masses,
)
from .rotation import extract_rotation
from .utils import (
    apply_transformation,
    auto_covariance,
    compute_center_of_mass,
    cross_covariance,
    quadratic_features,
    relative_positions,
)

logger = logging.getLogger(__name__)

_FALLBACK_CHAIN = {
    DeformationMode.QUADRATIC: (DeformationMode.QUADRATIC, DeformationMode.LINEAR, DeformationMode.ROTATION),
    DeformationMode.LINEAR: (DeformationMode.LINEAR, DeformationMode.ROTATION),
    DeformationMode.ROTATION: (DeformationMode.ROTATION,),
}


@dataclass
class GoalResult:
    """Goal positions for one frame and how they were obtained.

    ``mode`` is the mode that produced the goals, or None when deformation was
    skipped (all particles fixed, degenerate configuration) or every mode
    failed and the identity was used.
    """
    goals: torch.Tensor
    rotation: torch.Tensor
    transform: torch.Tensor
    center: torch.Tensor
    mode: Optional[DeformationMode]
    conditions: List[Condition] = field(default_factory=list)


def rotation_deformation(q: torch.Tensor, R: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Rigid fit: beta is ignored and the transform is the rotation itself.

    Returns:
        Tuple of (transform (3, 3), features (N, 3))
    """
    return R, q


def linear_deformation(
    p: torch.Tensor,
    q: torch.Tensor,
    masses: torch.Tensor,
    R: torch.Tensor,
    beta: float,
    perturbation: float,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Linear fit A = A_pq * A_qq^-1 blended with the rotation.

    The diagonal regularizer added to A_qq is mirrored on A_pq as
    perturbation * R, which pulls the fit toward the rotation and leaves
    A = I when the shape is at rest.

    Args:
        p: Current relative positions of shape (N, 3)
        q: Rest relative positions of shape (N, 3)
        masses: Masses of shape (N,)
        R: Rotation extracted from A_pq, shape (3, 3)
        beta: Blend factor between rotation (0) and linear fit (1)
        perturbation: Diagonal regularization of A_qq

    Returns:
        Tuple of (transform (3, 3), features (N, 3))

    Raises:
        NumericFailure: if A_qq is singular before regularization or the fit is not finite
    """
    A_pq = cross_covariance(p, q, masses)
    A_qq_inv = invert_matrix(auto_covariance(q, masses), regularization=perturbation)

    A = torch.matmul(A_pq + perturbation * R, A_qq_inv)

    # Volume preservation
    det = torch.linalg.det(A)
    if not all_finite(det):
        raise NumericFailure("non-finite linear transform")
    scale = det.abs().pow(1.0 / 3.0).clamp(MIN_VOLUME_SCALE, MAX_VOLUME_SCALE)
    A = clamp_elements(A / scale, ELEMENT_BOUND)

    T = beta * A + (1.0 - beta) * R
    return T, q


def quadratic_deformation(
    p: torch.Tensor,
    q: torch.Tensor,
    masses: torch.Tensor,
    R: torch.Tensor,
    beta: float,
    perturbation: float,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Quadratic fit A~ = A~_pq * A~_qq^-1 over [x, y, z, x², y², z², xy, yz, zx].

    Args:
        p: Current relative positions of shape (N, 3)
        q: Rest relative positions of shape (N, 3)
        masses: Masses of shape (N,)
        R: Rotation extracted from A_pq, shape (3, 3)
        beta: Blend factor between rotation (0) and quadratic fit (1)
        perturbation: Diagonal regularization of the 9x9 A~_qq

    Returns:
        Tuple of (transform (3, 9), features (N, 9))

    Raises:
        NumericFailure: if A~_qq is singular before regularization or the fit is not finite
    """
    q_tilde = quadratic_features(q)

    # R~ = [R | 0]
    R_tilde = torch.zeros(3, 9, dtype=q.dtype, device=q.device)
    R_tilde[:, :3] = R

    A_pq_tilde = cross_covariance(p, q_tilde, masses)  # (3, 9)
    A_qq_tilde_inv = invert_matrix(auto_covariance(q_tilde, masses), regularization=perturbation)

    A_tilde = torch.matmul(A_pq_tilde + perturbation * R_tilde, A_qq_tilde_inv)
    if not all_finite(A_tilde):
        raise NumericFailure("non-finite quadratic transform")
    A_tilde = clamp_elements(A_tilde, ELEMENT_BOUND)

    T = beta * A_tilde + (1.0 - beta) * R_tilde
    return T, q_tilde


def _fit(
    mode: DeformationMode,
    p: torch.Tensor,
    q: torch.Tensor,
    masses: torch.Tensor,
    R: torch.Tensor,
    params: DeformationParams,
) -> Tuple[torch.Tensor, torch.Tensor]:
    if mode is DeformationMode.ROTATION:
        return rotation_deformation(q, R)
    elif mode is DeformationMode.LINEAR:
        return linear_deformation(p, q, masses, R, params.beta, params.perturbation)
    elif mode is DeformationMode.QUADRATIC:
        return quadratic_deformation(p, q, masses, R, params.beta, params.perturbation)
    raise ValueError(f"Unknown deformation mode: {mode!r}")


def _reconstruct(features: torch.Tensor, T: torch.Tensor, center: torch.Tensor, max_displacement: float) -> torch.Tensor:
    displacement = apply_transformation(features, T, torch.zeros_like(center))
    return clamp_norm(displacement, max_displacement) + center


def compute_goal_positions(
    rest_positions: torch.Tensor,
    current_positions: torch.Tensor,
    masses: Optional[torch.Tensor] = None,
    params: Optional[DeformationParams] = None,
    fixed_mask: Optional[torch.Tensor] = None,
) -> GoalResult:
    """
    Compute shape-matching goal positions for one frame.

    Centroids are taken over the non-fixed particles only, and goals are
    placed around the current-frame centroid. Fixed particles keep their
    current position as goal.

    Args:
        rest_positions: Rest positions of shape (N, 3)
        current_positions: Current positions of shape (N, 3)
        masses: Optional masses of shape (N,). If None, unit masses are used.
        params: Deformation parameters; defaults if None
        fixed_mask: Optional boolean mask of shape (N,) marking pinned particles

    Returns:
        GoalResult with goals of shape (N, 3)
    """
    if params is None:
        params = DeformationParams()
    n = current_positions.shape[0]
    dtype, device = current_positions.dtype, current_positions.device
    eye = torch.eye(3, dtype=dtype, device=device)
    conditions: List[Condition] = []

    if masses is None:
        masses = torch.ones(n, dtype=dtype, device=device)
    masses, replaced = sanitize_masses(masses)
    if replaced:
        conditions.append(Condition.INVALID_MASSES)
    if fixed_mask is None:
        fixed_mask = torch.zeros(n, dtype=torch.bool, device=device)

    movable = ~fixed_mask
    if not bool(movable.any()):
        logger.warning("All %d particles are fixed, skipping deformation", n)
        conditions.append(Condition.ALL_FIXED)
        return GoalResult(current_positions.clone(), eye, eye, torch.zeros(3, dtype=dtype, device=device), None, conditions)

    if not all_finite(current_positions):
        conditions.append(Condition.NON_FINITE_INPUT)

    current = current_positions[movable]
    rest = rest_positions[movable]
    m = masses[movable]

    # Step 1: Compute centroids over movable particles
    current_center = compute_center_of_mass(current, m)
    rest_center = compute_center_of_mass(rest, m)

    # Step 2: Relative positions; only the current ones are bounded
    q = relative_positions(rest, rest_center)
    bound = displacement_bound(q, params.max_displacement)
    p = clamp_norm(relative_positions(current, current_center), bound)

    valid = finite_rows(p) & finite_rows(q)
    if is_degenerate(p[valid], q[valid]):
        logger.warning("Degenerate configuration detected, skipping deformation")
        conditions.append(Condition.DEGENERATE_CONFIGURATION)
        return GoalResult(current_positions.clone(), eye, eye, current_center, None, conditions)

    # Step 3: Rotation shared by every mode
    R = extract_rotation(cross_covariance(p, q, m))

    # Step 4: Fit, falling back to simpler modes on failure
    used: Optional[DeformationMode] = None
    T = eye
    goals = None
    for mode in _FALLBACK_CHAIN[params.mode]:
        try:
            T, features = _fit(mode, p, q, m, R, params)
            goals = _reconstruct(features, T, current_center, bound)
            if not all_finite(goals):
                raise NumericFailure(f"non-finite goals in {mode.value} mode")
        except NumericFailure as e:
            condition = Condition.SINGULAR_MATRIX if isinstance(e, SingularMatrixError) else Condition.NUMERIC_OVERFLOW
            conditions.append(condition)
            log = logger.debug if condition is Condition.SINGULAR_MATRIX else logger.warning
            log("%s deformation failed (%s), falling back", mode.value, e)
            continue
        used = mode
        break

    if used is None:
        T = eye
        goals = _reconstruct(q, T, current_center, bound)

    full_goals = current_positions.clone()
    full_goals[movable] = goals
    return GoalResult(full_goals, R, T, current_center, used, conditions)


def optimal_rotation_translation(
    rest_positions: torch.Tensor,
    deformed_positions: torch.Tensor,
    masses: Optional[torch.Tensor] = None
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Args:
        rest_positions: Rest positions of shape (N, 3)
        deformed_positions: Current deformed positions of shape (N, 3)
        masses: Optional masses of shape (N,). If None, uniform masses assumed.

    Returns:
        Tuple of (rotation_matrix, translation_vector):
        - rotation_matrix: Optimal rotation matrix of shape (3, 3)
        - translation_vector: Optimal translation vector of shape (3,)
    """
    if masses is None:
        masses = torch.ones(rest_positions.shape[0], dtype=rest_positions.dtype, device=rest_positions.device)

    # Step 1: Compute centers of mass
    rest_com = compute_center_of_mass(rest_positions, masses)
    deformed_com = compute_center_of_mass(deformed_positions, masses)

    # Step 2: Compute relative positions (subtract center of mass)
    rest_rel = relative_positions(rest_positions, rest_com)
    deformed_rel = relative_positions(deformed_positions, deformed_com)

    # Step 3: Compute the covariance matrix A_pq
    A_pq = cross_covariance(deformed_rel, rest_rel, masses)

    # Step 4: Extract optimal rotation
    R = extract_rotation(A_pq)

    # Step 5: Translation aligns the centers of mass after rotation
    translation = deformed_com - torch.matmul(R, rest_com)

    return R, translation


def shape_matching_loss(
    rest_positions: torch.Tensor,
    deformed_positions: torch.Tensor,
    masses: Optional[torch.Tensor] = None,
    params: Optional[DeformationParams] = None,
    reduction: str = 'mean'
) -> torch.Tensor:
    """
    Mass-weighted squared distance between current and goal positions.

    Args:
        rest_positions: Rest positions of shape (N, 3)
        deformed_positions: Current positions of shape (N, 3)
        masses: Optional masses of shape (N,)
        params: Deformation parameters used to compute the goals
        reduction: Reduction method ('mean', 'sum', 'none')

    Returns:
        Loss tensor
    """
    goal_positions = compute_goal_positions(rest_positions, deformed_positions, masses, params).goals

    squared_distances = torch.sum((deformed_positions - goal_positions) ** 2, dim=-1)

    if masses is not None:
        squared_distances = squared_distances * masses

    if reduction == 'mean':
        return torch.mean(squared_distances)
    elif reduction == 'sum':
        return torch.sum(squared_distances)
    elif reduction == 'none':
        return squared_distances
    raise ValueError(f"Unknown reduction: {reduction!r}")


class ShapeMatchingConstraint(torch.nn.Module):
    """
    PyTorch module holding a rest shape and producing goal positions for it.
    """

    def __init__(self, rest_positions: torch.Tensor, masses: Optional[torch.Tensor] = None,
                 params: Optional[DeformationParams] = None):
        """
        Initialize shape matching constraint.

        Args:
            rest_positions: Rest positions of shape (N, 3)
            masses: Optional masses of shape (N,); unit masses if None
            params: Deformation parameters; defaults if None
        """
        super().__init__()
        if masses is None:
            masses = torch.ones(rest_positions.shape[0], dtype=rest_positions.dtype, device=rest_positions.device)
        self.register_buffer('rest_positions', rest_positions.clone())
        self.register_buffer('masses', masses.clone())
        self.params = params if params is not None else DeformationParams()

    def forward(self, deformed_positions: torch.Tensor, fixed_mask: Optional[torch.Tensor] = None,
                masses: Optional[torch.Tensor] = None) -> GoalResult:
        """
        Args:
            deformed_positions: Current positions of shape (N, 3)
            fixed_mask: Optional boolean mask of pinned particles, shape (N,)
            masses: Optional per-call mass override of shape (N,)

        Returns:
            GoalResult with goals of shape (N, 3)
        """
        return compute_goal_positions(
            self.rest_positions,
            deformed_positions,
            self.masses if masses is None else masses,
            self.params,
            fixed_mask,
        )

    def compute_loss(self, deformed_positions: torch.Tensor) -> torch.Tensor:
        return shape_matching_loss(
            self.rest_positions,
            deformed_positions,
            self.masses,
            self.params,
        )
