"""Tests for rotation extraction."""

import math

import torch

from meshless_deform.rotation import (
    axis_angle_to_rotation_matrix,
    extract_rotation,
    gram_schmidt,
)

I3 = torch.eye(3, dtype=torch.float64)


def assert_proper_rotation(R: torch.Tensor) -> None:
    torch.testing.assert_close(R @ R.T, I3, atol=1e-9, rtol=0)
    assert abs(float(torch.linalg.det(R)) - 1.0) < 1e-9


def rotation_z(angle: float) -> torch.Tensor:
    return axis_angle_to_rotation_matrix([0.0, 0.0, 1.0], angle)


def test_axis_angle_about_y():
    R = axis_angle_to_rotation_matrix([0.0, 1.0, 0.0], math.pi / 2)
    v = R @ torch.tensor([0.0, 0.0, 1.0], dtype=torch.float64)
    torch.testing.assert_close(v, torch.tensor([1.0, 0.0, 0.0], dtype=torch.float64))


def test_axis_angle_zero_angle_is_identity():
    torch.testing.assert_close(axis_angle_to_rotation_matrix([3.0, -1.0, 2.0], 0.0), I3)


def test_axis_angle_is_proper_rotation():
    R = axis_angle_to_rotation_matrix([1.0, 2.0, 3.0], 0.7)
    assert_proper_rotation(R)
    axis = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
    torch.testing.assert_close(R @ axis, axis)


def test_degenerate_input_gives_identity():
    assert torch.equal(extract_rotation(torch.zeros(3, 3, dtype=torch.float64)), I3)
    assert torch.equal(extract_rotation(1e-12 * I3), I3)


def test_non_finite_input_gives_identity():
    A = I3.clone()
    A[0, 2] = math.nan
    assert torch.equal(extract_rotation(A), I3)


def test_recovers_rotation_from_stretched_matrix():
    R_true = axis_angle_to_rotation_matrix([1.0, 2.0, 3.0], 0.7)
    V = axis_angle_to_rotation_matrix([0.0, 1.0, 1.0], 0.4)
    S = V @ torch.diag(torch.tensor([3.0, 1.0, 0.5], dtype=torch.float64)) @ V.T
    R = extract_rotation(R_true @ S)
    torch.testing.assert_close(R, R_true, atol=1e-9, rtol=0)

    U, _, Vt = torch.linalg.svd(R_true @ S)
    torch.testing.assert_close(R, U @ Vt, atol=1e-9, rtol=0)


def test_reflection_is_corrected_to_proper_rotation():
    A = torch.diag(torch.tensor([2.0, 1.0, -1.0], dtype=torch.float64))
    R = extract_rotation(A)
    assert_proper_rotation(R)


def test_rank_deficient_input_falls_back_to_gram_schmidt():
    R_true = rotation_z(math.pi / 4)
    A = R_true @ torch.diag(torch.tensor([2.0, 1.0, 0.0], dtype=torch.float64))
    R = extract_rotation(A)
    assert_proper_rotation(R)
    torch.testing.assert_close(R, R_true, atol=1e-9, rtol=0)


def test_gram_schmidt_snaps_near_axis_columns():
    R = gram_schmidt(rotation_z(0.3))
    torch.testing.assert_close(R, I3)


def test_gram_schmidt_keeps_oblique_columns():
    R_true = rotation_z(math.pi / 4)
    torch.testing.assert_close(gram_schmidt(R_true), R_true, atol=1e-12, rtol=0)


def test_gram_schmidt_handles_zero_columns():
    A = torch.zeros(3, 3, dtype=torch.float64)
    A[:, 0] = torch.tensor([0.0, 0.0, 5.0], dtype=torch.float64)
    R = gram_schmidt(A)
    assert_proper_rotation(R)
    torch.testing.assert_close(R[:, 0], torch.tensor([0.0, 0.0, 1.0], dtype=torch.float64))

