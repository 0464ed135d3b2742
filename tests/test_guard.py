"""Tests for the numerical safeguards."""

import math

import pytest
import torch

from meshless_deform.guard import (
    SingularMatrixError,
    clamp_elements,
    clamp_norm,
    displacement_bound,
    finite_rows,
    invert_matrix,
    is_degenerate,
    sanitize_masses,
)


def test_invert_matrix_needs_pivoting():
    A = torch.tensor([[0.0, 2.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 4.0]], dtype=torch.float64)
    torch.testing.assert_close(invert_matrix(A), torch.linalg.inv(A))


def test_invert_matrix_9x9():
    generator = torch.Generator().manual_seed(0)
    X = torch.randn(30, 9, generator=generator, dtype=torch.float64)
    A = X.T @ X + torch.eye(9, dtype=torch.float64)
    inverse = invert_matrix(A)
    torch.testing.assert_close(inverse @ A, torch.eye(9, dtype=torch.float64), atol=1e-10, rtol=0)


def test_invert_matrix_singular():
    A = torch.tensor([[1.0, 2.0, 3.0], [2.0, 4.0, 6.0], [1.0, 0.0, 1.0]], dtype=torch.float64)
    with pytest.raises(SingularMatrixError):
        invert_matrix(A)


def test_invert_matrix_rejects_non_finite():
    A = torch.eye(3, dtype=torch.float64)
    A[1, 1] = math.nan
    with pytest.raises(SingularMatrixError):
        invert_matrix(A)


def test_invert_matrix_zero():
    with pytest.raises(SingularMatrixError):
        invert_matrix(torch.zeros(3, 3, dtype=torch.float64))


def test_clamp_norm_keeps_direction():
    v = torch.tensor([[3.0, 4.0, 0.0], [0.1, 0.0, 0.0]], dtype=torch.float64)
    clamped = clamp_norm(v, 1.0)
    torch.testing.assert_close(clamped[0], torch.tensor([0.6, 0.8, 0.0], dtype=torch.float64))
    assert torch.equal(clamped[1], v[1])


def test_clamp_elements():
    A = torch.tensor([[10.0, -7.0], [1.0, -1.0]], dtype=torch.float64)
    assert torch.equal(clamp_elements(A, 5.0), torch.tensor([[5.0, -5.0], [1.0, -1.0]], dtype=torch.float64))


def test_sanitize_masses():
    masses = torch.tensor([1.0, 0.0, -2.0, math.nan, math.inf, 3.0], dtype=torch.float64)
    cleaned, replaced = sanitize_masses(masses)
    assert replaced
    assert torch.equal(cleaned, torch.tensor([1.0, 1.0, 1.0, 1.0, 1.0, 3.0], dtype=torch.float64))

    same, replaced = sanitize_masses(torch.ones(3, dtype=torch.float64))
    assert not replaced


def test_finite_rows():
    x = torch.tensor([[0.0, 1.0, 2.0], [math.nan, 0.0, 0.0], [0.0, -math.inf, 0.0]], dtype=torch.float64)
    assert finite_rows(x).tolist() == [True, False, False]


def test_is_degenerate():
    zero = torch.zeros(4, 3, dtype=torch.float64)
    ones = torch.ones(4, 3, dtype=torch.float64)
    assert is_degenerate(zero, ones)
    assert is_degenerate(ones, zero)
    assert not is_degenerate(ones, ones)


def test_regularization_does_not_hide_rank_deficiency():
    A = torch.diag(torch.tensor([2.0, 0.0, 0.0], dtype=torch.float64))
    with pytest.raises(SingularMatrixError):
        invert_matrix(A, regularization=1e-4)


def test_regularized_inverse():
    A = torch.diag(torch.tensor([2.0, 1.0, 4.0], dtype=torch.float64))
    inverse = invert_matrix(A, regularization=0.5)
    torch.testing.assert_close(inverse, torch.diag(torch.tensor([0.4, 2.0 / 3.0, 1.0 / 4.5], dtype=torch.float64)))


def test_displacement_bound_scales_with_rest_shape():
    q = torch.tensor([[3.0, 4.0, 0.0], [0.0, 1.0, 0.0], [math.nan, 0.0, 0.0]], dtype=torch.float64)
    assert displacement_bound(q) == pytest.approx(50.0)
    assert displacement_bound(1000.0 * q[:2]) == pytest.approx(50000.0)
    assert displacement_bound(q, 2.0) == 2.0
