"""Tests for the velocity/position update."""

import math

import torch

from meshless_deform.config import DeformationParams
from meshless_deform.integrator import integrate


def single(position=(0.0, 0.0, 0.0), velocity=(0.0, 0.0, 0.0), force=(0.0, 0.0, 0.0), goal=(0.0, 0.0, 0.0)):
    as_row = lambda v: torch.tensor([v], dtype=torch.float64)
    return as_row(position), as_row(velocity), as_row(force), as_row(goal)


def test_single_particle_update():
    x, v, f, g = single(force=(2.0, 0.0, 0.0), goal=(1.0, 0.0, 0.0))
    params = DeformationParams(tau=0.5, damping_factor=0.1)
    masses = torch.tensor([2.0], dtype=torch.float64)
    fixed = torch.zeros(1, dtype=torch.bool)

    x_new, v_new, reset = integrate(x, v, f, masses, g, x.clone(), fixed, 0.1, params)
    torch.testing.assert_close(v_new, torch.tensor([[0.3, 0.0, 0.0]], dtype=torch.float64))
    torch.testing.assert_close(x_new, torch.tensor([[0.03, 0.0, 0.0]], dtype=torch.float64))
    assert not reset.any()


def test_damping_on_existing_velocity():
    x, v, f, g = single(velocity=(1.0, 0.0, 0.0))
    params = DeformationParams(tau=0.5, damping_factor=0.1)
    x_new, v_new, _ = integrate(x, v, f, torch.ones(1, dtype=torch.float64), g, x.clone(),
                                torch.zeros(1, dtype=torch.bool), 0.1, params)
    torch.testing.assert_close(v_new, torch.tensor([[0.9, 0.0, 0.0]], dtype=torch.float64))
    torch.testing.assert_close(x_new, torch.tensor([[0.09, 0.0, 0.0]], dtype=torch.float64))


def test_gravity():
    x, v, f, g = single()
    params = DeformationParams(damping_factor=0.0, gravity=(0.0, -10.0, 0.0))
    _, v_new, _ = integrate(x, v, f, torch.ones(1, dtype=torch.float64), g, x.clone(),
                            torch.zeros(1, dtype=torch.bool), 0.1, params)
    torch.testing.assert_close(v_new, torch.tensor([[0.0, -1.0, 0.0]], dtype=torch.float64))


def test_fixed_particle_does_not_move():
    x = torch.tensor([[0.1, 0.2, 0.3], [1.0, 1.0, 1.0]], dtype=torch.float64)
    v = torch.ones(2, 3, dtype=torch.float64)
    f = torch.full((2, 3), 5.0, dtype=torch.float64)
    goals = torch.zeros(2, 3, dtype=torch.float64)
    fixed = torch.tensor([True, False])

    x_new, v_new, _ = integrate(x, v, f, torch.ones(2, dtype=torch.float64), goals, x.clone(), fixed, 0.016,
                                DeformationParams())
    assert torch.equal(x_new[0], x[0])
    assert torch.equal(v_new[0], torch.zeros(3, dtype=torch.float64))
    assert not torch.equal(x_new[1], x[1])


def test_non_finite_particles_are_reset_to_rest():
    x = torch.tensor([[0.0, 0.0, 0.0], [math.inf, 0.0, 0.0]], dtype=torch.float64)
    rest = torch.tensor([[0.0, 0.0, 0.0], [1.0, 2.0, 3.0]], dtype=torch.float64)
    v = torch.zeros(2, 3, dtype=torch.float64)
    v[0, 0] = math.nan

    x_new, v_new, reset = integrate(x, v, torch.zeros_like(x), torch.ones(2, dtype=torch.float64), x.clone(), rest,
                                    torch.zeros(2, dtype=torch.bool), 0.016, DeformationParams())
    assert reset.tolist() == [True, True]
    assert torch.equal(x_new, rest)
    assert torch.equal(v_new, torch.zeros(2, 3, dtype=torch.float64))
