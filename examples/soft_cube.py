"""
Headless host loop: a unit cube is pinned at one corner, pushed around and
left to settle back toward its rest shape under each deformation mode.
"""

import logging
import os
import sys

import numpy as np
import torch

# Ensure local package import when running from repo root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from meshless_deform import (
    DEFAULT_DT,
    DeformationMode,
    DeformationParams,
    axis_angle_to_rotation_matrix,
    create_body,
    sample_vertices,
    setup_logging,
    write_positions,
)


def cube_vertices(half_extent: float = 0.5) -> np.ndarray:
    """Flat xyz vertex buffer of an axis-aligned cube, like a render attribute."""
    corners = [
        [-1, -1, -1], [1, -1, -1], [1, 1, -1], [-1, 1, -1],  # Bottom face
        [-1, -1,  1], [1, -1,  1], [1, 1,  1], [-1, 1,  1],  # Top face
    ]
    return (half_extent * np.asarray(corners, dtype=np.float32)).reshape(-1)


def simulate(mode: DeformationMode, n_steps: int = 120) -> None:
    print(f"\n--- {mode.value} ---")
    render_buffer = cube_vertices()
    world = np.eye(4)
    world[:3, :3] = axis_angle_to_rotation_matrix([0.0, 1.0, 0.0], 0.3).numpy()
    world[:3, 3] = (0.0, 1.0, 0.0)

    params = DeformationParams(mode=mode, beta=0.8, tau=0.8, perturbation=0.1, damping_factor=0.1)
    body = create_body(sample_vertices(render_buffer, world), params=params)
    body.set_fixed(0)

    generator = torch.Generator().manual_seed(7)
    for step in range(n_steps):
        if step < 10:
            body.apply_random_force([4.0, 2.0, 0.0], generator=generator)
        if step == 30:
            body.add_pick_force(body.closest_particle([0.6, 1.6, 0.6]), [1.5, 2.0, 0.5], strength=50.0)

        result = body.step(sample_vertices(render_buffer, world), DEFAULT_DT)
        write_positions(render_buffer, result.positions, world)

        if step % 20 == 0:
            conditions = ", ".join(c.value for c in result.conditions) or "none"
            print(f"Step {step}: residual = {body.goal_residual().item():.6f}, "
                  f"mode = {result.mode.value if result.mode else 'skipped'}, conditions = {conditions}")

    drift = np.abs(render_buffer.reshape(-1, 3)[0] - cube_vertices().reshape(-1, 3)[0]).max()
    print(f"Pinned corner drift: {drift:.3e}")


if __name__ == "__main__":
    setup_logging(logging.WARNING)
    print("=== Soft cube with shape matching ===")
    for mode in DeformationMode:
        simulate(mode)
    print("\n=== Done ===")
