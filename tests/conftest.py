"""Shared fixtures."""

import pytest
import torch


@pytest.fixture
def unit_cube() -> torch.Tensor:
    """8 corners of an axis-aligned unit cube centered at the origin."""
    return 0.5 * torch.tensor([
        [-1, -1, -1], [1, -1, -1], [1, 1, -1], [-1, 1, -1],
        [-1, -1,  1], [1, -1,  1], [1, 1,  1], [-1, 1,  1],
    ], dtype=torch.float64)


@pytest.fixture
def point_cloud() -> torch.Tensor:
    generator = torch.Generator().manual_seed(42)
    return torch.randn(20, 3, generator=generator, dtype=torch.float64)
