"""
Adapters between host vertex buffers and the kernel's (N, 3) position tensors.

The kernel only needs "an indexable, stable-ordered buffer of points". Hosts
either pass such a buffer directly (numpy array, flat float buffer, sequence
of triples, tensor) or expose it through ``vertex_positions()``.
"""

from typing import Any, Optional, Protocol, Sequence, Union, runtime_checkable

import numpy as np
import torch


@runtime_checkable
class VertexSource(Protocol):
    """Anything that can hand out its vertex positions in a stable order."""

    def vertex_positions(self) -> Any:
        ...


PointsLike = Union[torch.Tensor, np.ndarray, Sequence[Sequence[float]], Sequence[float]]


def as_points(data: PointsLike, dtype: torch.dtype = torch.float64,
              device: Optional[torch.device] = None) -> torch.Tensor:
    """
    Convert a point buffer to a tensor of shape (N, 3).

    Flat buffers of length 3N are read as consecutive xyz triples.
    """
    if isinstance(data, torch.Tensor):
        points = data.detach().to(dtype=dtype, device=device)
    else:
        points = torch.as_tensor(np.asarray(data, dtype=np.float64), dtype=dtype, device=device)

    if points.dim() == 1:
        if points.numel() % 3 != 0:
            raise ValueError(f"Flat vertex buffer length {points.numel()} is not a multiple of 3")
        points = points.reshape(-1, 3)
    if points.dim() != 2 or points.shape[-1] != 3:
        raise ValueError(f"Expected points of shape (N, 3), got {tuple(points.shape)}")
    return points


def transform_points(points: torch.Tensor, matrix: Union[torch.Tensor, np.ndarray]) -> torch.Tensor:
    """
    Apply a 4x4 affine matrix (column-vector convention) to points of shape (N, 3).
    """
    matrix = torch.as_tensor(np.asarray(matrix, dtype=np.float64), dtype=points.dtype, device=points.device)
    if matrix.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 matrix, got shape {tuple(matrix.shape)}")
    return torch.matmul(points, matrix[:3, :3].transpose(-2, -1)) + matrix[:3, 3]


def sample_vertices(
    source: Union[VertexSource, PointsLike],
    world_matrix: Optional[Union[torch.Tensor, np.ndarray]] = None,
    dtype: torch.dtype = torch.float64,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Read world-space vertex positions from a host buffer.

    Args:
        source: A VertexSource or a point buffer
        world_matrix: Optional 4x4 local-to-world matrix
        dtype: Tensor dtype of the result
        device: Tensor device of the result

    Returns:
        Fresh tensor of shape (N, 3), index order identical to the source
    """
    data = source.vertex_positions() if isinstance(source, VertexSource) else source
    points = as_points(data, dtype=dtype, device=device).clone()
    if world_matrix is not None:
        points = transform_points(points, world_matrix)
    return points


def write_positions(
    buffer: np.ndarray,
    positions: torch.Tensor,
    world_matrix: Optional[Union[torch.Tensor, np.ndarray]] = None,
) -> np.ndarray:
    """
    Write world-space positions back into a host buffer in place.

    Args:
        buffer: numpy array of shape (N, 3) or flat (3N,)
        positions: Positions of shape (N, 3)
        world_matrix: Optional 4x4 local-to-world matrix; its inverse maps the
            positions back into the buffer's local space

    Returns:
        The same buffer
    """
    if world_matrix is not None:
        world = torch.as_tensor(np.asarray(world_matrix, dtype=np.float64), dtype=positions.dtype)
        positions = transform_points(positions.detach().cpu(), torch.linalg.inv(world))

    values = positions.detach().cpu().numpy()
    if buffer.size != values.size:
        raise ValueError(f"Buffer holds {buffer.size} values, positions have {values.size}")
    buffer[...] = values.reshape(buffer.shape)
    return buffer
