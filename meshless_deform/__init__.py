"""
Meshless Deformation with PyTorch

Implementation of Müller et al. "Meshless Deformations Based on Shape Matching":
each step a best-fit rotation, linear or quadratic transform maps the rest
shape onto the current one, and a damped integrator pulls the particles toward
the resulting goal positions.
"""

import logging

from .body import (
    Body,
    StepResult,
    add_force,
    create_body,
    reset,
    set_fixed,
    set_params,
    step,
)

from .config import (
    DEFAULT_DT,
    GRAVITY,
    DeformationMode,
    DeformationParams,
    load_params,
    save_params,
)

from .guard import Condition

from .logging_config import setup_logging

from .rotation import (
    axis_angle_to_rotation_matrix,
    extract_rotation,
    gram_schmidt,
)

from .sampler import VertexSource, sample_vertices, write_positions

from .shape_matching import (
    GoalResult,
    ShapeMatchingConstraint,
    compute_goal_positions,
    optimal_rotation_translation,
    shape_matching_loss,
)

from .utils import (
    auto_covariance,
    compute_center_of_mass,
    cross_covariance,
    quadratic_features,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"

__all__ = [
    'Body',
    'StepResult',
    'create_body',
    'set_params',
    'set_fixed',
    'add_force',
    'step',
    'reset',
    'DEFAULT_DT',
    'GRAVITY',
    'DeformationMode',
    'DeformationParams',
    'load_params',
    'save_params',
    'Condition',
    'setup_logging',
    'extract_rotation',
    'gram_schmidt',
    'axis_angle_to_rotation_matrix',
    'VertexSource',
    'sample_vertices',
    'write_positions',
    'GoalResult',
    'ShapeMatchingConstraint',
    'compute_goal_positions',
    'optimal_rotation_translation',
    'shape_matching_loss',
    'compute_center_of_mass',
    'cross_covariance',
    'auto_covariance',
    'quadratic_features',
]
