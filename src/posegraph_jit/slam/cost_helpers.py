# Copyright (c) 2025.
# This file is part of posegraph-jit, released under the MIT License.
"""
Building blocks shared by the landmark residuals.

Each landmark residual evaluation runs three steps, implemented here as pure
JAX functions:

1. Pose interpolation
---------------------
    • `interpolate_nodes_2d`:
        Estimates the robot pose at the observation time from the two
        bracketing 2D nodes. Planar position is interpolated linearly; each
        heading is embedded as a yaw quaternion, composed with the node's
        gravity alignment and the two results are slerped.

    • `interpolate_nodes_3d`:
        Same for 3D nodes given as quaternion + translation.

2. Composition and residual extraction
--------------------------------------
    • `compute_unscaled_error`:
        Compares a measured relative pose against the relative pose between
        a start and an end pose:

            h = start⁻¹ ∘ end
            e = [ t_meas − t_h ,  log(R_h⁻¹ R_meas) ]

3. Re-expression and weighting
------------------------------
    • `rotate_translation_error`:
        Rotates the translation part of the error by the interpolated
        orientation, expressing it in the gravity-referenced (ENU) frame.

    • `scale_error`, `scale_error_with_covariance`:
        Per-block scalar weights followed by the full 6×6 inverse covariance.

All functions accept plain floats/arrays as well as JAX tracers, so they can
be used under `jax.jit`, `jax.jacfwd` and `jax.jacrev` unchanged.
"""

from __future__ import annotations

from typing import Tuple

import jax.numpy as jnp

from posegraph_jit.core.math3d import (
    quat_conjugate,
    quat_from_yaw,
    quat_multiply,
    quat_normalize,
    quat_rotate,
    quat_slerp,
    quat_to_angle_axis,
)
from posegraph_jit.core.types import Rigid3

# Error length -> number of leading translation components.
_TRANSLATION_SIZE = {3: 2, 6: 3}


def interpolate_nodes_2d(
    prev_node_pose: jnp.ndarray,
    prev_node_gravity_alignment: jnp.ndarray,
    next_node_pose: jnp.ndarray,
    next_node_gravity_alignment: jnp.ndarray,
    interpolation_parameter: float,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Interpolate two planar node poses embedded in 3D.

    prev_node_pose, next_node_pose: [x, y, theta]
    *_gravity_alignment: (4,) quaternions, constants of the residual term
    interpolation_parameter: plain float, 0 at the previous node, 1 at the next

    Returns (rotation (4,), translation (3,)); translation z is always 0.
    """
    prev_node_pose = jnp.asarray(prev_node_pose)
    next_node_pose = jnp.asarray(next_node_pose)

    # Equivalent to the rotation of Embed3D(pose) * Rigid3::Rotation(gravity_alignment).
    prev_rotation = quat_normalize(
        quat_multiply(quat_from_yaw(prev_node_pose[2]), prev_node_gravity_alignment)
    )
    next_rotation = quat_normalize(
        quat_multiply(quat_from_yaw(next_node_pose[2]), next_node_gravity_alignment)
    )

    xy = prev_node_pose[:2] + interpolation_parameter * (
        next_node_pose[:2] - prev_node_pose[:2]
    )
    translation = jnp.concatenate([xy, jnp.zeros_like(xy[:1])])

    return quat_slerp(prev_rotation, next_rotation, interpolation_parameter), translation


def interpolate_nodes_3d(
    prev_node_rotation: jnp.ndarray,
    prev_node_translation: jnp.ndarray,
    next_node_rotation: jnp.ndarray,
    next_node_translation: jnp.ndarray,
    interpolation_parameter: float,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Slerp the rotations and lerp the translations of two 3D nodes."""
    prev_node_translation = jnp.asarray(prev_node_translation)
    next_node_translation = jnp.asarray(next_node_translation)
    translation = prev_node_translation + interpolation_parameter * (
        next_node_translation - prev_node_translation
    )
    rotation = quat_slerp(prev_node_rotation, next_node_rotation, interpolation_parameter)
    return rotation, translation


def compute_unscaled_error(
    relative_pose: Rigid3,
    start_rotation: jnp.ndarray,
    start_translation: jnp.ndarray,
    end_rotation: jnp.ndarray,
    end_translation: jnp.ndarray,
) -> jnp.ndarray:
    """
    6D error between a measured relative pose and start⁻¹ ∘ end.

    Returns [tx, ty, tz, rx, ry, rz] where the rotation part is the angle-axis
    vector of (end⁻¹ start) · relative_pose.rotation.

    The quaternion conjugate is used as the inverse, so rotations are expected
    to be (close to) unit length.
    """
    start_translation = jnp.asarray(start_translation)
    end_translation = jnp.asarray(end_translation)

    h_translation = quat_rotate(
        quat_conjugate(start_rotation), end_translation - start_translation
    )
    h_rotation_inverse = quat_multiply(quat_conjugate(end_rotation), start_rotation)
    angle_axis_difference = quat_to_angle_axis(
        quat_multiply(h_rotation_inverse, relative_pose.rotation)
    )

    return jnp.concatenate(
        [relative_pose.translation - h_translation, angle_axis_difference]
    )


def rotate_translation_error(error: jnp.ndarray, rotation: jnp.ndarray) -> jnp.ndarray:
    """Rotate error[:3] by `rotation`; error[3:] is returned untouched."""
    error = jnp.asarray(error)
    return jnp.concatenate([quat_rotate(rotation, error[:3]), error[3:]])


def scale_error(
    error: jnp.ndarray, translation_weight: float, rotation_weight: float
) -> jnp.ndarray:
    """
    Scalar weighting of a [translation, rotation] error.

    Works for 3D errors [x, y, theta] (2 + 1 split) and 6D errors (3 + 3);
    any other length raises ValueError.
    """
    error = jnp.asarray(error)
    n_translation = _TRANSLATION_SIZE.get(error.shape[0]) if error.ndim == 1 else None
    if n_translation is None:
        raise ValueError(f"error must be a 3- or 6-vector, got shape {error.shape}")
    weights = jnp.concatenate(
        [
            jnp.full((n_translation,), translation_weight),
            jnp.full((error.shape[0] - n_translation,), rotation_weight),
        ]
    )
    return weights * error


def scale_error_with_covariance(
    error: jnp.ndarray,
    translation_weight: float,
    rotation_weight: float,
    inverse_covariance: jnp.ndarray,
) -> jnp.ndarray:
    """
    Apply the scalar weights, then the 6×6 inverse covariance.

        r = Σ⁻¹ · diag(w_t, w_t, w_t, w_r, w_r, w_r) · e

    This is a full matrix-vector product; off-diagonal terms of Σ⁻¹ mix
    translation and rotation components.
    """
    return jnp.asarray(inverse_covariance) @ scale_error(
        error, translation_weight, rotation_weight
    )
