# Copyright (c) 2025.
# This file is part of posegraph-jit, released under the MIT License.
"""
Core typed data structures for posegraph-jit.

This module defines the value types exchanged between the trajectory and
landmark stores and the residual terms, plus the lightweight containers used
by the factor graph.

Classes
-------
Rigid3
    Rotation (unit quaternion, ``(w, x, y, z)``) plus translation.

NodeSpec2D
    A trajectory node of a 2D trajectory: timestamp, planar global pose
    ``(x, y, theta)`` and the gravity alignment of the node's tracking frame.

NodeSpec3D
    A trajectory node of a 3D trajectory: timestamp and a full ``Rigid3``.

LandmarkObservation
    One observation of a landmark: when it was seen, where the landmark was
    relative to the tracking frame, how much to trust it and from which frame
    the measurement originated.

Variable, Factor
    Nodes and constraints of the factor graph.

Notes
-----
The observation and node types are frozen; residual terms copy what they
need at construction and never look at them again. ``Variable`` and
``Factor`` stay mutable bookkeeping objects, they are not used inside
JAX-compiled functions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NewType, Optional, Union

import jax
import jax.numpy as jnp
import numpy as np

from .math3d import (
    quat_conjugate,
    quat_from_yaw,
    quat_identity,
    quat_multiply,
    quat_normalize,
    quat_rotate,
)

NodeId = NewType("NodeId", int)
FactorId = NewType("FactorId", int)


def _as_float_array(x: Any) -> jnp.ndarray:
    # Integer lists like [0, 0, 0] must not produce integer arrays.
    if isinstance(x, jax.Array):
        return x * 1.0
    return jnp.asarray(np.asarray(x, dtype=float))


@dataclass(frozen=True)
class Rigid3:
    """Rigid transform ``x -> rotation · x + translation``."""

    rotation: jnp.ndarray      # (4,) w, x, y, z
    translation: jnp.ndarray   # (3,)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rotation", _as_float_array(self.rotation))
        object.__setattr__(self, "translation", _as_float_array(self.translation))

    @staticmethod
    def identity() -> "Rigid3":
        return Rigid3(rotation=quat_identity(), translation=jnp.zeros(3))

    @staticmethod
    def from_pose_2d(pose_2d) -> "Rigid3":
        """Embed a planar pose ``(x, y, theta)`` in 3D (z = 0, yaw about +z)."""
        pose_2d = _as_float_array(pose_2d)
        return Rigid3(
            rotation=quat_from_yaw(pose_2d[2]),
            translation=jnp.array([pose_2d[0], pose_2d[1], 0.0]),
        )

    def inverse(self) -> "Rigid3":
        rotation = quat_conjugate(self.rotation)
        return Rigid3(rotation=rotation, translation=-quat_rotate(rotation, self.translation))

    def __mul__(self, other: "Rigid3") -> "Rigid3":
        return Rigid3(
            rotation=quat_multiply(self.rotation, other.rotation),
            translation=quat_rotate(self.rotation, other.translation) + self.translation,
        )


@dataclass(frozen=True)
class NodeSpec2D:
    """Trajectory node pose, as read from the trajectory store."""

    time: float
    global_pose_2d: jnp.ndarray                 # (3,) x, y, theta
    gravity_alignment: jnp.ndarray = field(default_factory=quat_identity)

    def __post_init__(self) -> None:
        object.__setattr__(self, "global_pose_2d", _as_float_array(self.global_pose_2d))
        object.__setattr__(self, "gravity_alignment", _as_float_array(self.gravity_alignment))

    @property
    def rotation(self) -> jnp.ndarray:
        """Heading composed with the gravity alignment."""
        return quat_normalize(
            quat_multiply(quat_from_yaw(self.global_pose_2d[2]), self.gravity_alignment)
        )

    @property
    def translation(self) -> jnp.ndarray:
        return jnp.array([self.global_pose_2d[0], self.global_pose_2d[1], 0.0])


@dataclass(frozen=True)
class NodeSpec3D:
    """Trajectory node of a 3D trajectory."""

    time: float
    global_pose: Rigid3


def as_inverse_covariance_matrix(values: Optional[Any]) -> jnp.ndarray:
    """
    Normalize an inverse covariance to a 6×6 matrix.

    Accepts ``None`` (identity), 36 values / a 6×6 matrix, or 9 values / a
    3×3 matrix weighting the translation block only; in that case the
    rotation block is the identity and the cross blocks are zero.

    JAX arrays (tracers included) are reshaped without leaving JAX, so the
    residual stays differentiable with respect to the covariance.
    """
    if values is None:
        return jnp.eye(6)

    arr = _as_float_array(values)
    if arr.size == 36:
        return arr.reshape(6, 6)
    if arr.size == 9:
        return jnp.eye(6, dtype=arr.dtype).at[:3, :3].set(arr.reshape(3, 3))
    raise ValueError(
        f"inverse covariance must have 36 (6x6) or 9 (3x3) entries, got {arr.size}"
    )


@dataclass(frozen=True)
class LandmarkObservation:
    """
    Observation of a landmark from one trajectory at one instant.

    ``landmark_to_tracking_transform`` is the pose of the landmark expressed
    in the tracking frame. When ``observed_from_tracking`` is False the
    measurement was taken with the landmark as the reference frame and the
    residual is composed in the opposite order.
    """

    time: float
    landmark_to_tracking_transform: Rigid3
    translation_weight: Union[float, jnp.ndarray] = 1.0
    rotation_weight: Union[float, jnp.ndarray] = 1.0
    inverse_covariance: Optional[Any] = None
    observed_from_tracking: bool = True
    trajectory_id: int = 0


@dataclass
class Variable:
    """Generic optimization variable node in the factor graph."""
    id: NodeId
    type: str          # e.g. "pose2d", "landmark_rotation", "landmark_translation"
    value: Any         # 1-D JAX array


@dataclass
class Factor:
    """Residual block bound to an ordered tuple of variables."""
    id: FactorId
    var_ids: tuple[NodeId, ...]
    cost_function: Any  # AutoDiffCostFunction
