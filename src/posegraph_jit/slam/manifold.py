# Copyright (c) 2025.
# This file is part of posegraph-jit, released under the MIT License.
"""
Manifold metadata for the parameter blocks of landmark problems.

An optimizer working on a landmark problem has to know that some blocks are
not Euclidean: landmark (and 3D node) rotations are unit quaternions and
must be updated on the sphere, while planar node poses and translations are
updated additively. This module centralizes that knowledge:

    • `TYPE_TO_MANIFOLD`           (variable type → {"quaternion", "euclidean"})
    • `get_manifold_for_var_type`
    • `build_manifold_metadata`    (NodeId → slice, manifold type)
    • `quaternion_plus`            (q ⊞ δ for a 3-vector tangent δ)
    • `local_size`                 (tangent dimension of a block)

The quaternion update is the left-multiplicative one,

    q ⊞ δ = normalize( Exp(δ) ⊗ q )

so a rotation block of 4 parameters has a 3-dimensional tangent space.
"""

from __future__ import annotations

from typing import Dict, Tuple

import jax.numpy as jnp

from posegraph_jit.core.factor_graph import FactorGraph
from posegraph_jit.core.math3d import quat_from_angle_axis, quat_multiply, quat_normalize
from posegraph_jit.core.types import NodeId

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose2d": "euclidean",
    "landmark_rotation": "quaternion",
    "landmark_translation": "euclidean",
    "node_rotation": "quaternion",
    "node_translation": "euclidean",
}

_LOCAL_SIZE: Dict[str, int] = {
    "quaternion": 3,
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def local_size(manifold: str, ambient_size: int) -> int:
    """Tangent-space dimension of a block with `ambient_size` parameters."""
    return _LOCAL_SIZE.get(manifold, ambient_size)


def quaternion_plus(q: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply a rotation-vector increment on the left and renormalize."""
    return quat_normalize(quat_multiply(quat_from_angle_axis(delta), q))


def build_manifold_metadata(
    fg: FactorGraph,
) -> Tuple[Dict[NodeId, slice], Dict[NodeId, str]]:
    """
    Build metadata for manifold-aware solvers:

      - block_slices: NodeId -> slice in the flat state vector
      - manifold_types: NodeId -> 'quaternion' or 'euclidean'
    """
    block_slices = fg.state_index()
    manifold_types = {
        nid: get_manifold_for_var_type(fg.variables[nid].type) for nid in block_slices
    }
    return block_slices, manifold_types
