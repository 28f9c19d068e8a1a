# Copyright (c) 2025.
# This file is part of posegraph-jit, released under the MIT License.
"""
Landmark residuals for pose-graph optimization.

A landmark observation says where a landmark was, relative to the tracking
frame, at some instant between two trajectory nodes. The residuals here
measure how far the current estimates of the trajectory and of the
landmark's own pose are from agreeing with that observation.

`LandmarkCostFunction2D`
------------------------
For 2D trajectories whose nodes are planar poses ``(x, y, theta)`` embedded
in 3D with a per-node gravity alignment. One evaluation:

    1. interpolates the two node poses at the observation time,
    2. compares the observed landmark-to-tracking transform with the
       relative pose between the interpolated pose and the landmark
       estimate (the order depends on which frame the observation was
       taken from),
    3. rotates the translation error into the gravity-referenced (ENU)
       frame using the interpolated orientation,
    4. applies the translation/rotation weights and the 6×6 inverse
       covariance.

Parameter blocks: previous node pose (3), next node pose (3), landmark
rotation (4, w x y z), landmark translation (3). Residuals: 6.

`LandmarkCostFunction3D`
------------------------
The same comparison for 3D trajectories, without gravity alignment and
without the ENU re-expression. Parameter blocks: previous node rotation (4)
and translation (3), next node rotation (4) and translation (3), landmark
rotation (4) and translation (3).

Both classes are frozen snapshots built once per observation and evaluated
many times. Evaluation is pure JAX and works with floats, arrays and tracers
(`jax.jit`, `jax.jacfwd`, `jax.jacrev`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import jax
import jax.numpy as jnp
import numpy as np

from posegraph_jit.core.types import (
    LandmarkObservation,
    NodeSpec2D,
    NodeSpec3D,
    Rigid3,
    as_inverse_covariance_matrix,
)
from posegraph_jit.optimization.autodiff import AutoDiffConfig, AutoDiffCostFunction
from posegraph_jit.slam.cost_helpers import (
    compute_unscaled_error,
    interpolate_nodes_2d,
    interpolate_nodes_3d,
    rotate_translation_error,
    scale_error_with_covariance,
)

logger = logging.getLogger(__name__)

# (relative_pose, interpolated_rotation, interpolated_translation,
#  landmark_rotation, landmark_translation) -> unscaled 6D error
ComposeFn = Callable[
    [Rigid3, jnp.ndarray, jnp.ndarray, jnp.ndarray, jnp.ndarray], jnp.ndarray
]


Weight = Union[float, jnp.ndarray]


def _as_weight(value) -> Weight:
    # JAX arrays and tracers pass through so weights can be differentiated.
    if isinstance(value, jax.Array):
        return value
    return float(value)


def _error_observed_from_tracking(
    relative_pose, tracking_rotation, tracking_translation,
    landmark_rotation, landmark_translation,
):
    return compute_unscaled_error(
        relative_pose,
        tracking_rotation, tracking_translation,
        landmark_rotation, landmark_translation,
    )


def _error_observed_from_landmark(
    relative_pose, tracking_rotation, tracking_translation,
    landmark_rotation, landmark_translation,
):
    return compute_unscaled_error(
        relative_pose,
        landmark_rotation, landmark_translation,
        tracking_rotation, tracking_translation,
    )


def select_composition(observed_from_tracking: bool) -> ComposeFn:
    """Pick the composition order for an observation once, at construction."""
    if observed_from_tracking:
        return _error_observed_from_tracking
    return _error_observed_from_landmark


def interpolation_parameter(observation_time: float, prev_time: float, next_time: float) -> float:
    """
    Fraction of the way from the previous node to the next one.

    Degenerate or inverted time spans are the caller's responsibility: a zero
    span gives inf/nan instead of raising, and values outside [0, 1] only log
    a warning.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        fraction = float(
            (np.float64(observation_time) - np.float64(prev_time))
            / (np.float64(next_time) - np.float64(prev_time))
        )
    if not np.isfinite(fraction) or not 0.0 <= fraction <= 1.0:
        logger.warning(
            "Interpolation parameter %s outside [0, 1] "
            "(observation %s, previous node %s, next node %s)",
            fraction, observation_time, prev_time, next_time,
        )
    return fraction


@dataclass(frozen=True, eq=False)
class LandmarkCostFunction2D:
    """
    Weighted error between a landmark observation and the pose implied by
    two interpolated 2D trajectory nodes and the landmark pose estimate.

    Build with `from_observation`; register with
    `create_auto_diff_cost_function`.
    """
    landmark_to_tracking_transform: Rigid3
    prev_node_gravity_alignment: jnp.ndarray
    next_node_gravity_alignment: jnp.ndarray
    translation_weight: Weight
    rotation_weight: Weight
    interpolation_parameter: float
    observed_from_tracking: bool
    inverse_covariance: jnp.ndarray          # (6, 6)
    compose: ComposeFn = field(init=False, repr=False)

    NUM_RESIDUALS = 6
    PARAMETER_BLOCK_SIZES = (3, 3, 4, 3)

    def __post_init__(self) -> None:
        object.__setattr__(self, "compose", select_composition(self.observed_from_tracking))

    @classmethod
    def from_observation(
        cls,
        observation: LandmarkObservation,
        prev_node: NodeSpec2D,
        next_node: NodeSpec2D,
    ) -> "LandmarkCostFunction2D":
        cost = cls(
            landmark_to_tracking_transform=observation.landmark_to_tracking_transform,
            prev_node_gravity_alignment=jnp.asarray(prev_node.gravity_alignment),
            next_node_gravity_alignment=jnp.asarray(next_node.gravity_alignment),
            translation_weight=_as_weight(observation.translation_weight),
            rotation_weight=_as_weight(observation.rotation_weight),
            interpolation_parameter=interpolation_parameter(
                observation.time, prev_node.time, next_node.time
            ),
            observed_from_tracking=bool(observation.observed_from_tracking),
            inverse_covariance=as_inverse_covariance_matrix(observation.inverse_covariance),
        )
        logger.debug(
            "Built 2D landmark cost: trajectory %d, t=%s, fraction=%.6f, from_tracking=%s",
            observation.trajectory_id, observation.time,
            cost.interpolation_parameter, cost.observed_from_tracking,
        )
        return cost

    @classmethod
    def create_auto_diff_cost_function(
        cls,
        observation: LandmarkObservation,
        prev_node: NodeSpec2D,
        next_node: NodeSpec2D,
        cfg: Optional[AutoDiffConfig] = None,
    ) -> AutoDiffCostFunction:
        return AutoDiffCostFunction(
            functor=cls.from_observation(observation, prev_node, next_node),
            num_residuals=cls.NUM_RESIDUALS,
            parameter_block_sizes=cls.PARAMETER_BLOCK_SIZES,
            cfg=cfg or AutoDiffConfig(),
        )

    def interpolate(self, prev_node_pose, next_node_pose):
        """Interpolated (rotation, translation) at the observation time."""
        return interpolate_nodes_2d(
            prev_node_pose, self.prev_node_gravity_alignment,
            next_node_pose, self.next_node_gravity_alignment,
            self.interpolation_parameter,
        )

    def unscaled_error(
        self, prev_node_pose, next_node_pose, landmark_rotation, landmark_translation
    ) -> jnp.ndarray:
        """Error before re-expression and weighting, mostly for diagnostics."""
        rotation, translation = self.interpolate(prev_node_pose, next_node_pose)
        return self.compose(
            self.landmark_to_tracking_transform, rotation, translation,
            jnp.asarray(landmark_rotation), jnp.asarray(landmark_translation),
        )

    def __call__(
        self, prev_node_pose, next_node_pose, landmark_rotation, landmark_translation
    ) -> jnp.ndarray:
        rotation, translation = self.interpolate(prev_node_pose, next_node_pose)
        error = self.compose(
            self.landmark_to_tracking_transform, rotation, translation,
            jnp.asarray(landmark_rotation), jnp.asarray(landmark_translation),
        )

        # Translation error in the ENU frame, where the covariance is defined.
        error = rotate_translation_error(error, rotation)

        return scale_error_with_covariance(
            error, self.translation_weight, self.rotation_weight, self.inverse_covariance
        )


@dataclass(frozen=True, eq=False)
class LandmarkCostFunction3D:
    """Landmark residual for 3D trajectories (no gravity alignment, no ENU)."""
    landmark_to_tracking_transform: Rigid3
    translation_weight: Weight
    rotation_weight: Weight
    interpolation_parameter: float
    observed_from_tracking: bool
    inverse_covariance: jnp.ndarray
    compose: ComposeFn = field(init=False, repr=False)

    NUM_RESIDUALS = 6
    PARAMETER_BLOCK_SIZES = (4, 3, 4, 3, 4, 3)

    def __post_init__(self) -> None:
        object.__setattr__(self, "compose", select_composition(self.observed_from_tracking))

    @classmethod
    def from_observation(
        cls,
        observation: LandmarkObservation,
        prev_node: NodeSpec3D,
        next_node: NodeSpec3D,
    ) -> "LandmarkCostFunction3D":
        cost = cls(
            landmark_to_tracking_transform=observation.landmark_to_tracking_transform,
            translation_weight=_as_weight(observation.translation_weight),
            rotation_weight=_as_weight(observation.rotation_weight),
            interpolation_parameter=interpolation_parameter(
                observation.time, prev_node.time, next_node.time
            ),
            observed_from_tracking=bool(observation.observed_from_tracking),
            inverse_covariance=as_inverse_covariance_matrix(observation.inverse_covariance),
        )
        logger.debug(
            "Built 3D landmark cost: trajectory %d, t=%s, fraction=%.6f, from_tracking=%s",
            observation.trajectory_id, observation.time,
            cost.interpolation_parameter, cost.observed_from_tracking,
        )
        return cost

    @classmethod
    def create_auto_diff_cost_function(
        cls,
        observation: LandmarkObservation,
        prev_node: NodeSpec3D,
        next_node: NodeSpec3D,
        cfg: Optional[AutoDiffConfig] = None,
    ) -> AutoDiffCostFunction:
        return AutoDiffCostFunction(
            functor=cls.from_observation(observation, prev_node, next_node),
            num_residuals=cls.NUM_RESIDUALS,
            parameter_block_sizes=cls.PARAMETER_BLOCK_SIZES,
            cfg=cfg or AutoDiffConfig(),
        )

    def __call__(
        self,
        prev_node_rotation, prev_node_translation,
        next_node_rotation, next_node_translation,
        landmark_rotation, landmark_translation,
    ) -> jnp.ndarray:
        rotation, translation = interpolate_nodes_3d(
            prev_node_rotation, prev_node_translation,
            next_node_rotation, next_node_translation,
            self.interpolation_parameter,
        )
        error = self.compose(
            self.landmark_to_tracking_transform, rotation, translation,
            jnp.asarray(landmark_rotation), jnp.asarray(landmark_translation),
        )
        return scale_error_with_covariance(
            error, self.translation_weight, self.rotation_weight, self.inverse_covariance
        )
