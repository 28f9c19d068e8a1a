from __future__ import annotations

import logging

import jax.numpy as jnp
import pytest

from posegraph_jit.core.math3d import quat_conjugate, quat_from_angle_axis, quat_rotate
from posegraph_jit.core.types import LandmarkObservation, NodeSpec3D, Rigid3
from posegraph_jit.slam.cost_helpers import interpolate_nodes_3d
from posegraph_jit.slam.landmark_cost import LandmarkCostFunction3D


PREV_NODE = NodeSpec3D(
    time=10.0,
    global_pose=Rigid3(quat_from_angle_axis(jnp.array([0.1, 0.0, 0.2])), jnp.array([0.0, 0.0, 1.0])),
)
NEXT_NODE = NodeSpec3D(
    time=12.0,
    global_pose=Rigid3(quat_from_angle_axis(jnp.array([0.0, 0.2, 0.6])), jnp.array([1.0, 1.0, 1.5])),
)
LANDMARK = Rigid3(quat_from_angle_axis(jnp.array([0.5, 0.1, -0.3])), jnp.array([4.0, -1.0, 2.0]))


def _blocks(landmark: Rigid3 = LANDMARK):
    return (
        PREV_NODE.global_pose.rotation, PREV_NODE.global_pose.translation,
        NEXT_NODE.global_pose.rotation, NEXT_NODE.global_pose.translation,
        landmark.rotation, landmark.translation,
    )


@pytest.mark.parametrize("observed_from_tracking", [True, False])
def test_noise_free_3d_observation_gives_zero_residual(observed_from_tracking):
    rotation, translation = interpolate_nodes_3d(
        PREV_NODE.global_pose.rotation, PREV_NODE.global_pose.translation,
        NEXT_NODE.global_pose.rotation, NEXT_NODE.global_pose.translation,
        0.25,
    )
    tracking = Rigid3(rotation, translation)
    relative = (
        tracking.inverse() * LANDMARK
        if observed_from_tracking
        else LANDMARK.inverse() * tracking
    )
    observation = LandmarkObservation(
        time=10.5,
        landmark_to_tracking_transform=relative,
        translation_weight=2.0,
        rotation_weight=7.0,
        observed_from_tracking=observed_from_tracking,
    )
    cost_function = LandmarkCostFunction3D.create_auto_diff_cost_function(
        observation, PREV_NODE, NEXT_NODE
    )
    assert cost_function.parameter_block_sizes == (4, 3, 4, 3, 4, 3)
    assert cost_function.functor.interpolation_parameter == pytest.approx(0.25)

    residual, jacobians = cost_function.evaluate_with_jacobians(*_blocks())
    assert jnp.allclose(residual, jnp.zeros(6), atol=1e-10)
    assert [J.shape for J in jacobians] == [(6, 4), (6, 3), (6, 4), (6, 3), (6, 4), (6, 3)]
    for J in jacobians:
        assert jnp.all(jnp.isfinite(J))


def test_3d_residual_stays_in_the_tracking_frame():
    observation = LandmarkObservation(time=11.0, landmark_to_tracking_transform=Rigid3.identity())
    cost = LandmarkCostFunction3D.from_observation(observation, PREV_NODE, NEXT_NODE)

    rotation, translation = interpolate_nodes_3d(*_blocks()[:4], 0.5)
    offset = jnp.array([1.0, 0.0, 0.0])
    landmark = Rigid3(rotation, translation + offset)

    r = cost(*_blocks(landmark))
    # No ENU re-expression: the offset stays in the interpolated tracking frame.
    expected = -quat_rotate(quat_conjugate(rotation), offset)
    assert jnp.allclose(r[:3], expected, atol=1e-10)
    assert jnp.allclose(r[3:], jnp.zeros(3), atol=1e-10)


def test_construction_is_logged(caplog):
    observation = LandmarkObservation(
        time=11.0, landmark_to_tracking_transform=Rigid3.identity(), trajectory_id=3
    )
    with caplog.at_level(logging.DEBUG, logger="posegraph_jit.slam.landmark_cost"):
        LandmarkCostFunction3D.from_observation(observation, PREV_NODE, NEXT_NODE)
    assert "Built 3D landmark cost: trajectory 3" in caplog.text
