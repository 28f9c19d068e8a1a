from __future__ import annotations

import math

import pytest
import jax.numpy as jnp

from posegraph_jit.core.factor_graph import FactorGraph
from posegraph_jit.core.math3d import quat_from_yaw
from posegraph_jit.core.types import LandmarkObservation, NodeId, NodeSpec2D, Rigid3, Variable
from posegraph_jit.slam.landmark_cost import LandmarkCostFunction2D


PREV_NODE = NodeSpec2D(time=0.0, global_pose_2d=jnp.array([0.0, 0.0, 0.0]))
NEXT_NODE = NodeSpec2D(time=1.0, global_pose_2d=jnp.array([2.0, 0.0, 0.0]))
LANDMARK = Rigid3(quat_from_yaw(math.pi / 2), jnp.array([1.0, 1.0, 0.0]))


def _landmark_cost(time: float = 0.5):
    # Both nodes face +x, so the interpolated pose is (2 * time, 0) with identity rotation.
    tracking = Rigid3.from_pose_2d(jnp.array([2.0 * time, 0.0, 0.0]))
    observation = LandmarkObservation(
        time=time,
        landmark_to_tracking_transform=tracking.inverse() * LANDMARK,
    )
    return LandmarkCostFunction2D.create_auto_diff_cost_function(observation, PREV_NODE, NEXT_NODE)


def _build_graph() -> FactorGraph:
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="pose2d", value=PREV_NODE.global_pose_2d))
    fg.add_variable(Variable(id=NodeId(1), type="pose2d", value=NEXT_NODE.global_pose_2d))
    fg.add_variable(Variable(id=NodeId(2), type="landmark_rotation", value=LANDMARK.rotation))
    fg.add_variable(Variable(id=NodeId(3), type="landmark_translation", value=LANDMARK.translation))
    return fg


def test_landmark_residual_block_is_zero_at_ground_truth():
    fg = _build_graph()
    fid = fg.add_residual_block(_landmark_cost(), (NodeId(0), NodeId(1), NodeId(2), NodeId(3)))
    assert fid == 0

    x0, index = fg.pack_state()
    assert x0.shape == (13,)

    residual = fg.build_residual_function()
    objective = fg.build_objective()
    jacobian = fg.build_jacobian_function()

    assert jnp.allclose(residual(x0), jnp.zeros(6), atol=1e-10)
    assert float(objective(x0)) == pytest.approx(0.0, abs=1e-18)

    J = jacobian(x0)
    assert J.shape == (6, 13)
    assert jnp.all(jnp.isfinite(J))

    values = fg.unpack_state(x0, index)
    assert jnp.allclose(values[NodeId(3)], LANDMARK.translation)


def test_moving_the_landmark_increases_the_objective():
    fg = _build_graph()
    fg.add_residual_block(_landmark_cost(), (NodeId(0), NodeId(1), NodeId(2), NodeId(3)))

    x0, index = fg.pack_state()
    block = index[NodeId(3)]
    x1 = x0.at[block.start].add(0.2)

    objective = fg.build_objective()
    assert float(objective(x1)) == pytest.approx(0.04, rel=1e-9)


def test_residual_blocks_are_stacked():
    fg = _build_graph()
    ids = (NodeId(0), NodeId(1), NodeId(2), NodeId(3))
    fg.add_residual_block(_landmark_cost(0.25), ids)
    fg.add_residual_block(_landmark_cost(0.75), ids)

    x0, _ = fg.pack_state()
    r = fg.build_residual_function()(x0)
    assert r.shape == (12,)
    assert jnp.allclose(r, jnp.zeros(12), atol=1e-10)
    assert fg.build_jacobian_function()(x0).shape == (12, 13)


def test_residual_block_checks_variable_dimensions():
    fg = _build_graph()
    # Rotation and translation swapped.
    with pytest.raises(ValueError):
        fg.add_residual_block(_landmark_cost(), (NodeId(0), NodeId(1), NodeId(3), NodeId(2)))

    with pytest.raises(ValueError):
        fg.add_residual_block(_landmark_cost(), (NodeId(0), NodeId(1), NodeId(2)))

    with pytest.raises(ValueError):
        fg.add_residual_block(_landmark_cost(), (NodeId(0), NodeId(1), NodeId(2), NodeId(7)))

    assert not fg.factors


def test_residual_block_variables_need_not_follow_state_order():
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="landmark_translation", value=LANDMARK.translation))
    fg.add_variable(Variable(id=NodeId(1), type="landmark_rotation", value=LANDMARK.rotation))
    fg.add_variable(Variable(id=NodeId(2), type="pose2d", value=NEXT_NODE.global_pose_2d))
    fg.add_variable(Variable(id=NodeId(3), type="pose2d", value=PREV_NODE.global_pose_2d))
    fg.add_residual_block(_landmark_cost(), (NodeId(3), NodeId(2), NodeId(1), NodeId(0)))

    x0, index = fg.pack_state()
    assert index[NodeId(3)] == slice(10, 13)
    assert jnp.allclose(fg.build_residual_function()(x0), jnp.zeros(6), atol=1e-10)


def test_graph_without_residual_blocks_has_empty_residual():
    fg = _build_graph()
    x0, _ = fg.pack_state()
    assert fg.build_residual_function()(x0).shape == (0,)
