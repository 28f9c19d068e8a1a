# Copyright (c) 2025.
# This file is part of posegraph-jit, released under the MIT License.

import time
import jax
import jax.numpy as jnp

from posegraph_jit.core.factor_graph import FactorGraph
from posegraph_jit.core.math3d import quat_from_yaw
from posegraph_jit.core.types import (
    LandmarkObservation,
    NodeId,
    NodeSpec2D,
    Rigid3,
    Variable,
)
from posegraph_jit.slam.landmark_cost import LandmarkCostFunction2D


def build_landmark_graph(num_nodes: int = 50, observations_per_span: int = 4):
    """
    Straight 2D trajectory with one landmark:
        node0 -- node1 -- ... -- node_{N-1}
    Every span between consecutive nodes carries `observations_per_span`
    landmark observations at evenly spaced times.
    """
    fg = FactorGraph()
    landmark = Rigid3(quat_from_yaw(0.4), jnp.array([5.0, 3.0, 0.0]))

    nodes = []
    for i in range(num_nodes):
        node = NodeSpec2D(time=float(i), global_pose_2d=jnp.array([float(i), 0.1 * i, 0.02 * i]))
        fg.add_variable(Variable(id=NodeId(i), type="pose2d", value=node.global_pose_2d))
        nodes.append(node)

    rot_id = NodeId(num_nodes)
    trans_id = NodeId(num_nodes + 1)
    fg.add_variable(Variable(id=rot_id, type="landmark_rotation", value=landmark.rotation))
    fg.add_variable(Variable(id=trans_id, type="landmark_translation", value=landmark.translation))

    for i in range(num_nodes - 1):
        for k in range(observations_per_span):
            observation = LandmarkObservation(
                time=i + (k + 0.5) / observations_per_span,
                landmark_to_tracking_transform=Rigid3(quat_from_yaw(0.1), jnp.array([1.0, 0.5, 0.0])),
                translation_weight=1.0,
                rotation_weight=10.0,
            )
            cost = LandmarkCostFunction2D.create_auto_diff_cost_function(
                observation, nodes[i], nodes[i + 1]
            )
            fg.add_residual_block(cost, (NodeId(i), NodeId(i + 1), rot_id, trans_id))

    return fg


def _time(fn, x, label: str, repeats: int = 10):
    # Warmup: force compilation
    fn(x).block_until_ready()

    t0 = time.time()
    for _ in range(repeats):
        out = fn(x)
    out.block_until_ready()
    t1 = time.time()

    print(f"{label}: {(t1 - t0) / repeats * 1000:.3f} ms  (shape {out.shape})")


def run_benchmark(num_nodes: int = 50, observations_per_span: int = 4):
    print("=== 2D Landmark Residual Benchmark ===")
    print(f"num_nodes = {num_nodes}, observations_per_span = {observations_per_span}")

    fg = build_landmark_graph(num_nodes, observations_per_span)
    x0, _ = fg.pack_state()
    print(f"state dim = {x0.shape[0]}, residual blocks = {len(fg.factors)}")

    _time(fg.build_residual_function(), x0, "residual")
    _time(fg.build_jacobian_function(), x0, "jacobian (jacfwd)")
    _time(jax.jit(jax.grad(fg.build_objective())), x0, "objective gradient")


if __name__ == "__main__":
    run_benchmark(num_nodes=50, observations_per_span=4)
