import math

import jax
import jax.numpy as jnp

from posegraph_jit.core.math3d import (
    quat_conjugate,
    quat_from_angle_axis,
    quat_from_yaw,
    quat_identity,
    quat_multiply,
    quat_rotate,
    quat_slerp,
    quat_to_angle_axis,
)


def test_quat_rotate_yaw_90():
    q = quat_from_yaw(math.pi / 2)
    v = quat_rotate(q, jnp.array([1.0, 0.0, 0.0]))
    assert jnp.allclose(v, jnp.array([0.0, 1.0, 0.0]), atol=1e-12)


def test_quat_conjugate_is_inverse_for_unit_quaternion():
    q = quat_from_angle_axis(jnp.array([0.3, -0.2, 0.5]))
    prod = quat_multiply(q, quat_conjugate(q))
    assert jnp.allclose(prod, quat_identity(), atol=1e-12)


def test_angle_axis_identity_is_zero_with_finite_jacobian():
    w = quat_to_angle_axis(quat_identity())
    assert jnp.all(w == 0.0)

    J = jax.jacfwd(quat_to_angle_axis)(quat_identity())
    assert J.shape == (3, 4)
    assert jnp.all(jnp.isfinite(J))
    # d(vector)/d(x, y, z) at the identity is 2 * I.
    assert jnp.allclose(J[:, 1:], 2.0 * jnp.eye(3), atol=1e-9)


def test_angle_axis_quarter_turn_about_z():
    w = quat_to_angle_axis(quat_from_yaw(math.pi / 2))
    assert jnp.allclose(w, jnp.array([0.0, 0.0, math.pi / 2]), atol=1e-12)


def test_angle_axis_roundtrip_and_sign_invariance():
    w = jnp.array([0.4, -1.1, 0.7])
    q = quat_from_angle_axis(w)
    assert jnp.allclose(quat_to_angle_axis(q), w, atol=1e-10)
    # -q is the same rotation.
    assert jnp.allclose(quat_to_angle_axis(-q), w, atol=1e-10)


def test_angle_axis_small_angle_branch_is_continuous():
    # Just below and just above the series cutoff.
    for angle in (0.9e-4, 1.1e-4):
        w = jnp.array([0.0, angle, 0.0])
        assert jnp.allclose(quat_to_angle_axis(quat_from_angle_axis(w)), w, rtol=1e-8, atol=1e-15)


def test_slerp_endpoints():
    a = quat_from_yaw(0.2)
    b = quat_from_yaw(1.3)
    assert jnp.allclose(quat_slerp(a, b, 0.0), a, atol=1e-12)
    assert jnp.allclose(quat_slerp(a, b, 1.0), b, atol=1e-12)


def test_slerp_midpoint_of_headings():
    q = quat_slerp(quat_identity(), quat_from_yaw(math.pi / 2), 0.5)
    assert jnp.allclose(q, quat_from_yaw(math.pi / 4), atol=1e-12)


def test_slerp_takes_shortest_arc():
    # -yaw(90°) is the same rotation as yaw(90°) but in the opposite hemisphere.
    q = quat_slerp(quat_identity(), -quat_from_yaw(math.pi / 2), 0.5)
    assert jnp.allclose(q, quat_from_yaw(math.pi / 4), atol=1e-12)


def test_slerp_extrapolates_outside_unit_interval():
    q = quat_slerp(quat_identity(), quat_from_yaw(math.radians(30.0)), 2.0)
    assert jnp.allclose(q, quat_from_yaw(math.radians(60.0)), atol=1e-12)


def test_slerp_collinear_has_finite_gradient():
    q = quat_from_yaw(0.7)
    J = jax.jacfwd(quat_slerp, argnums=(0, 1))(q, q, 0.3)
    for block in J:
        assert jnp.all(jnp.isfinite(block))
