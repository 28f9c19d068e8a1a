"""
Quaternion and rotation utilities for posegraph-jit.

This module implements the small amount of 3D rotation algebra required by
the landmark residuals:

    • Hamilton product, conjugate and normalization of quaternions
    • Rotating 3-vectors by a quaternion
    • Embedding a planar heading as a rotation about +z
    • Angle-axis (rotation vector) <-> quaternion conversions
    • Spherical linear interpolation (slerp)

Quaternions are stored as 4-vectors in ``(w, x, y, z)`` order.

All functions are written in JAX and support:
    - JIT compilation
    - Forward- and reverse-mode automatic differentiation
    - Plain Python floats / NumPy arrays as inputs

Branches are expressed with ``jnp.where`` rather than Python ``if`` so that
the same code runs under tracing. Whenever one side of a branch would produce
a NaN derivative (``sqrt`` at zero, division by ``sin(0)``), the operand is
replaced by a safe value on that side before the non-smooth operation, so the
gradient of the selected branch stays finite.

Key Functions
-------------
quat_multiply(a, b)
    Hamilton product a ⊗ b.

quat_rotate(q, v)
    Rotates v by the unit quaternion q.

quat_from_yaw(theta)
    Rotation of ``theta`` radians about the z axis.

quat_to_angle_axis(q)
    Rotation vector of q, stable near the identity.

quat_slerp(start, end, factor)
    Shortest-arc spherical interpolation.
"""

from __future__ import annotations

import jax.numpy as jnp

# Below this |cos(theta)| margin the two quaternions are treated as collinear
# and blended linearly.
SLERP_COLLINEAR_EPS: float = 1e-5

# Rotation angle (radians) below which the angle-axis scale uses its series.
SMALL_ANGLE_CUTOFF: float = 1e-4


def quat_identity() -> jnp.ndarray:
    """Identity rotation ``(1, 0, 0, 0)``."""
    return jnp.array([1.0, 0.0, 0.0, 0.0])


def quat_multiply(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Hamilton product ``a ⊗ b`` of two ``(w, x, y, z)`` quaternions."""
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    aw, ax, ay, az = a[0], a[1], a[2], a[3]
    bw, bx, by, bz = b[0], b[1], b[2], b[3]
    return jnp.stack(
        [
            aw * bw - ax * bx - ay * by - az * bz,
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
        ]
    )


def quat_conjugate(q: jnp.ndarray) -> jnp.ndarray:
    """Conjugate ``(w, -x, -y, -z)``; the inverse for unit quaternions."""
    q = jnp.asarray(q)
    return q * jnp.array([1.0, -1.0, -1.0, -1.0], dtype=q.dtype)


def quat_normalize(q: jnp.ndarray) -> jnp.ndarray:
    """Scale q to unit norm. A zero quaternion yields NaNs."""
    q = jnp.asarray(q)
    return q / jnp.sqrt(jnp.dot(q, q))


def quat_rotate(q: jnp.ndarray, v: jnp.ndarray) -> jnp.ndarray:
    """
    Rotate a 3-vector by a unit quaternion.

    Uses the expansion

        v' = v + w t + u × t,   t = 2 (u × v)

    with ``q = (w, u)``, which avoids building the rotation matrix.
    """
    q = jnp.asarray(q)
    v = jnp.asarray(v)
    w = q[0]
    u = q[1:]
    t = 2.0 * jnp.cross(u, v)
    return v + w * t + jnp.cross(u, t)


def quat_from_yaw(theta) -> jnp.ndarray:
    """Rotation of ``theta`` radians about +z."""
    half = 0.5 * jnp.asarray(theta)
    zero = jnp.zeros_like(half)
    return jnp.stack([jnp.cos(half), zero, zero, jnp.sin(half)])


def quat_from_angle_axis(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from a rotation vector to a unit quaternion.

    Small rotations use the series ``sin(θ/2)/θ ≈ 1/2 − θ²/48``.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    small = theta_sq < SMALL_ANGLE_CUTOFF ** 2
    safe_theta_sq = jnp.where(small, 1.0, theta_sq)
    theta = jnp.sqrt(safe_theta_sq)

    real = jnp.where(small, 1.0 - theta_sq / 8.0, jnp.cos(0.5 * theta))
    scale = jnp.where(small, 0.5 - theta_sq / 48.0, jnp.sin(0.5 * theta) / theta)
    return jnp.concatenate([jnp.reshape(real, (1,)), scale * w])


def quat_to_angle_axis(q: jnp.ndarray) -> jnp.ndarray:
    """
    Rotation vector (axis scaled by angle) of a quaternion.

    The quaternion is normalized and flipped to ``w >= 0`` so that the
    returned angle lies in ``[0, π]``. With ``s = |(x, y, z)|``:

        angle  = 2 atan2(s, w)
        vector = (angle / s) · (x, y, z)

    For angles below ``SMALL_ANGLE_CUTOFF`` the scale ``angle / s`` is
    replaced by its series ``2/w · (1 − s²/(3w²))``. The square root is taken
    of a guarded operand so the derivative at the identity is finite, and the
    identity maps exactly to the zero vector.
    """
    q = quat_normalize(q)
    q = jnp.where(q[0] < 0.0, -q, q)
    w = q[0]
    v = q[1:]

    s_sq = jnp.dot(v, v)
    small = s_sq < (0.5 * SMALL_ANGLE_CUTOFF) ** 2
    safe_s_sq = jnp.where(small, 1.0, s_sq)
    s = jnp.sqrt(safe_s_sq)

    angle = 2.0 * jnp.arctan2(s, w)
    scale = jnp.where(
        small,
        2.0 / w * (1.0 - s_sq / (3.0 * w * w)),
        angle / s,
    )
    return scale * v


def quat_slerp(start: jnp.ndarray, end: jnp.ndarray, factor: float) -> jnp.ndarray:
    """
    Shortest-arc spherical linear interpolation between two quaternions.

    ``factor`` is a plain scalar: 0 returns ``start``, 1 returns ``end`` (or
    ``-end`` when the quaternions lie in opposite hemispheres, which is the
    same rotation). Values outside ``[0, 1]`` extrapolate along the arc.

    theta is the half-angle between the quaternions, ``acos|<start, end>|``.
    When ``|cos(theta)|`` is within ``SLERP_COLLINEAR_EPS`` of 1 the weights
    fall back to ``1 - factor`` and ``factor``. The second weight is negated
    when the dot product is negative, selecting the shorter arc.
    """
    start = jnp.asarray(start)
    end = jnp.asarray(end)

    cos_theta = jnp.dot(start, end)
    abs_cos_theta = jnp.abs(cos_theta)
    collinear = abs_cos_theta >= 1.0 - SLERP_COLLINEAR_EPS

    # arccos'(1) is infinite; the collinear side never reads theta.
    safe_cos_theta = jnp.where(collinear, 0.0, abs_cos_theta)
    theta = jnp.arccos(safe_cos_theta)
    sin_theta = jnp.sin(theta)

    prev_scale = jnp.where(
        collinear, 1.0 - factor, jnp.sin((1.0 - factor) * theta) / sin_theta
    )
    next_scale = jnp.where(collinear, factor, jnp.sin(factor * theta) / sin_theta)
    next_scale = jnp.where(cos_theta < 0.0, -next_scale, next_scale)

    return prev_scale * start + next_scale * end
