#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filter State Math Utilities
===========================

Quaternion operations used by the filter state.

Quaternion Convention:
----------------------
All quaternions use Hamilton convention with [w, x, y, z] ordering:
- w is the scalar (real) part
- [x, y, z] is the vector (imaginary) part

A quaternion q_AB maps vectors expressed in frame B to frame A:
    v_A = quat_rotate(q_AB, v_B) = R(q_AB) @ v_B

so composition reads q_AC = quat_multiply(q_AB, q_BC).

Key Operations:
---------------
- quat_multiply: Hamilton quaternion product
- quat_normalize: Ensure unit quaternion
- quat_inverse: Conjugate of a unit quaternion
- quat_rotate: Rotate a 3D vector
- quat_to_rot / rot_to_quat: 3x3 rotation matrix conversion
- quat_from_two_vectors: Shortest-arc rotation taking one direction onto another
- quat_boxplus / quat_boxminus: Manifold perturbation with 3D rotation vectors
"""

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy


QUAT_IDENTITY = np.array([1.0, 0.0, 0.0, 0.0])


# =============================================================================
# Quaternion Operations (all use [w, x, y, z] Hamilton convention)
# =============================================================================

def quat_identity() -> np.ndarray:
    """Return a fresh identity quaternion."""
    return QUAT_IDENTITY.copy()


def quat_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """
    Quaternion multiplication: q1 ⊗ q2, both in [w,x,y,z] format.

    q1 ⊗ q2 represents rotation q2 followed by rotation q1.

    Args:
        q1: First quaternion [w, x, y, z]
        q2: Second quaternion [w, x, y, z]

    Returns:
        Product quaternion [w, x, y, z]
    """
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2
    ])


def quat_normalize(q: np.ndarray) -> np.ndarray:
    """
    Normalize quaternion to unit length.

    Degenerate input (norm below 1e-10) collapses to identity.
    """
    norm = np.linalg.norm(q)
    if norm < 1e-10:
        return quat_identity()
    return np.asarray(q, dtype=float) / norm


def quat_inverse(q: np.ndarray) -> np.ndarray:
    """Compute quaternion inverse (conjugate for unit quaternion)."""
    return np.array([q[0], -q[1], -q[2], -q[3]], dtype=float)


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = q
    return np.array([
        [1-2*(y*y+z*z), 2*(x*y-w*z),   2*(x*z+w*y)],
        [2*(x*y+w*z),   1-2*(x*x+z*z), 2*(y*z-w*x)],
        [2*(x*z-w*y),   2*(y*z+w*x),   1-2*(x*x+y*y)]
    ])


def rot_to_quat(R: np.ndarray) -> np.ndarray:
    """
    Convert 3x3 rotation matrix to quaternion [w,x,y,z].

    Uses scipy for the conversion, then fixes the sign so that w >= 0.
    """
    q_xyzw = R_scipy.from_matrix(np.asarray(R, dtype=float)).as_quat()
    q = np.array([q_xyzw[3], q_xyzw[0], q_xyzw[1], q_xyzw[2]])
    if q[0] < 0:
        q = -q
    return quat_normalize(q)


def quat_rotate(q: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Rotate 3D vector v by unit quaternion q: R(q) @ v."""
    return quat_to_rot(q) @ np.asarray(v, dtype=float)


def quat_from_two_vectors(v_from: np.ndarray, v_to: np.ndarray) -> np.ndarray:
    """
    Shortest-arc quaternion q such that quat_rotate(q, v_from) ∥ v_to.

    Neither input needs to be unit length. For anti-parallel inputs any
    axis orthogonal to v_from is a valid answer; the one built from the
    smallest component of v_from is used.

    Args:
        v_from: Source direction (3,)
        v_to: Target direction (3,)

    Returns:
        Unit quaternion [w, x, y, z]
    """
    a = np.asarray(v_from, dtype=float)
    b = np.asarray(v_to, dtype=float)
    a = a / np.linalg.norm(a)
    b = b / np.linalg.norm(b)

    c = float(np.dot(a, b))
    if c < -1.0 + 1e-12:
        # 180° turn about any axis orthogonal to a
        helper = np.zeros(3)
        helper[int(np.argmin(np.abs(a)))] = 1.0
        axis = np.cross(a, helper)
        axis /= np.linalg.norm(axis)
        return np.array([0.0, axis[0], axis[1], axis[2]])

    axis = np.cross(a, b)
    q = np.array([1.0 + c, axis[0], axis[1], axis[2]])
    return quat_normalize(q)


def small_angle_quat(dtheta: np.ndarray) -> np.ndarray:
    """
    Convert a rotation vector (3D) to quaternion.

    Uses the exact formula q = [cos(θ/2), sin(θ/2) * axis] and a first-order
    approximation below 1e-8 rad.
    """
    theta = np.linalg.norm(dtheta)
    if theta < 1e-8:
        return quat_normalize(np.array([1.0, dtheta[0]/2, dtheta[1]/2, dtheta[2]/2]))
    half_theta = theta / 2
    axis = dtheta / theta
    return np.array([
        np.cos(half_theta),
        np.sin(half_theta) * axis[0],
        np.sin(half_theta) * axis[1],
        np.sin(half_theta) * axis[2]
    ])


def quat_log(q: np.ndarray) -> np.ndarray:
    """Rotation vector of a unit quaternion (inverse of small_angle_quat)."""
    w, x, y, z = q
    if w < 0:
        w, x, y, z = -w, -x, -y, -z
    vec_norm = np.sqrt(x*x + y*y + z*z)
    if vec_norm < 1e-8:
        return 2.0 * np.array([x, y, z])
    angle = 2.0 * np.arctan2(vec_norm, w)
    return angle * np.array([x, y, z]) / vec_norm


def quat_boxplus(q: np.ndarray, dtheta: np.ndarray) -> np.ndarray:
    """
    Quaternion box-plus operation (manifold update).
    q_new = q ⊞ δθ = exp(δθ) ⊗ q

    The perturbation is applied on the left, i.e. in the frame the
    quaternion maps into.
    """
    dq = small_angle_quat(np.asarray(dtheta, dtype=float))
    return quat_normalize(quat_multiply(dq, q))


def quat_boxminus(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """
    Quaternion box-minus operation (manifold difference).
    δθ = q1 ⊟ q2 = log(q1 ⊗ q2^{-1}), so that q2 ⊞ δθ == q1.
    """
    return quat_log(quat_multiply(q1, quat_inverse(q2)))
