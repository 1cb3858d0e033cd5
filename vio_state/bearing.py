#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Bearing Vector Module

Unit direction with a 2-parameter minimal perturbation.

The direction is stored as a unit quaternion q with
    n = quat_rotate(q, e_z)
so the reference (identity) bearing is the camera optical axis [0, 0, 1].
Perturbations live in the tangent plane spanned by the two columns of
    N(q) = [quat_rotate(q, e_x), quat_rotate(q, e_y)]
which keeps the covariance of a bearing 2x2 regardless of where it points.
"""

import numpy as np

from .math_utils import (
    quat_boxplus,
    quat_from_two_vectors,
    quat_identity,
    quat_normalize,
    quat_rotate,
)


E_X = np.array([1.0, 0.0, 0.0])
E_Y = np.array([0.0, 1.0, 0.0])
E_Z = np.array([0.0, 0.0, 1.0])


class BearingVector:
    """
    Unit bearing vector backed by a quaternion (4 nominal, 2 error dims).

    Attributes:
        q: Quaternion [w, x, y, z] taking e_z onto the bearing
    """

    NOMINAL_DIM = 4
    ERROR_DIM = 2

    def __init__(self, q: np.ndarray = None):
        self.q = quat_identity() if q is None else quat_normalize(np.asarray(q, dtype=float))

    @classmethod
    def from_vector(cls, n: np.ndarray) -> "BearingVector":
        bearing = cls()
        bearing.set_from_vector(n)
        return bearing

    def set_identity(self):
        """Reset to the reference direction e_z."""
        self.q = quat_identity()

    def set_from_vector(self, n: np.ndarray):
        """
        Set the bearing from an arbitrary (non-zero) 3D vector.

        The vector is normalized internally.
        """
        n = np.asarray(n, dtype=float)
        norm = np.linalg.norm(n)
        if norm < 1e-12 or not np.all(np.isfinite(n)):
            raise ValueError(f"Cannot build a bearing from vector {n}")
        self.q = quat_from_two_vectors(E_Z, n / norm)

    def get_vec(self) -> np.ndarray:
        """Unit 3D direction."""
        return quat_rotate(self.q, E_Z)

    def tangent_basis(self) -> np.ndarray:
        """3x2 orthonormal basis N of the tangent plane at this bearing."""
        return np.column_stack([quat_rotate(self.q, E_X), quat_rotate(self.q, E_Y)])

    def boxplus(self, delta: np.ndarray) -> "BearingVector":
        """Perturb along the tangent plane: q_new = exp(N @ delta) ⊗ q."""
        dtheta = self.tangent_basis() @ np.asarray(delta, dtype=float).reshape(2)
        return BearingVector(quat_boxplus(self.q, dtheta))

    def boxminus(self, other: "BearingVector") -> np.ndarray:
        """
        2D tangent difference delta such that other.boxplus(delta) points
        along self.
        """
        n_self = self.get_vec()
        n_other = other.get_vec()
        axis = np.cross(n_other, n_self)
        sin_a = np.linalg.norm(axis)
        cos_a = float(np.dot(n_other, n_self))
        angle = np.arctan2(sin_a, cos_a)
        if sin_a < 1e-12:
            if cos_a > 0:
                return np.zeros(2)
            # Antipodal: pick the first tangent axis
            return np.array([np.pi, 0.0])
        dtheta = angle * axis / sin_a
        return other.tangent_basis().T @ dtheta

    def copy(self) -> "BearingVector":
        return BearingVector(self.q.copy())

    def __repr__(self):
        n = self.get_vec()
        return f"BearingVector([{n[0]:.4f}, {n[1]:.4f}, {n[2]:.4f}])"
