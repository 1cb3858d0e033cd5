#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filter State Layout Module

Mean state of the visual-inertial filter, the IMU prediction measurement and
the process-noise block layout.

State Layout (blocks in order):
    pos : WrWM  position of the IMU frame M in world W         nominal 3, error 3
    vel : MvM   velocity of M expressed in M                    nominal 3, error 3
    acb : accelerometer additive bias                           nominal 3, error 3
    gyb : gyroscope additive bias                               nominal 3, error 3
    att : qWM   IMU coordinates -> world coordinates            nominal 4, error 3
    vep : MrMC  IMU -> camera offset, in M      (nCam entries)  nominal 3, error 3
    vea : qCM   IMU coordinates -> camera coords (nCam entries) nominal 4, error 3
    dep : depth parameter per feature slot     (nMax entries)   nominal 1, error 1
    nor : bearing per feature slot, camera frame (nMax entries) nominal 4, error 2

Covariance dimension: 15 + 6*nCam + 3*nMax

The auxiliary block (StateAuxiliary) travels with the mean but has no error
dimension: patch alignment scratch data, fixed extrinsics, the calibration
flag and the depth parameterization.
"""

from __future__ import annotations

import copy
from dataclasses import InitVar, dataclass, field
from enum import Enum
from typing import List, Union

import numpy as np

from .bearing import BearingVector
from .depth_map import DepthMap, DepthType
from .layout import StateLayout
from .math_utils import (
    quat_boxminus,
    quat_boxplus,
    quat_identity,
    quat_inverse,
    quat_multiply,
    quat_normalize,
    quat_rotate,
)


QUATERNION_BLOCKS = ("att", "vea")


def build_state_layout(n_max: int, n_cam: int) -> StateLayout:
    """Block layout of the filter state for nMax feature slots and nCam cameras."""
    return (StateLayout.builder()
            .add("pos", 3)
            .add("vel", 3)
            .add("acb", 3)
            .add("gyb", 3)
            .add("att", 4, error_dim=3)
            .add("vep", 3, count=n_cam)
            .add("vea", 4, error_dim=3, count=n_cam)
            .add("dep", 1, count=n_max)
            .add("nor", BearingVector.NOMINAL_DIM, error_dim=BearingVector.ERROR_DIM, count=n_max)
            .build())


def build_noise_layout(n_max: int, n_cam: int) -> StateLayout:
    """Process-noise layout: mirrors the error shapes of the state blocks."""
    return (StateLayout.builder()
            .add("pos", 3)
            .add("vel", 3)
            .add("acb", 3)
            .add("gyb", 3)
            .add("att", 3)
            .add("vep", 3, count=n_cam)
            .add("vea", 3, count=n_cam)
            .add("dep", 1, count=n_max)
            .add("nor", 2, count=n_max)
            .build())


class ExtrinsicsSource(Enum):
    """Where camera extrinsics were read from."""
    ESTIMATED = "estimated"  # vep/vea blocks of the state
    FIXED = "fixed"          # auxiliary cache, not part of the covariance


@dataclass(frozen=True)
class Extrinsics:
    """Camera extrinsics tagged with the source they were read from."""

    q_CM: np.ndarray
    MrMC: np.ndarray
    source: ExtrinsicsSource


@dataclass
class StateAuxiliary:
    """
    Non-optimized per-slot and per-camera data carried with the state.

    Attributes:
        w_est: Estimated angular velocity of M [rad/s]
        w_meas: Measured angular velocity of M [rad/s]
        w_meas_cov: 3x3 covariance of w_meas
        A_red: (nMax, 2, 2) reduced patch-alignment Jacobians
        b_red: (nMax, 2) reduced patch-alignment residuals
        bearing_meas: nMax measured bearings
        bearing_corners: (nMax, 2, 2) two bearing-corner 2-vectors per slot
        cam_id: (nMax,) owning camera per slot
        q_CM: (nCam, 4) fixed IMU->camera rotations
        MrMC: (nCam, 3) fixed IMU->camera offsets
        do_ve_calibration: estimate extrinsics in-state (True) or use the fixed cache
        depth_map: active depth parameterization
        active_feature: free-running counter for the tracking step
        active_camera_counter: free-running counter for the tracking step
    """

    n_max: int
    n_cam: int
    depth_type: InitVar[Union[int, str, DepthType]]
    w_est: np.ndarray = field(default_factory=lambda: np.zeros(3))
    w_meas: np.ndarray = field(default_factory=lambda: np.zeros(3))
    w_meas_cov: np.ndarray = field(default_factory=lambda: np.eye(3))
    do_ve_calibration: bool = True
    active_feature: int = 0
    active_camera_counter: int = 0

    def __post_init__(self, depth_type):
        self.A_red = np.tile(np.eye(2), (self.n_max, 1, 1))
        self.b_red = np.zeros((self.n_max, 2))
        self.bearing_meas: List[BearingVector] = [BearingVector() for _ in range(self.n_max)]
        self.bearing_corners = np.zeros((self.n_max, 2, 2))
        self.cam_id = np.zeros(self.n_max, dtype=int)
        self.q_CM = np.tile(quat_identity(), (self.n_cam, 1))
        self.MrMC = np.zeros((self.n_cam, 3))
        self.depth_map = DepthMap(depth_type)


class State:
    """
    Mean state of the filter (EstimatorState).

    The nominal vector `x` is laid out by `layout`; the covariance dimension
    is `layout.error_dim` (exposed as `D`).

    Usage:
        state = State(n_max=25, n_cam=1)
        state.feature_depth(3)
        state.world_camera_position(0)
    """

    def __init__(self, n_max: int, n_cam: int = 1, n_levels: int = 4, patch_size: int = 8,
                 depth_type: Union[int, str, DepthType] = DepthType.INVERSE):
        if n_max < 0 or n_cam < 1:
            raise ValueError(f"Invalid state size: n_max={n_max}, n_cam={n_cam}")
        self.n_max = int(n_max)
        self.n_cam = int(n_cam)
        self.n_levels = int(n_levels)
        self.patch_size = int(patch_size)
        self.layout = build_state_layout(self.n_max, self.n_cam)
        self.x = np.zeros(self.layout.nominal_dim)
        self.aux = StateAuxiliary(self.n_max, self.n_cam, depth_type=depth_type)
        self.set_identity()

    @property
    def D(self) -> int:
        """Error-state (covariance) dimension."""
        return self.layout.error_dim

    @property
    def depth_type(self) -> DepthType:
        """Active depth parameterization (read-only view of aux.depth_map)."""
        return self.aux.depth_map.type

    # ------------------------------------------------------------------
    # Raw block access
    # ------------------------------------------------------------------

    def get(self, name: str, i: int = 0) -> np.ndarray:
        """View into element i of block `name` in the mean vector."""
        return self.x[self.layout.nominal_slice(name, i)]

    def set(self, name: str, value, i: int = 0):
        sl = self.layout.nominal_slice(name, i)
        self.x[sl] = np.asarray(value, dtype=float).reshape(sl.stop - sl.start)

    def set_identity(self):
        """Zero vectors, identity rotations, neutral feature slots."""
        self.x[:] = 0.0
        self.set("att", quat_identity())
        for cam in range(self.n_cam):
            self.set("vea", quat_identity(), cam)
        for slot in range(self.n_max):
            self.reset_feature(slot)

    def reset_feature(self, slot: int):
        """Neutral slot content: depth parameter 1.0, reference bearing."""
        self._check_slot(slot)
        self.set("dep", 1.0, slot)
        self.set("nor", quat_identity(), slot)

    def _check_slot(self, slot: int):
        if not 0 <= slot < self.n_max:
            raise IndexError(f"Feature slot {slot} out of range (nMax={self.n_max})")

    def _check_cam(self, cam_id: int):
        if not 0 <= cam_id < self.n_cam:
            raise IndexError(f"Camera id {cam_id} out of range (nCam={self.n_cam})")

    # ------------------------------------------------------------------
    # Body kinematics
    # ------------------------------------------------------------------

    def world_position(self) -> np.ndarray:
        """WrWM: world -> IMU, expressed in world."""
        return self.get("pos").copy()

    def body_velocity(self) -> np.ndarray:
        """MvM: IMU velocity, expressed in IMU frame."""
        return self.get("vel").copy()

    def accel_bias(self) -> np.ndarray:
        return self.get("acb").copy()

    def gyro_bias(self) -> np.ndarray:
        return self.get("gyb").copy()

    def orientation(self) -> np.ndarray:
        """qWM: IMU coordinates -> world coordinates, [w, x, y, z]."""
        return self.get("att").copy()

    # ------------------------------------------------------------------
    # Extrinsics
    # ------------------------------------------------------------------

    @property
    def extrinsics_source(self) -> ExtrinsicsSource:
        return ExtrinsicsSource.ESTIMATED if self.aux.do_ve_calibration else ExtrinsicsSource.FIXED

    def camera_extrinsics(self, cam_id: int = 0) -> Extrinsics:
        """
        Extrinsics of camera cam_id, tagged with their source.

        Estimated blocks are used when aux.do_ve_calibration is set, the fixed
        auxiliary cache otherwise. The switch is global for all cameras.
        """
        self._check_cam(cam_id)
        if self.aux.do_ve_calibration:
            return Extrinsics(self.get("vea", cam_id).copy(), self.get("vep", cam_id).copy(),
                              ExtrinsicsSource.ESTIMATED)
        return Extrinsics(self.aux.q_CM[cam_id].copy(), self.aux.MrMC[cam_id].copy(),
                          ExtrinsicsSource.FIXED)

    def camera_orientation(self, cam_id: int = 0) -> np.ndarray:
        """qCM: IMU coordinates -> camera coordinates."""
        return self.camera_extrinsics(cam_id).q_CM

    def camera_offset(self, cam_id: int = 0) -> np.ndarray:
        """MrMC: IMU -> camera, expressed in IMU frame."""
        return self.camera_extrinsics(cam_id).MrMC

    def world_camera_position(self, cam_id: int = 0) -> np.ndarray:
        """WrWC = WrWM + qWM.rotate(MrMC)."""
        return self.get("pos") + quat_rotate(self.get("att"), self.camera_offset(cam_id))

    def world_to_camera_orientation(self, cam_id: int = 0) -> np.ndarray:
        """qCW = qCM ⊗ qWM^-1."""
        return quat_normalize(quat_multiply(self.camera_orientation(cam_id),
                                            quat_inverse(self.get("att"))))

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def depth_param(self, slot: int) -> float:
        self._check_slot(slot)
        return float(self.get("dep", slot)[0])

    def feature_bearing_vector(self, slot: int) -> BearingVector:
        self._check_slot(slot)
        return BearingVector(self.get("nor", slot))

    def feature_bearing(self, slot: int) -> np.ndarray:
        """Unit bearing of slot, expressed in its camera frame."""
        return self.feature_bearing_vector(slot).get_vec()

    def feature_depth(self, slot: int) -> float:
        return self.aux.depth_map.map(self.depth_param(slot)).d

    def set_feature_depth(self, slot: int, depth: float):
        """Write the depth parameter of slot from a physical depth."""
        self._check_slot(slot)
        self.set("dep", self.aux.depth_map.depth_to_param(depth), slot)

    # ------------------------------------------------------------------
    # Error-state arithmetic
    # ------------------------------------------------------------------

    def boxplus(self, dx: np.ndarray) -> "State":
        """
        Apply an error-state increment dx (length D) and return a new state.

        Vectors and depth parameters are additive, rotations use quaternion
        box-plus, bearings use their 2D tangent box-plus.
        """
        dx = np.asarray(dx, dtype=float).reshape(-1)
        if dx.shape[0] != self.D:
            raise ValueError(f"Error-state increment has length {dx.shape[0]}, expected {self.D}")
        out = self.copy()
        for name in self.layout.names:
            spec = self.layout.block(name)
            for i in range(spec.count):
                delta = dx[self.layout.error_slice(name, i)]
                if name in QUATERNION_BLOCKS:
                    out.set(name, quat_boxplus(self.get(name, i), delta), i)
                elif name == "nor":
                    out.set(name, self.feature_bearing_vector(i).boxplus(delta).q, i)
                else:
                    out.set(name, self.get(name, i) + delta, i)
        return out

    def boxminus(self, other: "State") -> np.ndarray:
        """Error-state difference dx such that other.boxplus(dx) ≈ self."""
        if other.layout.error_dim != self.D or other.layout.nominal_dim != self.layout.nominal_dim:
            raise ValueError("Cannot difference states with different layouts")
        dx = np.zeros(self.D)
        for name in self.layout.names:
            spec = self.layout.block(name)
            for i in range(spec.count):
                sl = self.layout.error_slice(name, i)
                if name in QUATERNION_BLOCKS:
                    dx[sl] = quat_boxminus(self.get(name, i), other.get(name, i))
                elif name == "nor":
                    dx[sl] = self.feature_bearing_vector(i).boxminus(other.feature_bearing_vector(i))
                else:
                    dx[sl] = self.get(name, i) - other.get(name, i)
        return dx

    def copy(self) -> "State":
        return copy.deepcopy(self)

    def __repr__(self):
        return (f"State(n_max={self.n_max}, n_cam={self.n_cam}, D={self.D}, "
                f"depth={self.aux.depth_map.type.name}, calib={self.aux.do_ve_calibration})")


@dataclass
class PredictionMeas:
    """IMU sample driving one prediction step."""

    acc: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyr: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.acc = np.asarray(self.acc, dtype=float).reshape(3)
        self.gyr = np.asarray(self.gyr, dtype=float).reshape(3)

    def as_vector(self) -> np.ndarray:
        return np.concatenate([self.acc, self.gyr])

    @classmethod
    def from_vector(cls, v: np.ndarray) -> "PredictionMeas":
        v = np.asarray(v, dtype=float).reshape(6)
        return cls(acc=v[0:3], gyr=v[3:6])


class PredictionNoise:
    """
    Process-noise block layout and (diagonal by default) covariance.

    Blocks mirror the error shapes of the state; the dimension always equals
    the state covariance dimension.
    """

    def __init__(self, n_max: int, n_cam: int = 1):
        self.layout = build_noise_layout(n_max, n_cam)
        self.cov = np.eye(self.layout.error_dim)

    @classmethod
    def for_state(cls, state: State) -> "PredictionNoise":
        noise = cls(state.n_max, state.n_cam)
        if noise.D != state.D:
            raise ValueError(f"Noise dimension {noise.D} does not match state dimension {state.D}")
        return noise

    @property
    def D(self) -> int:
        return self.layout.error_dim

    def index(self, name: str, i: int = 0) -> int:
        return self.layout.error_index(name, i)

    def set_block_variance(self, name: str, variance, i: int = None):
        """
        Set the diagonal noise variance of block `name`.

        `variance` is a scalar or a per-component vector. With i=None every
        element of an array block is set.
        """
        spec = self.layout.block(name)
        elements = range(spec.count) if i is None else [i]
        for k in elements:
            sl = self.layout.error_slice(name, k)
            var = np.broadcast_to(np.asarray(variance, dtype=float), (spec.error_dim,))
            if np.any(var < 0):
                raise ValueError(f"Negative noise variance for block {name!r}")
            self.cov[sl, sl] = np.diag(var)

    def block_covariance(self, name: str, i: int = 0) -> np.ndarray:
        sl = self.layout.error_slice(name, i)
        return self.cov[sl, sl].copy()
