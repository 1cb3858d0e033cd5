#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filter State Module

Owns the mean state, the full error-state covariance and the feature-slot
lifecycle of the visual-inertial filter.

Covariance conventions:
- P is D x D with D = State.D = 15 + 6*nCam + 3*nMax.
- An active feature slot has a positive-definite 3x3 block over
  [dep, nor_1, nor_2].
- An inactive slot has an identity 3x3 block and zero cross-covariance with
  every other dimension, so a freed slot never leaks correlation into
  features that later reuse it.

Occupancy is tracked explicitly in `active_slots`; infer_active_slots()
recovers it from covariance contents for states that were built without it.

Single writer: one owner mutates a FilterState at a time, and lifecycle calls
must not interleave with prediction/update steps on the same instance.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple, Union

import numpy as np
from filterpy.common import pretty_str

from .bearing import BearingVector
from .depth_map import DepthType, DepthValues
from .math_utils import quat_from_two_vectors, quat_identity, quat_inverse
from .numerical_checks import assert_finite, check_covariance_block, check_quaternion
from .state import ExtrinsicsSource, PredictionMeas, PredictionNoise, State


GRAVITY_ALIGN_MIN_NORM = 1e-6
UP = np.array([0.0, 0.0, 1.0])

# Blocks whose covariance is owned by the feature lifecycle
FEATURE_BLOCKS = ("dep", "nor")


class FilterState:
    """
    Mean state + covariance + feature-slot lifecycle.

    Attributes:
        state: Mean state (State)
        cov: D x D error-state covariance
        noise: Process-noise layout/covariance mirroring the state blocks
        t: Time of the current state estimate [s]; advanced by the prediction step
        last_prediction_meas: Last IMU sample consumed by the prediction step,
            reused when consecutive samples are merged (use_prediction_merge)
        use_prediction_merge: Allow the prediction step to merge IMU samples
        img_time: Timestamp of the last processed image
        image_counter: Number of processed images
        img: Per-camera image buffers (owned by the vision front end)
        patch_drawing: Debug drawing buffer (owned by the vision front end)
        patches: Per-slot multilevel patch placeholders (owned by the front end)
        active_slots: Explicit set of occupied feature slots

    Usage:
        fs = FilterState(n_max=25, n_cam=1)
        fs.initialize_from_accelerometer(acc0)
        fs.initialize_feature(0, bearing, depth_param, init_cov)
        ...
        fs.remove_feature(0)
    """

    def __init__(self, n_max: int, n_cam: int = 1, n_levels: int = 4, patch_size: int = 8,
                 depth_type: Union[int, str, DepthType] = DepthType.INVERSE,
                 verbose: bool = False):
        self.state = State(n_max, n_cam, n_levels, patch_size, depth_type)
        self.cov = np.eye(self.state.D)
        self.noise = PredictionNoise.for_state(self.state)
        self.last_prediction_meas = PredictionMeas()
        self.t = 0.0
        self.use_prediction_merge = True
        self.img_time = 0.0
        self.image_counter = 0
        self.img: List[Optional[np.ndarray]] = [None] * self.state.n_cam
        self.patch_drawing: Optional[np.ndarray] = None
        self.patches: List[Optional[object]] = [None] * self.state.n_max
        self.active_slots: Set[int] = set()
        self.verbose = verbose

    @property
    def D(self) -> int:
        return self.state.D

    @property
    def n_max(self) -> int:
        return self.state.n_max

    @property
    def n_cam(self) -> int:
        return self.state.n_cam

    # ------------------------------------------------------------------
    # Index helpers
    # ------------------------------------------------------------------

    def feature_indices(self, slot: int) -> np.ndarray:
        """Covariance indices [dep, nor_1, nor_2] of a feature slot."""
        self.state._check_slot(slot)
        layout = self.state.layout
        dep = layout.error_index("dep", slot)
        nor = layout.error_index("nor", slot)
        return np.array([dep, nor, nor + 1])

    def _clear_cross_covariance(self, idx: np.ndarray):
        self.cov[idx, :] = 0.0
        self.cov[:, idx] = 0.0

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def initialize_from_pose(self, WrWM: np.ndarray, qMW: np.ndarray):
        """
        Set the IMU pose from a world-frame pose.

        Args:
            WrWM: World -> IMU position, expressed in world
            qMW: World coordinates -> IMU coordinates [w, x, y, z]
        """
        assert_finite("WrWM", WrWM, raise_on_fail=True)
        qMW, valid = check_quaternion(qMW, name="qMW")
        if not valid:
            raise ValueError(f"Invalid initial orientation qMW={qMW}")
        self.state.set("pos", np.asarray(WrWM, dtype=float))
        self.state.set("att", quat_inverse(qMW))
        print(f"[INIT] Pose: WrWM={self.state.world_position()}, qWM={self.state.orientation()}")

    def initialize_from_accelerometer(self, f_meas: np.ndarray):
        """
        Heuristic attitude bootstrap from one accelerometer sample.

        Assumes the body is at rest, so the specific force points opposite
        to gravity, and rotates it onto world up (+z). Yaw is unobservable
        and left at the shortest-arc solution. Measurement noise and any
        motion feed directly into roll/pitch error (about |a_dyn| / g rad for
        a dynamic acceleration a_dyn). Below 1e-6 m/s² the attitude falls
        back to identity.
        """
        f_meas = np.asarray(f_meas, dtype=float).reshape(3)
        assert_finite("f_meas", f_meas, raise_on_fail=True)
        if np.linalg.norm(f_meas) > GRAVITY_ALIGN_MIN_NORM:
            self.state.set("att", quat_from_two_vectors(f_meas, UP))
            print(f"[INIT] Gravity-aligned attitude from |f|={np.linalg.norm(f_meas):.3f} m/s²: "
                  f"qWM={self.state.orientation()}")
        else:
            self.state.set("att", quat_identity())
            print("[INIT] Accelerometer sample too small, attitude set to identity")

    # ------------------------------------------------------------------
    # Feature lifecycle
    # ------------------------------------------------------------------

    def initialize_feature(self, slot: int, bearing: np.ndarray, depth_param: float,
                           init_cov: np.ndarray, cam_id: Optional[int] = None):
        """
        Initialize feature slot with a new feature.

        The new feature is uncorrelated with every other state dimension and
        carries exactly init_cov. No other covariance entry is touched.

        Args:
            slot: Feature slot index
            bearing: Bearing of the feature in its camera frame (any length)
            depth_param: Depth parameter, in the active encoding
            init_cov: 3x3 covariance ordered [dep, nor_1, nor_2]
            cam_id: Owning camera, recorded in the auxiliary block if given
        """
        idx = self.feature_indices(slot)
        init_cov = check_covariance_block(init_cov, 3, name=f"init_cov[slot {slot}]")
        if not np.isfinite(depth_param):
            raise ValueError(f"Non-finite depth parameter for slot {slot}: {depth_param}")
        if cam_id is not None:
            self.state._check_cam(cam_id)
        bearing_vec = BearingVector.from_vector(bearing)

        self.state.set("dep", float(depth_param), slot)
        self.state.set("nor", bearing_vec.q, slot)
        if cam_id is not None:
            self.state.aux.cam_id[slot] = int(cam_id)

        self._clear_cross_covariance(idx)
        self.cov[np.ix_(idx, idx)] = init_cov
        self.active_slots.add(slot)

        if self.verbose:
            print(f"[FEATURE] init slot={slot} depth={self.state.feature_depth(slot):.3f} "
                  f"bearing={self.state.feature_bearing(slot)}")

    def initialize_feature_at_depth(self, slot: int, bearing: np.ndarray, depth: float,
                                    init_cov: np.ndarray, cam_id: Optional[int] = None):
        """Same as initialize_feature, taking a physical depth."""
        self.initialize_feature(slot, bearing, self.state.aux.depth_map.depth_to_param(depth),
                                init_cov, cam_id=cam_id)

    def remove_feature(self, slot: int):
        """
        Free feature slot.

        Resets the mean to the neutral slot content, zeroes all
        cross-covariance of the slot and sets its self-covariance to
        identity. Calling it on a free slot reproduces the same state.
        """
        idx = self.feature_indices(slot)
        self.state.reset_feature(slot)
        self._clear_cross_covariance(idx)
        self.cov[idx, idx] = 1.0
        self.active_slots.discard(slot)

        if self.verbose:
            print(f"[FEATURE] removed slot={slot}")

    def is_active(self, slot: int) -> bool:
        self.state._check_slot(slot)
        return slot in self.active_slots

    def free_slot(self) -> Optional[int]:
        """Lowest unused feature slot, or None when all nMax are occupied."""
        for slot in range(self.n_max):
            if slot not in self.active_slots:
                return slot
        return None

    def infer_active_slots(self, atol: float = 0.0) -> Set[int]:
        """
        Recover occupancy from covariance contents.

        A slot counts as free when its 3x3 block is identity and all its
        cross-covariance is zero. An active feature initialized with identity
        covariance is indistinguishable from a free slot here; active_slots
        is the authoritative record.
        """
        active = set()
        eye3 = np.eye(3)
        for slot in range(self.n_max):
            idx = self.feature_indices(slot)
            rows = self.cov[idx, :].copy()
            rows[:, idx] = 0.0
            self_block = self.cov[np.ix_(idx, idx)]
            if not (np.allclose(self_block, eye3, rtol=0.0, atol=atol)
                    and np.allclose(rows, 0.0, rtol=0.0, atol=atol)):
                active.add(slot)
        return active

    def feature_depth_jacobian(self, slot: int) -> DepthValues:
        """Depth and derivatives of slot's depth parameter."""
        return self.state.aux.depth_map.map(self.state.depth_param(slot))

    # ------------------------------------------------------------------
    # Covariance maintenance
    # ------------------------------------------------------------------

    def set_initial_covariance(self, variances: Dict[str, Union[float, List[float]]]):
        """
        Reset the covariance of non-feature blocks to diagonal variances.

        Args:
            variances: block name -> scalar or per-component variance
                       (applied to every element of array blocks)
        """
        layout = self.state.layout
        resolved = []
        for name, var in variances.items():
            if name in FEATURE_BLOCKS:
                raise ValueError(f"Block {name!r} is managed by the feature lifecycle")
            if name not in layout:
                raise ValueError(f"Unknown state block {name!r}")
            spec = layout.block(name)
            var = np.broadcast_to(np.asarray(var, dtype=float), (spec.error_dim,))
            if np.any(var <= 0) or not np.all(np.isfinite(var)):
                raise ValueError(f"Initial variance for {name!r} must be positive and finite: {var}")
            resolved.append((name, spec, var))

        # All entries validated, P is only written from here on
        for name, spec, var in resolved:
            for i in range(spec.count):
                sl = layout.error_slice(name, i)
                self.cov[sl, :] = 0.0
                self.cov[:, sl] = 0.0
                self.cov[sl, sl] = np.diag(var)

    def symmetrize_covariance(self, warn_threshold: float = 1e-6) -> float:
        """Force P = (P + P^T)/2. Returns the Frobenius asymmetry before."""
        asymmetry = float(np.linalg.norm(self.cov - self.cov.T, ord="fro"))
        if asymmetry > warn_threshold:
            print(f"[COV_CHECK] Asymmetry detected (||P - P^T|| = {asymmetry:.3e}), symmetrizing")
        self.cov = (self.cov + self.cov.T) / 2.0
        return asymmetry

    def check_covariance(self, tol: float = 1e-9) -> List[str]:
        """
        Check covariance invariants.

        Returns:
            List of violation descriptions (empty when consistent)
        """
        problems = []
        if self.cov.shape != (self.D, self.D):
            return [f"covariance shape {self.cov.shape} != ({self.D}, {self.D})"]
        if not np.all(np.isfinite(self.cov)):
            problems.append("covariance has non-finite entries")
            return problems
        asym = np.max(np.abs(self.cov - self.cov.T)) if self.D else 0.0
        if asym > tol:
            problems.append(f"covariance not symmetric (max diff={asym:.3e})")

        eye3 = np.eye(3)
        for slot in range(self.n_max):
            idx = self.feature_indices(slot)
            block = self.cov[np.ix_(idx, idx)]
            if slot in self.active_slots:
                try:
                    np.linalg.cholesky((block + block.T) / 2.0)
                except np.linalg.LinAlgError:
                    problems.append(f"slot {slot}: active block not positive definite")
                continue
            rows = self.cov[idx, :].copy()
            rows[:, idx] = 0.0
            if not np.allclose(block, eye3, rtol=0.0, atol=tol):
                problems.append(f"slot {slot}: free slot self-covariance is not identity")
            if not np.allclose(rows, 0.0, rtol=0.0, atol=tol):
                problems.append(f"slot {slot}: free slot has cross-covariance")
        return problems

    def extrinsics_covariance(self, cam_id: int = 0) -> Tuple[ExtrinsicsSource, Optional[np.ndarray]]:
        """
        Covariance of camera extrinsics, consistent with State.camera_extrinsics.

        Returns:
            (source, 6x6 block over [vep, vea]) when extrinsics are estimated,
            (source, None) when the fixed cache is in use
        """
        self.state._check_cam(cam_id)
        source = self.state.extrinsics_source
        if source is ExtrinsicsSource.FIXED:
            return source, None
        layout = self.state.layout
        idx = np.r_[layout.error_slice("vep", cam_id), layout.error_slice("vea", cam_id)]
        return source, self.cov[np.ix_(idx, idx)].copy()

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    def to_checkpoint(self) -> Dict[str, np.ndarray]:
        """Arrays describing mean, covariance, occupancy and the auxiliary scalars."""
        aux = self.state.aux
        return {
            "dims": np.array([self.n_max, self.n_cam, self.state.n_levels, self.state.patch_size]),
            "x": self.state.x.copy(),
            "cov": self.cov.copy(),
            "active_slots": np.array(sorted(self.active_slots), dtype=int),
            "depth_type": np.array(int(aux.depth_map.type)),
            "do_ve_calibration": np.array(bool(aux.do_ve_calibration)),
            "q_CM": aux.q_CM.copy(),
            "MrMC": aux.MrMC.copy(),
            "cam_id": aux.cam_id.copy(),
            "t": np.array(self.t),
            "last_prediction_meas": self.last_prediction_meas.as_vector(),
            "w_est": aux.w_est.copy(),
            "w_meas": aux.w_meas.copy(),
            "w_meas_cov": aux.w_meas_cov.copy(),
            "active_feature": np.array(aux.active_feature),
            "active_camera_counter": np.array(aux.active_camera_counter),
            "img_time": np.array(self.img_time),
            "image_counter": np.array(self.image_counter),
            "use_prediction_merge": np.array(bool(self.use_prediction_merge)),
        }

    @classmethod
    def from_checkpoint(cls, data: Dict[str, np.ndarray], verbose: bool = False) -> "FilterState":
        """
        Rebuild a FilterState from to_checkpoint() output.

        Raises:
            ValueError: arrays inconsistent with the stored dimensions
        """
        n_max, n_cam, n_levels, patch_size = (int(v) for v in np.asarray(data["dims"]))
        fs = cls(n_max, n_cam, n_levels, patch_size,
                 depth_type=int(data["depth_type"]), verbose=verbose)
        x = np.asarray(data["x"], dtype=float)
        cov = np.asarray(data["cov"], dtype=float)
        if x.shape != fs.state.x.shape:
            raise ValueError(f"Checkpoint mean has shape {x.shape}, expected {fs.state.x.shape}")
        if cov.shape != fs.cov.shape:
            raise ValueError(f"Checkpoint covariance has shape {cov.shape}, expected {fs.cov.shape}")
        active = [int(s) for s in np.asarray(data["active_slots"]).reshape(-1)]
        if any(not 0 <= s < n_max for s in active):
            raise ValueError(f"Checkpoint active slots out of range: {active}")

        fs.state.x[:] = x
        fs.cov[:] = cov
        fs.active_slots = set(active)
        aux = fs.state.aux
        aux.do_ve_calibration = bool(data["do_ve_calibration"])
        aux.q_CM[:] = np.asarray(data["q_CM"], dtype=float)
        aux.MrMC[:] = np.asarray(data["MrMC"], dtype=float)
        aux.cam_id[:] = np.asarray(data["cam_id"], dtype=int)
        aux.w_est = np.asarray(data["w_est"], dtype=float).reshape(3).copy()
        aux.w_meas = np.asarray(data["w_meas"], dtype=float).reshape(3).copy()
        aux.w_meas_cov = np.asarray(data["w_meas_cov"], dtype=float).reshape(3, 3).copy()
        aux.active_feature = int(data["active_feature"])
        aux.active_camera_counter = int(data["active_camera_counter"])
        fs.t = float(data["t"])
        fs.last_prediction_meas = PredictionMeas.from_vector(data["last_prediction_meas"])
        fs.img_time = float(data["img_time"])
        fs.image_counter = int(data["image_counter"])
        fs.use_prediction_merge = bool(data["use_prediction_merge"])
        return fs

    def save_checkpoint(self, path: str):
        np.savez(path, **self.to_checkpoint())
        print(f"[CHECKPOINT] Saved filter state (D={self.D}, active={len(self.active_slots)}) to {path}")

    @classmethod
    def load_checkpoint(cls, path: str, verbose: bool = False) -> "FilterState":
        with np.load(path) as data:
            arrays = {key: data[key] for key in data.files}
        return cls.from_checkpoint(arrays, verbose=verbose)

    def __repr__(self):
        return '\n'.join([
            'FilterState object',
            pretty_str('state', self.state),
            pretty_str('active_slots', sorted(self.active_slots)),
            pretty_str('x', self.state.x),
            pretty_str('P', self.cov),
            pretty_str('img_time', self.img_time),
            pretty_str('image_counter', self.image_counter),
        ])
