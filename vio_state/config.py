#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filter State Configuration Module
=================================

Loads the YAML configuration of the filter state and builds FilterState
instances from it.

Configuration Structure:
------------------------
filter:
  n_max: 25                  # feature slots
  n_levels: 4                # pyramid levels of the patch tracker
  patch_size: 8              # patch size [px]
  n_cam: 1                   # cameras
  depth_type: inverse        # regular | inverse | log | hyperbolic, or 0..3
  do_ve_calibration: true    # estimate extrinsics in-state
  use_prediction_merge: true
  verbose: false
extrinsics:                  # one entry per camera (missing -> identity)
  - q_CM: [1, 0, 0, 0]       # or R_CM: 3x3 rotation matrix
    MrMC: [0.0, 0.0, 0.0]
init_covariance:             # diagonal variances per block
  pos: 1.0e-4
  ...
feature_init_covariance:
  depth: 0.5                 # variance of the depth parameter
  bearing: 0.01              # variance of each bearing tangent component
process_noise:               # diagonal variances per block
  pos: 1.0e-4
  ...

Frame Conventions:
------------------
- q_CM: IMU coordinates -> camera coordinates, [w, x, y, z] Hamilton
- MrMC: IMU -> camera offset, expressed in the IMU frame [m]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import yaml

from .depth_map import DepthType, parse_depth_type
from .filter_state import FEATURE_BLOCKS, FilterState
from .math_utils import quat_identity, rot_to_quat
from .numerical_checks import check_quaternion


DEFAULT_INIT_COVARIANCE = {
    "pos": 1e-4,
    "vel": 1e-4,
    "acb": 4e-4,
    "gyb": 3e-4,
    "att": 1e-2,
    "vep": 1e-4,
    "vea": 1e-4,
}

DEFAULT_PROCESS_NOISE = {
    "pos": 1e-4,
    "vel": 4e-6,
    "acb": 1e-8,
    "gyb": 3.8e-7,
    "att": 7.6e-7,
    "vep": 1e-8,
    "vea": 1e-8,
    "dep": 1e-4,
    "nor": 1e-5,
}


@dataclass
class CameraExtrinsics:
    """Fixed IMU->camera transform of one camera."""

    q_CM: np.ndarray = field(default_factory=quat_identity)
    MrMC: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass
class FilterConfig:
    """Sizes and settings of a FilterState."""

    n_max: int = 25
    n_levels: int = 4
    patch_size: int = 8
    n_cam: int = 1
    depth_type: DepthType = DepthType.INVERSE
    do_ve_calibration: bool = True
    use_prediction_merge: bool = True
    verbose: bool = False
    extrinsics: List[CameraExtrinsics] = field(default_factory=list)
    init_covariance: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_INIT_COVARIANCE))
    feature_init_depth_var: float = 0.5
    feature_init_bearing_var: float = 0.01
    process_noise: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PROCESS_NOISE))

    def validate(self) -> "FilterConfig":
        """
        Raises:
            ValueError: first inconsistent setting found
        """
        for name in ("n_max", "n_levels", "patch_size", "n_cam"):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        self.depth_type = parse_depth_type(self.depth_type)
        if len(self.extrinsics) > self.n_cam:
            raise ValueError(f"{len(self.extrinsics)} extrinsics entries for n_cam={self.n_cam}")
        for name in FEATURE_BLOCKS:
            if name in self.init_covariance:
                raise ValueError(f"init_covariance cannot set feature block {name!r}")
        for label, var in (("feature_init_covariance.depth", self.feature_init_depth_var),
                           ("feature_init_covariance.bearing", self.feature_init_bearing_var)):
            if not var > 0:
                raise ValueError(f"{label} must be positive, got {var}")
        for section, table in (("init_covariance", self.init_covariance),
                               ("process_noise", self.process_noise)):
            for name, var in table.items():
                if name not in DEFAULT_PROCESS_NOISE:
                    raise ValueError(f"{section}: unknown state block {name!r}")
                if np.any(np.asarray(var, dtype=float) <= 0):
                    raise ValueError(f"{section}.{name} must be positive, got {var}")
        return self

    def camera_extrinsics(self, cam_id: int) -> CameraExtrinsics:
        if cam_id < len(self.extrinsics):
            return self.extrinsics[cam_id]
        return CameraExtrinsics()

    def feature_init_covariance(self) -> np.ndarray:
        """Default 3x3 initialization covariance [dep, nor_1, nor_2]."""
        return np.diag([self.feature_init_depth_var,
                        self.feature_init_bearing_var,
                        self.feature_init_bearing_var])


def _as_bool(section: str, key: str, value: Any) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    raise ValueError(f"{section}.{key} must be true or false, got {value!r}")


def _parse_extrinsics(entry: Dict[str, Any], cam_id: int) -> CameraExtrinsics:
    if "q_CM" in entry and "R_CM" in entry:
        raise ValueError(f"extrinsics[{cam_id}]: give either q_CM or R_CM, not both")
    if "R_CM" in entry:
        R_CM = np.asarray(entry["R_CM"], dtype=float)
        if R_CM.shape != (3, 3):
            raise ValueError(f"extrinsics[{cam_id}].R_CM must be 3x3, got {R_CM.shape}")
        q_CM = rot_to_quat(R_CM)
    else:
        q_CM, valid = check_quaternion(entry.get("q_CM", [1.0, 0.0, 0.0, 0.0]),
                                       name=f"extrinsics[{cam_id}].q_CM")
        if not valid:
            raise ValueError(f"extrinsics[{cam_id}].q_CM is not a valid quaternion")
    MrMC = np.asarray(entry.get("MrMC", [0.0, 0.0, 0.0]), dtype=float)
    if MrMC.shape != (3,):
        raise ValueError(f"extrinsics[{cam_id}].MrMC must have 3 elements, got {MrMC.shape}")
    return CameraExtrinsics(q_CM=q_CM, MrMC=MrMC)


def config_from_dict(raw: Optional[Dict[str, Any]]) -> FilterConfig:
    """Map a parsed YAML document onto a validated FilterConfig."""
    raw = raw or {}
    filt = raw.get("filter", {}) or {}
    feat_cov = raw.get("feature_init_covariance", {}) or {}

    init_cov = dict(DEFAULT_INIT_COVARIANCE)
    init_cov.update(raw.get("init_covariance", {}) or {})
    process_noise = dict(DEFAULT_PROCESS_NOISE)
    process_noise.update(raw.get("process_noise", {}) or {})

    cfg = FilterConfig(
        n_max=int(filt.get("n_max", 25)),
        n_levels=int(filt.get("n_levels", 4)),
        patch_size=int(filt.get("patch_size", 8)),
        n_cam=int(filt.get("n_cam", 1)),
        depth_type=filt.get("depth_type", DepthType.INVERSE),
        do_ve_calibration=_as_bool("filter", "do_ve_calibration", filt.get("do_ve_calibration", True)),
        use_prediction_merge=_as_bool("filter", "use_prediction_merge", filt.get("use_prediction_merge", True)),
        verbose=_as_bool("filter", "verbose", filt.get("verbose", False)),
        extrinsics=[_parse_extrinsics(e or {}, i) for i, e in enumerate(raw.get("extrinsics", []) or [])],
        init_covariance=init_cov,
        feature_init_depth_var=float(feat_cov.get("depth", 0.5)),
        feature_init_bearing_var=float(feat_cov.get("bearing", 0.01)),
        process_noise=process_noise,
    )
    return cfg.validate()


def load_config(config_path: str) -> FilterConfig:
    """
    Load YAML configuration file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ValueError: If a setting is invalid (e.g. unknown depth type)
    """
    with open(config_path, 'r') as f:
        raw = yaml.safe_load(f)
    cfg = config_from_dict(raw)
    print(f"[CONFIG] Loaded {config_path}: n_max={cfg.n_max}, n_cam={cfg.n_cam}, "
          f"depth={cfg.depth_type.name}, ve_calibration={cfg.do_ve_calibration}")
    return cfg


def build_filter_state(cfg: FilterConfig) -> FilterState:
    """
    Create a FilterState from a configuration.

    Fixed extrinsics go to the auxiliary cache and seed the in-state
    extrinsic blocks; the initial covariance and process noise are applied.
    """
    cfg.validate()
    fs = FilterState(cfg.n_max, cfg.n_cam, cfg.n_levels, cfg.patch_size,
                     depth_type=cfg.depth_type, verbose=cfg.verbose)
    aux = fs.state.aux
    aux.do_ve_calibration = cfg.do_ve_calibration
    fs.use_prediction_merge = cfg.use_prediction_merge
    for cam in range(cfg.n_cam):
        extr = cfg.camera_extrinsics(cam)
        aux.q_CM[cam] = extr.q_CM
        aux.MrMC[cam] = extr.MrMC
        fs.state.set("vea", extr.q_CM, cam)
        fs.state.set("vep", extr.MrMC, cam)
    fs.set_initial_covariance(cfg.init_covariance)
    for name, var in cfg.process_noise.items():
        fs.noise.set_block_variance(name, var)
    return fs
