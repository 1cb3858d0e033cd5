"""
VIO Filter State Package

State representation and feature-slot lifecycle of a visual-inertial
filter: block layout of the mean state and covariance, depth
parameterizations, camera extrinsics handling and safe reuse of
feature slots.

Version: 1.0.0

Submodules:
- math_utils: Quaternion operations, rotation matrices
- bearing: 2-parameter unit bearing vectors
- depth_map: Depth parameterizations (regular, inverse, log, hyperbolic)
- layout: Named block layout resolved to fixed offsets
- state: Mean state, prediction measurement and process-noise layout
- filter_state: Covariance ownership and feature lifecycle
- numerical_checks: Finite-value and covariance tripwires
- config: YAML configuration and FilterState factory

Usage:
    from vio_state.config import load_config, build_filter_state
    from vio_state.filter_state import FilterState
    from vio_state.depth_map import DepthMap, DepthType

    fs = build_filter_state(load_config("configs/filter_state.yaml"))
    fs.initialize_from_accelerometer(acc0)
    fs.initialize_feature(0, bearing, depth_param, init_cov)
"""

__version__ = "1.0.0"

# Lazy module imports - access as vio_state.config, vio_state.state, etc.
import importlib

_SUBMODULES = {
    "math_utils", "bearing", "depth_map", "layout", "state",
    "filter_state", "numerical_checks", "config",
}


def __getattr__(name):
    """Lazy module loading to avoid importing all dependencies at once."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'vio_state' has no attribute '{name}'")


def __dir__():
    """List available submodules."""
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
