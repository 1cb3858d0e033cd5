#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Depth Parameterization Module
=============================

Maps the scalar depth parameter p kept in the filter state to the physical
depth d of a feature, together with the derivatives needed to linearize
measurement models around it.

Encodings (DepthType):
----------------------
- REGULAR:     p = d
- INVERSE:     p = 1/d       (p clamped to |p| >= 1e-6, keeping the sign)
- LOG:         p = ln(d)
- HYPERBOLIC:  p = asinh(d)

For every encoding map(p) returns (d, d_p, p_d, p_d_p):
- d      : depth
- d_p    : ∂d/∂p
- p_d    : ∂p/∂d
- p_d_p  : ∂(p_d)/∂p
"""

from enum import IntEnum
from typing import NamedTuple, Union

import numpy as np


INVERSE_DEPTH_EPS = 1e-6


class DepthType(IntEnum):
    """Depth encodings. Integer values match the config file convention."""
    REGULAR = 0
    INVERSE = 1
    LOG = 2
    HYPERBOLIC = 3


_DEPTH_TYPE_NAMES = {
    "regular": DepthType.REGULAR,
    "direct": DepthType.REGULAR,
    "inverse": DepthType.INVERSE,
    "log": DepthType.LOG,
    "logarithmic": DepthType.LOG,
    "hyperbolic": DepthType.HYPERBOLIC,
}


class DepthValues(NamedTuple):
    d: float
    d_p: float
    p_d: float
    p_d_p: float


def parse_depth_type(value: Union[int, str, DepthType]) -> DepthType:
    """
    Resolve an integer, name or DepthType into a DepthType.

    Raises:
        ValueError: unknown encoding (no silent fallback)
    """
    if isinstance(value, DepthType):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid type for depth parameterization: {value!r}")
    if isinstance(value, (int, np.integer)):
        try:
            return DepthType(int(value))
        except ValueError:
            raise ValueError(f"Invalid type for depth parameterization: {value!r}") from None
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _DEPTH_TYPE_NAMES:
            return _DEPTH_TYPE_NAMES[key]
        if key.isdigit():
            return parse_depth_type(int(key))
    raise ValueError(f"Invalid type for depth parameterization: {value!r}")


def map_regular(p: float) -> DepthValues:
    return DepthValues(float(p), 1.0, 1.0, 0.0)


def map_inverse(p: float) -> DepthValues:
    p_temp = float(p)
    if abs(p_temp) < INVERSE_DEPTH_EPS:
        p_temp = INVERSE_DEPTH_EPS if p_temp >= 0 else -INVERSE_DEPTH_EPS
    d = 1.0 / p_temp
    return DepthValues(d, -d * d, -p_temp * p_temp, -2.0 * p_temp)


def map_log(p: float) -> DepthValues:
    d = float(np.exp(p))
    d_p = d
    return DepthValues(d, d_p, 1.0 / d, -d_p / (d * d))


def map_hyperbolic(p: float) -> DepthValues:
    d = float(np.sinh(p))
    d_p = float(np.cosh(p))
    denom = d * d + 1.0
    return DepthValues(d, d_p, 1.0 / np.sqrt(denom), -d * d_p / denom ** 1.5)


_MAPPERS = {
    DepthType.REGULAR: map_regular,
    DepthType.INVERSE: map_inverse,
    DepthType.LOG: map_log,
    DepthType.HYPERBOLIC: map_hyperbolic,
}


class DepthMap:
    """
    Stateless depth parameterization strategy.

    The only state is the selected DepthType; map() is a pure function of p.

    Usage:
        depth_map = DepthMap(DepthType.INVERSE)
        d, d_p, p_d, p_d_p = depth_map.map(0.5)   # d == 2.0
    """

    def __init__(self, depth_type: Union[int, str, DepthType] = DepthType.REGULAR):
        self.type = DepthType.REGULAR
        self.set_type(depth_type)

    def set_type(self, depth_type: Union[int, str, DepthType]):
        """
        Select the encoding.

        Raises:
            ValueError: unrecognized selector; the current type is left as is
        """
        try:
            self.type = parse_depth_type(depth_type)
        except ValueError:
            print(f"[DEPTH] Rejected depth parameterization {depth_type!r}, keeping {self.type.name}")
            raise

    def map(self, p: float) -> DepthValues:
        return _MAPPERS[self.type](p)

    def depth(self, p: float) -> float:
        return self.map(p).d

    def depth_to_param(self, d: float) -> float:
        """Inverse mapping: parameter value encoding physical depth d."""
        d = float(d)
        if self.type == DepthType.REGULAR:
            return d
        if self.type == DepthType.INVERSE:
            if d == 0.0:
                raise ValueError("Zero depth has no inverse-depth parameter")
            return 1.0 / d
        if self.type == DepthType.LOG:
            if d <= 0.0:
                raise ValueError(f"Log depth requires positive depth, got {d}")
            return float(np.log(d))
        return float(np.arcsinh(d))

    def __repr__(self):
        return f"DepthMap({self.type.name})"
