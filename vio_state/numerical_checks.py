#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation Module
===========================

Tripwires for values entering the filter state: non-finite numbers,
degenerate quaternions and malformed covariance blocks.
"""

import numpy as np


def assert_finite(name, M, extra_info=None, raise_on_fail=False):
    """
    Tripwire: check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises ValueError on failure. If False, only prints warning.

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if M is None:
        print(f"[TRIPWIRE] {name}: is None!")
        if raise_on_fail:
            raise ValueError(f"{name} is None")
        return False

    M = np.asarray(M, dtype=float)
    if np.all(np.isfinite(M)):
        return True

    print(f"[TRIPWIRE] NaN/inf detected in {name} (shape {M.shape})")
    if M.size <= 100:
        print(f"  value:\n{M}")
    if np.any(np.isnan(M)):
        print(f"  NaN locations (first 10): {np.argwhere(np.isnan(M))[:10].tolist()}")
    if np.any(np.isinf(M)):
        print(f"  Inf locations (first 10): {np.argwhere(np.isinf(M))[:10].tolist()}")
    if extra_info:
        for key, val in extra_info.items():
            print(f"  {key}: {val}")

    if raise_on_fail:
        raise ValueError(f"NaN/inf detected in {name}")
    return False


def check_quaternion(q, name="quaternion", normalize=True):
    """
    Validate quaternion and optionally normalize.

    Returns:
    --------
    q_out : np.ndarray
        Validated (and possibly normalized) quaternion
    is_valid : bool
        True if quaternion is valid
    """
    q = np.asarray(q, dtype=float)
    if q.shape != (4,):
        print(f"[TRIPWIRE] {name}: expected shape (4,), got {q.shape}")
        return q, False
    if not assert_finite(name, q):
        return q, False

    q_norm = np.linalg.norm(q)
    if q_norm < 1e-8:
        print(f"[TRIPWIRE] {name}: norm near zero ({q_norm:.6e})")
        return q, False
    if abs(q_norm - 1.0) > 0.1:
        print(f"[TRIPWIRE] {name}: norm far from 1 ({q_norm:.6f})")

    if normalize:
        return q / q_norm, True
    return q, True


def check_covariance_block(P, dim, name="covariance", require_pd=True):
    """
    Validate a small covariance block (shape, finiteness, symmetry, PD).

    Raises:
        ValueError: describing the first failed check
    """
    P = np.asarray(P, dtype=float)
    if P.shape != (dim, dim):
        raise ValueError(f"{name}: expected shape ({dim}, {dim}), got {P.shape}")
    assert_finite(name, P, raise_on_fail=True)
    if not np.allclose(P, P.T, rtol=1e-5, atol=1e-12):
        asymmetry = np.max(np.abs(P - P.T))
        raise ValueError(f"{name}: not symmetric (max diff={asymmetry:.6e})")
    if require_pd:
        try:
            np.linalg.cholesky(P)
        except np.linalg.LinAlgError:
            raise ValueError(f"{name}: not positive definite "
                             f"(eigenvalues {np.linalg.eigvalsh(P)})") from None
    return P
