"""Gauss quadrature on the reference square [-1, 1]^2 and triangle (0,0)-(1,0)-(0,1)."""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss
from numpy.typing import NDArray

MAX_QUAD_ORDER = 60


def _frozen(*arrays: NDArray[np.float64]) -> tuple[NDArray[np.float64], ...]:
    for a in arrays:
        a.setflags(write=False)
    return arrays


@lru_cache(maxsize=None)
def gauss_legendre(n_points: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """n-point Gauss-Legendre rule on [-1, 1] (exact to degree 2n-1)."""
    if n_points < 1:
        raise ValueError(f"n_points must be positive, got {n_points}")
    pts, wts = leggauss(n_points)
    return _frozen(pts, wts)


def _check_order(order: int) -> None:
    if not 0 <= order <= MAX_QUAD_ORDER:
        raise ValueError(f"Quadrature order {order} outside [0, {MAX_QUAD_ORDER}]")


@lru_cache(maxsize=None)
def quad_rule_square(order: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Tensor Gauss rule exact for polynomials of degree ``order`` in each variable."""
    _check_order(order)
    s, w = gauss_legendre(order // 2 + 1)
    XI, ETA = np.meshgrid(s, s, indexing="ij")
    points = np.column_stack([XI.ravel(), ETA.ravel()])
    weights = np.outer(w, w).ravel()
    return _frozen(points, weights)


@lru_cache(maxsize=None)
def quad_rule_triangle(order: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Collapsed (Duffy) Gauss rule exact for total degree ``order``.

    The unit square (u, v) maps to the triangle by x = u (1 - v), y = v with
    Jacobian (1 - v), which raises the degree in v by one.
    """
    _check_order(order)
    s, w = gauss_legendre((order + 3) // 2)
    t = 0.5 * (s + 1.0)
    wt = 0.5 * w
    U, V = np.meshgrid(t, t, indexing="ij")
    WU, WV = np.meshgrid(wt, wt, indexing="ij")
    x = (U * (1.0 - V)).ravel()
    y = V.ravel()
    weights = (WU * WV * (1.0 - V)).ravel()
    return _frozen(np.column_stack([x, y]), weights)


def quad_rule(nvert: int, order: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Rule for a triangle (3) or quad (4) reference element."""
    if nvert == 3:
        return quad_rule_triangle(order)
    if nvert == 4:
        return quad_rule_square(order)
    raise ValueError(f"No reference element with {nvert} vertices")
