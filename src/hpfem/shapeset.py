"""Hierarchical H1 shapeset on the reference triangle and quadrilateral.

Reference triangle: (0,0), (1,0), (0,1) with barycentrics
``l0 = 1 - x - y, l1 = x, l2 = y``. Reference quad: [-1, 1]^2 with vertices
(-1,-1), (1,-1), (1,1), (-1,1). Local edge ``i`` runs from local vertex ``i``
to ``i + 1`` and is parametrised by ``s`` in [-1, 1].

Along every edge, vertex functions restrict to the linear Lobatto functions
and edge functions of degree k restrict to the Lobatto function ``l_k(s)``,
for triangles and quads alike, so traces of neighbouring elements of either
kind match.

Shape functions are identified by tuples ``(kind, a, b)``:

- ``(VERTEX, i, 0)``: vertex function of local vertex i
- ``(EDGE, i, k)``: edge function of degree k (2 <= k) on local edge i
- ``(BUBBLE, i, j)``: interior function; Legendre indices (triangle) or
  Lobatto indices (quad)
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.polynomial import Legendre, Polynomial
from numpy.polynomial import polynomial as P
from numpy.typing import NDArray

from .quadrature import gauss_legendre, quad_rule

VERTEX, EDGE, BUBBLE = 0, 1, 2

MAX_ORDER = 10

ShapeFunction = tuple[int, int, int]

# Gradients of the triangle barycentrics
_GRAD_L = np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])

# Quad vertices as (xi-Lobatto, eta-Lobatto) index pairs
_QUAD_VERTEX = ((0, 0), (1, 0), (1, 1), (0, 1))


@lru_cache(maxsize=None)
def lobatto(k: int) -> Polynomial:
    """Lobatto shape function l_k on [-1, 1]; l_k' are H1_0-orthonormal for k >= 2."""
    if k == 0:
        return Polynomial([0.5, -0.5])
    if k == 1:
        return Polynomial([0.5, 0.5])
    poly = (Legendre.basis(k) - Legendre.basis(k - 2)).convert(kind=Polynomial)
    return poly / np.sqrt(2.0 * (2 * k - 1))


@lru_cache(maxsize=None)
def kernel(k: int) -> Polynomial:
    """Kernel function: l_k(s) = (1 - s^2)/4 * kernel_k(s)."""
    quotient, _ = P.polydiv(lobatto(k).coef, np.array([0.25, 0.0, -0.25]))
    return Polynomial(quotient)


@lru_cache(maxsize=None)
def legendre(i: int) -> Polynomial:
    return Legendre.basis(i).convert(kind=Polynomial)


def _with_deriv(poly: Polynomial, x: NDArray[np.float64]) -> tuple[NDArray, NDArray]:
    return poly(x), poly.deriv()(x)


def bubble_count(nvert: int, order: int) -> int:
    if nvert == 3:
        return (order - 1) * (order - 2) // 2
    return (order - 1) ** 2


def bubble_functions(nvert: int, order: int) -> list[ShapeFunction]:
    """Interior functions of an element of the given order, lowest degree first."""
    fns: list[ShapeFunction] = []
    if nvert == 3:
        for n in range(3, order + 1):
            fns.extend((BUBBLE, i, n - 3 - i) for i in range(n - 2))
    else:
        for n in range(2, order + 1):
            fns.extend((BUBBLE, i, n) for i in range(2, n))
            fns.extend((BUBBLE, n, j) for j in range(2, n + 1))
    return fns


def element_functions(
    nvert: int, order: int, edge_orders: tuple[int, ...]
) -> tuple[ShapeFunction, ...]:
    """Local basis: vertex functions, edge functions up to each edge order, bubbles."""
    fns: list[ShapeFunction] = [(VERTEX, i, 0) for i in range(nvert)]
    for i, q in enumerate(edge_orders):
        fns.extend((EDGE, i, k) for k in range(2, q + 1))
    fns.extend(bubble_functions(nvert, order))
    return tuple(fns)


def trace_functions(q: int, s: NDArray[np.float64]) -> NDArray[np.float64]:
    """Edge traces [l0, l1, l2, ..., lq] evaluated at s; shape (q + 1, len(s))."""
    return np.array([lobatto(k)(s) for k in range(q + 1)])


def _triangle(fn: ShapeFunction, x: NDArray, y: NDArray) -> tuple[NDArray, NDArray]:
    lam = np.array([1.0 - x - y, x, y])
    kind, a, b = fn
    grad = np.empty(x.shape + (2,))

    if kind == VERTEX:
        grad[:] = _GRAD_L[a]
        return lam[a], grad

    if kind == EDGE:
        i, j = a, (a + 1) % 3
        s = lam[j] - lam[i]
        kv, kd = _with_deriv(kernel(b), s)
        prod = lam[i] * lam[j]
        dprod = np.outer(lam[j], _GRAD_L[i]) + np.outer(lam[i], _GRAD_L[j])
        grad[:] = dprod * kv[:, None] + np.outer(prod * kd, _GRAD_L[j] - _GRAD_L[i])
        return prod * kv, grad

    bub = lam[0] * lam[1] * lam[2]
    dbub = (
        np.outer(lam[1] * lam[2], _GRAD_L[0])
        + np.outer(lam[0] * lam[2], _GRAD_L[1])
        + np.outer(lam[0] * lam[1], _GRAD_L[2])
    )
    pa, dpa = _with_deriv(legendre(a), 2.0 * lam[1] - 1.0)
    pb, dpb = _with_deriv(legendre(b), 2.0 * lam[2] - 1.0)
    grad[:] = (
        dbub * (pa * pb)[:, None]
        + np.outer(bub * dpa * pb, 2.0 * _GRAD_L[1])
        + np.outer(bub * pa * dpb, 2.0 * _GRAD_L[2])
    )
    return bub * pa * pb, grad


def _quad(fn: ShapeFunction, xi: NDArray, eta: NDArray) -> tuple[NDArray, NDArray]:
    kind, a, b = fn
    # Each function is f(sx * xi) * g(sy * eta) for Lobatto f, g and signs sx, sy
    if kind == VERTEX:
        (i, j), sx, sy = _QUAD_VERTEX[a], 1.0, 1.0
    elif kind == EDGE:
        i, j, sx, sy = (
            (b, 0, 1.0, 1.0),
            (1, b, 1.0, 1.0),
            (b, 1, -1.0, 1.0),
            (0, b, 1.0, -1.0),
        )[a]
    else:
        i, j, sx, sy = a, b, 1.0, 1.0

    fx, dfx = _with_deriv(lobatto(i), sx * xi)
    gy, dgy = _with_deriv(lobatto(j), sy * eta)
    grad = np.empty(xi.shape + (2,))
    grad[:, 0] = sx * dfx * gy
    grad[:, 1] = fx * sy * dgy
    return fx * gy, grad


def evaluate(
    nvert: int,
    functions: tuple[ShapeFunction, ...],
    flips: tuple[bool, ...],
    points: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Evaluate shape functions at reference points.

    ``flips[i]`` is True when local edge i runs against the global edge
    orientation; odd-degree edge functions then change sign so that local
    functions coincide with the globally oriented ones.

    Returns
    -------
    values : (n_functions, n_points)
    grads : (n_functions, n_points, 2), reference gradients
    """
    points = np.atleast_2d(points)
    x, y = points[:, 0], points[:, 1]
    shape_fn = _triangle if nvert == 3 else _quad
    values = np.empty((len(functions), len(x)))
    grads = np.empty((len(functions), len(x), 2))
    for n, fn in enumerate(functions):
        v, g = shape_fn(fn, x, y)
        if fn[0] == EDGE and flips[fn[1]] and fn[2] % 2 == 1:
            v, g = -v, -g
        values[n] = v
        grads[n] = g
    return values, grads


@lru_cache(maxsize=4096)
def evaluate_at_rule(
    nvert: int,
    functions: tuple[ShapeFunction, ...],
    flips: tuple[bool, ...],
    order: int,
) -> tuple[NDArray, NDArray, NDArray, NDArray]:
    """Cached evaluation at the quadrature rule of the given order.

    Returns (points, weights, values, grads).
    """
    points, weights = quad_rule(nvert, order)
    values, grads = evaluate(nvert, functions, flips, points)
    values.setflags(write=False)
    grads.setflags(write=False)
    return points, weights, values, grads


@lru_cache(maxsize=None)
def edge_projection(
    q: int, n_points: int
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """
    Projection of an edge trace onto the edge functions l_2..l_q.

    The trace minus its linear interpolant is projected in the H1_0
    seminorm. Since the l_k' are orthonormal and l_k vanishes at both ends,
    integration by parts gives

        c_k = -∫ f l_k'' ds + f(1) l_k'(1) - f(-1) l_k'(-1),

    which is zero for linear f.

    Returns
    -------
    s : (n_points,)
        Gauss points on [-1, 1].
    M : (q - 1, n_points)
        Interior part, applied to ``f(s)``.
    E : (q - 1, 2)
        Endpoint part, applied to ``[f(-1), f(1)]``.
    """
    s, w = gauss_legendre(n_points)
    ks = range(2, q + 1)
    M = np.array([-w * lobatto(k).deriv(2)(s) for k in ks]).reshape(max(q - 1, 0), n_points)
    E = np.array([[-lobatto(k).deriv()(-1.0), lobatto(k).deriv()(1.0)] for k in ks]).reshape(
        max(q - 1, 0), 2
    )
    M.setflags(write=False)
    E.setflags(write=False)
    return s, M, E
