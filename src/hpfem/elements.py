"""Reference-to-physical element maps and numba element kernels."""

from __future__ import annotations

import numpy as np
from numba import njit
from numpy.typing import NDArray

# Newton iteration for inverting the bilinear quad map
_INVERSE_TOL = 1e-12
_INVERSE_MAXITER = 50


def _quad_nodal(xi: NDArray, eta: NDArray) -> tuple[NDArray, NDArray, NDArray]:
    """Bilinear nodal functions and their derivatives at (xi, eta)."""
    N = 0.25 * np.array(
        [(1 - xi) * (1 - eta), (1 + xi) * (1 - eta), (1 + xi) * (1 + eta), (1 - xi) * (1 + eta)]
    )
    dN_dxi = 0.25 * np.array([-(1 - eta), (1 - eta), (1 + eta), -(1 + eta)])
    dN_deta = 0.25 * np.array([-(1 - xi), -(1 + xi), (1 + xi), (1 - xi)])
    return N, dN_dxi, dN_deta


def reference_to_physical(
    coords: NDArray[np.float64], points: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Map reference points (n, 2) onto the element with vertex ``coords``."""
    points = np.atleast_2d(points)
    if len(coords) == 3:
        J = np.column_stack([coords[1] - coords[0], coords[2] - coords[0]])
        return coords[0] + points @ J.T
    N, _, _ = _quad_nodal(points[:, 0], points[:, 1])
    return N.T @ coords


def geometry(
    coords: NDArray[np.float64], points: NDArray[np.float64]
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """
    Element map evaluated at reference points.

    Parameters
    ----------
    coords : (nvert, 2)
        Physical vertex coordinates, counter-clockwise.
    points : (n, 2)
        Reference points.

    Returns
    -------
    x : (n, 2)
        Physical points.
    detJ : (n,)
        Jacobian determinants.
    invJT : (n, 2, 2)
        Inverse-transpose Jacobians; physical gradient = invJT @ reference gradient.
    """
    points = np.atleast_2d(points)
    n = len(points)
    if len(coords) == 3:
        J = np.column_stack([coords[1] - coords[0], coords[2] - coords[0]])
        Js = np.broadcast_to(J, (n, 2, 2))
    else:
        _, dN_dxi, dN_deta = _quad_nodal(points[:, 0], points[:, 1])
        Js = np.empty((n, 2, 2))
        Js[:, :, 0] = dN_dxi.T @ coords
        Js[:, :, 1] = dN_deta.T @ coords

    detJ = Js[:, 0, 0] * Js[:, 1, 1] - Js[:, 0, 1] * Js[:, 1, 0]
    if np.any(detJ <= 0.0):
        raise ValueError(f"Non-positive Jacobian on element with vertices {coords.tolist()}")

    invJT = np.empty((n, 2, 2))
    invJT[:, 0, 0] = Js[:, 1, 1] / detJ
    invJT[:, 0, 1] = -Js[:, 1, 0] / detJ
    invJT[:, 1, 0] = -Js[:, 0, 1] / detJ
    invJT[:, 1, 1] = Js[:, 0, 0] / detJ
    return reference_to_physical(coords, points), detJ, invJT


def physical_to_reference(
    coords: NDArray[np.float64], x: float, y: float
) -> NDArray[np.float64]:
    """Inverse element map of a single physical point."""
    target = np.array([x, y])
    if len(coords) == 3:
        J = np.column_stack([coords[1] - coords[0], coords[2] - coords[0]])
        return np.linalg.solve(J, target - coords[0])

    # Iterates may leave the element, where the map can fold; no Jacobian check here
    ref = np.zeros(2)
    for _ in range(_INVERSE_MAXITER):
        N, dN_dxi, dN_deta = _quad_nodal(ref[0:1], ref[1:2])
        J = np.column_stack([dN_dxi[:, 0] @ coords, dN_deta[:, 0] @ coords])
        try:
            step = np.linalg.solve(J, target - N[:, 0] @ coords)
        except np.linalg.LinAlgError:
            break
        ref += step
        if np.linalg.norm(step) < _INVERSE_TOL:
            break
    return ref


def contains_reference(nvert: int, ref: NDArray[np.float64], tol: float = 1e-10) -> bool:
    if nvert == 3:
        return ref[0] >= -tol and ref[1] >= -tol and ref[0] + ref[1] <= 1.0 + tol
    return bool(np.all(np.abs(ref) <= 1.0 + tol))


def physical_gradients(
    grads_ref: NDArray[np.float64], invJT: NDArray[np.float64]
) -> NDArray[np.float64]:
    """(nf, nq, 2) reference gradients -> physical gradients."""
    return np.einsum("qab,fqb->fqa", invJT, grads_ref)


@njit(nogil=True)
def element_diffusion(grads_ref, invJT, wdet, coeff):
    """
    Element stiffness matrix for -div(coeff grad u).

    Weak form contribution: ∫ coeff grad(phi_j) . grad(phi_i) dx

    Parameters
    ----------
    grads_ref : ndarray (nf, nq, 2)
        Reference gradients of the local shape functions.
    invJT : ndarray (nq, 2, 2)
        Inverse-transpose Jacobians at the quadrature points.
    wdet : ndarray (nq,)
        Quadrature weights times Jacobian determinants.
    coeff : ndarray (nq,)
        Diffusion coefficient at the quadrature points.

    Returns
    -------
    Ke : ndarray (nf, nf)
    """
    nf = grads_ref.shape[0]
    nq = grads_ref.shape[1]
    G = np.empty((nf, nq, 2))
    for i in range(nf):
        for q in range(nq):
            gx = grads_ref[i, q, 0]
            gy = grads_ref[i, q, 1]
            G[i, q, 0] = invJT[q, 0, 0] * gx + invJT[q, 0, 1] * gy
            G[i, q, 1] = invJT[q, 1, 0] * gx + invJT[q, 1, 1] * gy

    Ke = np.zeros((nf, nf))
    for i in range(nf):
        for j in range(i, nf):
            s = 0.0
            for q in range(nq):
                s += wdet[q] * coeff[q] * (G[i, q, 0] * G[j, q, 0] + G[i, q, 1] * G[j, q, 1])
            Ke[i, j] = s
            Ke[j, i] = s
    return Ke


@njit(nogil=True)
def element_load(values, wdet, source):
    """
    Element load vector: ∫ f phi_i dx.

    Parameters
    ----------
    values : ndarray (nf, nq)
        Shape function values at the quadrature points.
    wdet : ndarray (nq,)
    source : ndarray (nq,)
        Source term at the quadrature points.
    """
    nf = values.shape[0]
    nq = values.shape[1]
    fe = np.zeros(nf)
    for i in range(nf):
        s = 0.0
        for q in range(nq):
            s += wdet[q] * source[q] * values[i, q]
        fe[i] = s
    return fe
