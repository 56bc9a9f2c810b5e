"""Tests for quadrature rules and the hierarchical shapeset.

Run with: uv run pytest tests/test_shapeset.py -v
"""

from math import factorial

import numpy as np
import pytest

from hpfem.quadrature import gauss_legendre, quad_rule_square, quad_rule_triangle
from hpfem.shapeset import (
    BUBBLE,
    EDGE,
    VERTEX,
    bubble_count,
    bubble_functions,
    edge_projection,
    element_functions,
    evaluate,
    kernel,
    lobatto,
)


class TestQuadrature:
    """Gauss rules on the reference elements."""

    def test_triangle_weights_sum(self):
        for order in [0, 2, 5, 10]:
            _, w = quad_rule_triangle(order)
            assert np.isclose(w.sum(), 0.5)

    def test_triangle_exactness(self):
        """∫ x^a y^b over the reference triangle = a! b! / (a + b + 2)!."""
        order = 8
        pts, w = quad_rule_triangle(order)
        for a in range(order + 1):
            for b in range(order + 1 - a):
                exact = factorial(a) * factorial(b) / factorial(a + b + 2)
                numerical = np.sum(w * pts[:, 0] ** a * pts[:, 1] ** b)
                assert np.isclose(numerical, exact, atol=1e-14), f"Failed for x^{a} y^{b}"

    def test_square_exactness(self):
        order = 7
        pts, w = quad_rule_square(order)
        for a in range(order + 1):
            for b in range(order + 1):
                exact = (2.0 / (a + 1) if a % 2 == 0 else 0.0) * (2.0 / (b + 1) if b % 2 == 0 else 0.0)
                numerical = np.sum(w * pts[:, 0] ** a * pts[:, 1] ** b)
                assert np.isclose(numerical, exact, atol=1e-13)

    def test_rules_read_only(self):
        s, w = gauss_legendre(4)
        with pytest.raises(ValueError):
            w[0] = 1.0


class TestLobatto:
    """1D hierarchical functions."""

    def test_vanish_at_endpoints(self):
        for k in range(2, 11):
            assert np.allclose(lobatto(k)(np.array([-1.0, 1.0])), 0.0, atol=1e-13)

    def test_derivatives_orthonormal(self):
        s, w = gauss_legendre(12)
        D = np.array([lobatto(k).deriv()(s) for k in range(2, 11)])
        gram = (D * w) @ D.T
        assert np.allclose(gram, np.eye(9), atol=1e-12)

    def test_kernel(self):
        s = np.linspace(-1, 1, 17)
        for k in range(2, 11):
            assert np.allclose(0.25 * (1 - s**2) * kernel(k)(s), lobatto(k)(s), atol=1e-13)

    def test_parity(self):
        s = np.linspace(-1, 1, 9)
        for k in range(2, 9):
            assert np.allclose(lobatto(k)(-s), (-1) ** k * lobatto(k)(s))


class TestShapeFunctions:
    """Shape functions on the reference triangle and quad."""

    @pytest.mark.parametrize("nvert,order,expected", [(3, 2, 0), (3, 3, 1), (3, 5, 6), (4, 1, 0), (4, 2, 1), (4, 4, 9)])
    def test_bubble_count(self, nvert, order, expected):
        assert bubble_count(nvert, order) == expected
        assert len(bubble_functions(nvert, order)) == expected

    def test_element_function_count(self):
        fns = element_functions(4, 3, (3, 2, 1, 3))
        kinds = [f[0] for f in fns]
        assert kinds.count(VERTEX) == 4
        assert kinds.count(EDGE) == 2 + 1 + 0 + 2
        assert kinds.count(BUBBLE) == 4

    @pytest.mark.parametrize("nvert", [3, 4])
    def test_vertex_partition_of_unity(self, nvert):
        rng = np.random.default_rng(0)
        if nvert == 3:
            pts = rng.dirichlet([1, 1, 1], size=20)[:, 1:]
        else:
            pts = rng.uniform(-1, 1, size=(20, 2))
        fns = tuple((VERTEX, i, 0) for i in range(nvert))
        values, grads = evaluate(nvert, fns, (False,) * nvert, pts)
        assert np.allclose(values.sum(axis=0), 1.0)
        assert np.allclose(grads.sum(axis=0), 0.0)

    def test_triangle_edge_trace(self):
        """On edge 0 (y = 0, s = 2x - 1) the edge function equals l_k(s)."""
        x = np.linspace(0, 1, 11)
        pts = np.column_stack([x, np.zeros_like(x)])
        for k in range(2, 7):
            values, _ = evaluate(3, ((EDGE, 0, k),), (False,) * 3, pts)
            assert np.allclose(values[0], lobatto(k)(2 * x - 1), atol=1e-13)

    def test_quad_edge_trace_direction(self):
        """Edge 2 runs from (1, 1) to (-1, 1)."""
        xi = np.linspace(-1, 1, 11)
        pts = np.column_stack([xi, np.ones_like(xi)])
        values, _ = evaluate(4, ((EDGE, 2, 3),), (False,) * 4, pts)
        assert np.allclose(values[0], lobatto(3)(-xi), atol=1e-13)

    @pytest.mark.parametrize("nvert", [3, 4])
    def test_edge_functions_vanish_on_other_edges(self, nvert):
        t = np.linspace(0, 1, 7)
        if nvert == 3:
            corners = np.array([[0, 0], [1, 0], [0, 1]], dtype=float)
        else:
            corners = np.array([[-1, -1], [1, -1], [1, 1], [-1, 1]], dtype=float)
        for i in range(nvert):
            fns = ((EDGE, i, 2), (EDGE, i, 3))
            for j in range(nvert):
                if j == i:
                    continue
                a, b = corners[j], corners[(j + 1) % nvert]
                pts = a + t[:, None] * (b - a)
                values, _ = evaluate(nvert, fns, (False,) * nvert, pts)
                assert np.allclose(values, 0.0, atol=1e-13)

    @pytest.mark.parametrize("nvert,order", [(3, 5), (4, 4)])
    def test_bubbles_vanish_on_boundary(self, nvert, order):
        t = np.linspace(0, 1, 7)
        if nvert == 3:
            corners = np.array([[0, 0], [1, 0], [0, 1]], dtype=float)
        else:
            corners = np.array([[-1, -1], [1, -1], [1, 1], [-1, 1]], dtype=float)
        fns = tuple(bubble_functions(nvert, order))
        for j in range(nvert):
            a, b = corners[j], corners[(j + 1) % nvert]
            values, _ = evaluate(nvert, fns, (False,) * nvert, a + t[:, None] * (b - a))
            assert np.allclose(values, 0.0, atol=1e-13)

    @pytest.mark.parametrize("nvert", [3, 4])
    def test_gradients_match_finite_differences(self, nvert):
        fns = element_functions(nvert, 4, (4,) * nvert)
        pt = np.array([[0.21, 0.33]]) if nvert == 3 else np.array([[0.21, -0.43]])
        h = 1e-6
        _, grads = evaluate(nvert, fns, (False,) * nvert, pt)
        vx_p, _ = evaluate(nvert, fns, (False,) * nvert, pt + [h, 0])
        vx_m, _ = evaluate(nvert, fns, (False,) * nvert, pt - [h, 0])
        vy_p, _ = evaluate(nvert, fns, (False,) * nvert, pt + [0, h])
        vy_m, _ = evaluate(nvert, fns, (False,) * nvert, pt - [0, h])
        assert np.allclose(grads[:, 0, 0], (vx_p - vx_m)[:, 0] / (2 * h), atol=1e-6)
        assert np.allclose(grads[:, 0, 1], (vy_p - vy_m)[:, 0] / (2 * h), atol=1e-6)

    def test_flip_changes_sign_of_odd_degrees(self):
        fns = ((EDGE, 1, 2), (EDGE, 1, 3))
        pt = np.array([[0.4, 0.3]])
        plain, _ = evaluate(3, fns, (False, False, False), pt)
        flipped, _ = evaluate(3, fns, (False, True, False), pt)
        assert np.isclose(flipped[0, 0], plain[0, 0])
        assert np.isclose(flipped[1, 0], -plain[1, 0])


class TestEdgeProjection:
    """Projection onto the edge functions."""

    @staticmethod
    def project(f, q, n_points):
        s, M, E = edge_projection(q, n_points)
        return M @ f(s) + E @ f(np.array([-1.0, 1.0]))

    def test_recovers_lobatto_coefficients(self):
        def f(s):
            return 2.0 * lobatto(3)(s) - 0.5 * lobatto(5)(s) + 3.0 * lobatto(0)(s) + lobatto(1)(s)

        assert np.allclose(self.project(f, 5, 10), [0.0, 2.0, 0.0, -0.5], atol=1e-12)

    @pytest.mark.parametrize("q", [2, 3, 4, 7])
    def test_constants_have_no_edge_part(self, q):
        assert np.allclose(self.project(lambda s: np.full_like(s, 20.0), q, q + 2), 0.0, atol=1e-12)

    def test_linear_has_no_edge_part(self):
        assert np.allclose(self.project(lambda s: 1.0 + 3.0 * s, 4, 8), 0.0, atol=1e-13)

    def test_quadratic_edge_part(self):
        """s^2 = 1 + 4 l_2 / sqrt(6) with l_2 = sqrt(6)/4 (s^2 - 1)."""
        c = self.project(lambda s: s**2, 3, 6)
        assert np.allclose(c, [4.0 / np.sqrt(6.0), 0.0], atol=1e-12)

    def test_order_one_is_empty(self):
        _, M, E = edge_projection(1, 4)
        assert M.shape == (0, 4)
        assert E.shape == (0, 2)
