"""Tests for LinearSolver, Solution and the end-to-end heat problem.

Run with: uv run pytest tests/test_solvers.py -v
"""

import numpy as np
import pytest

from hpfem import (
    ALUMINUM,
    COPPER,
    ConstantEssentialBC,
    DimensionMismatchError,
    EssentialBC,
    EssentialBCs,
    H1Space,
    LinearSolver,
    Mesh,
    NotSolvedError,
    Solution,
    SolverError,
    SolverParameters,
    WeakFormPoisson,
    l_shape_mesh,
    vector_to_solution,
)

MARKERS = ["Bottom", "Inner", "Outer", "Left"]

# Interior points of the L-shaped domain (one per material part)
SAMPLE_POINTS = [(0.3, -0.4), (0.6, 0.1), (0.2, 0.6), (-0.5, 0.5), (-0.25, 0.8), (0.05, 0.02)]


def constant_bcs(value=20.0):
    return EssentialBCs(ConstantEssentialBC(MARKERS, value))


def heat_problem(order=2, refine_aluminum=True):
    mesh = l_shape_mesh()
    mesh.refine_all()
    if refine_aluminum:
        mesh.refine_single(ALUMINUM)
    space = H1Space(mesh, constant_bcs(), order)
    wf = WeakFormPoisson({ALUMINUM: 236.0, COPPER: 386.0}, source=500.0)
    return space, wf


class TestLinearSolver:
    """Solve contract and failure modes."""

    def test_not_solved(self):
        space, wf = heat_problem()
        solver = LinearSolver(wf, space)
        with pytest.raises(NotSolvedError):
            solver.get_sln_vector()

    def test_solve_returns_vector(self):
        space, wf = heat_problem()
        solver = LinearSolver(wf, space)
        assert solver.solve()
        u = solver.get_sln_vector()
        assert u.shape == (space.get_num_dofs(),)
        assert solver.metrics.converged
        assert solver.metrics.num_dofs == space.get_num_dofs()
        assert solver.metrics.residual < 1e-10

    def test_solve_with_arguments(self):
        space, wf = heat_problem()
        solver = LinearSolver()
        assert solver.solve(wf, space)

    @pytest.mark.parametrize("method", ["cg", "gmres", "bicgstab"])
    def test_iterative_matches_direct(self, method):
        space, wf = heat_problem()
        direct = LinearSolver(wf, space)
        direct.solve()
        iterative = LinearSolver(wf, space, SolverParameters(method=method, tolerance=1e-11))
        iterative.solve()
        assert np.allclose(iterative.get_sln_vector(), direct.get_sln_vector(), atol=1e-6)
        assert iterative.metrics.iterations > 0

    def test_iteration_budget(self):
        space, wf = heat_problem(order=3)
        params = SolverParameters(method="cg", tolerance=1e-14, max_iterations=1)
        solver = LinearSolver(wf, space, params)
        with pytest.raises(SolverError) as excinfo:
            solver.solve()
        assert excinfo.value.diagnostic["reason"] == "max iterations"
        with pytest.raises(NotSolvedError):
            solver.get_sln_vector()

    def test_time_budget(self):
        space, wf = heat_problem(order=3)
        params = SolverParameters(method="cg", tolerance=1e-14, time_budget=0.0)
        solver = LinearSolver(wf, space, params)
        with pytest.raises(SolverError) as excinfo:
            solver.solve()
        assert excinfo.value.diagnostic["reason"] == "time budget"
        assert not solver.metrics.converged

    def test_retry_after_failure(self):
        space, wf = heat_problem()
        solver = LinearSolver(wf, space, SolverParameters(method="cg", max_iterations=1))
        with pytest.raises(SolverError):
            solver.solve()
        solver.params = SolverParameters(method="direct")
        assert solver.solve()

    def test_singular_system(self):
        space, _ = heat_problem()
        wf = WeakFormPoisson({ALUMINUM: 0.0, COPPER: 0.0}, source=1.0)
        with pytest.raises(SolverError) as excinfo:
            LinearSolver(wf, space).solve()
        assert excinfo.value.diagnostic["reason"] == "singular"

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            SolverParameters(method="jacobi")


class TestSolution:
    """Binding vectors and evaluating fields."""

    def test_dimension_mismatch(self):
        space, wf = heat_problem()
        sln = Solution()
        with pytest.raises(DimensionMismatchError):
            vector_to_solution(np.zeros(space.get_num_dofs() + 1), space, sln)
        assert not sln.is_bound

    def test_mismatch_keeps_previous_binding(self):
        space, wf = heat_problem()
        solver = LinearSolver(wf, space)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        value = sln.get_pt_value(0.3, -0.4)
        with pytest.raises(DimensionMismatchError):
            vector_to_solution(np.zeros(3), space, sln)
        assert sln.get_pt_value(0.3, -0.4) == value

    def test_empty_solution(self):
        with pytest.raises(NotSolvedError):
            Solution().get_pt_value(0.0, 0.0)

    def test_snapshot_survives_refinement(self):
        space, wf = heat_problem()
        solver = LinearSolver(wf, space)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        value = sln.get_pt_value(0.3, -0.4)
        space.mesh.refine_all()
        assert sln.get_pt_value(0.3, -0.4) == value

    def test_point_outside(self):
        space, wf = heat_problem()
        solver = LinearSolver(wf, space)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        with pytest.raises(ValueError):
            sln.get_pt_value(-0.5, -0.5)

    def test_linearize_sizes(self):
        space, wf = heat_problem(refine_aluminum=False)
        solver = LinearSolver(wf, space)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        points, triangles, values, owner = sln.linearize(3)
        # 8 quads: 16 points, 18 triangles; 8 triangles: 10 points, 9 triangles
        assert len(points) == len(values) == 8 * 16 + 8 * 10
        assert len(triangles) == len(owner) == 8 * 18 + 8 * 9


class TestExactSolutions:
    """Solutions contained in the discrete space are reproduced."""

    def test_uniform_temperature(self):
        mesh = l_shape_mesh()
        mesh.refine_all()
        mesh.refine_single(ALUMINUM)
        space = H1Space(mesh, constant_bcs(20.0), 3)
        wf = WeakFormPoisson({ALUMINUM: 236.0, COPPER: 236.0}, source=0.0)
        solver = LinearSolver(wf, space)
        solver.solve()
        u = solver.get_sln_vector()
        nv = space.get_vertex_functions_count()
        assert np.allclose(u[:nv], 20.0, atol=1e-9)
        assert np.allclose(u[nv:], 0.0, atol=1e-9)
        sln = vector_to_solution(u, space)
        for x, y in SAMPLE_POINTS:
            assert np.isclose(sln.get_pt_value(x, y), 20.0, atol=1e-9)

    @pytest.mark.parametrize("levels", [1, 2])
    def test_quadratic_on_irregular_mesh(self, levels):
        """u = x^2 + y^2 solves -lap(u) = -4 and lies in every order >= 2 space."""
        mesh = l_shape_mesh()
        mesh.refine(ALUMINUM, levels)
        bcs = EssentialBCs(EssentialBC(MARKERS, lambda x, y: x**2 + y**2))
        space = H1Space(mesh, bcs, 2)
        for i, el in enumerate(mesh.active_elements()):
            space.set_element_order(el.id, 2 + i % 3)
        wf = WeakFormPoisson({ALUMINUM: 1.0, COPPER: 1.0}, source=-4.0)

        solver = LinearSolver(wf, space)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        for x, y in SAMPLE_POINTS:
            assert np.isclose(sln.get_pt_value(x, y), x**2 + y**2, atol=1e-9)
        assert np.allclose(sln.get_pt_gradient(0.3, -0.4), [0.6, -0.8], atol=1e-8)

    def test_clone_solves_identically(self):
        space, wf = heat_problem(order=3)
        clone = H1Space()
        clone.copy(space, Mesh())
        a, b = LinearSolver(wf, space), LinearSolver(wf, clone)
        a.solve()
        b.solve()
        assert np.allclose(a.get_sln_vector(), b.get_sln_vector())


class TestLShapeHeat:
    """Two-material L-shape end to end."""

    def test_discrete_maximum_principle(self):
        # Linear elements on this mesh give an M-matrix
        space, wf = heat_problem(order=1, refine_aluminum=False)
        solver = LinearSolver(wf, space)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        t_min, t_max = sln.min_max()
        assert t_min >= 20.0 - 1e-8
        assert 20.0 < t_max < 21.0

    def test_quadratic_uniform_refinement_stays_above_boundary(self):
        """Order 2 after one uniform refinement: no undershoot below the wall temperature."""
        mesh = l_shape_mesh()
        mesh.refine_all()
        space = H1Space(mesh, constant_bcs(), 2)
        wf = WeakFormPoisson({ALUMINUM: 236.0, COPPER: 386.0}, source=500.0)
        solver = LinearSolver(wf, space)
        assert solver.solve()
        assert solver.metrics.converged
        sln = vector_to_solution(solver.get_sln_vector(), space)
        t_min, t_max = sln.min_max(8)
        assert t_min >= 20.0 - 1e-8
        assert 20.0 < t_max < 21.0

    def test_driver_configuration_stays_above_boundary(self):
        """Uniform refinement plus one aluminum refinement leaves hanging vertices."""
        space, wf = heat_problem(order=2, refine_aluminum=True)
        solver = LinearSolver(wf, space)
        assert solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), space)
        t_min, t_max = sln.min_max(8)
        assert t_min >= 20.0 - 1e-6
        assert 20.0 < t_max < 21.0

    def test_mixed_orders_on_irregular_mesh(self):
        mesh = l_shape_mesh()
        mesh.refine([ALUMINUM, COPPER], 1)
        mesh.refine_single(ALUMINUM)
        space = H1Space(mesh, constant_bcs(), 2)
        clone = H1Space()
        clone.copy(space, Mesh())
        for i, el in enumerate(clone.mesh.active_elements(), start=1):
            clone.set_element_order(el.id, i % 4 + 1)

        wf = WeakFormPoisson({ALUMINUM: 236.0, COPPER: 386.0}, source=500.0)
        solver = LinearSolver(wf, clone)
        solver.solve()
        sln = vector_to_solution(solver.get_sln_vector(), clone)
        t_min, t_max = sln.min_max(6)
        assert np.isfinite([t_min, t_max]).all()
        assert t_min >= 20.0 - 1e-6
        assert 20.0 < t_max < 21.0
        assert np.isclose(sln.get_pt_value(0.5, -1.0), 20.0, atol=1e-10)
