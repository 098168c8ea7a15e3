"""
Distributed backends on a single rank (skipped without petsc4py).

Tests:
1. Explicit operator + explicit PC (separate and shared matrix)
2. Shell operator + matrix-free PC
3. Tolerances are pushed to the KSP on every solve
4. Transpose solve on an explicit operator
5. Teardown
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.sparsity_pattern import pattern_from_matrix
from parallel.staging import NullStaging
from solvers.linear_context import CallbackLinearizationContext
from solvers.linear_types import LinearSolverOptions, UnsupportedOperation
from solvers.solver_linear import build_linear_solver

pytestmark = pytest.mark.mpi


def _tridiag(n: int) -> np.ndarray:
    return np.diag(np.full(n, 4.0)) + np.diag(np.full(n - 1, -1.0), 1) + np.diag(np.full(n - 1, -1.5), -1)


def _petsc_fill(M: np.ndarray):
    def fill(A):
        rstart, rend = A.getOwnershipRange()
        for i in range(rstart, rend):
            cols = np.flatnonzero(M[i])
            A.setValues([i], cols.tolist(), M[i, cols].tolist())

    return fill


def _build(PETSc, n: int, **cfg):
    opts = LinearSolverOptions.from_dict({"reltol": 1e-12, "abstol": 1e-14, **cfg})
    M = _tridiag(n)
    ls = build_linear_solver(
        opts, n, pattern=pattern_from_matrix(M), comm=PETSc.COMM_WORLD, staging=NullStaging()
    )
    return ls, M


@pytest.mark.parametrize("shared", [False, True])
def test_explicit_operator_and_pc(serial_petsc, shared):
    n = 10
    ls, M = _build(serial_petsc, n, pc_type="petsc_mat", lo_type="petsc_mat", shared_mat=shared,
                   petsc_pc_type="ilu")
    ctx = CallbackLinearizationContext(fill=_petsc_fill(M))
    ls.calc_pc_and_lo(ctx)

    b = np.linspace(1.0, 2.0, n)
    x = np.zeros(n)
    res = ls.solve(b, x)
    assert res.converged
    np.testing.assert_allclose(x, np.linalg.solve(M, b), rtol=1e-8)
    assert ls.lo.factorization_count == 1
    assert ls.pc.assembly_count == (0 if shared else 1)

    x2 = np.zeros(n)
    ls.solve(2.0 * b, x2)
    np.testing.assert_allclose(x2, 2.0 * x, rtol=1e-8)
    assert ls.lo.factorization_count == 1
    assert ls.lo.solve_count == 2
    ls.free()
    ls.free()


def test_explicit_transpose_solve(serial_petsc):
    n = 8
    ls, M = _build(serial_petsc, n, pc_type="petsc_mat", lo_type="petsc_mat", petsc_pc_type="jacobi")
    ls.calc_pc_and_lo(CallbackLinearizationContext(fill=_petsc_fill(M)))
    b = np.ones(n)
    x = np.zeros(n)
    res = ls.solve_transpose(b, x)
    assert res.converged
    np.testing.assert_allclose(x, np.linalg.solve(M.T, b), rtol=1e-8)
    ls.free()


def test_shell_operator_with_matrix_free_pc(serial_petsc):
    n = 12
    ls, M = _build(serial_petsc, n, pc_type="petsc_matfree", lo_type="petsc_matfree")
    d = np.diag(M).copy()
    ctx = CallbackLinearizationContext(matvec=lambda v: M @ v, pc_apply=lambda r: r / d)
    ls.calc_pc_and_lo(ctx)

    b = np.arange(1.0, n + 1.0)
    x = np.zeros(n)
    res = ls.solve(b, x)
    assert res.converged
    np.testing.assert_allclose(x, np.linalg.solve(M, b), rtol=1e-8)
    assert ctx.counters["apply_pc"] > 0

    with pytest.raises(UnsupportedOperation):
        ls.solve_transpose(b, np.zeros(n))
    ls.free()


def test_tolerances_reach_ksp(serial_petsc):
    n = 6
    ls, M = _build(serial_petsc, n, pc_type="petsc_mat", lo_type="petsc_mat", petsc_pc_type="none")
    ls.calc_pc_and_lo(CallbackLinearizationContext(fill=_petsc_fill(M)))
    ls.set_tolerances(1e-3, -1, -1, 2)
    res = ls.solve(np.ones(n), np.zeros(n))
    rtol, atol, _, max_it = ls.ksp.getTolerances()
    assert rtol == pytest.approx(1e-3)
    assert atol == pytest.approx(1e-14)
    assert max_it == 2
    assert res.n_iter <= 2
    ls.free()


def test_factory_vector_and_row_split(serial_petsc):
    from assembly.matrix_factory import create_vector, local_size

    nloc, ranges = local_size(6, serial_petsc.COMM_WORLD, block_size=2)
    assert nloc == 6 and ranges.tolist() == [0, 6]
    with pytest.raises(ValueError):
        local_size(5, serial_petsc.COMM_WORLD, block_size=2)

    v = create_vector(6, comm=serial_petsc.COMM_WORLD)
    assert v.getSize() == 6
    assert float(v.norm()) == 0.0
    v.destroy()
