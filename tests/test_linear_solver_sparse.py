"""
Sparse direct LinearSolver: symbolic/numeric factorization reuse.
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.sparsity_pattern import pattern_from_matrix
from parallel.staging import NullStaging
from solvers.linear_context import CallbackLinearizationContext
from solvers.linear_types import FactorizationFailure, InvariantViolation, LinearSolverOptions
from solvers.solver_linear import build_linear_solver


def _tridiag(n: int, scale: float = 1.0) -> np.ndarray:
    M = np.diag(np.full(n, 4.0)) + np.diag(np.full(n - 1, -1.0), 1) + np.diag(np.full(n - 1, -2.0), -1)
    M[0, n - 1] = 0.5
    return scale * M


def _csc_fill(values):
    def fill(A):
        cols = np.repeat(np.arange(A.shape[1]), np.diff(A.indptr))
        A.data[:] = values["M"][A.indices, cols]

    return fill


def _sparse_solver(M: np.ndarray, **extra):
    opts = LinearSolverOptions.from_dict({"pc_type": "none", "lo_type": "sparse_direct", **extra})
    return build_linear_solver(opts, M.shape[0], pattern=pattern_from_matrix(M), staging=NullStaging())


def test_solve_and_transpose():
    n = 8
    M = _tridiag(n)
    b = np.arange(1.0, n + 1.0)
    ls = _sparse_solver(M)
    ls.calc_pc_and_lo(CallbackLinearizationContext(fill=_csc_fill({"M": M})))

    x = np.zeros(n)
    res = ls.solve(b, x)
    np.testing.assert_allclose(x, np.linalg.solve(M, b), rtol=1e-12)
    assert res.residual_norm < 1e-10

    xt = np.zeros(n)
    ls.solve_transpose(b, xt)
    np.testing.assert_allclose(xt, np.linalg.solve(M.T, b), rtol=1e-12)
    assert ls.lo.factorization_count == 1
    assert ls.lo.symbolic_factorization_count == 1


def test_symbolic_ordering_reused_across_recomputations():
    n = 6
    values = {"M": _tridiag(n)}
    ls = _sparse_solver(values["M"])
    ctx = CallbackLinearizationContext(fill=_csc_fill(values))
    b = np.ones(n)

    ls.calc_linear_operator(ctx)
    ls.solve(b, np.zeros(n))
    values["M"] = _tridiag(n, scale=3.0)
    ls.invalidate()
    ls.calc_linear_operator(ctx)
    x = np.zeros(n)
    ls.solve(b, x)

    np.testing.assert_allclose(x, np.linalg.solve(values["M"], b), rtol=1e-12)
    assert ls.lo.factorization_count == 2
    assert ls.lo.symbolic_factorization_count == 1


def test_symbolic_refactor_always():
    n = 6
    values = {"M": _tridiag(n)}
    ls = _sparse_solver(values["M"], symbolic_refactor_always=True)
    assert ls.symbolic_refactor_always is True
    ctx = CallbackLinearizationContext(fill=_csc_fill(values))

    for _ in range(3):
        ls.invalidate()
        ls.calc_linear_operator(ctx)
        ls.solve(np.ones(n), np.zeros(n))
        ls.solve(np.ones(n), np.zeros(n))

    assert ls.lo.factorization_count == 3
    assert ls.lo.symbolic_factorization_count == 3
    assert ls.lo.solve_count == 6


def test_singular_sparse_matrix_raises():
    M = np.array([[1.0, 1.0], [1.0, 1.0]])
    ls = _sparse_solver(M)
    ls.calc_linear_operator(CallbackLinearizationContext(fill=_csc_fill({"M": M})))
    with pytest.raises(FactorizationFailure):
        ls.solve(np.ones(2), np.zeros(2))


def test_pattern_required():
    opts = LinearSolverOptions.from_dict({"lo_type": "sparse_direct"})
    with pytest.raises(ValueError, match="sparsity pattern"):
        build_linear_solver(opts, 4)


def test_wrong_rhs_shape():
    M = _tridiag(4)
    ls = _sparse_solver(M)
    ls.calc_linear_operator(CallbackLinearizationContext(fill=_csc_fill({"M": M})))
    with pytest.raises(ValueError):
        ls.solve(np.ones(3), np.zeros(3))


def test_explicit_pc_rejected_for_direct_operator():
    opts = LinearSolverOptions.from_dict({"pc_type": "petsc_matfree", "lo_type": "sparse_direct"})
    with pytest.raises(InvariantViolation):
        build_linear_solver(opts, 4)
