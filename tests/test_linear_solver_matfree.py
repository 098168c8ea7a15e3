"""
Serial matrix-free LinearSolver (GMRES), with and without a matrix-free PC.
"""

from __future__ import annotations

import logging

import numpy as np
import pytest

from parallel.staging import NullStaging
from solvers.linear_context import CallbackLinearizationContext
from solvers.linear_types import InvariantViolation, LinearSolverOptions, UnsupportedOperation
from solvers.solver_linear import build_linear_solver


def _system(n: int = 12):
    rng = np.random.default_rng(3)
    M = np.diag(np.linspace(2.0, 20.0, n)) + 0.1 * rng.standard_normal((n, n))
    b = rng.standard_normal(n)
    return M, b


def _solver(n: int, pc_type: str = "none", **extra):
    opts = LinearSolverOptions.from_dict({"pc_type": pc_type, "lo_type": "matfree", **extra})
    return build_linear_solver(opts, n, staging=NullStaging())


def test_gmres_without_pc():
    M, b = _system()
    ls = _solver(M.shape[0], reltol=1e-10)
    ctx = CallbackLinearizationContext(matvec=lambda v: M @ v, rmatvec=lambda v: M.T @ v)
    ls.calc_pc_and_lo(ctx)

    x = np.zeros_like(b)
    res = ls.solve(b, x)
    assert res.converged
    np.testing.assert_allclose(x, np.linalg.solve(M, b), rtol=1e-7, atol=1e-9)
    assert ls.lo.factorization_count == 0
    assert ctx.counters["refresh_matrix_free"] == 1

    xt = np.zeros_like(b)
    ls.solve_transpose(b, xt)
    np.testing.assert_allclose(xt, np.linalg.solve(M.T, b), rtol=1e-7, atol=1e-9)


def test_gmres_with_matrix_free_pc():
    M, b = _system()
    d = np.diag(M).copy()
    ls = _solver(M.shape[0], pc_type="petsc_matfree", reltol=1e-10)
    assert ls.is_pc_matrix_free() and ls.is_lo_matrix_free()
    ctx = CallbackLinearizationContext(
        matvec=lambda v: M @ v,
        pc_apply=lambda r: r / d,
    )

    assert ls.calc_pc_and_lo(ctx) is True
    assert ls.calc_pc_and_lo(ctx) is False
    assert ls.pc.assembly_count == 1
    assert ls.lo.assembly_count == 1

    x = np.zeros_like(b)
    res = ls.solve(b, x)
    assert res.converged
    assert res.method == "gmres+petsc_matfree"
    np.testing.assert_allclose(x, np.linalg.solve(M, b), rtol=1e-7, atol=1e-9)
    assert ls.pc.apply_count > 0

    y = np.zeros_like(b)
    ls.apply_pc(b, y)
    np.testing.assert_allclose(y, b / d)


def test_transpose_without_rmatvec_is_unsupported():
    M, b = _system(4)
    ls = _solver(4)
    ls.calc_linear_operator(CallbackLinearizationContext(matvec=lambda v: M @ v))
    with pytest.raises(UnsupportedOperation):
        ls.solve_transpose(b, np.zeros(4))


def test_pc_transpose_without_hook_is_unsupported():
    M, b = _system(4)
    ls = _solver(4, pc_type="petsc_matfree")
    ls.calc_pc_and_lo(CallbackLinearizationContext(matvec=lambda v: M @ v, pc_apply=lambda r: r))
    with pytest.raises(UnsupportedOperation):
        ls.apply_pc_transpose(b, np.zeros(4))


def test_apply_pc_before_calc_raises():
    ls = _solver(4, pc_type="petsc_matfree")
    with pytest.raises(InvariantViolation):
        ls.apply_pc(np.ones(4), np.zeros(4))


def test_non_convergence_is_reported_not_raised(caplog):
    n = 40
    rng = np.random.default_rng(11)
    M = rng.standard_normal((n, n))
    b = rng.standard_normal(n)
    ls = _solver(n, reltol=1e-14, itermax=3, gmres_restart=3)
    ls.calc_linear_operator(CallbackLinearizationContext(matvec=lambda v: M @ v))

    with caplog.at_level(logging.WARNING, logger="solvers.scipy_linear"):
        res = ls.solve(b, np.zeros(n))
    assert not res.converged
    assert res.message
    assert any("GMRES not converged" in r.getMessage() for r in caplog.records)


def test_initial_guess_used_when_enabled():
    M, b = _system(6)
    x_exact = np.linalg.solve(M, b)
    ls = _solver(6, initial_guess_nonzero=True)
    ls.calc_linear_operator(CallbackLinearizationContext(matvec=lambda v: M @ v))
    x = x_exact.copy()
    res = ls.solve(b, x)
    assert res.converged
    assert res.n_iter <= 1
