"""
SciPy-based linear solver kernels for the serial operator variants.

Each kernel has the signature ``kernel(ls, b, x, transpose) -> LinearSolveResult``,
writes the solution into ``x`` in place and never recomputes the operator
values: it uses whatever the last calc_linear_operator left in ``ls.lo``.

- dense:          LAPACK getrf/getrs through scipy.linalg (pivots cached on the LO)
- sparse direct:  symbolic (RCM ordering) + numeric (SuperLU) factorization
- matrix-free:    restarted GMRES on a scipy LinearOperator
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional

import numpy as np
import scipy.linalg as sla
import scipy.sparse.linalg as spla
from scipy.sparse.csgraph import reverse_cuthill_mckee

from solvers.linear_types import (
    FactorizationFailure,
    InvariantViolation,
    LinearSolveResult,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)


def _check_vectors(b: np.ndarray, x: np.ndarray, n: int) -> np.ndarray:
    b = np.asarray(b, dtype=np.float64)
    if b.shape != (n,):
        raise ValueError(f"b shape {b.shape} does not match operator dimension {n}")
    if not isinstance(x, np.ndarray) or x.shape != (n,):
        raise ValueError(f"x must be a float ndarray of shape {(n,)}, got {getattr(x, 'shape', None)}")
    return b


def _residual_report(r: np.ndarray, b: np.ndarray):
    res_norm = float(np.linalg.norm(r))
    b_norm = float(np.linalg.norm(b))
    return res_norm, res_norm / (b_norm + 1e-30)


# ---------------------------------------------------------------------------
# Dense
# ---------------------------------------------------------------------------


def factorize_dense(lo) -> None:
    """
    LU of lo.matrix; a zero pivot is a FactorizationFailure.

    The factors replace lo.matrix only on success, so a failed attempt leaves
    the operator values in place and the next solve fails the same way.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", sla.LinAlgWarning)
        lu, piv = sla.lu_factor(lo.matrix, overwrite_a=False, check_finite=False)

    diag_u = np.abs(np.diag(lu))
    if diag_u.size and (not np.all(np.isfinite(diag_u)) or np.any(diag_u == 0.0)):
        lo.is_factored = False
        k = int(np.flatnonzero((diag_u == 0.0) | ~np.isfinite(diag_u))[0])
        raise FactorizationFailure(f"dense LU: singular matrix, zero pivot at row {k}")
    lo.matrix = lu
    lo.pivots = piv
    lo.is_factored = True
    lo.factorization_count += 1
    logger.debug("dense LU factorization #%d (n=%d)", lo.factorization_count, lo.size)


def solve_dense(ls, b: np.ndarray, x: np.ndarray, transpose: bool = False) -> LinearSolveResult:
    lo = ls.lo
    if not ls.pc.is_none():
        raise InvariantViolation("dense direct solve requires the None preconditioner")
    b = _check_vectors(b, x, lo.size)

    if not lo.is_factored:
        factorize_dense(lo)
    x[:] = sla.lu_solve((lo.matrix, lo.pivots), b, trans=1 if transpose else 0, check_finite=False)
    lo.count_solve(transpose)

    # the operator values were overwritten by the factors, so no residual is available
    return LinearSolveResult(
        x=x,
        converged=True,
        n_iter=1,
        residual_norm=float("nan"),
        rel_residual=float("nan"),
        method="dense_lu",
        diag={"factorization_count": lo.factorization_count},
    )


# ---------------------------------------------------------------------------
# Sparse direct
# ---------------------------------------------------------------------------


def symbolic_factorize(lo) -> None:
    """Fill-reducing ordering of the current structure (bandwidth reduction on A + A^T)."""
    A = lo.matrix
    perm = reverse_cuthill_mckee(A.tocsr(), symmetric_mode=False)
    lo.symbolic = np.asarray(perm, dtype=np.int64)
    lo.symbolic_key = lo.structure_key()
    lo.symbolic_factorization_count += 1
    logger.debug("sparse symbolic factorization #%d (nnz=%d)", lo.symbolic_factorization_count, A.nnz)


def numeric_factorize(lo) -> None:
    perm = lo.symbolic
    Ap = lo.matrix[perm, :][:, perm].tocsc()
    lo.free_numeric()
    try:
        lo.numeric = spla.splu(Ap, permc_spec="NATURAL")
    except RuntimeError as exc:
        lo.is_factored = False
        raise FactorizationFailure(f"sparse LU failed: {exc}") from exc
    lo.is_factored = True
    lo.factorization_count += 1
    logger.debug("sparse numeric factorization #%d", lo.factorization_count)


def solve_sparse_direct(ls, b: np.ndarray, x: np.ndarray, transpose: bool = False) -> LinearSolveResult:
    lo = ls.lo
    if not ls.pc.is_none():
        raise InvariantViolation("sparse direct solve requires the None preconditioner")
    b = _check_vectors(b, x, lo.size)

    if not lo.is_factored:
        if (
            lo.symbolic is None
            or ls.symbolic_refactor_always
            or lo.symbolic_key != lo.structure_key()
        ):
            symbolic_factorize(lo)
        numeric_factorize(lo)

    perm = lo.symbolic
    y = lo.numeric.solve(b[perm], trans="T" if transpose else "N")
    x[perm] = y
    lo.count_solve(transpose)

    A = lo.matrix.T if transpose else lo.matrix
    res_norm, rel = _residual_report(b - A @ x, b)
    return LinearSolveResult(
        x=x,
        converged=True,
        n_iter=1,
        residual_norm=res_norm,
        rel_residual=rel,
        method="sparse_lu",
        diag={
            "factorization_count": lo.factorization_count,
            "symbolic_factorization_count": lo.symbolic_factorization_count,
        },
    )


# ---------------------------------------------------------------------------
# Matrix-free
# ---------------------------------------------------------------------------


def _preconditioner_operator(pc, n: int, transpose: bool) -> Optional[spla.LinearOperator]:
    if pc.is_none():
        return None
    apply = pc.apply_transpose if transpose else pc.apply

    def _matvec(v):
        out = np.zeros(n, dtype=np.float64)
        apply(np.asarray(v, dtype=np.float64).reshape(n), out)
        return out

    return spla.LinearOperator((n, n), matvec=_matvec, dtype=np.float64)


def solve_matfree(ls, b: np.ndarray, x: np.ndarray, transpose: bool = False) -> LinearSolveResult:
    lo = ls.lo
    ctx = lo.ctx
    n = lo.size
    b = _check_vectors(b, x, n)
    if ctx is None:
        raise InvariantViolation("calc_linear_operator must be called before a matrix-free solve")
    if transpose and not ctx.has_transpose():
        raise UnsupportedOperation(f"{type(ctx).__name__} provides no transposed operator apply")

    fwd = ctx.apply_transpose if transpose else ctx.apply
    A = spla.LinearOperator((n, n), matvec=lambda v: fwd(np.asarray(v, dtype=np.float64).reshape(n)), dtype=np.float64)
    M = _preconditioner_operator(ls.pc, n, transpose)

    tol = ls.tolerances
    iters = [0]

    def _count(_pr_norm):
        iters[0] += 1

    x0 = np.array(x, dtype=np.float64) if ls.initial_guess_nonzero else None
    # scipy counts restart cycles; itermax counts inner iterations
    restart = int(ls.gmres_restart)
    cycles = max(1, -(-int(tol.itermax) // restart))
    sol, info = spla.gmres(
        A,
        b,
        x0=x0,
        rtol=tol.reltol,
        atol=tol.abstol,
        restart=restart,
        maxiter=cycles,
        M=M,
        callback=_count,
        callback_type="pr_norm",
    )
    if info < 0:
        raise InvariantViolation(f"GMRES rejected its input (info={info})")

    x[:] = sol
    lo.count_solve(transpose)
    lo.n_iter_total += iters[0]

    res_norm, rel = _residual_report(b - fwd(x), b)
    converged = info == 0
    if not converged:
        logger.warning(
            "GMRES not converged: iters=%d residual=%.3e rel=%.3e rtol=%.3e atol=%.3e",
            iters[0],
            res_norm,
            rel,
            tol.reltol,
            tol.abstol,
        )
    return LinearSolveResult(
        x=x,
        converged=converged,
        n_iter=iters[0],
        residual_norm=res_norm,
        rel_residual=rel,
        method="gmres" if ls.pc.is_none() else f"gmres+{ls.pc.variant.value}",
        message=None if converged else f"GMRES did not converge within {tol.itermax} iterations (info={info})",
        diag={"info": int(info)},
    )
