"""
PETSc-based linear solver kernels for the distributed operator variants.

Design goals:
- KSP is built once per LinearSolver (assembly.matrix_factory) and configured
  here; tolerances are pushed on every solve so set_tolerances takes effect
  immediately.
- Final matrix assembly is deferred to the first solve after a recomputation
  (assemble_petsc_data) and overlaps with the copy of b and x.
- Non-convergence and assembly mallocs are reported, never raised.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np

from core.timing import timed
from parallel.mpi_bootstrap import get_petsc
from solvers.linear_types import (
    InvariantViolation,
    LinearSolveResult,
    LinearSolverOptions,
    LOVariant,
    PCVariant,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)

# PETSC_ERR_SUP: operation not supported by this object type
_PETSC_ERR_SUP = 56


def _normalize_pc_type(pc_type: Optional[str]) -> Optional[str]:
    if pc_type is None:
        return None
    val = str(pc_type).strip().lower()
    if val in ("blockjacobi", "block_jacobi", "block-jacobi"):
        return "bjacobi"
    return val


def _opts_has(opts, key: str) -> bool:
    has_name = getattr(opts, "hasName", None)
    if callable(has_name):
        try:
            return bool(has_name(key))
        except Exception:
            pass
    getter = getattr(opts, "getString", None)
    if callable(getter):
        try:
            return getter(key, default="") not in (None, "")
        except Exception:
            pass
    try:
        _ = opts[key]
        return True
    except Exception:
        return False


def _opts_set_if_absent(opts, key: str, value: Any) -> bool:
    if _opts_has(opts, key):
        return False
    setter = getattr(opts, "setValue", None)
    if callable(setter):
        setter(key, str(value))
    else:
        opts[key] = str(value)
    return True


def inject_petsc_options(prefix: str, petsc_options: Dict[str, str]) -> Dict[str, str]:
    """
    Put configured options into the PETSc options database under `prefix`.

    Options already present (command line, PETSC_OPTIONS) win. Returns the
    options that were actually injected.
    """
    if not petsc_options:
        return {}
    PETSc = get_petsc()
    opts = PETSc.Options(prefix or None)
    injected: Dict[str, str] = {}
    for key, value in petsc_options.items():
        key = str(key).lstrip("-")
        if _opts_set_if_absent(opts, key, value):
            injected[key] = str(value)
    if injected:
        logger.debug("injected PETSc options prefix=%r: %s", prefix, injected)
    return injected


def configure_ksp(ksp, options: LinearSolverOptions) -> Dict[str, Any]:
    """Apply KSP type, restart, monitor and options-database settings."""
    diag: Dict[str, Any] = {}
    prefix = options.options_prefix
    if prefix:
        ksp.setOptionsPrefix(prefix)
    diag["injected"] = inject_petsc_options(prefix, options.petsc_options)

    try:
        ksp.setType(options.ksp_type)
    except Exception:
        logger.warning("Unknown ksp_type='%s', falling back to gmres", options.ksp_type)
        ksp.setType("gmres")

    try:
        ksp_type_eff = str(ksp.getType()).lower()
        if ksp_type_eff in ("gmres", "fgmres"):
            ksp.setGMRESRestart(int(options.gmres_restart))
    except Exception:
        logger.debug("Unable to set restart for ksp_type='%s'", ksp.getType())

    if options.monitor:
        def _monitor(ksp_obj, its, rnorm):
            logger.debug("[KSP] its=%d rnorm=%.6e", its, rnorm)
        ksp.setMonitor(_monitor)

    ksp.setFromOptions()
    diag["ksp_type"] = str(ksp.getType())
    return diag


def _copy_into(vec, values: np.ndarray, name: str) -> None:
    view = vec.getArray()
    values = np.asarray(values, dtype=np.float64)
    if view.shape != values.shape:
        raise ValueError(f"{name} shape {values.shape} does not match local size {view.shape}")
    view[:] = values


def assemble_petsc_data(ls, b: np.ndarray, x: np.ndarray) -> float:
    """
    Make the distributed operator, preconditioner matrix and vectors ready to solve.

    Final assembly is begun for the LO (and for the PC unless it shares the
    LO's matrix) only when the values changed since the last assembly, the
    caller's b and x are copied into the LO's work vectors while the
    messages are in flight, and the assembly is then completed. Returns the
    total number of mallocs the assembly needed.
    """
    lo, pc = ls.lo, ls.pc
    lo_explicit = lo.variant == LOVariant.PETSC_MAT
    pc_explicit = pc.variant == PCVariant.PETSC_MAT and not pc.shares_matrix

    if lo_explicit:
        lo.begin_assembly()
    if pc_explicit:
        pc.begin_assembly()

    _copy_into(lo.btmp, b, "b")
    _copy_into(lo.xtmp, x, "x")

    mallocs = 0.0
    if lo_explicit:
        n = lo.end_assembly()
        if n > 0.5:
            logger.warning(
                "PerformanceWarning: rank %d: %d mallocs during final assembly of the operator matrix",
                ls.rank,
                int(n),
            )
        mallocs += n
    if pc_explicit:
        n = pc.end_assembly()
        if n > 0.5:
            logger.warning(
                "PerformanceWarning: rank %d: %d mallocs during final assembly of the preconditioner matrix",
                ls.rank,
                int(n),
            )
        mallocs += n
    return mallocs


def _reason_name(reason: int) -> str:
    PETSc = get_petsc()
    for name in dir(PETSc.KSP.ConvergedReason):
        if name.isupper() and getattr(PETSc.KSP.ConvergedReason, name) == reason:
            return name
    return str(reason)


def _check_transpose_support(ls) -> None:
    lo, pc = ls.lo, ls.pc
    if lo.variant == LOVariant.PETSC_MATFREE and (lo.ctx is None or not lo.ctx.has_transpose()):
        raise UnsupportedOperation("matrix-free operator provides no transposed apply")
    if pc.is_matrix_free() and (pc.ctx is None or not pc.ctx.has_pc_transpose()):
        raise UnsupportedOperation("matrix-free preconditioner provides no transposed apply")


def solve_petsc(ls, b: np.ndarray, x: np.ndarray, transpose: bool = False) -> LinearSolveResult:
    """Krylov solve through ls.ksp; the PC is reused until the next calc_pc."""
    ksp = ls.ksp
    lo, pc = ls.lo, ls.pc
    if ksp is None:
        raise InvariantViolation("distributed operator has no KSP; build the solver with build_linear_solver")
    if transpose:
        _check_transpose_support(ls)

    with timed() as t_asm:
        mallocs = assemble_petsc_data(ls, b, x)
    logger.debug("final assembly + data copy: %.3e s", t_asm.seconds)

    tol = ls.tolerances
    ksp.setTolerances(rtol=tol.reltol, atol=tol.abstol, divtol=tol.dtol, max_it=tol.itermax)
    ksp.setInitialGuessNonzero(bool(ls.initial_guess_nonzero))

    try:
        if transpose:
            ksp.solveTranspose(lo.btmp, lo.xtmp)
        else:
            ksp.solve(lo.btmp, lo.xtmp)
    except Exception as exc:
        if transpose and getattr(exc, "ierr", None) == _PETSC_ERR_SUP:
            raise UnsupportedOperation(
                f"KSP {ksp.getType()} with PC {ksp.getPC().getType()} cannot solve with the transpose"
            ) from exc
        raise
    lo.count_solve(transpose)

    reason = int(ksp.getConvergedReason())
    converged = reason > 0
    n_iter = int(ksp.getIterationNumber())
    lo.n_iter_total += n_iter
    res_norm = float(ksp.getResidualNorm())
    b_norm = float(lo.btmp.norm())
    rel = res_norm / (b_norm + 1e-30)
    reason_name = _reason_name(reason)

    if ls.rank == 0:
        logger.info("KSP %s: its=%d residual=%.3e", reason_name, n_iter, res_norm)
    if not converged:
        logger.warning(
            "PETSc KSP not converged: reason=%s residual=%.3e rel=%.3e ksp=%s pc=%s",
            reason_name,
            res_norm,
            rel,
            ksp.getType(),
            ksp.getPC().getType(),
        )

    x[:] = lo.xtmp.getArray(readonly=True)
    pc.mark_reused()

    return LinearSolveResult(
        x=x,
        converged=converged,
        n_iter=n_iter,
        residual_norm=res_norm,
        rel_residual=rel,
        method=f"{ksp.getType()}+{ksp.getPC().getType()}",
        message=None if converged else f"PETSc KSP diverged (reason={reason_name})",
        diag={"reason": reason, "reason_name": reason_name, "mallocs": mallocs},
    )
