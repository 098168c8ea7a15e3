"""
LinearSolver: owns one preconditioner and one linear operator, decides when
each is recomputed and routes apply/solve calls to the right backend.

Recomputation is driven by the nonlinear driver:

    ls.invalidate()                 # new nonlinear iterate
    ls.calc_pc_and_lo(ctx)          # recompute what is stale
    ls.solve(b, x)                  # any number of solves against those values

solve/solve_transpose never recompute values; they use whatever the last
calc_* call produced, even if the caller's state has moved on since.
"""

from __future__ import annotations

import copy
import logging
from typing import Callable, Dict, Optional

import numpy as np

from core.logging_utils import get_rank
from core.timing import timed
from parallel.staging import ParallelStaging, make_default_staging
from solvers.linear_context import LinearizationContext
from solvers.linear_operator import (
    DenseLO,
    LinearOperator,
    MatFreeLO,
    PetscMatFreeLO,
    PetscMatLO,
    SparseDirectLO,
    release_handle,
)
from solvers.linear_types import (
    PETSC_LO_VARIANTS,
    InvariantViolation,
    LinearSolveResult,
    LinearSolverOptions,
    LOVariant,
    PCVariant,
    validate_variants,
)
from solvers.petsc_linear import _normalize_pc_type, assemble_petsc_data, configure_ksp, solve_petsc
from solvers.preconditioner import PCNone, PetscMatFreePC, PetscMatPC, Preconditioner
from solvers.scipy_linear import solve_dense, solve_matfree, solve_sparse_direct

logger = logging.getLogger(__name__)

SolveKernel = Callable[["LinearSolver", np.ndarray, np.ndarray, bool], LinearSolveResult]

_SOLVE_KERNELS: Dict[LOVariant, SolveKernel] = {
    LOVariant.DENSE: solve_dense,
    LOVariant.SPARSE_DIRECT: solve_sparse_direct,
    LOVariant.MATFREE: solve_matfree,
    LOVariant.PETSC_MAT: solve_petsc,
    LOVariant.PETSC_MATFREE: solve_petsc,
}


class LinearSolver:
    """
    Composition of a Preconditioner and a LinearOperator.

    Parameters
    ----------
    pc, lo :
        Exclusively owned; freed by free().
    options :
        Tolerances and backend switches. Defaults to LinearSolverOptions()
        with the variants taken from pc and lo.
    comm :
        PETSc or mpi4py communicator; only its rank is read here.
    staging :
        ParallelStaging used when a calc_* call is asked to start communication.
    ksp :
        Krylov context for the distributed operators; created from pc and lo
        when omitted.
    """

    def __init__(
        self,
        pc: Preconditioner,
        lo: LinearOperator,
        *,
        options: Optional[LinearSolverOptions] = None,
        comm=None,
        staging: Optional[ParallelStaging] = None,
        ksp=None,
    ) -> None:
        if options is None:
            options = LinearSolverOptions(
                pc_type=pc.variant,
                lo_type=lo.variant,
                shared_mat=getattr(pc, "shared_lo", None) is lo,
            )
        shared = getattr(pc, "shared_lo", None) is lo
        if bool(options.shared_mat) != shared:
            raise InvariantViolation(
                f"shared_mat={options.shared_mat} but the preconditioner "
                f"{'aliases' if shared else 'does not alias'} the operator's matrix"
            )
        validate_variants(pc.variant, lo.variant, shared_mat=shared)

        self.pc = pc
        self.lo = lo
        self.shared_mat = shared
        self.tolerances = copy.copy(options.tolerances)
        self.symbolic_refactor_always = bool(options.symbolic_refactor_always)
        self.initial_guess_nonzero = bool(options.initial_guess_nonzero)
        self.gmres_restart = int(options.gmres_restart)
        self.rank = get_rank(comm)
        self.staging = staging if staging is not None else make_default_staging(comm)
        self.is_finalized = False

        if ksp is None and lo.variant in PETSC_LO_VARIANTS:
            from assembly.matrix_factory import create_iterative_solver_context

            ksp = create_iterative_solver_context(pc, lo, comm=comm, options_prefix=options.options_prefix)
            configure_ksp(ksp, options)
        self.ksp = ksp

    # ------------------------------------------------------------------
    # Recomputation
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self.is_finalized:
            raise InvariantViolation("LinearSolver used after free().")

    def _stage(self, ctx: LinearizationContext, wait: bool) -> None:
        # an exchange posted by an earlier per-object calc may still be in flight
        self.staging.finish(ctx.parallel_data)
        ctx.attach_staging(self.staging)
        self.staging.stage(ctx.mesh, ctx.parallel_data, wait)

    def calc_pc(self, ctx: LinearizationContext, start_comm: bool = False) -> bool:
        """
        Recompute the preconditioner if stale.

        With the None PC the operator itself is what gets factorized, so this
        is calc_linear_operator. `start_comm` posts the halo exchange without
        waiting and attaches the staging to the context, which completes it
        (complete_staging) before reading ghost values.
        """
        self._check_alive()
        if self.pc.is_none():
            return self.calc_linear_operator(ctx, start_comm)
        if start_comm and not self.pc.is_setup and self.pc.needs_parallel_data():
            self._stage(ctx, wait=False)
        return self.pc.calc(ctx)

    def calc_linear_operator(self, ctx: LinearizationContext, start_comm: bool = False) -> bool:
        self._check_alive()
        if start_comm and not self.lo.is_setup and self.lo.needs_parallel_data():
            self._stage(ctx, wait=False)
        return self.lo.calc(ctx)

    def calc_pc_and_lo(self, ctx: LinearizationContext, start_comm: bool = False) -> bool:
        """
        Recompute both, computing a shared matrix only once.

        `start_comm` stages once, blocking, before either computation.
        Returns True when anything was recomputed.
        """
        self._check_alive()
        pc, lo = self.pc, self.lo
        stale = [obj for obj in (pc, lo) if not obj.is_setup]
        if start_comm and any(obj.needs_parallel_data() for obj in stale):
            self._stage(ctx, wait=True)

        if pc.is_none():
            return lo.calc(ctx)

        if self.shared_mat:
            changed = lo.calc(ctx)
            if changed or not pc.is_setup:
                self._refresh_shared_pc()
            return changed

        pc_changed = pc.calc(ctx)
        lo_changed = lo.calc(ctx)
        return pc_changed or lo_changed

    def _refresh_shared_pc(self) -> None:
        # the PC's matrix is the LO's and was just filled: mark it current
        # without computing it a second time
        self.pc.mark_refreshed()

    def invalidate(self) -> None:
        """The nonlinear iterate changed: both PC and LO are stale."""
        self.pc.invalidate()
        self.lo.invalidate()

    def invalidate_pc(self) -> None:
        self.pc.invalidate()

    def invalidate_lo(self) -> None:
        self.lo.invalidate()

    # ------------------------------------------------------------------
    # Apply / solve
    # ------------------------------------------------------------------

    def apply_pc(self, b: np.ndarray, x: np.ndarray) -> None:
        """x <- P^-1 b; with the None PC this is an exact solve."""
        self._check_alive()
        if self.pc.is_none():
            self.solve(b, x)
            return
        self.pc.apply(np.asarray(b, dtype=np.float64), x)

    def apply_pc_transpose(self, b: np.ndarray, x: np.ndarray) -> None:
        self._check_alive()
        if self.pc.is_none():
            self.solve_transpose(b, x)
            return
        self.pc.apply_transpose(np.asarray(b, dtype=np.float64), x)

    def _solve(self, b, x, transpose: bool) -> LinearSolveResult:
        self._check_alive()
        self.lo.require_computed("solve_transpose" if transpose else "solve")
        b = np.asarray(b, dtype=np.float64)
        if x is None:
            x = np.zeros_like(b)
        kernel = _SOLVE_KERNELS[self.lo.variant]
        with timed() as t:
            result = kernel(self, b, x, transpose)
        self.lo.time_solve += t.seconds
        logger.debug("%s: %.3e s", "matrix transpose solve" if transpose else "matrix solve", t.seconds)
        if result.diag is None:
            result.diag = {}
        result.diag["time_solve"] = t.seconds
        return result

    def solve(self, b: np.ndarray, x: Optional[np.ndarray] = None) -> LinearSolveResult:
        """Solve A x = b with the most recently computed operator; x is updated in place."""
        return self._solve(b, x, transpose=False)

    def solve_transpose(self, b: np.ndarray, x: Optional[np.ndarray] = None) -> LinearSolveResult:
        """Solve A^T x = b with the most recently computed operator."""
        return self._solve(b, x, transpose=True)

    def assemble_petsc_data(self, b: np.ndarray, x: np.ndarray) -> float:
        self._check_alive()
        if self.lo.variant not in PETSC_LO_VARIANTS:
            raise InvariantViolation(f"assemble_petsc_data needs a distributed operator, got {self.lo.variant.value!r}")
        return assemble_petsc_data(self, b, x)

    # ------------------------------------------------------------------
    # Settings / teardown
    # ------------------------------------------------------------------

    def set_tolerances(self, reltol: float, abstol: float, dtol: float, itermax: int) -> None:
        """Update iterative tolerances; any value <= 0 leaves that field unchanged."""
        self._check_alive()
        self.tolerances.update(reltol, abstol, dtol, itermax)

    def is_pc_matrix_free(self) -> bool:
        return self.pc.is_matrix_free()

    def is_lo_matrix_free(self) -> bool:
        return self.lo.is_matrix_free()

    def free(self) -> None:
        """Release the KSP, PC and LO exactly once; later calls are no-ops."""
        if self.is_finalized:
            return
        release_handle(self.ksp)
        self.ksp = None
        # a shared PC never destroys the LO's matrix
        self.pc.free()
        self.lo.free()
        self.is_finalized = True


def build_linear_solver(
    options: LinearSolverOptions,
    size: int,
    *,
    pattern=None,
    comm=None,
    staging: Optional[ParallelStaging] = None,
) -> LinearSolver:
    """
    Allocate PC and LO for `options` through the matrix factory.

    `pattern` (assembly.sparsity_pattern.SparsityPattern) is required by the
    sparse direct operator and by every explicit PETSc matrix.
    """
    from assembly import matrix_factory as mf

    options.validate()
    lo_type, pc_type = options.lo_type, options.pc_type

    def _need_pattern(what: str):
        if pattern is None:
            raise ValueError(f"{what} requires a sparsity pattern")
        return pattern

    def _explicit_matrix(what: str):
        return mf.create_explicit_matrix(
            size,
            _need_pattern(what),
            block_size=options.block_size,
            ignore_off_process=options.ignore_off_process_entries,
            comm=comm,
        )

    if lo_type == LOVariant.DENSE:
        lo: LinearOperator = DenseLO(mf.create_dense_matrix(size))
    elif lo_type == LOVariant.SPARSE_DIRECT:
        lo = SparseDirectLO(mf.create_sparse_matrix(_need_pattern("lo_type='sparse_direct'")))
    elif lo_type == LOVariant.MATFREE:
        lo = MatFreeLO(size)
    elif lo_type == LOVariant.PETSC_MAT:
        lo = PetscMatLO(_explicit_matrix("lo_type='petsc_mat'"))
    elif lo_type == LOVariant.PETSC_MATFREE:
        lo = PetscMatFreeLO.create(size, comm=comm)
    else:
        raise InvariantViolation(f"unhandled lo_type {lo_type!r}")

    if pc_type == PCVariant.NONE:
        pc: Preconditioner = PCNone()
    elif pc_type == PCVariant.PETSC_MAT:
        petsc_pc = mf.create_preconditioner_context(comm=comm, options_prefix=options.options_prefix)
        pc_kind = _normalize_pc_type(options.petsc_pc_type) or "bjacobi"
        if options.shared_mat:
            pc = PetscMatPC(lo.matrix, petsc_pc, pc_type=pc_kind, shared_lo=lo)
        else:
            pc = PetscMatPC(_explicit_matrix("pc_type='petsc_mat'"), petsc_pc, pc_type=pc_kind)
    elif pc_type == PCVariant.PETSC_MATFREE:
        petsc_pc = None
        if lo_type in PETSC_LO_VARIANTS:
            petsc_pc = mf.create_preconditioner_context(comm=comm, options_prefix=options.options_prefix)
        pc = PetscMatFreePC(petsc_pc)
    else:
        raise InvariantViolation(f"unhandled pc_type {pc_type!r}")

    logger.debug("built LinearSolver pc=%s lo=%s size=%d", pc_type.value, lo_type.value, size)
    return LinearSolver(pc, lo, options=options, comm=comm, staging=staging)
