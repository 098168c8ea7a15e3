"""
Preconditioner variants owned by a LinearSolver.

PCNone          no preconditioner; the LinearSolver turns apply_pc into a solve
PetscMatPC      explicit PETSc matrix + PETSc PC (ILU, block Jacobi, ...)
PetscMatFreePC  caller-supplied apply through the linearization context

Common state:
  is_setup         values are current for the present nonlinear iterate
  assembly_count   number of genuine recomputations
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import numpy as np

from solvers.linear_context import LinearizationContext
from solvers.linear_operator import release_handle, zero_for_refill
from solvers.linear_types import InvariantViolation, PCVariant, UnsupportedOperation

logger = logging.getLogger(__name__)

# PETSC_ERR_SUP: operation not supported by this object type
_PETSC_ERR_SUP = 56


class Preconditioner:
    variant: PCVariant

    def __init__(self, *, needs_parallel_data: bool = False) -> None:
        self.matrix: Any = None
        self.petsc_pc: Any = None
        self.is_setup = False
        self.assembly_count = 0
        self.factorization_count = 0
        self.is_freed = False
        self._needs_parallel_data = bool(needs_parallel_data)

    def needs_parallel_data(self) -> bool:
        return self._needs_parallel_data

    def is_matrix_free(self) -> bool:
        return False

    def is_none(self) -> bool:
        return False

    def calc(self, ctx: LinearizationContext) -> bool:
        """
        Recompute for the current iterate unless already set up.

        Returns True when a recomputation actually happened.
        """
        if self.is_freed:
            raise InvariantViolation(f"{type(self).__name__} used after free().")
        if self.is_setup:
            return False
        self.compute(ctx)
        self.is_setup = True
        self.assembly_count += 1
        return True

    def compute(self, ctx: LinearizationContext) -> None:
        raise NotImplementedError

    def invalidate(self) -> None:
        self.is_setup = False

    def mark_refreshed(self) -> None:
        """Values were refreshed by someone else (shared matrix); rebuild on next use."""
        self.is_setup = True

    def apply(self, b: np.ndarray, x: np.ndarray) -> None:
        raise NotImplementedError

    def apply_transpose(self, b: np.ndarray, x: np.ndarray) -> None:
        raise NotImplementedError

    def _require_computed(self, what: str) -> None:
        if self.is_freed:
            raise InvariantViolation(f"{type(self).__name__} used after free().")
        if self.assembly_count == 0:
            raise InvariantViolation(f"calc_pc must be called before {what}.")

    def free(self) -> None:
        self.is_freed = True


class PCNone(Preconditioner):
    variant = PCVariant.NONE

    def is_none(self) -> bool:
        return True

    def compute(self, ctx: LinearizationContext) -> None:
        raise InvariantViolation("PCNone has nothing to compute; the linear operator is used instead.")

    def apply(self, b: np.ndarray, x: np.ndarray) -> None:
        raise InvariantViolation("PCNone cannot be applied; apply_pc falls back to a linear solve.")

    def apply_transpose(self, b: np.ndarray, x: np.ndarray) -> None:
        raise InvariantViolation("PCNone cannot be applied; apply_pc_transpose falls back to a linear solve.")


class PetscMatPC(Preconditioner):
    """
    Explicit-matrix preconditioner.

    When `shared_lo` is given, `matrix` aliases the operator's matrix and the
    assembly state is read from and written to the operator, so the matrix is
    only ever assembled once per recomputation.
    """

    variant = PCVariant.PETSC_MAT

    def __init__(
        self,
        matrix,
        petsc_pc,
        *,
        pc_type: str = "bjacobi",
        shared_lo=None,
        needs_parallel_data: bool = True,
    ) -> None:
        super().__init__(needs_parallel_data=needs_parallel_data)
        self.matrix = matrix
        self.petsc_pc = petsc_pc
        self.pc_type = str(pc_type)
        self.shared_lo = shared_lo
        self._is_assembled = False
        self._is_filled = False
        self._pc_ready = False
        self._work: Optional[tuple] = None
        self.malloc_warnings = 0
        if shared_lo is not None and shared_lo.matrix is not matrix:
            raise InvariantViolation("shared PetscMatPC must alias the operator's matrix.")
        if petsc_pc is not None:
            petsc_pc.setType(self.pc_type)
            petsc_pc.setOperators(matrix, matrix)

    @property
    def shares_matrix(self) -> bool:
        return self.shared_lo is not None

    @property
    def is_assembled(self) -> bool:
        if self.shared_lo is not None:
            return self.shared_lo.is_assembled
        return self._is_assembled

    @property
    def is_filled(self) -> bool:
        if self.shared_lo is not None:
            return self.shared_lo.is_filled
        return self._is_filled

    def compute(self, ctx: LinearizationContext) -> None:
        zero_for_refill(self.matrix, assembled=self.is_assembled, filled_before=self.is_filled)
        ctx.fill_preconditioner_matrix(self.matrix)
        if self.shared_lo is not None:
            self.shared_lo.mark_values_changed()
        else:
            self._is_filled = True
            self._is_assembled = False
        self.request_rebuild()

    def mark_refreshed(self) -> None:
        super().mark_refreshed()
        self.request_rebuild()

    def request_rebuild(self) -> None:
        """Stop reusing the current factorization; the next solve/apply rebuilds it."""
        self._pc_ready = False
        if self.petsc_pc is not None:
            self.petsc_pc.setReusePreconditioner(False)

    def mark_reused(self) -> None:
        """Keep the current PC until calc_pc is called again."""
        self._pc_ready = True
        if self.petsc_pc is not None:
            self.petsc_pc.setReusePreconditioner(True)

    def begin_assembly(self) -> None:
        if self.shared_lo is not None:
            self.shared_lo.begin_assembly()
            return
        if not self._is_assembled:
            self.matrix.assemblyBegin()

    def end_assembly(self) -> float:
        """Complete the final assembly; return the number of mallocs it needed."""
        if self.shared_lo is not None:
            return self.shared_lo.end_assembly()
        if self._is_assembled:
            return 0.0
        self.matrix.assemblyEnd()
        self._is_assembled = True
        self.factorization_count += 1
        mallocs = float(self.matrix.getInfo()["mallocs"])
        if mallocs > 0.5:
            self.malloc_warnings += 1
        return mallocs

    def _vectors(self):
        if self._work is None:
            self._work = self.matrix.createVecs()
        return self._work

    def _apply(self, b: np.ndarray, x: np.ndarray, transpose: bool) -> None:
        self._require_computed("apply_pc")
        self.begin_assembly()
        self.end_assembly()
        if not self._pc_ready:
            self.petsc_pc.setOperators(self.matrix, self.matrix)
            self.petsc_pc.setUp()
            self._pc_ready = True

        xv, bv = self._vectors()
        b_view = bv.getArray()
        if b_view.shape != np.shape(b):
            raise ValueError(f"b shape {np.shape(b)} does not match local size {b_view.shape}")
        b_view[:] = b
        if transpose:
            try:
                self.petsc_pc.applyTranspose(bv, xv)
            except Exception as exc:
                if getattr(exc, "ierr", None) == _PETSC_ERR_SUP:
                    raise UnsupportedOperation(
                        f"PETSc pc_type={self.pc_type!r} cannot apply its transpose"
                    ) from exc
                raise
        else:
            self.petsc_pc.apply(bv, xv)
        x[:] = xv.getArray(readonly=True)

    def apply(self, b: np.ndarray, x: np.ndarray) -> None:
        self._apply(b, x, transpose=False)

    def apply_transpose(self, b: np.ndarray, x: np.ndarray) -> None:
        self._apply(b, x, transpose=True)

    def free(self) -> None:
        if self.is_freed:
            return
        release_handle(self.petsc_pc)
        self.petsc_pc = None
        if self._work is not None:
            for v in self._work:
                release_handle(v)
            self._work = None
        if self.shared_lo is None:
            release_handle(self.matrix)
        self.matrix = None
        super().free()


class _ShellPCContext:
    """petsc4py python-PC context forwarding to the owning PetscMatFreePC."""

    def __init__(self, owner: "PetscMatFreePC") -> None:
        self.owner = owner

    def apply(self, pc, X, Y) -> None:
        y = Y.getArray()
        self.owner.apply(X.getArray(readonly=True), y)

    def applyTranspose(self, pc, X, Y) -> None:
        y = Y.getArray()
        self.owner.apply_transpose(X.getArray(readonly=True), y)


class PetscMatFreePC(Preconditioner):
    """
    Matrix-free preconditioner: the context supplies apply_pc / apply_pc_transpose.

    `petsc_pc` is only needed when the PC is handed to a PETSc KSP; serial
    matrix-free operators call `apply` directly.
    """

    variant = PCVariant.PETSC_MATFREE

    def __init__(self, petsc_pc=None, *, needs_parallel_data: bool = True) -> None:
        super().__init__(needs_parallel_data=needs_parallel_data)
        self.ctx: Optional[LinearizationContext] = None
        self.apply_count = 0
        self.petsc_pc = petsc_pc
        if petsc_pc is not None:
            petsc_pc.setType("python")
            petsc_pc.setPythonContext(_ShellPCContext(self))

    def is_matrix_free(self) -> bool:
        return True

    def compute(self, ctx: LinearizationContext) -> None:
        self.ctx = ctx
        ctx.refresh_preconditioner()

    def mark_reused(self) -> None:
        return None

    def request_rebuild(self) -> None:
        return None

    def apply(self, b: np.ndarray, x: np.ndarray) -> None:
        self._require_computed("apply_pc")
        x[:] = self.ctx.apply_pc(np.asarray(b, dtype=np.float64))
        self.apply_count += 1

    def apply_transpose(self, b: np.ndarray, x: np.ndarray) -> None:
        self._require_computed("apply_pc_transpose")
        if not self.ctx.has_pc_transpose():
            raise UnsupportedOperation(
                f"{type(self.ctx).__name__} provides no transposed preconditioner apply"
            )
        x[:] = self.ctx.apply_pc_transpose(np.asarray(b, dtype=np.float64))
        self.apply_count += 1

    def free(self) -> None:
        if self.is_freed:
            return
        release_handle(self.petsc_pc)
        self.petsc_pc = None
        self.ctx = None
        super().free()
