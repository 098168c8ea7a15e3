"""
Linear operator variants owned by a LinearSolver.

DenseLO          dense matrix, LU factorization with cached pivots
SparseDirectLO   sparse matrix, symbolic (ordering) + numeric (SuperLU) factorization
MatFreeLO        serial Jacobian-vector products, solved with GMRES
PetscMatLO       distributed explicit matrix, Krylov solve through a PETSc KSP
PetscMatFreeLO   distributed shell matrix, Krylov solve through a PETSc KSP

Counters:
  assembly_count         genuine recomputations (calc_linear_operator)
  factorization_count    LU / numeric factorizations, or final assemblies for PETSc matrices
  solve_count, transpose_solve_count
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import numpy as np

from solvers.linear_context import LinearizationContext
from solvers.linear_types import InvariantViolation, LOVariant

logger = logging.getLogger(__name__)


def release_handle(handle) -> None:
    """Destroy a native (PETSc) resource; NumPy/SciPy storage is garbage collected."""
    if handle is not None and hasattr(handle, "destroy"):
        handle.destroy()


def zero_for_refill(matrix, *, assembled: bool, filled_before: bool) -> None:
    """
    Zero a PETSc matrix before the context writes new values into it.

    A freshly preallocated matrix is already zero. Values inserted by an
    earlier fill that never reached final assembly must be flushed first,
    because PETSc refuses to zero a matrix with pending insertions.
    """
    if not filled_before:
        return
    if not assembled:
        matrix.assemblyBegin()
        matrix.assemblyEnd()
    matrix.zeroEntries()


class LinearOperator:
    variant: LOVariant

    def __init__(self, *, needs_parallel_data: bool = False) -> None:
        self.matrix: Any = None
        self.is_setup = False
        self.assembly_count = 0
        self.factorization_count = 0
        self.solve_count = 0
        self.transpose_solve_count = 0
        self.time_solve = 0.0
        self.is_freed = False
        self._needs_parallel_data = bool(needs_parallel_data)

    def needs_parallel_data(self) -> bool:
        return self._needs_parallel_data

    def is_matrix_free(self) -> bool:
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

    def require_computed(self, what: str = "solve") -> None:
        if self.is_freed:
            raise InvariantViolation(f"{type(self).__name__} used after free().")
        if self.assembly_count == 0:
            raise InvariantViolation(f"calc_linear_operator (or calc_pc_and_lo) must be called before {what}.")

    def count_solve(self, transpose: bool) -> None:
        if transpose:
            self.transpose_solve_count += 1
        else:
            self.solve_count += 1

    def free(self) -> None:
        self.is_freed = True


class DenseLO(LinearOperator):
    """
    Dense operator whose storage is replaced by its LU factors.

    After factorization `matrix` holds the packed LU factors and `pivots` the
    row interchanges, as LAPACK getrf leaves them.
    """

    variant = LOVariant.DENSE

    def __init__(self, matrix: np.ndarray, *, needs_parallel_data: bool = False) -> None:
        super().__init__(needs_parallel_data=needs_parallel_data)
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"DenseLO requires a square 2D matrix, got shape {matrix.shape}")
        self.matrix = np.asfortranarray(matrix)
        self.pivots: Optional[np.ndarray] = None
        self.is_factored = False

    @property
    def size(self) -> int:
        return int(self.matrix.shape[0])

    def compute(self, ctx: LinearizationContext) -> None:
        self.matrix[...] = 0.0
        ctx.fill_matrix(self.matrix)
        self.is_factored = False
        self.pivots = None

    def free(self) -> None:
        self.pivots = None
        self.is_factored = False
        super().free()


class SparseDirectLO(LinearOperator):
    """
    Sparse operator with a two-phase direct factorization.

    symbolic  fill-reducing symmetric ordering of the sparsity structure;
              reused while the structure is unchanged
    numeric   SuperLU factors of the permuted matrix; redone after every
              recomputation of the values
    """

    variant = LOVariant.SPARSE_DIRECT

    def __init__(self, matrix, *, needs_parallel_data: bool = False) -> None:
        super().__init__(needs_parallel_data=needs_parallel_data)
        import scipy.sparse as sp

        if not sp.issparse(matrix):
            raise TypeError(f"SparseDirectLO requires a scipy sparse matrix, got {type(matrix).__name__}")
        if matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"SparseDirectLO requires a square matrix, got shape {matrix.shape}")
        A = sp.csc_matrix(matrix, dtype=np.float64)
        A.sort_indices()
        self.matrix = A
        self.symbolic: Optional[np.ndarray] = None
        self.symbolic_key: Optional[tuple] = None
        self.numeric: Any = None
        self.is_factored = False
        self.symbolic_factorization_count = 0

    @property
    def size(self) -> int:
        return int(self.matrix.shape[0])

    def structure_key(self) -> tuple:
        A = self.matrix
        return (A.shape, A.nnz, hash(A.indptr.tobytes()), hash(A.indices.tobytes()))

    def compute(self, ctx: LinearizationContext) -> None:
        self.matrix.data[:] = 0.0
        ctx.fill_matrix(self.matrix)
        self.matrix.sort_indices()
        self.is_factored = False

    def free_numeric(self) -> None:
        self.numeric = None

    def free_symbolic(self) -> None:
        self.symbolic = None
        self.symbolic_key = None

    def free(self) -> None:
        self.free_numeric()
        self.free_symbolic()
        self.is_factored = False
        super().free()


class MatFreeLO(LinearOperator):
    """Serial matrix-free operator: the context provides A @ v (and optionally A.T @ v)."""

    variant = LOVariant.MATFREE

    def __init__(self, size: int, *, needs_parallel_data: bool = True) -> None:
        super().__init__(needs_parallel_data=needs_parallel_data)
        self.size = int(size)
        self.ctx: Optional[LinearizationContext] = None
        self.n_iter_total = 0

    def is_matrix_free(self) -> bool:
        return True

    def compute(self, ctx: LinearizationContext) -> None:
        self.ctx = ctx
        ctx.refresh_matrix_free()

    def free(self) -> None:
        self.ctx = None
        super().free()


class _PetscLOBase(LinearOperator):
    """Distributed-vector bookkeeping shared by both PETSc operators."""

    def __init__(self, matrix, *, needs_parallel_data: bool = True) -> None:
        super().__init__(needs_parallel_data=needs_parallel_data)
        self.matrix = matrix
        # createVecs() -> (right, left): x lives in the column space, b in the row space
        self.xtmp, self.btmp = matrix.createVecs()
        self.n_iter_total = 0

    def free(self) -> None:
        if self.is_freed:
            return
        release_handle(self.xtmp)
        release_handle(self.btmp)
        self.xtmp = None
        self.btmp = None
        release_handle(self.matrix)
        self.matrix = None
        super().free()


class PetscMatLO(_PetscLOBase):
    """
    Explicit distributed operator.

    compute() only inserts values; the final assembly is deferred to the
    first solve after it (assemble_petsc_data), so it can overlap with the
    copy of the right-hand side.
    """

    variant = LOVariant.PETSC_MAT

    def __init__(self, matrix, *, needs_parallel_data: bool = True) -> None:
        super().__init__(matrix, needs_parallel_data=needs_parallel_data)
        self.is_assembled = False
        # values have been written since preallocation, by this LO or a PC sharing the matrix
        self.is_filled = False
        self.malloc_warnings = 0

    def compute(self, ctx: LinearizationContext) -> None:
        zero_for_refill(self.matrix, assembled=self.is_assembled, filled_before=self.is_filled)
        ctx.fill_matrix(self.matrix)
        self.mark_values_changed()

    def mark_values_changed(self) -> None:
        self.is_filled = True
        self.is_assembled = False

    def begin_assembly(self) -> None:
        if not self.is_assembled:
            self.matrix.assemblyBegin()

    def end_assembly(self) -> float:
        """Complete the final assembly; return the number of mallocs it needed."""
        if self.is_assembled:
            return 0.0
        self.matrix.assemblyEnd()
        self.is_assembled = True
        self.factorization_count += 1
        mallocs = float(self.matrix.getInfo()["mallocs"])
        if mallocs > 0.5:
            self.malloc_warnings += 1
        return mallocs


class _ShellMatContext:
    """petsc4py python-Mat context forwarding products to the owning operator's context."""

    def __init__(self, owner: "PetscMatFreeLO") -> None:
        self.owner = owner

    def _ctx(self) -> LinearizationContext:
        if self.owner.ctx is None:
            raise InvariantViolation("calc_linear_operator must be called before the shell matrix is applied.")
        return self.owner.ctx

    def mult(self, mat, X, Y) -> None:
        y = Y.getArray()
        y[:] = self._ctx().apply(np.asarray(X.getArray(readonly=True), dtype=np.float64))

    def multTranspose(self, mat, X, Y) -> None:
        ctx = self._ctx()
        y = Y.getArray()
        y[:] = ctx.apply_transpose(np.asarray(X.getArray(readonly=True), dtype=np.float64))


class PetscMatFreeLO(_PetscLOBase):
    """Distributed shell operator; there is never a matrix to assemble."""

    variant = LOVariant.PETSC_MATFREE

    def __init__(self, matrix, *, needs_parallel_data: bool = True) -> None:
        super().__init__(matrix, needs_parallel_data=needs_parallel_data)
        self.ctx: Optional[LinearizationContext] = None
        shell_ctx = matrix.getPythonContext() if hasattr(matrix, "getPythonContext") else None
        if isinstance(shell_ctx, _ShellMatContext):
            shell_ctx.owner = self

    @classmethod
    def create(cls, size: int, *, comm=None, needs_parallel_data: bool = True) -> "PetscMatFreeLO":
        from assembly.matrix_factory import create_matrix_free_matrix

        matrix = create_matrix_free_matrix(size, _ShellMatContext(None), comm=comm)
        return cls(matrix, needs_parallel_data=needs_parallel_data)

    def is_matrix_free(self) -> bool:
        return True

    def compute(self, ctx: LinearizationContext) -> None:
        self.ctx = ctx
        ctx.refresh_matrix_free()

    def free(self) -> None:
        self.ctx = None
        super().free()
