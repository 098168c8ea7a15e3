"""
Linearization context passed to PC/LO compute and apply routines.

The context is the only channel between this layer and the physics: it fills
explicit matrices, evaluates Jacobian-vector products for matrix-free
operators, applies matrix-free preconditioners, and describes the data that
must be staged before any of that can happen in parallel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import numpy as np

from solvers.linear_types import UnsupportedOperation


class LinearizationContext:
    """
    Interface for the caller-supplied residual/Jacobian context.

    Attributes
    ----------
    mesh : Any
        Opaque mesh handle forwarded to ParallelStaging.
    parallel_data : Any
        Data descriptor forwarded to ParallelStaging (e.g. a ghosted Vec).
    staging : ParallelStaging or None
        Attached by LinearSolver when it posts an exchange for parallel_data.

    Subclasses override the hooks their PC/LO variants need; the defaults
    raise UnsupportedOperation so a missing hook fails loudly. A hook that
    reads ghost values calls complete_staging() first; work on owned values
    can run before it to overlap with the exchange.
    """

    mesh: Any = None
    parallel_data: Any = None
    staging: Any = None

    def attach_staging(self, staging) -> None:
        self.staging = staging

    def complete_staging(self) -> None:
        """Wait for a posted exchange of parallel_data; no-op when none is pending."""
        if self.staging is not None:
            self.staging.finish(self.parallel_data)

    def fill_matrix(self, A) -> None:
        """Write the operator values into A (ndarray, scipy sparse, or PETSc Mat)."""
        raise UnsupportedOperation(f"{type(self).__name__} does not provide fill_matrix")

    def fill_preconditioner_matrix(self, P) -> None:
        """Write the preconditioner values into P; defaults to the operator values."""
        self.fill_matrix(P)

    def refresh_matrix_free(self) -> None:
        """Refresh cached state used by matrix-free products (e.g. base point F(u))."""
        return None

    def apply(self, v: np.ndarray) -> np.ndarray:
        """Return A @ v for matrix-free operators."""
        raise UnsupportedOperation(f"{type(self).__name__} does not provide apply")

    def apply_transpose(self, v: np.ndarray) -> np.ndarray:
        """Return A.T @ v for matrix-free operators."""
        raise UnsupportedOperation(f"{type(self).__name__} does not provide apply_transpose")

    def has_transpose(self) -> bool:
        return type(self).apply_transpose is not LinearizationContext.apply_transpose

    def refresh_preconditioner(self) -> None:
        """Refresh cached state used by a matrix-free preconditioner."""
        return None

    def apply_pc(self, b: np.ndarray) -> np.ndarray:
        """Return an approximation of inv(A) @ b."""
        raise UnsupportedOperation(f"{type(self).__name__} does not provide apply_pc")

    def apply_pc_transpose(self, b: np.ndarray) -> np.ndarray:
        raise UnsupportedOperation(f"{type(self).__name__} does not provide apply_pc_transpose")

    def has_pc_transpose(self) -> bool:
        return type(self).apply_pc_transpose is not LinearizationContext.apply_pc_transpose


MatrixFill = Callable[[Any], None]
VectorMap = Callable[[np.ndarray], np.ndarray]


@dataclass
class CallbackLinearizationContext(LinearizationContext):
    """
    LinearizationContext built from plain callables.

    Ghost values are staged in before any fill or refresh callback runs.

    Signatures:
      fill(A) -> None            writes operator values into A in place
      fill_pc(P) -> None         writes preconditioner values (default: fill)
      refresh() -> None          matrix-free operator refresh
      matvec(v) -> ndarray       A @ v
      rmatvec(v) -> ndarray      A.T @ v
      pc_refresh() -> None       matrix-free preconditioner refresh
      pc_apply(b) -> ndarray     approx inv(A) @ b
      pc_apply_t(b) -> ndarray   approx inv(A).T @ b
    """

    fill: Optional[MatrixFill] = None
    fill_pc: Optional[MatrixFill] = None
    refresh: Optional[Callable[[], None]] = None
    matvec: Optional[VectorMap] = None
    rmatvec: Optional[VectorMap] = None
    pc_refresh: Optional[Callable[[], None]] = None
    pc_apply: Optional[VectorMap] = None
    pc_apply_t: Optional[VectorMap] = None
    mesh: Any = None
    parallel_data: Any = None
    staging: Any = None
    counters: Dict[str, int] = field(default_factory=dict)

    def _count(self, name: str) -> None:
        self.counters[name] = self.counters.get(name, 0) + 1

    def fill_matrix(self, A) -> None:
        if self.fill is None:
            super().fill_matrix(A)
        self._count("fill_matrix")
        self.complete_staging()
        self.fill(A)

    def fill_preconditioner_matrix(self, P) -> None:
        if self.fill_pc is None:
            self.fill_matrix(P)
            return
        self._count("fill_preconditioner_matrix")
        self.complete_staging()
        self.fill_pc(P)

    def refresh_matrix_free(self) -> None:
        self._count("refresh_matrix_free")
        self.complete_staging()
        if self.refresh is not None:
            self.refresh()

    def apply(self, v: np.ndarray) -> np.ndarray:
        if self.matvec is None:
            return super().apply(v)
        self._count("apply")
        return np.asarray(self.matvec(v), dtype=np.float64)

    def apply_transpose(self, v: np.ndarray) -> np.ndarray:
        if self.rmatvec is None:
            return super().apply_transpose(v)
        self._count("apply_transpose")
        return np.asarray(self.rmatvec(v), dtype=np.float64)

    def has_transpose(self) -> bool:
        return self.rmatvec is not None

    def refresh_preconditioner(self) -> None:
        self._count("refresh_preconditioner")
        self.complete_staging()
        if self.pc_refresh is not None:
            self.pc_refresh()

    def apply_pc(self, b: np.ndarray) -> np.ndarray:
        if self.pc_apply is None:
            return super().apply_pc(b)
        self._count("apply_pc")
        return np.asarray(self.pc_apply(b), dtype=np.float64)

    def apply_pc_transpose(self, b: np.ndarray) -> np.ndarray:
        if self.pc_apply_t is None:
            return super().apply_pc_transpose(b)
        self._count("apply_pc_transpose")
        return np.asarray(self.pc_apply_t(b), dtype=np.float64)

    def has_pc_transpose(self) -> bool:
        return self.pc_apply_t is not None
