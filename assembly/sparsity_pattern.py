"""
CSR sparsity pattern used to preallocate explicit operator and preconditioner matrices.

The pattern comes from the mesh/discretization (outside this layer); these
helpers only normalize it into one container and slice it per rank.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Sequence, Tuple

import numpy as np
import scipy.sparse as sp


@dataclass(slots=True)
class SparsityPattern:
    """CSR pattern for a square operator / preconditioner matrix."""

    indptr: np.ndarray
    indices: np.ndarray
    shape: Tuple[int, int]
    meta: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.indptr = np.asarray(self.indptr, dtype=np.int32)
        self.indices = np.asarray(self.indices, dtype=np.int32)
        n_rows, n_cols = (int(self.shape[0]), int(self.shape[1]))
        self.shape = (n_rows, n_cols)
        if n_rows != n_cols:
            raise ValueError(f"SparsityPattern must be square, got shape={self.shape}.")
        if self.indptr.shape[0] != n_rows + 1:
            raise ValueError(
                "SparsityPattern.indptr length mismatch: "
                f"len(indptr)={self.indptr.shape[0]}, expected {n_rows + 1}."
            )
        if int(self.indptr[-1]) != int(self.indices.size):
            raise ValueError(
                "SparsityPattern nnz mismatch: "
                f"indptr[-1]={int(self.indptr[-1])}, len(indices)={int(self.indices.size)}."
            )
        if self.indices.size and (self.indices.min() < 0 or self.indices.max() >= n_cols):
            raise ValueError(f"SparsityPattern column index out of range [0, {n_cols}).")
        if not self.meta:
            self.meta = _pattern_meta(self.indptr)

    @property
    def n(self) -> int:
        return int(self.shape[0])

    @property
    def nnz(self) -> int:
        return int(self.indices.size)

    def row_cols(self, i: int) -> np.ndarray:
        return self.indices[self.indptr[i]:self.indptr[i + 1]]

    def row_nnz(self) -> np.ndarray:
        return np.diff(self.indptr).astype(int)

    def local_rows(self, ownership_range: Tuple[int, int]) -> Tuple[np.ndarray, list]:
        """
        Return (rows_global, row_cols) for rows rstart <= row < rend.

        Columns stay in global index space (MPIAIJ preallocation).
        """
        rstart, rend = (int(ownership_range[0]), int(ownership_range[1]))
        if rstart < 0 or rend < rstart or rend > self.n:
            raise ValueError(f"Invalid ownership_range={ownership_range} for N={self.n}.")
        rows = np.arange(rstart, rend, dtype=np.int32)
        return rows, [self.row_cols(int(i)) for i in rows]

    def to_csr(self, dtype=np.float64) -> sp.csr_matrix:
        """Zero-valued scipy CSR matrix carrying this pattern."""
        data = np.zeros(self.nnz, dtype=dtype)
        return sp.csr_matrix((data, self.indices.copy(), self.indptr.copy()), shape=self.shape)


def _pattern_meta(indptr: np.ndarray) -> Dict[str, float]:
    n = int(indptr.shape[0] - 1)
    nnz = int(indptr[-1]) if n >= 0 else 0
    per_row = np.diff(indptr)
    return {
        "nnz_total": float(nnz),
        "nnz_avg": float(nnz) / float(n) if n > 0 else 0.0,
        "nnz_max_row": float(per_row.max()) if per_row.size else 0.0,
    }


def pattern_from_row_sets(row_sets: Sequence[Iterable[int]]) -> SparsityPattern:
    """Build a pattern from per-row column sets (diagonal always included)."""
    N = len(row_sets)
    indptr = np.zeros(N + 1, dtype=np.int32)
    indices_list = []
    nnz = 0
    for i in range(N):
        cols = sorted(set(int(j) for j in row_sets[i]) | {i})
        nnz += len(cols)
        indptr[i + 1] = nnz
        indices_list.extend(cols)
    indices = np.asarray(indices_list, dtype=np.int32)
    return SparsityPattern(indptr=indptr, indices=indices, shape=(N, N))


def pattern_from_matrix(A) -> SparsityPattern:
    """Pattern of the structural non-zeros of a dense array or scipy sparse matrix."""
    if sp.issparse(A):
        A_csr = sp.csr_matrix(A, copy=True)
        A_csr.sum_duplicates()
        A_csr.sort_indices()
    else:
        arr = np.asarray(A)
        if arr.ndim != 2:
            raise TypeError(f"Expected 2D array, got ndim={arr.ndim}")
        A_csr = sp.csr_matrix(arr)
    n_rows, n_cols = A_csr.shape
    if n_rows != n_cols:
        raise ValueError(f"Matrix must be square, got shape {A_csr.shape}")
    row_sets = [A_csr.indices[A_csr.indptr[i]:A_csr.indptr[i + 1]] for i in range(n_rows)]
    return pattern_from_row_sets(row_sets)
