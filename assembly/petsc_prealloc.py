"""
Helpers for converting a sparsity pattern into PETSc AIJ preallocation.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from assembly.sparsity_pattern import SparsityPattern
from parallel.mat_prealloc import (
    build_owner_map_from_ownership_ranges,
    count_diag_off_nnz_for_local_rows,
)


def build_petsc_prealloc_from_pattern(
    pattern: SparsityPattern,
    *,
    ranges: Optional[Sequence[int]] = None,
    rank: int = 0,
) -> Tuple[int, List[int], List[int]]:
    """
    Convert a global CSR pattern into per-row (d_nz, o_nz) estimates for PETSc AIJ.

    Without `ranges` the whole matrix is owned by one rank and every entry is
    in the diagonal block. With `ranges` (length size+1 ownership ranges) only
    rows owned by `rank` are returned and columns are split by owner.

    Returns (n_local, d_nz, o_nz).
    """
    if ranges is None:
        d_nz = pattern.row_nnz().tolist()
        return pattern.n, d_nz, [0] * pattern.n

    owner_map = build_owner_map_from_ownership_ranges(ranges)
    if int(owner_map.ranges[-1]) != pattern.n:
        raise ValueError(
            f"Ownership ranges cover {int(owner_map.ranges[-1])} rows, pattern has {pattern.n}."
        )
    if rank < 0 or rank >= owner_map.size:
        raise ValueError(f"rank {rank} outside communicator of size {owner_map.size}.")
    rstart = int(owner_map.ranges[rank])
    rend = int(owner_map.ranges[rank + 1])
    rows, row_cols = pattern.local_rows((rstart, rend))
    d_nz, o_nz = count_diag_off_nnz_for_local_rows(rows, row_cols, owner_map, rank, (rstart, rend))
    return int(rend - rstart), np.asarray(d_nz).tolist(), np.asarray(o_nz).tolist()


def split_ownership(n: int, size: int) -> np.ndarray:
    """
    PETSC_DECIDE-style contiguous row split of n rows over size ranks.

    Returns ranges of length size+1.
    """
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}")
    base, extra = divmod(int(n), int(size))
    counts = [base + (1 if r < extra else 0) for r in range(size)]
    return np.concatenate([[0], np.cumsum(counts)]).astype(int)
