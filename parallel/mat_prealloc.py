# -*- coding: utf-8 -*-
"""
Ownership bookkeeping for distributed matrix preallocation.

- map global indices to their owning rank;
- split each owned row's columns into diagonal / off-diagonal blocks and
  count them for MatMPIAIJSetPreallocation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np


@dataclass
class OwnerMap:
    """
    Global index -> owning rank, from non-decreasing ownership ranges.
    """

    ranges: np.ndarray

    def __post_init__(self) -> None:
        self.ranges = np.asarray(self.ranges, dtype=int).ravel()
        if self.ranges.size < 2:
            raise ValueError("Ownership ranges must have length >= 2.")
        if not np.all(self.ranges[1:] >= self.ranges[:-1]):
            raise ValueError("Ownership ranges must be non-decreasing.")

    @property
    def size(self) -> int:
        return int(self.ranges.size - 1)

    def owners_of(self, cols: Sequence[int]) -> np.ndarray:
        """Owning rank of every index in cols."""
        cols = np.asarray(cols, dtype=int).ravel()
        lo, hi = int(self.ranges[0]), int(self.ranges[-1])
        if cols.size and (cols.min() < lo or cols.max() >= hi):
            bad = cols[(cols < lo) | (cols >= hi)][0]
            raise ValueError(f"Global index {int(bad)} outside ownership ranges [{lo}, {hi}).")
        return np.searchsorted(self.ranges, cols, side="right") - 1

    def owner_of(self, j: int) -> int:
        return int(self.owners_of([j])[0])


def build_owner_map_from_ownership_ranges(ranges: Sequence[int]) -> OwnerMap:
    return OwnerMap(np.asarray(ranges, dtype=int))


def split_row_cols_by_owner(
    row_cols: Sequence[int],
    owner_map: OwnerMap,
    myrank: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Split one row's global columns into (diag_cols, off_cols) relative to myrank."""
    cols = np.asarray(row_cols, dtype=int).ravel()
    if cols.size == 0:
        return np.empty(0, dtype=int), np.empty(0, dtype=int)
    mask_diag = owner_map.owners_of(cols) == int(myrank)
    return cols[mask_diag], cols[~mask_diag]


def count_diag_off_nnz_for_local_rows(
    local_rows_global: Sequence[int],
    local_row_cols: Sequence[Sequence[int]],
    owner_map: OwnerMap,
    myrank: int,
    ownership_range: Tuple[int, int],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Count diag/off nnz per owned row.

    Rows outside ownership_range are ignored (they belong to another rank).
    Returns arrays of length rend - rstart, aligned with local row indices.
    """
    rows = list(local_rows_global)
    if len(rows) != len(local_row_cols):
        raise ValueError(
            f"local_rows_global length {len(rows)} does not match "
            f"local_row_cols length {len(local_row_cols)}."
        )

    rstart, rend = (int(ownership_range[0]), int(ownership_range[1]))
    if rstart < 0 or rstart > rend:
        raise ValueError(f"Invalid ownership_range={ownership_range}.")
    d_nz = np.zeros(rend - rstart, dtype=int)
    o_nz = np.zeros(rend - rstart, dtype=int)

    for gi, cols_i in zip(rows, local_row_cols):
        gi = int(gi)
        if gi < rstart or gi >= rend:
            continue
        diag_cols, off_cols = split_row_cols_by_owner(cols_i, owner_map, myrank)
        d_nz[gi - rstart] = int(diag_cols.size)
        o_nz[gi - rstart] = int(off_cols.size)

    return d_nz, o_nz
