"""
Sparsity patterns and their PETSc AIJ preallocation split by row owner.
"""

from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp

from assembly.matrix_factory import create_dense_matrix, create_sparse_matrix
from assembly.petsc_prealloc import build_petsc_prealloc_from_pattern, split_ownership
from assembly.sparsity_pattern import SparsityPattern, pattern_from_matrix, pattern_from_row_sets
from parallel.mat_prealloc import build_owner_map_from_ownership_ranges, split_row_cols_by_owner


def _chain(n: int) -> SparsityPattern:
    # 1D nearest-neighbour coupling
    return pattern_from_row_sets([[i - 1, i + 1] if 0 < i < n - 1 else ([1] if i == 0 else [n - 2]) for i in range(n)])


def test_row_sets_always_include_diagonal():
    pat = pattern_from_row_sets([[1], [], [0]])
    assert pat.row_cols(0).tolist() == [0, 1]
    assert pat.row_cols(1).tolist() == [1]
    assert pat.row_cols(2).tolist() == [0, 2]
    assert pat.nnz == 5
    assert pat.meta["nnz_max_row"] == 2.0


def test_pattern_from_matrix_matches_structure():
    M = np.array([[1.0, 0.0, 2.0], [0.0, 3.0, 0.0], [4.0, 0.0, 0.0]])
    pat = pattern_from_matrix(sp.csr_matrix(M))
    assert pat.row_nnz().tolist() == [2, 1, 2]
    assert pat.row_cols(2).tolist() == [0, 2]


def test_pattern_validation():
    with pytest.raises(ValueError):
        SparsityPattern(indptr=[0, 1], indices=[0], shape=(2, 2))
    with pytest.raises(ValueError):
        SparsityPattern(indptr=[0, 1, 2], indices=[0, 5], shape=(2, 2))
    with pytest.raises(ValueError):
        SparsityPattern(indptr=[0, 1], indices=[0], shape=(1, 2))


def test_single_rank_prealloc_is_all_diagonal():
    pat = _chain(5)
    n_local, d_nz, o_nz = build_petsc_prealloc_from_pattern(pat)
    assert n_local == 5
    assert d_nz == [2, 3, 3, 3, 2]
    assert o_nz == [0] * 5


def test_two_rank_prealloc_splits_columns_by_owner():
    pat = _chain(6)
    ranges = split_ownership(6, 2)
    assert ranges.tolist() == [0, 3, 6]

    n0, d0, o0 = build_petsc_prealloc_from_pattern(pat, ranges=ranges, rank=0)
    n1, d1, o1 = build_petsc_prealloc_from_pattern(pat, ranges=ranges, rank=1)
    assert (n0, n1) == (3, 3)
    assert d0 == [2, 3, 2] and o0 == [0, 0, 1]
    assert d1 == [2, 3, 2] and o1 == [1, 0, 0]


def test_prealloc_rejects_mismatched_ranges():
    with pytest.raises(ValueError):
        build_petsc_prealloc_from_pattern(_chain(4), ranges=[0, 2, 5], rank=0)
    with pytest.raises(ValueError):
        build_petsc_prealloc_from_pattern(_chain(4), ranges=[0, 2, 4], rank=2)


def test_split_ownership_uneven():
    assert split_ownership(7, 3).tolist() == [0, 3, 5, 7]
    with pytest.raises(ValueError):
        split_ownership(4, 0)


def test_owner_map_with_empty_rank():
    owners = build_owner_map_from_ownership_ranges([0, 2, 2, 4])
    assert owners.owners_of([0, 1, 2, 3]).tolist() == [0, 0, 2, 2]
    diag, off = split_row_cols_by_owner([0, 1, 3], owners, 0)
    assert diag.tolist() == [0, 1] and off.tolist() == [3]
    with pytest.raises(ValueError):
        owners.owner_of(4)


def test_serial_storage_layouts():
    A = create_dense_matrix(3)
    assert A.flags["F_CONTIGUOUS"] and not A.any()

    S = create_sparse_matrix(_chain(4))
    assert sp.isspmatrix_csc(S) or S.format == "csc"
    assert S.nnz == 10
    assert not S.data.any()
