"""
MatrixFactory: allocation of the matrices, vectors and solver contexts owned by
preconditioners and linear operators.

Serial (dense / sparse direct) storage is NumPy/SciPy; distributed storage is
PETSc. PETSc is imported lazily so serial-only environments never need it.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from assembly.petsc_prealloc import build_petsc_prealloc_from_pattern, split_ownership
from assembly.sparsity_pattern import SparsityPattern
from core.logging_utils import is_root_rank
from parallel.mpi_bootstrap import get_petsc

logger = logging.getLogger(__name__)


def create_dense_matrix(size: int) -> np.ndarray:
    """Column-major dense matrix, the layout LAPACK getrf works in."""
    n = int(size)
    if n < 0:
        raise ValueError(f"size must be non-negative, got {n}")
    return np.zeros((n, n), dtype=np.float64, order="F")


def create_sparse_matrix(pattern: SparsityPattern) -> sp.csc_matrix:
    """
    Zero-valued CSC matrix with the given pattern.

    Callers must write values into `.data` (or via indexing on existing
    entries) so the structure, and therefore the symbolic factorization,
    stays fixed.
    """
    A = pattern.to_csr().tocsc()
    A.sort_indices()
    return A


def _comm_or_world(comm):
    PETSc = get_petsc()
    return PETSc.COMM_WORLD if comm is None else comm


def local_size(size: int, comm=None, block_size: int = 1) -> Tuple[int, np.ndarray]:
    """
    Rows owned by this rank and the global ownership ranges.

    Rows are split in whole blocks so every rank's share is a multiple of
    block_size.
    """
    comm = _comm_or_world(comm)
    bs = int(block_size)
    if size % bs != 0:
        raise ValueError(f"size {size} is not a multiple of block_size {bs}")
    ranges = split_ownership(size // bs, comm.getSize()) * bs
    rank = comm.getRank()
    return int(ranges[rank + 1] - ranges[rank]), ranges


def create_explicit_matrix(
    size: int,
    pattern: SparsityPattern,
    *,
    block_size: int = 1,
    ignore_off_process: bool = False,
    comm=None,
):
    """
    Create and preallocate a distributed AIJ matrix from a global sparsity pattern.

    New non-zeros outside the pattern are allowed (they cost a malloc, reported
    after final assembly) rather than being an error.
    """
    PETSc = get_petsc()
    comm = _comm_or_world(comm)
    if pattern.n != int(size):
        raise ValueError(f"pattern size {pattern.n} does not match matrix size {size}")

    nloc, ranges = local_size(size, comm, block_size)
    _, d_nz, o_nz = build_petsc_prealloc_from_pattern(pattern, ranges=ranges, rank=comm.getRank())

    A = PETSc.Mat().create(comm=comm)
    A.setSizes(((nloc, size), (nloc, size)), bsize=int(block_size))
    A.setType(PETSc.Mat.Type.AIJ)
    A.setPreallocationNNZ(
        (np.asarray(d_nz, dtype=PETSc.IntType), np.asarray(o_nz, dtype=PETSc.IntType))
    )
    A.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, False)
    if ignore_off_process:
        A.setOption(PETSc.Mat.Option.IGNORE_OFF_PROC_ENTRIES, True)
    A.setUp()
    A.zeroEntries()

    if is_root_rank(comm):
        logger.debug(
            "preallocated A: size=%d block_size=%d nnz_total=%d",
            size,
            block_size,
            pattern.nnz,
        )
    return A


def create_matrix_free_matrix(size: int, context: Any, *, comm=None):
    """Shell matrix whose action is provided by a python context with mult()/multTranspose()."""
    PETSc = get_petsc()
    comm = _comm_or_world(comm)
    nloc, _ = local_size(size, comm)
    A = PETSc.Mat().createPython(((nloc, size), (nloc, size)), context=context, comm=comm)
    A.setUp()
    return A


def create_vector(size: int, *, comm=None):
    """Distributed vector with the same row split as the matrices above."""
    PETSc = get_petsc()
    comm = _comm_or_world(comm)
    nloc, _ = local_size(size, comm)
    v = PETSc.Vec().createMPI((nloc, size), comm=comm)
    v.set(0.0)
    return v


def create_preconditioner_context(*, comm=None, options_prefix: str = ""):
    """Bare PETSc PC; its type is chosen by the preconditioner that owns it."""
    PETSc = get_petsc()
    comm = _comm_or_world(comm)
    pc = PETSc.PC().create(comm=comm)
    if options_prefix:
        pc.setOptionsPrefix(options_prefix)
    return pc


def create_iterative_solver_context(pc, lo, *, comm=None, options_prefix: str = ""):
    """
    KSP wired to the LO's operator and the PC's PETSc PC.

    A matrix-free PC never reads the preconditioning matrix, so the operator
    itself is passed in its place.
    """
    PETSc = get_petsc()
    comm = _comm_or_world(comm)
    ksp = PETSc.KSP().create(comm=comm)
    if options_prefix:
        ksp.setOptionsPrefix(options_prefix)
    ksp.setPC(pc.petsc_pc)

    Ap: Optional[Any] = pc.matrix if pc.matrix is not None else lo.matrix
    ksp.setOperators(lo.matrix, Ap)
    return ksp
