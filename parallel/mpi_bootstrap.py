"""
Import-order bootstrap: mpi4py must initialize MPI before petsc4py does.
"""

from __future__ import annotations

import os
import sys

_MPI_BOOTSTRAPPED = False
_PETSC_BOOTSTRAPPED = False


def bootstrap_mpi() -> None:
    """
    Import mpi4py once so MPI_Init happens under mpi4py's control.
    """
    global _MPI_BOOTSTRAPPED
    if _MPI_BOOTSTRAPPED:
        return
    _MPI_BOOTSTRAPPED = True

    try:
        from mpi4py import MPI  # noqa: F401
    except ImportError:
        return


def bootstrap_mpi_before_petsc() -> None:
    """
    Ensure mpi4py initializes before petsc4py, and pass argv to PETSc so
    command-line options (-ksp_type, -pc_type, ...) reach the options database.
    """
    bootstrap_mpi()

    global _PETSC_BOOTSTRAPPED
    if _PETSC_BOOTSTRAPPED:
        return
    _PETSC_BOOTSTRAPPED = True

    try:
        import petsc4py
    except ImportError:
        return

    # pytest's own argv is not meant for PETSc
    argv = [] if os.environ.get("PYTEST_CURRENT_TEST") else sys.argv
    try:
        petsc4py.init(argv)
    except Exception:
        # PETSc may already be initialized by an earlier `from petsc4py import PETSc`.
        pass


def get_petsc():
    """Bootstrap and return the petsc4py.PETSc module."""
    try:
        bootstrap_mpi_before_petsc()
        from petsc4py import PETSc
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("petsc4py is required for the distributed linear solver backends.") from exc
    return PETSc
