from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "tests"):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from parallel.mpi_bootstrap import bootstrap_mpi  # noqa: E402

bootstrap_mpi()


def pytest_configure(config) -> None:
    config.addinivalue_line("markers", "mpi: test exercises PETSc/MPI objects")


@pytest.fixture
def serial_petsc():
    """petsc4py.PETSc on a one-rank COMM_WORLD, or skip."""
    pytest.importorskip("petsc4py")
    from parallel.mpi_bootstrap import get_petsc

    PETSc = get_petsc()
    if PETSc.COMM_WORLD.getSize() != 1:
        pytest.skip("serial-only test")
    return PETSc
