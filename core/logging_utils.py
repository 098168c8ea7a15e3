from __future__ import annotations

import logging
import os
import sys
from typing import Optional


_TRUTHY = {"1", "true", "yes", "on"}


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _parse_level(value, default_level: int) -> int:
    if value is None:
        return default_level
    if isinstance(value, int):
        return int(value)
    text = str(value).strip().upper()
    if not text:
        return default_level
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    if isinstance(resolved, int):
        return resolved
    return default_level


def get_rank(comm=None) -> int:
    """
    Return the rank of this process in comm (PETSc or mpi4py), or COMM_WORLD.

    Falls back to 0 when neither mpi4py nor petsc4py is importable.
    """
    if comm is not None:
        if hasattr(comm, "getRank"):
            return int(comm.getRank())
        if hasattr(comm, "Get_rank"):
            return int(comm.Get_rank())

    try:
        from mpi4py import MPI

        return int(MPI.COMM_WORLD.Get_rank())
    except ImportError:
        pass

    if "petsc4py" in sys.modules:
        from petsc4py import PETSc

        return int(PETSc.COMM_WORLD.getRank())

    return 0


def is_root_rank(comm=None) -> bool:
    """
    Return True on rank 0 when MPI/PETSc is available; otherwise default True.

    This is safe before PETSc initialization: we try mpi4py first and only
    consult petsc4py if already imported.
    """
    return get_rank(comm) == 0


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    Resolve log level from env (LINSOLVE_LOG_LEVEL or LINSOLVE_PETSC_DEBUG).
    """
    default_level = _parse_level(default, logging.INFO)
    env_level = os.environ.get("LINSOLVE_LOG_LEVEL")
    if env_level:
        return _parse_level(env_level, default_level)
    if _is_truthy(os.environ.get("LINSOLVE_PETSC_DEBUG")):
        return logging.DEBUG
    return default_level


def setup_logging(rank: int, *, level: int, quiet_nonroot: bool = True) -> None:
    """
    Configure the root logger for one MPI rank.

    The first call installs a console handler tagged with the rank; later
    calls only adjust levels. Console output on non-root ranks is limited to
    WARNING and above unless quiet_nonroot is False. File handlers keep the
    requested level on every rank.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format=f"%(asctime)s %(levelname)s [rank {int(rank)}] [%(name)s] %(message)s",
        )
    root.setLevel(level)

    console_level = max(level, logging.WARNING) if (quiet_nonroot and rank != 0) else level
    for handler in root.handlers:
        handler.setLevel(level if isinstance(handler, logging.FileHandler) else console_level)
