"""
ParallelStaging: halo exchange that must complete before distributed assembly.

Two data descriptors are supported:

- a ghosted PETSc Vec (Vec.createGhost): forward ghost update, owned -> ghosts;
- a DM global/local pair (StagedDM): DM.globalToLocal scatter.

`stage(..., wait=False)` posts the exchange and returns; the caller must call
`finish(data)` (or `wait_all()`) before using the ghost values. `wait=True`
posts and completes in one call. Posting a second exchange for data whose
previous exchange was never completed is a caller error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from solvers.linear_types import InvariantViolation

logger = logging.getLogger(__name__)


@dataclass
class StagedDM:
    """Global -> local scatter through a DM (DMDA, DMComposite, ...)."""

    dm: Any
    global_vec: Any
    local_vec: Any


class ParallelStaging:
    """Interface consumed by LinearSolver."""

    def stage(self, mesh: Any, data: Any, wait: bool = False) -> None:
        raise NotImplementedError

    def finish(self, data: Any) -> None:
        raise NotImplementedError

    def wait_all(self) -> None:
        raise NotImplementedError


class NullStaging(ParallelStaging):
    """Serial runs: nothing to exchange, but keep the call count for diagnostics."""

    def __init__(self) -> None:
        self.n_stage = 0

    def stage(self, mesh: Any, data: Any, wait: bool = False) -> None:
        self.n_stage += 1

    def finish(self, data: Any) -> None:
        return None

    def wait_all(self) -> None:
        return None


class GhostVectorStaging(ParallelStaging):
    """
    PETSc-backed halo exchange.

    `mesh` is accepted for interface symmetry with other staging backends and
    is not used: the descriptor carries its own scatter.
    """

    def __init__(self) -> None:
        self._pending: Dict[int, Any] = {}
        self.n_posted = 0
        self.n_completed = 0

    def _begin(self, data: Any, PETSc) -> None:
        insert = PETSc.InsertMode.INSERT_VALUES
        if isinstance(data, StagedDM):
            data.dm.globalToLocalBegin(data.global_vec, data.local_vec, addv=insert)
            return
        if hasattr(data, "ghostUpdateBegin"):
            data.ghostUpdateBegin(addv=insert, mode=PETSc.ScatterMode.FORWARD)
            return
        raise TypeError(f"Unsupported staging data descriptor: {type(data).__name__}")

    def _end(self, data: Any, PETSc) -> None:
        insert = PETSc.InsertMode.INSERT_VALUES
        if isinstance(data, StagedDM):
            data.dm.globalToLocalEnd(data.global_vec, data.local_vec, addv=insert)
            return
        data.ghostUpdateEnd(addv=insert, mode=PETSc.ScatterMode.FORWARD)

    def stage(self, mesh: Any, data: Any, wait: bool = False) -> None:
        if data is None:
            raise InvariantViolation("ParallelStaging.stage called without a data descriptor.")
        key = id(data)
        if key in self._pending:
            raise InvariantViolation(
                "Previous exchange for this data was never completed; call finish() before staging again."
            )

        from parallel.mpi_bootstrap import get_petsc

        PETSc = get_petsc()
        self._begin(data, PETSc)
        self._pending[key] = data
        self.n_posted += 1
        logger.debug("staging posted: data=%s wait=%s", type(data).__name__, wait)
        if wait:
            self.finish(data)

    def finish(self, data: Any) -> None:
        key = id(data)
        if key not in self._pending:
            return
        from parallel.mpi_bootstrap import get_petsc

        self._end(data, get_petsc())
        del self._pending[key]
        self.n_completed += 1

    def wait_all(self) -> None:
        for data in list(self._pending.values()):
            self.finish(data)

    @property
    def n_pending(self) -> int:
        return len(self._pending)


def make_default_staging(comm: Optional[Any] = None) -> ParallelStaging:
    """GhostVectorStaging on multi-rank communicators, NullStaging otherwise."""
    size = 1
    if comm is not None:
        if hasattr(comm, "getSize"):
            size = int(comm.getSize())
        elif hasattr(comm, "Get_size"):
            size = int(comm.Get_size())
    return GhostVectorStaging() if size > 1 else NullStaging()
