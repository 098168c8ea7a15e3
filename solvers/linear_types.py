"""
Shared linear solver types: variants, results, tolerances, options and errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import numpy as np
import yaml


class LinearSolverError(RuntimeError):
    """Base class for errors raised by the linear solver layer."""


class InvariantViolation(LinearSolverError):
    """
    A caller contract was violated (wrong variant combination, use after free,
    staged data not completed, ...). Not recoverable locally.
    """


class UnsupportedOperation(InvariantViolation):
    """The backend cannot perform the requested operation (e.g. transpose apply)."""


class FactorizationFailure(LinearSolverError):
    """Singular or otherwise unfactorizable matrix detected by a direct backend."""


@dataclass
class LinearSolveResult:
    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None


class PCVariant(str, Enum):
    NONE = "none"
    PETSC_MAT = "petsc_mat"
    PETSC_MATFREE = "petsc_matfree"


class LOVariant(str, Enum):
    DENSE = "dense"
    SPARSE_DIRECT = "sparse_direct"
    MATFREE = "matfree"
    PETSC_MAT = "petsc_mat"
    PETSC_MATFREE = "petsc_matfree"


DIRECT_LO_VARIANTS = frozenset({LOVariant.DENSE, LOVariant.SPARSE_DIRECT})
PETSC_LO_VARIANTS = frozenset({LOVariant.PETSC_MAT, LOVariant.PETSC_MATFREE})

_PC_ALIASES = {
    "pcnone": PCVariant.NONE.value,
    "explicit": PCVariant.PETSC_MAT.value,
    "petscmatpc": PCVariant.PETSC_MAT.value,
    "matfree": PCVariant.PETSC_MATFREE.value,
    "petscmatfreepc": PCVariant.PETSC_MATFREE.value,
}

_LO_ALIASES = {
    "denselo": LOVariant.DENSE.value,
    "sparse": LOVariant.SPARSE_DIRECT.value,
    "sparsedirectlo": LOVariant.SPARSE_DIRECT.value,
    "petscmatlo": LOVariant.PETSC_MAT.value,
    "petscmatfreelo": LOVariant.PETSC_MATFREE.value,
}


def _coerce_enum(enum_cls: type[Enum], value: Any, where: str, aliases: Mapping[str, str] = None) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        if aliases and key in aliases:
            key = aliases[key]
        try:
            return enum_cls(key)
        except ValueError:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}") from None
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")


def _coerce_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, np.integer)) and int(value) in (0, 1):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("1", "true", "yes", "on"):
            return True
        if v in ("0", "false", "no", "off"):
            return False
    raise ValueError(f"{where}: invalid boolean {value!r}")


def _coerce_float(value: Any, where: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}: invalid value {value!r}") from exc


def _coerce_int(value: Any, where: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}: invalid value {value!r}") from exc


@dataclass
class LinearSolverTolerances:
    """
    Iterative solve tolerances. Direct backends ignore them.

    `update` keeps the "non-positive means unchanged" convention.
    """

    reltol: float = 1.0e-8
    abstol: float = 1.0e-12
    dtol: float = 1.0e5
    itermax: int = 200

    def update(self, reltol: float, abstol: float, dtol: float, itermax: int) -> None:
        if reltol > 0:
            self.reltol = float(reltol)
        if abstol > 0:
            self.abstol = float(abstol)
        if dtol > 0:
            self.dtol = float(dtol)
        if itermax > 0:
            self.itermax = int(itermax)


_ALLOWED_OPTION_KEYS = {
    "pc_type",
    "lo_type",
    "reltol",
    "abstol",
    "dtol",
    "itermax",
    "shared_mat",
    "symbolic_refactor_always",
    "ignore_off_process_entries",
    "block_size",
    "ksp_type",
    "petsc_pc_type",
    "gmres_restart",
    "options_prefix",
    "petsc_options",
    "initial_guess_nonzero",
    "monitor",
}


@dataclass(slots=True)
class LinearSolverOptions:
    pc_type: PCVariant = PCVariant.NONE
    lo_type: LOVariant = LOVariant.SPARSE_DIRECT
    tolerances: LinearSolverTolerances = field(default_factory=LinearSolverTolerances)
    shared_mat: bool = False
    symbolic_refactor_always: bool = False
    ignore_off_process_entries: bool = False
    block_size: int = 1
    ksp_type: str = "gmres"
    petsc_pc_type: str = "bjacobi"
    gmres_restart: int = 30
    options_prefix: str = ""
    petsc_options: Dict[str, str] = field(default_factory=dict)
    initial_guess_nonzero: bool = False
    monitor: bool = False

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "LinearSolverOptions":
        if not isinstance(d, Mapping):
            raise TypeError(f"linear_solver: expected mapping, got {type(d).__name__}")
        unknown = set(d.keys()) - _ALLOWED_OPTION_KEYS
        if unknown:
            raise ValueError(
                f"Unsupported keys in linear_solver: {sorted(unknown)}; allowed={sorted(_ALLOWED_OPTION_KEYS)}"
            )

        pc_raw = d.get("pc_type", None)
        pc_type = PCVariant.NONE if pc_raw is None else _coerce_enum(
            PCVariant, pc_raw, "linear_solver.pc_type", _PC_ALIASES
        )
        lo_raw = d.get("lo_type", None)
        lo_type = LOVariant.SPARSE_DIRECT if lo_raw is None else _coerce_enum(
            LOVariant, lo_raw, "linear_solver.lo_type", _LO_ALIASES
        )

        tol = LinearSolverTolerances()
        tol.update(
            _coerce_float(d.get("reltol", -1), "linear_solver.reltol"),
            _coerce_float(d.get("abstol", -1), "linear_solver.abstol"),
            _coerce_float(d.get("dtol", -1), "linear_solver.dtol"),
            _coerce_int(d.get("itermax", -1), "linear_solver.itermax"),
        )

        petsc_options = d.get("petsc_options", None)
        if petsc_options is None:
            petsc_options = {}
        if not isinstance(petsc_options, Mapping):
            raise TypeError(
                f"linear_solver.petsc_options: expected mapping, got {type(petsc_options).__name__}"
            )

        block_size = _coerce_int(d.get("block_size", 1), "linear_solver.block_size")
        if block_size < 1:
            raise ValueError(f"linear_solver.block_size: must be >= 1, got {block_size}")
        restart = _coerce_int(d.get("gmres_restart", 30), "linear_solver.gmres_restart")
        if restart < 1:
            raise ValueError(f"linear_solver.gmres_restart: must be >= 1, got {restart}")

        prefix = str(d.get("options_prefix", "") or "")
        if prefix and not prefix.endswith("_"):
            prefix += "_"

        return cls(
            pc_type=pc_type,
            lo_type=lo_type,
            tolerances=tol,
            shared_mat=_coerce_bool(d.get("shared_mat", False), "linear_solver.shared_mat"),
            symbolic_refactor_always=_coerce_bool(
                d.get("symbolic_refactor_always", False), "linear_solver.symbolic_refactor_always"
            ),
            ignore_off_process_entries=_coerce_bool(
                d.get("ignore_off_process_entries", False), "linear_solver.ignore_off_process_entries"
            ),
            block_size=block_size,
            ksp_type=str(d.get("ksp_type", "gmres")).strip().lower(),
            petsc_pc_type=str(d.get("petsc_pc_type", "bjacobi")).strip().lower(),
            gmres_restart=restart,
            options_prefix=prefix,
            petsc_options={str(k): str(v) for k, v in petsc_options.items()},
            initial_guess_nonzero=_coerce_bool(
                d.get("initial_guess_nonzero", False), "linear_solver.initial_guess_nonzero"
            ),
            monitor=_coerce_bool(d.get("monitor", False), "linear_solver.monitor"),
        )

    @classmethod
    def from_yaml(cls, path: str | Path, *, section: Optional[str] = "linear_solver") -> "LinearSolverOptions":
        """
        Load options from a YAML file.

        If `section` is given and present at the top level, only that block is
        parsed; otherwise the whole document is treated as the options block.
        """
        cfg_file = Path(path).expanduser().resolve()
        try:
            text = cfg_file.read_text(encoding="utf-8-sig")
        except UnicodeDecodeError:
            text = cfg_file.read_text()
        raw = yaml.safe_load(text) or {}
        if not isinstance(raw, Mapping):
            raise TypeError(f"{cfg_file}: expected a mapping at top level, got {type(raw).__name__}")
        if section is not None and section in raw:
            raw = raw[section] or {}
        return cls.from_dict(raw)

    def validate(self) -> None:
        validate_variants(self.pc_type, self.lo_type, shared_mat=self.shared_mat)


def validate_variants(pc_type: PCVariant, lo_type: LOVariant, *, shared_mat: bool = False) -> None:
    """Reject PC/LO combinations the solver cannot dispatch."""
    if lo_type in DIRECT_LO_VARIANTS and pc_type != PCVariant.NONE:
        raise InvariantViolation(
            f"lo_type={lo_type.value!r} is a direct solve and requires pc_type='none', "
            f"got {pc_type.value!r}"
        )
    if lo_type in PETSC_LO_VARIANTS and pc_type == PCVariant.NONE:
        raise InvariantViolation(
            f"lo_type={lo_type.value!r} is an iterative solve and requires a preconditioner"
        )
    if shared_mat and not (pc_type == PCVariant.PETSC_MAT and lo_type == LOVariant.PETSC_MAT):
        raise InvariantViolation(
            "shared_mat requires pc_type='petsc_mat' and lo_type='petsc_mat', "
            f"got pc_type={pc_type.value!r} lo_type={lo_type.value!r}"
        )
