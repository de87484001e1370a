"""
Read-only view of a branch-and-bound search at the current node.

Solver backends (the in-process `bnb_model.BranchAndBoundModel`, the PySCIPOpt-backed
`env.scip_wrapper.SCIPStateAccessor`) implement `StateAccessor`. Observation functions
only ever read from it.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import IntEnum

import numpy as np

from utils.sparse_matrix import CooMatrix

FEASTOL = 1e-6


class StageError(RuntimeError):
    """LP relaxation data was requested while the search has no LP relaxation."""


class VarType(IntEnum):
    BINARY = 0
    INTEGER = 1
    IMPLICIT_INTEGER = 2
    CONTINUOUS = 3


class BasisStatus(IntEnum):
    LOWER = 0
    BASIC = 1
    UPPER = 2
    ZERO = 3


def _check_lengths(record, n: int):
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, np.ndarray) and value.shape != (n,):
            raise ValueError(f"{type(record).__name__}.{f.name} has shape {value.shape}, expected ({n},)")


@dataclass
class LpColumns:
    """Per-column attributes of the current LP, ordered by LP position."""
    index: np.ndarray
    vtype: np.ndarray
    lower_bound: np.ndarray
    upper_bound: np.ndarray
    objective: np.ndarray
    solution: np.ndarray
    reduced_cost: np.ndarray
    basis_status: np.ndarray
    age: np.ndarray
    incumbent: np.ndarray
    average_incumbent: np.ndarray

    def __post_init__(self):
        for f in fields(self):
            dtype = np.int64 if f.name in ('index', 'vtype', 'basis_status') else np.float64
            setattr(self, f.name, np.asarray(getattr(self, f.name), dtype=dtype).reshape(-1))
        _check_lengths(self, len(self))
        if not np.isin(self.vtype, [t.value for t in VarType]).all():
            raise ValueError(f"unknown variable type code in {np.unique(self.vtype)}")
        if not np.isin(self.basis_status, [s.value for s in BasisStatus]).all():
            raise ValueError(f"unknown basis status code in {np.unique(self.basis_status)}")

    def __len__(self):
        return int(self.index.shape[0])


@dataclass
class LpRows:
    """Per-row attributes of the current LP and its coefficient matrix (rows x columns)."""
    lhs: np.ndarray
    rhs: np.ndarray
    constant: np.ndarray
    activity: np.ndarray
    dual: np.ndarray
    age: np.ndarray
    coefficients: CooMatrix

    def __post_init__(self):
        for f in fields(self):
            if f.name != 'coefficients':
                setattr(self, f.name, np.asarray(getattr(self, f.name), dtype=np.float64).reshape(-1))
        _check_lengths(self, len(self))
        if self.coefficients.shape[0] != len(self):
            raise ValueError(
                f"coefficient matrix has {self.coefficients.shape[0]} rows, expected {len(self)}"
            )

    def __len__(self):
        return int(self.lhs.shape[0])


class StateAccessor(ABC):
    """Capabilities an observation function may query at a decision point."""

    @abstractmethod
    def is_solved(self) -> bool:
        """True once the search is over (no more decisions)."""

    @abstractmethod
    def lp_columns(self) -> LpColumns:
        """Columns of the current LP relaxation. Raises StageError when no LP exists."""

    @abstractmethod
    def lp_rows(self) -> LpRows:
        """Rows of the current LP relaxation. Raises StageError when no LP exists."""

    @abstractmethod
    def objective_norm(self) -> float:
        """Euclidean norm of the full objective vector."""

    @abstractmethod
    def n_lps(self) -> int:
        """Number of LPs solved so far in the run."""
