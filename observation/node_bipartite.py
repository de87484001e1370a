"""
Bipartite observation of the LP relaxation at the current branch-and-bound node.

Variable (column) nodes carry 20 features and row nodes 5 features, in the order of
`VariableFeatures` and `RowFeatures`. Edges are the nonzero LP coefficients.

Numeric conventions:
- normed reduced cost: reduced cost / objective norm (norm taken as 1 when it is 0)
- scaled age: age / (number of LPs solved so far + 5), always in [0, 1)
- solution frac: distance of the LP value to the nearest integer, 0 for continuous variables
- incumbent values: NaN until a feasible solution is known
- bias: rhs - constant when rhs is finite, lhs - constant otherwise
- objective cosine similarity: 0 when the row or the objective is null
- is tight: activity within FEASTOL of a finite side
"""
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import numpy as np

from env.state import FEASTOL, LpColumns, LpRows, StateAccessor, VarType
from observation.abstract import ObservationFunction
from utils.sparse_matrix import CooMatrix

logger = logging.getLogger(__name__)

AGE_OFFSET = 5


class VariableFeatures(IntEnum):
    # static
    OBJECTIVE = 0
    IS_TYPE_BINARY = 1  # one hot
    IS_TYPE_INTEGER = 2  # one hot
    IS_TYPE_IMPLICIT_INTEGER = 3  # one hot
    IS_TYPE_CONTINUOUS = 4  # one hot
    # dynamic
    HAS_LOWER_BOUND = 5
    HAS_UPPER_BOUND = 6
    NORMED_REDUCED_COST = 7
    SOLUTION_VALUE = 8
    SOLUTION_FRAC = 9
    IS_SOLUTION_AT_LOWER_BOUND = 10
    IS_SOLUTION_AT_UPPER_BOUND = 11
    SCALED_AGE = 12
    INCUMBENT_VALUE = 13
    AVERAGE_INCUMBENT_VALUE = 14
    IS_BASIS_LOWER = 15  # one hot
    IS_BASIS_BASIC = 16  # one hot
    IS_BASIS_UPPER = 17  # one hot
    IS_BASIS_ZERO = 18  # one hot
    INDEX = 19


class RowFeatures(IntEnum):
    # static
    BIAS = 0
    OBJECTIVE_COSINE_SIMILARITY = 1
    # dynamic
    IS_TIGHT = 2
    DUAL_SOLUTION_VALUE = 3
    SCALED_AGE = 4


N_VARIABLE_FEATURES = len(VariableFeatures)
N_ROW_FEATURES = len(RowFeatures)
STATIC_VARIABLE_FEATURES = np.arange(VariableFeatures.OBJECTIVE, VariableFeatures.IS_TYPE_CONTINUOUS + 1)
STATIC_ROW_FEATURES = np.arange(RowFeatures.BIAS, RowFeatures.OBJECTIVE_COSINE_SIMILARITY + 1)


@dataclass(frozen=True)
class NodeBipartiteObs:
    """Read-only snapshot, valid for the node it was extracted at."""
    variable_features: np.ndarray
    row_features: np.ndarray
    edge_features: CooMatrix

    def __post_init__(self):
        edges = self.edge_features
        for arr in (self.variable_features, self.row_features, edges.values, edges.indices):
            arr.flags.writeable = False


@dataclass
class _StaticFeatureCache:
    observation: Optional[NodeBipartiteObs] = None
    valid: bool = False

    def invalidate(self):
        self.valid = False

    def store(self, obs: NodeBipartiteObs):
        self.observation = obs
        self.valid = True

    def fits(self, n_vars: int, n_rows: int) -> bool:
        return (self.observation.variable_features.shape[0] == n_vars
                and self.observation.row_features.shape[0] == n_rows)


def _static_variable_features(columns: LpColumns, out: np.ndarray):
    out[:, VariableFeatures.OBJECTIVE] = columns.objective
    out[np.arange(len(columns)), VariableFeatures.IS_TYPE_BINARY + columns.vtype] = 1.0


def _dynamic_variable_features(columns: LpColumns, obj_norm: float, age_scale: float, out: np.ndarray):
    lb, ub, x = columns.lower_bound, columns.upper_bound, columns.solution
    has_lb = np.isfinite(lb)
    has_ub = np.isfinite(ub)

    frac = np.abs(x - np.round(x))
    frac[columns.vtype == VarType.CONTINUOUS] = 0.0

    out[:, VariableFeatures.HAS_LOWER_BOUND] = has_lb
    out[:, VariableFeatures.HAS_UPPER_BOUND] = has_ub
    out[:, VariableFeatures.NORMED_REDUCED_COST] = columns.reduced_cost / obj_norm
    out[:, VariableFeatures.SOLUTION_VALUE] = x
    out[:, VariableFeatures.SOLUTION_FRAC] = frac
    out[:, VariableFeatures.IS_SOLUTION_AT_LOWER_BOUND] = has_lb & (np.abs(x - lb) <= FEASTOL)
    out[:, VariableFeatures.IS_SOLUTION_AT_UPPER_BOUND] = has_ub & (np.abs(x - ub) <= FEASTOL)
    out[:, VariableFeatures.SCALED_AGE] = columns.age / age_scale
    out[:, VariableFeatures.INCUMBENT_VALUE] = columns.incumbent
    out[:, VariableFeatures.AVERAGE_INCUMBENT_VALUE] = columns.average_incumbent
    out[np.arange(len(columns)), VariableFeatures.IS_BASIS_LOWER + columns.basis_status] = 1.0
    out[:, VariableFeatures.INDEX] = columns.index


def _static_row_features(rows: LpRows, objective: np.ndarray, obj_norm: float, out: np.ndarray):
    n_rows = len(rows)
    coefs = rows.coefficients
    out[:, RowFeatures.BIAS] = np.where(np.isfinite(rows.rhs), rows.rhs - rows.constant, rows.lhs - rows.constant)

    row_norms = np.sqrt(np.bincount(coefs.row, weights=coefs.values ** 2, minlength=n_rows))
    dots = np.bincount(coefs.row, weights=coefs.values * objective[coefs.col], minlength=n_rows)
    denom = row_norms * obj_norm
    out[:, RowFeatures.OBJECTIVE_COSINE_SIMILARITY] = np.divide(
        dots, denom, out=np.zeros(n_rows), where=denom > 0
    )


def _dynamic_row_features(rows: LpRows, age_scale: float, out: np.ndarray):
    activity = rows.activity
    tight_lhs = np.isfinite(rows.lhs) & (np.abs(activity - rows.lhs) <= FEASTOL)
    tight_rhs = np.isfinite(rows.rhs) & (np.abs(activity - rows.rhs) <= FEASTOL)
    out[:, RowFeatures.IS_TIGHT] = tight_lhs | tight_rhs
    out[:, RowFeatures.DUAL_SOLUTION_VALUE] = rows.dual
    out[:, RowFeatures.SCALED_AGE] = rows.age / age_scale


def _edge_features(rows: LpRows, n_vars: int) -> CooMatrix:
    coefs = rows.coefficients
    if coefs.shape != (len(rows), n_vars):
        raise ValueError(f"coefficient matrix shape {coefs.shape} does not match LP size {(len(rows), n_vars)}")
    nonzero = coefs.values != 0.0
    return CooMatrix(values=coefs.values[nonzero], indices=coefs.indices[:, nonzero], shape=coefs.shape)


class NodeBipartite(ObservationFunction[NodeBipartiteObs]):
    """
    Extract a `NodeBipartiteObs` at every decision point.

    With `cache=True`, the static features (objective, variable type, row bias, row-objective
    cosine similarity) are computed on the first extraction of an episode and reused until the
    next `before_reset`. The cache is private mutable state: use one extractor per concurrently
    running episode.
    """

    def __init__(self, cache: bool = False):
        self.use_cache = cache
        self._cache = _StaticFeatureCache()

    def before_reset(self, state: StateAccessor) -> None:
        self._cache.invalidate()

    def reset(self, initial_state: StateAccessor) -> None:
        self.before_reset(initial_state)

    def obtain_observation(self, state: StateAccessor) -> Optional[NodeBipartiteObs]:
        return self.extract(state, state.is_solved())

    def extract(self, state: StateAccessor, done: bool) -> Optional[NodeBipartiteObs]:
        if done:
            return None

        columns = state.lp_columns()
        rows = state.lp_rows()
        n_vars, n_rows = len(columns), len(rows)
        edge_features = _edge_features(rows, n_vars)
        obj_norm = float(state.objective_norm())
        age_scale = float(state.n_lps() + AGE_OFFSET)

        variable_features = np.zeros((n_vars, N_VARIABLE_FEATURES), dtype=np.float64)
        row_features = np.zeros((n_rows, N_ROW_FEATURES), dtype=np.float64)
        _dynamic_variable_features(columns, obj_norm if obj_norm > 0 else 1.0, age_scale, variable_features)
        _dynamic_row_features(rows, age_scale, row_features)

        reuse = self.use_cache and self._cache.valid
        if reuse and not self._cache.fits(n_vars, n_rows):
            logger.debug("LP size changed to %d columns / %d rows, refreshing static features", n_vars, n_rows)
            reuse = False

        if reuse:
            cached = self._cache.observation
            variable_features[:, STATIC_VARIABLE_FEATURES] = cached.variable_features[:, STATIC_VARIABLE_FEATURES]
            row_features[:, STATIC_ROW_FEATURES] = cached.row_features[:, STATIC_ROW_FEATURES]
        else:
            _static_variable_features(columns, variable_features)
            _static_row_features(rows, columns.objective, obj_norm, row_features)

        obs = NodeBipartiteObs(
            variable_features=variable_features,
            row_features=row_features,
            edge_features=edge_features,
        )
        if self.use_cache and not reuse:
            logger.debug("Caching static features for %d columns / %d rows", n_vars, n_rows)
            self._cache.store(obs)
        return obs
