"""
SCIP wrapper that exposes branching decisions and a read-only view of the solver state.

- `SCIPStateAccessor` reads the current LP of a live `pyscipopt.Model` (e.g. from inside a
  branching rule) through the `StateAccessor` interface.
- `SCIPWrapper` loads an instance, registers a branching rule handing every decision point to an
  attached policy callback, and runs the solve.
- `copy_model` is the only serialized operation: SCIP's copy is not thread safe.
"""
import logging
import threading
import time
from typing import Callable, Optional

import numpy as np
import pyscipopt as scp
from pyscipopt import SCIP_PARAMSETTING, SCIP_RESULT, SCIP_STAGE, Branchrule

from env.state import BasisStatus, LpColumns, LpRows, StageError, StateAccessor, VarType
from utils.sparse_matrix import CooMatrix

logger = logging.getLogger(__name__)

SCIP_INF = 1e20

SCIP_VTYPES = {
    'BINARY': VarType.BINARY,
    'INTEGER': VarType.INTEGER,
    'IMPLINT': VarType.IMPLICIT_INTEGER,
    'CONTINUOUS': VarType.CONTINUOUS,
}
SCIP_BASIS_STATUS = {
    'lower': BasisStatus.LOWER,
    'basic': BasisStatus.BASIC,
    'upper': BasisStatus.UPPER,
    'zero': BasisStatus.ZERO,
}

_copy_lock = threading.Lock()


def copy_model(model: scp.Model) -> scp.Model:
    """Copy a SCIP model. Copies are serialized through a process-wide lock."""
    if model.getStage() == SCIP_STAGE.INIT:
        return scp.Model()
    with _copy_lock:
        return scp.Model(sourceModel=model)


def _finite_or_inf(value: float) -> float:
    if value >= SCIP_INF:
        return np.inf
    if value <= -SCIP_INF:
        return -np.inf
    return float(value)


class SCIPStateAccessor(StateAccessor):
    """Read-only view of a pyscipopt Model. Never modifies the model."""

    def __init__(self, model: scp.Model):
        self.model = model

    def _require_solving(self):
        if self.model.getStage() != SCIP_STAGE.SOLVING:
            raise StageError("LP columns and rows are only available during solving")

    def is_solved(self) -> bool:
        return self.model.getStage() == SCIP_STAGE.SOLVED

    def lp_columns(self) -> LpColumns:
        self._require_solving()
        m = self.model
        cols = m.getLPColsData()
        n = len(cols)
        # the transformed problem is always a minimization
        sign = -1.0 if m.getObjectiveSense() == 'maximize' else 1.0
        best = m.getBestSol() if m.getNSols() > 0 else None

        data = {name: np.zeros(n) for name in (
            'lower_bound', 'upper_bound', 'objective', 'solution', 'reduced_cost', 'age')}
        index = np.zeros(n, dtype=np.int64)
        vtype = np.zeros(n, dtype=np.int64)
        basis_status = np.zeros(n, dtype=np.int64)
        incumbent = np.full(n, np.nan)
        average_incumbent = np.full(n, np.nan)

        for i, col in enumerate(cols):
            var = col.getVar()
            index[i] = var.getIndex()
            vtype[i] = SCIP_VTYPES[var.vtype()]
            basis_status[i] = SCIP_BASIS_STATUS[col.getBasisStatus()]
            data['lower_bound'][i] = _finite_or_inf(col.getLb())
            data['upper_bound'][i] = _finite_or_inf(col.getUb())
            data['objective'][i] = sign * col.getObjCoeff()
            data['solution'][i] = col.getPrimsol()
            data['reduced_cost'][i] = m.getVarRedcost(var)
            data['age'][i] = col.getAge()
            if best is not None:
                incumbent[i] = m.getSolVal(best, var)
                average_incumbent[i] = var.getAvgSol()

        return LpColumns(
            index=index,
            vtype=vtype,
            basis_status=basis_status,
            incumbent=incumbent,
            average_incumbent=average_incumbent,
            **data,
        )

    def lp_rows(self) -> LpRows:
        self._require_solving()
        m = self.model
        rows = m.getLPRowsData()
        n_cols = m.getNLPCols()
        n = len(rows)

        lhs, rhs, constant = np.zeros(n), np.zeros(n), np.zeros(n)
        activity, dual, age = np.zeros(n), np.zeros(n), np.zeros(n)
        gi_rows, gi_cols, vals = [], [], []
        for i, row in enumerate(rows):
            lhs[i] = _finite_or_inf(row.getLhs())
            rhs[i] = _finite_or_inf(row.getRhs())
            constant[i] = row.getConstant()
            activity[i] = m.getRowLPActivity(row)
            dual[i] = m.getRowDualSol(row)
            age[i] = row.getAge()
            for col, coef in zip(row.getCols(), row.getVals()):
                pos = col.getLPPos()
                # columns not in the current LP have no position
                if pos < 0:
                    continue
                gi_rows.append(i)
                gi_cols.append(pos)
                vals.append(coef)

        return LpRows(
            lhs=lhs,
            rhs=rhs,
            constant=constant,
            activity=activity,
            dual=dual,
            age=age,
            coefficients=CooMatrix(
                values=np.asarray(vals, dtype=np.float64),
                indices=np.array([gi_rows, gi_cols], dtype=np.int64).reshape(2, -1),
                shape=(n, n_cols),
            ),
        )

    def lp_branch_cands(self):
        """LP positions of the fractional branching candidates."""
        self._require_solving()
        cands, *_ = self.model.getLPBranchCands()
        return np.array([var.getCol().getLPPos() for var in cands], dtype=np.int64)

    def objective_norm(self) -> float:
        return float(np.linalg.norm([var.getObj() for var in self.model.getVars()]))

    def n_lps(self) -> int:
        return int(self.model.getNLPs())


class RLBranchrule(Branchrule):
    """
    Branching rule handing every LP decision point to the policy attached on the wrapper.
    The policy receives a `SCIPStateAccessor` and returns the LP position of the column to
    branch on, or None to let SCIP's other rules decide.
    """
    def __init__(self, env_ref):
        super().__init__()
        self.env_ref = env_ref

    def branchexeclp(self, allowaddcons):
        policy = getattr(self.env_ref, '_policy_cb', None)
        if policy is None:
            return {'result': SCIP_RESULT.DIDNOTRUN}
        self.env_ref.n_decisions += 1
        chosen = policy(SCIPStateAccessor(self.model))
        if chosen is None:
            return {'result': SCIP_RESULT.DIDNOTRUN}
        var = self.model.getLPColsData()[int(chosen)].getVar()
        logger.debug("Policy branches on %s", var.name)
        self.model.branchVar(var)
        return {'result': SCIP_RESULT.BRANCHED}


class SCIPWrapper:
    def __init__(self, instance_path: str = None, time_limit: float = 60.0,
                 disable_presolve: bool = False, disable_cuts: bool = False,
                 seed: Optional[int] = None):
        self.instance_path = instance_path
        self.model = None
        self.time_limit = time_limit
        self.disable_presolve = disable_presolve
        self.disable_cuts = disable_cuts
        self.seed = seed
        self.n_decisions = 0
        self._policy_cb = None
        self._start_time = None
        self._loaded = False
        self._branchrule_included = False

    def load_instance(self, instance_path: Optional[str] = None):
        """Read a MILP instance file (.lp, .mps, ...) into a fresh SCIP model."""
        if instance_path is not None:
            self.instance_path = instance_path
        if not self.instance_path:
            raise ValueError("No instance path given")
        self.model = scp.Model()
        self.model.hideOutput(True)
        self.model.readProblem(str(self.instance_path))
        self.model.setRealParam("limits/time", float(self.time_limit))
        if self.disable_presolve:
            self.model.setPresolve(SCIP_PARAMSETTING.OFF)
        if self.disable_cuts:
            self.model.setSeparating(SCIP_PARAMSETTING.OFF)
        if self.seed is not None:
            self.model.setIntParam("randomization/randomseedshift", abs(int(self.seed)))
        self.n_decisions = 0
        self._loaded = True
        self._branchrule_included = False
        return self

    def attach_policy(self, policy_callable: Optional[Callable[[SCIPStateAccessor], Optional[int]]]):
        """Attach a synchronous policy mapping state -> LP position of the branching column."""
        self._policy_cb = policy_callable
        return self

    def solve(self):
        if not self._loaded:
            raise RuntimeError("Instance not loaded. Call load_instance() first.")
        self._start_time = time.time()
        # a plugin can be included only once per model
        if self._policy_cb is not None and not self._branchrule_included:
            self.model.includeBranchrule(
                RLBranchrule(env_ref=self), "rl_branching", "RL-based branching rule",
                priority=10_000_000, maxdepth=-1, maxbounddist=1.0
            )
            self._branchrule_included = True
        self.model.optimize()
        logger.info("SCIP finished with status %s after %d policy decisions", self.model.getStatus(), self.n_decisions)

    def state(self) -> SCIPStateAccessor:
        return SCIPStateAccessor(self.model)

    def copy(self) -> scp.Model:
        return copy_model(self.model)

    def is_solved(self) -> bool:
        return self.model is not None and self.model.getStage() == SCIP_STAGE.SOLVED

    def get_time_elapsed(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time
