"""
In-process Branch-and-Bound over LP relaxations solved with scipy.optimize.linprog (HiGHS).

The model exposes the focused node's LP through the `StateAccessor` interface, so observation
functions can read it exactly as they would read a live SCIP model:
- decision points are nodes whose LP solution is fractional on a non-continuous variable
- the caller branches with `step(var_index)` or drops an integral focus with `advance()`
- duals and reduced costs are given for the minimization form of the problem
"""
import copy
import logging
import random
from dataclasses import dataclass

import numpy as np
import scipy.optimize as opt

from env.state import FEASTOL, BasisStatus, LpColumns, LpRows, StageError, StateAccessor, VarType
from utils.sparse_matrix import CooMatrix

logger = logging.getLogger(__name__)

VTYPE_CODES = {
    'B': VarType.BINARY,
    'I': VarType.INTEGER,
    'M': VarType.IMPLICIT_INTEGER,
    'C': VarType.CONTINUOUS,
}
NODE_SELECTION_RULES = ('best_first', 'depth_first', 'worst_first', 'random')


@dataclass
class LPSolution:
    objective: float  # minimization form
    x: np.ndarray
    lower_bound: np.ndarray
    upper_bound: np.ndarray
    reduced_cost: np.ndarray
    dual: np.ndarray
    activity: np.ndarray


class BBNode:
    def __init__(self, lower_bound, local_bounds, depth):
        self.lower_bound = lower_bound
        self.local_bounds = local_bounds  # var index -> (lb, ub) tightened by branching
        self.depth = depth
        self.lp = None  # relaxed solution, None when infeasible


def _row_sides(instance, n_cons):
    if 'lhs' in instance or 'rhs' in instance:
        lhs = np.asarray(instance.get('lhs', np.full(n_cons, -np.inf)), dtype=float)
        rhs = np.asarray(instance.get('rhs', np.full(n_cons, np.inf)), dtype=float)
        return lhs, rhs
    b = np.asarray(instance['b'], dtype=float)
    problem_type = instance.get('type', 'cover')
    if problem_type == 'cover':
        # Ax >= b
        return b, np.full(n_cons, np.inf)
    if problem_type == 'packing':
        # Ax <= b
        return np.full(n_cons, -np.inf), b
    raise ValueError(f"Unknown problem type: {problem_type}")


def _as_linprog_bounds(lb, ub):
    return [(None if np.isinf(l) else l, None if np.isinf(u) else u) for l, u in zip(lb, ub)]


def _basis_status(x, lb, ub):
    """Basis status read off the LP solution: at a bound, free at zero, or basic."""
    status = np.full(x.shape[0], BasisStatus.BASIC, dtype=np.int64)
    at_lb = np.isfinite(lb) & (np.abs(x - lb) <= FEASTOL)
    at_ub = np.isfinite(ub) & (np.abs(x - ub) <= FEASTOL) & ~at_lb
    free_zero = ~np.isfinite(lb) & ~np.isfinite(ub) & (np.abs(x) <= FEASTOL)
    status[at_lb] = BasisStatus.LOWER
    status[at_ub] = BasisStatus.UPPER
    status[free_zero] = BasisStatus.ZERO
    return status


class BranchAndBoundModel(StateAccessor):
    """
    Branch-and-Bound search controlled from outside:
    - state: fringe of open nodes, incumbent, focused node and its LP
    - decision: which fractional variable to branch on at the focused node
    - node selection among open nodes: best-first / depth-first / worst-first / random
    """
    def __init__(self, instance, node_selection='best_first', seed=None):
        if node_selection not in NODE_SELECTION_RULES:
            raise ValueError(f"Unknown node selection rule: {node_selection}")
        self.node_selection = node_selection
        self._rng = random.Random(seed)

        self.A = np.atleast_2d(np.asarray(instance['A'], dtype=float))
        self.c = np.asarray(instance['c'], dtype=float)
        self.n_cons, self.n_vars = self.A.shape
        if self.c.shape != (self.n_vars,):
            raise ValueError(f"objective has shape {self.c.shape}, expected ({self.n_vars},)")
        self.lhs, self.rhs = _row_sides(instance, self.n_cons)

        vtypes = instance.get('vtypes', 'B' * self.n_vars)
        if len(vtypes) != self.n_vars or any(t not in VTYPE_CODES for t in vtypes):
            raise ValueError(f"vtypes must be {self.n_vars} letters among {sorted(VTYPE_CODES)}")
        self.vtypes = np.array([VTYPE_CODES[t] for t in vtypes], dtype=np.int64)
        self._integral = self.vtypes != VarType.CONTINUOUS

        default_ub = np.where(self.vtypes == VarType.BINARY, 1.0, np.inf)
        self.lb = np.asarray(instance.get('lb', np.zeros(self.n_vars)), dtype=float)
        self.ub = np.asarray(instance.get('ub', default_ub), dtype=float)

        sense = instance.get('sense', 'minimize')
        if sense not in ('minimize', 'maximize'):
            raise ValueError(f"Unknown objective sense: {sense}")
        self._obj_sign = -1.0 if sense == 'maximize' else 1.0

        self._coefficients = CooMatrix.from_dense(self.A)
        eq = np.isfinite(self.lhs) & np.isfinite(self.rhs) & (np.abs(self.rhs - self.lhs) <= FEASTOL)
        self._eq_rows = eq
        self._le_rows = np.isfinite(self.rhs) & ~eq
        self._ge_rows = np.isfinite(self.lhs) & ~eq

        self._stage = 'problem'
        self._clear_search()

    def _clear_search(self):
        self.fringe = []  # open nodes
        self.focus = None
        self.steps = 0
        self._n_lps = 0
        self._best_obj = float('inf')
        self._best_x = None
        self._sol_sum = np.zeros(self.n_vars)
        self._n_sols = 0
        self._col_age = np.zeros(self.n_vars)
        self._row_age = np.zeros(self.n_cons)

    # -------------------- LP relaxation --------------------

    def solve_lp(self, local_bounds):
        """
        Solve the LP relaxation under the node's local bounds.
        min (sense * c)^T x  s.t.  lhs <= Ax <= rhs,  lb <= x <= ub
        Returns None when the LP is infeasible.
        """
        lb = self.lb.copy()
        ub = self.ub.copy()
        for idx, (l, u) in local_bounds.items():
            lb[idx], ub[idx] = l, u
        if np.any(lb > ub + FEASTOL):
            return None

        A_ub = np.vstack([self.A[self._le_rows], -self.A[self._ge_rows]])
        b_ub = np.concatenate([self.rhs[self._le_rows], -self.lhs[self._ge_rows]])
        has_ub, has_eq = A_ub.shape[0] > 0, bool(self._eq_rows.any())

        res = opt.linprog(
            self._obj_sign * self.c,
            A_ub=A_ub if has_ub else None,
            b_ub=b_ub if has_ub else None,
            A_eq=self.A[self._eq_rows] if has_eq else None,
            b_eq=self.rhs[self._eq_rows] if has_eq else None,
            bounds=_as_linprog_bounds(lb, ub),
            method='highs'
        )
        self._n_lps += 1

        if not res.success:
            logger.debug("LP not solved to optimality (status=%s): %s", res.status, res.message)
            return None

        x = res.x
        activity = self.A @ x
        dual = np.zeros(self.n_cons)
        if has_ub:
            n_le = int(self._le_rows.sum())
            dual[self._le_rows] += res.ineqlin.marginals[:n_le]
            # rows stored as -Ax <= -lhs
            dual[self._ge_rows] -= res.ineqlin.marginals[n_le:]
        if has_eq:
            dual[self._eq_rows] = res.eqlin.marginals

        self._update_ages(x, activity)
        return LPSolution(
            objective=float(res.fun),
            x=x,
            lower_bound=lb,
            upper_bound=ub,
            reduced_cost=res.lower.marginals + res.upper.marginals,
            dual=dual,
            activity=activity,
        )

    def _update_ages(self, x, activity):
        # column age: successive LPs at zero, row age: successive LPs not tight
        self._col_age = np.where(np.abs(x) <= FEASTOL, self._col_age + 1, 0.0)
        tight = ((np.isfinite(self.lhs) & (np.abs(activity - self.lhs) <= FEASTOL))
                 | (np.isfinite(self.rhs) & (np.abs(activity - self.rhs) <= FEASTOL)))
        self._row_age = np.where(tight, 0.0, self._row_age + 1)

    def process_node_lp(self, node: BBNode):
        """Run the LP relaxation at this node and store (lower_bound, lp)."""
        node.lp = self.solve_lp(node.local_bounds)
        node.lower_bound = node.lp.objective if node.lp is not None else float('inf')
        return node.lower_bound, node.lp

    def is_integer(self, x):
        """Check that every non-continuous variable is (numerically) integral."""
        if x is None:
            return False
        return bool(np.all(np.abs(x[self._integral] - np.round(x[self._integral])) <= FEASTOL))

    def _record_solution(self, lp: LPSolution):
        self._sol_sum += lp.x
        self._n_sols += 1
        self._best_obj = lp.objective
        self._best_x = lp.x.copy()
        logger.debug("New incumbent with objective %.6g after %d LPs", self.primal_bound, self._n_lps)

    # -------------------- search --------------------

    def reset(self):
        """Start a new search: solve the root LP and focus the root node."""
        self._clear_search()
        root = BBNode(lower_bound=-float('inf'), local_bounds={}, depth=0)
        self.process_node_lp(root)
        if root.lp is None:
            # Infeasible from the start
            self._stage = 'solved'
            return True
        if self.is_integer(root.lp.x):
            self._record_solution(root.lp)
        self.focus = root
        self._stage = 'solving'
        return False

    def lp_branch_cands(self):
        """Non-continuous variables with a fractional value at the focused node."""
        lp = self._focused_lp()
        frac = np.abs(lp.x - np.round(lp.x))
        return np.flatnonzero(self._integral & (frac > FEASTOL))

    def branch(self, node: BBNode, var_idx):
        """Create the down child (x <= floor) and the up child (x >= ceil)."""
        value = node.lp.x[var_idx]
        lb = node.lp.lower_bound[var_idx]
        ub = node.lp.upper_bound[var_idx]

        child0 = BBNode(0, dict(node.local_bounds), node.depth + 1)
        child0.local_bounds[var_idx] = (lb, float(np.floor(value)))

        child1 = BBNode(0, dict(node.local_bounds), node.depth + 1)
        child1.local_bounds[var_idx] = (float(np.ceil(value)), ub)

        return [child0, child1]

    def step(self, var_idx):
        """Branch the focused node on `var_idx` and move to the next decision point."""
        self._focused_lp()
        var_idx = int(var_idx)
        if var_idx not in self.lp_branch_cands():
            raise ValueError(f"Variable {var_idx} is not a branching candidate")

        self.steps += 1
        logger.debug("Branching on x%d = %.6g at depth %d", var_idx, self.focus.lp.x[var_idx], self.focus.depth)
        for child in self.branch(self.focus, var_idx):
            lb, lp = self.process_node_lp(child)
            # Infeasible or dominated
            if lp is None or self._dominated(lb):
                continue
            if self.is_integer(lp.x):
                self._record_solution(lp)
            else:
                self.fringe.append(child)

        self.focus = None
        return self._select_next()

    def advance(self):
        """Drop the focused node without branching (e.g. its LP is integral)."""
        self._focused_lp()
        self.focus = None
        return self._select_next()

    def _dominated(self, lower_bound):
        return lower_bound >= self._best_obj - FEASTOL

    def _pop_node(self):
        if self.node_selection == 'best_first':
            self.fringe.sort(key=lambda n: n.lower_bound)
            return self.fringe.pop(0)
        if self.node_selection == 'depth_first':
            self.fringe.sort(key=lambda n: n.depth, reverse=True)
            return self.fringe.pop(0)
        if self.node_selection == 'worst_first':
            self.fringe.sort(key=lambda n: n.lower_bound, reverse=True)
            return self.fringe.pop(0)
        return self.fringe.pop(self._rng.randrange(len(self.fringe)))

    def _select_next(self):
        while self.fringe:
            node = self._pop_node()
            # Pruning by bound: node dominated by the incumbent
            if self._dominated(node.lower_bound):
                continue
            self.focus = node
            return False
        self._stage = 'solved'
        return True

    def copy(self):
        return copy.deepcopy(self)

    @property
    def primal_bound(self):
        """Incumbent objective in the original sense (inf-like when none is known)."""
        return self._obj_sign * self._best_obj

    @property
    def dual_bound(self):
        bounds = [n.lower_bound for n in self.fringe]
        if self.focus is not None:
            bounds.append(self.focus.lower_bound)
        if not bounds:
            return self.primal_bound
        return self._obj_sign * min(bounds)

    # -------------------- StateAccessor --------------------

    def _focused_lp(self) -> LPSolution:
        if self._stage != 'solving' or self.focus is None:
            raise StageError(f"LP relaxation is only available during solving (stage: {self._stage})")
        return self.focus.lp

    def is_solved(self):
        return self._stage == 'solved'

    def lp_columns(self) -> LpColumns:
        lp = self._focused_lp()
        if self._n_sols:
            incumbent = self._best_x.copy()
            average_incumbent = self._sol_sum / self._n_sols
        else:
            incumbent = np.full(self.n_vars, np.nan)
            average_incumbent = np.full(self.n_vars, np.nan)
        # snapshots never share memory with the search state
        return LpColumns(
            index=np.arange(self.n_vars),
            vtype=self.vtypes.copy(),
            lower_bound=lp.lower_bound.copy(),
            upper_bound=lp.upper_bound.copy(),
            objective=self.c.copy(),
            solution=lp.x.copy(),
            reduced_cost=lp.reduced_cost.copy(),
            basis_status=_basis_status(lp.x, lp.lower_bound, lp.upper_bound),
            age=self._col_age.copy(),
            incumbent=incumbent,
            average_incumbent=average_incumbent,
        )

    def lp_rows(self) -> LpRows:
        lp = self._focused_lp()
        return LpRows(
            lhs=self.lhs.copy(),
            rhs=self.rhs.copy(),
            constant=np.zeros(self.n_cons),
            activity=lp.activity.copy(),
            dual=lp.dual.copy(),
            age=self._row_age.copy(),
            coefficients=CooMatrix(
                values=self._coefficients.values.copy(),
                indices=self._coefficients.indices.copy(),
                shape=self._coefficients.shape,
            ),
        )

    def objective_norm(self):
        return float(np.linalg.norm(self.c))

    def n_lps(self):
        return self._n_lps
