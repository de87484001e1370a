import numpy as np
import pytest

from bnb_model import BranchAndBoundModel
from env.state import BasisStatus, LpColumns, LpRows, StageError, StateAccessor, VarType
from instances_generator import make_instance
from utils.sparse_matrix import CooMatrix


class StubState(StateAccessor):
    """State accessor serving fixed LP data."""

    def __init__(self, columns, rows, obj_norm=1.0, n_lps=0, solved=False, has_lp=True):
        self.columns = columns
        self.rows = rows
        self.obj_norm = obj_norm
        self.lps = n_lps
        self.solved = solved
        self.has_lp = has_lp
        self.n_column_queries = 0

    def is_solved(self):
        return self.solved

    def lp_columns(self):
        if not self.has_lp:
            raise StageError("no LP")
        self.n_column_queries += 1
        return self.columns

    def lp_rows(self):
        if not self.has_lp:
            raise StageError("no LP")
        return self.rows

    def objective_norm(self):
        return self.obj_norm

    def n_lps(self):
        return self.lps


def make_columns(n, **overrides):
    data = dict(
        index=np.arange(n),
        vtype=np.full(n, VarType.BINARY),
        lower_bound=np.zeros(n),
        upper_bound=np.ones(n),
        objective=np.ones(n),
        solution=np.zeros(n),
        reduced_cost=np.zeros(n),
        basis_status=np.full(n, BasisStatus.LOWER),
        age=np.zeros(n),
        incumbent=np.full(n, np.nan),
        average_incumbent=np.full(n, np.nan),
    )
    data.update(overrides)
    return LpColumns(**data)


def make_rows(dense, **overrides):
    dense = np.atleast_2d(np.asarray(dense, dtype=float))
    n = dense.shape[0]
    data = dict(
        lhs=np.full(n, -np.inf),
        rhs=np.ones(n),
        constant=np.zeros(n),
        activity=np.zeros(n),
        dual=np.zeros(n),
        age=np.zeros(n),
        coefficients=CooMatrix.from_dense(dense),
    )
    data.update(overrides)
    return LpRows(**data)


@pytest.fixture
def scenario_model():
    """maximize x + y  s.t.  x + y <= 1,  x, y binary"""
    model = BranchAndBoundModel(make_instance(A=[[1, 1]], c=[1, 1], rhs=[1], vtypes='BB', sense='maximize'))
    model.reset()
    return model


def odd_cycles_cover(n_cycles=2, length=5):
    """Vertex cover of disjoint odd cycles: the root LP is all halves."""
    n = n_cycles * length
    A = np.zeros((n, n))
    for k in range(n_cycles):
        for i in range(length):
            A[k * length + i, k * length + i] = 1
            A[k * length + i, k * length + (i + 1) % length] = 1
    return {'A': A, 'c': np.ones(n), 'b': np.ones(n), 'type': 'cover'}


@pytest.fixture
def cycles_model():
    model = BranchAndBoundModel(odd_cycles_cover())
    model.reset()
    return model
