import numpy as np


def _random_incidence(rng, n_rows, n_cols, density):
    A = rng.choice([0, 1], size=(n_rows, n_cols), p=[1 - density, density])

    # every row and column touches at least two entries
    for i in range(n_rows):
        if A[i].sum() < 2:
            cols = rng.choice(n_cols, size=2, replace=False)
            A[i, cols] = 1

    for j in range(n_cols):
        if A[:, j].sum() < 2:
            rows = rng.choice(n_rows, size=2, replace=False)
            A[rows, j] = 1
    return A.astype(float)


class SetCoverGenerator:
    """min sum_j c_j x_j  s.t.  Ax >= 1, x binary."""

    def __init__(self, n_rows=50, n_cols=100, density=0.4, seed=None):
        self.n_rows = n_rows
        self.n_cols = n_cols
        self.density = density
        self.rng = np.random.default_rng(seed)

    def generate(self):
        A = _random_incidence(self.rng, self.n_rows, self.n_cols, self.density)
        c = self.rng.integers(1, 10, size=self.n_cols).astype(float)
        b = np.ones(self.n_rows, dtype=float)
        return {'A': A, 'c': c, 'b': b, 'type': 'cover'}


class PackingGenerator:
    """max sum_j p_j x_j  s.t.  Ax <= b, x binary."""

    def __init__(self, n_rows=20, n_cols=50, density=0.3, seed=None):
        self.n_rows = n_rows
        self.n_cols = n_cols
        self.density = density
        self.rng = np.random.default_rng(seed)

    def generate(self):
        A = _random_incidence(self.rng, self.n_rows, self.n_cols, self.density)
        A *= self.rng.integers(1, 20, size=A.shape)
        c = self.rng.integers(1, 50, size=self.n_cols).astype(float)
        # roughly half of each row's weight fits
        b = np.floor(A.sum(axis=1) / 2)
        return {'A': A, 'c': c, 'b': b, 'type': 'packing', 'sense': 'maximize'}


def make_instance(A, c, lhs=None, rhs=None, vtypes=None, lb=None, ub=None, sense='minimize'):
    """Explicit instance: lhs <= Ax <= rhs, lb <= x <= ub."""
    A = np.atleast_2d(np.asarray(A, dtype=float))
    n_cons, n_vars = A.shape
    instance = {
        'A': A,
        'c': np.asarray(c, dtype=float),
        'lhs': np.full(n_cons, -np.inf) if lhs is None else np.asarray(lhs, dtype=float),
        'rhs': np.full(n_cons, np.inf) if rhs is None else np.asarray(rhs, dtype=float),
        'sense': sense,
    }
    if vtypes is not None:
        instance['vtypes'] = vtypes
    if lb is not None:
        instance['lb'] = np.asarray(lb, dtype=float)
    if ub is not None:
        instance['ub'] = np.asarray(ub, dtype=float)
    return instance
