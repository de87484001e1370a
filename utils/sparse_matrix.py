"""Sparse (row, column, value) triplet matrix used for bipartite edges."""
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import scipy.sparse as sp


@dataclass(frozen=True)
class CooMatrix:
    """
    Triplet matrix with a declared shape.

    - values: (nnz,) coefficients
    - indices: (2, nnz) array, first line row indices, second line column indices
    - shape: (n_rows, n_cols)

    Duplicated (row, col) pairs are not merged; triplets carry no ordering guarantee.
    """
    values: np.ndarray
    indices: np.ndarray
    shape: Tuple[int, int]

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float64).reshape(-1)
        indices = np.asarray(self.indices, dtype=np.int64)
        if indices.size == 0:
            indices = indices.reshape(2, 0)
        if indices.ndim != 2 or indices.shape[0] != 2:
            raise ValueError(f"indices must have shape (2, nnz), got {indices.shape}")
        if indices.shape[1] != values.shape[0]:
            raise ValueError(
                f"indices and values disagree on nnz: {indices.shape[1]} != {values.shape[0]}"
            )
        n_rows, n_cols = (int(s) for s in self.shape)
        if n_rows < 0 or n_cols < 0:
            raise ValueError(f"invalid shape {self.shape}")
        if values.size > 0:
            if indices.min() < 0 or indices[0].max() >= n_rows or indices[1].max() >= n_cols:
                raise ValueError(f"indices out of bounds for shape {(n_rows, n_cols)}")
        # frozen dataclass: normalized fields go through object.__setattr__
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'indices', indices)
        object.__setattr__(self, 'shape', (n_rows, n_cols))

    @property
    def row(self) -> np.ndarray:
        return self.indices[0]

    @property
    def col(self) -> np.ndarray:
        return self.indices[1]

    @property
    def nnz(self) -> int:
        return int(self.values.shape[0])

    @classmethod
    def from_dense(cls, array) -> 'CooMatrix':
        """Keep the nonzero entries of a 2D array, in row-major order."""
        array = np.asarray(array, dtype=np.float64)
        if array.ndim != 2:
            raise ValueError(f"expected a 2D array, got {array.ndim}D")
        rows, cols = np.nonzero(array)
        return cls(values=array[rows, cols], indices=np.vstack([rows, cols]), shape=array.shape)

    def to_scipy(self) -> sp.coo_matrix:
        return sp.coo_matrix((self.values, (self.row, self.col)), shape=self.shape)

    def to_dense(self) -> np.ndarray:
        # duplicates are summed by scipy on densification
        return self.to_scipy().toarray()
