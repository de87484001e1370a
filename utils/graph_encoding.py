"""Graph encoding of node-bipartite observations for PyG models.

The returned `Data` keeps the two node types apart:
- constraint_features (n_rows, 5) and variable_features (n_vars, 20)
- edge_index (2, nnz): first line row (constraint) indices, second line variable indices
- edge_attr (nnz, 1): constraint coefficients
"""
import numpy as np
import torch
from torch_geometric.data import Data

from observation.node_bipartite import NodeBipartiteObs


def obs_to_pyg_data(obs: NodeBipartiteObs, nan_to_num: bool = True) -> Data:
    var_feats = np.asarray(obs.variable_features, dtype=np.float32)
    con_feats = np.asarray(obs.row_features, dtype=np.float32)
    if nan_to_num:
        # incumbent features are NaN until a feasible solution exists
        var_feats = np.nan_to_num(var_feats, nan=0.0)
        con_feats = np.nan_to_num(con_feats, nan=0.0)

    edges = obs.edge_features
    # astype copies out of the read-only observation arrays
    edge_index = torch.from_numpy(edges.indices.astype(np.int64))
    edge_attr = torch.from_numpy(edges.values.astype(np.float32)).unsqueeze(1)

    return Data(
        constraint_features=torch.tensor(con_feats, dtype=torch.float),
        variable_features=torch.tensor(var_feats, dtype=torch.float),
        edge_index=edge_index,
        edge_attr=edge_attr,
        num_nodes=con_feats.shape[0] + var_feats.shape[0],
    )
