import numpy as np
import pytest

torch = pytest.importorskip("torch")
pytest.importorskip("torch_geometric")

from observation.node_bipartite import NodeBipartite, VariableFeatures
from utils.graph_encoding import obs_to_pyg_data


def test_pyg_data_shapes(cycles_model):
    obs = NodeBipartite().obtain_observation(cycles_model)
    data = obs_to_pyg_data(obs)

    assert data.variable_features.shape == (10, 20)
    assert data.constraint_features.shape == (10, 5)
    assert data.edge_index.shape == (2, 20)
    assert data.edge_index.dtype == torch.long
    assert data.edge_attr.shape == (20, 1)
    assert data.num_nodes == 20


def test_edge_index_follows_coefficients(cycles_model):
    obs = NodeBipartite().obtain_observation(cycles_model)
    data = obs_to_pyg_data(obs)
    np.testing.assert_array_equal(data.edge_index.numpy(), obs.edge_features.indices)
    np.testing.assert_allclose(data.edge_attr.squeeze(1).numpy(), obs.edge_features.values)


def test_missing_incumbent_becomes_zero(cycles_model):
    obs = NodeBipartite().obtain_observation(cycles_model)
    assert np.isnan(obs.variable_features[:, VariableFeatures.INCUMBENT_VALUE]).all()

    data = obs_to_pyg_data(obs)
    assert not torch.isnan(data.variable_features).any()
    assert (data.variable_features[:, VariableFeatures.INCUMBENT_VALUE] == 0).all()

    raw = obs_to_pyg_data(obs, nan_to_num=False)
    assert torch.isnan(raw.variable_features[:, VariableFeatures.INCUMBENT_VALUE]).all()
