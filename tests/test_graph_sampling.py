import numpy as np
import pytest

from kindeform.graph_math import VertexCloud
from kindeform.graph_sampling import (
    TEMPORAL_WINDOW_US,
    connect_graph_nn,
    connect_graph_nn_temporal,
    connect_graph_seq,
    make_nodes,
    radius_sample,
    radius_sample_temporal,
    weight_vertices_nn,
    weight_vertices_nn_temporal,
    weight_vertices_seq,
)


def _line(n):
    return np.column_stack([np.arange(n, dtype=float), np.zeros(n), np.zeros(n)])


def _random_cloud(seed=0, n=200):
    rng = np.random.default_rng(seed)
    return VertexCloud(rng.uniform(0.0, 1.0, size=(n, 3)))


def _check_maps(maps, nodes, k):
    for weights in maps:
        assert len(weights) == k
        assert sum(w.weight for w in weights) == pytest.approx(1.0)
        assert all(w.weight >= 0 for w in weights)
        ids = [nodes[w.node].id for w in weights]
        assert ids == sorted(ids)


def test_make_nodes_identity():
    nodes = make_nodes(_line(3))
    assert [n.id for n in nodes] == [0, 1, 2]
    for n in nodes:
        np.testing.assert_array_equal(n.rotation, np.eye(3))
        np.testing.assert_array_equal(n.translation, np.zeros(3))
    np.testing.assert_array_equal(nodes[2].position, [2.0, 0.0, 0.0])


def test_radius_sample_covers_and_spreads():
    cloud = _random_cloud()
    spacing = 0.3
    picked = radius_sample(cloud, spacing)
    samples = cloud.positions[picked]
    assert picked[0] == 0
    for i, a in enumerate(samples):
        for b in samples[i + 1 :]:
            assert np.linalg.norm(a - b) > spacing
    gaps = np.linalg.norm(cloud.positions[:, None, :] - samples[None, :, :], axis=2)
    assert np.all(gaps.min(axis=1) <= spacing)


def test_radius_sample_temporal_times_follow_indices():
    cloud = _random_cloud(1, 50)
    times = list(range(1000, 1050))
    picked, picked_times = radius_sample_temporal(cloud, times, 0.4)
    assert picked_times == [times[i] for i in picked]
    np.testing.assert_array_equal(picked, radius_sample(cloud, 0.4))


def test_radius_sample_temporal_length_mismatch():
    with pytest.raises(ValueError):
        radius_sample_temporal(_random_cloud(), [1, 2, 3], 0.2)


def test_connect_seq_neighbours():
    nodes = make_nodes(_line(8))
    connect_graph_seq(nodes, 4)
    for node in nodes:
        assert len(node.neighbours) == 4
        assert node not in node.neighbours
    assert [n.id for n in nodes[3].neighbours] == [2, 4, 1, 5]
    assert sorted(n.id for n in nodes[0].neighbours) == [1, 2, 3, 4]
    assert sorted(n.id for n in nodes[7].neighbours) == [3, 4, 5, 6]


def test_connect_seq_too_few_nodes():
    with pytest.raises(ValueError):
        connect_graph_seq(make_nodes(_line(4)), 4)


def test_connect_nn_nearest():
    nodes = make_nodes(_line(10))
    connect_graph_nn(nodes, 4)
    assert {n.id for n in nodes[5].neighbours} == {3, 4, 6, 7}
    for node in nodes:
        assert len(node.neighbours) == 4
        assert node not in node.neighbours


def test_connect_nn_temporal_respects_window():
    nodes = make_nodes(_line(20))
    times = [0] * 10 + [10 * TEMPORAL_WINDOW_US] * 10
    connect_graph_nn_temporal(nodes, times, 2)
    for node in nodes:
        assert len(node.neighbours) == 2
        for other in node.neighbours:
            assert abs(times[other.id] - times[node.id]) < TEMPORAL_WINDOW_US
    assert {n.id for n in nodes[9].neighbours} == {7, 8}


def test_connect_nn_temporal_not_enough_in_window():
    nodes = make_nodes(_line(8))
    times = [i * 2 * TEMPORAL_WINDOW_US for i in range(8)]
    with pytest.raises(ValueError):
        connect_graph_nn_temporal(nodes, times, 2)


def test_weight_vertices_seq():
    nodes = make_nodes(_line(10))
    sampled = [i * 10 for i in range(10)]
    vertices = VertexCloud(np.array([[3.2, 0.1, 0.0], [7.6, 0.0, 0.2], [0.1, 0.0, 0.0]]))
    maps = weight_vertices_seq(nodes, vertices, [31, 77, 2], sampled, 0, 4)
    assert len(maps) == 3
    _check_maps(maps, nodes, 4)
    heaviest = max(maps[0], key=lambda w: w.weight)
    assert heaviest.node == 3
    assert max(maps[1], key=lambda w: w.weight).node == 8


def test_weight_vertices_seq_start_offset():
    nodes = make_nodes(_line(10))
    sampled = [i * 10 for i in range(10)]
    vertices = VertexCloud(_line(6) + 0.25)
    maps = weight_vertices_seq(nodes, vertices, [i * 10 for i in range(6)], sampled, 2, 4)
    assert len(maps) == 4
    _check_maps(maps, nodes, 4)


def test_weight_vertices_seq_too_few_nodes():
    nodes = make_nodes(_line(3))
    with pytest.raises(ValueError):
        weight_vertices_seq(nodes, VertexCloud(_line(1)), [0], [0, 1, 2], 0, 4)


def test_weight_vertices_nn():
    nodes = make_nodes(_random_cloud(2, 30).positions)
    cloud = _random_cloud(3, 40)
    maps = weight_vertices_nn(nodes, cloud, 4)
    assert len(maps) == 40
    _check_maps(maps, nodes, 4)
    positions = np.array([n.position for n in nodes])
    for vertex, weights in zip(cloud.positions, maps):
        nearest = int(np.argmin(np.linalg.norm(positions - vertex, axis=1)))
        assert nearest in {w.node for w in weights}


def test_weight_vertices_nn_temporal_window():
    nodes = make_nodes(_line(20))
    graph_times = [0] * 10 + [10 * TEMPORAL_WINDOW_US] * 10
    vertices = VertexCloud(np.array([[9.6, 0.0, 0.0], [9.4, 0.0, 0.0]]))
    vertex_times = [0, 10 * TEMPORAL_WINDOW_US]
    maps = weight_vertices_nn_temporal(nodes, vertices, vertex_times, graph_times, 2)
    _check_maps(maps, nodes, 2)
    assert all(w.node < 10 for w in maps[0])
    assert all(w.node >= 10 for w in maps[1])


def test_weight_vertices_nn_temporal_no_match():
    nodes = make_nodes(_line(8))
    with pytest.raises(ValueError):
        weight_vertices_nn_temporal(
            nodes, VertexCloud(_line(1)), [100 * TEMPORAL_WINDOW_US], [0] * 8, 2
        )