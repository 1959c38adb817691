"""Sampling, connection and vertex weighting for deformation graph nodes."""

from __future__ import annotations

import math

import numpy as np
from scipy.spatial import cKDTree

from kindeform.graph_math import GraphNode, VertexWeightMap, sort_weight_maps

TEMPORAL_WINDOW_US = 60_000_000
LOOK_BACK = 20


def _positions(vertices) -> np.ndarray:
    points = getattr(vertices, "positions", vertices)
    return np.asarray(points, dtype=float).reshape(-1, 3)


def _node_positions(nodes) -> np.ndarray:
    return np.array([node.position for node in nodes], dtype=float).reshape(-1, 3)


def make_nodes(positions) -> list[GraphNode]:
    """Create nodes with identity transforms at the given positions."""
    return [GraphNode(i, p) for i, p in enumerate(_positions(positions))]


def _radius_pick(points: np.ndarray, target_spacing: float) -> list[int]:
    if target_spacing < 0:
        raise ValueError("target spacing must not be negative")
    if len(points) == 0:
        return []
    tree = cKDTree(points)
    used = np.zeros(len(points), dtype=bool)
    picked: list[int] = []
    for i, point in enumerate(points):
        if used[i]:
            continue
        near = tree.query_ball_point(point, target_spacing)
        if near:
            picked.append(i)
            used[near] = True
    return picked


def radius_sample(vertices, target_spacing) -> np.ndarray:
    """Indices of vertices picked greedily so that each covers its ``target_spacing`` ball."""
    return np.array(_radius_pick(_positions(vertices), float(target_spacing)), dtype=int)


def radius_sample_temporal(vertices, vertex_times, target_spacing) -> tuple[np.ndarray, list[int]]:
    """Like :func:`radius_sample`, also returning the time of each picked vertex."""
    points = _positions(vertices)
    times = list(vertex_times)
    if len(times) != len(points):
        raise ValueError("there must be one time for each vertex")
    picked = _radius_pick(points, float(target_spacing))
    return np.array(picked, dtype=int), [times[i] for i in picked]


def connect_graph_seq(nodes, k) -> None:
    """Connect each node to ``k`` neighbours along the node sequence."""
    size = len(nodes)
    if k < 1 or size < k + 1:
        raise ValueError(f"sequential connection with k={k} needs at least {k + 1} nodes")
    half = k // 2

    for i in range(half):
        nodes[i].neighbours = [nodes[n] for n in range(k + 1) if n != i]

    for i in range(half, size - half):
        nodes[i].neighbours = [nodes[i + step * (n + 1)] for n in range(half) for step in (-1, 1)]

    for i in range(size - half, size):
        nodes[i].neighbours = [nodes[n] for n in range(size - (k + 1), size) if n != i]


def _query(tree: cKDTree, points: np.ndarray, count: int):
    return tree.query(points, k=list(range(1, count + 1)))


def connect_graph_nn(nodes, k) -> None:
    """Connect each node to its ``k`` nearest other nodes."""
    if k < 1 or len(nodes) < k + 1:
        raise ValueError(f"nearest-neighbour connection with k={k} needs at least {k + 1} nodes")
    points = _node_positions(nodes)
    _, indices = _query(cKDTree(points), points, k + 1)
    for i, (node, row) in enumerate(zip(nodes, indices)):
        node.neighbours = [nodes[j] for j in row if j != i][:k]


def connect_graph_nn_temporal(nodes, graph_times, k) -> None:
    """Connect each node to its ``k`` nearest nodes less than a minute apart in time."""
    times = list(graph_times)
    if len(times) != len(nodes):
        raise ValueError("there must be one time for each node")
    count = k * 4
    if k < 1 or len(nodes) < count:
        raise ValueError(f"temporal connection with k={k} needs at least {count} nodes")
    points = _node_positions(nodes)
    _, indices = _query(cKDTree(points), points, count)
    for i, (node, row) in enumerate(zip(nodes, indices)):
        chosen = [
            nodes[j] for j in row if j != i and abs(times[j] - times[i]) < TEMPORAL_WINDOW_US
        ][:k]
        if len(chosen) < k:
            raise ValueError(f"node {i} has fewer than {k} neighbours within the time window")
        node.neighbours = chosen


def _weight_map(nodes, vertex: np.ndarray, candidates, d_max: float) -> list[VertexWeightMap]:
    weights = [
        VertexWeightMap(
            (1.0 - float(np.linalg.norm(vertex - nodes[n].position)) / float(d_max)) ** 2, int(n)
        )
        for n in candidates
    ]
    total = sum(w.weight for w in weights)
    for w in weights:
        w.weight /= total
    return sort_weight_maps(weights, nodes)


def _nearest_in_time(times, vertex_time) -> int:
    imin, imax = 0, len(times) - 1
    imid = (imin + imax) // 2
    while imax >= imin:
        imid = (imin + imax) // 2
        if times[imid] < vertex_time:
            imin = imid + 1
        elif times[imid] > vertex_time:
            imax = imid - 1
        else:
            break

    def gap(index):
        return abs(times[index] - vertex_time) if 0 <= index < len(times) else math.inf

    at_min, at_mid, at_max = gap(imin), gap(imid), gap(imax)
    if at_min <= at_mid and at_min <= at_max:
        found = imin
    elif at_mid <= at_min and at_mid <= at_max:
        found = imid
    else:
        found = imax
    return min(found, len(times) - 1)


def weight_vertices_seq(nodes, vertices, vertex_times, sampled_times, start, k) -> list[list[VertexWeightMap]]:
    """Weight vertices from index ``start`` on against nodes close to them in time.

    Up to twenty nodes around the one nearest in time are ranked by distance;
    the nearest ``k`` get weights and the next one sets the falloff distance.
    """
    points = _positions(vertices)
    times = list(sampled_times)
    vtimes = list(vertex_times)
    if not times:
        raise ValueError("no sampled graph times")
    if len(times) != len(nodes):
        raise ValueError("there must be one sampled time for each node")
    if len(vtimes) < len(points):
        raise ValueError("there must be one time for each vertex")

    maps: list[list[VertexWeightMap]] = []
    for vertex, vertex_time in zip(points[start:], vtimes[start:]):
        found = _nearest_in_time(times, vertex_time)
        candidates = list(range(found, -1, -1))[:LOOK_BACK]
        if len(candidates) < LOOK_BACK:
            candidates += list(range(found + 1, len(times)))[: LOOK_BACK - len(candidates)]

        near = sorted(
            ((float(np.linalg.norm(nodes[j].position - vertex)), j) for j in candidates),
            key=lambda item: item[0],
        )
        if len(near) <= k:
            raise ValueError(f"weighting with k={k} needs at least {k + 1} nearby nodes")
        d_max = near[k][0]
        maps.append(_weight_map(nodes, vertex, [j for _, j in near[:k]], d_max))
    return maps


def weight_vertices_nn(nodes, vertices, k) -> list[list[VertexWeightMap]]:
    """Weight every vertex against its ``k`` nearest nodes."""
    if k < 1 or len(nodes) < k + 1:
        raise ValueError(f"weighting with k={k} needs at least {k + 1} nodes")
    points = _positions(vertices)
    if len(points) == 0:
        return []
    distances, indices = _query(cKDTree(_node_positions(nodes)), points, k + 1)
    return [
        _weight_map(nodes, vertex, row[:-1], dist[-1])
        for vertex, row, dist in zip(points, indices, distances)
    ]


def weight_vertices_nn_temporal(nodes, vertices, vertex_times, graph_times, k) -> list[list[VertexWeightMap]]:
    """Weight every vertex against its nearest nodes less than a minute apart in time."""
    gtimes = list(graph_times)
    vtimes = list(vertex_times)
    points = _positions(vertices)
    if len(gtimes) != len(nodes):
        raise ValueError("there must be one time for each node")
    if len(vtimes) != len(points):
        raise ValueError("there must be one time for each vertex")
    count = k * 4
    if k < 1 or len(nodes) < count:
        raise ValueError(f"temporal weighting with k={k} needs at least {count} nodes")
    if len(points) == 0:
        return []

    distances, indices = _query(cKDTree(_node_positions(nodes)), points, count)
    maps: list[list[VertexWeightMap]] = []
    for i, (vertex, row, dist) in enumerate(zip(points, indices, distances)):
        valid = [
            (j, d) for j, d in zip(row, dist) if abs(gtimes[j] - vtimes[i]) < TEMPORAL_WINDOW_US
        ][: k + 1]
        if not valid:
            raise ValueError(f"vertex {i} has no node within the time window")
        d_max = valid[-1][1]
        maps.append(_weight_map(nodes, vertex, [j for j, _ in valid[:-1]], d_max))
    return maps