"""Node, weight and constraint types of an embedded deformation graph, and
the residual and Jacobian terms of its energy."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np
from scipy import sparse

NUM_VARIABLES = 12
E_ROT_ROWS = 6
E_REG_ROWS = 3
E_CON_ROWS = 3


def _vec3(value) -> np.ndarray:
    arr = np.asarray(value, dtype=float).reshape(3)
    return arr.copy()


@dataclass
class VertexCloud:
    """Vertex positions with their normals, both stored as ``(N, 3)`` arrays."""

    positions: np.ndarray
    normals: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.positions = np.array(self.positions, dtype=float).reshape(-1, 3)
        if self.normals is None:
            self.normals = np.zeros_like(self.positions)
        else:
            self.normals = np.array(self.normals, dtype=float).reshape(-1, 3)
        if self.normals.shape != self.positions.shape:
            raise ValueError("normals and positions must have the same shape")

    def __len__(self) -> int:
        return self.positions.shape[0]


@dataclass(eq=False)
class GraphNode:
    """A node holding an affine transform anchored at its position."""

    id: int
    position: np.ndarray
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    neighbours: list[GraphNode] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.position = _vec3(self.position)
        self.rotation = np.array(self.rotation, dtype=float).reshape(3, 3)
        self.translation = _vec3(self.translation)


@dataclass
class VertexWeightMap:
    """Influence of the graph node at index ``node`` on a vertex."""

    weight: float
    node: int


@dataclass
class Constraint:
    """A desired position for a vertex."""

    vertex_id: int
    target_position: np.ndarray

    def __post_init__(self) -> None:
        self.target_position = _vec3(self.target_position)


def sort_weight_maps(weights, graph) -> list[VertexWeightMap]:
    """Return ``weights`` ordered by the id of the node each one refers to."""
    return sorted(weights, key=lambda w: graph[w.node].id)


def compute_vertex_position(graph, weights, position, normal) -> tuple[np.ndarray, np.ndarray]:
    """Deform a vertex and its normal by the weighted node transforms."""
    source_position = _vec3(position)
    source_normal = _vec3(normal)

    new_position = np.zeros(3)
    new_normal = np.zeros(3)

    for w in weights:
        node = graph[w.node]
        new_position += w.weight * (
            node.rotation @ (source_position - node.position) + node.position + node.translation
        )
        new_normal += w.weight * (np.linalg.inv(node.rotation).T @ source_normal)

    length = np.linalg.norm(new_normal)
    if length > 0:
        new_normal /= length
    return new_position, new_normal


def rotation_residual(graph) -> np.ndarray:
    """Orthonormality residual: six entries for each node."""
    out = np.empty(E_ROT_ROWS * len(graph))
    for j, node in enumerate(graph):
        c0, c1, c2 = node.rotation.T
        out[j * E_ROT_ROWS : (j + 1) * E_ROT_ROWS] = (
            c0 @ c1,
            c0 @ c2,
            c1 @ c2,
            c0 @ c0 - 1.0,
            c1 @ c1 - 1.0,
            c2 @ c2 - 1.0,
        )
    return out


def regularisation_residual(graph, w_reg) -> np.ndarray:
    """Smoothness residual: three entries for each node-neighbour pair."""
    scale = math.sqrt(w_reg)
    parts = [
        (
            node.rotation @ (neighbour.position - node.position)
            + node.position
            + node.translation
            - (neighbour.position + neighbour.translation)
        )
        * scale
        for node in graph
        for neighbour in node.neighbours
    ]
    return np.concatenate(parts) if parts else np.zeros(0)


def constraint_residual(graph, vertex_map, vertices, constraints, w_con) -> np.ndarray:
    """Constraint residual: three entries for each constrained vertex."""
    scale = math.sqrt(w_con)
    parts = []
    for constraint in constraints:
        vid = constraint.vertex_id
        position, _ = compute_vertex_position(
            graph, vertex_map[vid], vertices.positions[vid], vertices.normals[vid]
        )
        parts.append((position - constraint.target_position) * scale)
    return np.concatenate(parts) if parts else np.zeros(0)


def sparse_jacobian(graph, vertex_map, vertices, constraints, w_reg, w_con) -> sparse.csr_matrix:
    """Jacobian of the rotation, regularisation and constraint residuals, stacked in that order.

    Node ``j``'s twelve variables start at column ``12 * graph[j].id``: the
    rotation in column-major order followed by the translation.
    """
    rows: list[int] = []
    cols: list[int] = []
    vals: list[float] = []

    def put(row, col, value):
        rows.append(row)
        cols.append(col)
        vals.append(float(value))

    row = 0
    for node in graph:
        r = node.rotation
        off = node.id * NUM_VARIABLES
        for i in range(3):
            put(row, off + i, r[i, 1])
            put(row, off + 3 + i, r[i, 0])
            put(row + 1, off + i, r[i, 2])
            put(row + 1, off + 6 + i, r[i, 0])
            put(row + 2, off + 3 + i, r[i, 2])
            put(row + 2, off + 6 + i, r[i, 1])
            put(row + 3, off + i, 2 * r[i, 0])
            put(row + 4, off + 3 + i, 2 * r[i, 1])
            put(row + 5, off + 6 + i, 2 * r[i, 2])
        row += E_ROT_ROWS

    reg = math.sqrt(w_reg)
    for node in graph:
        off = node.id * NUM_VARIABLES
        for neighbour in node.neighbours:
            off_n = neighbour.id * NUM_VARIABLES
            if off_n == off:
                raise ValueError(f"node {node.id} lists itself as a neighbour")
            delta = neighbour.position - node.position
            for axis in range(3):
                for c in range(3):
                    put(row + axis, off + 3 * c + axis, delta[c] * reg)
                put(row + axis, off + 9 + axis, reg)
                put(row + axis, off_n + 9 + axis, -reg)
            row += E_REG_ROWS

    con = math.sqrt(w_con)
    for constraint in constraints:
        vid = constraint.vertex_id
        weights = vertex_map[vid]
        if len(weights) >= 2 and graph[weights[0].node].id >= graph[weights[1].node].id:
            raise ValueError(f"weight map of vertex {vid} is not sorted by node id")
        source = vertices.positions[vid]
        for w in weights:
            node = graph[w.node]
            off = node.id * NUM_VARIABLES
            delta = (source - node.position) * w.weight
            for axis in range(3):
                for c in range(3):
                    put(row + axis, off + 3 * c + axis, delta[c] * con)
                put(row + axis, off + 9 + axis, w.weight * con)
        row += E_CON_ROWS

    shape = (row, NUM_VARIABLES * len(graph))
    return sparse.coo_matrix((vals, (rows, cols)), shape=shape).tocsr()


def apply_delta(graph, delta) -> None:
    """Add a step of twelve values per node, taken in graph order, to the nodes."""
    delta = np.asarray(delta, dtype=float).ravel()
    if delta.shape[0] != NUM_VARIABLES * len(graph):
        raise ValueError(
            f"delta has {delta.shape[0]} entries, expected {NUM_VARIABLES * len(graph)}"
        )
    for j, node in enumerate(graph):
        z = j * NUM_VARIABLES
        node.rotation += delta[z : z + 9].reshape(3, 3).T
        node.translation += delta[z + 9 : z + 12]