"""Embedded deformation graph: construction, vertex constraints and optimisation."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from kindeform.cholesky import CholeskySolver
from kindeform.graph_math import (
    Constraint,
    GraphNode,
    VertexCloud,
    VertexWeightMap,
    apply_delta,
    compute_vertex_position,
    constraint_residual,
    regularisation_residual,
    rotation_residual,
    sparse_jacobian,
)
from kindeform.graph_sampling import (
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

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
MIN_CONSTRAINT_ERROR = 0.1
MIN_STEP_NORM = 1e-2
MIN_ERROR = 1e-3
MIN_RELATIVE_CHANGE = 1e-5


class GraphStateError(RuntimeError):
    """Raised when the graph is used before, or again after, initialisation."""


def _as_cloud(vertices) -> VertexCloud:
    if isinstance(vertices, VertexCloud):
        return vertices
    return VertexCloud(np.asarray(getattr(vertices, "positions", vertices), dtype=float))


def _points(value) -> np.ndarray:
    return np.asarray(getattr(value, "positions", value), dtype=float).reshape(-1, 3)


class DeformationGraph:
    """A graph of affine nodes that deforms a vertex cloud held by reference.

    Each node influences nearby vertices through per-vertex weight maps.
    Constraints pull vertices towards targets; :meth:`optimise_graph_sparse`
    fits the node transforms and :meth:`apply_graph_to_vertices` writes the
    deformed positions and normals back into the vertex cloud.
    """

    w_rot = 1.0
    w_reg = 10.0
    w_con = 100.0

    def __init__(self, k) -> None:
        if int(k) < 1:
            raise ValueError("the number of neighbours must be at least 1")
        self.k = int(k)
        self.initialised = False
        self.graph: list[GraphNode] = []
        self.vertex_map: list[list[VertexWeightMap]] = []
        self.constraints: list[Constraint] = []
        self.vertices: VertexCloud | None = None
        self.sampled_graph_times: list[int] = []
        self.last_point_count = 0
        self._graph_cloud = np.zeros((0, 3))
        self._cholesky = CholeskySolver()

    @property
    def graph_cloud(self) -> np.ndarray:
        """Positions of the sampled graph nodes."""
        return self._graph_cloud.copy()

    def _require_initialised(self) -> None:
        if not self.initialised:
            raise GraphStateError("the deformation graph is not initialised")

    def _require_uninitialised(self) -> None:
        if self.initialised:
            raise GraphStateError("the deformation graph is already initialised")

    def _rebuild_nodes(self) -> None:
        self.graph = make_nodes(self._graph_cloud)

    def _weight_new_vertices_seq(self, vertex_time_map) -> None:
        keep = self.last_point_count
        if len(self.vertex_map) > keep:
            del self.vertex_map[keep:]
        else:
            self.vertex_map.extend([] for _ in range(keep - len(self.vertex_map)))
        self.vertex_map.extend(
            weight_vertices_seq(
                self.graph,
                self.vertices,
                vertex_time_map,
                self.sampled_graph_times,
                keep,
                self.k,
            )
        )

    def initialise_graph_poses(
        self, vertices, pose_dist, custom_graph, graph_time_map, vertex_time_map, original_point_end
    ) -> np.ndarray:
        """Build the graph from camera poses, skipping poses closer than ``pose_dist``."""
        self._require_uninitialised()
        poses = _points(custom_graph)
        times = list(graph_time_map)
        if len(poses) == 0:
            raise ValueError("no poses to build the graph from")
        if len(times) < len(poses):
            raise ValueError("there must be one time for each pose")

        kept = [poses[0]]
        kept_times = [times[0]]
        for pose, time in zip(poses[1:], times[1 : len(poses)]):
            if np.linalg.norm(kept[-1] - pose) > pose_dist:
                kept.append(pose)
                kept_times.append(time)

        self.vertices = _as_cloud(vertices)
        self._graph_cloud = np.array(kept, dtype=float)
        self.sampled_graph_times = kept_times
        self._rebuild_nodes()
        connect_graph_seq(self.graph, self.k)

        self.vertex_map = []
        self._weight_new_vertices_seq(vertex_time_map)

        self.initialised = True
        self.last_point_count = int(original_point_end)
        return self.graph_cloud

    def initialise_graph_poses_nn(self, vertices, target_spacing, vertex_time_map, original_point_end) -> np.ndarray:
        """Build the graph by radius-sampling vertices, linking nodes close in space and time."""
        self._require_uninitialised()
        cloud = _as_cloud(vertices)
        indices, graph_times = radius_sample_temporal(cloud, vertex_time_map, target_spacing)

        self.vertices = cloud
        self._graph_cloud = cloud.positions[indices].copy()
        self.sampled_graph_times = list(graph_times)
        self._rebuild_nodes()
        connect_graph_nn_temporal(self.graph, graph_times, self.k)
        self.vertex_map = weight_vertices_nn_temporal(
            self.graph, cloud, vertex_time_map, graph_times, self.k
        )

        self.initialised = True
        self.last_point_count = int(original_point_end)
        return self.graph_cloud

    def append_graph_poses(
        self, pose_dist, custom_graph, graph_time_map, vertex_time_map, original_point_end
    ) -> np.ndarray:
        """Move existing nodes to their updated poses and append newer poses as nodes.

        Node transforms are reset; weight maps of vertices from the last recorded
        point count onwards are recomputed.
        """
        self._require_initialised()
        poses = _points(custom_graph)
        times = list(graph_time_map)
        if len(times) < len(poses):
            raise ValueError("there must be one time for each pose")

        current = 0
        start = len(times)
        last_time = self.sampled_graph_times[-1]
        for index, time in enumerate(times):
            if current < len(self.sampled_graph_times) and time == self.sampled_graph_times[current]:
                self._graph_cloud[current] = poses[index]
                current += 1
            if time == last_time:
                start = index
                break

        if current != len(self._graph_cloud):
            raise ValueError("the poses do not contain every existing graph node")

        kept = list(self._graph_cloud)
        for pose, time in zip(poses[start + 1 :], times[start + 1 : len(poses)]):
            if np.linalg.norm(kept[-1] - pose) > pose_dist:
                kept.append(pose)
                self.sampled_graph_times.append(time)
        self._graph_cloud = np.array(kept, dtype=float)

        self._rebuild_nodes()
        connect_graph_seq(self.graph, self.k)
        self._weight_new_vertices_seq(vertex_time_map)

        self.last_point_count = int(original_point_end)
        return self.graph_cloud

    def append_vertices(self, vertex_time_map, original_point_end) -> np.ndarray:
        """Weight vertices added since the last recorded point count."""
        self._require_initialised()
        self._weight_new_vertices_seq(vertex_time_map)
        self.last_point_count = int(original_point_end)
        return self.graph_cloud

    def initialise_graph_nn(self, vertices, target_spacing=1.0) -> np.ndarray:
        """Build the graph by radius-sampling vertices and linking nearest nodes."""
        self._require_uninitialised()
        cloud = _as_cloud(vertices)
        indices = radius_sample(cloud, target_spacing)

        self.vertices = cloud
        self._graph_cloud = cloud.positions[indices].copy()
        self._rebuild_nodes()
        connect_graph_nn(self.graph, self.k)
        self.vertex_map = weight_vertices_nn(self.graph, cloud, self.k)

        self.initialised = True
        return self.graph_cloud

    def add_constraint(self, vertex_id, target) -> None:
        """Pin a vertex to ``target``, replacing any constraint it already has."""
        self._require_initialised()
        new = Constraint(int(vertex_id), target)
        for index, constraint in enumerate(self.constraints):
            if constraint.vertex_id == new.vertex_id:
                self.constraints[index] = new
                return
        self.constraints.append(new)

    def remove_constraint(self, vertex_id) -> None:
        """Drop the constraint on a vertex, if there is one."""
        self._require_initialised()
        for index, constraint in enumerate(self.constraints):
            if constraint.vertex_id == vertex_id:
                del self.constraints[index]
                break

    def clear_constraints(self) -> None:
        """Drop every constraint."""
        self.constraints.clear()

    def _deform_range(self, offset: int, step: int, count: int) -> None:
        positions = self.vertices.positions
        normals = self.vertices.normals
        for i in range(offset, count, step):
            position, normal = compute_vertex_position(
                self.graph, self.vertex_map[i], positions[i], normals[i]
            )
            positions[i] = position
            normals[i] = normal

    def apply_graph_to_vertices(self, num_threads) -> None:
        """Deform every vertex and normal in place, splitting the work over threads."""
        self._require_initialised()
        num_threads = int(num_threads)
        if num_threads < 1:
            raise ValueError("at least one thread is needed")
        count = len(self.vertices)
        if len(self.vertex_map) < count:
            raise GraphStateError("some vertices have no weight map")
        with ThreadPoolExecutor(max_workers=num_threads) as pool:
            list(pool.map(lambda offset: self._deform_range(offset, num_threads, count), range(num_threads)))

    def _constraint_residual(self) -> np.ndarray:
        return constraint_residual(self.graph, self.vertex_map, self.vertices, self.constraints, self.w_con)

    def _residual(self) -> np.ndarray:
        return np.concatenate(
            [
                rotation_residual(self.graph),
                regularisation_residual(self.graph, self.w_reg),
                self._constraint_residual(),
            ]
        )

    def _jacobian(self):
        return sparse_jacobian(
            self.graph, self.vertex_map, self.vertices, self.constraints, self.w_reg, self.w_con
        )

    def optimise_graph_sparse(self) -> bool:
        """Fit node transforms to the constraints by Gauss-Newton.

        Returns ``False`` without changing the graph when there is no
        constraint or the mean constraint error is insignificant.
        """
        self._require_initialised()
        if not self.constraints:
            logger.info("Not deforming, no constraints")
            return False

        graph_error = float(np.linalg.norm(self._constraint_residual())) / len(self.constraints)
        if graph_error < MIN_CONSTRAINT_ERROR:
            logger.info("Not deforming, constraint error insignificant (%g)", graph_error)
            return False

        residual = self._residual()
        jacobian = self._jacobian()
        error = float(residual @ residual)
        last_error = error
        logger.info("Initial error: %g (%g)", error, graph_error)

        try:
            for iteration in range(1, MAX_ITERATIONS + 1):
                delta = self._cholesky.solve(jacobian, -residual, iteration == 1)
                apply_delta(self.graph, delta)

                residual = self._residual()
                error = float(residual @ residual)
                error_diff = error - last_error
                logger.info("Iteration %d: %g", iteration, error)

                if (
                    np.linalg.norm(delta) < MIN_STEP_NORM
                    or error < MIN_ERROR
                    or abs(error_diff) < MIN_RELATIVE_CHANGE * error
                ):
                    break

                last_error = error
                jacobian = self._jacobian()
        finally:
            if self._cholesky.analysed:
                self._cholesky.free_factor()
        return True

    def reset_graph(self) -> None:
        """Return every node to the identity transform."""
        for node in self.graph:
            node.rotation = np.eye(3)
            node.translation = np.zeros(3)