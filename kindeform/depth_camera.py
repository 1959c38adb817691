"""Back-projection of depth images through pinhole intrinsics."""

from __future__ import annotations

import numpy as np

INVALID_VERTEX = 100000.0
DEFAULT_MAX_DIST = 4.0


class DepthCamera:
    """A depth sensor described by its intrinsic matrix and image size.

    Depth values are unsigned integers in millimetres; all results are in metres.
    """

    def __init__(self, intrinsics, width, height) -> None:
        matrix_method = getattr(intrinsics, "matrix", None)
        matrix = matrix_method() if callable(matrix_method) else intrinsics
        m = np.asarray(matrix, dtype=float)
        if m.ndim != 2 or m.shape[0] < 2 or m.shape[1] < 3:
            raise ValueError("intrinsics must be at least a 2x3 matrix")
        if int(width) <= 0 or int(height) <= 0:
            raise ValueError("width and height must be positive")
        self.intrinsics = m
        self.width = int(width)
        self.height = int(height)

    @property
    def fx(self) -> float:
        return float(self.intrinsics[0, 0])

    @property
    def fy(self) -> float:
        return float(self.intrinsics[1, 1])

    @property
    def cx(self) -> float:
        return float(self.intrinsics[0, 2])

    @property
    def cy(self) -> float:
        return float(self.intrinsics[1, 2])

    @property
    def principal_point(self) -> tuple[float, float]:
        return self.cx, self.cy

    def _flat_depth(self, depth) -> np.ndarray:
        flat = np.asarray(depth).ravel()
        expected = self.width * self.height
        if flat.shape[0] != expected:
            raise ValueError(f"depth image has {flat.shape[0]} pixels, expected {expected}")
        return flat

    def _depth_at(self, depth: np.ndarray, pixel) -> float:
        x, y = int(pixel[0]), int(pixel[1])
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"pixel ({x}, {y}) lies outside the {self.width}x{self.height} image")
        return float(depth[y * self.width + x]) / 1000.0

    def _project(self, pixel, depth: float) -> np.ndarray:
        return np.array(
            [
                depth * (pixel[0] - self.cx) * (1.0 / self.fx),
                depth * (pixel[1] - self.cy) * (1.0 / self.fy),
                depth,
            ]
        )

    def project_inlier_matches(self, inliers, depth1, depth2) -> tuple[list[np.ndarray], list[np.ndarray]]:
        """Back-project matched pixel pairs, dropping pairs where either depth is zero.

        ``inliers`` holds ``((x1, y1), (x2, y2))`` pairs; the first pixel is
        looked up in ``depth1`` and the second in ``depth2``.
        """
        first_depth = self._flat_depth(depth1)
        second_depth = self._flat_depth(depth2)

        first_points: list[np.ndarray] = []
        second_points: list[np.ndarray] = []
        for first, second in inliers:
            d1 = self._depth_at(first_depth, first)
            d2 = self._depth_at(second_depth, second)
            if not d1 or not d2:
                continue
            first_points.append(self._project(first, d1))
            second_points.append(self._project(second, d2))
        return first_points, second_points

    def compute_vertex_map(self, depth_map) -> np.ndarray:
        """Return a ``(rows, cols, 3)`` float32 map of 3D points.

        Pixels with zero depth are filled with a far-away sentinel value.
        """
        depth = np.asarray(depth_map)
        if depth.ndim != 2:
            raise ValueError("depth map must be two-dimensional")
        rows, cols = depth.shape
        d = depth.astype(np.float64)
        col_grid, row_grid = np.meshgrid(np.arange(cols), np.arange(rows))

        vertices = np.empty((rows, cols, 3), dtype=np.float32)
        vertices[..., 0] = d * (col_grid - self.cx) / self.fx / 1000.0
        vertices[..., 1] = d * (row_grid - self.cy) / self.fy / 1000.0
        vertices[..., 2] = d / 1000.0
        vertices[depth == 0] = INVALID_VERTEX
        return vertices

    def convert_to_xyz_point_cloud(self, depth_image, max_dist=DEFAULT_MAX_DIST) -> np.ndarray:
        """Return an ``(N, 3)`` float32 cloud of valid pixels closer than ``max_dist`` metres.

        Points are ordered column by column, top to bottom within a column.
        """
        depth = self._flat_depth(depth_image).reshape(self.height, self.width)
        by_column = depth.T.astype(np.float64)
        cols, rows = np.meshgrid(np.arange(self.width), np.arange(self.height), indexing="ij")

        valid = (by_column != 0) & (by_column < max_dist * 1000.0)
        z = by_column[valid] * 0.001
        x = (cols[valid] - self.cx) * z * (1.0 / self.fx)
        y = (rows[valid] - self.cy) * z * (1.0 / self.fy)
        return np.column_stack([x, y, z]).astype(np.float32)