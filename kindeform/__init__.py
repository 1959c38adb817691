"""Embedded deformation graphs, depth back-projection, calibration loading and pose export."""

__version__ = "0.1.0"

__all__ = [
    "calibration",
    "cholesky",
    "deformation_graph",
    "depth_camera",
    "graph_math",
    "graph_sampling",
    "poses",
]