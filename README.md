# kindeform

A library for correcting dense RGB-D reconstructions with an embedded
deformation graph. It loads depth camera intrinsics, back-projects depth
images, builds and connects deformation graph nodes, fits the node
transforms to vertex constraints by sparse Gauss-Newton, and writes camera
trajectories to text.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Modules

- `kindeform.calibration`
  - `Calibration(fx, fy, cx, cy, width=640, height=480)`: a frozen dataclass;
    `matrix()` returns the 3x3 intrinsic matrix.
  - `default_calibration()`: the intrinsics used when no file is given
    (focal length 528.0144…, principal point 320, 267).
  - `parse_calibration_line(line)`: reads `fx fy cx cy` or
    `fx fy cx cy w h`; any other count raises `CalibrationError`.
  - `load_calibration(path)`: an empty path gives the defaults; `.xml` and
    `.yml` files are read as OpenCV storage holding a `depth_intrinsics`
    matrix; any other file is read from its first line.
- `kindeform.depth_camera.DepthCamera(intrinsics, width, height)`: takes a
  matrix or a `Calibration`. Depth values are in millimetres, results in
  metres.
  - `project_inlier_matches(inliers, depth1, depth2)`: back-projects matched
    pixel pairs, dropping pairs where either depth is zero.
  - `compute_vertex_map(depth_map)`: a `(rows, cols, 3)` float32 map, with
    zero-depth pixels set to 100000.
  - `convert_to_xyz_point_cloud(depth_image, max_dist=4.0)`: an `(N, 3)`
    float32 cloud of non-zero pixels closer than `max_dist`, ordered column
    by column.
- `kindeform.cholesky.CholeskySolver`: solves the normal equations
  `(JᵀJ) δ = Jᵀ r` of a sparse Jacobian. `solve(jacobian, residual, first_run)`
  computes and stores an ordering on the first run and reuses it until
  `free_factor()`; misuse raises `FactorStateError`.
- `kindeform.graph_math`: `VertexCloud`, `GraphNode`, `VertexWeightMap` and
  `Constraint`, plus `sort_weight_maps`, `compute_vertex_position`,
  `rotation_residual`, `regularisation_residual`, `constraint_residual`,
  `sparse_jacobian` and `apply_delta`.
- `kindeform.graph_sampling`: `make_nodes`, `radius_sample`,
  `radius_sample_temporal`, `connect_graph_seq`, `connect_graph_nn`,
  `connect_graph_nn_temporal`, `weight_vertices_seq`, `weight_vertices_nn`
  and `weight_vertices_nn_temporal`. The temporal variants only link nodes
  and vertices less than sixty seconds (in microseconds) apart.
- `kindeform.deformation_graph.DeformationGraph(k)`: initialise with
  `initialise_graph_poses`, `initialise_graph_poses_nn` or
  `initialise_graph_nn`; extend with `append_graph_poses` and
  `append_vertices`; manage constraints with `add_constraint`,
  `remove_constraint` and `clear_constraints`; call
  `optimise_graph_sparse()` (returns `False` without changing anything when
  there are no constraints or their mean error is below 0.1) and then
  `apply_graph_to_vertices(num_threads)` to move the vertices and rotate
  their normals in place. `reset_graph()` returns every node to the
  identity. Using the graph in the wrong state raises `GraphStateError`.
  Progress is reported through the `logging` module.
- `kindeform.poses`: `rotation_to_quaternion(rotation)` returns `(x, y, z, w)`;
  `format_pose_line(timestamp, pose)` gives
  `seconds tx ty tz qx qy qz qw` with six decimals from a microsecond
  timestamp and a 4x4 pose; `write_poses(path, poses)` writes one such line
  per `(timestamp, pose)` pair.

## Example

```python
import numpy as np
from kindeform.calibration import default_calibration
from kindeform.depth_camera import DepthCamera
from kindeform.poses import write_poses

camera = DepthCamera(default_calibration(), 640, 480)
depth = np.full((480, 640), 1500, dtype=np.uint16)
cloud = camera.convert_to_xyz_point_cloud(depth, 4.0)

write_poses("trajectory.txt", [(1_000_000, np.eye(4))])
```

## What this package does not do

It is a library only: it has no command-line program, and it does not
capture from a camera, read recorded logs, track the camera, detect loop
closures, build meshes, save point cloud or mesh files, or display
anything. The caller supplies vertices, poses, times and constraints and
takes the deformed results back.