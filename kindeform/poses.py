"""Writing optimised camera trajectories as timestamped translation and quaternion lines."""

from __future__ import annotations

import math
from pathlib import Path

import numpy as np


def _rotation_block(rotation) -> np.ndarray:
    m = np.asarray(rotation, dtype=float)
    if m.ndim != 2 or m.shape[0] < 3 or m.shape[1] < 3:
        raise ValueError("rotation must be at least a 3x3 matrix")
    return m[:3, :3]


def rotation_to_quaternion(rotation) -> tuple[float, float, float, float]:
    """Return the quaternion ``(x, y, z, w)`` of a rotation matrix.

    Only the top-left 3x3 block of ``rotation`` is used.
    """
    m = _rotation_block(rotation)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    q = [0.0, 0.0, 0.0]

    if trace > 0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        q[0] = (m[2, 1] - m[1, 2]) * t
        q[1] = (m[0, 2] - m[2, 0]) * t
        q[2] = (m[1, 0] - m[0, 1]) * t
    else:
        i = 0
        if m[1, 1] > m[0, 0]:
            i = 1
        if m[2, 2] > m[i, i]:
            i = 2
        j = (i + 1) % 3
        k = (j + 1) % 3
        t = math.sqrt(max(m[i, i] - m[j, j] - m[k, k] + 1.0, 0.0))
        q[i] = 0.5 * t
        t = 0.5 / t if t > 0 else 0.0
        w = (m[k, j] - m[j, k]) * t
        q[j] = (m[j, i] + m[i, j]) * t
        q[k] = (m[k, i] + m[i, k]) * t

    return float(q[0]), float(q[1]), float(q[2]), float(w)


def _pose_matrix(pose) -> np.ndarray:
    m = np.asarray(pose, dtype=np.float32)
    if m.ndim != 2 or m.shape[0] < 3 or m.shape[1] < 4:
        raise ValueError("pose must be at least a 3x4 matrix")
    return m.astype(float)


def format_pose_line(timestamp, pose) -> str:
    """Format one pose: seconds, translation ``x y z`` and quaternion ``x y z w``.

    ``timestamp`` is in microseconds; every value has six decimal places.
    The returned line has no trailing newline.
    """
    m = _pose_matrix(pose)
    seconds = float(timestamp) / 1_000_000.0
    translation = m[:3, 3]
    quaternion = rotation_to_quaternion(m[:3, :3])
    values = [seconds, *translation, *quaternion]
    return " ".join(f"{float(v):.6f}" for v in values)


def write_poses(path, poses) -> None:
    """Write ``(timestamp, pose)`` pairs to ``path``, one line each."""
    lines = [format_pose_line(timestamp, pose) for timestamp, pose in poses]
    with Path(path).open("w") as handle:
        for line in lines:
            handle.write(line + "\n")