import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from kindeform.poses import format_pose_line, rotation_to_quaternion, write_poses


def _pose(rotation, translation):
    m = np.eye(4)
    m[:3, :3] = rotation
    m[:3, 3] = translation
    return m


def test_identity_quaternion():
    assert rotation_to_quaternion(np.eye(3)) == pytest.approx((0.0, 0.0, 0.0, 1.0))


@pytest.mark.parametrize(
    "rotation",
    [
        Rotation.from_euler("x", 180, degrees=True).as_matrix(),
        Rotation.from_euler("y", 180, degrees=True).as_matrix(),
        Rotation.from_euler("z", 180, degrees=True).as_matrix(),
        Rotation.from_euler("xyz", [10, -40, 170], degrees=True).as_matrix(),
        Rotation.from_euler("z", 30, degrees=True).as_matrix(),
    ],
)
def test_quaternion_round_trip(rotation):
    q = rotation_to_quaternion(rotation)
    assert np.linalg.norm(q) == pytest.approx(1.0)
    back = Rotation.from_quat(q).as_matrix()
    assert np.allclose(back, rotation, atol=1e-9)


def test_quaternion_round_trip_random():
    for matrix in Rotation.random(50, random_state=3).as_matrix():
        q = rotation_to_quaternion(matrix)
        assert np.allclose(Rotation.from_quat(q).as_matrix(), matrix, atol=1e-9)


def test_quaternion_uses_top_left_block_of_pose():
    rotation = Rotation.from_euler("z", 45, degrees=True).as_matrix()
    pose = _pose(rotation, [1.0, 2.0, 3.0])
    assert rotation_to_quaternion(pose) == pytest.approx(rotation_to_quaternion(rotation))


def test_quaternion_rejects_bad_shape():
    with pytest.raises(ValueError):
        rotation_to_quaternion(np.eye(2))


def test_format_identity_pose():
    line = format_pose_line(1500000, np.eye(4))
    assert line == "1.500000 0.000000 0.000000 0.000000 0.000000 0.000000 0.000000 1.000000"


def test_format_fields_parse_back():
    rotation = Rotation.from_euler("xyz", [5, 20, -60], degrees=True).as_matrix()
    pose = _pose(rotation, [0.25, -1.5, 2.75])
    fields = format_pose_line(2_000_000, pose).split()
    assert len(fields) == 8
    assert all(len(f.split(".")[1]) == 6 for f in fields)
    values = [float(f) for f in fields]
    assert values[0] == pytest.approx(2.0)
    assert values[1:4] == pytest.approx([0.25, -1.5, 2.75])
    q = values[4:]
    assert np.allclose(Rotation.from_quat(q).as_matrix(), rotation, atol=1e-5)


def test_format_rejects_bad_pose():
    with pytest.raises(ValueError):
        format_pose_line(0, np.eye(3))


def test_write_poses_round_trip(tmp_path):
    path = tmp_path / "run.poses"
    poses = [
        (1_000_000, _pose(np.eye(3), [0.0, 0.0, 0.0])),
        (1_033_333, _pose(Rotation.from_euler("y", 10, degrees=True).as_matrix(), [0.1, 0.2, 0.3])),
        (1_066_666, _pose(Rotation.from_euler("x", -25, degrees=True).as_matrix(), [-0.5, 0.0, 1.0])),
    ]
    write_poses(path, poses)
    text = path.read_text()
    assert text.endswith("\n")
    lines = text.splitlines()
    assert len(lines) == len(poses)
    for line, (timestamp, pose) in zip(lines, poses):
        assert line == format_pose_line(timestamp, pose)
        values = [float(v) for v in line.split()]
        assert values[0] == pytest.approx(timestamp / 1e6, abs=1e-6)
        assert values[1:4] == pytest.approx(list(pose[:3, 3]), abs=1e-6)


def test_write_empty_poses(tmp_path):
    path = tmp_path / "empty.poses"
    write_poses(path, [])
    assert path.read_text() == ""


def test_write_poses_bad_pose_leaves_no_file(tmp_path):
    path = tmp_path / "bad.poses"
    with pytest.raises(ValueError):
        write_poses(path, [(0, np.eye(4)), (1, np.zeros((2, 2)))])
    assert not path.exists()