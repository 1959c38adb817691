"""Depth camera intrinsics and the calibration file formats that carry them."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import yaml

DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 480
DEFAULT_FOCAL = 528.01442863461716
DEFAULT_CX = 320.0
DEFAULT_CY = 267.0

_NUMBER = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan)",
    re.IGNORECASE,
)
_OPENCV_MATRIX_TAG = "tag:yaml.org,2002:opencv-matrix"


class CalibrationError(ValueError):
    """Raised when a calibration file cannot be understood."""


@dataclass(frozen=True)
class Calibration:
    """Pinhole intrinsics plus the image resolution they apply to."""

    fx: float
    fy: float
    cx: float
    cy: float
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT

    def matrix(self) -> np.ndarray:
        """Return the 3x3 intrinsic matrix."""
        return np.array(
            [
                [self.fx, 0.0, self.cx],
                [0.0, self.fy, self.cy],
                [0.0, 0.0, 1.0],
            ]
        )


def default_calibration() -> Calibration:
    """Intrinsics used when no calibration file is given."""
    return Calibration(DEFAULT_FOCAL, DEFAULT_FOCAL, DEFAULT_CX, DEFAULT_CY)


def _scan_numbers(line: str) -> list[float]:
    """Read leading whitespace-separated numbers, stopping at the first non-number."""
    values: list[float] = []
    pos = 0
    while len(values) < 6:
        while pos < len(line) and line[pos].isspace():
            pos += 1
        match = _NUMBER.match(line, pos)
        if match is None:
            break
        values.append(float(match.group()))
        pos = match.end()
    return values


def parse_calibration_line(line: str) -> Calibration:
    """Parse ``fx fy cx cy`` or ``fx fy cx cy w h``."""
    values = _scan_numbers(line)
    if len(values) not in (4, 6):
        raise CalibrationError(
            "calibration file should contain a single line with [fx fy cx cy] or [fx fy cx cy w h]"
        )
    fx, fy, cx, cy = values[:4]
    if len(values) == 6:
        return Calibration(fx, fy, cx, cy, int(values[4]), int(values[5]))
    return Calibration(fx, fy, cx, cy)


class _OpenCVLoader(yaml.SafeLoader):
    pass


def _construct_opencv_matrix(loader, node):
    return loader.construct_mapping(node, deep=True)


_OpenCVLoader.add_constructor(_OPENCV_MATRIX_TAG, _construct_opencv_matrix)


def _matrix_from_fields(rows, cols, data) -> np.ndarray:
    try:
        values = np.asarray(data, dtype=float).reshape(int(rows), int(cols))
    except (TypeError, ValueError) as exc:
        raise CalibrationError(f"malformed depth_intrinsics matrix: {exc}") from exc
    if values.shape[0] < 2 or values.shape[1] < 3:
        raise CalibrationError("depth_intrinsics must be at least 2x3")
    return values


def _read_yaml_matrix(text: str) -> np.ndarray:
    body = "\n".join(
        line for line in text.splitlines() if not line.lstrip().startswith("%YAML")
    )
    try:
        document = yaml.load(body, Loader=_OpenCVLoader)
    except yaml.YAMLError as exc:
        raise CalibrationError(f"cannot parse calibration file: {exc}") from exc
    if not isinstance(document, dict) or "depth_intrinsics" not in document:
        raise CalibrationError("calibration file has no depth_intrinsics entry")
    entry = document["depth_intrinsics"]
    if not isinstance(entry, dict) or not {"rows", "cols", "data"} <= entry.keys():
        raise CalibrationError("depth_intrinsics is not a matrix")
    return _matrix_from_fields(entry["rows"], entry["cols"], entry["data"])


def _read_xml_matrix(text: str) -> np.ndarray:
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as exc:
        raise CalibrationError(f"cannot parse calibration file: {exc}") from exc
    entry = root.find("depth_intrinsics")
    if entry is None:
        raise CalibrationError("calibration file has no depth_intrinsics entry")
    fields = {name: entry.findtext(name) for name in ("rows", "cols", "data")}
    if any(value is None for value in fields.values()):
        raise CalibrationError("depth_intrinsics is not a matrix")
    return _matrix_from_fields(fields["rows"], fields["cols"], fields["data"].split())


def load_calibration(path) -> Calibration:
    """Load intrinsics from ``path``; an empty path gives the defaults.

    ``.xml`` and ``.yml`` files are read as OpenCV storage holding a
    ``depth_intrinsics`` matrix; anything else as a single line of numbers.
    """
    if not path:
        return default_calibration()

    path = Path(path)
    text = path.read_text()
    if path.suffix.lower() in (".xml", ".yml"):
        reader = _read_xml_matrix if path.suffix.lower() == ".xml" else _read_yaml_matrix
        m = reader(text)
        return Calibration(float(m[0, 0]), float(m[1, 1]), float(m[0, 2]), float(m[1, 2]))

    first_line = text.splitlines()[0] if text else ""
    return parse_calibration_line(first_line)