[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kindeform"
version = "0.1.0"
description = "Embedded deformation graphs for non-rigid correction of dense RGB-D reconstructions"
requires-python = ">=3.10"
keywords = ["deformation graph", "rgb-d", "point cloud", "depth camera", "calibration", "gauss-newton"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]
dependencies = [
    "numpy",
    "scipy",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["kindeform"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
