[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vgpu_plugin"
version = "0.0.1"
description = "Device plugin logic for sharing NVIDIA GPUs between containers: resource managers, device maps, health checks and allocation responses."
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "vgpu", "device-plugin", "kubernetes", "mig", "nvml", "cdi", "time-slicing"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vgpu_plugin"]

[tool.pytest.ini_options]
addopts = "-ra"
