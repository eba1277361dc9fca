"""Resource managers, device maps, health checks and allocation responses for shared NVIDIA GPUs."""

__version__ = "0.0.1"