"""A proxy server library that tunnels client connections through connected agents."""

__version__ = "0.1.0"