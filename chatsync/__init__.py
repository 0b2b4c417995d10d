"""Client-side synchronization and streaming assembly for remote agent conversations."""

__version__ = "0.1.0"

__all__ = ["__version__"]
