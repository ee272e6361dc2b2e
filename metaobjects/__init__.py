"""Runtime-defined objects and fields with generic record storage."""

__version__ = "0.1.0"
