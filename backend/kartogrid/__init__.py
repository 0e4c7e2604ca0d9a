"""Global grid cells: schema, storage and generation."""

__version__ = "0.1.0"
