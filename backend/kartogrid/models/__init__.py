from .grid import GridCell

__all__ = [
    "GridCell",
]
