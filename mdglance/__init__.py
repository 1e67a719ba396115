"""mdglance: single-instance markdown viewer."""

__version__ = "0.3.0"
