"""wodctl package bootstrap."""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: Hatch reads the project version from this assignment.
__version__ = "0.1.0"
