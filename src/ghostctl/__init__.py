"""ghostctl package bootstrap."""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: Hatch reads the package version from this assignment (see ``pyproject.toml``).
__version__ = "0.3.0"
