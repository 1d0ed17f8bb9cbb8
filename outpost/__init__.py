"""
Outpost - host agent that supervises module processes and reconciles
installed modules with a declared state.
"""

from outpost.agent import Agent
from outpost.errors import OutpostError

__version__ = "1.0.0"

__all__ = ["Agent", "OutpostError", "__version__"]
