"""Simulation infrastructure for exercising the mower core.

This module provides:
- A 2-D kinematic world with pylons, people and animals
- A lock-step runner driving real ``Mower`` runtimes
"""

from .runner import SimRunner
from .world import SimObject, SimUnit, SimWorld

__all__ = [
    "SimRunner",
    "SimObject",
    "SimUnit",
    "SimWorld",
]
