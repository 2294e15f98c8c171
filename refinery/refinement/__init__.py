"""Refinement package."""

from .core import InvalidStateTransition, Phase
from .manager import RefinementManager
from .runtime.session import RefinementSession

__all__ = ["Phase", "InvalidStateTransition", "RefinementManager", "RefinementSession"]
