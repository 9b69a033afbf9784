"""
Backend coordinators.

Coordinators own long-lived keeper state and the loops that drive it,
orchestrating between the core match_keeper library and the web layer.
"""

from .match_coordinator import MatchCoordinator

__all__ = ['MatchCoordinator']
