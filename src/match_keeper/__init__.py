"""
Match Keeper - Core Library

Tracks two-player matches that live on an external ledger and issues the
settlement call for each round once its decision window closes or both
participants have acted.
"""

from .events import EventBus, MatchEvent
from .models import LifecycleState, Match, MatchCreated, RoundState, SettlementReceipt
from .registry import MatchRegistry

__all__ = [
    'EventBus',
    'MatchEvent',
    'LifecycleState',
    'Match',
    'MatchCreated',
    'RoundState',
    'SettlementReceipt',
    'MatchRegistry',
]
