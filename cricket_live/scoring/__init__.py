"""
Live scoring subsystem for cricket matches.

This package provides an append-only ball-by-ball ledger per match, with
innings state, player figures and fantasy points derived from it, and a
live delta feed for viewers.
"""

from .ball_event import BallEvent, Extra, Wicket, EventKind, ExtraKind, WicketKind
from .errors import (
    ScoringError,
    ConflictError,
    OutOfOrderError,
    ValidationError,
    ReconciliationError,
    ScoringTimeoutError,
    UnknownMatchError,
    UnknownLeagueError,
)
from .event_store import BallEventLedger
from .innings_state import MatchSetup, InningsState, InningsStatus
from .innings_state_machine import InningsStateMachine
from .player_figures import PlayerFigures, PlayerFigureAggregator
from .fantasy_points import ScoringRules, FantasyPointRecord, FantasyTeam, FantasyLeague, score
from .broadcast import BroadcastGateway, DeltaMessage, DeltaConsumer
from .scorecard_cache import ScorecardCache
from .platform_client import PlatformClient
from .live_scoring_engine import LiveScoringEngine

__all__ = [
    'BallEvent',
    'Extra',
    'Wicket',
    'EventKind',
    'ExtraKind',
    'WicketKind',
    'ScoringError',
    'ConflictError',
    'OutOfOrderError',
    'ValidationError',
    'ReconciliationError',
    'ScoringTimeoutError',
    'UnknownMatchError',
    'UnknownLeagueError',
    'BallEventLedger',
    'MatchSetup',
    'InningsState',
    'InningsStatus',
    'InningsStateMachine',
    'PlayerFigures',
    'PlayerFigureAggregator',
    'ScoringRules',
    'FantasyPointRecord',
    'FantasyTeam',
    'FantasyLeague',
    'score',
    'BroadcastGateway',
    'DeltaMessage',
    'DeltaConsumer',
    'ScorecardCache',
    'PlatformClient',
    'LiveScoringEngine',
]
