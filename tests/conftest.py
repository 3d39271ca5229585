"""
Pytest fixtures for the live scoring engine.
Provides match setups, a delivery factory, and ledger / engine instances
rooted in a per-test temporary directory.
"""

import itertools

import pytest

from cricket_live.scoring.ball_event import BallEvent, Extra, ExtraKind, Wicket, WicketKind, infer_kind
from cricket_live.scoring.event_store import BallEventLedger
from cricket_live.scoring.innings_state import MatchSetup
from cricket_live.scoring.live_scoring_engine import LiveScoringEngine


# ==================== Match Fixtures ====================

@pytest.fixture(scope="function")
def t20_setup():
    """A T20 between IND and AUS with IND batting first."""
    return MatchSetup(
        match_id="m1",
        team_a="IND",
        team_b="AUS",
        batting_first="IND",
        match_format="T20",
    )


@pytest.fixture(scope="function")
def one_over_setup():
    """A one-over-a-side match, for tests that need innings to finish quickly."""
    return MatchSetup(
        match_id="m1",
        team_a="IND",
        team_b="AUS",
        batting_first="IND",
        match_format="T20",
        overs=1,
    )


# ==================== Event Fixtures ====================

_keys = itertools.count(1)


def make_ball(
    over,
    ball,
    striker="A",
    non_striker="B",
    bowler="X",
    runs=0,
    extra=None,
    wicket=None,
    boundary=None,
    innings=1,
    match_id="m1",
    sequence=None,
    key=None,
):
    """
    Build a delivery, picking its kind from the extra / wicket given.

    Each delivery gets a fresh idempotency key unless one is passed.
    """
    if key is None:
        key = f"{match_id}:{innings}:{over}.{ball}:{next(_keys)}"
    return BallEvent(
        match_id=match_id,
        innings=innings,
        kind=infer_kind(extra, wicket),
        over=over,
        ball=ball,
        striker=striker,
        non_striker=non_striker,
        bowler=bowler,
        runs_off_bat=runs,
        extra=extra,
        wicket=wicket,
        boundary=boundary,
        sequence=sequence,
        idempotency_key=key,
    )


def wide(amount=1):
    return Extra(ExtraKind.WIDE, amount)


def no_ball(amount=1):
    return Extra(ExtraKind.NO_BALL, amount)


def bowled(player):
    return Wicket(WicketKind.BOWLED, player)


def caught(player, fielder):
    return Wicket(WicketKind.CAUGHT, player, (fielder,))


def numbered(events, start=1):
    """Stamp events with consecutive ledger sequences."""
    return [e.with_sequence(seq) for seq, e in enumerate(events, start)]


def example_over():
    """
    The over 1, 0, 4, W, 1, 6 bowled by X.

    A faces first and takes a single, B plays out a dot and hits a four
    before being bowled, C comes in and takes a single, A hits a six.
    """
    return [
        make_ball(1, 1, "A", "B", runs=1),
        make_ball(1, 2, "B", "A"),
        make_ball(1, 3, "B", "A", runs=4),
        make_ball(1, 4, "B", "A", wicket=bowled("B")),
        make_ball(1, 5, "C", "A", runs=1),
        make_ball(1, 6, "A", "C", runs=6),
    ]


@pytest.fixture(scope="function")
def over_events():
    """The example over stamped with sequences 1-6."""
    return numbered(example_over())


# ==================== Storage Fixtures ====================

@pytest.fixture(scope="function")
def ledger(tmp_path):
    """An empty ledger in a temporary directory."""
    return BallEventLedger(tmp_path / "ledgers")


@pytest.fixture(scope="function")
def engine_dirs(tmp_path):
    return {
        "ledger_dir": tmp_path / "ledgers",
        "cache_dir": tmp_path / "scorecards",
        "checkpoint_dir": tmp_path / "checkpoints",
    }


@pytest.fixture(scope="function")
def engine(engine_dirs, t20_setup):
    """An engine with the T20 match registered."""
    live = LiveScoringEngine(**engine_dirs)
    live.register_match(t20_setup)
    yield live
    live.close()
