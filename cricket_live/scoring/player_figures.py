"""
Per-player batting, bowling and fielding figures derived from the ledger.

Figures are projections: they can be folded incrementally one ball at a
time, or rebuilt in bulk by replaying the ledger. Rates (strike rate,
economy, averages) are computed from their numerator and denominator on
read and are never stored; a zero denominator yields None.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

import pandas as pd

from .. import config
from .ball_event import BallEvent, ExtraKind, WicketKind, effective_events
from .errors import ReconciliationError
from .innings_state import InningsState

logger = logging.getLogger(__name__)

MATCH_SCOPE = 'match'
CAREER_SCOPE = 'career'

# 'match', 'career', or a 1-based innings number
Scope = Union[str, int]


def parse_scope(raw) -> Scope:
    """Normalize a scope given as 'match', 'career', 'innings:2', '2' or 2."""
    if isinstance(raw, int):
        return raw
    text = str(raw).strip().lower()
    if text in (MATCH_SCOPE, CAREER_SCOPE):
        return text
    if text.startswith('innings:'):
        text = text[len('innings:'):]
    try:
        innings = int(text)
    except ValueError:
        raise ValueError(f"Unknown figures scope: {raw}")
    if innings < 1:
        raise ValueError(f"Innings scope must be 1-based, got {innings}")
    return innings


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> Optional[float]:
    if not denominator:
        return None
    return numerator * scale / denominator


@dataclass
class BattingFigures:
    runs: int = 0
    balls_faced: int = 0
    fours: int = 0
    sixes: int = 0
    dots: int = 0
    innings: int = 0
    dismissals: int = 0
    dismissal: Optional[dict] = None   # how the latest innings ended

    @property
    def strike_rate(self) -> Optional[float]:
        return _ratio(self.runs, self.balls_faced, 100.0)

    @property
    def average(self) -> Optional[float]:
        return _ratio(self.runs, self.dismissals)

    def merge(self, other: 'BattingFigures') -> None:
        self.runs += other.runs
        self.balls_faced += other.balls_faced
        self.fours += other.fours
        self.sixes += other.sixes
        self.dots += other.dots
        self.innings += other.innings
        self.dismissals += other.dismissals
        if other.dismissal is not None:
            self.dismissal = other.dismissal

    def to_dict(self) -> dict:
        return {
            'runs': self.runs,
            'balls_faced': self.balls_faced,
            'fours': self.fours,
            'sixes': self.sixes,
            'dots': self.dots,
            'innings': self.innings,
            'dismissals': self.dismissals,
            'dismissal': self.dismissal,
            'strike_rate': self.strike_rate,
            'average': self.average,
        }


@dataclass
class BowlingFigures:
    legal_balls: int = 0
    runs_conceded: int = 0
    wickets: int = 0
    maidens: int = 0
    wides: int = 0
    no_balls: int = 0
    dots: int = 0

    @property
    def overs(self) -> str:
        completed, balls = divmod(self.legal_balls, config.BALLS_PER_OVER)
        return f"{completed}.{balls}"

    @property
    def economy(self) -> Optional[float]:
        return _ratio(self.runs_conceded, self.legal_balls, config.BALLS_PER_OVER)

    @property
    def average(self) -> Optional[float]:
        return _ratio(self.runs_conceded, self.wickets)

    @property
    def strike_rate(self) -> Optional[float]:
        return _ratio(self.legal_balls, self.wickets)

    def merge(self, other: 'BowlingFigures') -> None:
        self.legal_balls += other.legal_balls
        self.runs_conceded += other.runs_conceded
        self.wickets += other.wickets
        self.maidens += other.maidens
        self.wides += other.wides
        self.no_balls += other.no_balls
        self.dots += other.dots

    def to_dict(self) -> dict:
        return {
            'legal_balls': self.legal_balls,
            'overs': self.overs,
            'runs_conceded': self.runs_conceded,
            'wickets': self.wickets,
            'maidens': self.maidens,
            'wides': self.wides,
            'no_balls': self.no_balls,
            'dots': self.dots,
            'economy': self.economy,
            'average': self.average,
            'strike_rate': self.strike_rate,
        }


@dataclass
class FieldingFigures:
    catches: int = 0
    run_outs: int = 0
    stumpings: int = 0

    def merge(self, other: 'FieldingFigures') -> None:
        self.catches += other.catches
        self.run_outs += other.run_outs
        self.stumpings += other.stumpings

    def to_dict(self) -> dict:
        return {
            'catches': self.catches,
            'run_outs': self.run_outs,
            'stumpings': self.stumpings,
        }


@dataclass
class PlayerFigures:
    """Batting, bowling and fielding figures for one player in one scope."""

    player_id: str
    batting: BattingFigures = field(default_factory=BattingFigures)
    bowling: BowlingFigures = field(default_factory=BowlingFigures)
    fielding: FieldingFigures = field(default_factory=FieldingFigures)
    # Sequence of the latest ball that earned this player anything
    last_scoring_sequence: int = 0

    def merge(self, other: 'PlayerFigures') -> None:
        self.batting.merge(other.batting)
        self.bowling.merge(other.bowling)
        self.fielding.merge(other.fielding)
        self.last_scoring_sequence = max(self.last_scoring_sequence, other.last_scoring_sequence)

    def to_dict(self) -> dict:
        return {
            'player_id': self.player_id,
            'batting': self.batting.to_dict(),
            'bowling': self.bowling.to_dict(),
            'fielding': self.fielding.to_dict(),
            'last_scoring_sequence': self.last_scoring_sequence,
        }


class PlayerFigureAggregator:
    """Folds deliveries into per-player figures for a single scope."""

    def __init__(self, scope: Scope = MATCH_SCOPE):
        self.scope = scope
        self.figures: Dict[str, PlayerFigures] = {}
        self.last_sequence = 0
        # (match, innings, over, bowler) -> [legal balls, runs conceded]
        self._over_tally: Dict[Tuple[str, int, int, str], List[int]] = {}
        self._appearances: Set[Tuple[str, int, str]] = set()

    @classmethod
    def project(cls, events: Iterable[BallEvent], scope: Scope = MATCH_SCOPE) -> Dict[str, PlayerFigures]:
        """
        Rebuild figures in bulk from ledger events.

        Args:
            events: Committed events for one match, in sequence order
            scope: 'match' or an innings number

        Returns:
            Mapping player_id -> PlayerFigures
        """
        aggregator = cls(scope)
        for event in effective_events(list(events)):
            aggregator.fold(event)
        return aggregator.figures

    def in_scope(self, event: BallEvent) -> bool:
        if isinstance(self.scope, int):
            return event.innings == self.scope
        return True

    def _player(self, player_id: str) -> PlayerFigures:
        figures = self.figures.get(player_id)
        if figures is None:
            figures = PlayerFigures(player_id=player_id)
            self.figures[player_id] = figures
        return figures

    def fold(self, event: BallEvent) -> Set[str]:
        """
        Fold one delivery into the figures.

        Args:
            event: A committed delivery (retractions must be handled by a
                bulk rebuild, not folded)

        Returns:
            Ids of the players whose figures changed
        """
        if not event.is_delivery or not self.in_scope(event):
            return set()

        sequence = event.sequence or 0
        self.last_sequence = max(self.last_sequence, sequence)
        changed = {event.striker, event.non_striker, event.bowler}

        for batter_id in (event.striker, event.non_striker):
            key = (event.match_id, event.innings, batter_id)
            if key not in self._appearances:
                self._appearances.add(key)
                self._player(batter_id).batting.innings += 1

        striker = self._player(event.striker)
        batting = striker.batting
        batting.runs += event.runs_off_bat
        if event.legal:
            batting.balls_faced += 1
            if event.runs_off_bat == 0:
                batting.dots += 1
        if event.is_four:
            batting.fours += 1
        if event.is_six:
            batting.sixes += 1
        if event.runs_off_bat:
            striker.last_scoring_sequence = sequence

        bowler = self._player(event.bowler)
        bowling = bowler.bowling
        bowling.runs_conceded += event.bowler_runs
        if event.extra is not None:
            if event.extra.kind == ExtraKind.WIDE:
                bowling.wides += 1
            elif event.extra.kind == ExtraKind.NO_BALL:
                bowling.no_balls += 1
        if event.legal:
            bowling.legal_balls += 1
            if event.bowler_runs == 0:
                bowling.dots += 1

        tally = self._over_tally.setdefault(
            (event.match_id, event.innings, event.over, event.bowler), [0, 0]
        )
        tally[1] += event.bowler_runs
        if event.legal:
            tally[0] += 1
            if tally[0] == config.BALLS_PER_OVER and tally[1] == 0:
                bowling.maidens += 1
                bowler.last_scoring_sequence = sequence

        if event.wicket is not None:
            changed |= self._fold_dismissal(event, sequence)

        changed.discard(None)
        return changed

    def _fold_dismissal(self, event: BallEvent, sequence: int) -> Set[str]:
        wicket = event.wicket
        changed = {wicket.player_out}

        out = self._player(wicket.player_out).batting
        out.dismissal = {
            'kind': wicket.kind.value,
            'bowler': event.bowler if wicket.credited_to_bowler else None,
            'fielders': list(wicket.fielders),
        }
        if wicket.falls:
            out.dismissals += 1

        if wicket.credited_to_bowler:
            bowler = self._player(event.bowler)
            bowler.bowling.wickets += 1
            bowler.last_scoring_sequence = sequence

        # Credit exactly the fielders recorded on the event
        for fielder_id in wicket.fielders:
            fielder = self._player(fielder_id)
            if wicket.kind == WicketKind.CAUGHT:
                fielder.fielding.catches += 1
            elif wicket.kind == WicketKind.STUMPED:
                fielder.fielding.stumpings += 1
            elif wicket.kind == WicketKind.RUN_OUT:
                fielder.fielding.run_outs += 1
            else:
                continue
            fielder.last_scoring_sequence = sequence
            changed.add(fielder_id)

        return changed


def project_career(
    match_events: Iterable[Iterable[BallEvent]],
    player_ids: Optional[Iterable[str]] = None
) -> Dict[str, PlayerFigures]:
    """
    Aggregate figures across several matches.

    Args:
        match_events: One iterable of committed events per match
        player_ids: Restrict the result to these players (None = everyone)

    Returns:
        Mapping player_id -> career PlayerFigures
    """
    wanted = set(player_ids) if player_ids is not None else None
    career: Dict[str, PlayerFigures] = {}
    matches = 0

    for events in match_events:
        matches += 1
        for player_id, figures in PlayerFigureAggregator.project(events, MATCH_SCOPE).items():
            if wanted is not None and player_id not in wanted:
                continue
            if player_id not in career:
                career[player_id] = PlayerFigures(player_id=player_id)
            career[player_id].merge(figures)

    logger.debug(f"Aggregated career figures for {len(career)} players over {matches} matches")
    return career


def reconcile(state: InningsState, figures: Dict[str, PlayerFigures]) -> None:
    """
    Check the innings total against the player figures for that innings.

    Batting runs plus extras, and bowler runs plus byes, leg-byes and
    penalties, must both equal the innings total.

    Args:
        state: InningsState of the innings
        figures: Figures projected with that innings as scope

    Raises:
        ReconciliationError: If either sum disagrees with the total
    """
    batting_total = sum(f.batting.runs for f in figures.values()) + state.extras_total
    if batting_total != state.total_runs:
        logger.error(
            f"Reconciliation failed for innings {state.innings}: total "
            f"{state.total_runs}, batting + extras {batting_total}"
        )
        raise ReconciliationError(
            innings=state.innings,
            expected_total=state.total_runs,
            figures_total=batting_total,
            last_good_sequence=state.last_applied_sequence
        )

    unattributed = sum(state.extras[k] for k in ('bye', 'leg_bye', 'penalty'))
    bowling_total = sum(f.bowling.runs_conceded for f in figures.values()) + unattributed
    if bowling_total != state.total_runs:
        logger.error(
            f"Reconciliation failed for innings {state.innings}: total "
            f"{state.total_runs}, bowler runs + byes {bowling_total}"
        )
        raise ReconciliationError(
            innings=state.innings,
            expected_total=state.total_runs,
            figures_total=bowling_total,
            last_good_sequence=state.last_applied_sequence
        )


def figures_to_dataframe(figures: Dict[str, PlayerFigures]) -> pd.DataFrame:
    """
    Flatten figures into one row per player for export.

    Returns:
        DataFrame sorted by runs then wickets, descending
    """
    rows = []
    for player_id, pf in figures.items():
        row = {'player_id': player_id}
        row.update({f"bat_{k}": v for k, v in pf.batting.to_dict().items() if k != 'dismissal'})
        row['dismissal'] = pf.batting.dismissal['kind'] if pf.batting.dismissal else None
        row.update({f"bowl_{k}": v for k, v in pf.bowling.to_dict().items()})
        row.update(pf.fielding.to_dict())
        rows.append(row)

    if not rows:
        return pd.DataFrame(columns=['player_id'])

    df = pd.DataFrame(rows)
    return df.sort_values(['bat_runs', 'bowl_wickets'], ascending=False).reset_index(drop=True)
