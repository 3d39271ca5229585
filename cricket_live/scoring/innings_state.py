"""
Core data structures for match setup and innings state.

MatchSetup is read-only reference data handed in by the platform (teams,
format). InningsState is a derived cache: it is always the fold of the
ledger events applied so far and can be thrown away and rebuilt.
"""

from dataclasses import dataclass, field
from pathlib import Path
from enum import Enum
from typing import Dict, List, Optional
import copy
import json

from .. import config
from .ball_event import ExtraKind
from .errors import ValidationError


class InningsStatus(str, Enum):
    NOT_STARTED = 'not_started'
    IN_PROGRESS = 'in_progress'
    SUSPENDED = 'suspended'
    COMPLETED = 'completed'


class CompletionReason(str, Enum):
    ALL_OUT = 'all_out'
    OVERS_EXHAUSTED = 'overs_exhausted'
    TARGET_ACHIEVED = 'target_achieved'


@dataclass
class MatchSetup:
    """Reference data for a match, looked up by id."""

    match_id: str
    team_a: str
    team_b: str
    batting_first: str
    match_format: str = config.DEFAULT_FORMAT
    overs: Optional[int] = None          # overrides the format's overs
    squads: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        if self.match_format not in config.MATCH_FORMATS:
            raise ValidationError(f"Unknown match format: {self.match_format}")
        if self.batting_first not in (self.team_a, self.team_b):
            raise ValidationError(
                f"Batting first team {self.batting_first} is not playing in this match"
            )
        if self.team_a == self.team_b:
            raise ValidationError("A match needs two different teams")

    @property
    def format_settings(self) -> dict:
        return config.MATCH_FORMATS[self.match_format]

    @property
    def max_overs(self) -> Optional[int]:
        if self.overs is not None:
            return self.overs
        return self.format_settings['overs']

    @property
    def is_limited_overs(self) -> bool:
        return self.max_overs is not None

    @property
    def power_play_overs(self) -> int:
        return self.format_settings['power_play_overs']

    @property
    def total_innings(self) -> int:
        return 2 * self.format_settings['innings_per_side']

    @property
    def fielding_first(self) -> str:
        return self.team_b if self.batting_first == self.team_a else self.team_a

    def batting_team(self, innings: int) -> str:
        """Sides alternate: odd innings to the side batting first."""
        return self.batting_first if innings % 2 == 1 else self.fielding_first

    def bowling_team(self, innings: int) -> str:
        return self.fielding_first if innings % 2 == 1 else self.batting_first

    def to_dict(self) -> dict:
        return {
            'match_id': self.match_id,
            'team_a': self.team_a,
            'team_b': self.team_b,
            'batting_first': self.batting_first,
            'match_format': self.match_format,
            'overs': self.overs,
            'squads': self.squads,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'MatchSetup':
        return cls(
            match_id=data['match_id'],
            team_a=data['team_a'],
            team_b=data['team_b'],
            batting_first=data['batting_first'],
            match_format=data.get('match_format', config.DEFAULT_FORMAT),
            overs=data.get('overs'),
            squads=data.get('squads') or {}
        )


def _empty_extras() -> Dict[str, int]:
    return {kind.value: 0 for kind in ExtraKind}


POWER_PLAY_COUNTERS = ('runs', 'wickets', 'legal_balls', 'fours', 'sixes')


def _empty_power_play() -> Dict[str, int]:
    return {name: 0 for name in POWER_PLAY_COUNTERS}


def _overs_notation(legal_balls: int) -> str:
    completed, balls = divmod(legal_balls, config.BALLS_PER_OVER)
    return f"{completed}.{balls}"


@dataclass
class InningsState:
    """Score, wickets, overs and crease state for one innings."""

    innings: int
    batting_team: str
    bowling_team: str
    status: InningsStatus = InningsStatus.NOT_STARTED
    total_runs: int = 0
    wickets: int = 0
    legal_balls: int = 0
    extras: Dict[str, int] = field(default_factory=_empty_extras)
    fours: int = 0
    sixes: int = 0
    striker: Optional[str] = None
    non_striker: Optional[str] = None
    bowler: Optional[str] = None
    previous_over_bowler: Optional[str] = None
    partnership_runs: int = 0
    partnership_balls: int = 0
    # One record per pair at the crease: wicket, player_1, player_2, runs,
    # balls, start_overs, end_overs, unbroken (still batting together)
    partnerships: List[dict] = field(default_factory=list)
    power_play_totals: Dict[str, int] = field(default_factory=_empty_power_play)
    fall_of_wickets: List[dict] = field(default_factory=list)
    dismissed: List[str] = field(default_factory=list)
    max_overs: Optional[int] = None
    power_play_overs: int = 0
    target: Optional[int] = None
    team_size: int = config.TEAM_SIZE
    completion_reason: Optional[CompletionReason] = None
    last_applied_sequence: int = 0

    @property
    def extras_total(self) -> int:
        return sum(self.extras.values())

    @property
    def overs(self) -> str:
        """Overs in scorebook notation, e.g. '3.4'."""
        return _overs_notation(self.legal_balls)

    @property
    def power_play_summary(self) -> dict:
        """Power play counters plus their overs and run rate."""
        summary = dict(self.power_play_totals)
        balls = summary['legal_balls']
        summary['overs'] = _overs_notation(balls)
        summary['run_rate'] = summary['runs'] * config.BALLS_PER_OVER / balls if balls else None
        return summary

    @property
    def current_over(self) -> int:
        """1-based number of the over in progress (or next to start)."""
        return self.legal_balls // config.BALLS_PER_OVER + 1

    @property
    def power_play(self) -> bool:
        if self.status != InningsStatus.IN_PROGRESS or self.max_overs is None:
            return False
        return self.legal_balls < self.power_play_overs * config.BALLS_PER_OVER

    @property
    def balls_remaining(self) -> Optional[int]:
        if self.max_overs is None:
            return None
        return max(0, self.max_overs * config.BALLS_PER_OVER - self.legal_balls)

    @property
    def run_rate(self) -> Optional[float]:
        if self.legal_balls == 0:
            return None
        return self.total_runs * config.BALLS_PER_OVER / self.legal_balls

    @property
    def runs_required(self) -> Optional[int]:
        if self.target is None:
            return None
        return max(0, self.target - self.total_runs)

    @property
    def required_run_rate(self) -> Optional[float]:
        remaining = self.balls_remaining
        if self.target is None or not remaining:
            return None
        return self.runs_required * config.BALLS_PER_OVER / remaining

    @property
    def all_out_wickets(self) -> int:
        return self.team_size - 1

    def validate(self) -> None:
        """
        Validate innings state consistency.

        Raises:
            ValueError: If state is inconsistent
        """
        if self.wickets > self.all_out_wickets:
            raise ValueError(
                f"Innings {self.innings}: {self.wickets} wickets exceeds "
                f"{self.all_out_wickets}"
            )
        if self.wickets != len(self.fall_of_wickets):
            raise ValueError(
                f"Innings {self.innings}: {self.wickets} wickets but "
                f"{len(self.fall_of_wickets)} fall-of-wicket entries"
            )
        if self.max_overs is not None \
                and self.legal_balls > self.max_overs * config.BALLS_PER_OVER:
            raise ValueError(
                f"Innings {self.innings}: {self.legal_balls} balls exceeds "
                f"{self.max_overs} overs"
            )

    def copy(self) -> 'InningsState':
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'innings': self.innings,
            'batting_team': self.batting_team,
            'bowling_team': self.bowling_team,
            'status': self.status.value,
            'total_runs': self.total_runs,
            'wickets': self.wickets,
            'legal_balls': self.legal_balls,
            'overs': self.overs,
            'extras': dict(self.extras),
            'extras_total': self.extras_total,
            'fours': self.fours,
            'sixes': self.sixes,
            'striker': self.striker,
            'non_striker': self.non_striker,
            'bowler': self.bowler,
            'previous_over_bowler': self.previous_over_bowler,
            'partnership_runs': self.partnership_runs,
            'partnership_balls': self.partnership_balls,
            'partnerships': [dict(p) for p in self.partnerships],
            'power_play_totals': self.power_play_summary,
            'fall_of_wickets': [dict(fow) for fow in self.fall_of_wickets],
            'dismissed': list(self.dismissed),
            'max_overs': self.max_overs,
            'power_play_overs': self.power_play_overs,
            'power_play': self.power_play,
            'target': self.target,
            'runs_required': self.runs_required,
            'balls_remaining': self.balls_remaining,
            'run_rate': self.run_rate,
            'required_run_rate': self.required_run_rate,
            'team_size': self.team_size,
            'completion_reason': (
                self.completion_reason.value if self.completion_reason else None
            ),
            'last_applied_sequence': self.last_applied_sequence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'InningsState':
        """Create InningsState from dictionary (derived fields are ignored)."""
        extras = _empty_extras()
        extras.update(data.get('extras') or {})
        power_play = _empty_power_play()
        stored = data.get('power_play_totals') or {}
        power_play.update({name: stored[name] for name in POWER_PLAY_COUNTERS if name in stored})
        reason = data.get('completion_reason')
        return cls(
            innings=data['innings'],
            batting_team=data['batting_team'],
            bowling_team=data['bowling_team'],
            status=InningsStatus(data.get('status', InningsStatus.NOT_STARTED.value)),
            total_runs=data.get('total_runs', 0),
            wickets=data.get('wickets', 0),
            legal_balls=data.get('legal_balls', 0),
            extras=extras,
            fours=data.get('fours', 0),
            sixes=data.get('sixes', 0),
            striker=data.get('striker'),
            non_striker=data.get('non_striker'),
            bowler=data.get('bowler'),
            previous_over_bowler=data.get('previous_over_bowler'),
            partnership_runs=data.get('partnership_runs', 0),
            partnership_balls=data.get('partnership_balls', 0),
            partnerships=[dict(p) for p in data.get('partnerships', [])],
            power_play_totals=power_play,
            fall_of_wickets=[dict(fow) for fow in data.get('fall_of_wickets', [])],
            dismissed=list(data.get('dismissed', [])),
            max_overs=data.get('max_overs'),
            power_play_overs=data.get('power_play_overs', 0),
            target=data.get('target'),
            team_size=data.get('team_size', config.TEAM_SIZE),
            completion_reason=CompletionReason(reason) if reason else None,
            last_applied_sequence=data.get('last_applied_sequence', 0)
        )

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def create_initial_innings_state(setup: MatchSetup, innings: int) -> InningsState:
    """
    Create the state of an innings before its first ball.

    Args:
        setup: Match reference data
        innings: 1-based innings number

    Returns:
        InningsState in NOT_STARTED status
    """
    if not 1 <= innings <= setup.total_innings:
        raise ValidationError(
            f"Innings {innings} out of range for a {setup.match_format} match "
            f"({setup.total_innings} innings)"
        )
    return InningsState(
        innings=innings,
        batting_team=setup.batting_team(innings),
        bowling_team=setup.bowling_team(innings),
        max_overs=setup.max_overs,
        power_play_overs=setup.power_play_overs,
        team_size=config.TEAM_SIZE
    )


def setup_filepath(ledger_path: Path) -> Path:
    """Match setup lives beside its ledger: match_X.jsonl -> match_X.setup.json."""
    ledger_path = Path(ledger_path)
    return ledger_path.with_name(f"{ledger_path.stem}.setup.json")


def save_match_setup(filepath: Path, setup: MatchSetup) -> None:
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    temp_path = filepath.with_suffix('.tmp')
    with open(temp_path, 'w', encoding='utf-8') as f:
        json.dump(setup.to_dict(), f, indent=2)
    temp_path.replace(filepath)


def load_match_setup(filepath: Path) -> MatchSetup:
    """
    Raises:
        FileNotFoundError: If no setup was saved for the match
    """
    with open(Path(filepath), 'r', encoding='utf-8') as f:
        return MatchSetup.from_dict(json.load(f))
