"""
Fantasy points from player figures.

score() is a pure function of (figures, scoring rules, captaincy role), so
it can be re-run after any change to the figures (a late wicket
reattribution, a retraction) and always gives the same answer. The
captain / vice-captain multiplier is applied once, to the final total.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .. import config
from .errors import ConflictError, ValidationError
from .player_figures import PlayerFigures

logger = logging.getLogger(__name__)


class CaptaincyRole(str, Enum):
    NONE = 'none'
    CAPTAIN = 'captain'
    VICE_CAPTAIN = 'vice_captain'


# Upstream league documents use camelCase keys
_PLATFORM_RULE_KEYS = {
    'runOuts': 'run_outs',
    'fourWickets': 'four_wickets',
    'fiveWickets': 'five_wickets',
    'maidenOvers': 'maiden_overs',
    'economyBonus': 'economy_bonus',
    'strikeRateBonus': 'strike_rate_bonus',
    'captainMultiplier': 'captain_multiplier',
    'viceCaptainMultiplier': 'vice_captain_multiplier',
}


@dataclass(frozen=True)
class ScoringRules:
    """A league's points table. Unlisted entries are worth nothing."""

    runs: float = 0
    wickets: float = 0
    catches: float = 0
    stumpings: float = 0
    run_outs: float = 0
    fifties: float = 0
    hundreds: float = 0
    four_wickets: float = 0
    five_wickets: float = 0
    maiden_overs: float = 0
    economy_bonus: float = 0
    strike_rate_bonus: float = 0
    captain_multiplier: float = config.CAPTAIN_MULTIPLIER
    vice_captain_multiplier: float = config.VICE_CAPTAIN_MULTIPLIER

    @classmethod
    def default(cls) -> 'ScoringRules':
        """The platform's default league table."""
        return cls.from_dict(config.DEFAULT_SCORING_RULES)

    @classmethod
    def _normalise(cls, data: dict) -> dict:
        known = set(cls.__dataclass_fields__)
        values = {}
        for key, value in data.items():
            name = _PLATFORM_RULE_KEYS.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown scoring rule: {key}")
            values[name] = float(value)
        return values

    @classmethod
    def from_dict(cls, data: dict) -> 'ScoringRules':
        return cls(**cls._normalise(data))

    def with_overrides(self, data: dict) -> 'ScoringRules':
        """Copy with the listed entries replaced; the rest are kept."""
        return replace(self, **self._normalise(data))

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}

    def multiplier(self, role: CaptaincyRole) -> float:
        if role == CaptaincyRole.CAPTAIN:
            return self.captain_multiplier
        if role == CaptaincyRole.VICE_CAPTAIN:
            return self.vice_captain_multiplier
        return 1.0


@dataclass(frozen=True)
class FantasyPointRecord:
    """Points for one player in one league and match."""

    player_id: str
    batting: float
    bowling: float
    fielding: float
    bonus: float
    multiplier: float
    role: CaptaincyRole = CaptaincyRole.NONE
    league_id: Optional[str] = None
    match_id: Optional[str] = None
    last_scoring_sequence: int = 0

    @property
    def subtotal(self) -> float:
        return self.batting + self.bowling + self.fielding + self.bonus

    @property
    def total(self) -> float:
        return self.multiplier * self.subtotal

    def to_dict(self) -> dict:
        return {
            'player_id': self.player_id,
            'league_id': self.league_id,
            'match_id': self.match_id,
            'role': self.role.value,
            'components': {
                'batting': self.batting,
                'bowling': self.bowling,
                'fielding': self.fielding,
                'bonus': self.bonus,
            },
            'multiplier': self.multiplier,
            'total': self.total,
            'last_scoring_sequence': self.last_scoring_sequence,
        }


def score(
    figures: PlayerFigures,
    rules: ScoringRules,
    role: CaptaincyRole = CaptaincyRole.NONE,
    league_id: Optional[str] = None,
    match_id: Optional[str] = None
) -> FantasyPointRecord:
    """
    Map a player's figures through a scoring table.

    Args:
        figures: The player's figures for the match
        rules: League scoring table
        role: Captaincy role in the fantasy side being scored

    Returns:
        FantasyPointRecord with the component breakdown and multiplier
    """
    bat = figures.batting
    bowl = figures.bowling
    fld = figures.fielding

    batting = bat.runs * rules.runs
    if bat.runs >= 100:
        batting += rules.hundreds
    elif bat.runs >= 50:
        batting += rules.fifties

    bowling = bowl.wickets * rules.wickets + bowl.maidens * rules.maiden_overs
    if bowl.wickets >= 5:
        bowling += rules.five_wickets
    elif bowl.wickets >= 4:
        bowling += rules.four_wickets

    fielding = (
        fld.catches * rules.catches
        + fld.stumpings * rules.stumpings
        + fld.run_outs * rules.run_outs
    )

    bonus = 0.0
    if bowl.legal_balls >= config.ECONOMY_BONUS_MIN_BALLS \
            and bowl.economy is not None \
            and bowl.economy < config.ECONOMY_BONUS_MAX_ECONOMY:
        bonus += rules.economy_bonus
    if bat.balls_faced >= config.STRIKE_RATE_BONUS_MIN_BALLS \
            and bat.strike_rate is not None \
            and bat.strike_rate >= config.STRIKE_RATE_BONUS_MIN_RATE:
        bonus += rules.strike_rate_bonus

    return FantasyPointRecord(
        player_id=figures.player_id,
        batting=batting,
        bowling=bowling,
        fielding=fielding,
        bonus=bonus,
        multiplier=rules.multiplier(role),
        role=role,
        league_id=league_id,
        match_id=match_id,
        last_scoring_sequence=figures.last_scoring_sequence
    )


@dataclass
class FantasyTeam:
    """A fantasy side: eleven players with a captain and vice-captain."""

    team_id: str
    league_id: str
    name: str
    players: List[str]
    captain: str
    vice_captain: str
    owner_id: Optional[str] = None

    def validate(self, team_size: int = config.FANTASY_TEAM_SIZE) -> None:
        """
        Raises:
            ValidationError: If the side breaks the composition rules
        """
        if len(self.players) != team_size:
            raise ValidationError(
                f"Team {self.team_id} has {len(self.players)} players, needs {team_size}"
            )
        if len(set(self.players)) != len(self.players):
            raise ValidationError(f"Team {self.team_id} lists a player twice")
        if self.captain == self.vice_captain:
            raise ValidationError(f"Team {self.team_id}: captain and vice-captain must differ")
        for role, player in (('captain', self.captain), ('vice-captain', self.vice_captain)):
            if player not in self.players:
                raise ValidationError(f"Team {self.team_id}: {role} {player} is not in the side")

    def role_of(self, player_id: str) -> CaptaincyRole:
        if player_id == self.captain:
            return CaptaincyRole.CAPTAIN
        if player_id == self.vice_captain:
            return CaptaincyRole.VICE_CAPTAIN
        return CaptaincyRole.NONE

    def to_dict(self) -> dict:
        return {
            'team_id': self.team_id,
            'league_id': self.league_id,
            'name': self.name,
            'players': list(self.players),
            'captain': self.captain,
            'vice_captain': self.vice_captain,
            'owner_id': self.owner_id,
        }


@dataclass
class FantasyLeague:
    """League configuration: which match it follows and how it scores."""

    league_id: str
    match_id: str
    name: str = ''
    rules: ScoringRules = field(default_factory=ScoringRules.default)
    team_size: int = config.FANTASY_TEAM_SIZE
    teams: Dict[str, FantasyTeam] = field(default_factory=dict)

    def add_team(self, team: FantasyTeam) -> None:
        if team.league_id != self.league_id:
            raise ValidationError(
                f"Team {team.team_id} belongs to league {team.league_id}, not {self.league_id}"
            )
        if team.team_id in self.teams:
            raise ConflictError(f"Team {team.team_id} is already entered in league {self.league_id}")
        team.validate(self.team_size)
        self.teams[team.team_id] = team
        logger.info(f"Entered team {team.team_id} ({team.name}) in league {self.league_id}")

    def to_dict(self) -> dict:
        return {
            'league_id': self.league_id,
            'match_id': self.match_id,
            'name': self.name,
            'rules': self.rules.to_dict(),
            'team_size': self.team_size,
            'teams': [t.to_dict() for t in self.teams.values()],
        }


@dataclass
class TeamPoints:
    """A fantasy side's points: the sum of its players' records."""

    team_id: str
    name: str
    records: Dict[str, FantasyPointRecord]

    @property
    def total(self) -> float:
        return sum(r.total for r in self.records.values())

    @property
    def last_scoring_sequence(self) -> int:
        earning = [r.last_scoring_sequence for r in self.records.values() if r.subtotal]
        return max(earning, default=0)

    def to_dict(self) -> dict:
        return {
            'team_id': self.team_id,
            'name': self.name,
            'total': self.total,
            'last_scoring_sequence': self.last_scoring_sequence,
            'players': [r.to_dict() for r in self.records.values()],
        }


def league_points(
    league: FantasyLeague,
    figures: Dict[str, PlayerFigures]
) -> Dict[str, FantasyPointRecord]:
    """
    Base (1x) records for every player with figures in the league's match.

    Returns:
        Mapping player_id -> FantasyPointRecord
    """
    return {
        player_id: score(pf, league.rules, CaptaincyRole.NONE, league.league_id, league.match_id)
        for player_id, pf in figures.items()
    }


def team_points(
    team: FantasyTeam,
    league: FantasyLeague,
    figures: Dict[str, PlayerFigures]
) -> TeamPoints:
    """Score each of the side's players with their captaincy role applied."""
    records = {}
    for player_id in team.players:
        pf = figures.get(player_id) or PlayerFigures(player_id=player_id)
        records[player_id] = score(
            pf, league.rules, team.role_of(player_id), league.league_id, league.match_id
        )
    return TeamPoints(team_id=team.team_id, name=team.name, records=records)


def rank_teams(
    standings: Iterable[TeamPoints],
    tie_break: str = config.LEADERBOARD_TIE_BREAK
) -> List[dict]:
    """
    Order sides by total points.

    Equal totals are separated by the sequence of each side's latest
    points-earning ball: 'most_recent' puts the newer one first, 'earliest'
    the older one. Remaining ties fall back to team id so the order is stable.

    Returns:
        List of team dicts with a 1-based 'rank', best first
    """
    if tie_break not in ('most_recent', 'earliest'):
        raise ValueError(f"Unknown tie-break policy: {tie_break}")

    direction = -1 if tie_break == 'most_recent' else 1
    ordered = sorted(
        standings,
        key=lambda t: (-t.total, direction * t.last_scoring_sequence, t.team_id)
    )

    leaderboard = []
    for rank, team in enumerate(ordered, start=1):
        entry = team.to_dict()
        entry['rank'] = rank
        leaderboard.append(entry)
    return leaderboard
