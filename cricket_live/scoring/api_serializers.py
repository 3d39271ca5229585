"""
API request and response models for the scoring endpoints.

Request models validate the shape of what a scorer submits and convert it
to engine types; the engine then applies the cricket rules.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .. import config
from .ball_event import (
    BallEvent,
    Extra,
    ExtraKind,
    Wicket,
    WicketKind,
    infer_kind,
    make_idempotency_key,
)
from .fantasy_points import FantasyLeague, FantasyPointRecord, FantasyTeam, ScoringRules
from .innings_state import InningsState, MatchSetup
from .player_figures import PlayerFigures


# ========== Match Setup ==========

class MatchSetupRequest(BaseModel):
    """Request body for POST /matches."""
    match_id: str
    team_a: str
    team_b: str
    batting_first: str = Field(..., description="team_a or team_b")
    match_format: str = Field(config.DEFAULT_FORMAT, description="T20, ODI, T10 or TEST")
    overs: Optional[int] = Field(None, ge=1, description="Override the format's overs per innings")
    squads: Dict[str, List[str]] = Field(default_factory=dict)

    def to_setup(self) -> MatchSetup:
        return MatchSetup(
            match_id=self.match_id,
            team_a=self.team_a,
            team_b=self.team_b,
            batting_first=self.batting_first,
            match_format=self.match_format.upper(),
            overs=self.overs,
            squads=self.squads
        )


# ========== Ball Submission ==========

class ExtraModel(BaseModel):
    kind: ExtraKind
    amount: int = Field(..., ge=1, description="Total runs credited as this extra")


class WicketModel(BaseModel):
    kind: WicketKind
    player_out: str
    fielders: List[str] = Field(default_factory=list)


class BallSubmission(BaseModel):
    """Request body for POST /matches/{match_id}/balls."""
    innings: int = Field(..., ge=1)
    over: int = Field(..., ge=1, description="1-based over number")
    ball: int = Field(..., ge=1, le=config.MAX_DELIVERIES_PER_OVER, description="Delivery within the over")
    striker: str
    non_striker: str
    bowler: str
    runs_off_bat: int = Field(0, ge=0, le=7)
    extra: Optional[ExtraModel] = None
    wicket: Optional[WicketModel] = None
    boundary: Optional[bool] = Field(None, description="Override boundary inference for 4s and 6s")
    idempotency_key: Optional[str] = Field(None, description="Key identifying this submission")
    submission_id: Optional[str] = Field(
        None, description="Client submission id; derives the key when none is given"
    )
    expected_sequence: Optional[int] = Field(None, ge=1)

    @model_validator(mode='after')
    def require_submission_key(self) -> 'BallSubmission':
        if not (self.idempotency_key or self.submission_id):
            raise ValueError(
                "idempotency_key or submission_id is required so a retried ball is not scored twice"
            )
        return self

    def to_event(self, match_id: str) -> BallEvent:
        extra = Extra(kind=self.extra.kind, amount=self.extra.amount) if self.extra else None
        wicket = Wicket(
            kind=self.wicket.kind,
            player_out=self.wicket.player_out,
            fielders=tuple(self.wicket.fielders)
        ) if self.wicket else None
        return BallEvent(
            match_id=match_id,
            innings=self.innings,
            kind=infer_kind(extra, wicket),
            over=self.over,
            ball=self.ball,
            striker=self.striker,
            non_striker=self.non_striker,
            bowler=self.bowler,
            runs_off_bat=self.runs_off_bat,
            extra=extra,
            wicket=wicket,
            boundary=self.boundary
        )

    def key_for(self, match_id: str) -> str:
        if self.idempotency_key:
            return self.idempotency_key
        return make_idempotency_key(match_id, self.innings, self.over, self.ball, self.submission_id)


class RetractionRequest(BaseModel):
    """Request body for POST /matches/{match_id}/retractions."""
    innings: int = Field(..., ge=1)
    retracts_sequence: int = Field(..., ge=1)
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    expected_sequence: Optional[int] = Field(None, ge=1)


class SuspendRequest(BaseModel):
    innings: int = Field(..., ge=1)
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


class ResumeRequest(BaseModel):
    innings: int = Field(..., ge=1)
    revised_overs: Optional[int] = Field(None, ge=1, description="Reduced overs after an interruption")
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


class SubmitResponse(BaseModel):
    """Response for ledger writes."""
    sequence: int
    innings_state: Dict


class ErrorResponse(BaseModel):
    """Body of every scoring error response."""
    error: str
    message: str
    last_good_sequence: Optional[int] = None


# ========== Fantasy ==========

class LeagueRequest(BaseModel):
    """Request body for POST /fantasy/leagues."""
    league_id: str
    match_id: str
    name: str = ''
    scoring_rules: Optional[Dict[str, float]] = Field(
        None, description="Overrides on the default scoring table"
    )
    team_size: int = Field(config.FANTASY_TEAM_SIZE, ge=1)

    def to_league(self) -> FantasyLeague:
        rules = ScoringRules.default()
        if self.scoring_rules:
            rules = rules.with_overrides(self.scoring_rules)
        return FantasyLeague(
            league_id=self.league_id,
            match_id=self.match_id,
            name=self.name,
            rules=rules,
            team_size=self.team_size
        )


class FantasyTeamRequest(BaseModel):
    """Request body for POST /fantasy/leagues/{league_id}/teams."""
    team_id: str
    name: str
    players: List[str]
    captain: str
    vice_captain: str
    owner_id: Optional[str] = None

    def to_team(self, league_id: str) -> FantasyTeam:
        return FantasyTeam(
            team_id=self.team_id,
            league_id=league_id,
            name=self.name,
            players=list(self.players),
            captain=self.captain,
            vice_captain=self.vice_captain,
            owner_id=self.owner_id
        )


# ========== Serializer Functions ==========

def serialize_submit(sequence: int, state: InningsState) -> SubmitResponse:
    return SubmitResponse(sequence=sequence, innings_state=state.to_dict())


def serialize_figures(match_id: Optional[str], scope, figures: Dict[str, PlayerFigures]) -> Dict:
    """
    Figures response, players ordered by runs then wickets.

    Returns:
        Dict with match_id, scope and a list of player figure dicts
    """
    players = sorted(
        figures.values(),
        key=lambda pf: (-pf.batting.runs, -pf.bowling.wickets, pf.player_id)
    )
    return {
        'match_id': match_id,
        'scope': scope,
        'players': [pf.to_dict() for pf in players],
    }


def serialize_points(league_id: str, records: Dict[str, FantasyPointRecord]) -> Dict:
    ordered = sorted(records.values(), key=lambda r: (-r.total, r.player_id))
    return {
        'league_id': league_id,
        'players': [r.to_dict() for r in ordered],
    }
