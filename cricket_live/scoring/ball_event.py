"""
Core data structures for ball-by-ball scoring events.

A BallEvent is one committed entry in a match ledger. Events are closed over
a small set of kinds (run, extra, wicket, retraction, plus the suspend/resume
innings controls) and are validated at the boundary before they can reach
the ledger. Once committed an event is never changed; corrections are
appended as retraction events.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import hashlib
import json

from .. import config
from .errors import ValidationError


class EventKind(str, Enum):
    RUN = 'run'
    EXTRA = 'extra'
    WICKET = 'wicket'
    RETRACTION = 'retraction'
    SUSPEND = 'suspend'
    RESUME = 'resume'


class ExtraKind(str, Enum):
    WIDE = 'wide'
    NO_BALL = 'no_ball'
    BYE = 'bye'
    LEG_BYE = 'leg_bye'
    PENALTY = 'penalty'


class WicketKind(str, Enum):
    BOWLED = 'bowled'
    CAUGHT = 'caught'
    LBW = 'lbw'
    RUN_OUT = 'run_out'
    STUMPED = 'stumped'
    HIT_WICKET = 'hit_wicket'
    OBSTRUCTING_FIELD = 'obstructing_field'
    HANDLED_BALL = 'handled_ball'
    TIMED_OUT = 'timed_out'
    RETIRED_OUT = 'retired_out'
    RETIRED_HURT = 'retired_hurt'


# Deliveries that are not counted as one of the six in the over
ILLEGAL_EXTRAS = {ExtraKind.WIDE, ExtraKind.NO_BALL}

# Extras charged to the bowler's figures
BOWLER_EXTRAS = {ExtraKind.WIDE, ExtraKind.NO_BALL}

# Dismissals credited to the bowler
BOWLER_WICKETS = {
    WicketKind.BOWLED,
    WicketKind.CAUGHT,
    WicketKind.LBW,
    WicketKind.STUMPED,
    WicketKind.HIT_WICKET,
}

# Dismissals possible off a no-ball / a wide
NO_BALL_WICKETS = {
    WicketKind.RUN_OUT,
    WicketKind.OBSTRUCTING_FIELD,
    WicketKind.HANDLED_BALL,
}
WIDE_WICKETS = NO_BALL_WICKETS | {WicketKind.STUMPED, WicketKind.HIT_WICKET}

# The batter leaves but no wicket falls
NOT_OUT_DISMISSALS = {WicketKind.RETIRED_HURT}

CONTROL_KINDS = {EventKind.SUSPEND, EventKind.RESUME}
DELIVERY_KINDS = {EventKind.RUN, EventKind.EXTRA, EventKind.WICKET}


@dataclass(frozen=True)
class Extra:
    """Runs credited to the batting side that are not off the bat."""

    kind: ExtraKind
    amount: int

    def to_dict(self) -> dict:
        return {'kind': self.kind.value, 'amount': self.amount}

    @classmethod
    def from_dict(cls, data: dict) -> 'Extra':
        return cls(kind=ExtraKind(data['kind']), amount=int(data['amount']))


@dataclass(frozen=True)
class Wicket:
    """A dismissal recorded on a delivery."""

    kind: WicketKind
    player_out: str
    fielders: tuple = ()

    @property
    def credited_to_bowler(self) -> bool:
        return self.kind in BOWLER_WICKETS

    @property
    def falls(self) -> bool:
        """Whether this dismissal counts as a wicket fallen."""
        return self.kind not in NOT_OUT_DISMISSALS

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'player_out': self.player_out,
            'fielders': list(self.fielders),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Wicket':
        return cls(
            kind=WicketKind(data['kind']),
            player_out=data['player_out'],
            fielders=tuple(data.get('fielders') or ())
        )


@dataclass(frozen=True)
class BallEvent:
    """One entry in a match ledger."""

    match_id: str
    innings: int                       # 1-based innings number
    kind: EventKind
    over: int = 0                      # 1-based over number
    ball: int = 0                      # delivery within the over, 1-based
    striker: Optional[str] = None
    non_striker: Optional[str] = None
    bowler: Optional[str] = None
    runs_off_bat: int = 0
    extra: Optional[Extra] = None
    wicket: Optional[Wicket] = None
    boundary: Optional[bool] = None    # None: infer from 4s and 6s off the bat
    retracts_sequence: Optional[int] = None
    revised_overs: Optional[int] = None
    reason: Optional[str] = None
    sequence: Optional[int] = None     # assigned by the ledger on append
    idempotency_key: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_delivery(self) -> bool:
        return self.kind in DELIVERY_KINDS

    @property
    def legal(self) -> bool:
        """Counts as one of the six balls in the over."""
        if not self.is_delivery:
            return False
        return self.extra is None or self.extra.kind not in ILLEGAL_EXTRAS

    @property
    def extra_runs(self) -> int:
        return self.extra.amount if self.extra else 0

    @property
    def total_runs(self) -> int:
        return self.runs_off_bat + self.extra_runs

    @property
    def bowler_runs(self) -> int:
        """Runs charged to the bowler: off the bat plus wides and no-balls."""
        runs = self.runs_off_bat
        if self.extra and self.extra.kind in BOWLER_EXTRAS:
            runs += self.extra.amount
        return runs

    @property
    def is_four(self) -> bool:
        if self.boundary is None:
            return self.runs_off_bat == 4
        return self.boundary and self.runs_off_bat == 4

    @property
    def is_six(self) -> bool:
        if self.boundary is None:
            return self.runs_off_bat == 6
        return self.boundary and self.runs_off_bat == 6

    @property
    def runs_completed(self) -> int:
        """
        Runs the batters physically ran, which decides whether they crossed.

        Boundaries are not run. The one-run penalty on a wide or no-ball is
        not run either, but anything on top of it is.
        """
        if self.boundary or (self.boundary is None and self.runs_off_bat in (4, 6)):
            ran = 0
        else:
            ran = self.runs_off_bat
        if self.extra is not None:
            if self.extra.kind in (ExtraKind.BYE, ExtraKind.LEG_BYE):
                ran += self.extra.amount
            elif self.extra.kind in ILLEGAL_EXTRAS:
                ran += max(0, self.extra.amount - 1)
        return ran

    def validate(self) -> None:
        """
        Check the event is well formed.

        Raises:
            ValidationError: On any malformed field
        """
        if not self.match_id:
            raise ValidationError("match_id is required")
        if self.innings < 1:
            raise ValidationError(f"Innings must be 1-based, got {self.innings}")

        if self.kind == EventKind.RETRACTION:
            if self.retracts_sequence is None or self.retracts_sequence < 1:
                raise ValidationError("Retraction must reference a committed sequence")
            return

        if self.kind in CONTROL_KINDS:
            if self.revised_overs is not None and self.revised_overs < 1:
                raise ValidationError(f"Revised overs must be positive, got {self.revised_overs}")
            return

        if self.over < 1:
            raise ValidationError(f"Over number must be 1-based, got {self.over}")
        if not 1 <= self.ball <= config.MAX_DELIVERIES_PER_OVER:
            raise ValidationError(
                f"Ball in over out of range 1-{config.MAX_DELIVERIES_PER_OVER}: {self.ball}"
            )
        for role in ('striker', 'non_striker', 'bowler'):
            if not getattr(self, role):
                raise ValidationError(f"{role} is required on a delivery")
        if self.striker == self.non_striker:
            raise ValidationError("Striker and non-striker must be different players")
        if self.runs_off_bat < 0:
            raise ValidationError(f"Runs off the bat cannot be negative: {self.runs_off_bat}")
        if self.runs_off_bat > 7:
            raise ValidationError(f"Runs off the bat out of range: {self.runs_off_bat}")
        if self.boundary and self.runs_off_bat not in (4, 6):
            raise ValidationError("A boundary must be worth 4 or 6 runs")

        if self.extra is not None:
            if self.extra.amount < 0:
                raise ValidationError(f"Extra amount cannot be negative: {self.extra.amount}")
            if self.extra.kind in ILLEGAL_EXTRAS and self.extra.amount < 1:
                raise ValidationError(f"A {self.extra.kind.value} is worth at least one run")
            if self.extra.kind in (ExtraKind.WIDE, ExtraKind.BYE, ExtraKind.LEG_BYE) \
                    and self.runs_off_bat:
                raise ValidationError(
                    f"No runs off the bat on a {self.extra.kind.value}"
                )

        if self.kind == EventKind.RUN and (self.extra or self.wicket):
            raise ValidationError("A run event carries neither extras nor a wicket")
        if self.kind == EventKind.EXTRA and (self.extra is None or self.wicket):
            raise ValidationError("An extra event carries an extra and no wicket")
        if self.kind == EventKind.WICKET:
            if self.wicket is None:
                raise ValidationError("A wicket event must carry the dismissal")
            self._validate_wicket()

    def _validate_wicket(self) -> None:
        wicket = self.wicket
        # The incoming batter is the one timed out
        if wicket.kind != WicketKind.TIMED_OUT \
                and wicket.player_out not in (self.striker, self.non_striker):
            raise ValidationError(
                f"Dismissed player {wicket.player_out} is not at the crease"
            )
        if self.extra is not None:
            if self.extra.kind == ExtraKind.NO_BALL and wicket.kind not in NO_BALL_WICKETS:
                raise ValidationError(f"Cannot be {wicket.kind.value} off a no-ball")
            if self.extra.kind == ExtraKind.WIDE and wicket.kind not in WIDE_WICKETS:
                raise ValidationError(f"Cannot be {wicket.kind.value} off a wide")
        if wicket.kind in (WicketKind.CAUGHT, WicketKind.STUMPED) and len(wicket.fielders) != 1:
            raise ValidationError(f"A {wicket.kind.value} dismissal names exactly one fielder")
        if wicket.credited_to_bowler and wicket.player_out != self.striker:
            raise ValidationError(f"Only the striker can be {wicket.kind.value}")

    def with_sequence(self, sequence: int) -> 'BallEvent':
        """Copy of this event stamped with its ledger sequence."""
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'match_id': self.match_id,
            'innings': self.innings,
            'kind': self.kind.value,
            'over': self.over,
            'ball': self.ball,
            'striker': self.striker,
            'non_striker': self.non_striker,
            'bowler': self.bowler,
            'runs_off_bat': self.runs_off_bat,
            'extra': self.extra.to_dict() if self.extra else None,
            'wicket': self.wicket.to_dict() if self.wicket else None,
            'boundary': self.boundary,
            'legal': self.legal,
            'retracts_sequence': self.retracts_sequence,
            'revised_overs': self.revised_overs,
            'reason': self.reason,
            'sequence': self.sequence,
            'idempotency_key': self.idempotency_key,
            'timestamp': self.timestamp.isoformat()
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'BallEvent':
        """Create BallEvent from dictionary (JSON deserialization)."""
        extra = data.get('extra')
        wicket = data.get('wicket')
        timestamp = data.get('timestamp')
        return cls(
            match_id=data['match_id'],
            innings=int(data['innings']),
            kind=EventKind(data['kind']),
            over=int(data.get('over') or 0),
            ball=int(data.get('ball') or 0),
            striker=data.get('striker'),
            non_striker=data.get('non_striker'),
            bowler=data.get('bowler'),
            runs_off_bat=int(data.get('runs_off_bat') or 0),
            extra=Extra.from_dict(extra) if extra else None,
            wicket=Wicket.from_dict(wicket) if wicket else None,
            boundary=data.get('boundary'),
            retracts_sequence=data.get('retracts_sequence'),
            revised_overs=data.get('revised_overs'),
            reason=data.get('reason'),
            sequence=data.get('sequence'),
            idempotency_key=data.get('idempotency_key'),
            timestamp=(
                datetime.fromisoformat(timestamp) if timestamp
                else datetime.now(timezone.utc)
            )
        )

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> 'BallEvent':
        """Create BallEvent from JSON string."""
        return cls.from_dict(json.loads(json_str))


def infer_kind(extra: Optional[Extra], wicket: Optional[Wicket]) -> EventKind:
    """Pick the event kind for a delivery from what happened on it."""
    if wicket is not None:
        return EventKind.WICKET
    if extra is not None:
        return EventKind.EXTRA
    return EventKind.RUN


def make_idempotency_key(
    match_id: str,
    innings: int,
    over: int,
    ball: int,
    submission_id: str
) -> str:
    """
    Derive an idempotency key for a ball submission.

    A retried network call carries the same submission id and so maps to the
    same key; a fresh operator action gets a new submission id.
    """
    raw = f"{match_id}:{innings}:{over}:{ball}:{submission_id}"
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


def effective_events(events: List[BallEvent]) -> List[BallEvent]:
    """
    Deliveries that still count once retractions are taken into account.

    Retraction events and innings controls are dropped, as is every delivery
    a retraction names.
    """
    retracted = {
        e.retracts_sequence for e in events
        if e.kind == EventKind.RETRACTION
    }
    return [
        e for e in events
        if e.is_delivery and e.sequence not in retracted
    ]
