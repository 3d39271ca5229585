"""
Main orchestrator for live match scoring.

The LiveScoringEngine coordinates all components:
- Validates each submitted ball against the current innings state
- Appends it to the match ledger (the only source of truth)
- Folds it into innings state and player figures
- Publishes a delta to live subscribers and refreshes the scorecard cache
- Recomputes figures in the background after a retraction
- Recovers every match from its ledger on start

Matches are independent: each has its own lock, and no operation on one
match ever waits on another.
"""

import copy
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from itertools import takewhile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .. import config
from .ball_event import BallEvent, EventKind, effective_events
from .broadcast import BroadcastGateway, DeltaMessage, Subscription
from .errors import (
    ConflictError,
    ScoringError,
    ScoringTimeoutError,
    UnknownLeagueError,
    UnknownMatchError,
    ValidationError,
)
from .event_store import BallEventLedger, create_match_filepath
from .fantasy_points import (
    FantasyLeague,
    FantasyPointRecord,
    FantasyTeam,
    TeamPoints,
    league_points,
    rank_teams,
    team_points,
)
from .innings_state import (
    InningsState,
    InningsStatus,
    MatchSetup,
    load_match_setup,
    save_match_setup,
    setup_filepath,
)
from .innings_state_machine import InningsStateMachine
from .platform_client import PlatformClient
from .player_figures import (
    CAREER_SCOPE,
    MATCH_SCOPE,
    PlayerFigureAggregator,
    PlayerFigures,
    Scope,
    parse_scope,
    project_career,
    reconcile,
)
from .scorecard_cache import ScorecardCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchSnapshot:
    """Immutable read view of a match, swapped in whole after each update."""

    sequence: int
    innings: Dict[int, InningsState]
    figures: Dict[str, PlayerFigures]
    current_innings: int


class _MatchSession:
    """Live state of one registered match. Mutated only under `lock`."""

    def __init__(self, setup: MatchSetup, machine: InningsStateMachine, aggregator: PlayerFigureAggregator):
        self.setup = setup
        self.machine = machine
        self.aggregator = aggregator
        self.lock = threading.Lock()
        self.pending_rebuild: Optional[Future] = None
        self.pending_event: Optional[BallEvent] = None
        self.snapshot = _take_snapshot(machine, aggregator.figures)


def _take_snapshot(machine: InningsStateMachine, figures: Dict[str, PlayerFigures]) -> MatchSnapshot:
    return MatchSnapshot(
        sequence=machine.last_applied_sequence,
        innings={n: s.copy() for n, s in machine.innings.items()},
        figures={pid: copy.deepcopy(pf) for pid, pf in figures.items()},
        current_innings=machine.current_innings().innings
    )


class LiveScoringEngine:
    """Main orchestrator for live scoring."""

    def __init__(
        self,
        ledger_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        checkpoint_dir: Optional[Path] = None,
        platform_client: Optional[PlatformClient] = None,
        append_timeout: float = config.LEDGER_APPEND_TIMEOUT,
        recompute_timeout: float = config.RECOMPUTE_TIMEOUT,
        tie_break: str = config.LEADERBOARD_TIE_BREAK
    ):
        """
        Initialize live scoring engine.

        Args:
            ledger_dir: Directory of match ledgers (default: LEDGER_DIR)
            cache_dir: Directory for scorecard snapshots (default: SCORECARD_CACHE_DIR)
            checkpoint_dir: Directory for state checkpoints (default: CHECKPOINT_DIR)
            platform_client: Upstream client for match setup / league config
            append_timeout: Seconds a submission waits for the match lock
            recompute_timeout: Seconds a submission waits for a pending
                figure rebuild before giving up
            tie_break: Leaderboard tie-break policy
        """
        self.ledger = BallEventLedger(Path(ledger_dir or config.LEDGER_DIR), append_timeout=append_timeout)
        self.scorecard_cache = ScorecardCache(Path(cache_dir or config.SCORECARD_CACHE_DIR))
        self.checkpoint_dir = Path(checkpoint_dir or config.CHECKPOINT_DIR)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self.platform_client = platform_client
        self.gateway = BroadcastGateway()

        self.append_timeout = append_timeout
        self.recompute_timeout = recompute_timeout
        self.tie_break = tie_break

        self._matches: Dict[str, _MatchSession] = {}
        self._leagues: Dict[str, FantasyLeague] = {}
        self._registry_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='figures-rebuild')

    # ----- registration / recovery -----

    def register_match(self, setup: MatchSetup) -> InningsState:
        """
        Register a match for scoring, folding any events already in its ledger.

        Re-registering an identical setup is a no-op.

        Returns:
            The current innings state

        Raises:
            ConflictError: If the match is registered with a different setup
            ValidationError: If the match id is not usable as a ledger file name
        """
        with self._registry_lock:
            existing = self._matches.get(setup.match_id)
            if existing is not None:
                if existing.setup != setup:
                    raise ConflictError(
                        f"Match {setup.match_id} is already registered with a different setup",
                        last_good_sequence=existing.machine.last_applied_sequence
                    )
                return existing.snapshot.innings[existing.snapshot.current_innings]

            save_match_setup(self._setup_path(setup.match_id), setup)
            session = self._load_session(setup)
            self._matches[setup.match_id] = session

        snapshot = session.snapshot
        logger.info(
            f"Registered match {setup.match_id}: {setup.team_a} v {setup.team_b} "
            f"({setup.match_format}), ledger at seq {snapshot.sequence}"
        )
        if snapshot.sequence == 0:
            session.machine.save_checkpoint(self._checkpoint_path(setup.match_id))
        return snapshot.innings[snapshot.current_innings]

    def load_match(self, match_id: str, force_refresh: bool = False) -> InningsState:
        """Fetch a match's setup from the platform and register it."""
        if self.platform_client is None:
            raise UnknownMatchError(f"Match {match_id} is not registered and no platform client is configured")
        return self.register_match(self.platform_client.fetch_match_setup(match_id, force_refresh))

    def recover(self) -> List[str]:
        """
        Register every match that has a ledger on disk.

        Returns:
            Ids of the recovered matches
        """
        recovered = []
        for match_id in self.ledger.match_ids():
            if match_id in self._matches:
                continue
            try:
                setup = load_match_setup(self._setup_path(match_id))
            except FileNotFoundError:
                if self.platform_client is None:
                    logger.warning(f"No setup saved for ledger of match {match_id}, skipping recovery")
                    continue
                setup = self.platform_client.fetch_match_setup(match_id)
            self.register_match(setup)
            recovered.append(match_id)

        logger.info(f"Recovered {len(recovered)} matches from {self.ledger.base_dir}")
        return recovered

    def _load_session(self, setup: MatchSetup) -> _MatchSession:
        events = list(self.ledger.replay(setup.match_id))
        machine = self._restore_machine(setup, events)

        aggregator = PlayerFigureAggregator(MATCH_SCOPE)
        for event in effective_events(events):
            aggregator.fold(event)

        return _MatchSession(setup, machine, aggregator)

    def _restore_machine(self, setup: MatchSetup, events: List[BallEvent]) -> InningsStateMachine:
        """Start from the saved checkpoint when it matches, else fold from scratch."""
        checkpoint = self._checkpoint_path(setup.match_id)
        if checkpoint.exists() and events:
            try:
                machine = InningsStateMachine.load_checkpoint(checkpoint, events)
            except (ScoringError, KeyError, ValueError) as e:
                logger.warning(f"Ignoring checkpoint for match {setup.match_id}: {e}")
            else:
                if machine.setup == setup:
                    machine.apply_events(ev for ev in events if ev.sequence > machine.last_applied_sequence)
                    return machine
                logger.warning(f"Checkpoint for match {setup.match_id} has a different setup, refolding")

        return InningsStateMachine.from_events(setup, events)

    def _setup_path(self, match_id: str) -> Path:
        return setup_filepath(create_match_filepath(self.ledger.base_dir, match_id))

    def _checkpoint_path(self, match_id: str) -> Path:
        return create_match_filepath(self.checkpoint_dir, match_id).with_suffix('.json')

    def _session(self, match_id: str) -> _MatchSession:
        session = self._matches.get(match_id)
        if session is None:
            raise UnknownMatchError(f"Match {match_id} is not registered")
        return session

    def match_ids(self) -> List[str]:
        return sorted(self._matches)

    def get_match_setup(self, match_id: str) -> MatchSetup:
        return self._session(match_id).setup

    # ----- scoring -----

    def submit_ball(
        self,
        match_id: str,
        innings: int,
        event: BallEvent,
        idempotency_key: Optional[str] = None,
        expected_sequence: Optional[int] = None
    ) -> Tuple[int, InningsState]:
        """
        Validate, commit and fold one ledger event.

        Args:
            match_id: Match being scored
            innings: Innings the event belongs to
            event: Delivery, retraction or innings control event
            idempotency_key: Identifies the submission within the innings; a
                retry with the same key returns the original sequence without
                a second append. Required for deliveries, either here or on
                the event itself
            expected_sequence: Sequence the scorer believes comes next

        Returns:
            (sequence, InningsState after the event)

        Raises:
            ValidationError: Malformed event or illegal for the current state
            ConflictError: Another scorer took the expected sequence
            ScoringTimeoutError: Match lock or pending rebuild not available in time
        """
        session = self._session(match_id)
        event = replace(event, match_id=match_id, innings=innings, sequence=None)

        if not session.lock.acquire(timeout=self.append_timeout):
            raise ScoringTimeoutError(
                f"Timed out after {self.append_timeout}s waiting to score match {match_id}",
                last_good_sequence=session.snapshot.sequence
            )
        try:
            self._await_rebuild(session)

            key = idempotency_key or event.idempotency_key
            if key:
                existing = self.ledger.sequence_for_key(match_id, innings, key)
                if existing is not None:
                    logger.info(f"Duplicate submission for match {match_id}, already seq {existing}")
                    return existing, session.machine.state(innings).copy()

            try:
                if event.is_delivery and not key:
                    raise ValidationError(
                        "Deliveries must carry an idempotency key so a retried "
                        "submission is not scored twice"
                    )
                event.validate()
                session.machine.check(event)
            except ValidationError as e:
                if e.last_good_sequence is None:
                    e.last_good_sequence = session.machine.last_applied_sequence
                logger.warning(f"Rejected submission for match {match_id}: {e.message}")
                raise

            try:
                sequence = self.ledger.append(event, key, expected_sequence)
            except ConflictError as e:
                if e.existing_sequence is None:
                    logger.warning(f"Conflicting submission for match {match_id}: {e.message}")
                    raise
                return e.existing_sequence, session.machine.state(innings).copy()

            committed = self.ledger.get_event(match_id, sequence)
            state = session.machine.apply(committed)

            if committed.kind == EventKind.RETRACTION:
                session.pending_event = committed
                session.pending_rebuild = self._executor.submit(self._rebuild_figures, session, committed)
            else:
                changed = session.aggregator.fold(committed)
                self._publish(session, committed, changed)

            if self._should_checkpoint(committed, state):
                session.machine.save_checkpoint(self._checkpoint_path(match_id))

            return sequence, state.copy()
        finally:
            session.lock.release()

    def retract(
        self,
        match_id: str,
        innings: int,
        sequence: int,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
        expected_sequence: Optional[int] = None
    ) -> Tuple[int, InningsState]:
        """Append a retraction of an earlier delivery."""
        event = BallEvent(
            match_id=match_id,
            innings=innings,
            kind=EventKind.RETRACTION,
            retracts_sequence=sequence,
            reason=reason
        )
        return self.submit_ball(match_id, innings, event, idempotency_key, expected_sequence)

    def suspend(
        self,
        match_id: str,
        innings: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Tuple[int, InningsState]:
        """Suspend play in an innings (rain, bad light)."""
        event = BallEvent(match_id=match_id, innings=innings, kind=EventKind.SUSPEND, reason=reason)
        return self.submit_ball(match_id, innings, event, idempotency_key)

    def resume(
        self,
        match_id: str,
        innings: int,
        revised_overs: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Tuple[int, InningsState]:
        """Resume a suspended innings, optionally with fewer overs."""
        event = BallEvent(
            match_id=match_id,
            innings=innings,
            kind=EventKind.RESUME,
            revised_overs=revised_overs,
            reason=reason
        )
        return self.submit_ball(match_id, innings, event, idempotency_key)

    @staticmethod
    def _should_checkpoint(event: BallEvent, state: InningsState) -> bool:
        if not event.is_delivery:
            return True
        over_complete = event.legal and state.legal_balls % config.BALLS_PER_OVER == 0
        return over_complete or state.completion_reason is not None

    def _publish(self, session: _MatchSession, event: BallEvent, changed: Iterable[str]) -> None:
        """Swap in a fresh snapshot, then notify subscribers and the scorecard cache."""
        snapshot = _take_snapshot(session.machine, session.aggregator.figures)
        session.snapshot = snapshot

        state = snapshot.innings[event.innings]
        changed_figures = [
            (snapshot.figures.get(pid) or PlayerFigures(player_id=pid)).to_dict()
            for pid in sorted(changed)
        ]
        self.gateway.publish(
            session.setup.match_id,
            DeltaMessage(
                sequence=event.sequence,
                event=event.to_dict(),
                innings_state=state.to_dict(),
                changed_figures=changed_figures
            )
        )
        self.scorecard_cache.update(
            match_id=session.setup.match_id,
            innings=snapshot.innings.values(),
            figures=snapshot.figures,
            last_sequence=snapshot.sequence,
            timestamp=datetime.now()
        )

    # ----- figure recompute -----

    def _rebuild_figures(self, session: _MatchSession, event: BallEvent) -> None:
        """
        Recompute match figures from the ledger after a retraction.

        Runs on the executor. Submissions to the match wait for it, so the
        ledger cannot move past `event` while it runs.
        """
        match_id = session.setup.match_id
        events = list(takewhile(
            lambda e: e.sequence <= event.sequence,
            self.ledger.replay(match_id, timeout=self.recompute_timeout)
        ))

        aggregator = PlayerFigureAggregator(MATCH_SCOPE)
        for effective in effective_events(events):
            aggregator.fold(effective)

        before = session.aggregator.figures
        after = aggregator.figures
        changed = {
            pid for pid in set(before) | set(after)
            if pid not in before or pid not in after
            or before[pid].to_dict() != after[pid].to_dict()
        }

        session.aggregator = aggregator
        self._publish(session, event, changed)
        logger.info(
            f"Rebuilt figures for match {match_id} after retraction seq {event.sequence}: "
            f"{len(changed)} players changed"
        )

    def _await_rebuild(self, session: _MatchSession) -> None:
        """Block until a pending rebuild finishes; called with the match lock held."""
        future = session.pending_rebuild
        if future is None:
            return
        try:
            future.result(timeout=self.recompute_timeout)
        except Exception as e:
            if not future.done():
                raise ScoringTimeoutError(
                    f"Figures for match {session.setup.match_id} still rebuilding after "
                    f"{self.recompute_timeout}s",
                    last_good_sequence=session.machine.last_applied_sequence
                ) from e
            # Failed rather than slow; the pending marker stays until a retry succeeds
            logger.error(
                f"Background rebuild for match {session.setup.match_id} failed: {e}, retrying inline",
                exc_info=True
            )
            self._rebuild_figures(session, session.pending_event)
        session.pending_rebuild = None
        session.pending_event = None

    def wait_for_rebuild(self, match_id: str) -> None:
        """Wait for any pending figure recompute on the match."""
        session = self._session(match_id)
        with session.lock:
            self._await_rebuild(session)

    def rebuild(self, match_id: str) -> InningsState:
        """
        Discard all derived state for a match and refold it from the ledger.

        Returns:
            The current innings state after the rebuild

        Raises:
            ReconciliationError: If the rebuilt figures do not add up
        """
        session = self._session(match_id)
        if not session.lock.acquire(timeout=self.recompute_timeout):
            raise ScoringTimeoutError(
                f"Timed out waiting to rebuild match {match_id}",
                last_good_sequence=session.snapshot.sequence
            )
        try:
            self._await_rebuild(session)
            events = list(self.ledger.replay(match_id))
            session.machine = InningsStateMachine.from_events(session.setup, events)

            aggregator = PlayerFigureAggregator(MATCH_SCOPE)
            for event in effective_events(events):
                aggregator.fold(event)
            session.aggregator = aggregator

            self._reconcile_innings(session.machine.innings, events)
            session.snapshot = _take_snapshot(session.machine, aggregator.figures)
            session.machine.save_checkpoint(self._checkpoint_path(match_id))
        finally:
            session.lock.release()

        snapshot = session.snapshot
        logger.info(f"Rebuilt match {match_id} from {snapshot.sequence} ledger events")
        return snapshot.innings[snapshot.current_innings]

    # ----- reads -----

    def get_innings_state(self, match_id: str, innings: Optional[int] = None) -> InningsState:
        """
        Latest innings state (the current innings when none is given).

        Raises:
            UnknownMatchError: Match not registered
            ValidationError: Innings out of range
        """
        snapshot = self._session(match_id).snapshot
        number = snapshot.current_innings if innings is None else innings
        if number not in snapshot.innings:
            raise ValidationError(
                f"Innings {number} out of range for match {match_id}",
                last_good_sequence=snapshot.sequence
            )
        return snapshot.innings[number]

    def get_all_innings(self, match_id: str) -> List[InningsState]:
        snapshot = self._session(match_id).snapshot
        return [snapshot.innings[n] for n in sorted(snapshot.innings)]

    def get_player_figures(
        self,
        match_id: str,
        scope: Scope = MATCH_SCOPE,
        player_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, PlayerFigures]:
        """
        Player figures for a match or one of its innings.

        Args:
            match_id: Match to read
            scope: 'match', 'career', or an innings number
            player_ids: Restrict to these players (None = everyone)
        """
        scope = parse_scope(scope)
        if scope == CAREER_SCOPE:
            return self.get_career_figures(player_ids)

        snapshot = self._session(match_id).snapshot
        if scope == MATCH_SCOPE:
            figures = snapshot.figures
        else:
            if scope not in snapshot.innings:
                raise ValidationError(
                    f"Innings {scope} out of range for match {match_id}",
                    last_good_sequence=snapshot.sequence
                )
            figures = PlayerFigureAggregator.project(self._events_upto(match_id, snapshot.sequence), scope)

        if player_ids is None:
            return dict(figures)
        wanted = set(player_ids)
        return {pid: pf for pid, pf in figures.items() if pid in wanted}

    def get_career_figures(
        self,
        player_ids: Optional[Iterable[str]] = None,
        match_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, PlayerFigures]:
        """Figures aggregated over every ledger (or the listed matches)."""
        ids = list(match_ids) if match_ids is not None else self.ledger.match_ids()
        return project_career((list(self.ledger.replay(mid)) for mid in ids), player_ids)

    def replay(
        self,
        match_id: str,
        innings: Optional[int] = None,
        from_sequence: int = 0
    ) -> List[BallEvent]:
        """Committed events of a registered match, in sequence order."""
        self._session(match_id)
        return list(self.ledger.replay(match_id, innings=innings, from_sequence=from_sequence))

    def check_consistency(self, match_id: str) -> List[dict]:
        """
        Reconcile every started innings against figures rebuilt from the ledger.

        Returns:
            One summary per started innings

        Raises:
            ReconciliationError: If an innings does not add up
        """
        session = self._session(match_id)
        snapshot = session.snapshot
        events = self._events_upto(match_id, snapshot.sequence)
        return self._reconcile_innings(snapshot.innings, events)

    @staticmethod
    def _reconcile_innings(innings: Dict[int, InningsState], events: List[BallEvent]) -> List[dict]:
        summaries = []
        for number in sorted(innings):
            state = innings[number]
            if state.status == InningsStatus.NOT_STARTED:
                continue
            reconcile(state, PlayerFigureAggregator.project(events, number))
            summaries.append({
                'innings': number,
                'total_runs': state.total_runs,
                'extras': state.extras_total,
                'reconciled': True,
            })
        return summaries

    def _events_upto(self, match_id: str, sequence: int) -> List[BallEvent]:
        return list(takewhile(lambda e: e.sequence <= sequence, self.ledger.replay(match_id)))

    # ----- subscriptions -----

    def subscribe(self, match_id: str) -> Subscription:
        self._session(match_id)
        return self.gateway.subscribe(match_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.gateway.unsubscribe(subscription)

    # ----- fantasy -----

    def register_league(self, league: FantasyLeague) -> FantasyLeague:
        """
        Raises:
            ConflictError: If the league id is already registered
        """
        with self._registry_lock:
            if league.league_id in self._leagues:
                raise ConflictError(f"League {league.league_id} is already registered")
            self._leagues[league.league_id] = league
        logger.info(f"Registered league {league.league_id} for match {league.match_id}")
        return league

    def load_league(self, league_id: str, force_refresh: bool = False) -> FantasyLeague:
        """Fetch a league's configuration from the platform and register it."""
        if self.platform_client is None:
            raise UnknownLeagueError(f"League {league_id} is not registered and no platform client is configured")
        return self.register_league(self.platform_client.fetch_league(league_id, force_refresh))

    def get_league(self, league_id: str) -> FantasyLeague:
        league = self._leagues.get(league_id)
        if league is None:
            raise UnknownLeagueError(f"League {league_id} is not registered")
        return league

    def add_team(self, league_id: str, team: FantasyTeam) -> FantasyTeam:
        league = self.get_league(league_id)
        with self._registry_lock:
            league.add_team(team)
        return team

    def _league_figures(self, league: FantasyLeague, match_id: Optional[str]) -> Dict[str, PlayerFigures]:
        if match_id is not None and match_id != league.match_id:
            raise ValidationError(f"League {league.league_id} follows match {league.match_id}, not {match_id}")
        session = self._matches.get(league.match_id)
        # A league whose match has not been registered yet scores zero
        return session.snapshot.figures if session is not None else {}

    def get_fantasy_points(
        self,
        league_id: str,
        match_id: Optional[str] = None
    ) -> Dict[str, FantasyPointRecord]:
        """Base (1x) points for every player with figures in the league's match."""
        league = self.get_league(league_id)
        return league_points(league, self._league_figures(league, match_id))

    def get_team_points(self, league_id: str, team_id: str) -> TeamPoints:
        league = self.get_league(league_id)
        team = league.teams.get(team_id)
        if team is None:
            raise UnknownLeagueError(f"Team {team_id} is not entered in league {league_id}")
        return team_points(team, league, self._league_figures(league, None))

    def get_leaderboard(self, league_id: str) -> List[dict]:
        league = self.get_league(league_id)
        figures = self._league_figures(league, None)
        standings = [team_points(team, league, figures) for team in league.teams.values()]
        return rank_teams(standings, self.tie_break)

    # ----- lifecycle -----

    def close(self) -> None:
        """Wait for background rebuilds and release resources."""
        self._executor.shutdown(wait=True)
        if self.platform_client is not None:
            self.platform_client.close()
        logger.info("Scoring engine closed")
