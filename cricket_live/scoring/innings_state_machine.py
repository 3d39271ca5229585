"""
Fold ledger events into innings state.

The InningsStateMachine is responsible for:
- Applying events strictly in sequence order (no silent reordering)
- Driving each innings through NOT_STARTED -> IN_PROGRESS -> COMPLETED,
  with SUSPENDED reachable from IN_PROGRESS and back
- Computing strike rotation from runs and over completion
- Handling retractions by rewinding to a checkpoint and replaying
- Checkpointing state for crash recovery
"""

import copy
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .. import config
from .ball_event import BallEvent, EventKind
from .errors import OutOfOrderError, ValidationError
from .innings_state import (
    CompletionReason,
    InningsState,
    InningsStatus,
    MatchSetup,
    create_initial_innings_state,
)

logger = logging.getLogger(__name__)

Snapshot = Dict[int, InningsState]


class InningsStateMachine:
    """Maintains every innings of one match as a fold of its ledger."""

    def __init__(self, setup: MatchSetup):
        """
        Initialize state machine for a match.

        Args:
            setup: Match reference data (teams, format)
        """
        self.setup = setup
        self.innings: Snapshot = {
            n: create_initial_innings_state(setup, n)
            for n in range(1, setup.total_innings + 1)
        }
        self.last_applied_sequence = 0
        self.event_history: List[BallEvent] = []
        self.retracted: Set[int] = set()

        # (sequence, snapshot) pairs, oldest first; sequence 0 is always present
        self._checkpoints: List[Tuple[int, Snapshot]] = [(0, self._snapshot())]

    @classmethod
    def from_events(cls, setup: MatchSetup, events: Iterable[BallEvent]) -> 'InningsStateMachine':
        """Build a state machine by folding events from scratch."""
        machine = cls(setup)
        machine.apply_events(events)
        return machine

    # ----- public API -----

    def state(self, innings: int) -> InningsState:
        if innings not in self.innings:
            raise ValidationError(
                f"Innings {innings} out of range for match {self.setup.match_id}",
                last_good_sequence=self.last_applied_sequence
            )
        return self.innings[innings]

    def current_innings(self) -> InningsState:
        """The innings in progress, or the latest one that has started."""
        current = self.innings[1]
        for number in sorted(self.innings):
            state = self.innings[number]
            if state.status != InningsStatus.NOT_STARTED:
                current = state
        return current

    def apply(self, event: BallEvent) -> InningsState:
        """
        Apply the next committed event.

        Args:
            event: Committed event carrying its ledger sequence

        Returns:
            Updated InningsState of the event's innings

        Raises:
            OutOfOrderError: If event.sequence is not last applied + 1
            ValidationError: If the event cannot legally follow the current state
        """
        if event.sequence is None:
            raise ValidationError(
                "Only committed events (with a sequence) can be applied",
                last_good_sequence=self.last_applied_sequence
            )
        if event.sequence != self.last_applied_sequence + 1:
            raise OutOfOrderError(
                expected=self.last_applied_sequence + 1,
                received=event.sequence
            )
        if event.match_id != self.setup.match_id:
            raise ValidationError(
                f"Event for match {event.match_id} applied to match {self.setup.match_id}",
                last_good_sequence=self.last_applied_sequence
            )

        state = self.state(event.innings)

        try:
            if event.kind == EventKind.RETRACTION:
                self._retract(event)
                state = self.innings[event.innings]
            else:
                # Fold into a copy so a rejected event leaves no trace
                working = state.copy()
                self._fold(working, event)
                self.innings[event.innings] = working
                state = working
        except ValidationError as e:
            if e.last_good_sequence is None:
                e.last_good_sequence = self.last_applied_sequence
            raise

        self.last_applied_sequence = event.sequence
        state.last_applied_sequence = event.sequence
        self.event_history.append(event)

        if self._at_over_boundary(state, event):
            self._checkpoints.append((event.sequence, self._snapshot()))

        logger.debug(
            f"Applied seq {event.sequence} ({event.kind.value}) -> innings "
            f"{state.innings}: {state.total_runs}/{state.wickets} in {state.overs}"
        )
        return state

    def check(self, event: BallEvent) -> InningsState:
        """
        Dry-run an uncommitted event against the current state.

        Returns:
            The InningsState the event would produce; the machine is unchanged

        Raises:
            ValidationError: If the event cannot legally follow the current state
        """
        trial_event = event.with_sequence(self.last_applied_sequence + 1)
        if event.kind == EventKind.RETRACTION:
            trial = copy.deepcopy(self)
            return trial.apply(trial_event)

        working = self.state(event.innings).copy()
        try:
            self._fold(working, trial_event)
        except ValidationError as e:
            if e.last_good_sequence is None:
                e.last_good_sequence = self.last_applied_sequence
            raise
        return working

    def apply_events(self, events: Iterable[BallEvent]) -> None:
        """
        Apply multiple events in ledger order.

        Args:
            events: Committed events, already sorted by sequence
        """
        count = 0
        for event in events:
            self.apply(event)
            count += 1

        if count:
            current = self.current_innings()
            logger.info(
                f"Applied {count} events to match {self.setup.match_id} | "
                f"Innings {current.innings}: {current.total_runs}/{current.wickets} "
                f"({current.overs} ov) | last seq {self.last_applied_sequence}"
            )

    # ----- folding -----

    def _fold(self, state: InningsState, event: BallEvent) -> None:
        if event.kind == EventKind.SUSPEND:
            self._suspend(state, event)
        elif event.kind == EventKind.RESUME:
            self._resume(state, event)
        else:
            self._apply_delivery(state, event)
        try:
            state.validate()
        except ValueError as e:
            raise ValidationError(str(e))

    def _suspend(self, state: InningsState, event: BallEvent) -> None:
        if state.status != InningsStatus.IN_PROGRESS:
            raise ValidationError(
                f"Innings {state.innings} is {state.status.value} and cannot be suspended"
            )
        state.status = InningsStatus.SUSPENDED
        logger.info(
            f"Match {self.setup.match_id} innings {state.innings} suspended"
            f"{': ' + event.reason if event.reason else ''}"
        )

    def _resume(self, state: InningsState, event: BallEvent) -> None:
        if state.status != InningsStatus.SUSPENDED:
            raise ValidationError(
                f"Innings {state.innings} is {state.status.value} and cannot be resumed"
            )
        state.status = InningsStatus.IN_PROGRESS
        if event.revised_overs is not None:
            if state.max_overs is None:
                raise ValidationError("Overs cannot be revised in an unlimited-overs innings")
            state.max_overs = event.revised_overs
            logger.info(
                f"Match {self.setup.match_id} innings {state.innings} "
                f"reduced to {event.revised_overs} overs"
            )
        self._check_completion(state)

    def _start_innings(self, state: InningsState) -> None:
        previous = self.innings.get(state.innings - 1)
        if previous is not None and previous.status != InningsStatus.COMPLETED:
            raise ValidationError(
                f"Innings {state.innings} cannot start before innings "
                f"{previous.innings} is completed"
            )
        state.status = InningsStatus.IN_PROGRESS
        state.target = self._target_for(state.innings)
        logger.info(
            f"Match {self.setup.match_id} innings {state.innings} started: "
            f"{state.batting_team} batting"
            f"{f', target {state.target}' if state.target else ''}"
        )

    def _target_for(self, innings: int) -> Optional[int]:
        """Runs needed to win for the side batting last, if it is batting now."""
        if innings != self.setup.total_innings:
            return None
        batting_last = self.setup.batting_team(innings)
        ahead = sum(
            s.total_runs for n, s in self.innings.items()
            if n < innings and s.batting_team != batting_last
        )
        behind = sum(
            s.total_runs for n, s in self.innings.items()
            if n < innings and s.batting_team == batting_last
        )
        return ahead - behind + 1

    def _apply_delivery(self, state: InningsState, event: BallEvent) -> None:
        if state.status == InningsStatus.NOT_STARTED:
            self._start_innings(state)
        elif state.status == InningsStatus.SUSPENDED:
            raise ValidationError(f"Innings {state.innings} is suspended; resume it first")
        elif state.status == InningsStatus.COMPLETED:
            raise ValidationError(f"Innings {state.innings} is already completed")

        for player in (event.striker, event.non_striker):
            if player in state.dismissed:
                raise ValidationError(f"Player {player} is already out in innings {state.innings}")

        if event.over != state.current_over:
            logger.warning(
                f"Match {self.setup.match_id}: ball recorded in over {event.over} "
                f"while over {state.current_over} is in progress"
            )
        for expected, actual, role in (
            (state.striker, event.striker, 'striker'),
            (state.non_striker, event.non_striker, 'non-striker'),
        ):
            if expected is not None and expected != actual:
                logger.warning(
                    f"Match {self.setup.match_id}: expected {expected} as {role}, "
                    f"delivery recorded {actual}"
                )

        if state.power_play:
            self._add_power_play(state, event)

        partnership = self._open_partnership(state, event)
        partnership['runs'] += event.total_runs
        if event.legal:
            partnership['balls'] += 1
        state.partnership_runs = partnership['runs']
        state.partnership_balls = partnership['balls']

        state.total_runs += event.total_runs
        if event.extra is not None:
            state.extras[event.extra.kind.value] += event.extra.amount
        if event.legal:
            state.legal_balls += 1
        if event.is_four:
            state.fours += 1
        if event.is_six:
            state.sixes += 1

        # The batters on this delivery, then swap if they crossed an odd number of times
        state.striker = event.striker
        state.non_striker = event.non_striker
        state.bowler = event.bowler
        if event.runs_completed % 2 == 1:
            state.striker, state.non_striker = state.non_striker, state.striker

        if event.wicket is not None:
            self._record_dismissal(state, event)

        self._check_completion(state)

        over_complete = event.legal and state.legal_balls % config.BALLS_PER_OVER == 0
        if over_complete and state.status != InningsStatus.COMPLETED:
            # Ends change at the end of the over; a vacated crease slot moves with them
            state.striker, state.non_striker = state.non_striker, state.striker
            state.previous_over_bowler = event.bowler
            state.bowler = None

    @staticmethod
    def _add_power_play(state: InningsState, event: BallEvent) -> None:
        totals = state.power_play_totals
        totals['runs'] += event.total_runs
        if event.legal:
            totals['legal_balls'] += 1
        if event.is_four:
            totals['fours'] += 1
        if event.is_six:
            totals['sixes'] += 1
        if event.wicket is not None and event.wicket.falls:
            totals['wickets'] += 1

    @staticmethod
    def _open_partnership(state: InningsState, event: BallEvent) -> dict:
        """The partnership of the batters on this delivery, starting one if the pair changed."""
        current = state.partnerships[-1] if state.partnerships else None
        if current is not None and current['unbroken']:
            if {current['player_1'], current['player_2']} == {event.striker, event.non_striker}:
                return current
            # New pair without a wicket falling, e.g. after a batter retired hurt
            current['unbroken'] = False
            current['end_overs'] = state.overs

        partnership = {
            'wicket': state.wickets + 1,
            'player_1': event.striker,
            'player_2': event.non_striker,
            'runs': 0,
            'balls': 0,
            'start_overs': state.overs,
            'end_overs': None,
            'unbroken': True,
        }
        state.partnerships.append(partnership)
        return partnership

    def _record_dismissal(self, state: InningsState, event: BallEvent) -> None:
        wicket = event.wicket
        # The new batter comes in at the end the dismissed batter left
        if wicket.player_out == state.striker:
            state.striker = None
        elif wicket.player_out == state.non_striker:
            state.non_striker = None

        if not wicket.falls:
            return

        state.wickets += 1
        state.dismissed.append(wicket.player_out)
        state.fall_of_wickets.append({
            'wicket': state.wickets,
            'runs': state.total_runs,
            'overs': state.overs,
            'player_out': wicket.player_out,
            'kind': wicket.kind.value,
            'sequence': event.sequence,
        })
        broken = state.partnerships[-1]
        broken['unbroken'] = False
        broken['end_overs'] = state.overs
        state.partnership_runs = 0
        state.partnership_balls = 0

    def _check_completion(self, state: InningsState) -> None:
        reason = None
        if state.wickets >= state.all_out_wickets:
            reason = CompletionReason.ALL_OUT
        elif state.target is not None and state.total_runs >= state.target:
            reason = CompletionReason.TARGET_ACHIEVED
        elif state.balls_remaining == 0:
            reason = CompletionReason.OVERS_EXHAUSTED

        if reason is not None:
            state.status = InningsStatus.COMPLETED
            state.completion_reason = reason
            logger.info(
                f"Match {self.setup.match_id} innings {state.innings} completed "
                f"({reason.value}): {state.total_runs}/{state.wickets} in {state.overs}"
            )

    @staticmethod
    def _at_over_boundary(state: InningsState, event: BallEvent) -> bool:
        return (
            event.is_delivery
            and event.legal
            and state.legal_balls > 0
            and state.legal_balls % config.BALLS_PER_OVER == 0
        )

    # ----- retraction -----

    def _retract(self, event: BallEvent) -> None:
        """
        Rewind to the last checkpoint before the retracted ball and replay
        everything after it, leaving the retracted ball out.
        """
        target_seq = event.retracts_sequence
        target = next((e for e in self.event_history if e.sequence == target_seq), None)
        if target is None or not target.is_delivery:
            raise ValidationError(f"Sequence {target_seq} is not a delivery in this match")
        if target.innings != event.innings:
            raise ValidationError(
                f"Sequence {target_seq} belongs to innings {target.innings}, not {event.innings}"
            )
        if target_seq in self.retracted:
            raise ValidationError(f"Sequence {target_seq} was already retracted")

        checkpoint_seq, snapshot = next(
            (cp for cp in reversed(self._checkpoints) if cp[0] < target_seq)
        )

        retracted = self.retracted | {target_seq}
        rebuilt = {n: s.copy() for n, s in snapshot.items()}
        checkpoints = [cp for cp in self._checkpoints if cp[0] <= checkpoint_seq]

        # Fold into the rebuilt copies first so a failed replay leaves state untouched
        live = self.innings
        self.innings = rebuilt
        try:
            for replayed in self.event_history:
                if replayed.sequence <= checkpoint_seq:
                    continue
                if replayed.kind != EventKind.RETRACTION and replayed.sequence not in retracted:
                    self._fold(rebuilt[replayed.innings], replayed)
                rebuilt[replayed.innings].last_applied_sequence = replayed.sequence
                if self._at_over_boundary(rebuilt[replayed.innings], replayed) \
                        and replayed.sequence not in retracted:
                    checkpoints.append((replayed.sequence, self._snapshot()))
        except ValidationError as e:
            self.innings = live
            raise ValidationError(
                f"Retracting sequence {target_seq} leaves later events invalid: {e.message}"
            )

        self.retracted = retracted
        self._checkpoints = checkpoints
        logger.info(
            f"Match {self.setup.match_id}: retracted seq {target_seq} "
            f"(rewound to checkpoint at seq {checkpoint_seq})"
        )

    def _snapshot(self) -> Snapshot:
        return {n: s.copy() for n, s in self.innings.items()}

    # ----- checkpoints -----

    def save_checkpoint(self, filepath: Path) -> None:
        """
        Save current state to JSON for crash recovery.

        Args:
            filepath: Path for checkpoint file
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        checkpoint_data = {
            'match': self.setup.to_dict(),
            'innings': {str(n): s.to_dict() for n, s in self.innings.items()},
            'retracted': sorted(self.retracted),
            'last_applied_sequence': self.last_applied_sequence,
            'checkpoint_time': datetime.now().isoformat()
        }

        # Atomic write: write to temp file, then rename
        temp_path = filepath.with_suffix('.tmp')
        with open(temp_path, 'w', encoding='utf-8') as f:
            json.dump(checkpoint_data, f, indent=2)

        temp_path.replace(filepath)

        logger.info(
            f"Saved checkpoint for match {self.setup.match_id} at seq "
            f"{self.last_applied_sequence} -> {filepath}"
        )

    @classmethod
    def load_checkpoint(
        cls,
        filepath: Path,
        history: Iterable[BallEvent]
    ) -> 'InningsStateMachine':
        """
        Load state from a JSON checkpoint.

        Args:
            filepath: Path to checkpoint file
            history: Ledger events up to the checkpoint sequence; kept (not
                folded) so later retractions can rewind past the checkpoint

        Returns:
            InningsStateMachine positioned at the checkpoint sequence

        Raises:
            FileNotFoundError: If checkpoint doesn't exist
            OutOfOrderError: If history does not cover the checkpoint exactly
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Checkpoint not found: {filepath}")

        with open(filepath, 'r', encoding='utf-8') as f:
            checkpoint_data = json.load(f)

        machine = cls(MatchSetup.from_dict(checkpoint_data['match']))
        last_seq = checkpoint_data['last_applied_sequence']

        machine.event_history = [e for e in history if e.sequence <= last_seq]
        if len(machine.event_history) != last_seq:
            raise OutOfOrderError(expected=last_seq, received=len(machine.event_history))

        machine.innings = {
            int(n): InningsState.from_dict(data)
            for n, data in checkpoint_data['innings'].items()
        }
        machine.retracted = set(checkpoint_data.get('retracted', []))
        machine.last_applied_sequence = last_seq
        if last_seq:
            machine._checkpoints.append((last_seq, machine._snapshot()))

        logger.info(
            f"Loaded checkpoint for match {machine.setup.match_id} at seq {last_seq} <- {filepath}"
        )
        return machine
