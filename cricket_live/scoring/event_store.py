"""
Append-only ball-by-ball ledger, one JSONL file per match.

Each line is a complete JSON object for one committed BallEvent. This format
enables:
- Durable streaming writes without loading the entire file
- Human-readable event log
- Replay from any sequence number
- Crash recovery (the ledger is the only source of truth)

Appends are compare-and-append: a writer holds the match lock, the event is
stamped with the next sequence number, fsynced, and only then published to
subscribers. Matches are independent; each has its own lock.
"""

import csv
import json
import logging
import os
import re
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .. import config
from .ball_event import BallEvent, EventKind
from .errors import (
    ConflictError,
    OutOfOrderError,
    ScoringTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[BallEvent], None]


class _MatchLog:
    """In-memory index over one match ledger file."""

    def __init__(self, filepath: Path):
        self.filepath = filepath
        self.lock = threading.Lock()
        self.events: List[BallEvent] = []
        self.keys: Dict[Tuple[int, str], int] = {}  # (innings, key) -> sequence
        self.retracted: Dict[int, int] = {}  # retracted sequence -> retraction sequence

    @property
    def last_sequence(self) -> int:
        return self.events[-1].sequence if self.events else 0

    def index(self, event: BallEvent) -> None:
        self.events.append(event)
        if event.idempotency_key:
            self.keys[(event.innings, event.idempotency_key)] = event.sequence
        if event.kind == EventKind.RETRACTION:
            self.retracted[event.retracts_sequence] = event.sequence


class BallEventLedger:
    """Append-only event log for every match being scored."""

    def __init__(
        self,
        base_dir: Path,
        append_timeout: float = config.LEDGER_APPEND_TIMEOUT,
        replay_timeout: float = config.REPLAY_TIMEOUT
    ):
        """
        Initialize ledger.

        Args:
            base_dir: Directory holding one JSONL file per match
            append_timeout: Seconds to wait for the match write slot
            replay_timeout: Seconds a single replay may run
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.append_timeout = append_timeout
        self.replay_timeout = replay_timeout

        self._logs: Dict[str, _MatchLog] = {}
        self._registry_lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    # ----- subscriptions -----

    def subscribe(self, callback: Subscriber) -> None:
        """Register a callback invoked with each event after it is durable."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _publish(self, event: BallEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                # Already committed; subscriber failures stay out of the append result
                logger.error(
                    f"Subscriber failed for match {event.match_id} "
                    f"sequence {event.sequence}: {e}",
                    exc_info=True
                )

    # ----- writes -----

    def append(
        self,
        event: BallEvent,
        idempotency_key: Optional[str] = None,
        expected_sequence: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> int:
        """
        Durably append an event and return its sequence number.

        Args:
            event: Validated event (its own sequence field is ignored)
            idempotency_key: Caller-supplied key identifying the submission
            expected_sequence: Sequence the caller believes comes next
            timeout: Seconds to wait for the write slot (default: append_timeout)

        Returns:
            Sequence number assigned to the committed event

        Raises:
            ConflictError: Key already committed, or another writer took the
                expected sequence first
            ValidationError: Malformed event or bad retraction target
            ScoringTimeoutError: Write slot not acquired in time
        """
        event.validate()
        log = self._get_log(event.match_id)
        wait = self.append_timeout if timeout is None else timeout

        if not log.lock.acquire(timeout=wait):
            raise ScoringTimeoutError(
                f"Timed out after {wait}s waiting to append to match {event.match_id}",
                last_good_sequence=log.last_sequence
            )
        try:
            last = log.last_sequence

            key = idempotency_key or event.idempotency_key
            if key and (event.innings, key) in log.keys:
                existing = log.keys[(event.innings, key)]
                raise ConflictError(
                    f"Submission already committed as sequence {existing}",
                    last_good_sequence=last,
                    existing_sequence=existing
                )

            next_sequence = last + 1
            if expected_sequence is not None and expected_sequence != next_sequence:
                raise ConflictError(
                    f"Sequence {expected_sequence} is no longer available for match "
                    f"{event.match_id}; next is {next_sequence}",
                    last_good_sequence=last
                )

            if event.kind == EventKind.RETRACTION:
                self._check_retraction_target(log, event)

            committed = replace(event, sequence=next_sequence, idempotency_key=key)

            _append_line(log.filepath, committed.to_json() + '\n')
            log.index(committed)
            logger.debug(
                f"Appended match {committed.match_id} seq {committed.sequence}: "
                f"{committed.kind.value} {committed.over}.{committed.ball}"
            )

            self._publish(committed)
            return next_sequence
        finally:
            log.lock.release()

    def _check_retraction_target(self, log: _MatchLog, event: BallEvent) -> None:
        target_seq = event.retracts_sequence
        if target_seq > log.last_sequence:
            raise ValidationError(
                f"Cannot retract sequence {target_seq}: not committed yet",
                last_good_sequence=log.last_sequence
            )
        target = log.events[target_seq - 1]
        if not target.is_delivery:
            raise ValidationError(
                f"Sequence {target_seq} is a {target.kind.value} event and cannot be retracted",
                last_good_sequence=log.last_sequence
            )
        if target.innings != event.innings:
            raise ValidationError(
                f"Sequence {target_seq} belongs to innings {target.innings}, "
                f"not {event.innings}",
                last_good_sequence=log.last_sequence
            )
        if target_seq in log.retracted:
            raise ValidationError(
                f"Sequence {target_seq} was already retracted by "
                f"sequence {log.retracted[target_seq]}",
                last_good_sequence=log.last_sequence
            )

    # ----- reads -----

    def replay(
        self,
        match_id: str,
        innings: Optional[int] = None,
        from_sequence: int = 0,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None
    ) -> Iterator[BallEvent]:
        """
        Lazily yield committed events in sequence order.

        Args:
            match_id: Match to replay
            innings: Restrict to one innings (None = whole match)
            from_sequence: Yield events with sequence >= this value
            timeout: Seconds the replay may run (default: replay_timeout)
            cancel: Set by the caller to stop the replay early

        The iterator works over a snapshot taken at call time, so it is
        finite and never observes a half-written event. Call again to restart.

        Raises:
            ScoringTimeoutError: Replay ran past its deadline
        """
        log = self._get_log(match_id)
        snapshot = list(log.events)
        deadline = time.monotonic() + (self.replay_timeout if timeout is None else timeout)

        def _iterate() -> Iterator[BallEvent]:
            start = max(from_sequence, 1) - 1
            for event in snapshot[start:]:
                if cancel is not None and cancel.is_set():
                    logger.info(f"Replay of match {match_id} cancelled at seq {event.sequence}")
                    return
                if time.monotonic() > deadline:
                    raise ScoringTimeoutError(
                        f"Replay of match {match_id} timed out at sequence {event.sequence}",
                        last_good_sequence=snapshot[-1].sequence
                    )
                if innings is not None and event.innings != innings:
                    continue
                yield event

        return _iterate()

    def last_sequence(self, match_id: str) -> int:
        """Highest committed sequence for the match (0 when empty)."""
        return self._get_log(match_id).last_sequence

    def get_event(self, match_id: str, sequence: int) -> Optional[BallEvent]:
        log = self._get_log(match_id)
        if 1 <= sequence <= log.last_sequence:
            return log.events[sequence - 1]
        return None

    def sequence_for_key(self, match_id: str, innings: int, idempotency_key: str) -> Optional[int]:
        """Sequence committed under the key in that innings, if any."""
        return self._get_log(match_id).keys.get((innings, idempotency_key))

    def is_retracted(self, match_id: str, sequence: int) -> bool:
        return sequence in self._get_log(match_id).retracted

    def match_ids(self) -> List[str]:
        """Matches with a ledger file on disk or opened in this process."""
        found = set(self._logs)
        for path in self.base_dir.glob('match_*.jsonl'):
            found.add(path.stem[len('match_'):])
        return sorted(found)

    # ----- loading -----

    def _get_log(self, match_id: str) -> _MatchLog:
        log = self._logs.get(match_id)
        if log is not None:
            return log

        with self._registry_lock:
            log = self._logs.get(match_id)
            if log is None:
                log = _MatchLog(create_match_filepath(self.base_dir, match_id))
                _trim_torn_tail(log.filepath)
                for event in load_events(log.filepath):
                    log.index(event)
                if log.events:
                    logger.info(
                        f"Opened ledger for match {match_id}: "
                        f"{len(log.events)} events, last seq {log.last_sequence}"
                    )
                self._logs[match_id] = log
        return log

    def export_to_csv(self, match_id: str, output_path: Path) -> None:
        """
        Export a match ledger to CSV for analysis.

        Args:
            match_id: Match to export
            output_path: Path for CSV output file
        """
        events = self._get_log(match_id).events
        if not events:
            logger.warning(f"No events to export for match {match_id}")
            return
        write_events_csv(events, output_path)


def write_events_csv(events: List[BallEvent], output_path: Path) -> None:
    """
    Write ledger events to CSV, one row per event.

    Args:
        events: Events in sequence order
        output_path: Path for CSV output file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow([
            'sequence', 'innings', 'kind', 'over', 'ball', 'striker',
            'non_striker', 'bowler', 'runs_off_bat', 'extra_kind',
            'extra_runs', 'wicket_kind', 'player_out', 'retracts_sequence',
            'timestamp'
        ])
        for event in events:
            writer.writerow([
                event.sequence,
                event.innings,
                event.kind.value,
                event.over,
                event.ball,
                event.striker,
                event.non_striker,
                event.bowler,
                event.runs_off_bat,
                event.extra.kind.value if event.extra else '',
                event.extra_runs,
                event.wicket.kind.value if event.wicket else '',
                event.wicket.player_out if event.wicket else '',
                event.retracts_sequence or '',
                event.timestamp.isoformat()
            ])

    logger.info(f"Exported {len(events)} events to {output_path}")


def load_events(filepath: Path) -> List[BallEvent]:
    """
    Load a complete match ledger from file.

    Returns:
        List of BallEvents in sequence order (empty if the file doesn't exist)

    An unparseable line (typically a torn final write after a crash) is
    logged and skipped; the remaining events must still be gap-free.

    Raises:
        OutOfOrderError: If the stored sequences are not contiguous from 1
    """
    filepath = Path(filepath)
    if not filepath.exists():
        logger.debug(f"Ledger file does not exist: {filepath}")
        return []

    events = []
    with open(filepath, 'r', encoding='utf-8') as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue

            try:
                event = BallEvent.from_json(line)
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error(
                    f"Failed to parse event at {filepath}:{line_num}: {e}\n"
                    f"Line content: {line}"
                )
                continue

            expected = len(events) + 1
            if event.sequence != expected:
                raise OutOfOrderError(expected=expected, received=event.sequence)
            events.append(event)

    return events


def create_match_filepath(base_dir: Path, match_id: str) -> Path:
    """
    Generate the ledger filepath for a match.

    Args:
        base_dir: Base directory for ledgers
        match_id: Match identifier

    Returns:
        Path for the match ledger file

    Raises:
        ValidationError: If the id is not usable as a file name as it stands
    """
    if not _SAFE_MATCH_ID.fullmatch(match_id or ''):
        raise ValidationError(
            f"Match id {match_id!r} may only use letters, digits, '_', '.' and '-'"
        )
    return Path(base_dir) / f"match_{match_id}.jsonl"


_SAFE_MATCH_ID = re.compile(r'[A-Za-z0-9_.-]+')


def _append_line(filepath: Path, line: str) -> None:
    """
    Append one line and fsync it.

    A write that fails part-way is cut back off the file before the error
    propagates, so a retry appends onto a clean line boundary.
    """
    size = filepath.stat().st_size if filepath.exists() else 0
    try:
        with open(filepath, 'a', encoding='utf-8') as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
    except Exception:
        logger.error(f"Append to {filepath} failed, truncating back to {size} bytes")
        if filepath.exists():
            _truncate(filepath, size)
        raise


def _truncate(filepath: Path, size: int) -> None:
    fd = os.open(filepath, os.O_RDWR)
    try:
        os.ftruncate(fd, size)
        os.fsync(fd)
    finally:
        os.close(fd)


def _trim_torn_tail(filepath: Path) -> None:
    """Drop an unterminated final line left by a crash mid-write."""
    if not filepath.exists():
        return
    data = filepath.read_bytes()
    if not data or data.endswith(b'\n'):
        return
    keep = data.rfind(b'\n') + 1
    logger.warning(f"Dropping {len(data) - keep} bytes of torn final line from {filepath}")
    _truncate(filepath, keep)
