"""
Live broadcast of scoring deltas to viewers and scorers.

After each committed ball the engine publishes one DeltaMessage per match.
Delivery is at-least-once: a reconnecting client may see a message again,
so consumers keep the last sequence they applied and drop anything at or
below it (see DeltaConsumer).
"""

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .. import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeltaMessage:
    """Wire message: {sequence, event, inningsState, changedFigures[]}."""

    sequence: int
    event: dict
    innings_state: dict
    changed_figures: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'sequence': self.sequence,
            'event': self.event,
            'inningsState': self.innings_state,
            'changedFigures': self.changed_figures,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DeltaMessage':
        return cls(
            sequence=data['sequence'],
            event=data['event'],
            innings_state=data['inningsState'],
            changed_figures=data.get('changedFigures', [])
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class Subscription:
    """A single client's feed for one match."""

    def __init__(self, match_id: str, maxsize: int = config.BROADCAST_QUEUE_SIZE):
        self.match_id = match_id
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, message: DeltaMessage) -> bool:
        """Queue a message; False if the client has fallen too far behind."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except queue.Full:
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[DeltaMessage]:
        """Next message, or None if nothing arrived within the timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[DeltaMessage]:
        messages = []
        while True:
            try:
                messages.append(self._queue.get_nowait())
            except queue.Empty:
                return messages

    def close(self) -> None:
        self.closed = True


class BroadcastGateway:
    """Fans delta messages out to every subscriber of a match."""

    def __init__(self, queue_size: int = config.BROADCAST_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, match_id: str) -> Subscription:
        subscription = Subscription(match_id, self.queue_size)
        with self._lock:
            self._subscriptions.setdefault(match_id, []).append(subscription)
        logger.info(f"New subscriber for match {match_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            subs = self._subscriptions.get(subscription.match_id, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscriptions.pop(subscription.match_id, None)
        logger.info(f"Subscriber left match {subscription.match_id}")

    def subscriber_count(self, match_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(match_id, []))

    def publish(self, match_id: str, message: DeltaMessage) -> int:
        """
        Deliver a message to every subscriber of the match.

        A subscriber whose queue is full is dropped; it has to reconnect and
        resynchronise from a fresh state read.

        Returns:
            Number of subscribers the message was queued for
        """
        with self._lock:
            subs = list(self._subscriptions.get(match_id, []))

        delivered = 0
        for subscription in subs:
            if subscription.offer(message):
                delivered += 1
            else:
                logger.warning(
                    f"Dropping lagging subscriber on match {match_id} at seq {message.sequence}"
                )
                self.unsubscribe(subscription)

        logger.debug(f"Published seq {message.sequence} for match {match_id} to {delivered} subscribers")
        return delivered


class DeltaConsumer:
    """Client-side helper that applies each sequence at most once."""

    def __init__(self, last_seen_sequence: int = 0):
        self.last_seen_sequence = last_seen_sequence
        self.applied: List[DeltaMessage] = []

    def accept(self, message: DeltaMessage) -> bool:
        """
        Returns:
            True if the message is new and was applied, False for a
            duplicate or a replay below the last seen sequence
        """
        if message.sequence <= self.last_seen_sequence:
            return False
        self.last_seen_sequence = message.sequence
        self.applied.append(message)
        return True
