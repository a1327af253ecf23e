"""Bookkeeping for peer scoring: delivery records and per-peer/per-topic stats."""

from __future__ import annotations

import enum
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Deque, Dict, List, Optional, Set

from meshpub.params import PeerScoreParams

# How long a message ID is remembered when no other TTL is configured.
DEFAULT_SEEN_MSG_TTL = timedelta(seconds=120)

Clock = Callable[[], float]


class DeliveryStatus(enum.IntEnum):
    """What we know about the validity of a delivered message."""

    UNKNOWN = 0  # validation has not finished yet
    VALID = 1  # the message is known to be valid
    INVALID = 2  # the message is known to be invalid
    IGNORED = 3  # the validator told us to ignore the message
    THROTTLED = 4  # validation was throttled; validity is unknown


@dataclass
class DeliveryRecord:
    """Delivery tracking for one message ID."""

    first_seen: float
    status: DeliveryStatus = DeliveryStatus.UNKNOWN
    validated: Optional[float] = None
    peers: Set[bytes] = field(default_factory=set)


@dataclass
class _Entry:
    msg_id: bytes
    expire: float


class MessageDeliveries:
    """Delivery records keyed by message ID, expired in first-seen order."""

    def __init__(
        self,
        seen_msg_ttl: timedelta = DEFAULT_SEEN_MSG_TTL,
        clock: Clock = time.monotonic,
    ) -> None:
        self.seen_msg_ttl = seen_msg_ttl
        self.clock = clock
        self.records: Dict[bytes, DeliveryRecord] = {}
        self._queue: Deque[_Entry] = deque()

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self.records

    def get_record(self, msg_id: bytes) -> DeliveryRecord:
        """Return the record for ``msg_id``, creating and scheduling it if new."""
        record = self.records.get(msg_id)
        if record is not None:
            return record

        now = self.clock()
        record = DeliveryRecord(first_seen=now)
        self.records[msg_id] = record
        self._queue.append(_Entry(msg_id, now + self.seen_msg_ttl.total_seconds()))
        return record

    def gc(self) -> None:
        """Drop the records whose retention time has passed."""
        if not self._queue:
            return
        now = self.clock()
        while self._queue and now > self._queue[0].expire:
            entry = self._queue.popleft()
            self.records.pop(entry.msg_id, None)

    def expire_oldest(self) -> Optional[bytes]:
        """Mark the oldest record as already expired; return its ID, or None if empty.

        The record is removed by the next :meth:`gc`.
        """
        if not self._queue:
            return None
        oldest = self._queue[0]
        oldest.expire = -math.inf
        return oldest.msg_id


@dataclass
class TopicStats:
    """Score counters of one peer in one topic."""

    # True while the peer is in our mesh for the topic.
    in_mesh: bool = False
    # Clock reading at the last graft; meaningful only while in the mesh.
    graft_time: float = 0.0
    # Time in mesh, refreshed on decay.
    mesh_time: timedelta = timedelta(0)
    first_message_deliveries: float = 0.0
    mesh_message_deliveries: float = 0.0
    # True once the peer has been in the mesh long enough for P3 to apply.
    mesh_message_deliveries_active: bool = False
    # Sticky mesh delivery failure penalty.
    mesh_failure_penalty: float = 0.0
    invalid_message_deliveries: float = 0.0


@dataclass
class PeerStats:
    """Score counters of one peer."""

    connected: bool = False
    # Clock reading after which the stats of a disconnected peer are dropped.
    expire: float = 0.0
    topics: Dict[str, TopicStats] = field(default_factory=dict)
    ips: List[str] = field(default_factory=list)
    # Cache of whether each IP falls inside the colocation whitelist.
    ip_whitelist: Dict[str, bool] = field(default_factory=dict)
    # Behavioural pattern penalty counter, applied by the router.
    behaviour_penalty: float = 0.0

    def get_topic_stats(self, topic: str, params: PeerScoreParams) -> Optional[TopicStats]:
        """Stats for ``topic``, created on demand; None if the topic is not scored."""
        stats = self.topics.get(topic)
        if stats is not None:
            return stats
        if topic not in params.topics:
            return None
        stats = TopicStats()
        self.topics[topic] = stats
        return stats


@dataclass
class TopicScoreSnapshot:
    """The score counters of a peer in one topic, for inspection."""

    time_in_mesh: timedelta = timedelta(0)
    first_message_deliveries: float = 0.0
    mesh_message_deliveries: float = 0.0
    invalid_message_deliveries: float = 0.0


@dataclass
class PeerScoreSnapshot:
    """A peer's score with its components, for inspection."""

    score: float = 0.0
    topics: Dict[str, TopicScoreSnapshot] = field(default_factory=dict)
    app_specific_score: float = 0.0
    ip_colocation_factor: float = 0.0
    behaviour_penalty: float = 0.0