"""Peer scoring: tracks per-peer behaviour and turns it into a score."""

from __future__ import annotations

import enum
import ipaddress
import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from meshpub.deliveries import (
    DEFAULT_SEEN_MSG_TTL,
    Clock,
    DeliveryStatus,
    MessageDeliveries,
    PeerScoreSnapshot,
    PeerStats,
    TopicScoreSnapshot,
    TopicStats,
)
from meshpub.message import Message, default_msg_id_fn
from meshpub.params import PeerScoreParams, TopicScoreParams

log = logging.getLogger(__name__)

_ZERO = timedelta(0)
# Interval for refreshing peer IPs and collecting expired delivery records.
_MAINTENANCE_INTERVAL = 60.0

MsgIdFn = Callable[[Message], bytes]
IpSource = Callable[[bytes], Iterable[str]]
PeerScoreInspectFn = Callable[[Dict[bytes, float]], None]
ExtendedPeerScoreInspectFn = Callable[[Dict[bytes, PeerScoreSnapshot]], None]


class RejectReason(str, enum.Enum):
    """Why a message was rejected before or during validation."""

    BLACKLISTED_PEER = "blacklisted peer"
    BLACKLISTED_SOURCE = "blacklisted source"
    MISSING_SIGNATURE = "missing signature"
    UNEXPECTED_SIGNATURE = "unexpected signature"
    UNEXPECTED_AUTH_INFO = "unexpected auth info"
    INVALID_SIGNATURE = "invalid signature"
    VALIDATION_QUEUE_FULL = "validation queue full"
    VALIDATION_THROTTLED = "validation throttled"
    VALIDATION_FAILED = "validation failed"
    VALIDATION_IGNORED = "validation ignored"
    SELF_ORIGIN = "self originated message"


# Rejections that are clearly the sender's fault and are penalised without tracking.
_PENALISED_UNTRACKED = frozenset(
    {
        RejectReason.MISSING_SIGNATURE,
        RejectReason.INVALID_SIGNATURE,
        RejectReason.UNEXPECTED_SIGNATURE,
        RejectReason.UNEXPECTED_AUTH_INFO,
        RejectReason.SELF_ORIGIN,
    }
)
# Rejections that carry no information about the message at all.
_IGNORED_UNTRACKED = frozenset(
    {
        RejectReason.BLACKLISTED_PEER,
        RejectReason.BLACKLISTED_SOURCE,
        RejectReason.VALIDATION_QUEUE_FULL,
    }
)


class PeerScore:
    """Scores peers from their mesh behaviour, deliveries, IPs and penalties.

    ``ip_source`` maps a peer ID to the remote addresses of its connections;
    without one, peers have no tracked IPs. ``clock`` returns seconds and is
    used for all score timing.
    """

    def __init__(
        self,
        params: PeerScoreParams,
        *,
        msg_id_fn: Optional[MsgIdFn] = None,
        ip_source: Optional[IpSource] = None,
        clock: Clock = time.monotonic,
        inspect: Optional[PeerScoreInspectFn] = None,
        inspect_extended: Optional[ExtendedPeerScoreInspectFn] = None,
        inspect_period: timedelta = timedelta(seconds=1),
    ) -> None:
        if inspect is not None and inspect_extended is not None:
            raise ValueError("duplicate peer score inspector")
        if (inspect is not None or inspect_extended is not None) and inspect_period <= _ZERO:
            raise ValueError("inspect period must be positive")

        seen_ttl = params.seen_msg_ttl if params.seen_msg_ttl != _ZERO else DEFAULT_SEEN_MSG_TTL
        self.params = params
        self.msg_id_fn: MsgIdFn = msg_id_fn or default_msg_id_fn
        self.ip_source = ip_source
        self.clock = clock
        self.inspect = inspect
        self.inspect_extended = inspect_extended
        self.inspect_period = inspect_period

        self.peer_stats: Dict[bytes, PeerStats] = {}
        self.peer_ips: Dict[str, Set[bytes]] = {}
        self.deliveries = MessageDeliveries(seen_ttl, clock)

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # parameters

    def set_topic_score_params(self, topic: str, params: TopicScoreParams) -> None:
        """Replace the parameters of ``topic``, recapping counters if caps were lowered."""
        with self._lock:
            old = self.params.topics.get(topic)
            self.params.topics[topic] = params
            if old is None:
                return

            recap = (
                params.first_message_deliveries_cap < old.first_message_deliveries_cap
                or params.mesh_message_deliveries_cap < old.mesh_message_deliveries_cap
            )
            if not recap:
                return

            for stats in self.peer_stats.values():
                tstats = stats.topics.get(topic)
                if tstats is None:
                    continue
                tstats.first_message_deliveries = min(
                    tstats.first_message_deliveries, params.first_message_deliveries_cap
                )
                tstats.mesh_message_deliveries = min(
                    tstats.mesh_message_deliveries, params.mesh_message_deliveries_cap
                )

    # scoring

    def score(self, pid: bytes) -> float:
        """The current score of ``pid``; 0 for unknown peers."""
        with self._lock:
            return self._score(pid)

    def _score(self, pid: bytes) -> float:
        stats = self.peer_stats.get(pid)
        if stats is None:
            return 0.0

        params = self.params
        score = 0.0
        for topic, tstats in stats.topics.items():
            tparams = params.topics.get(topic)
            if tparams is None:
                continue

            topic_score = 0.0

            # P1: time in mesh
            if tstats.in_mesh and tparams.time_in_mesh_quantum > _ZERO:
                p1 = float(tstats.mesh_time // tparams.time_in_mesh_quantum)
                if p1 > tparams.time_in_mesh_cap:
                    p1 = tparams.time_in_mesh_cap
                topic_score += p1 * tparams.time_in_mesh_weight

            # P2: first message deliveries
            topic_score += tstats.first_message_deliveries * tparams.first_message_deliveries_weight

            # P3: mesh message deliveries
            if tstats.mesh_message_deliveries_active:
                threshold = tparams.mesh_message_deliveries_threshold
                if tstats.mesh_message_deliveries < threshold:
                    deficit = threshold - tstats.mesh_message_deliveries
                    topic_score += deficit * deficit * tparams.mesh_message_deliveries_weight

            # P3b: sticky mesh failure penalty (negative weight)
            topic_score += tstats.mesh_failure_penalty * tparams.mesh_failure_penalty_weight

            # P4: invalid messages (negative weight)
            p4 = tstats.invalid_message_deliveries * tstats.invalid_message_deliveries
            topic_score += p4 * tparams.invalid_message_deliveries_weight

            score += topic_score * tparams.topic_weight

        if params.topic_score_cap > 0 and score > params.topic_score_cap:
            score = params.topic_score_cap

        # P5: application-specific score
        score += self._app_specific_score(pid) * params.app_specific_weight

        # P6: IP colocation factor
        score += self._ip_colocation_factor(pid) * params.ip_colocation_factor_weight

        # P7: behavioural penalty
        if stats.behaviour_penalty > params.behaviour_penalty_threshold:
            excess = stats.behaviour_penalty - params.behaviour_penalty_threshold
            score += excess * excess * params.behaviour_penalty_weight

        return score

    def _app_specific_score(self, pid: bytes) -> float:
        fn = self.params.app_specific_score
        return fn(pid) if fn is not None else 0.0

    def ip_colocation_factor(self, pid: bytes) -> float:
        """The unweighted P6 value of ``pid``."""
        with self._lock:
            return self._ip_colocation_factor(pid)

    def _ip_colocation_factor(self, pid: bytes) -> float:
        stats = self.peer_stats.get(pid)
        if stats is None:
            return 0.0

        threshold = self.params.ip_colocation_factor_threshold
        result = 0.0
        for ip in stats.ips:
            if self.params.ip_colocation_factor_whitelist and self._is_whitelisted(stats, ip):
                continue
            # P6 only applies once more than `threshold` peers share the IP.
            peers_in_ip = len(self.peer_ips.get(ip, ()))
            if peers_in_ip > threshold:
                surplus = float(peers_in_ip - threshold)
                result += surplus * surplus
        return result

    def _is_whitelisted(self, stats: PeerStats, ip: str) -> bool:
        cached = stats.ip_whitelist.get(ip)
        if cached is not None:
            return cached
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            address = None
        whitelisted = address is not None and any(
            network.version == address.version and address in network
            for network in self.params.ip_colocation_factor_whitelist
        )
        stats.ip_whitelist[ip] = whitelisted
        return whitelisted

    def add_penalty(self, pid: bytes, count: int) -> None:
        """Add ``count`` to the behavioural penalty of a known peer."""
        with self._lock:
            stats = self.peer_stats.get(pid)
            if stats is not None:
                stats.behaviour_penalty += float(count)

    # periodic maintenance

    def refresh_scores(self) -> None:
        """Decay counters and drop expired records of disconnected peers."""
        with self._lock:
            now = self.clock()
            decay_to_zero = self.params.decay_to_zero
            for pid, stats in list(self.peer_stats.items()):
                if not stats.connected:
                    # retained scores are not decayed, so reconnecting cannot reset them
                    if now > stats.expire:
                        self._remove_ips(pid, stats.ips)
                        del self.peer_stats[pid]
                    continue

                for topic, tstats in stats.topics.items():
                    tparams = self.params.topics.get(topic)
                    if tparams is None:
                        continue
                    self._decay_topic(tstats, tparams, decay_to_zero, now)

                stats.behaviour_penalty *= self.params.behaviour_penalty_decay
                if stats.behaviour_penalty < decay_to_zero:
                    stats.behaviour_penalty = 0.0

    @staticmethod
    def _decay_topic(
        tstats: TopicStats, tparams: TopicScoreParams, decay_to_zero: float, now: float
    ) -> None:
        tstats.first_message_deliveries *= tparams.first_message_deliveries_decay
        if tstats.first_message_deliveries < decay_to_zero:
            tstats.first_message_deliveries = 0.0
        tstats.mesh_message_deliveries *= tparams.mesh_message_deliveries_decay
        if tstats.mesh_message_deliveries < decay_to_zero:
            tstats.mesh_message_deliveries = 0.0
        tstats.mesh_failure_penalty *= tparams.mesh_failure_penalty_decay
        if tstats.mesh_failure_penalty < decay_to_zero:
            tstats.mesh_failure_penalty = 0.0
        tstats.invalid_message_deliveries *= tparams.invalid_message_deliveries_decay
        if tstats.invalid_message_deliveries < decay_to_zero:
            tstats.invalid_message_deliveries = 0.0

        if tstats.in_mesh:
            tstats.mesh_time = timedelta(seconds=now - tstats.graft_time)
            if tstats.mesh_time > tparams.mesh_message_deliveries_activation:
                tstats.mesh_message_deliveries_active = True

    def refresh_ips(self) -> None:
        """Re-read the IPs of connected peers and update colocation tracking."""
        with self._lock:
            for pid, stats in self.peer_stats.items():
                if stats.connected:
                    ips = self._get_ips(pid)
                    self.set_ips(pid, ips, stats.ips)
                    stats.ips = ips

    def gc_delivery_records(self) -> None:
        """Drop expired message delivery records."""
        with self._lock:
            self.deliveries.gc()

    def snapshot(self) -> Dict[bytes, PeerScoreSnapshot]:
        """Scores of all tracked peers with their individual components."""
        with self._lock:
            result: Dict[bytes, PeerScoreSnapshot] = {}
            for pid, stats in self.peer_stats.items():
                topics = {
                    topic: TopicScoreSnapshot(
                        time_in_mesh=tstats.mesh_time if tstats.in_mesh else _ZERO,
                        first_message_deliveries=tstats.first_message_deliveries,
                        mesh_message_deliveries=tstats.mesh_message_deliveries,
                        invalid_message_deliveries=tstats.invalid_message_deliveries,
                    )
                    for topic, tstats in stats.topics.items()
                }
                result[pid] = PeerScoreSnapshot(
                    score=self._score(pid),
                    topics=topics,
                    app_specific_score=self._app_specific_score(pid),
                    ip_colocation_factor=self._ip_colocation_factor(pid),
                    behaviour_penalty=stats.behaviour_penalty,
                )
            return result

    def inspect_scores(self) -> None:
        """Hand the current scores to the configured inspector, outside the lock."""
        if self.inspect is not None:
            with self._lock:
                scores = {pid: self._score(pid) for pid in self.peer_stats}
            self.inspect(scores)
        if self.inspect_extended is not None:
            self.inspect_extended(self.snapshot())

    def start(self) -> None:
        """Run periodic maintenance in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        if self.params.decay_interval <= _ZERO:
            raise ValueError("decay interval must be positive")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="peer-score", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background maintenance and wait for it to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        tasks = [
            (self.params.decay_interval.total_seconds(), self.refresh_scores),
            (_MAINTENANCE_INTERVAL, self.refresh_ips),
            (_MAINTENANCE_INTERVAL, self.gc_delivery_records),
        ]
        inspecting = self.inspect is not None or self.inspect_extended is not None
        if inspecting:
            tasks.append((self.inspect_period.total_seconds(), self.inspect_scores))

        start = time.monotonic()
        deadlines = [start + period for period, _ in tasks]
        while True:
            wait = max(0.0, min(deadlines) - time.monotonic())
            if self._stop.wait(wait):
                break
            now = time.monotonic()
            for index, (period, task) in enumerate(tasks):
                if now >= deadlines[index]:
                    task()
                    deadlines[index] = now + period

        if inspecting:
            # one final sample on the way out
            self.inspect_scores()

    # tracer events

    def add_peer(self, pid: bytes, proto: str) -> None:
        """A peer connected."""
        with self._lock:
            stats = self.peer_stats.get(pid)
            if stats is None:
                stats = PeerStats()
                self.peer_stats[pid] = stats
            stats.connected = True
            ips = self._get_ips(pid)
            self.set_ips(pid, ips, stats.ips)
            stats.ips = ips

    def remove_peer(self, pid: bytes) -> None:
        """A peer disconnected; non-positive scores are retained for a while."""
        with self._lock:
            stats = self.peer_stats.get(pid)
            if stats is None:
                return

            if self._score(pid) > 0:
                self._remove_ips(pid, stats.ips)
                del self.peer_stats[pid]
                return

            for topic, tstats in stats.topics.items():
                tstats.first_message_deliveries = 0.0
                tparams = self.params.topics.get(topic)
                if (
                    tparams is not None
                    and tstats.in_mesh
                    and tstats.mesh_message_deliveries_active
                    and tstats.mesh_message_deliveries < tparams.mesh_message_deliveries_threshold
                ):
                    deficit = (
                        tparams.mesh_message_deliveries_threshold
                        - tstats.mesh_message_deliveries
                    )
                    tstats.mesh_failure_penalty += deficit * deficit
                tstats.in_mesh = False

            stats.connected = False
            stats.expire = self.clock() + self.params.retain_score.total_seconds()

    def graft(self, pid: bytes, topic: str) -> None:
        """The peer joined our mesh for ``topic``."""
        with self._lock:
            stats = self.peer_stats.get(pid)
            if stats is None:
                return
            tstats = stats.get_topic_stats(topic, self.params)
            if tstats is None:
                return
            tstats.in_mesh = True
            tstats.graft_time = self.clock()
            tstats.mesh_time = _ZERO
            tstats.mesh_message_deliveries_active = False

    def prune(self, pid: bytes, topic: str) -> None:
        """The peer left our mesh for ``topic``; apply the sticky failure penalty."""
        with self._lock:
            stats = self.peer_stats.get(pid)
            if stats is None:
                return
            tstats = stats.get_topic_stats(topic, self.params)
            if tstats is None:
                return
            threshold = self.params.topics[topic].mesh_message_deliveries_threshold
            if (
                tstats.mesh_message_deliveries_active
                and tstats.mesh_message_deliveries < threshold
            ):
                deficit = threshold - tstats.mesh_message_deliveries
                tstats.mesh_failure_penalty += deficit * deficit
            tstats.in_mesh = False

    def validate_message(self, msg: Message) -> None:
        """Validation of ``msg`` begins; start tracking its delivery."""
        with self._lock:
            self.deliveries.get_record(self._msg_id(msg))

    def deliver_message(self, msg: Message) -> None:
        """``msg`` passed validation and is delivered."""
        with self._lock:
            self._mark_first_message_delivery(msg.received_from, msg)

            record = self.deliveries.get_record(self._msg_id(msg))
            if record.status != DeliveryStatus.UNKNOWN:
                log.debug(
                    "unexpected delivery trace: message from %s has delivery status %s",
                    msg.received_from.hex(),
                    record.status.name,
                )
                return

            record.status = DeliveryStatus.VALID
            record.validated = self.clock()
            for pid in record.peers:
                # a peer cannot count a first delivery twice
                if pid != msg.received_from:
                    self._mark_duplicate_message_delivery(pid, msg, None)

    def reject_message(self, msg: Message, reason: RejectReason | str) -> None:
        """``msg`` was rejected for ``reason``."""
        reason = RejectReason(reason)
        with self._lock:
            if reason in _PENALISED_UNTRACKED:
                self._mark_invalid_message_delivery(msg.received_from, msg)
                return
            if reason in _IGNORED_UNTRACKED:
                return

            record = self.deliveries.get_record(self._msg_id(msg))
            if record.status != DeliveryStatus.UNKNOWN:
                log.debug(
                    "unexpected rejection trace: message from %s has delivery status %s",
                    msg.received_from.hex(),
                    record.status.name,
                )
                return

            if reason is RejectReason.VALIDATION_THROTTLED:
                # validity unknown: do not penalise the forwarders
                record.status = DeliveryStatus.THROTTLED
                record.peers = set()
                return
            if reason is RejectReason.VALIDATION_IGNORED:
                record.status = DeliveryStatus.IGNORED
                record.peers = set()
                return

            record.status = DeliveryStatus.INVALID
            self._mark_invalid_message_delivery(msg.received_from, msg)
            for pid in record.peers:
                self._mark_invalid_message_delivery(pid, msg)
            record.peers = set()

    def duplicate_message(self, msg: Message) -> None:
        """``msg`` arrived again, from ``msg.received_from``."""
        with self._lock:
            record = self.deliveries.get_record(self._msg_id(msg))
            sender = msg.received_from
            if sender in record.peers:
                return

            if record.status == DeliveryStatus.UNKNOWN:
                record.peers.add(sender)
            elif record.status == DeliveryStatus.VALID:
                record.peers.add(sender)
                self._mark_duplicate_message_delivery(sender, msg, record.validated)
            elif record.status == DeliveryStatus.INVALID:
                self._mark_invalid_message_delivery(sender, msg)

    # delivery counters

    def _msg_id(self, msg: Message) -> bytes:
        return msg.id or self.msg_id_fn(msg)

    def _topic_stats_for(self, pid: bytes, msg: Message) -> Optional[TopicStats]:
        stats = self.peer_stats.get(pid)
        if stats is None or msg.topic is None:
            return None
        return stats.get_topic_stats(msg.topic, self.params)

    def _mark_invalid_message_delivery(self, pid: bytes, msg: Message) -> None:
        tstats = self._topic_stats_for(pid, msg)
        if tstats is not None:
            tstats.invalid_message_deliveries += 1

    def _mark_first_message_delivery(self, pid: bytes, msg: Message) -> None:
        tstats = self._topic_stats_for(pid, msg)
        if tstats is None:
            return
        tparams = self.params.topics[msg.topic]
        tstats.first_message_deliveries = min(
            tstats.first_message_deliveries + 1, tparams.first_message_deliveries_cap
        )
        if tstats.in_mesh:
            tstats.mesh_message_deliveries = min(
                tstats.mesh_message_deliveries + 1, tparams.mesh_message_deliveries_cap
            )

    def _mark_duplicate_message_delivery(
        self, pid: bytes, msg: Message, validated: Optional[float]
    ) -> None:
        tstats = self._topic_stats_for(pid, msg)
        if tstats is None or not tstats.in_mesh:
            return
        tparams = self.params.topics[msg.topic]
        # no validation time means it arrived during validation: inside the window
        if validated is not None and timedelta(
            seconds=self.clock() - validated
        ) > tparams.mesh_message_deliveries_window:
            return
        tstats.mesh_message_deliveries = min(
            tstats.mesh_message_deliveries + 1, tparams.mesh_message_deliveries_cap
        )

    # IP tracking

    def _get_ips(self, pid: bytes) -> List[str]:
        if self.ip_source is None:
            return []
        result: List[str] = []
        for raw in self.ip_source(pid):
            try:
                address = ipaddress.ip_address(raw)
            except ValueError:
                continue
            if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
                address = address.ipv4_mapped
            if address.is_loopback:
                continue
            result.append(str(address))
            if address.version == 6:
                subnet = ipaddress.ip_network(f"{address}/64", strict=False)
                result.append(str(subnet.network_address))
        return result

    def set_ips(self, pid: bytes, new_ips: List[str], old_ips: List[str]) -> None:
        """Track ``pid`` under its new IPs and stop tracking it under obsolete ones."""
        with self._lock:
            for ip in new_ips:
                if ip not in old_ips:
                    self.peer_ips.setdefault(ip, set()).add(pid)
            for ip in old_ips:
                if ip in new_ips:
                    continue
                peers = self.peer_ips.get(ip)
                if peers is None:
                    continue
                peers.discard(pid)
                if not peers:
                    del self.peer_ips[ip]

    def remove_ips(self, pid: bytes, ips: List[str]) -> None:
        """Stop tracking ``pid`` under each of ``ips``."""
        with self._lock:
            self._remove_ips(pid, ips)

    def _remove_ips(self, pid: bytes, ips: Iterable[str]) -> None:
        for ip in ips:
            peers = self.peer_ips.get(ip)
            if peers is None:
                continue
            peers.discard(pid)
            if not peers:
                del self.peer_ips[ip]