"""Peer and per-topic score parameters and their validation."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Union

from meshpub.thresholds import ScoreParamsError, is_invalid_number

_ZERO = timedelta(0)
_ONE_SECOND = timedelta(seconds=1)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
AppSpecificScoreFn = Callable[[bytes], float]


@dataclass(frozen=True)
class _ConstantScore:
    """Application-specific score function giving every peer the same value."""

    value: float = 0.0

    def __call__(self, pid: bytes) -> float:
        return self.value


def _is_decay_factor(value: float) -> bool:
    """True when ``value`` is a finite number strictly between 0 and 1."""
    return not is_invalid_number(value) and 0 < value < 1


@dataclass
class TopicScoreParams:
    """Scoring weights, caps and decays for a single topic."""

    # Whether it is allowed to set only some parameters and not all of them.
    skip_atomic_validation: bool = False

    topic_weight: float = 0.0

    # P1: time in the mesh, counted in quanta and capped.
    time_in_mesh_weight: float = 0.0
    time_in_mesh_quantum: timedelta = _ZERO
    time_in_mesh_cap: float = 0.0

    # P2: first message deliveries.
    first_message_deliveries_weight: float = 0.0
    first_message_deliveries_decay: float = 0.0
    first_message_deliveries_cap: float = 0.0

    # P3: mesh message deliveries.
    mesh_message_deliveries_weight: float = 0.0
    mesh_message_deliveries_decay: float = 0.0
    mesh_message_deliveries_cap: float = 0.0
    mesh_message_deliveries_threshold: float = 0.0
    mesh_message_deliveries_window: timedelta = _ZERO
    mesh_message_deliveries_activation: timedelta = _ZERO

    # P3b: sticky mesh propagation failures.
    mesh_failure_penalty_weight: float = 0.0
    mesh_failure_penalty_decay: float = 0.0

    # P4: invalid messages.
    invalid_message_deliveries_weight: float = 0.0
    invalid_message_deliveries_decay: float = 0.0

    def validate(self) -> None:
        """Check the parameters, raising ScoreParamsError on the first problem."""
        if self.topic_weight < 0 or is_invalid_number(self.topic_weight):
            raise ScoreParamsError("invalid topic weight; must be >= 0 and a valid number")
        self._validate_time_in_mesh()
        self._validate_first_message_deliveries()
        self._validate_mesh_message_deliveries()
        self._validate_mesh_failure_penalty()
        self._validate_invalid_message_deliveries()

    def _validate_time_in_mesh(self) -> None:
        if self.skip_atomic_validation and (
            self.time_in_mesh_weight == 0
            and self.time_in_mesh_quantum == _ZERO
            and self.time_in_mesh_cap == 0
        ):
            return

        if self.time_in_mesh_quantum == _ZERO:
            raise ScoreParamsError("invalid TimeInMeshQuantum; must be non zero")
        if self.time_in_mesh_weight < 0 or is_invalid_number(self.time_in_mesh_weight):
            raise ScoreParamsError(
                "invalid TimeInMeshWeight; must be positive (or 0 to disable) "
                "and a valid number"
            )
        if self.time_in_mesh_weight != 0 and self.time_in_mesh_quantum <= _ZERO:
            raise ScoreParamsError("invalid TimeInMeshQuantum; must be positive")
        if self.time_in_mesh_weight != 0 and (
            self.time_in_mesh_cap <= 0 or is_invalid_number(self.time_in_mesh_cap)
        ):
            raise ScoreParamsError("invalid TimeInMeshCap; must be positive and a valid number")

    def _validate_first_message_deliveries(self) -> None:
        weight = self.first_message_deliveries_weight
        if self.skip_atomic_validation and (
            weight == 0
            and self.first_message_deliveries_cap == 0
            and self.first_message_deliveries_decay == 0
        ):
            return

        if weight < 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesWeight; must be positive (or 0 to disable) "
                "and a valid number"
            )
        if weight != 0 and not _is_decay_factor(self.first_message_deliveries_decay):
            raise ScoreParamsError("invalid FirstMessageDeliveriesDecay; must be between 0 and 1")
        if weight != 0 and (
            self.first_message_deliveries_cap <= 0
            or is_invalid_number(self.first_message_deliveries_cap)
        ):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesCap; must be positive and a valid number"
            )

    def _validate_mesh_message_deliveries(self) -> None:
        weight = self.mesh_message_deliveries_weight
        if self.skip_atomic_validation and (
            weight == 0
            and self.mesh_message_deliveries_cap == 0
            and self.mesh_message_deliveries_decay == 0
            and self.mesh_message_deliveries_threshold == 0
            and self.mesh_message_deliveries_window == _ZERO
            and self.mesh_message_deliveries_activation == _ZERO
        ):
            return

        if weight > 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesWeight; must be negative (or 0 to disable) "
                "and a valid number"
            )
        if weight != 0 and not _is_decay_factor(self.mesh_message_deliveries_decay):
            raise ScoreParamsError("invalid MeshMessageDeliveriesDecay; must be between 0 and 1")
        if weight != 0 and (
            self.mesh_message_deliveries_cap <= 0
            or is_invalid_number(self.mesh_message_deliveries_cap)
        ):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesCap; must be positive and a valid number"
            )
        if weight != 0 and (
            self.mesh_message_deliveries_threshold <= 0
            or is_invalid_number(self.mesh_message_deliveries_threshold)
        ):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesThreshold; must be positive and a valid number"
            )
        if self.mesh_message_deliveries_window < _ZERO:
            raise ScoreParamsError("invalid MeshMessageDeliveriesWindow; must be non-negative")
        if weight != 0 and self.mesh_message_deliveries_activation < _ONE_SECOND:
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesActivation; must be at least 1s"
            )

    def _validate_mesh_failure_penalty(self) -> None:
        weight = self.mesh_failure_penalty_weight
        if self.skip_atomic_validation and (
            self.mesh_failure_penalty_decay == 0 and weight == 0
        ):
            return

        if weight > 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid MeshFailurePenaltyWeight; must be negative (or 0 to disable) "
                "and a valid number"
            )
        if weight != 0 and not _is_decay_factor(self.mesh_failure_penalty_decay):
            raise ScoreParamsError("invalid MeshFailurePenaltyDecay; must be between 0 and 1")

    def _validate_invalid_message_deliveries(self) -> None:
        weight = self.invalid_message_deliveries_weight
        if self.skip_atomic_validation and (
            self.invalid_message_deliveries_decay == 0 and weight == 0
        ):
            return

        if weight > 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid InvalidMessageDeliveriesWeight; must be negative (or 0 to disable) "
                "and a valid number"
            )
        if not _is_decay_factor(self.invalid_message_deliveries_decay):
            raise ScoreParamsError(
                "invalid InvalidMessageDeliveriesDecay; must be between 0 and 1"
            )


@dataclass
class PeerScoreParams:
    """Global peer scoring parameters, including the per-topic parameters."""

    # Whether it is allowed to set only some parameters and not all of them.
    skip_atomic_validation: bool = False

    topics: Dict[str, TopicScoreParams] = field(default_factory=dict)

    # Cap on the summed topic contribution; 0 means no cap.
    topic_score_cap: float = 0.0

    # P5: application-specific score.
    app_specific_score: Optional[AppSpecificScoreFn] = None
    app_specific_weight: float = 0.0

    # P6: IP colocation factor.
    ip_colocation_factor_weight: float = 0.0
    ip_colocation_factor_threshold: int = 0
    ip_colocation_factor_whitelist: List[IPNetwork] = field(default_factory=list)

    # P7: behavioural pattern penalties.
    behaviour_penalty_weight: float = 0.0
    behaviour_penalty_threshold: float = 0.0
    behaviour_penalty_decay: float = 0.0

    # Interval at which counters decay.
    decay_interval: timedelta = _ZERO
    # Counter value below which it is considered 0.
    decay_to_zero: float = 0.0
    # How long to remember counters for a disconnected peer.
    retain_score: timedelta = _ZERO
    # How long to remember a message delivery; 0 means the global default.
    seen_msg_ttl: timedelta = _ZERO

    def validate(self) -> None:
        """Check the parameters, raising ScoreParamsError on the first problem.

        With atomic validation skipped, a missing application-specific score
        function is replaced by one that always returns 0.
        """
        skip = self.skip_atomic_validation

        for topic, params in self.topics.items():
            try:
                params.validate()
            except ScoreParamsError as exc:
                raise ScoreParamsError(
                    f"invalid score parameters for topic {topic}: {exc}"
                ) from exc

        if not skip or self.topic_score_cap != 0:
            if self.topic_score_cap < 0 or is_invalid_number(self.topic_score_cap):
                raise ScoreParamsError(
                    "invalid topic score cap; must be positive (or 0 for no cap) "
                    "and a valid number"
                )

        if self.app_specific_score is None:
            if skip:
                self.app_specific_score = _ConstantScore(0.0)
            else:
                raise ScoreParamsError("missing application specific score function")

        if not skip or self.ip_colocation_factor_weight != 0:
            weight = self.ip_colocation_factor_weight
            if weight > 0 or is_invalid_number(weight):
                raise ScoreParamsError(
                    "invalid IPColocationFactorWeight; must be negative (or 0 to disable) "
                    "and a valid number"
                )
            if weight != 0 and self.ip_colocation_factor_threshold < 1:
                raise ScoreParamsError(
                    "invalid IPColocationFactorThreshold; must be at least 1"
                )

        if (
            not skip
            or self.behaviour_penalty_weight != 0
            or self.behaviour_penalty_threshold != 0
        ):
            weight = self.behaviour_penalty_weight
            if weight > 0 or is_invalid_number(weight):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyWeight; must be negative (or 0 to disable) "
                    "and a valid number"
                )
            if weight != 0 and not _is_decay_factor(self.behaviour_penalty_decay):
                raise ScoreParamsError("invalid BehaviourPenaltyDecay; must be between 0 and 1")
            if self.behaviour_penalty_threshold < 0 or is_invalid_number(
                self.behaviour_penalty_threshold
            ):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyThreshold; must be >= 0 and a valid number"
                )

        if not skip or self.decay_interval != _ZERO or self.decay_to_zero != 0:
            if self.decay_interval < _ONE_SECOND:
                raise ScoreParamsError("invalid DecayInterval; must be at least 1s")
            if not _is_decay_factor(self.decay_to_zero):
                raise ScoreParamsError("invalid DecayToZero; must be between 0 and 1")