"""Peer score thresholds and helpers for computing decay factors."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta

DEFAULT_DECAY_INTERVAL = timedelta(seconds=1)
DEFAULT_DECAY_TO_ZERO = 0.01


class ScoreParamsError(ValueError):
    """Raised when score parameters or thresholds fail validation."""


def is_invalid_number(num: float) -> bool:
    """Return True if ``num`` is NaN or infinite."""
    return math.isnan(num) or math.isinf(num)


def score_parameter_decay(decay: timedelta) -> float:
    """Decay factor for a counter, assuming a 1s decay interval and 0.01 decay-to-zero."""
    return score_parameter_decay_with_base(decay, DEFAULT_DECAY_INTERVAL, DEFAULT_DECAY_TO_ZERO)


def score_parameter_decay_with_base(
    decay: timedelta, base: timedelta, decay_to_zero: float
) -> float:
    """Decay factor for a counter that should reach ``decay_to_zero`` after ``decay``.

    The counter is multiplied by the factor once every ``base`` interval, so
    after ``n = decay // base`` ticks it has shrunk by ``factor ** n``.
    """
    ticks = float(decay // base)
    exponent = 1.0 / ticks if ticks else math.inf
    return math.pow(decay_to_zero, exponent)


@dataclass
class PeerScoreThresholds:
    """Score thresholds that gate gossip, publishing, RPC handling and PX."""

    # Whether it is allowed to set only some thresholds and not all of them.
    skip_atomic_validation: bool = False
    # Below this score gossip propagation is suppressed; should be negative.
    gossip_threshold: float = 0.0
    # Below this score we do not flood-publish to the peer; <= gossip_threshold.
    publish_threshold: float = 0.0
    # Below this score message processing is suppressed; <= publish_threshold.
    graylist_threshold: float = 0.0
    # Below this score peer exchange is ignored; should be positive.
    accept_px_threshold: float = 0.0
    # Median mesh score below which opportunistic grafting kicks in.
    opportunistic_graft_threshold: float = 0.0

    def validate(self) -> None:
        """Check the thresholds, raising ScoreParamsError on the first problem."""
        skip = self.skip_atomic_validation

        if (
            not skip
            or self.publish_threshold != 0
            or self.gossip_threshold != 0
            or self.graylist_threshold != 0
        ):
            if self.gossip_threshold > 0 or is_invalid_number(self.gossip_threshold):
                raise ScoreParamsError(
                    "invalid gossip threshold; it must be <= 0 and a valid number"
                )
            if (
                self.publish_threshold > 0
                or self.publish_threshold > self.gossip_threshold
                or is_invalid_number(self.publish_threshold)
            ):
                raise ScoreParamsError(
                    "invalid publish threshold; it must be <= 0 and <= gossip threshold "
                    "and a valid number"
                )
            if (
                self.graylist_threshold > 0
                or self.graylist_threshold > self.publish_threshold
                or is_invalid_number(self.graylist_threshold)
            ):
                raise ScoreParamsError(
                    "invalid graylist threshold; it must be <= 0 and <= publish threshold "
                    "and a valid number"
                )

        if not skip or self.accept_px_threshold != 0:
            if self.accept_px_threshold < 0 or is_invalid_number(self.accept_px_threshold):
                raise ScoreParamsError(
                    "invalid accept PX threshold; it must be >= 0 and a valid number"
                )

        if not skip or self.opportunistic_graft_threshold != 0:
            if self.opportunistic_graft_threshold < 0 or is_invalid_number(
                self.opportunistic_graft_threshold
            ):
                raise ScoreParamsError(
                    "invalid opportunistic grafting threshold; it must be >= 0 "
                    "and a valid number"
                )