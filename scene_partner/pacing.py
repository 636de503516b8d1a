"""Cue pickup and line pacing measurement."""

import logging
import time

from scene_partner.models import PacingSample, classify_pacing

logger = logging.getLogger(__name__)


class PacingTracker:
    """Tracks one user line's timing against the partner's reference audio.

    All times are milliseconds from `clock`. Results are advisory and never
    influence scoring.
    """

    def __init__(self, clock=None):
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self.partner_end_ms: float | None = None
        self.speech_start_ms: float | None = None
        self.target_duration_ms: float = 0.0
        self.pickup_ms: float | None = None
        self.last_sample: PacingSample | None = None

    def reset(self) -> None:
        """Forget the current line's timing (keeps the last sample for display)."""
        self.partner_end_ms = None
        self.speech_start_ms = None
        self.target_duration_ms = 0.0
        self.pickup_ms = None

    def new_line(self) -> None:
        """A different line: drop its predecessor's target and sample.

        The partner's end time survives, since the partner line is what the
        actor picks up from.
        """
        self.target_duration_ms = 0.0
        self.last_sample = None

    def partner_finished(self, now_ms: float | None = None) -> None:
        self.partner_end_ms = self._clock() if now_ms is None else now_ms
        self.speech_start_ms = None
        self.pickup_ms = None

    def begin_attempt(self) -> None:
        """Start a new listening attempt on the same line.

        A repeated attempt has no partner cue to pick up from, so pickup is
        only measured on the first.
        """
        if self.speech_start_ms is not None:
            self.partner_end_ms = None
        self.speech_start_ms = None
        self.pickup_ms = None

    def set_target(self, duration_ms: float, playback_rate: float = 1.0) -> None:
        """Reference duration of the line's audio at the rate it was played."""
        rate = playback_rate if playback_rate > 0 else 1.0
        self.target_duration_ms = duration_ms / rate if duration_ms > 0 else 0.0

    def speech_detected(self, now_ms: float | None = None) -> float | None:
        """Record the first speech of the utterance; returns pickup latency."""
        if self.speech_start_ms is not None:
            return self.pickup_ms
        now = self._clock() if now_ms is None else now_ms
        self.speech_start_ms = now
        if self.partner_end_ms is not None:
            self.pickup_ms = now - self.partner_end_ms
            logger.info("Cue pickup in %dms", self.pickup_ms)
        return self.pickup_ms

    def complete(self, now_ms: float | None = None) -> PacingSample | None:
        """Close the utterance and compute the duration delta.

        Returns None when no speech was detected or no target is known.
        """
        now = self._clock() if now_ms is None else now_ms
        if self.speech_start_ms is None or self.target_duration_ms <= 0:
            self.last_sample = None
            return None
        user_duration = now - self.speech_start_ms
        if user_duration <= 0:
            self.last_sample = None
            return None
        delta = (user_duration - self.target_duration_ms) / self.target_duration_ms * 100
        self.last_sample = PacingSample(
            user_duration_ms=user_duration,
            target_duration_ms=self.target_duration_ms,
            delta_percent=delta,
        )
        logger.info("Pacing %+.0f%% (%s)", delta, classify_pacing(delta).value)
        return self.last_sample
