"""Coverage-aware silence detection for a listening attempt."""

import asyncio
import logging
import time

from scene_partner.constants import (
    SILENCE_POLL_INTERVAL_MS,
    COVERAGE_THRESHOLD,
    PARTIAL_LINE_GRACE_MS,
    NO_SPEECH_CEILING_MS,
)
from scene_partner.matcher import strip_parentheticals
from scene_partner.models import SilenceVerdict

logger = logging.getLogger(__name__)


def coverage(expected_text: str, transcript: str) -> float:
    """Fraction of the expected line's words heard so far."""
    expected_words = len(strip_parentheticals(expected_text).split())
    spoken_words = len(transcript.split())
    return spoken_words / max(1, expected_words)


def silence_threshold_ms(line_coverage: float, configured_ms: int) -> int:
    """Silence that ends the utterance: short once most of the line is said.

    Actors pause mid-line, so below COVERAGE_THRESHOLD the longer
    PARTIAL_LINE_GRACE_MS applies instead of the configured duration.
    """
    if line_coverage >= COVERAGE_THRESHOLD:
        return configured_ms
    return PARTIAL_LINE_GRACE_MS


class SilenceMonitor:
    """Decides when the actor has finished speaking.

    Times are milliseconds from `clock` (monotonic by default). Build mode
    turns a silent attempt into a timeout; practice mode only nudges.
    """

    def __init__(self, expected_text: str, silence_duration_ms: int, build_mode: bool = False, clock=None):
        self.expected_text = expected_text
        self.silence_duration_ms = silence_duration_ms
        self.build_mode = build_mode
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self.last_speech_ms = self._clock()
        self.nudged = False

    def mark_speech(self, now_ms: float | None = None) -> None:
        """Reset the silence clock; called on every transcript update."""
        self.last_speech_ms = self._clock() if now_ms is None else now_ms
        self.nudged = False

    def evaluate(self, transcript: str, now_ms: float | None = None) -> SilenceVerdict:
        now = self._clock() if now_ms is None else now_ms
        silence_ms = now - self.last_speech_ms
        heard = transcript.strip()

        if heard:
            threshold = silence_threshold_ms(coverage(self.expected_text, heard), self.silence_duration_ms)
            if silence_ms > threshold:
                logger.info("Silence of %dms exceeded %dms, evaluating", silence_ms, threshold)
                return SilenceVerdict.FINISH
            return SilenceVerdict.KEEP_LISTENING

        if silence_ms > NO_SPEECH_CEILING_MS:
            if self.build_mode:
                return SilenceVerdict.NO_SPEECH_TIMEOUT
            if not self.nudged:
                self.nudged = True
                return SilenceVerdict.NUDGE
        return SilenceVerdict.KEEP_LISTENING

    async def run(self, get_transcript, on_verdict) -> None:
        """Poll until a terminal verdict, then hand it to on_verdict.

        Nudges are reported without stopping. Cancel the task to stop early.
        """
        interval = SILENCE_POLL_INTERVAL_MS / 1000
        while True:
            await asyncio.sleep(interval)
            verdict = self.evaluate(get_transcript())
            if verdict == SilenceVerdict.KEEP_LISTENING:
                continue
            if verdict == SilenceVerdict.NUDGE:
                on_verdict(verdict)
                continue
            on_verdict(verdict)
            return
