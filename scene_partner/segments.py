"""Segment builder for progressive ("build") rehearsal of a single line.

A line is split into short segments and rehearsed cumulatively: the partner
plays segments 0..k and the actor repeats all of them, from the top, before
segment k+1 is added. Every fifth completed segment is a checkpoint the actor
can resume from on a later visit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from scene_partner.constants import (
    SEGMENT_CHUNK_WORDS,
    SEGMENT_MIN_WORDS,
    CHECKPOINT_INTERVAL,
    MAX_CONSECUTIVE_WRONGS,
    MAX_CONSECUTIVE_TIMEOUTS,
)
from scene_partner.matcher import strip_parentheticals
from scene_partner.models import BuildProgress, Line, ResumeOffer

logger = logging.getLogger(__name__)


def _word_count(text: str) -> int:
    return len(text.split())


def _merge_short(segments: list[str]) -> list[str]:
    """Fold segments shorter than SEGMENT_MIN_WORDS into a neighbour.

    Short segments join the previous one; a short leading segment joins the
    next one instead.
    """
    pending = [s for s in segments if s.strip()]
    if len(pending) <= 1:
        return pending

    merged: list[str] = []
    for i, segment in enumerate(pending):
        short = _word_count(segment) < SEGMENT_MIN_WORDS
        if short and merged:
            merged[-1] = f"{merged[-1]} {segment}"
        elif short and i < len(pending) - 1:
            pending[i + 1] = f"{segment} {pending[i + 1]}"
        else:
            merged.append(segment)
    return merged


def build_segments(line: Line) -> list[str]:
    """Split a line's spoken text into practice segments.

    Uses the line's curated practice_segments when present, otherwise
    fixed windows of SEGMENT_CHUNK_WORDS words. Parentheticals are stripped
    first; empty segments are dropped.
    """
    if line.practice_segments:
        segments = [strip_parentheticals(s) for s in line.practice_segments]
    else:
        words = strip_parentheticals(line.content).split()
        segments = [
            " ".join(words[i:i + SEGMENT_CHUNK_WORDS])
            for i in range(0, len(words), SEGMENT_CHUNK_WORDS)
        ]
    return _merge_short(segments)


def accumulated_text(segments: list[str], index: int) -> str:
    """Text of segments 0..index joined, the unit the actor repeats."""
    return " ".join(segments[:index + 1])


def is_checkpoint(next_index: int, total_segments: int) -> bool:
    """A transition to next_index is a checkpoint on every 5th segment short of the end."""
    return next_index % CHECKPOINT_INTERVAL == 0 and next_index < total_segments


class BuildStepKind(str, Enum):
    ADVANCE = "advance"
    CHECKPOINT = "checkpoint"
    REPEAT_FULL_LINE = "repeat_full_line"
    LINE_COMPLETE = "line_complete"
    RETRY = "retry"
    ROLLBACK = "rollback"
    STILL_THERE = "still_there"


@dataclass
class BuildStep:
    kind: BuildStepKind
    index: int          # segment index that will be rehearsed next
    text: str           # accumulated text to play next, "" when nothing plays


class BuildTracker:
    """Progress through one line's segments, plus the failure counters."""

    def __init__(self, segments: list[str]):
        self.segments = segments
        self.current_index = 0
        self.highest_checkpoint = 0
        self.checkpoint_indices: list[int] = []
        self.consecutive_wrongs = 0
        self.consecutive_timeouts = 0
        self.full_line_completions = 0
        self.line_complete = False
        self.still_there = False

    @property
    def total(self) -> int:
        return len(self.segments)

    def current_text(self) -> str:
        return accumulated_text(self.segments, self.current_index)

    def _step(self, kind: BuildStepKind) -> BuildStep:
        return BuildStep(kind=kind, index=self.current_index, text=self.current_text())

    def record_correct(self, repeat_full_line_times: int = 1) -> BuildStep:
        """Advance after a correct repetition of segments 0..current."""
        self.consecutive_wrongs = 0
        self.consecutive_timeouts = 0
        next_index = self.current_index + 1

        if next_index >= self.total:
            self.full_line_completions += 1
            if self.full_line_completions < max(1, repeat_full_line_times):
                return self._step(BuildStepKind.REPEAT_FULL_LINE)
            self.line_complete = True
            logger.info("Line built in full after %d repetition(s)", self.full_line_completions)
            return BuildStep(kind=BuildStepKind.LINE_COMPLETE, index=self.total, text="")

        self.current_index = next_index
        if is_checkpoint(next_index, self.total):
            self.highest_checkpoint = next_index
            if next_index not in self.checkpoint_indices:
                self.checkpoint_indices.append(next_index)
            logger.info("Checkpoint at segment %d/%d", next_index, self.total)
            return self._step(BuildStepKind.CHECKPOINT)
        return self._step(BuildStepKind.ADVANCE)

    def record_wrong(self) -> BuildStep:
        """Count a wrong repetition; the third in a row steps back one segment."""
        self.consecutive_timeouts = 0
        self.consecutive_wrongs += 1
        if self.consecutive_wrongs >= MAX_CONSECUTIVE_WRONGS and self.current_index > 0:
            self.current_index -= 1
            self.consecutive_wrongs = 0
            logger.info("Rolling back to segment %d", self.current_index)
            return self._step(BuildStepKind.ROLLBACK)
        return self._step(BuildStepKind.RETRY)

    def record_timeout(self) -> BuildStep:
        """Count a silent attempt; the third in a row suspends auto-retry."""
        self.consecutive_timeouts += 1
        if self.consecutive_timeouts >= MAX_CONSECUTIVE_TIMEOUTS:
            self.still_there = True
            return BuildStep(kind=BuildStepKind.STILL_THERE, index=self.current_index, text="")
        return self._step(BuildStepKind.RETRY)

    def acknowledge_still_there(self) -> BuildStep:
        """The actor is back; clear the prompt and retry the current segment."""
        self.still_there = False
        self.consecutive_timeouts = 0
        return self._step(BuildStepKind.RETRY)

    def progress(self) -> BuildProgress:
        """Snapshot for the progress store."""
        now = datetime.now(timezone.utc).isoformat()
        index = self.total if self.line_complete else self.current_index
        return BuildProgress(
            current_segment_index=index,
            total_segments=self.total,
            highest_checkpoint=self.highest_checkpoint,
            checkpoint_indices=list(self.checkpoint_indices),
            is_complete=self.line_complete,
            completed_at=now if self.line_complete else None,
            updated_at=now,
        )

    def resume_offer(self, line_id: str, saved: BuildProgress | None) -> ResumeOffer | None:
        """Offer to resume from saved progress, or None to start from the top.

        Only incomplete progress that reached a checkpoint is offered; the
        offer never starts playback on its own.
        """
        if saved is None or saved.is_complete or saved.highest_checkpoint <= 0 or not self.segments:
            return None
        return ResumeOffer(
            line_id=line_id,
            resume_index=min(saved.highest_checkpoint, self.total - 1),
            highest_checkpoint=saved.highest_checkpoint,
            total_segments=self.total,
            checkpoint_indices=list(saved.checkpoint_indices),
        )

    def resume_from(self, offer: ResumeOffer) -> BuildStep:
        self._reset_counters()
        self.current_index = offer.resume_index
        self.highest_checkpoint = offer.highest_checkpoint
        self.checkpoint_indices = list(offer.checkpoint_indices)
        return self._step(BuildStepKind.RETRY)

    def start_fresh(self) -> BuildStep:
        self._reset_counters()
        self.current_index = 0
        self.highest_checkpoint = 0
        self.checkpoint_indices = []
        return self._step(BuildStepKind.RETRY)

    def _reset_counters(self) -> None:
        self.consecutive_wrongs = 0
        self.consecutive_timeouts = 0
        self.full_line_completions = 0
        self.line_complete = False
        self.still_there = False
