"""Data models for rehearsal sessions."""

from dataclasses import dataclass, field, fields
from enum import Enum

from scene_partner.constants import PACING_GOOD_PERCENT, PACING_CAUTION_PERCENT


class PracticeStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    CORRECT = "correct"
    WRONG = "wrong"
    SEGMENT_PLAYING = "segment_playing"
    NARRATING = "narrating"
    PARTNER_SPEAKING = "partner_speaking"
    USER_LISTEN = "user_listen"      # listen mode playing the user's own line


class LearningMode(str, Enum):
    LISTEN = "listen"
    PRACTICE = "practice"
    REPEAT = "repeat"                # progressive segment build


class DirectionsMode(str, Enum):
    SPOKEN = "spoken"
    SHOWN = "shown"
    MUTED = "muted"


class LineType(str, Enum):
    DIALOGUE = "dialogue"
    ACTION = "action"
    TRANSITION = "transition"


class WordResult(str, Enum):
    CORRECT = "correct"
    WRONG = "wrong"
    MISSING = "missing"


class PacingBand(str, Enum):
    GOOD = "good"
    CAUTION = "caution"
    POOR = "poor"


class SilenceVerdict(str, Enum):
    KEEP_LISTENING = "keep_listening"
    FINISH = "finish"
    NO_SPEECH_TIMEOUT = "no_speech_timeout"
    NUDGE = "nudge"


@dataclass
class Line:
    id: str
    character_name: str
    content: str                     # raw text, may include inline parentheticals
    is_user_line: bool = False
    line_type: LineType = LineType.DIALOGUE
    parenthetical: str | None = None
    sort_order: int = 0
    practice_segments: list[str] | None = None
    audio_path: str | None = None    # pre-generated clip, synthesized on demand otherwise

    @property
    def is_direction(self) -> bool:
        return self.line_type in (LineType.ACTION, LineType.TRANSITION)

    @classmethod
    def from_dict(cls, data: dict) -> "Line":
        """Build a Line from its script.json entry."""
        return cls(
            id=str(data["id"]),
            character_name=data.get("character_name", ""),
            content=data.get("content", ""),
            is_user_line=bool(data.get("is_user_line", False)),
            line_type=LineType(data.get("line_type", "dialogue")),
            parenthetical=data.get("parenthetical"),
            sort_order=int(data.get("sort_order", 0)),
            practice_segments=data.get("practice_segments"),
            audio_path=data.get("audio_path"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "character_name": self.character_name,
            "content": self.content,
            "is_user_line": self.is_user_line,
            "line_type": self.line_type.value,
            "parenthetical": self.parenthetical,
            "sort_order": self.sort_order,
            "practice_segments": self.practice_segments,
            "audio_path": self.audio_path,
        }


@dataclass
class LockedWordState:
    locked_count: int = 0            # expected words confirmed so far
    has_error: bool = False          # next unlocked expected word conflicts with the transcript
    locked_words: list[str] = field(default_factory=list)  # spoken tokens consumed by locking
    expected_index: int = 0          # next expected token to examine (skipped words included)


@dataclass
class AccuracyResult:
    is_correct: bool
    accuracy: int                    # percent of countable expected words matched
    missing_words: list[str] = field(default_factory=list)
    extra_words: list[str] = field(default_factory=list)
    wrong_words: list[str] = field(default_factory=list)   # '"said" instead of "expected"'


@dataclass
class WordByWordResult:
    results: list[WordResult]
    aligned_spoken: list[str]        # spoken token aligned to each expected word, "" if none


@dataclass
class SubsequenceMatch:
    matched_indices: set[int]
    matched_count: int
    coverage: float                  # 0.0–1.0 of countable expected words


@dataclass
class BuildProgress:
    current_segment_index: int = 0
    total_segments: int = 0
    highest_checkpoint: int = 0
    checkpoint_indices: list[int] = field(default_factory=list)
    is_complete: bool = False
    completed_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "BuildProgress":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ResumeOffer:
    line_id: str
    resume_index: int                # segment to continue from
    highest_checkpoint: int
    total_segments: int
    checkpoint_indices: list[int] = field(default_factory=list)

    @property
    def segment_number(self) -> int:
        """1-based segment number shown to the actor."""
        return self.resume_index + 1


@dataclass
class PracticeStats:
    correct: int = 0
    wrong: int = 0
    completed: set[str] = field(default_factory=set)


@dataclass
class LineAttempts:
    correct: int = 0
    wrong: int = 0
    accuracies: list[int] = field(default_factory=list)

    @property
    def mean_accuracy(self) -> float:
        if not self.accuracies:
            return 0.0
        return sum(self.accuracies) / len(self.accuracies)


@dataclass
class PacingSample:
    user_duration_ms: float
    target_duration_ms: float
    delta_percent: float

    @property
    def band(self) -> PacingBand:
        return classify_pacing(self.delta_percent)


def classify_pacing(delta_percent: float) -> PacingBand:
    """Band a pacing delta: good within 10%, caution within 25%, else poor."""
    magnitude = abs(delta_percent)
    if magnitude <= PACING_GOOD_PERCENT:
        return PacingBand.GOOD
    if magnitude <= PACING_CAUTION_PERCENT:
        return PacingBand.CAUTION
    return PacingBand.POOR


@dataclass
class PracticeSettings:
    play_sound_on_correct: bool = True
    play_sound_on_wrong: bool = True
    speak_error_feedback: bool = False
    auto_advance_on_correct: bool = True
    auto_advance_delay: int = 50         # ms
    auto_start_recording: bool = True
    silence_duration: int = 1500         # ms of silence that ends a mostly-complete utterance
    strict_mode: bool = False
    playback_speed: float = 1.0
    play_your_turn_cue: bool = True
    auto_repeat_on_wrong: bool = False
    play_my_line: bool = False
    wait_for_me_delay: int = 150         # ms between cue/playback and listening
    repeat_full_line_times: int = 1
    speak_character_names: bool = False
    speak_parentheticals: bool = False
    restart_on_fail: bool = False
    repeat_full_line_on_fail: bool = False
    random_order: bool = False
    partner_speed_variation: bool = False

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}
