"""Interfaces of the services a rehearsal session drives."""

from dataclasses import dataclass
from typing import Callable, Protocol

from scene_partner.models import BuildProgress


@dataclass
class RecognizerCallbacks:
    """Push callbacks a speech recognizer invokes, in arrival order."""
    on_partial_transcript: Callable[[str], None] | None = None
    on_committed_transcript: Callable[[str], None] | None = None
    on_audio_level: Callable[[float], None] | None = None
    on_session_started: Callable[[], None] | None = None
    on_disconnect: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class SpeechRecognizer(Protocol):
    """Streaming speech-to-text, kept connected and paused between utterances."""

    def set_callbacks(self, callbacks: RecognizerCallbacks) -> None: ...

    async def start_session(self) -> bool: ...

    async def stop_session(self) -> None: ...

    def start_listening(self) -> bool: ...

    def pause_listening(self) -> None: ...

    def update_prompt(self, bias_text: str) -> None: ...

    def start_recording(self) -> None: ...

    async def stop_recording(self) -> bytes | None: ...


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str, voice: str, rate: float = 1.0) -> str | None:
        """Return a path to playable audio, or None if synthesis failed."""
        ...


class AudioPlayer(Protocol):
    async def play(self, path: str, rate: float = 1.0) -> None: ...

    def stop(self) -> None: ...


class ProgressStore(Protocol):
    def upsert(self, user_id: str, line_id: str, progress: BuildProgress) -> None: ...

    def get(self, user_id: str, line_id: str) -> BuildProgress | None: ...

    def delete(self, user_id: str, line_id: str) -> None: ...


class AchievementTracker(Protocol):
    async def record_line_completion(self, user_id: str) -> None: ...
