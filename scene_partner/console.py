"""Keyboard stand-in for a streaming speech recognizer.

Each line typed while listening is delivered as a committed transcript.
Lines starting with "/" are commands and are delivered whenever typed.
"""

import asyncio
import logging
import sys
import threading

from scene_partner.collaborators import RecognizerCallbacks

logger = logging.getLogger(__name__)


class ConsoleRecognizer:
    def __init__(self, on_command=None, stream=None):
        self.callbacks = RecognizerCallbacks()
        self.on_command = on_command
        self.stream = stream or sys.stdin
        self.connected = False
        self.listening = False
        self.recording = False
        self.prompt = ""
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reader: threading.Thread | None = None
        self._typed: list[str] = []

    def set_callbacks(self, callbacks: RecognizerCallbacks) -> None:
        self.callbacks = callbacks

    async def start_session(self) -> bool:
        self._loop = asyncio.get_running_loop()
        if self._reader is None:
            # Daemon thread so a pending readline never holds up exit
            self._reader = threading.Thread(target=self._read_lines, daemon=True)
            self._reader.start()
        self.connected = True
        if self.callbacks.on_session_started:
            self.callbacks.on_session_started()
        return True

    async def stop_session(self) -> None:
        self.connected = False
        self.listening = False

    def start_listening(self) -> bool:
        if not self.connected:
            return False
        self.listening = True
        return True

    def pause_listening(self) -> None:
        self.listening = False

    def update_prompt(self, bias_text: str) -> None:
        self.prompt = bias_text

    def start_recording(self) -> None:
        self.recording = True
        self._typed = []

    async def stop_recording(self) -> bytes | None:
        """Typed input has no audio; returns the typed text as UTF-8 for the record."""
        self.recording = False
        if not self._typed:
            return None
        return "\n".join(self._typed).encode()

    def _read_lines(self) -> None:
        for raw in self.stream:
            if self._loop is None or self._loop.is_closed():
                return
            self._loop.call_soon_threadsafe(self.deliver, raw.rstrip("\n"))
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stream_closed)

    def deliver(self, text: str) -> None:
        """Route one typed line: a command, a transcript, or nothing."""
        stripped = text.strip()
        if stripped.startswith("/") or not stripped:
            if self.on_command:
                self.on_command(stripped.lstrip("/").lower())
            return
        if not self.listening:
            logger.info("Not listening, ignored: %s", stripped)
            return
        if self.recording:
            self._typed.append(stripped)
        if self.callbacks.on_audio_level:
            self.callbacks.on_audio_level(1.0)
        if self.callbacks.on_committed_transcript:
            self.callbacks.on_committed_transcript(stripped)

    def _stream_closed(self) -> None:
        self.connected = False
        self.listening = False
        if self.on_command:
            self.on_command("quit")
