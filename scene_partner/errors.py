"""Rehearsal error taxonomy."""


class RehearsalError(Exception):
    """Base class for recoverable rehearsal failures."""


class ConnectionLost(RehearsalError):
    """The speech-recognition stream dropped and could not be re-established."""


class NoSpeechDetected(RehearsalError):
    """The silence ceiling was reached with an empty transcript."""


class UtteranceMismatch(RehearsalError):
    """A finished utterance scored wrong against the expected text."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class PlaybackFailure(RehearsalError):
    """Synthesis or playback of a clip failed."""


class ScriptError(RehearsalError):
    """A script artifact is missing or malformed."""
