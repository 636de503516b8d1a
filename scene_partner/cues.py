"""Short audible cues (correct, wrong, checkpoint, your turn) synthesized with numpy."""

import logging
from enum import Enum

import numpy as np
from pydub import AudioSegment

from scene_partner.constants import CUE_SAMPLE_RATE, CUE_GAIN_DB

logger = logging.getLogger(__name__)


class Cue(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    CHECKPOINT = "checkpoint"
    LINE_COMPLETE = "line_complete"
    YOUR_TURN = "your_turn"


# (frequency Hz, start ms, duration ms, waveform)
CUE_NOTES = {
    Cue.CORRECT: [(659, 0, 100, "sine"), (880, 100, 150, "sine")],                  # E5 → A5
    Cue.INCORRECT: [(400, 0, 150, "sawtooth"), (300, 120, 200, "sawtooth")],
    Cue.CHECKPOINT: [(523, 0, 100, "sine"), (659, 100, 100, "sine"), (784, 200, 150, "sine")],
    Cue.LINE_COMPLETE: [
        (523, 0, 80, "sine"), (659, 80, 80, "sine"),
        (784, 160, 80, "sine"), (1047, 240, 200, "sine"),                          # C6 held
    ],
    Cue.YOUR_TURN: [(880, 0, 60, "sine"), (880, 100, 80, "sine")],
}


def _note(frequency: float, duration_ms: int, waveform: str) -> np.ndarray:
    """One note with an exponential decay envelope, as float samples in [-1, 1]."""
    t = np.linspace(0, duration_ms / 1000, int(CUE_SAMPLE_RATE * duration_ms / 1000), endpoint=False)
    if waveform == "sawtooth":
        wave = 2.0 * (t * frequency - np.floor(0.5 + t * frequency))
    elif waveform == "sine":
        wave = np.sin(2 * np.pi * frequency * t)
    else:
        raise ValueError(f"Unknown waveform: {waveform}")
    envelope = np.exp(-4.6 * t / (duration_ms / 1000))  # decays to ~1% by the end
    return wave * envelope


def render_cue(cue: Cue) -> AudioSegment:
    """Mix a cue's notes at their offsets into a mono AudioSegment."""
    notes = CUE_NOTES[cue]
    total_ms = max(start + duration for _, start, duration, _ in notes)
    mix = np.zeros(int(CUE_SAMPLE_RATE * total_ms / 1000))
    for frequency, start, duration, waveform in notes:
        samples = _note(frequency, duration, waveform)
        offset = int(CUE_SAMPLE_RATE * start / 1000)
        mix[offset:offset + len(samples)] += samples[:len(mix) - offset]

    peak = np.max(np.abs(mix))
    if peak > 0:
        mix = mix / peak * 0.8
    samples = (mix * 32767).astype(np.int16)

    audio = AudioSegment(
        data=samples.tobytes(),
        sample_width=2,
        frame_rate=CUE_SAMPLE_RATE,
        channels=1,
    )
    return audio + CUE_GAIN_DB


class CuePlayer:
    """Renders each cue once and plays it through an AudioPlayer-like object."""

    def __init__(self, player):
        self.player = player
        self._rendered: dict[Cue, AudioSegment] = {}

    def render(self, cue: Cue) -> AudioSegment:
        if cue not in self._rendered:
            self._rendered[cue] = render_cue(cue)
        return self._rendered[cue]

    async def play(self, cue: Cue) -> None:
        try:
            await self.player.play_segment(self.render(cue))
        except Exception as e:
            logger.warning("Cue %s failed to play: %s", cue.value, e)
