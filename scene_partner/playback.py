"""Clip playback through pydub with a bounded wait."""

import asyncio
import logging

from pydub import AudioSegment
from pydub.playback import play as pydub_play

from scene_partner.constants import PLAYBACK_SAFETY_MARGIN_MS
from scene_partner.errors import PlaybackFailure

logger = logging.getLogger(__name__)


def clip_duration_ms(path: str) -> int:
    """Length of an audio file in ms, 0 if it can't be decoded."""
    try:
        return len(AudioSegment.from_file(path))
    except Exception as e:
        logger.warning("Could not read duration of %s: %s", path, e)
        return 0


def change_speed(audio: AudioSegment, rate: float) -> AudioSegment:
    """Resample so the clip plays `rate` times faster (pitch follows)."""
    if rate <= 0 or rate == 1.0:
        return audio
    faster = audio._spawn(audio.raw_data, overrides={"frame_rate": int(audio.frame_rate * rate)})
    return faster.set_frame_rate(audio.frame_rate)


def safety_timeout_ms(duration_ms: int, rate: float = 1.0) -> float:
    """Longest wait for a clip before playback is treated as finished."""
    return duration_ms / (rate if rate > 0 else 1.0) + PLAYBACK_SAFETY_MARGIN_MS


class PydubPlayer:
    """Plays files or AudioSegments on a worker thread.

    The awaiting coroutine returns when the clip ends, when the clip length
    plus a safety margin has passed, or as soon as stop() is called. A
    stopped clip's worker thread is left to drain on its own.
    """

    def __init__(self):
        self._stopped: asyncio.Event | None = None

    async def play(self, path: str, rate: float = 1.0) -> None:
        try:
            audio = AudioSegment.from_file(path)
        except Exception as e:
            raise PlaybackFailure(f"Cannot decode {path}: {e}") from e
        await self.play_segment(change_speed(audio, rate))

    async def play_segment(self, audio: AudioSegment) -> None:
        timeout = safety_timeout_ms(len(audio)) / 1000
        self._stopped = asyncio.Event()
        worker = asyncio.ensure_future(asyncio.to_thread(pydub_play, audio))
        stopper = asyncio.ensure_future(self._stopped.wait())
        try:
            done, _ = await asyncio.wait(
                {worker, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()

        if worker in done:
            error = worker.exception()
            if error is not None:
                raise PlaybackFailure(str(error)) from error
        elif not self._stopped.is_set():
            logger.warning("Playback exceeded %.1fs, continuing", timeout)

    def stop(self) -> None:
        if self._stopped is not None:
            self._stopped.set()
