"""Partner speech synthesis via edge-tts with retry logic and a clip cache."""

import asyncio
import hashlib
import logging
import os

import edge_tts

from scene_partner.constants import TTS_RETRY_COUNT, TTS_RETRY_BASE_DELAY

logger = logging.getLogger(__name__)


def rate_string(rate: float) -> str:
    """Convert a playback multiplier to edge-tts' relative rate, 1.15 → "+15%"."""
    percent = round((rate - 1.0) * 100)
    return f"{percent:+d}%"


def clip_filename(text: str, voice: str, rate: float) -> str:
    """Stable cache filename for a (voice, rate, text) clip."""
    digest = hashlib.sha256(f"{voice}|{rate_string(rate)}|{text}".encode()).hexdigest()[:16]
    voice_slug = voice.replace("-", "_").lower()
    return f"{voice_slug}_{digest}.mp3"


async def generate_clip(text: str, voice: str, output_path: str, rate: float = 1.0) -> None:
    """Generate a single TTS clip with retry logic.

    Retries on network errors, HTTP errors, or 0-byte output files, backing
    off exponentially between attempts. Raises the last error once retries
    are exhausted.
    """
    last_error = None
    for attempt in range(TTS_RETRY_COUNT):
        try:
            communicate = edge_tts.Communicate(text, voice, rate=rate_string(rate))
            await communicate.save(output_path)

            if os.path.exists(output_path) and os.path.getsize(output_path) > 0:
                return

            last_error = Exception(f"TTS produced 0-byte file for: {text[:50]}...")
        except Exception as e:
            last_error = e

        if attempt < TTS_RETRY_COUNT - 1:
            delay = TTS_RETRY_BASE_DELAY * (2 ** attempt)
            logger.warning("TTS attempt %d failed (%s), retrying in %.1fs", attempt + 1, last_error, delay)
            await asyncio.sleep(delay)

    raise last_error


class EdgeSynthesizer:
    """Speech synthesizer that caches clips under cache_dir.

    Failures are logged and reported as None so a missing clip never blocks
    the rehearsal.
    """

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir
        os.makedirs(cache_dir, exist_ok=True)

    async def synthesize(self, text: str, voice: str, rate: float = 1.0) -> str | None:
        if not text or not text.strip():
            logger.warning("Skipping synthesis of empty text")
            return None

        output_path = os.path.join(self.cache_dir, clip_filename(text, voice, rate))
        if os.path.exists(output_path) and os.path.getsize(output_path) > 0:
            return output_path

        try:
            await generate_clip(text, voice, output_path, rate=rate)
        except Exception as e:
            logger.warning("Synthesis failed for %r with %s: %s", text[:50], voice, e)
            return None
        return output_path
