"""Partner voice assignment and per-line speaking rate."""

import hashlib
import logging
import random

from scene_partner.constants import (
    NARRATOR_VOICE,
    PARTNER_VOICE,
    PARTNER_SPEED_MIN,
    PARTNER_SPEED_MAX,
)
from scene_partner.models import Line, PracticeSettings

logger = logging.getLogger(__name__)

# Hardcoded English voice pool (avoids network call at startup)
VOICE_POOL = [
    "en-US-AriaNeural",
    "en-US-DavisNeural",
    "en-US-TonyNeural",
    "en-US-JennyNeural",
    "en-US-SaraNeural",
    "en-GB-SoniaNeural",
    "en-GB-ThomasNeural",
    "en-AU-NatashaNeural",
    "en-CA-ClaraNeural",
    "en-CA-LiamNeural",
    "en-IN-NeerjaNeural",
    "en-IN-PrabhatNeural",
    "en-IE-EmilyNeural",
]


def _hash_voice(character: str, pool: list[str]) -> str:
    """Deterministic voice assignment via sha256 hash."""
    h = hashlib.sha256(character.encode()).hexdigest()
    idx = int(h, 16) % len(pool)
    return pool[idx]


def assign_voices(lines: list[Line], characters: dict | None = None) -> dict[str, str]:
    """Map each speaking character (lowercased) to a voice.

    Priority: the script's characters table → sha256 hash over the pool
    minus voices already taken. Stage directions use the narrator voice and
    are not included.
    """
    characters = characters or {}
    explicit = {}
    for name, info in characters.items():
        voice = info.get("voice") if isinstance(info, dict) else None
        if voice:
            explicit[name.lower()] = voice

    taken = set(explicit.values()) | {NARRATOR_VOICE}
    available_pool = [v for v in VOICE_POOL if v not in taken] or list(VOICE_POOL)

    voices = {}
    for line in lines:
        if line.is_direction:
            continue
        key = line.character_name.lower()
        if key in voices:
            continue
        voices[key] = explicit.get(key) or _hash_voice(key, available_pool)
    return voices


def voice_for(line: Line, voices: dict[str, str]) -> str:
    """Voice to speak a line with."""
    if line.is_direction:
        return NARRATOR_VOICE
    voice = voices.get(line.character_name.lower())
    if voice is None:
        logger.warning("No voice for %r, using %s", line.character_name, PARTNER_VOICE)
        return PARTNER_VOICE
    return voice


def partner_rate(settings: PracticeSettings, rng: random.Random | None = None) -> float:
    """Speaking rate for a partner line: the playback speed, optionally jittered."""
    rate = settings.playback_speed
    if settings.partner_speed_variation:
        rng = rng or random
        rate *= rng.uniform(PARTNER_SPEED_MIN, PARTNER_SPEED_MAX)
    return round(rate, 2)
