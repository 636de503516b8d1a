"""Shared fixtures for scene partner tests."""

import pytest
from pydub import AudioSegment

from scene_partner.collaborators import RecognizerCallbacks
from scene_partner.models import Line, LineType


class ManualClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeRecognizer:
    """Records calls in order; transcripts are pushed by the test."""

    def __init__(self, connects: bool = True, listens: bool = True):
        self.callbacks = RecognizerCallbacks()
        self.connects = connects
        self.listens = listens
        self.calls: list[str] = []
        self.prompt = None

    def set_callbacks(self, callbacks):
        self.callbacks = callbacks

    async def start_session(self):
        self.calls.append("start_session")
        return self.connects

    async def stop_session(self):
        self.calls.append("stop_session")

    def start_listening(self):
        self.calls.append("start_listening")
        return self.listens

    def pause_listening(self):
        self.calls.append("pause_listening")

    def update_prompt(self, bias_text):
        self.prompt = bias_text

    def start_recording(self):
        self.calls.append("start_recording")

    async def stop_recording(self):
        self.calls.append("stop_recording")
        return None

    def say(self, text):
        self.callbacks.on_committed_transcript(text)

    def say_partial(self, text):
        self.callbacks.on_partial_transcript(text)


class FakeSynthesizer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests: list[tuple[str, str, float]] = []

    async def synthesize(self, text, voice, rate=1.0):
        self.requests.append((text, voice, rate))
        if self.fail:
            return None
        return f"/clips/{len(self.requests)}.mp3"


class FakePlayer:
    def __init__(self, error=None):
        self.played: list[tuple[str, float]] = []
        self.stops = 0
        self.error = error

    async def play(self, path, rate=1.0):
        self.played.append((path, rate))
        if self.error is not None:
            raise self.error

    def stop(self):
        self.stops += 1


class FakeCues:
    def __init__(self):
        self.played = []

    async def play(self, cue):
        self.played.append(cue)


class MemoryProgressStore:
    def __init__(self, saved=None):
        self.saved = dict(saved or {})
        self.deleted: list[str] = []

    def upsert(self, user_id, line_id, progress):
        self.saved[(user_id, line_id)] = progress

    def get(self, user_id, line_id):
        return self.saved.get((user_id, line_id))

    def delete(self, user_id, line_id):
        self.deleted.append(line_id)
        self.saved.pop((user_id, line_id), None)


class FakeAchievements:
    def __init__(self):
        self.completions: list[str] = []

    async def record_line_completion(self, user_id):
        self.completions.append(user_id)


@pytest.fixture
def tiny_mp3(tmp_path):
    """Generate a 100ms silent MP3 for testing."""
    path = tmp_path / "test.mp3"
    silence = AudioSegment.silent(duration=100)
    silence.export(str(path), format="mp3")
    return path


@pytest.fixture
def sample_lines():
    """A short scene: partner cue, direction, user line, partner, user line."""
    return [
        Line(id="1", character_name="HORATIO", content="Who goes there?", sort_order=0),
        Line(id="2", character_name="", content="A cold wind blows.", line_type=LineType.ACTION, sort_order=1),
        Line(id="3", character_name="HAMLET", content="I never said that", is_user_line=True, sort_order=2),
        Line(id="4", character_name="HORATIO", content="Then who did?", sort_order=3),
        Line(id="5", character_name="HAMLET", content="(quietly) Nobody at all", is_user_line=True, sort_order=4),
    ]


@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def cues():
    return FakeCues()


@pytest.fixture
def store():
    return MemoryProgressStore()


@pytest.fixture
def achievements():
    return FakeAchievements()
