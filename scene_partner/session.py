"""The rehearsal session: plays the partner, listens to the actor, scores, advances.

One PracticeSession owns the current line and everything derived from it.
Each play-then-listen cycle is tagged with a token from SessionContext;
every continuation (timers, playback completions, silence verdicts) checks
its token is still current before acting, so a skip or mode change makes
stale work a no-op.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field

from scene_partner.collaborators import RecognizerCallbacks
from scene_partner.constants import (
    BUILD_RETRY_DELAY_MS,
    BUILD_TIMEOUT_DELAY_MS,
    DEFAULT_USER,
    FAIL_RETRY_DELAY_MS,
    FULL_LINE_REPEAT_DELAY_MS,
    MAX_CONSECUTIVE_LINE_FAILS,
    MAX_LINE_FAILS_BEFORE_RESTART,
    NARRATOR_VOICE,
    RECONNECT_DELAY_MS,
    SHOWN_DIRECTION_PAUSE_MS,
    STALE_TRANSCRIPT_MS,
)
from scene_partner.cues import Cue
from scene_partner.errors import ConnectionLost, NoSpeechDetected, PlaybackFailure, UtteranceMismatch
from scene_partner.matcher import (
    bias_set,
    create_fresh_state,
    is_fully_locked,
    match_update,
    score_accuracy,
    strip_parentheticals,
    subsequence_match,
    tokenize,
    word_by_word_result,
)
from scene_partner.models import (
    AccuracyResult,
    BuildProgress,
    DirectionsMode,
    LearningMode,
    Line,
    LineAttempts,
    PacingSample,
    PracticeSettings,
    PracticeStats,
    PracticeStatus,
    ResumeOffer,
    SilenceVerdict,
    WordResult,
)
from scene_partner.pacing import PacingTracker
from scene_partner.playback import clip_duration_ms
from scene_partner.segments import BuildStepKind, BuildTracker, build_segments
from scene_partner.silence import SilenceMonitor
from scene_partner.voices import assign_voices, partner_rate, voice_for

logger = logging.getLogger(__name__)


async def _pause(ms: float) -> None:
    await asyncio.sleep(ms / 1000)


def error_message(result: AccuracyResult) -> str:
    """Short feedback for a wrong utterance: first wrong word, else first missing word."""
    if result.wrong_words:
        return result.wrong_words[0]
    if result.missing_words:
        return f'Missing: "{result.missing_words[0]}"'
    return "Try again"


class SessionContext:
    """Cycle token plus the tasks owned by the session."""

    def __init__(self):
        self.token = 0
        self.silence_task: asyncio.Task | None = None
        self.tasks: set[asyncio.Task] = set()
        self.background: set[asyncio.Task] = set()

    def next_token(self) -> int:
        self.token += 1
        return self.token

    def is_current(self, token: int) -> bool:
        return token == self.token

    def spawn(self, coro) -> asyncio.Task:
        """Run a continuation owned by the current cycle."""
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def fire_and_forget(self, coro, what: str) -> asyncio.Task:
        """Run work whose failure is logged and never reaches the session."""

        async def guarded():
            try:
                return await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s failed: %s", what, e)

        task = asyncio.ensure_future(guarded())
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session task failed", exc_info=task.exception())

    def cancel_silence(self) -> None:
        if self.silence_task is not None:
            self.silence_task.cancel()
            self.silence_task = None

    def cancel_pending(self) -> None:
        """Cancel every continuation except the one doing the cancelling."""
        self.cancel_silence()
        current = asyncio.current_task()
        for task in list(self.tasks):
            if task is not current:
                task.cancel()

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget work."""
        if self.background:
            await asyncio.gather(*self.background, return_exceptions=True)


class SceneNavigator:
    """Order in which a scene's lines are visited.

    Sequential order plays every line. Random order and weak-line drills
    visit only user lines, each preceded by its cue line (the partner line
    just before it).
    """

    def __init__(self, lines: list[Line], random_order: bool = False, loop: bool = False,
                 drill_ids: list[str] | None = None, rng: random.Random | None = None):
        self.lines = lines
        self.random_order = random_order
        self.loop = loop
        self.drill_ids = drill_ids
        self.rng = rng or random.Random()
        self.queue: list[int] = []
        self.position = 0
        self.restart()

    def _cue_index(self, index: int) -> int | None:
        prev = index - 1
        while prev >= 0 and self.lines[prev].is_direction:
            prev -= 1
        if prev >= 0 and not self.lines[prev].is_user_line:
            return prev
        return None

    def _with_cues(self, user_indices: list[int]) -> list[int]:
        queue = []
        for index in user_indices:
            cue = self._cue_index(index)
            if cue is not None:
                queue.append(cue)
            queue.append(index)
        return queue

    def _build_queue(self) -> list[int]:
        if self.drill_ids is not None:
            wanted = set(self.drill_ids)
            user_indices = [i for i, line in enumerate(self.lines) if line.id in wanted]
            user_indices.sort(key=lambda i: self.drill_ids.index(self.lines[i].id))
            return self._with_cues(user_indices)
        if self.random_order:
            user_indices = [i for i, line in enumerate(self.lines) if line.is_user_line]
            # Fisher–Yates
            for i in range(len(user_indices) - 1, 0, -1):
                j = self.rng.randint(0, i)
                user_indices[i], user_indices[j] = user_indices[j], user_indices[i]
            return self._with_cues(user_indices)
        return list(range(len(self.lines)))

    def restart(self) -> Line | None:
        self.queue = self._build_queue()
        self.position = 0
        return self.current()

    def current(self) -> Line | None:
        if self.position < len(self.queue):
            return self.lines[self.queue[self.position]]
        return None

    def advance(self) -> Line | None:
        """Move to the next line; None at the end of a non-looping scene."""
        self.position += 1
        if self.position >= len(self.queue) and self.loop and self.queue:
            return self.restart()
        return self.current()

    def jump_to(self, line_id: str) -> Line | None:
        for position, index in enumerate(self.queue):
            if self.lines[index].id == line_id:
                self.position = position
                return self.current()
        return None


@dataclass
class SessionSnapshot:
    """What a front end needs to render the session."""
    status: PracticeStatus
    mode: LearningMode
    line: Line | None
    prompt_text: str = ""                # text the actor is expected to say now
    transcript: str = ""
    matched_word_count: int = 0
    has_error: bool = False
    word_results: list[WordResult] = field(default_factory=list)
    segments: list[str] = field(default_factory=list)
    current_segment_index: int = 0
    build_progress: BuildProgress | None = None
    pacing: PacingSample | None = None
    pickup_ms: float | None = None
    coverage: float = 0.0
    still_there: bool = False
    nudge: bool = False
    resume_offer: ResumeOffer | None = None
    error_message: str | None = None
    last_error: str | None = None
    awaiting_start: bool = False
    paused: bool = False                 # stopped on the current line until play()
    stats: PracticeStats | None = None
    scene_complete: bool = False


class PracticeSession:
    def __init__(
        self,
        lines: list[Line],
        settings: PracticeSettings,
        recognizer,
        synthesizer,
        player,
        progress_store=None,
        achievements=None,
        user_id: str = DEFAULT_USER,
        mode: LearningMode = LearningMode.PRACTICE,
        directions_mode: DirectionsMode = DirectionsMode.SPOKEN,
        cues=None,
        clock=None,
        characters: dict | None = None,
        attempt_log=None,
        navigator: SceneNavigator | None = None,
        on_update=None,
        clip_duration=clip_duration_ms,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.recognizer = recognizer
        self.synthesizer = synthesizer
        self.player = player
        self.progress_store = progress_store
        self.achievements = achievements
        self.user_id = user_id
        self.mode = mode
        self.directions_mode = directions_mode
        self.cues = cues
        self.attempt_log = attempt_log
        self.on_update = on_update
        self.clip_duration = clip_duration
        self.rng = rng or random.Random()
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self.context = SessionContext()
        self.pacing = PacingTracker(clock=self._clock)

        self.status = PracticeStatus.IDLE
        self.running = False
        self.scene_complete = False
        self.done = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self.line_attempts: dict[str, LineAttempts] = {}
        self.consecutive_line_fails = 0

        self._characters = characters or {}
        self.set_lines(lines, navigator)
        self.recognizer.set_callbacks(RecognizerCallbacks(
            on_partial_transcript=self.on_partial_transcript,
            on_committed_transcript=self.on_committed_transcript,
            on_session_started=self._on_session_started,
            on_disconnect=self.on_disconnect,
            on_error=self.on_error,
        ))

    # --- Script ---

    def set_lines(self, lines: list[Line], navigator: SceneNavigator | None = None) -> None:
        """Switch to a script; stats start over."""
        self.lines = lines
        self.navigator = navigator or SceneNavigator(
            lines, random_order=self.settings.random_order, rng=self.rng
        )
        self.voices = assign_voices(lines, self._characters)
        names = {line.character_name for line in lines if not line.is_direction}
        names |= set(self._characters)
        self.bias_tokens = bias_set(names)
        self.bias_text = " ".join(sorted(names))
        self.stats = PracticeStats()
        self.scene_complete = False
        self._reset_line_state()

    def _reset_line_state(self) -> None:
        self.locked = create_fresh_state()
        self.committed = ""
        self.partial = ""
        self.expected_text = ""
        self.listening = False
        self.listen_started_ms = 0.0
        self.monitor: SilenceMonitor | None = None
        self.word_results: list[WordResult] = []
        self.error_message: str | None = None
        self.last_error: Exception | None = None
        self.nudge = False
        self.tracker: BuildTracker | None = None
        self.resume_offer: ResumeOffer | None = None
        self.paused = False
        self._pending_listen: tuple[int, str] | None = None

    @property
    def current_line(self) -> Line | None:
        return self.navigator.current()

    @property
    def transcript(self) -> str:
        return f"{self.committed} {self.partial}".strip()

    # --- Outward state ---

    def snapshot(self) -> SessionSnapshot:
        tracker = self.tracker
        coverage = 0.0
        if self.expected_text and self.transcript:
            coverage = subsequence_match(self.expected_text, self.transcript, self.bias_tokens).coverage
        return SessionSnapshot(
            status=self.status,
            mode=self.mode,
            line=self.current_line,
            prompt_text=self.expected_text,
            transcript=self.transcript,
            matched_word_count=self.locked.locked_count,
            has_error=self.locked.has_error,
            word_results=list(self.word_results),
            segments=list(tracker.segments) if tracker else [],
            current_segment_index=tracker.current_index if tracker else 0,
            build_progress=tracker.progress() if tracker else None,
            pacing=self.pacing.last_sample,
            pickup_ms=self.pacing.pickup_ms,
            coverage=coverage,
            still_there=bool(tracker and tracker.still_there),
            nudge=self.nudge,
            resume_offer=self.resume_offer,
            error_message=self.error_message,
            last_error=str(self.last_error) if self.last_error else None,
            awaiting_start=self._pending_listen is not None,
            paused=self.paused,
            stats=self.stats,
            scene_complete=self.scene_complete,
        )

    def _notify(self) -> None:
        if self.on_update:
            self.on_update(self.snapshot())

    def _set_status(self, status: PracticeStatus) -> None:
        self.status = status
        self._notify()

    # --- Lifecycle ---

    async def start(self) -> bool:
        """Connect the recognizer and start at the navigator's current line."""
        self.running = True
        self._set_status(PracticeStatus.CONNECTING)
        connected = False
        try:
            connected = await self.recognizer.start_session()
        except Exception as e:
            logger.warning("Recognizer failed to start: %s", e)
        if not connected and self.mode != LearningMode.LISTEN:
            self._connection_lost("Could not connect to the speech recognizer")
            self.running = False
            return False
        self._enter_line()
        return True

    def stop(self) -> None:
        """Stop playback and listening; the session stays on the current line."""
        self.running = False
        self._halt()
        self.context.next_token()
        self._pending_listen = None
        self._set_status(PracticeStatus.IDLE)

    async def shutdown(self) -> None:
        self.stop()
        await self.context.drain()
        try:
            await self.recognizer.stop_session()
        except Exception as e:
            logger.warning("Recognizer did not close cleanly: %s", e)
        self.done.set()

    async def stop_listening(self) -> None:
        """Pause capture, stop recording, then cancel the silence task and continuations."""
        self.listening = False
        self.recognizer.pause_listening()
        await self.recognizer.stop_recording()
        self.context.cancel_pending()

    def _halt(self) -> None:
        """Synchronous stop of everything the current cycle started."""
        if self.listening:
            self.listening = False
            self.recognizer.pause_listening()
            self.context.fire_and_forget(self.recognizer.stop_recording(), "Stopping recording")
        self.player.stop()
        self.context.cancel_pending()

    # --- Navigation ---

    def _enter_line(self, reset_failures: bool = True) -> None:
        self._halt()
        token = self.context.next_token()
        self._reset_line_state()
        self.pacing.new_line()
        if reset_failures:
            self.consecutive_line_fails = 0
        line = self.current_line
        if line is None:
            self._finish_scene()
            return
        self.running = True
        self.context.spawn(self._run_line(token, line))

    def _advance(self) -> None:
        self.navigator.advance()
        self._enter_line()

    def _finish_scene(self) -> None:
        logger.info("Scene complete: %d correct, %d wrong", self.stats.correct, self.stats.wrong)
        self.running = False
        self.scene_complete = True
        self._set_status(PracticeStatus.IDLE)
        self.done.set()

    def _restart_scene(self) -> None:
        """Back to the first line, idle until play() is called."""
        logger.info("Restarting scene after %d failed attempt(s)", self.consecutive_line_fails)
        self._halt()
        self.context.next_token()
        self.navigator.restart()
        self._reset_line_state()
        self.pacing.reset()
        self.consecutive_line_fails = 0
        self.paused = True
        self._set_status(PracticeStatus.IDLE)

    def play(self) -> None:
        """Start the current line after the session stopped to wait for the actor."""
        if self.paused:
            self._enter_line()

    def skip(self) -> None:
        """Abandon the current line and move on."""
        self._halt()
        self._advance()

    def retry(self) -> None:
        """Replay the current line from the top."""
        self._enter_line()

    def change_mode(self, mode: LearningMode) -> None:
        logger.info("Switching to %s mode", mode.value)
        self.mode = mode
        self._enter_line()

    def listen(self) -> None:
        """Start a listening attempt that is waiting on the actor (auto start off)."""
        if self._pending_listen is None:
            return
        token, expected = self._pending_listen
        self._pending_listen = None
        if self.context.is_current(token):
            self.context.spawn(self._begin_listening(token, expected, manual=True))

    def resume(self) -> None:
        """Accept the resume offer and continue building from its checkpoint."""
        if self.resume_offer is None or self.tracker is None:
            return
        self.tracker.resume_from(self.resume_offer)
        self.resume_offer = None
        self._start_build_cycle()

    def start_fresh(self) -> None:
        """Decline the resume offer: forget saved progress and build from segment 1."""
        if self.tracker is None:
            return
        line = self.current_line
        self.tracker.start_fresh()
        self.resume_offer = None
        if self.progress_store is not None and line is not None:
            self._persist("Deleting build progress", self.progress_store.delete, self.user_id, line.id)
        self._start_build_cycle()

    def resume_after_still_there(self) -> None:
        if self.tracker is None or not self.tracker.still_there:
            return
        self.tracker.acknowledge_still_there()
        self._start_build_cycle()

    def _start_build_cycle(self) -> None:
        self._halt()
        token = self.context.next_token()
        self.context.spawn(self._build_cycle(token))

    # --- Playback ---

    async def _play_path(self, path: str, rate: float = 1.0) -> None:
        try:
            await self.player.play(path, rate)
        except PlaybackFailure as e:
            logger.warning("Playback failed, continuing: %s", e)

    async def _speak(self, text: str, voice: str, rate: float = 1.0) -> None:
        if not text.strip():
            return
        path = await self.synthesizer.synthesize(text, voice, rate)
        if path:
            await self._play_path(path)

    async def _play_line(self, line: Line, rate: float) -> None:
        if line.audio_path:
            await self._play_path(line.audio_path, rate)
        else:
            await self._speak(strip_parentheticals(line.content), voice_for(line, self.voices), rate)

    async def _cue(self, cue: Cue) -> None:
        if self.cues is not None:
            await self.cues.play(cue)

    async def _load_pacing_target(self, line: Line) -> None:
        """Reference duration for the actor's line, from its own audio or a synthesized read."""
        rate = self.settings.playback_speed
        if line.audio_path:
            path = line.audio_path
        else:
            path = await self.synthesizer.synthesize(
                strip_parentheticals(line.content), voice_for(line, self.voices), rate
            )
            rate = 1.0
        if path:
            duration = await asyncio.to_thread(self.clip_duration, path)
            if self.current_line is line:
                self.pacing.set_target(duration, rate)

    # --- Line flows ---

    async def _run_line(self, token: int, line: Line) -> None:
        logger.info("Line %s: %s (%s mode)", line.id, line.character_name, self.mode.value)
        if line.is_direction:
            await self._run_direction(token, line)
        elif not line.is_user_line:
            await self._run_partner_line(token, line)
        elif self.mode == LearningMode.LISTEN:
            if self.settings.play_my_line:
                self._set_status(PracticeStatus.USER_LISTEN)
                await self._play_line(line, self.settings.playback_speed)
        elif self.mode == LearningMode.PRACTICE:
            await self._run_practice_line(token, line)
            return
        elif self.mode == LearningMode.REPEAT:
            await self._run_build_line(token, line)
            return
        else:
            raise ValueError(f"Unknown learning mode: {self.mode}")

        if self.context.is_current(token):
            self._advance()

    async def _run_direction(self, token: int, line: Line) -> None:
        if self.directions_mode == DirectionsMode.MUTED:
            return
        self._set_status(PracticeStatus.NARRATING)
        if self.directions_mode == DirectionsMode.SPOKEN:
            await self._speak(strip_parentheticals(line.content) or line.content, NARRATOR_VOICE,
                              self.settings.playback_speed)
        elif self.directions_mode == DirectionsMode.SHOWN:
            await _pause(SHOWN_DIRECTION_PAUSE_MS)
        else:
            raise ValueError(f"Unknown directions mode: {self.directions_mode}")

    async def _run_partner_line(self, token: int, line: Line) -> None:
        self._set_status(PracticeStatus.PARTNER_SPEAKING)
        speed = self.settings.playback_speed
        if self.settings.speak_character_names:
            await self._speak(line.character_name.title(), NARRATOR_VOICE, speed)
            if not self.context.is_current(token):
                return
        if self.settings.speak_parentheticals and line.parenthetical:
            await self._speak(line.parenthetical, NARRATOR_VOICE, speed)
            if not self.context.is_current(token):
                return
        await self._play_line(line, partner_rate(self.settings, self.rng))
        if self.context.is_current(token):
            self.pacing.partner_finished()

    async def _your_turn(self, token: int) -> bool:
        """Cue and wait-for-me delay before the actor speaks; False if the cycle went stale."""
        if self.settings.play_your_turn_cue:
            await self._cue(Cue.YOUR_TURN)
        if self.settings.wait_for_me_delay > 0:
            await _pause(self.settings.wait_for_me_delay)
        return self.context.is_current(token)

    async def _run_practice_line(self, token: int, line: Line) -> None:
        expected = strip_parentheticals(line.content)
        if not tokenize(expected):
            self._advance()
            return
        self.expected_text = expected
        if not await self._your_turn(token):
            return

        if self.settings.play_my_line:
            self._set_status(PracticeStatus.USER_LISTEN)
            await self._play_line(line, self.settings.playback_speed)
            if self.context.is_current(token):
                self._advance()
            return

        self.context.fire_and_forget(self._load_pacing_target(line), "Loading pacing target")
        await self._begin_listening(token, expected)

    async def _run_build_line(self, token: int, line: Line) -> None:
        self.tracker = BuildTracker(build_segments(line))
        if not self.tracker.segments:
            self._advance()
            return

        saved = None
        if self.progress_store is not None:
            try:
                async with self._write_lock:
                    saved = await asyncio.to_thread(self.progress_store.get, self.user_id, line.id)
            except Exception as e:
                logger.warning("Could not load build progress for %s: %s", line.id, e)
        if not self.context.is_current(token):
            return

        offer = self.tracker.resume_offer(line.id, saved)
        if offer is not None:
            logger.info("Offering resume of %s at segment %d/%d",
                        line.id, offer.segment_number, offer.total_segments)
            self.resume_offer = offer
            self._set_status(PracticeStatus.IDLE)
            return
        await self._build_cycle(token)

    async def _build_cycle(self, token: int) -> None:
        """Play segments 0..current, then listen for the actor to repeat them."""
        line = self.current_line
        tracker = self.tracker
        if line is None or tracker is None:
            return
        text = tracker.current_text()
        self.expected_text = text
        self.word_results = []
        self._set_status(PracticeStatus.SEGMENT_PLAYING)
        await self._speak(text, voice_for(line, self.voices), self.settings.playback_speed)
        if not self.context.is_current(token):
            return
        if self.settings.wait_for_me_delay > 0:
            await _pause(self.settings.wait_for_me_delay)
        if self.context.is_current(token):
            await self._begin_listening(token, text)

    # --- Listening ---

    async def _begin_listening(self, token: int, expected: str, manual: bool = False) -> None:
        if not self.settings.auto_start_recording and not manual:
            self._pending_listen = (token, expected)
            self._set_status(PracticeStatus.IDLE)
            return

        self._set_status(PracticeStatus.CONNECTING)
        self.recognizer.update_prompt(self.bias_text)
        if not self.recognizer.start_listening():
            logger.warning("Recognizer not listening, reconnecting once")
            if not await self._reconnect(token):
                return

        self.expected_text = expected
        self.locked = create_fresh_state()
        self.committed = ""
        self.partial = ""
        self.nudge = False
        self.word_results = []
        self.last_error = None
        self.pacing.begin_attempt()
        self.listen_started_ms = self._clock()
        self.monitor = SilenceMonitor(
            expected,
            self.settings.silence_duration,
            build_mode=self.mode == LearningMode.REPEAT,
            clock=self._clock,
        )
        self.recognizer.start_recording()
        self.listening = True
        self._set_status(PracticeStatus.LISTENING)
        self.context.silence_task = self.context.spawn(
            self.monitor.run(lambda: self.transcript, lambda verdict: self._on_verdict(token, verdict))
        )

    async def _reconnect(self, token: int) -> bool:
        """One reconnect attempt; on failure the session goes idle with ConnectionLost."""
        try:
            connected = await self.recognizer.start_session()
        except Exception as e:
            logger.warning("Reconnect failed: %s", e)
            connected = False
        if not self.context.is_current(token):
            return False
        if connected and self.recognizer.start_listening():
            return True
        self._connection_lost("Lost connection to the speech recognizer")
        return False

    def _connection_lost(self, message: str) -> None:
        self.listening = False
        self.context.cancel_silence()
        self.last_error = ConnectionLost(message)
        logger.warning(message)
        self._set_status(PracticeStatus.IDLE)

    def on_disconnect(self) -> None:
        if self.listening:
            token = self.context.token
            self.context.cancel_silence()
            self.listening = False
            self.context.spawn(self._resume_after_disconnect(token))
        elif self.running:
            self.context.fire_and_forget(self._rewarm(), "Re-warming recognizer")

    async def _resume_after_disconnect(self, token: int) -> None:
        if await self._reconnect(token):
            self.recognizer.start_recording()
            self.listening = True
            self._set_status(PracticeStatus.LISTENING)
            self.context.silence_task = self.context.spawn(
                self.monitor.run(lambda: self.transcript, lambda verdict: self._on_verdict(token, verdict))
            )

    async def _rewarm(self) -> None:
        await _pause(RECONNECT_DELAY_MS)
        if not await self.recognizer.start_session():
            logger.warning("Recognizer did not reconnect while idle")

    def on_error(self, error: Exception) -> None:
        logger.warning("Recognizer error: %s", error)
        if self.listening:
            self.on_disconnect()

    def _on_session_started(self) -> None:
        logger.info("Recognizer session started")

    def _accepts_transcript(self, text: str) -> bool:
        if not self.listening:
            return False
        if self._clock() - self.listen_started_ms < STALE_TRANSCRIPT_MS:
            logger.debug("Dropping stale transcript: %r", text)
            return False
        return bool(strip_parentheticals(text).strip())

    def on_partial_transcript(self, text: str) -> None:
        if not self._accepts_transcript(text):
            return
        self.partial = text.strip()
        self._apply_transcript(committed=False)

    def on_committed_transcript(self, text: str) -> None:
        if not self._accepts_transcript(text):
            return
        self.committed = f"{self.committed} {text.strip()}".strip()
        self.partial = ""
        self._apply_transcript(committed=True)

    def _apply_transcript(self, committed: bool) -> None:
        self.monitor.mark_speech()
        self.pacing.speech_detected()
        self.nudge = False
        self.locked = match_update(self.expected_text, self.transcript, self.locked, self.bias_tokens)
        self._notify()
        if committed and is_fully_locked(self.expected_text, self.locked):
            logger.info("All %d words locked, finishing", self.locked.locked_count)
            self._finish(self.context.token, timed_out=False)

    def _on_verdict(self, token: int, verdict: SilenceVerdict) -> None:
        if not self.context.is_current(token) or not self.listening:
            return
        if verdict == SilenceVerdict.NUDGE:
            self.nudge = True
            self._notify()
        elif verdict == SilenceVerdict.FINISH:
            self._finish(token, timed_out=False)
        elif verdict == SilenceVerdict.NO_SPEECH_TIMEOUT:
            self._finish(token, timed_out=True)
        elif verdict != SilenceVerdict.KEEP_LISTENING:
            raise ValueError(f"Unknown silence verdict: {verdict}")

    def _finish(self, token: int, timed_out: bool) -> None:
        self.listening = False
        self.context.spawn(self._finish_listening(token, timed_out))

    async def _finish_listening(self, token: int, timed_out: bool) -> None:
        self.recognizer.pause_listening()
        await self.recognizer.stop_recording()
        self.context.cancel_silence()
        if not self.context.is_current(token):
            return
        transcript = self.transcript
        if not timed_out and self.mode != LearningMode.REPEAT:
            self.pacing.complete()
        if self.mode == LearningMode.REPEAT:
            await self._build_result(token, transcript, timed_out)
        else:
            await self._practice_result(token, transcript)

    # --- Results ---

    def _score(self, transcript: str) -> AccuracyResult:
        result = score_accuracy(self.expected_text, transcript, self.settings.strict_mode, self.bias_tokens)
        self.word_results = word_by_word_result(self.expected_text, transcript, self.bias_tokens).results
        logger.info("Scored %d%% (%s)", result.accuracy, "correct" if result.is_correct else "wrong")
        return result

    def _record_attempt(self, line: Line, correct: bool, accuracy: int) -> None:
        attempts = self.line_attempts.setdefault(line.id, LineAttempts())
        if correct:
            attempts.correct += 1
        else:
            attempts.wrong += 1
        attempts.accuracies.append(accuracy)
        if self.attempt_log is not None:
            self._persist("Recording attempt", self.attempt_log.record, self.user_id, line.id, correct, accuracy)

    def _line_completed(self, line: Line) -> None:
        self.stats.correct += 1
        self.stats.completed.add(line.id)
        self.consecutive_line_fails = 0
        if self.achievements is not None:
            self.context.fire_and_forget(
                self.achievements.record_line_completion(self.user_id), "Recording achievement"
            )

    def _report_wrong(self, result: AccuracyResult) -> None:
        self.stats.wrong += 1
        self.error_message = error_message(result)
        self.last_error = UtteranceMismatch(self.error_message, result)
        self._set_status(PracticeStatus.WRONG)
        if self.settings.speak_error_feedback and self.error_message != "Try again":
            self.context.fire_and_forget(
                self._speak(self.error_message, NARRATOR_VOICE), "Speaking feedback"
            )

    async def _advance_after_correct(self, token: int) -> None:
        if not self.settings.auto_advance_on_correct:
            return
        await _pause(self.settings.auto_advance_delay)
        if self.context.is_current(token):
            self._advance()

    async def _practice_result(self, token: int, transcript: str) -> None:
        line = self.current_line
        result = self._score(transcript)
        self._record_attempt(line, result.is_correct, result.accuracy)

        if result.is_correct:
            self._line_completed(line)
            self._set_status(PracticeStatus.CORRECT)
            if self.settings.play_sound_on_correct:
                await self._cue(Cue.CORRECT)
            await self._advance_after_correct(token)
            return

        self.consecutive_line_fails += 1
        self._report_wrong(result)
        if self.settings.play_sound_on_wrong:
            await self._cue(Cue.INCORRECT)

        settings = self.settings
        replays = settings.repeat_full_line_on_fail or settings.auto_repeat_on_wrong
        if not (replays or settings.restart_on_fail):
            return
        await _pause(FAIL_RETRY_DELAY_MS)
        if not self.context.is_current(token):
            return
        if settings.restart_on_fail and (
            not settings.repeat_full_line_on_fail
            or self.consecutive_line_fails >= MAX_LINE_FAILS_BEFORE_RESTART
        ):
            self._restart_scene()
        elif self.consecutive_line_fails >= MAX_CONSECUTIVE_LINE_FAILS:
            self._stop_replaying(result)
        else:
            self._enter_line(reset_failures=False)

    def _stop_replaying(self, result: AccuracyResult) -> None:
        """Too many misses in a row: wait on this line until play() is called."""
        logger.warning("Line %s missed %d times in a row, waiting for the actor",
                       self.current_line.id, self.consecutive_line_fails)
        self.last_error = UtteranceMismatch(
            f"Missed {self.consecutive_line_fails} times in a row", result
        )
        self.paused = True
        self._set_status(PracticeStatus.IDLE)

    def _persist(self, what: str, func, *args) -> asyncio.Task:
        """Run a blocking store write in the background; writes land in the order made."""
        async def write():
            async with self._write_lock:
                await asyncio.to_thread(func, *args)
        return self.context.fire_and_forget(write(), what)

    def _save_progress(self, line: Line) -> None:
        if self.progress_store is None or self.tracker is None:
            return
        self._persist(
            "Saving build progress", self.progress_store.upsert, self.user_id, line.id, self.tracker.progress()
        )

    async def _build_result(self, token: int, transcript: str, timed_out: bool) -> None:
        line = self.current_line
        tracker = self.tracker

        if timed_out or not transcript:
            self.last_error = NoSpeechDetected("No speech detected")
            step = tracker.record_timeout()
            if step.kind == BuildStepKind.STILL_THERE:
                logger.info("No speech %d times in a row, waiting for the actor", tracker.consecutive_timeouts)
                self._set_status(PracticeStatus.IDLE)
                return
            self.error_message = str(self.last_error)
            self._set_status(PracticeStatus.WRONG)
            await _pause(BUILD_TIMEOUT_DELAY_MS)
            if self.context.is_current(token):
                await self._build_cycle(token)
            return

        result = self._score(transcript)
        if not result.is_correct:
            self._report_wrong(result)
            if self.settings.play_sound_on_wrong:
                await self._cue(Cue.INCORRECT)
            step = tracker.record_wrong()
            if step.kind == BuildStepKind.ROLLBACK:
                self._save_progress(line)
            await _pause(BUILD_RETRY_DELAY_MS)
            if self.context.is_current(token):
                await self._build_cycle(token)
            return

        self._set_status(PracticeStatus.CORRECT)
        step = tracker.record_correct(self.settings.repeat_full_line_times)
        self._save_progress(line)

        if step.kind == BuildStepKind.LINE_COMPLETE:
            self._record_attempt(line, True, result.accuracy)
            self._line_completed(line)
            await self._cue(Cue.LINE_COMPLETE)
            await self._advance_after_correct(token)
            return

        if step.kind == BuildStepKind.CHECKPOINT:
            await self._cue(Cue.CHECKPOINT)
        elif step.kind == BuildStepKind.REPEAT_FULL_LINE:
            await _pause(FULL_LINE_REPEAT_DELAY_MS)
        elif self.settings.play_sound_on_correct:
            await self._cue(Cue.CORRECT)
        if self.context.is_current(token):
            await self._build_cycle(token)
