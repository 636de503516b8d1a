"""CLI interface with subcommand routing and rehearsal wiring."""

import argparse
import asyncio
import logging
import os
import sys

from scene_partner.constants import DEFAULT_USER, OUTPUT_DIR, VERSION
from scene_partner.artifacts import (
    JsonAchievementTracker,
    JsonAttemptLog,
    JsonProgressStore,
    import_script,
    list_projects,
    load_script,
    load_settings,
    slug_from_path,
    update_setting,
    weak_lines,
)
from scene_partner.console import ConsoleRecognizer
from scene_partner.cues import CuePlayer
from scene_partner.errors import ScriptError
from scene_partner.matcher import bias_set, score_accuracy, tokenize, word_by_word_result
from scene_partner.models import DirectionsMode, LearningMode, PracticeSettings, PracticeStatus
from scene_partner.playback import PydubPlayer
from scene_partner.segments import build_segments, is_checkpoint
from scene_partner.session import PracticeSession, SceneNavigator
from scene_partner.tts import EdgeSynthesizer
from scene_partner.voices import VOICE_POOL

COMMANDS_HELP = (
    "Commands: Enter = start/continue, /skip, /retry, /resume, /fresh, "
    "/mode listen|practice|repeat, /stop"
)


def _get_project_dir(slug: str) -> str:
    """Get project directory path, verify it exists."""
    project_dir = os.path.join(OUTPUT_DIR, slug)
    if not os.path.isdir(project_dir):
        print(f"Error: Project '{slug}' not found.", file=sys.stderr)
        print("Run 'scene-partner new <script.json>' to create a project.", file=sys.stderr)
        raise SystemExit(1)
    if not os.path.exists(os.path.join(project_dir, "script.json")):
        print(f"Error: Project '{slug}' is incomplete (no script.json).", file=sys.stderr)
        raise SystemExit(1)
    return project_dir


def _load_script_or_exit(project_dir: str):
    try:
        return load_script(project_dir)
    except ScriptError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def cmd_new(args):
    """Create a new project from a structured script file."""
    file_path = args.file
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    slug = slug_from_path(file_path)
    if os.path.exists(os.path.join(OUTPUT_DIR, slug, "script.json")):
        print(f"Error: Project '{slug}' already exists.", file=sys.stderr)
        print(f"Use 'scene-partner rehearse {slug}' to practice.", file=sys.stderr)
        raise SystemExit(1)

    try:
        project_dir = import_script(file_path, output_base=OUTPUT_DIR)
    except ScriptError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)

    lines, characters, user_character = load_script(project_dir)
    user_lines = sum(1 for line in lines if line.is_user_line)
    speakers = {line.character_name for line in lines if not line.is_direction}
    print(f"Created project: {slug}")
    print(f"Loaded {len(lines)} lines ({user_lines} yours, {len(speakers)} characters)")
    if not user_lines:
        print("Warning: no lines are marked as yours; set user_character in the script.", file=sys.stderr)
    print(f"Run 'scene-partner rehearse {slug}' to start.")


class _StatusPrinter:
    """Prints plain status lines as the session changes state."""

    def __init__(self):
        self.last = None

    def __call__(self, snap):
        key = (snap.status, snap.line.id if snap.line else None, snap.current_segment_index,
               snap.still_there, snap.nudge, snap.resume_offer is not None, snap.awaiting_start,
               snap.paused, snap.scene_complete)
        if key == self.last:
            return
        self.last = key
        line = snap.line

        if snap.scene_complete:
            stats = snap.stats
            print(f"\nScene complete: {stats.correct} correct, {stats.wrong} wrong.")
        elif snap.resume_offer is not None:
            offer = snap.resume_offer
            print(f"Resume at segment {offer.segment_number} of {offer.total_segments}? (/resume or /fresh)")
        elif snap.still_there:
            print("Still there? Press Enter to continue.")
        elif snap.awaiting_start:
            print("Press Enter when you're ready.")
        elif snap.paused:
            if snap.last_error:
                print(f"Error: {snap.last_error}", file=sys.stderr)
            print("Stopped. Press Enter to start.")
        elif snap.nudge:
            print("  (still listening...)")
        elif snap.status == PracticeStatus.PARTNER_SPEAKING and line:
            print(f"  {line.character_name}: {line.content}")
        elif snap.status == PracticeStatus.NARRATING and line:
            print(f"  [{line.content}]")
        elif snap.status == PracticeStatus.SEGMENT_PLAYING:
            print(f"  Segment {snap.current_segment_index + 1}/{len(snap.segments)}: {snap.prompt_text}")
        elif snap.status == PracticeStatus.USER_LISTEN and line:
            print(f"  {line.character_name} (you): {line.content}")
        elif snap.status == PracticeStatus.LISTENING and line:
            print(f"> Your line ({line.character_name}):")
        elif snap.status == PracticeStatus.CORRECT:
            print("  Correct!")
            self._print_pacing(snap)
        elif snap.status == PracticeStatus.WRONG:
            print(f"  Wrong: {snap.error_message}")
            if snap.word_results:
                marks = {"correct": "+", "wrong": "x", "missing": "-"}
                print("  " + " ".join(marks[r.value] for r in snap.word_results))
        elif snap.status == PracticeStatus.IDLE and snap.last_error:
            print(f"Error: {snap.last_error}", file=sys.stderr)

    def _print_pacing(self, snap):
        if snap.pacing is not None:
            print(f"  Pacing {snap.pacing.delta_percent:+.0f}% ({snap.pacing.band.value})")
        if snap.pickup_ms is not None:
            print(f"  Pickup {snap.pickup_ms / 1000:.1f}s")


def _make_command_handler(session: PracticeSession):
    shutting_down: set[asyncio.Task] = set()

    def handle(command: str):
        word, _, rest = command.partition(" ")
        snap = session.snapshot()
        if word == "":
            if snap.still_there:
                session.resume_after_still_there()
            elif snap.paused:
                session.play()
            elif snap.awaiting_start:
                session.listen()
            elif snap.status == PracticeStatus.CORRECT:
                session.skip()
            elif snap.status == PracticeStatus.WRONG:
                session.retry()
        elif word == "skip":
            session.skip()
        elif word == "retry":
            session.retry()
        elif word == "resume":
            session.resume()
        elif word == "fresh":
            session.start_fresh()
        elif word == "mode":
            try:
                session.change_mode(LearningMode(rest.strip()))
            except ValueError:
                print(f"Unknown mode: {rest.strip()!r}")
        elif word in ("stop", "quit"):
            task = asyncio.ensure_future(session.shutdown())
            shutting_down.add(task)
            task.add_done_callback(shutting_down.discard)
        else:
            print(COMMANDS_HELP)
    return handle


async def _rehearse(session: PracticeSession) -> None:
    if await session.start():
        await session.done.wait()
    await session.shutdown()


def cmd_rehearse(args):
    """Rehearse a scene against synthesized partner voices."""
    project_dir = _get_project_dir(args.slug)
    lines, characters, _ = _load_script_or_exit(project_dir)
    if not any(line.is_user_line for line in lines):
        print("Error: No lines are marked as yours in this script.", file=sys.stderr)
        raise SystemExit(1)
    settings = load_settings(project_dir)

    drill_ids = None
    if args.weak:
        drill_ids = weak_lines(JsonAttemptLog(project_dir).load(args.user))
        if not drill_ids:
            print("No weak lines yet. Rehearse the scene first.")
            return

    navigator = SceneNavigator(lines, random_order=settings.random_order, loop=args.loop, drill_ids=drill_ids)
    recognizer = ConsoleRecognizer()
    session = PracticeSession(
        lines,
        settings,
        recognizer,
        EdgeSynthesizer(os.path.join(project_dir, "audio")),
        PydubPlayer(),
        progress_store=JsonProgressStore(project_dir),
        achievements=JsonAchievementTracker(project_dir),
        user_id=args.user,
        mode=LearningMode(args.mode),
        directions_mode=DirectionsMode(args.directions),
        cues=CuePlayer(PydubPlayer()),
        characters=characters,
        attempt_log=JsonAttemptLog(project_dir),
        navigator=navigator,
        on_update=_StatusPrinter(),
    )
    recognizer.on_command = _make_command_handler(session)

    print(f"Rehearsing {args.slug} in {args.mode} mode as {args.user}. Type your lines.")
    print(COMMANDS_HELP)
    try:
        asyncio.run(_rehearse(session))
    except KeyboardInterrupt:
        print("\nStopped.")


def cmd_score(args):
    """Score a spoken attempt against the expected text."""
    names = [n.strip() for n in args.names.split(",")] if args.names else []
    bias = bias_set(names)
    result = score_accuracy(args.expected, args.spoken, strict_mode=args.strict, bias_tokens=bias)
    per_word = word_by_word_result(args.expected, args.spoken, bias_tokens=bias)

    verdict = "correct" if result.is_correct else "wrong"
    print(f"Accuracy: {result.accuracy}% ({verdict})")
    expected_words = tokenize(args.expected)
    for word, outcome, heard in zip(expected_words, per_word.results, per_word.aligned_spoken):
        suffix = f" (heard {heard!r})" if outcome.value == "wrong" and heard else ""
        print(f"  {outcome.value:<8}{word}{suffix}")
    if result.wrong_words:
        print(f"Wrong:   {', '.join(result.wrong_words)}")
    if result.missing_words:
        print(f"Missing: {', '.join(result.missing_words)}")
    if result.extra_words:
        print(f"Extra:   {', '.join(result.extra_words)}")


def cmd_segments(args):
    """Print a line's build segments, marking checkpoints."""
    project_dir = _get_project_dir(args.slug)
    lines, _, _ = _load_script_or_exit(project_dir)
    line = next((candidate for candidate in lines if candidate.id == args.line_id), None)
    if line is None:
        print(f"Error: No line with id '{args.line_id}'.", file=sys.stderr)
        raise SystemExit(1)

    segments = build_segments(line)
    if not segments:
        print("This line has nothing to say.")
        return
    print(f"{line.character_name}: {len(segments)} segments")
    for i, segment in enumerate(segments):
        marker = "*" if i > 0 and is_checkpoint(i, len(segments)) else " "
        print(f"  {marker} {i + 1:>2}. {segment}")


def cmd_progress(args):
    """Show saved build progress and weak lines."""
    project_dir = _get_project_dir(args.slug)
    saved = JsonProgressStore(project_dir).load_all(args.user)
    attempts = JsonAttemptLog(project_dir).load(args.user)

    if not saved and not attempts:
        print(f"No progress yet for {args.user}.")
        return

    if saved:
        print("Build progress:")
        for line_id, progress in sorted(saved.items()):
            if progress.is_complete:
                state = "complete"
            else:
                state = f"segment {progress.current_segment_index + 1}/{progress.total_segments}"
                if progress.highest_checkpoint:
                    state += f", checkpoint {progress.highest_checkpoint}"
            print(f"  {line_id:<12}{state}")

    weak = weak_lines(attempts)
    if weak:
        print("Weak lines:")
        for line_id in weak:
            a = attempts[line_id]
            print(f"  {line_id:<12}{a.correct} right, {a.wrong} wrong, {a.mean_accuracy:.0f}% average")
    elif attempts:
        print("No weak lines.")


def cmd_set(args):
    """Update a practice setting."""
    project_dir = _get_project_dir(args.slug)
    try:
        settings = update_setting(project_dir, args.key, args.value)
    except KeyError:
        valid_keys = PracticeSettings().to_dict()
        print(f"Error: Invalid setting key: {args.key}", file=sys.stderr)
        print(f"Valid keys: {', '.join(sorted(valid_keys))}", file=sys.stderr)
        raise SystemExit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    print(f"Updated: {args.key} → {getattr(settings, args.key)}")


def cmd_list(args):
    """List all projects."""
    projects = list_projects(output_base=OUTPUT_DIR)
    if not projects:
        print("No projects found.")
        return
    print("Projects:")
    for name in projects:
        print(f"  {name}")


def cmd_voices(args):
    """List available voices."""
    filter_str = args.filter.lower() if args.filter else None
    voices = VOICE_POOL
    if filter_str:
        voices = [v for v in voices if filter_str in v.lower()]
    if not voices:
        print("No matching voices found.")
        return
    print("Available voices:")
    for v in voices:
        print(f"  {v}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scene-partner",
        description="Scene Partner — rehearse your lines against a synthetic cast",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log session events")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # new
    new_parser = subparsers.add_parser("new", help="Create a project from a structured script")
    new_parser.add_argument("file", help="Path to the script JSON file")
    new_parser.set_defaults(func=cmd_new)

    # rehearse
    rehearse_parser = subparsers.add_parser("rehearse", help="Run a rehearsal session")
    rehearse_parser.add_argument("slug", help="Project slug (from filename)")
    rehearse_parser.add_argument("--mode", choices=[m.value for m in LearningMode], default="practice")
    rehearse_parser.add_argument("--user", default=DEFAULT_USER, help="Whose progress to use")
    rehearse_parser.add_argument("--directions", choices=[d.value for d in DirectionsMode], default="spoken")
    rehearse_parser.add_argument("--weak", action="store_true", help="Drill only your weak lines")
    rehearse_parser.add_argument("--loop", action="store_true", help="Start over at the end of the scene")
    rehearse_parser.set_defaults(func=cmd_rehearse)

    # score
    score_parser = subparsers.add_parser("score", help="Score a spoken attempt against expected text")
    score_parser.add_argument("expected", help="The line as written")
    score_parser.add_argument("spoken", help="What was said")
    score_parser.add_argument("--strict", action="store_true", help="Exact wording only")
    score_parser.add_argument("--names", help="Comma-separated character names")
    score_parser.set_defaults(func=cmd_score)

    # segments
    segments_parser = subparsers.add_parser("segments", help="Show a line's build segments")
    segments_parser.add_argument("slug", help="Project slug")
    segments_parser.add_argument("line_id", help="Line id")
    segments_parser.set_defaults(func=cmd_segments)

    # progress
    progress_parser = subparsers.add_parser("progress", help="Show build progress and weak lines")
    progress_parser.add_argument("slug", help="Project slug")
    progress_parser.add_argument("--user", default=DEFAULT_USER)
    progress_parser.set_defaults(func=cmd_progress)

    # set
    set_parser = subparsers.add_parser("set", help="Update a practice setting")
    set_parser.add_argument("slug", help="Project slug")
    set_parser.add_argument("key", help="Setting key")
    set_parser.add_argument("value", help="Setting value")
    set_parser.set_defaults(func=cmd_set)

    # list
    list_parser = subparsers.add_parser("list", help="List all projects")
    list_parser.set_defaults(func=cmd_list)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.set_defaults(func=cmd_voices)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
