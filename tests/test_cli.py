"""Tests for CLI module (Layer 4)."""

import asyncio
import json
import threading
from unittest.mock import patch, AsyncMock, MagicMock

import pytest

from scene_partner.artifacts import JsonAttemptLog, JsonProgressStore, load_settings
from scene_partner.cli import _StatusPrinter, _make_command_handler, main
from scene_partner.console import ConsoleRecognizer
from scene_partner.models import BuildProgress, LearningMode, Line, PracticeStatus
from scene_partner.session import SessionSnapshot


# --- Helpers ---

def _create_script_file(tmp_path, name="Hamlet Act 1.json", user_character="HAMLET"):
    """Create a test script file."""
    script = {
        "title": "Hamlet, Act 1",
        "user_character": user_character,
        "lines": [
            {"id": "1", "character_name": "HORATIO", "content": "Who goes there?"},
            {"id": "2", "character_name": "", "content": "A cold wind blows.", "line_type": "action"},
            {"id": "3", "character_name": "HAMLET", "content": "I never said that"},
            {"id": "4", "character_name": "HORATIO", "content": "Then who did?"},
            {"id": "5", "character_name": "HAMLET", "content": " ".join(f"w{i}" for i in range(30))},
        ],
    }
    if user_character is None:
        del script["user_character"]
    path = tmp_path / name
    path.write_text(json.dumps(script))
    return str(path)


def _create_project(tmp_path, monkeypatch, **kwargs):
    """Point the CLI at tmp_path/output and create the hamlet_act_1 project."""
    monkeypatch.setattr("scene_partner.cli.OUTPUT_DIR", str(tmp_path / "output"))
    script = _create_script_file(tmp_path, **kwargs)
    with patch("sys.argv", ["scene-partner", "new", script]):
        main()
    return tmp_path / "output" / "hamlet_act_1"


class _IdleStream:
    """stdin stand-in that never delivers a line until released."""

    def __init__(self):
        self.released = threading.Event()

    def __iter__(self):
        self.released.wait()
        return iter(())


# --- new ---

def test_cli_new_creates_project(tmp_path, monkeypatch, capsys):
    """new creates the project directory, script.json and settings.json."""
    project = _create_project(tmp_path, monkeypatch)
    assert (project / "script.json").exists()
    assert (project / "settings.json").exists()
    assert (project / "progress").is_dir()
    out = capsys.readouterr().out
    assert "Created project: hamlet_act_1" in out
    assert "Loaded 5 lines (2 yours, 2 characters)" in out


def test_cli_new_already_exists(tmp_path, monkeypatch):
    """new on an existing project raises SystemExit."""
    _create_project(tmp_path, monkeypatch)
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "new", str(tmp_path / "Hamlet Act 1.json")]):
            main()


def test_cli_new_missing_file(tmp_path, monkeypatch):
    """new with a nonexistent file raises SystemExit."""
    monkeypatch.setattr("scene_partner.cli.OUTPUT_DIR", str(tmp_path / "output"))
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "new", str(tmp_path / "nope.json")]):
            main()


def test_cli_new_invalid_script(tmp_path, monkeypatch, capsys):
    """new with a malformed script reports the problem."""
    monkeypatch.setattr("scene_partner.cli.OUTPUT_DIR", str(tmp_path / "output"))
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"lines": []}))
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "new", str(path)]):
            main()
    assert "no lines" in capsys.readouterr().err


# --- score and segments ---

def test_cli_score_wrong(capsys):
    """score prints accuracy, per-word results and the wrong word."""
    with patch("sys.argv", ["scene-partner", "score", "I love you", "I hate you"]):
        main()
    out = capsys.readouterr().out
    assert "Accuracy: 67% (wrong)" in out
    assert "(heard 'hate')" in out
    assert 'Wrong:   "hate" instead of "love"' in out


def test_cli_score_strict(capsys):
    """--strict rejects fuzzy matches."""
    with patch("sys.argv", ["scene-partner", "score", "the colour red", "the color red", "--strict"]):
        main()
    assert "(wrong)" in capsys.readouterr().out


def test_cli_score_names(capsys):
    """--names helps misheard names pass."""
    with patch("sys.argv", ["scene-partner", "score", "hello robinavitch", "hello robinovich",
                            "--names", "Robinavitch"]):
        main()
    assert "(correct)" in capsys.readouterr().out


def test_cli_segments(tmp_path, monkeypatch, capsys):
    """segments lists build segments and marks checkpoints."""
    _create_project(tmp_path, monkeypatch)
    capsys.readouterr()
    with patch("sys.argv", ["scene-partner", "segments", "hamlet_act_1", "5"]):
        main()
    out = capsys.readouterr().out
    assert "HAMLET: 8 segments" in out
    assert "*  6. w20 w21 w22 w23" in out
    assert "*  1." not in out


def test_cli_segments_unknown_line(tmp_path, monkeypatch):
    """segments with an unknown line id raises SystemExit."""
    _create_project(tmp_path, monkeypatch)
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "segments", "hamlet_act_1", "99"]):
            main()


# --- progress ---

def test_cli_progress_empty(tmp_path, monkeypatch, capsys):
    """progress with nothing saved says so."""
    _create_project(tmp_path, monkeypatch)
    with patch("sys.argv", ["scene-partner", "progress", "hamlet_act_1"]):
        main()
    assert "No progress yet for actor." in capsys.readouterr().out


def test_cli_progress_shows_builds_and_weak_lines(tmp_path, monkeypatch, capsys):
    """progress shows checkpoints and weak lines."""
    project = str(_create_project(tmp_path, monkeypatch))
    JsonProgressStore(project).upsert("actor", "5", BuildProgress(
        current_segment_index=7, total_segments=8, highest_checkpoint=5, checkpoint_indices=[5]))
    JsonAttemptLog(project).record("actor", "3", False, 50)
    capsys.readouterr()
    with patch("sys.argv", ["scene-partner", "progress", "hamlet_act_1"]):
        main()
    out = capsys.readouterr().out
    assert "Build progress:" in out
    assert "segment 8/8, checkpoint 5" in out
    assert "Weak lines:" in out
    assert "0 right, 1 wrong, 50% average" in out


def test_cli_project_not_found(tmp_path, monkeypatch):
    """Commands on a missing project raise SystemExit."""
    monkeypatch.setattr("scene_partner.cli.OUTPUT_DIR", str(tmp_path / "output"))
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "progress", "nonexistent"]):
            main()


# --- set ---

def test_cli_set_updates_setting(tmp_path, monkeypatch, capsys):
    """set converts and saves the value."""
    project = _create_project(tmp_path, monkeypatch)
    with patch("sys.argv", ["scene-partner", "set", "hamlet_act_1", "strict_mode", "on"]):
        main()
    assert "Updated: strict_mode → True" in capsys.readouterr().out
    assert load_settings(str(project)).strict_mode is True


def test_cli_set_invalid_key(tmp_path, monkeypatch, capsys):
    """set with an invalid key raises SystemExit and lists valid keys."""
    _create_project(tmp_path, monkeypatch)
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "set", "hamlet_act_1", "volume", "11"]):
            main()
    err = capsys.readouterr().err
    assert "Invalid setting key" in err
    assert "silence_duration" in err


def test_cli_set_invalid_value(tmp_path, monkeypatch, capsys):
    """set with a bad value raises SystemExit."""
    _create_project(tmp_path, monkeypatch)
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "set", "hamlet_act_1", "playback_speed", "0"]):
            main()
    assert "Error:" in capsys.readouterr().err


# --- rehearse ---

def test_cli_rehearse_requires_user_lines(tmp_path, monkeypatch, capsys):
    """A script with no lines for the actor can't be rehearsed."""
    _create_project(tmp_path, monkeypatch, user_character=None)
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["scene-partner", "rehearse", "hamlet_act_1"]):
            main()
    assert "No lines are marked as yours" in capsys.readouterr().err


def test_cli_rehearse_weak_without_history(tmp_path, monkeypatch, capsys):
    """--weak with no attempt history has nothing to drill."""
    _create_project(tmp_path, monkeypatch)
    with patch("sys.argv", ["scene-partner", "rehearse", "hamlet_act_1", "--weak"]):
        main()
    assert "No weak lines yet" in capsys.readouterr().out


@patch("scene_partner.cli.PydubPlayer")
@patch("scene_partner.cli.EdgeSynthesizer")
def test_cli_rehearse_listen_mode(mock_synth, mock_player, tmp_path, monkeypatch, capsys):
    """Listen mode runs the whole scene and reports completion."""
    mock_synth.return_value.synthesize = AsyncMock(return_value=None)
    mock_player.return_value.play = AsyncMock()
    mock_player.return_value.play_segment = AsyncMock()
    stream = _IdleStream()
    monkeypatch.setattr("scene_partner.cli.ConsoleRecognizer", lambda: ConsoleRecognizer(stream=stream))
    _create_project(tmp_path, monkeypatch)

    try:
        with patch("sys.argv", ["scene-partner", "rehearse", "hamlet_act_1", "--mode", "listen",
                                "--directions", "muted"]):
            main()
    finally:
        stream.released.set()

    out = capsys.readouterr().out
    assert "Rehearsing hamlet_act_1 in listen mode as actor" in out
    assert "HORATIO: Who goes there?" in out
    assert "Scene complete: 0 correct, 0 wrong." in out


# --- Session commands and status ---

def _snapshot(status, **kwargs):
    line = Line(id="3", character_name="HAMLET", content="I never said that", is_user_line=True)
    return SessionSnapshot(status=status, mode=LearningMode.PRACTICE, line=line, **kwargs)


def test_command_handler_enter_retries_after_wrong():
    """Enter after a wrong line retries it."""
    session = MagicMock()
    session.snapshot.return_value = _snapshot(PracticeStatus.WRONG)
    _make_command_handler(session)("")
    session.retry.assert_called_once()


def test_command_handler_enter_when_still_there():
    """Enter answers the still-there prompt first."""
    session = MagicMock()
    session.snapshot.return_value = _snapshot(PracticeStatus.IDLE, still_there=True)
    _make_command_handler(session)("")
    session.resume_after_still_there.assert_called_once()


def test_command_handler_enter_when_paused():
    """Enter starts the line the session stopped on."""
    session = MagicMock()
    session.snapshot.return_value = _snapshot(PracticeStatus.IDLE, paused=True)
    _make_command_handler(session)("")
    session.play.assert_called_once()
    session.listen.assert_not_called()


def test_command_handler_stop_shuts_down():
    """/stop runs the session shutdown to completion."""
    session = MagicMock()
    session.snapshot.return_value = _snapshot(PracticeStatus.LISTENING)
    session.shutdown = AsyncMock()

    async def scenario():
        _make_command_handler(session)("stop")
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    session.shutdown.assert_awaited_once()


def test_command_handler_commands():
    """Slash commands map onto session operations."""
    session = MagicMock()
    session.snapshot.return_value = _snapshot(PracticeStatus.LISTENING)
    handle = _make_command_handler(session)
    handle("skip")
    handle("fresh")
    handle("mode repeat")
    session.skip.assert_called_once()
    session.start_fresh.assert_called_once()
    session.change_mode.assert_called_once_with(LearningMode.REPEAT)


def test_command_handler_unknown(capsys):
    """Unknown commands print the help line."""
    session = MagicMock()
    session.snapshot.return_value = _snapshot(PracticeStatus.LISTENING)
    _make_command_handler(session)("dance")
    assert "Commands:" in capsys.readouterr().out


def test_status_printer_deduplicates(capsys):
    """The same state is printed once."""
    printer = _StatusPrinter()
    printer(_snapshot(PracticeStatus.LISTENING))
    printer(_snapshot(PracticeStatus.LISTENING, transcript="I never"))
    assert capsys.readouterr().out.count("> Your line (HAMLET):") == 1


def test_status_printer_wrong(capsys):
    """Wrong lines show the feedback and word marks."""
    from scene_partner.models import WordResult
    printer = _StatusPrinter()
    printer(_snapshot(PracticeStatus.WRONG, error_message='"this" instead of "that"',
                      word_results=[WordResult.CORRECT, WordResult.WRONG, WordResult.MISSING]))
    out = capsys.readouterr().out
    assert 'Wrong: "this" instead of "that"' in out
    assert "+ x -" in out


def test_status_printer_paused(capsys):
    """A stopped session says so and shows why."""
    printer = _StatusPrinter()
    printer(_snapshot(PracticeStatus.IDLE, paused=True, last_error="Missed 5 times in a row"))
    captured = capsys.readouterr()
    assert "Stopped. Press Enter to start." in captured.out
    assert "Error: Missed 5 times in a row" in captured.err


# --- List and voices ---

def test_cli_list_projects(tmp_path, monkeypatch, capsys):
    """list shows all project dirs."""
    _create_project(tmp_path, monkeypatch)
    with patch("sys.argv", ["scene-partner", "list"]):
        main()
    assert "hamlet_act_1" in capsys.readouterr().out


def test_cli_list_empty(tmp_path, monkeypatch, capsys):
    """list with no projects shows message."""
    monkeypatch.setattr("scene_partner.cli.OUTPUT_DIR", str(tmp_path / "output"))
    with patch("sys.argv", ["scene-partner", "list"]):
        main()
    assert "No projects found" in capsys.readouterr().out


def test_cli_voices_filter(capsys):
    """voices --filter filters voice list."""
    with patch("sys.argv", ["scene-partner", "voices", "--filter", "en-GB"]):
        main()
    out = capsys.readouterr().out
    voices = [line.strip() for line in out.splitlines() if line.strip().startswith("en-")]
    assert voices
    assert all("en-GB" in v for v in voices)


def test_cli_no_args_shows_help(capsys):
    """No subcommand prints help text."""
    with patch("sys.argv", ["scene-partner"]):
        main()
    assert "usage" in capsys.readouterr().out.lower()
