"""Project directories, JSON artifacts, settings, and the progress stores."""

import json
import logging
import os
import re
import threading
from dataclasses import fields

from scene_partner.constants import OUTPUT_DIR, WEAK_LINE_ACCURACY, LINE_MILESTONES
from scene_partner.errors import ScriptError
from scene_partner.models import BuildProgress, Line, LineAttempts, LineType, PracticeSettings

logger = logging.getLogger(__name__)

_TRUE_WORDS = {"true", "on", "yes", "1"}
_FALSE_WORDS = {"false", "off", "no", "0"}


def slug_from_path(script_path: str) -> str:
    """Convert a script filename to its project directory slug.

    "Hamlet Act 1.json" → "hamlet_act_1"
    "/path/to/The Seagull.json" → "the_seagull"
    """
    basename = os.path.splitext(os.path.basename(script_path))[0]
    slug = re.sub(r"[^a-zA-Z0-9]+", "_", basename).strip("_").lower()
    return slug


def init_project_dir(script_path: str, output_base: str = OUTPUT_DIR) -> str:
    """Create output/<slug>/ and its subdirectories. Returns the project directory."""
    project_dir = os.path.join(output_base, slug_from_path(script_path))
    for subdir in ("progress", "audio"):
        os.makedirs(os.path.join(project_dir, subdir), exist_ok=True)
    return project_dir


def write_artifact(project_dir: str, filename: str, data: dict) -> str:
    """Write JSON artifact to project_dir/filename.

    Returns path to the written file.
    """
    path = os.path.join(project_dir, filename)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    return path


def load_artifact(project_dir: str, filename: str) -> dict | None:
    """Read JSON artifact. Returns None if file doesn't exist."""
    path = os.path.join(project_dir, filename)
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return json.load(f)


def list_projects(output_base: str = OUTPUT_DIR) -> list[str]:
    """List all project slugs under the output directory.

    Returns sorted list of directory names that contain a script.json.
    """
    if not os.path.exists(output_base):
        return []
    projects = []
    for name in os.listdir(output_base):
        project_dir = os.path.join(output_base, name)
        if os.path.isdir(project_dir) and os.path.exists(os.path.join(project_dir, "script.json")):
            projects.append(name)
    return sorted(projects)


# --- Scripts ---

def validate_script(data) -> None:
    """Raise ScriptError unless data looks like a structured script."""
    if not isinstance(data, dict):
        raise ScriptError("Script must be a JSON object")
    lines = data.get("lines")
    if not isinstance(lines, list) or not lines:
        raise ScriptError("Script has no lines")

    seen = set()
    for i, entry in enumerate(lines):
        if not isinstance(entry, dict):
            raise ScriptError(f"Line {i} is not an object")
        if "id" not in entry:
            raise ScriptError(f"Line {i} has no id")
        line_id = str(entry["id"])
        if line_id in seen:
            raise ScriptError(f"Duplicate line id: {line_id}")
        seen.add(line_id)
        line_type = entry.get("line_type", "dialogue")
        if line_type not in {t.value for t in LineType}:
            raise ScriptError(f"Line {line_id} has unknown line_type {line_type!r}")


def import_script(script_path: str, output_base: str = OUTPUT_DIR) -> str:
    """Validate a structured script file and create a project for it.

    Writes script.json and a default settings.json. Returns the project directory.
    """
    try:
        with open(script_path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ScriptError(f"File not found: {script_path}")
    except json.JSONDecodeError as e:
        raise ScriptError(f"{script_path} is not valid JSON: {e}") from e

    validate_script(data)
    project_dir = init_project_dir(script_path, output_base)
    write_artifact(project_dir, "script.json", data)
    if load_artifact(project_dir, "settings.json") is None:
        save_settings(project_dir, PracticeSettings())
    return project_dir


def load_script(project_dir: str) -> tuple[list[Line], dict, str | None]:
    """Load a project's lines in play order, its characters table, and the user's character.

    Lines without an explicit is_user_line flag belong to the user when their
    character matches user_character.
    """
    try:
        data = load_artifact(project_dir, "script.json")
    except json.JSONDecodeError as e:
        raise ScriptError(f"script.json is not valid JSON: {e}") from e
    if data is None:
        raise ScriptError(f"No script.json in {project_dir}")
    validate_script(data)

    user_character = data.get("user_character")
    lines = []
    for i, entry in enumerate(data["lines"]):
        entry = dict(entry)
        entry.setdefault("sort_order", i)
        if "is_user_line" not in entry and user_character:
            entry["is_user_line"] = entry.get("character_name", "").lower() == user_character.lower()
        lines.append(Line.from_dict(entry))

    lines.sort(key=lambda line: line.sort_order)
    return lines, data.get("characters", {}), user_character


# --- Settings ---

def load_settings(project_dir: str) -> PracticeSettings:
    """Project settings merged over the defaults; unknown keys are ignored."""
    data = load_artifact(project_dir, "settings.json") or {}
    known = {f.name for f in fields(PracticeSettings)}
    for key in data:
        if key not in known:
            logger.warning("Ignoring unknown setting %r in %s", key, project_dir)
    return PracticeSettings(**{k: v for k, v in data.items() if k in known})


def save_settings(project_dir: str, settings: PracticeSettings) -> str:
    return write_artifact(project_dir, "settings.json", settings.to_dict())


def parse_setting(key: str, raw: str):
    """Convert a command-line value to the type of the named setting.

    Raises KeyError for an unknown key, ValueError for a bad value.
    """
    defaults = PracticeSettings()
    if key not in {f.name for f in fields(PracticeSettings)}:
        raise KeyError(key)
    current = getattr(defaults, key)

    if isinstance(current, bool):
        word = raw.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(f"{key} expects true/false, got {raw!r}")
    if isinstance(current, int):
        value = int(raw)
        if value < 0:
            raise ValueError(f"{key} must not be negative")
        return value
    if isinstance(current, float):
        value = float(raw)
        if value <= 0:
            raise ValueError(f"{key} must be positive")
        return value
    return raw


def update_setting(project_dir: str, key: str, raw: str) -> PracticeSettings:
    """Change one setting and persist. Returns the updated settings."""
    settings = load_settings(project_dir)
    setattr(settings, key, parse_setting(key, raw))
    save_settings(project_dir, settings)
    return settings


# --- Build progress ---

class JsonProgressStore:
    """BuildProgress per line, one progress/<user>.json artifact per user."""

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self._lock = threading.Lock()

    def _filename(self, user_id: str) -> str:
        return os.path.join("progress", f"{slug_from_path(user_id) or 'user'}.json")

    def load_all(self, user_id: str) -> dict[str, BuildProgress]:
        try:
            data = load_artifact(self.project_dir, self._filename(user_id)) or {}
        except json.JSONDecodeError as e:
            logger.warning("Unreadable progress for %s, starting over: %s", user_id, e)
            return {}
        return {line_id: BuildProgress.from_dict(entry) for line_id, entry in data.items()}

    def _save_all(self, user_id: str, progress: dict[str, BuildProgress]) -> None:
        data = {line_id: entry.to_dict() for line_id, entry in progress.items()}
        write_artifact(self.project_dir, self._filename(user_id), data)

    def upsert(self, user_id: str, line_id: str, progress: BuildProgress) -> None:
        with self._lock:
            everything = self.load_all(user_id)
            everything[line_id] = progress
            self._save_all(user_id, everything)

    def get(self, user_id: str, line_id: str) -> BuildProgress | None:
        return self.load_all(user_id).get(line_id)

    def delete(self, user_id: str, line_id: str) -> None:
        with self._lock:
            everything = self.load_all(user_id)
            if everything.pop(line_id, None) is not None:
                self._save_all(user_id, everything)


# --- Attempt history ---

class JsonAttemptLog:
    """Per-line attempt history in stats.json, keyed by user."""

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self._lock = threading.Lock()

    def _load_raw(self) -> dict:
        try:
            return load_artifact(self.project_dir, "stats.json") or {}
        except json.JSONDecodeError as e:
            logger.warning("Unreadable stats.json, starting over: %s", e)
            return {}

    def load(self, user_id: str) -> dict[str, LineAttempts]:
        lines = self._load_raw().get(user_id, {})
        return {
            line_id: LineAttempts(
                correct=entry.get("correct", 0),
                wrong=entry.get("wrong", 0),
                accuracies=list(entry.get("accuracies", [])),
            )
            for line_id, entry in lines.items()
        }

    def record(self, user_id: str, line_id: str, correct: bool, accuracy: int) -> LineAttempts:
        with self._lock:
            data = self._load_raw()
            entry = data.setdefault(user_id, {}).setdefault(
                line_id, {"correct": 0, "wrong": 0, "accuracies": []}
            )
            entry["correct" if correct else "wrong"] += 1
            entry["accuracies"].append(accuracy)
            write_artifact(self.project_dir, "stats.json", data)
        return LineAttempts(entry["correct"], entry["wrong"], list(entry["accuracies"]))


def is_weak(attempts: LineAttempts) -> bool:
    """More misses than hits, or a mean accuracy under WEAK_LINE_ACCURACY."""
    if attempts.correct + attempts.wrong == 0:
        return False
    return attempts.wrong > attempts.correct or attempts.mean_accuracy < WEAK_LINE_ACCURACY


def weak_lines(attempts: dict[str, LineAttempts]) -> list[str]:
    """Ids of weak lines, weakest (lowest mean accuracy) first."""
    weak = [line_id for line_id, a in attempts.items() if is_weak(a)]
    return sorted(weak, key=lambda line_id: attempts[line_id].mean_accuracy)


# --- Achievements ---

class JsonAchievementTracker:
    """Counts completed lines per user and announces milestones."""

    def __init__(self, project_dir: str):
        self.project_dir = project_dir

    async def record_line_completion(self, user_id: str) -> int | None:
        """Returns the milestone reached by this completion, if any."""
        data = load_artifact(self.project_dir, "achievements.json") or {}
        count = data.get(user_id, {}).get("lines_practiced", 0) + 1
        data[user_id] = {"lines_practiced": count}
        write_artifact(self.project_dir, "achievements.json", data)
        if count in LINE_MILESTONES:
            logger.info("%s reached %d lines practiced", user_id, count)
            return count
        return None
