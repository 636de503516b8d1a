"""All magic numbers and configuration constants."""

SILENCE_POLL_INTERVAL_MS = 250          # ms between silence checks while listening
COVERAGE_THRESHOLD = 0.7                # spoken/expected ratio that counts as "most of the line"
PARTIAL_LINE_GRACE_MS = 5000            # ms of silence allowed mid-line before evaluating
NO_SPEECH_CEILING_MS = 10000            # ms with an empty transcript before nudge/timeout
STALE_TRANSCRIPT_MS = 500               # ms after listen start during which transcripts are dropped
RECONNECT_DELAY_MS = 500                # ms before re-warming a dropped recognizer
SEGMENT_CHUNK_WORDS = 4                 # words per segment when a line has no curated segments
SEGMENT_MIN_WORDS = 2                   # shorter segments are merged into a neighbour
CHECKPOINT_INTERVAL = 5                 # every Nth completed segment is a checkpoint
MAX_CONSECUTIVE_WRONGS = 3              # wrong attempts before rolling back one segment
MAX_CONSECUTIVE_TIMEOUTS = 3            # silent attempts before asking "still there?"
MAX_LINE_FAILS_BEFORE_RESTART = 2       # line fails before restart-on-fail restarts the scene
MAX_CONSECUTIVE_LINE_FAILS = 5          # wrong attempts in a row before automatic replays stop
FAIL_RETRY_DELAY_MS = 1500              # ms showing "wrong" before a practice-mode retry
BUILD_RETRY_DELAY_MS = 2000             # ms showing word results before a build-mode retry
BUILD_TIMEOUT_DELAY_MS = 1500           # ms showing a timeout before replaying the segment
FULL_LINE_REPEAT_DELAY_MS = 500         # ms before replaying an assembled line
SHOWN_DIRECTION_PAUSE_MS = 1500         # ms pause for stage directions in "shown" mode
PLAYBACK_SAFETY_MARGIN_MS = 5000        # ms added to clip duration before giving up on playback
PACING_GOOD_PERCENT = 10                # |delta| at or below this is good pacing
PACING_CAUTION_PERCENT = 25             # |delta| at or below this is caution, above is poor
WEAK_LINE_ACCURACY = 80                 # mean accuracy below this marks a weak line
PARTNER_SPEED_MIN = 0.85                # lower bound of random partner rate variation
PARTNER_SPEED_MAX = 1.15                # upper bound of random partner rate variation
MATCH_LOOKAHEAD = 3                     # tokens scanned ahead to classify a mismatch
NAME_SIMILARITY = 0.80                  # Jaro-Winkler floor for names and proper nouns
TTS_RETRY_COUNT = 3                     # max retries per TTS clip
TTS_RETRY_BASE_DELAY = 1.0              # seconds — base delay for exponential backoff
CUE_SAMPLE_RATE = 44100                 # Hz for synthesized cue tones
CUE_GAIN_DB = -12                       # cue tones sit under the partner voice
PARTNER_VOICE = "en-US-AriaNeural"           # fallback partner voice
NARRATOR_VOICE = "en-AU-WilliamNeural"       # stage directions in "spoken" mode
OUTPUT_DIR = "output"
DEFAULT_USER = "actor"
VERSION = "0.1.0"
LINE_MILESTONES = (1, 10, 50, 100, 500)     # lines completed that unlock an achievement
