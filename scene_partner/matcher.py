"""Transcript matching: word locking, per-word results, and accuracy scoring.

Speech engines revise their recent output while the actor is still talking,
so live matching "locks" each confirmed expected word and only ever looks at
transcript tokens beyond the locked prefix. Final scoring happens once per
utterance with a forgiving alignment: stutters written into the script,
non-verbal sounds, spoken fillers and transcription variants (homophones,
digits, abbreviations) never count against the actor.
"""

import re

from rapidfuzz.distance import JaroWinkler, Levenshtein

from scene_partner.constants import MATCH_LOOKAHEAD, NAME_SIMILARITY
from scene_partner.models import (
    AccuracyResult,
    LockedWordState,
    SubsequenceMatch,
    WordByWordResult,
    WordResult,
)

_PARENTHETICAL_RE = re.compile(r"\([^)]*\)")
_DASH_RE = re.compile(r"-+")
_NON_WORD_RE = re.compile(r"[^\w\s']")
_SPACE_RE = re.compile(r"\s+")

# Transcription variants only; paraphrases are acting choices and stay wrong.
_EQUIVALENT_GROUPS = [
    # Abbreviations
    ("dr", "doctor"), ("mr", "mister"), ("mrs", "missus"), ("ms", "miss"),
    ("prof", "professor"), ("st", "saint"), ("mt", "mount"),
    # Homophones
    ("their", "there", "they're"), ("your", "you're"), ("its", "it's"),
    ("to", "too", "two", "2"), ("hear", "here"), ("weather", "whether"),
    ("write", "right"), ("know", "no"), ("knew", "new"), ("would", "wood"),
    ("wait", "weight"), ("wear", "where", "ware"), ("whose", "who's"),
    ("for", "four", "4"), ("ate", "eight", "8"), ("won", "one", "1"),
    # Spelling variants
    ("ok", "okay", "k", "kay"),
    ("mhm", "mmhm", "mhmm", "mmhmm", "mmmhmm"),
    ("uhhuh", "uhuh", "ahuh"),
    ("hmm", "hm", "hmmm", "hmmmm"),
    ("um", "umm", "ummm", "uhm"),
    ("uh", "uhh", "uhhh", "er"),
    ("ah", "ahh", "ahhh"),
    ("yeah", "yea", "ya", "yah"),
    ("yeah", "yep", "yup"), ("yep", "yup", "yes"),
    ("nope", "nah", "na"), ("nah", "no"),
    # Numbers
    ("three", "3"), ("five", "5"), ("six", "6"), ("seven", "7"),
    ("nine", "9"), ("ten", "10"),
    ("first", "1st"), ("second", "2nd"), ("third", "3rd"),
]

# One token on one side, several on the other.
_EXPANSIONS = {
    "alright": ["all right"],
    "i'm": ["i am"],
    "you're": ["you are"],
    "we're": ["we are"],
    "they're": ["they are"],
    "it's": ["it is"],
    "that's": ["that is"],
    "what's": ["what is"],
    "don't": ["do not"],
    "doesn't": ["does not"],
    "didn't": ["did not"],
    "isn't": ["is not"],
    "can't": ["cannot", "can not"],
    "won't": ["will not"],
    "i'll": ["i will"],
    "i've": ["i have"],
    "let's": ["let us"],
    "cannot": ["can not"],
}


def _build_equivalents() -> dict[str, set[str]]:
    table: dict[str, set[str]] = {}
    for group in _EQUIVALENT_GROUPS:
        for word in group:
            table.setdefault(word, set()).update(w for w in group if w != word)
    return table


EQUIVALENTS = _build_equivalents()

# Spoken words that never count as extra.
FILLER_WORDS = frozenset({"um", "uh", "ah", "er", "like", "well", "so", "oh", "hmm", "mm", "hm"})

# Script words a recognizer rarely transcribes; skipped when not heard.
SKIPPABLE_SCRIPT_WORDS = frozenset({
    # thinking sounds
    "um", "uh", "ah", "er", "ehh", "uhh", "ahh", "umm",
    # acknowledgement sounds
    "mm", "mmm", "mmmm", "hmm", "hm", "hmmm", "mmhmm", "mhm", "mhmm", "mmhm",
    "uhhuh", "uhuh", "huh", "aha",
    # reactions that ended up in dialogue
    "sigh", "sighs", "sighing", "laugh", "laughs", "laughing", "chuckle", "chuckles",
    "gasp", "gasps", "gasping", "groan", "groans", "groaning", "scoff", "scoffs",
    "scoffing", "snort", "snorts", "snorting", "sob", "sobs", "sobbing",
    "cough", "coughs", "coughing", "sniff", "sniffs", "sniffing",
    "wheeze", "wheezes", "wheezing",
    # exclamations
    "oh", "ooh", "oooh", "ohhh", "ahhh", "ugh", "argh", "aargh", "whoa", "wow",
    "woah", "eh", "hey", "ho", "ha", "phew", "psst", "shh", "shush", "tsk",
    # beats
    "beat", "pause", "then",
    # conversational openers actors drop
    "well", "so",
})

_SOUNDEX_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}


# --- Tokenizing ---

def strip_parentheticals(text: str) -> str:
    """Remove "(stage direction)" spans and collapse whitespace."""
    return _SPACE_RE.sub(" ", _PARENTHETICAL_RE.sub("", text)).strip()


def _tokens_with_original(text: str) -> list[tuple[str, str]]:
    """Split text into (normalized, original) word pairs.

    Parentheticals are dropped, dashes split stutters ("I--I" → "I I"),
    punctuation other than apostrophes is removed.
    """
    cleaned = _DASH_RE.sub(" ", strip_parentheticals(text))
    cleaned = _NON_WORD_RE.sub(" ", cleaned)
    return [(w.lower(), w) for w in cleaned.split()]


def tokenize(text: str) -> list[str]:
    """Normalized word tokens for matching."""
    return [norm for norm, _ in _tokens_with_original(text)]


def bias_set(names) -> set[str]:
    """Normalize character names/proper nouns into single-word bias tokens."""
    tokens = set()
    for name in names or ():
        for token in tokenize(name):
            if len(token) >= 2:
                tokens.add(token)
    return tokens


def countable_word_count(expected_text: str) -> int:
    """Expected words the actor must actually say (stutters and sounds excluded)."""
    words = tokenize(expected_text)
    return sum(1 for i in range(len(words)) if not _auto_skippable(words, i))


def _auto_skippable(words: list[str], index: int) -> bool:
    word = words[index]
    return word in SKIPPABLE_SCRIPT_WORDS or (index > 0 and word == words[index - 1])


# --- Word comparison ---

def soundex(word: str) -> str:
    """Four-character American Soundex code."""
    if not word:
        return ""
    upper = word.upper()
    first = upper[0]
    code = first
    prev = _SOUNDEX_CODES.get(first, "0")
    for char in upper[1:]:
        if len(code) >= 4:
            break
        digit = _SOUNDEX_CODES.get(char)
        if digit and digit != prev:
            code += digit
        prev = digit or "0"
    return (code + "000")[:4]


def is_proper_noun(original: str, is_first_word: bool) -> bool:
    """Capitalized word that isn't the first word of the line."""
    if not original or is_first_word:
        return False
    return original[0].isupper()


def words_match(
    expected: str,
    spoken: str,
    expected_original: str | None = None,
    is_first_word: bool = False,
    bias_tokens: set[str] | None = None,
    strict: bool = False,
) -> bool:
    """Decide whether a spoken token stands for an expected token.

    Exact and equivalent-table matches always count. Outside strict mode,
    names get Jaro-Winkler >= 0.80, short words one edit, long words two
    edits, and anything with the same Soundex code passes.
    """
    if expected == spoken:
        return True
    if spoken in EQUIVALENTS.get(expected, ()) or expected in EQUIVALENTS.get(spoken, ()):
        return True
    if strict:
        return False

    is_name = (
        (expected_original is not None and is_proper_noun(expected_original, is_first_word))
        or (bias_tokens is not None and expected in bias_tokens)
    )
    if is_name and JaroWinkler.similarity(expected, spoken) >= NAME_SIMILARITY:
        return True

    if len(expected) <= 5 or len(spoken) <= 5:
        if Levenshtein.distance(expected, spoken, score_cutoff=2) <= 1:
            return True
    if len(expected) >= 6 and len(spoken) >= 6:
        if Levenshtein.distance(expected, spoken, score_cutoff=3) <= 2:
            return True

    if len(expected) >= 2 and len(spoken) >= 2:
        if soundex(expected) == soundex(spoken):
            return True

    return False


class _Alignment:
    """Expected/spoken token lists plus a bound word comparison."""

    def __init__(self, expected_text: str, spoken_text: str, bias_tokens, strict: bool = False):
        pairs = _tokens_with_original(expected_text)
        self.expected = [norm for norm, _ in pairs]
        self.originals = [orig for _, orig in pairs]
        self.spoken = tokenize(spoken_text)
        self.bias = bias_set(bias_tokens) if bias_tokens else set()
        self.strict = strict

    def match(self, exp_idx: int, spoken_word: str, expected_word: str | None = None,
              first_word: bool | None = None) -> bool:
        word = self.expected[exp_idx] if expected_word is None else expected_word
        is_first = exp_idx == 0 if first_word is None else first_word
        return words_match(word, spoken_word, self.originals[exp_idx], is_first, self.bias, self.strict)

    def is_stutter(self, exp_idx: int) -> bool:
        return exp_idx > 0 and self.expected[exp_idx] == self.expected[exp_idx - 1]

    def is_skippable(self, exp_idx: int) -> bool:
        return self.expected[exp_idx] in SKIPPABLE_SCRIPT_WORDS


# --- Live locking ---

def create_fresh_state() -> LockedWordState:
    """Locked state for the start of a listening attempt."""
    return LockedWordState(locked_count=0, has_error=False, locked_words=[], expected_index=0)


def match_update(
    expected_text: str,
    transcript_so_far: str,
    prior_state: LockedWordState | None,
    bias_tokens=None,
) -> LockedWordState:
    """Advance the locked prefix using the latest transcript.

    Expected positions below prior_state.locked_count are never re-examined,
    and the spoken tokens already locked are skipped, so a recognizer
    rewriting earlier words cannot unlock them. Once an error is flagged the
    state is frozen for the rest of the attempt.
    """
    if prior_state is None:
        prior_state = create_fresh_state()
    if prior_state.has_error:
        return prior_state

    align = _Alignment(expected_text, transcript_so_far, bias_tokens)
    if len(align.spoken) < len(prior_state.locked_words):
        # Recognizer dropped words it had emitted; keep what was locked.
        return prior_state

    locked_words = list(prior_state.locked_words)
    locked_count = prior_state.locked_count
    has_error = False
    exp_idx = max(prior_state.expected_index, locked_count)
    spk_idx = len(locked_words)

    while spk_idx < len(align.spoken) and exp_idx < len(align.expected):
        spoken_word = align.spoken[spk_idx]
        matched = align.match(exp_idx, spoken_word)

        if not matched and (align.is_stutter(exp_idx) or align.is_skippable(exp_idx)):
            exp_idx += 1
            continue

        if matched:
            locked_words.append(spoken_word)
            locked_count += 1
            exp_idx += 1
            spk_idx += 1
        elif spoken_word in FILLER_WORDS:
            # Consumed without confirming anything.
            locked_words.append(spoken_word)
            spk_idx += 1
        else:
            has_error = True
            break

    return LockedWordState(
        locked_count=locked_count,
        has_error=has_error,
        locked_words=locked_words,
        expected_index=exp_idx,
    )


def is_fully_locked(expected_text: str, state: LockedWordState) -> bool:
    """True once every word the actor has to say is locked."""
    return not state.has_error and state.locked_count >= countable_word_count(expected_text)


# --- Final classification ---

def word_by_word_result(expected_text: str, spoken_text: str, bias_tokens=None) -> WordByWordResult:
    """Classify each expected word as correct, wrong, or missing."""
    align = _Alignment(expected_text, spoken_text, bias_tokens)
    expected, spoken = align.expected, align.spoken

    if not spoken:
        return WordByWordResult(
            results=[WordResult.MISSING] * len(expected),
            aligned_spoken=[""] * len(expected),
        )

    results: list[WordResult] = []
    aligned: list[str] = []
    exp_idx = 0
    spk_idx = 0

    while exp_idx < len(expected):
        exp_word = expected[exp_idx]
        has_spoken = spk_idx < len(spoken)

        if align.is_stutter(exp_idx):
            if has_spoken and align.match(exp_idx, spoken[spk_idx]):
                results.append(WordResult.CORRECT)
                aligned.append(spoken[spk_idx])
                exp_idx += 1
                spk_idx += 1
                continue
            if spk_idx > 0:
                results.append(WordResult.CORRECT)
                aligned.append(exp_word)
                exp_idx += 1
                continue

        if align.is_skippable(exp_idx):
            results.append(WordResult.CORRECT)
            if has_spoken and align.match(exp_idx, spoken[spk_idx]):
                aligned.append(spoken[spk_idx])
                spk_idx += 1
            else:
                aligned.append(exp_word)
            exp_idx += 1
            continue

        if not has_spoken:
            results.append(WordResult.MISSING)
            aligned.append("")
            exp_idx += 1
            continue

        spk_word = spoken[spk_idx]

        if align.match(exp_idx, spk_word):
            results.append(WordResult.CORRECT)
            aligned.append(spk_word)
            exp_idx += 1
            spk_idx += 1
            continue

        # "cork screw" spoken for "corkscrew"
        if spk_idx + 1 < len(spoken):
            joined = spk_word + spoken[spk_idx + 1]
            if align.match(exp_idx, joined):
                results.append(WordResult.CORRECT)
                aligned.append(joined)
                exp_idx += 1
                spk_idx += 2
                continue

        # "corkscrew" spoken for "cork screw"
        if exp_idx + 1 < len(expected):
            joined_exp = exp_word + expected[exp_idx + 1]
            if align.match(exp_idx, spk_word, expected_word=joined_exp):
                results.extend([WordResult.CORRECT, WordResult.CORRECT])
                aligned.extend([spk_word, ""])
                exp_idx += 2
                spk_idx += 1
                continue

        consumed = _expansion_span(exp_word, spoken, spk_idx)
        if consumed:
            results.append(WordResult.CORRECT)
            aligned.append(" ".join(spoken[spk_idx:spk_idx + consumed]))
            exp_idx += 1
            spk_idx += consumed
            continue

        covered = _expansion_span(spk_word, expected, exp_idx)
        if covered:
            results.extend([WordResult.CORRECT] * covered)
            aligned.extend([spk_word] + [""] * (covered - 1))
            exp_idx += covered
            spk_idx += 1
            continue

        results.append(WordResult.WRONG)
        aligned.append(spk_word)
        exp_idx += 1
        spk_idx += 1

    return WordByWordResult(results=results, aligned_spoken=aligned)


def _expansion_span(word: str, other: list[str], start: int) -> int:
    """Tokens of `other` from `start` that spell out a multi-word expansion of `word`."""
    for expansion in _EXPANSIONS.get(word, ()):
        parts = expansion.split(" ")
        if len(parts) > 1 and other[start:start + len(parts)] == parts:
            return len(parts)
    return 0


def _tolerance(word_count: int, strict: bool) -> tuple[int, int, int]:
    """(allowed_missing, allowed_extra, min_accuracy) for a line length."""
    if strict:
        return 0, 0, 100
    if word_count > 20:
        return 3, 3, 85
    if word_count > 10:
        return 2, 2, 90
    return 1, 1, 90


def score_accuracy(
    expected_text: str,
    spoken_text: str,
    strict_mode: bool = False,
    bias_tokens=None,
) -> AccuracyResult:
    """Score a finished utterance against its expected text.

    Mismatches are classified with a short look-ahead: if the spoken word
    shows up a little later in the script the skipped script words are
    missing; if the script word shows up a little later in speech the
    intervening spoken words are extra; otherwise it's a substitution.
    Any substitution fails the line.
    """
    align = _Alignment(expected_text, spoken_text, bias_tokens, strict=strict_mode)
    expected, spoken = align.expected, align.spoken

    if not spoken:
        missing = [w for i, w in enumerate(expected) if not _auto_skippable(expected, i)]
        return AccuracyResult(is_correct=False, accuracy=0, missing_words=missing)

    if expected == spoken:
        return AccuracyResult(is_correct=True, accuracy=100)

    missing_words: list[str] = []
    extra_words: list[str] = []
    wrong_words: list[str] = []
    exp_idx = 0
    spk_idx = 0
    matched = 0
    skipped = 0

    while exp_idx < len(expected) and spk_idx < len(spoken):
        exp_word = expected[exp_idx]
        spk_word = spoken[spk_idx]
        direct = align.match(exp_idx, spk_word)

        if not direct and (align.is_skippable(exp_idx) or align.is_stutter(exp_idx)):
            exp_idx += 1
            skipped += 1
            continue

        if direct:
            matched += 1
            exp_idx += 1
            spk_idx += 1
            continue

        if spk_idx + 1 < len(spoken) and align.match(exp_idx, spk_word + spoken[spk_idx + 1]):
            matched += 1
            exp_idx += 1
            spk_idx += 2
            continue

        if exp_idx + 1 < len(expected) and align.match(
            exp_idx, spk_word, expected_word=exp_word + expected[exp_idx + 1]
        ):
            matched += 2
            exp_idx += 2
            spk_idx += 1
            continue

        consumed = _expansion_span(exp_word, spoken, spk_idx)
        if consumed:
            matched += 1
            exp_idx += 1
            spk_idx += consumed
            continue

        covered = _expansion_span(spk_word, expected, exp_idx)
        if covered:
            matched += 1
            exp_idx += covered
            spk_idx += 1
            continue

        if spk_word in FILLER_WORDS:
            spk_idx += 1
            continue

        ahead_in_expected = _find_ahead(
            lambda i: align.match(exp_idx + i, spk_word, first_word=False),
            len(expected) - exp_idx,
        )
        ahead_in_spoken = _find_ahead(
            lambda i: align.match(exp_idx, spoken[spk_idx + i]),
            len(spoken) - spk_idx,
        )

        if ahead_in_expected is None and ahead_in_spoken is None:
            wrong_words.append(f'"{spk_word}" instead of "{exp_word}"')
            exp_idx += 1
            spk_idx += 1
        elif ahead_in_spoken is not None and (
            ahead_in_expected is None or ahead_in_spoken <= ahead_in_expected
        ):
            extra_words.append(spk_word)
            spk_idx += 1
        else:
            missing_words.append(exp_word)
            exp_idx += 1

    while exp_idx < len(expected):
        if _auto_skippable(expected, exp_idx):
            skipped += 1
        else:
            missing_words.append(expected[exp_idx])
        exp_idx += 1

    extra_words.extend(w for w in spoken[spk_idx:] if w not in FILLER_WORDS)

    effective = len(expected) - skipped
    accuracy = round(matched / effective * 100) if effective > 0 else 100
    allowed_missing, allowed_extra, min_accuracy = _tolerance(effective, strict_mode)

    is_correct = (
        not wrong_words
        and accuracy >= min_accuracy
        and len(missing_words) <= allowed_missing
        and len(extra_words) <= allowed_extra
    )
    return AccuracyResult(
        is_correct=is_correct,
        accuracy=accuracy,
        missing_words=missing_words,
        extra_words=extra_words,
        wrong_words=wrong_words,
    )


def _find_ahead(predicate, remaining: int) -> int | None:
    """First offset in 1..MATCH_LOOKAHEAD (bounded by remaining) where predicate holds."""
    for offset in range(1, min(MATCH_LOOKAHEAD, remaining - 1) + 1):
        if predicate(offset):
            return offset
    return None


# --- Gap-tolerant live coverage ---

def subsequence_match(expected_text: str, spoken_text: str, bias_tokens=None) -> SubsequenceMatch:
    """Longest-common-subsequence match of spoken words onto expected words.

    Unlike locking, a wrong word in the middle doesn't stop later words from
    matching. Skippable sounds and stutters count as matched up front.
    """
    align = _Alignment(expected_text, spoken_text, bias_tokens)
    expected = align.expected
    matched_indices = {i for i in range(len(expected)) if _auto_skippable(expected, i)}
    skipped = len(matched_indices)
    effective = len(expected) - skipped

    rows = [i for i in range(len(expected)) if i not in matched_indices]
    spoken = [w for w in align.spoken if w not in FILLER_WORDS]

    if not rows:
        return SubsequenceMatch(matched_indices, 0, 1.0)
    if not spoken:
        return SubsequenceMatch(matched_indices, 0, 0.0 if effective > 0 else 1.0)

    m, n = len(rows), len(spoken)
    hits = [[align.match(rows[i], spoken[j]) for j in range(n)] for i in range(m)]
    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if hits[i - 1][j - 1]:
                dp[i][j] = dp[i - 1][j - 1] + 1
            else:
                dp[i][j] = max(dp[i - 1][j], dp[i][j - 1])

    i, j = m, n
    while i > 0 and j > 0:
        if hits[i - 1][j - 1]:
            matched_indices.add(rows[i - 1])
            i -= 1
            j -= 1
        elif dp[i - 1][j] >= dp[i][j - 1]:
            i -= 1
        else:
            j -= 1

    real = len(matched_indices) - skipped
    return SubsequenceMatch(matched_indices, real, real / effective if effective > 0 else 1.0)
