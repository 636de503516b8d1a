"""Tests for matcher module (Layer 1a)."""

from scene_partner.matcher import (
    bias_set,
    countable_word_count,
    create_fresh_state,
    is_fully_locked,
    match_update,
    score_accuracy,
    soundex,
    strip_parentheticals,
    subsequence_match,
    tokenize,
    word_by_word_result,
    words_match,
)
from scene_partner.models import WordResult

C, W, M = WordResult.CORRECT, WordResult.WRONG, WordResult.MISSING


# --- Tokenizing ---

def test_tokenize_strips_punctuation_and_case():
    """Punctuation goes, apostrophes stay, case folds."""
    assert tokenize("Don't go, please!") == ["don't", "go", "please"]


def test_tokenize_splits_dashes():
    """Dash stutters become separate words."""
    assert tokenize("I--I am") == ["i", "i", "am"]
    assert tokenize("I-I am") == ["i", "i", "am"]


def test_tokenize_drops_parentheticals():
    """Stage directions inside parentheses are never expected."""
    assert tokenize("(quietly) Nobody at all") == ["nobody", "at", "all"]


def test_strip_parentheticals_collapses_spaces():
    """Removed spans leave single spaces."""
    assert strip_parentheticals("I (beat) never  said that") == "I never said that"


def test_bias_set_splits_names():
    """Multi-word names become single tokens; single letters are dropped."""
    assert bias_set(["Lady Macbeth", "J"]) == {"lady", "macbeth"}


def test_countable_word_count_excludes_stutters_and_sounds():
    """Stutters and script sounds don't count toward what must be said."""
    assert countable_word_count("I--I am here") == 3
    assert countable_word_count("sighs I know") == 2


# --- Word comparison ---

def test_soundex_codes():
    """Classic Soundex examples."""
    assert soundex("Robert") == "R163"
    assert soundex("Rupert") == "R163"
    assert soundex("Tymczak") == "T522"
    assert soundex("") == ""


def test_words_match_equivalents():
    """Homophones, numbers and abbreviations match both ways."""
    assert words_match("their", "there")
    assert words_match("2", "two")
    assert words_match("doctor", "dr")
    assert words_match("okay", "ok")


def test_words_match_strict_stops_at_equivalents():
    """Strict mode keeps equivalents but drops fuzzy matches."""
    assert words_match("your", "you're", strict=True)
    assert not words_match("colour", "color", strict=True)
    assert words_match("colour", "color")


def test_words_match_names_use_jaro_winkler():
    """Bias tokens tolerate recognizer misspellings."""
    assert words_match("robinavitch", "robinovich", bias_tokens={"robinavitch"})


def test_words_match_rejects_unrelated_words():
    """Fuzzy matching doesn't turn paraphrases into matches."""
    assert not words_match("old", "young")
    assert not words_match("love", "hate")


# --- Live locking ---

def test_fresh_state():
    """A fresh state has nothing locked."""
    state = create_fresh_state()
    assert state.locked_count == 0
    assert state.has_error is False
    assert state.locked_words == []


def test_match_update_from_none():
    """Matching starts fresh when there is no prior state."""
    state = match_update("hello world", "hello", None)
    assert state.locked_count == 1
    assert state.locked_words == ["hello"]
    assert not state.has_error


def test_match_update_locks_incrementally():
    """Each update locks the newly spoken words."""
    expected = "I am going home"
    s1 = match_update(expected, "I", None)
    s2 = match_update(expected, "I am", s1)
    s3 = match_update(expected, "I am going", s2)
    s4 = match_update(expected, "I am going home", s3)
    assert [s.locked_count for s in (s1, s2, s3, s4)] == [1, 2, 3, 4]
    assert s4.locked_words == ["i", "am", "going", "home"]


def test_match_update_keeps_state_when_words_drop():
    """A recognizer rewriting to fewer words can't unlock anything."""
    expected = "I am going home"
    s1 = match_update(expected, "I am going", None)
    s2 = match_update(expected, "I am", s1)
    assert s2.locked_count == 3
    assert s2.locked_words == ["i", "am", "going"]


def test_match_update_freezes_on_error():
    """The first mismatch flags an error and later updates change nothing."""
    expected = "I am going home"
    s1 = match_update(expected, "I am", None)
    s2 = match_update(expected, "I am leaving", s1)
    assert s2.has_error
    assert s2.locked_count == 2
    s3 = match_update(expected, "I am leaving town", s2)
    assert s3.has_error
    assert s3.locked_count == 2


def test_match_update_ignores_rewritten_locked_words():
    """Earlier words re-transcribed differently stay locked."""
    expected = "I am going home"
    s1 = match_update(expected, "I am", None)
    s2 = match_update(expected, "Hi am going", s1)
    assert s2.locked_count == 3
    assert not s2.has_error


def test_match_update_skips_stutters():
    """A scripted stutter need not be spoken."""
    state = match_update("I--I am here", "I am here", None)
    assert state.locked_count == 3
    assert not state.has_error


def test_match_update_stutter_across_updates():
    """Skipping a stutter in one update doesn't misalign the next."""
    expected = "I--I am here now"
    s1 = match_update(expected, "I am", None)
    s2 = match_update(expected, "I am here", s1)
    s3 = match_update(expected, "I am here now", s2)
    assert not s3.has_error
    assert s3.locked_count == 4


def test_match_update_skips_script_sounds():
    """Script sounds like "um" and "well" are stepped over."""
    assert match_update("um hello", "hello", None).locked_count == 1
    assert match_update("well hello", "hello", None).locked_count == 1


def test_match_update_consumes_spoken_fillers():
    """A spoken filler neither locks nor errors."""
    state = match_update("I am fine", "I so am", None)
    assert state.locked_count == 2
    assert not state.has_error


def test_match_update_never_regresses():
    """Locked count is non-decreasing over any sequence of transcripts."""
    expected = "the quick brown fox jumps"
    transcripts = ["the", "the quick", "the", "the quick brown", "a quick", "the quick brown fox jumps"]
    state = create_fresh_state()
    counts = []
    for text in transcripts:
        state = match_update(expected, text, state)
        counts.append(state.locked_count)
    assert counts == sorted(counts)


def test_is_fully_locked_uses_countable_words():
    """Lines with stutters finish once the spoken words are locked."""
    expected = "I--I am here"
    assert is_fully_locked(expected, match_update(expected, "I am here", None))
    assert not is_fully_locked(expected, match_update(expected, "I am", None))


# --- Word by word ---

def test_word_by_word_exact():
    """An exact repeat is all correct."""
    result = word_by_word_result("I never said that", "I never said that")
    assert result.results == [C, C, C, C]


def test_word_by_word_wrong_word():
    """A substitution is marked wrong with the spoken word aligned."""
    result = word_by_word_result("I love you", "I hate you")
    assert result.results == [C, W, C]
    assert result.aligned_spoken[1] == "hate"


def test_word_by_word_missing_tail():
    """Stopping short leaves the rest missing."""
    result = word_by_word_result("I am going home", "I am")
    assert result.results == [C, C, M, M]


def test_word_by_word_empty_spoken():
    """Saying nothing misses everything."""
    result = word_by_word_result("I am going home", "")
    assert result.results == [M, M, M, M]


def test_word_by_word_stutter_and_sounds():
    """Stutters and unspoken sounds count as correct."""
    assert word_by_word_result("I--I am here", "I am here").results == [C, C, C, C]
    assert word_by_word_result("um hello", "hello").results == [C, C]


def test_word_by_word_expansions():
    """Multi-word forms match in either direction."""
    assert word_by_word_result("alright lets go", "all right lets go").results == [C, C, C]
    assert word_by_word_result("all right", "alright").results == [C, C]


# --- Accuracy ---

def test_score_exact_match():
    """An exact line is correct at 100% with nothing missing."""
    result = score_accuracy("I never said that", "I never said that")
    assert result.is_correct
    assert result.accuracy == 100
    assert result.missing_words == []
    assert result.extra_words == []
    assert result.wrong_words == []


def test_score_ignores_case_and_punctuation():
    """Case and punctuation differences don't matter."""
    result = score_accuracy("Hello, world!", "hello world")
    assert result.is_correct
    assert result.accuracy == 100


def test_score_substitution_fails():
    """Any wrong word fails the line."""
    result = score_accuracy("I love you", "I hate you")
    assert not result.is_correct
    assert result.wrong_words == ['"hate" instead of "love"']


def test_score_substitution_fails_long_line():
    """A single substitution fails even when accuracy is high."""
    expected = "the quick brown fox jumps over the lazy old dog"
    spoken = "the quick brown fox jumps over the lazy young dog"
    result = score_accuracy(expected, spoken)
    assert not result.is_correct
    assert result.wrong_words


def test_score_missing_word_short_line():
    """One missing word of five drops below the 90% floor."""
    result = score_accuracy("I am going home now", "I am going home")
    assert result.missing_words == ["now"]
    assert result.accuracy == 80
    assert not result.is_correct


def test_score_medium_line_tolerance():
    """Eleven of thirteen words is two missing but only 85%."""
    expected = "I went to the store and bought some bread and milk and cheese"
    spoken = "I went to the store and bought some bread and milk"
    result = score_accuracy(expected, spoken)
    assert sorted(result.missing_words) == ["and", "cheese"]
    assert not result.is_correct


def test_score_long_line_tolerance():
    """Long lines allow three missing words at 85%."""
    words = ("the quick brown fox jumps over the lazy dog and runs across the wide open "
             "field to find some food and water for the long journey ahead")
    spoken = " ".join(words.split()[:-3])
    result = score_accuracy(words, spoken)
    assert len(result.missing_words) == 3
    assert result.is_correct


def test_score_extra_words():
    """Added words are reported as extra."""
    result = score_accuracy("I am fine", "I am really very fine")
    assert result.extra_words == ["really", "very"]
    assert result.missing_words == []
    assert not result.is_correct


def test_score_fillers_never_extra():
    """Spoken fillers at the start, middle or end aren't extra."""
    assert score_accuracy("I am going home", "I am going home uh").extra_words == []
    mid = score_accuracy("I am going home today", "I am going home uh today")
    assert mid.extra_words == []
    assert mid.accuracy == 100
    lead = score_accuracy("I am fine", "um I am fine")
    assert lead.is_correct
    assert lead.accuracy == 100


def test_score_equivalents():
    """Transcription variants are correct."""
    assert score_accuracy("their house is big", "there house is big").is_correct
    assert score_accuracy("you're going home", "your going home").is_correct
    assert score_accuracy("I have 2 dogs", "I have two dogs").is_correct


def test_score_stutters_excluded_from_denominator():
    """Unspoken scripted stutters don't lower accuracy."""
    for expected in ("I--I am here", "I-I am here"):
        result = score_accuracy(expected, "I am here")
        assert result.accuracy == 100
        assert result.is_correct
    assert score_accuracy("I--I am here", "I I am here").accuracy == 100


def test_score_skippable_words_excluded():
    """Script sounds the actor leaves out don't count."""
    for expected, spoken in [
        ("um I think so", "I think so"),
        ("well I think so", "I think so"),
        ("so what do you think", "what do you think"),
        ("sighs I know", "I know"),
    ]:
        result = score_accuracy(expected, spoken)
        assert result.missing_words == []
        assert result.accuracy == 100
        assert result.is_correct


def test_score_proper_noun_fuzzy():
    """Misspelled names pass."""
    assert score_accuracy("Hello Robinavitch how are you", "hello robinovich how are you").is_correct


def test_score_old_is_not_young():
    """Different words stay different."""
    assert not score_accuracy("the old man", "the young man").is_correct


def test_score_empty_spoken():
    """Silence scores zero with every word missing."""
    result = score_accuracy("I never said that", "")
    assert not result.is_correct
    assert result.accuracy == 0
    assert result.missing_words == ["i", "never", "said", "that"]


def test_score_strict_mode():
    """Strict mode allows no missing or extra words but keeps equivalents."""
    assert not score_accuracy("I am going to the store today", "I am going to the store", True).is_correct
    missing = score_accuracy("hello world", "hello", True)
    assert "world" in missing.missing_words
    assert not missing.is_correct
    assert not score_accuracy("hello world", "hello beautiful world", True).is_correct
    assert score_accuracy("you're welcome", "your welcome", True).is_correct
    assert score_accuracy("I--I am here", "I am here", True).is_correct
    assert score_accuracy("I know right", "um I know right", True).is_correct


def test_score_strict_rejects_fuzzy():
    """A near-miss spelling passes normally but not strictly."""
    assert score_accuracy("the colour red", "the color red").is_correct
    assert not score_accuracy("the colour red", "the color red", strict_mode=True).is_correct


# --- Subsequence ---

def test_subsequence_tolerates_gaps():
    """Later words still match after a skipped one."""
    match = subsequence_match("I never said that", "I said that")
    assert match.matched_indices == {0, 2, 3}
    assert match.matched_count == 3
    assert match.coverage == 0.75


def test_subsequence_empty_spoken():
    """No speech covers nothing."""
    assert subsequence_match("I never said that", "").coverage == 0.0
