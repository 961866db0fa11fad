from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional, Sequence

from .errors import InvalidInputError
from .models import (
    DecisivenessMetrics,
    LexicalMetrics,
    PauseMetrics,
    SentenceMetrics,
    WordTiming,
)


PAUSE_THRESHOLD_SECONDS = 0.3
STRATEGIC_PAUSE_SECONDS = 0.8
LONG_PAUSE_SECONDS = 1.5
FIRST_IMPRESSION_SECONDS = 40.0


@dataclass(frozen=True)
class Lexicon:
    """Phrase lists used by the lexical extractor.

    Bump ``version`` whenever a list changes; the version is stored with every
    metrics payload so old reports stay explainable.
    """

    version: str
    fillers: tuple[str, ...]
    hedges: tuple[str, ...]
    confidence_markers: tuple[str, ...] = ()
    decisive: tuple[str, ...] = ()
    tentative: tuple[str, ...] = ()


DEFAULT_LEXICON = Lexicon(
    version="lexicon_v1",
    fillers=(
        "um",
        "uh",
        "like",
        "you know",
        "basically",
        "actually",
        "literally",
        "right",
        "so",
        "well",
    ),
    hedges=(
        "maybe",
        "perhaps",
        "i think",
        "i guess",
        "kind of",
        "sort of",
        "probably",
        "might",
        "could be",
    ),
    confidence_markers=(
        "i know",
        "i am confident",
        "definitely",
        "certainly",
        "absolutely",
        "we will",
        "i will",
        "without doubt",
        "clearly",
        "undoubtedly",
    ),
    decisive=(
        "will",
        "must",
        "shall",
        "need to",
        "have to",
        "going to",
        "commit",
        "decide",
        "choose",
        "determine",
    ),
    tentative=(
        "might",
        "maybe",
        "perhaps",
        "could",
        "would",
        "possibly",
        "hopefully",
        "try to",
        "attempt",
    ),
)


@lru_cache(maxsize=256)
def _phrase_pattern(phrase: str) -> re.Pattern:
    parts = [re.escape(part) for part in phrase.split()]
    return re.compile(r"\b" + r"\s+".join(parts) + r"\b", re.IGNORECASE)


def count_word_tokens(transcript: str) -> int:
    return len((transcript or "").split())


def count_phrases(transcript: str, phrases: Iterable[str]) -> Counter[str]:
    """Count each phrase independently.

    A word inside a matched phrase can also match a shorter phrase; those
    overlaps are counted twice.
    """
    counter: Counter[str] = Counter()
    text = transcript or ""
    for phrase in phrases:
        hits = len(_phrase_pattern(phrase).findall(text))
        if hits:
            counter[phrase] += hits
    return counter


def compute_lexical_metrics(
    transcript: str,
    duration_seconds: float,
    lexicon: Lexicon = DEFAULT_LEXICON,
) -> LexicalMetrics:
    if transcript is None:
        raise InvalidInputError("Transcript must be a string, not None.")

    word_count = count_word_tokens(transcript)
    duration = float(duration_seconds or 0.0)

    if word_count == 0:
        return LexicalMetrics(
            word_count=0,
            duration_seconds=max(duration, 0.0),
            speaking_rate_wpm=0.0,
            filler_count=0,
            filler_rate_pct=0.0,
            hedge_count=0,
            confidence_count=0,
            lexicon_version=lexicon.version,
        )

    speaking_rate_wpm = (word_count * 60.0) / duration if duration > 0 else 0.0

    fillers = count_phrases(transcript, lexicon.fillers)
    hedges = count_phrases(transcript, lexicon.hedges)
    confidence = count_phrases(transcript, lexicon.confidence_markers)

    filler_count = int(sum(fillers.values()))
    filler_rate_pct = (filler_count * 100.0) / word_count

    return LexicalMetrics(
        word_count=word_count,
        duration_seconds=duration,
        speaking_rate_wpm=speaking_rate_wpm,
        filler_count=filler_count,
        filler_rate_pct=filler_rate_pct,
        hedge_count=int(sum(hedges.values())),
        confidence_count=int(sum(confidence.values())),
        filler_breakdown=dict(fillers.most_common()),
        hedge_breakdown=dict(hedges.most_common()),
        lexicon_version=lexicon.version,
    )


def _coerce_timing(item) -> WordTiming:
    if isinstance(item, WordTiming):
        return item
    if isinstance(item, dict):
        return WordTiming(
            word=str(item.get("word") or ""),
            start=float(item.get("start", item.get("start_seconds", 0.0))),
            end=float(item.get("end", item.get("end_seconds", 0.0))),
        )
    word, start, end = item
    return WordTiming(word=str(word), start=float(start), end=float(end))


def validate_word_timings(words: Sequence) -> list[WordTiming]:
    """Reject timings that break the ordering contract instead of clamping them."""
    timings = [_coerce_timing(item) for item in words or []]
    previous_start: Optional[float] = None
    for index, timing in enumerate(timings):
        if not (math.isfinite(timing.start) and math.isfinite(timing.end)):
            raise InvalidInputError(f"Word timing {index} has a non-finite timestamp.")
        if timing.start < 0 or timing.end < 0:
            raise InvalidInputError(f"Word timing {index} has a negative timestamp.")
        if timing.end < timing.start:
            raise InvalidInputError(f"Word timing {index} ends before it starts.")
        if previous_start is not None and timing.start < previous_start:
            raise InvalidInputError(
                f"Word timing {index} starts at {timing.start:.2f}s, before the previous word "
                f"({previous_start:.2f}s)."
            )
        previous_start = timing.start
    return timings


def compute_pause_metrics(
    words: Sequence,
    duration_seconds: Optional[float] = None,
) -> PauseMetrics:
    timings = validate_word_timings(words)
    if len(timings) < 2:
        return PauseMetrics(
            pause_count=0,
            total_pause_seconds=0.0,
            avg_pause_seconds=0.0,
            pauses_per_minute=0.0,
        )

    pause_count = 0
    total_pause_seconds = 0.0
    longest_pause_seconds = 0.0
    brief = strategic = long = 0

    for previous, current in zip(timings, timings[1:]):
        gap = current.start - previous.end
        if gap <= PAUSE_THRESHOLD_SECONDS:
            continue
        pause_count += 1
        total_pause_seconds += gap
        longest_pause_seconds = max(longest_pause_seconds, gap)
        if gap > LONG_PAUSE_SECONDS:
            long += 1
        elif gap > STRATEGIC_PAUSE_SECONDS:
            strategic += 1
        else:
            brief += 1

    if duration_seconds is None:
        duration_seconds = timings[-1].end - timings[0].start
    duration_minutes = float(duration_seconds) / 60.0

    return PauseMetrics(
        pause_count=pause_count,
        total_pause_seconds=total_pause_seconds,
        avg_pause_seconds=(total_pause_seconds / pause_count) if pause_count else 0.0,
        pauses_per_minute=(pause_count / duration_minutes) if duration_minutes > 0 else 0.0,
        longest_pause_seconds=longest_pause_seconds,
        brief_pauses=brief,
        strategic_pauses=strategic,
        long_pauses=long,
    )


def compute_sentence_metrics(transcript: str) -> SentenceMetrics:
    sentences = [s.strip() for s in re.split(r"[.!?]+", transcript or "") if s.strip()]
    lengths = [count_word_tokens(sentence) for sentence in sentences]
    word_count = count_word_tokens(transcript)
    return SentenceMetrics(
        total_sentences=len(sentences),
        average_words_per_sentence=round(word_count / max(len(sentences), 1), 1),
        short_sentences=sum(1 for length in lengths if length <= 15),
        medium_sentences=sum(1 for length in lengths if 15 < length <= 25),
        long_sentences=sum(1 for length in lengths if length > 25),
    )


def compute_decisiveness_metrics(
    transcript: str,
    lexicon: Lexicon = DEFAULT_LEXICON,
) -> DecisivenessMetrics:
    decisive = int(sum(count_phrases(transcript, lexicon.decisive).values()))
    tentative = int(sum(count_phrases(transcript, lexicon.tentative).values()))
    ratio = decisive / max(tentative, 1)
    return DecisivenessMetrics(
        decisive_phrases=decisive,
        tentative_phrases=tentative,
        decisiveness_ratio=round(ratio, 2),
        decisiveness_score=min(100, round(50 + ratio * 15)),
    )


def first_impression_text(words: Sequence, window_seconds: float = FIRST_IMPRESSION_SECONDS) -> str:
    timings = [_coerce_timing(item) for item in words or []]
    return " ".join(t.word for t in timings if t.start <= window_seconds).strip()


# ---------------------------------------------------------------------------
# Benchmark bands. These give the model a pre-calculated anchor for the
# delivery parameters so it scores against measured numbers.
# ---------------------------------------------------------------------------

def speaking_rate_score(wpm: float) -> int:
    if 140 <= wpm <= 160:
        return 95
    if 130 <= wpm < 140 or 160 < wpm <= 170:
        return 85
    if 120 <= wpm < 130 or 170 < wpm <= 180:
        return 70
    if 100 <= wpm < 120 or 180 < wpm <= 200:
        return 55
    return 40


def filler_score(filler_rate_pct: float) -> int:
    for ceiling, score in ((1, 95), (2, 85), (3, 75), (4, 65), (5, 55), (7, 45)):
        if filler_rate_pct <= ceiling:
            return score
    return 35


def pause_score(pauses_per_minute: float, avg_pause_seconds: float) -> int:
    score = 70
    if 3 <= pauses_per_minute <= 5:
        score += 15
    elif 2 <= pauses_per_minute <= 6:
        score += 8
    elif pauses_per_minute < 2 or pauses_per_minute > 8:
        score -= 10

    if 0.5 <= avg_pause_seconds <= 1.0:
        score += 15
    elif 0.3 <= avg_pause_seconds <= 1.5:
        score += 8
    elif avg_pause_seconds > 2.0:
        score -= 10
    return max(30, min(100, score))


def confidence_score(hedge_count: int, confidence_count: int, word_count: int) -> int:
    if word_count <= 0:
        return 45
    hedge_rate = (hedge_count / word_count) * 100
    ratio = confidence_count / max(hedge_count, 1)
    if ratio >= 3 and hedge_rate < 1:
        return 95
    if ratio >= 2 and hedge_rate < 2:
        return 85
    if ratio >= 1.5 and hedge_rate < 3:
        return 75
    if ratio >= 1 and hedge_rate < 4:
        return 65
    if ratio >= 0.5:
        return 55
    return 45
