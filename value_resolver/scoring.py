"""Scoring Kernel.

Pure scoring of one (candidate, input) pair. Six strategies each produce a
raw score in [0, 1]:

    prefix            one normalized string is a prefix of the other
    levenshtein       edit-distance similarity (whole string or word window)
    initials          position-weighted agreement of word initials
    reverse_initials  input read as an acronym of the candidate's words
    words             Jaccard similarity of word sets
    phonetics         equal per-word Soundex codes

The composite is the best raw score plus a bounded bonus for the other
non-zero strategies. The reported strategy is the one with the highest
weight * raw score, which is not necessarily the highest raw score.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from value_resolver.models import (
    DEFAULT_SCORING_CONFIG,
    ScoringConfig,
    StrategyName,
)
from value_resolver.normalize import (
    MIN_PREFIX_LENGTH,
    MIN_PREFIX_RUN,
    normalize_term,
    phonetic_code,
    tokenize_term,
    word_initials,
)


# Tie-break order for the winning strategy
STRATEGY_ORDER: Tuple[StrategyName, ...] = (
    StrategyName.PREFIX,
    StrategyName.LEVENSHTEIN,
    StrategyName.INITIALS,
    StrategyName.REVERSE_INITIALS,
    StrategyName.WORDS,
    StrategyName.PHONETICS,
)


@dataclass(frozen=True)
class PreparedTerm:
    """Normalized forms of a term, computed once and cached."""
    text: str
    normalized: str
    words: Tuple[str, ...]       # significant words
    all_words: Tuple[str, ...]   # every word of the normalized string
    initials: str
    all_initials: str
    phonetic: str


@lru_cache(maxsize=100_000)
def prepare(text: str) -> PreparedTerm:
    normalized = normalize_term(text)
    words = tuple(tokenize_term(normalized))
    all_words = tuple(normalized.split())
    return PreparedTerm(
        text=text,
        normalized=normalized,
        words=words,
        all_words=all_words,
        initials=word_initials(list(words)),
        all_initials=word_initials(list(all_words)),
        phonetic=phonetic_code(normalized),
    )


@dataclass(frozen=True)
class ScoreResult:
    """Result of scoring one pair.

    Attributes:
        composite: Blended confidence in [0, 1]
        strategy: Winning strategy (None when nothing matched)
        strategy_scores: Raw score of every strategy
    """
    composite: float
    strategy: Optional[StrategyName]
    strategy_scores: Dict[StrategyName, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, float]:
        return {k.value: round(v, 4) for k, v in self.strategy_scores.items()}


# =============================================================================
# Strategies
# =============================================================================

def prefix_score(candidate: PreparedTerm, query: PreparedTerm) -> float:
    """1.0 when one string is a prefix of the other, else the shared leading run.

    A partial run scores run / longer length and counts only from
    MIN_PREFIX_RUN characters. A string shorter than MIN_PREFIX_LENGTH is
    only a prefix match when it equals the other side.
    """
    a, b = candidate.normalized, query.normalized
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    short, long_ = (a, b) if len(a) <= len(b) else (b, a)
    if len(short) < MIN_PREFIX_LENGTH:
        return 0.0
    if long_.startswith(short):
        return 1.0
    run = 0
    for x, y in zip(short, long_):
        if x != y:
            break
        run += 1
    if run < MIN_PREFIX_RUN:
        return 0.0
    return run / len(long_)


def _edit_similarity(a: str, b: str, max_ratio: float) -> float:
    longest = max(len(a), len(b))
    if not longest:
        return 0.0
    limit = int(longest * max_ratio)
    distance = Levenshtein.distance(a, b, score_cutoff=limit)
    if distance > limit:
        return 0.0
    return 1.0 - distance / longest


def levenshtein_score(
    candidate: PreparedTerm,
    query: PreparedTerm,
    max_ratio: float = DEFAULT_SCORING_CONFIG.levenshtein_max_ratio,
) -> float:
    """Edit-distance similarity on the whole strings or a word window.

    When the candidate has more words than the query, each contiguous window
    of the candidate with the query's word count is compared too. Window
    matches are discounted by how much of the candidate they cover.
    """
    if not candidate.normalized or not query.normalized:
        return 0.0

    best = _edit_similarity(candidate.normalized, query.normalized, max_ratio)
    if best == 1.0:
        return best

    n = len(query.all_words)
    cand_words = candidate.all_words
    if 0 < n < len(cand_words):
        coverage = 0.9 + 0.1 * (n / len(cand_words))
        for i in range(len(cand_words) - n + 1):
            window = " ".join(cand_words[i:i + n])
            sim = _edit_similarity(window, query.normalized, max_ratio) * coverage
            if sim > best:
                best = sim
    return best


def initials_score(candidate: PreparedTerm, query: PreparedTerm) -> float:
    """Position-weighted agreement between both sides' word initials.

    Position i carries weight 1/(i+1); the score is the matched weight over
    the total weight of the longer initials sequence. Needs 2+ words on
    each side and the same first two initials.
    """
    ci, qi = candidate.initials, query.initials
    if len(candidate.words) < 2 or len(query.words) < 2:
        return 0.0
    # The first two initials are the i: prefilter key
    if ci[:2] != qi[:2]:
        return 0.0
    n = max(len(ci), len(qi))
    total = sum(1.0 / (i + 1) for i in range(n))
    matched = sum(
        1.0 / (i + 1)
        for i in range(min(len(ci), len(qi)))
        if ci[i] == qi[i]
    )
    return matched / total if total else 0.0


def reverse_initials_score(
    candidate: PreparedTerm,
    query: PreparedTerm,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> float:
    """Read the query as an acronym of the candidate's words.

    The score is the leading run of acronym letters that agree with the
    candidate's initials, over the longer of the two lengths. Initials are
    taken with and without noise words ("BOA" → "BANK OF AMERICA").
    """
    if len(query.all_words) != 1:
        return 0.0
    acronym = query.all_words[0]
    if not (2 <= len(acronym) <= config.reverse_initials_max_len) or not acronym.isalpha():
        return 0.0

    best = 0.0
    for initials, words in (
        (candidate.initials, candidate.words),
        (candidate.all_initials, candidate.all_words),
    ):
        if len(words) < 2:
            continue
        run = 0
        for a, b in zip(acronym, initials):
            if a != b:
                break
            run += 1
        ratio = run / max(len(acronym), len(initials))
        best = max(best, ratio)

    return best if best >= config.reverse_initials_floor else 0.0


def words_score(candidate: PreparedTerm, query: PreparedTerm) -> float:
    """Jaccard similarity of the significant word sets."""
    a, b = set(candidate.words), set(query.words)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def phonetics_score(candidate: PreparedTerm, query: PreparedTerm) -> float:
    if not candidate.phonetic or not query.phonetic:
        return 0.0
    return 1.0 if candidate.phonetic == query.phonetic else 0.0


# =============================================================================
# Kernel
# =============================================================================

class ScoringKernel:
    """Scores (candidate, input) pairs.

    Example:
        kernel = ScoringKernel()
        result = kernel.score("NIKE, INC.", "Nike")
        result.strategy   # StrategyName.PREFIX
        result.composite  # 1.0
    """

    def __init__(self, config: ScoringConfig = DEFAULT_SCORING_CONFIG):
        self.config = config

    def strategy_scores(self, candidate: str, query: str) -> Dict[StrategyName, float]:
        c = prepare(candidate)
        q = prepare(query)
        return {
            StrategyName.PREFIX: prefix_score(c, q),
            StrategyName.LEVENSHTEIN: levenshtein_score(c, q, self.config.levenshtein_max_ratio),
            StrategyName.INITIALS: initials_score(c, q),
            StrategyName.REVERSE_INITIALS: reverse_initials_score(c, q, self.config),
            StrategyName.WORDS: words_score(c, q),
            StrategyName.PHONETICS: phonetics_score(c, q),
        }

    def score(self, candidate: str, query: str) -> ScoreResult:
        """Score one candidate term against the input term."""
        scores = self.strategy_scores(candidate, query)
        return ScoreResult(
            composite=self.composite(scores),
            strategy=self.winning_strategy(scores),
            strategy_scores=scores,
        )

    def composite(self, scores: Dict[StrategyName, float]) -> float:
        """best + bonus * min(sum of other non-zero scores, 1), clamped to [0, 1]."""
        values = sorted((v for v in scores.values() if v > 0), reverse=True)
        if not values:
            return 0.0
        best, others = values[0], sum(values[1:])
        value = best + self.config.corroboration_bonus * min(others, 1.0)
        return max(0.0, min(1.0, value))

    def winning_strategy(self, scores: Dict[StrategyName, float]) -> Optional[StrategyName]:
        winner = None
        best = 0.0
        for name in STRATEGY_ORDER:
            weighted = self.config.weights.get(name, 0) * scores.get(name, 0.0)
            if weighted > best:
                best = weighted
                winner = name
        return winner


_default_kernel = ScoringKernel()


def score(candidate: str, query: str) -> ScoreResult:
    """Score with the default configuration."""
    return _default_kernel.score(candidate, query)


def rank_terms(query: str, terms: List[str], kernel: Optional[ScoringKernel] = None) -> List[Tuple[str, ScoreResult]]:
    """Score several terms and sort them best first (used by tooling)."""
    kernel = kernel or _default_kernel
    scored = [(t, kernel.score(t, query)) for t in terms]
    scored.sort(key=lambda item: item[1].composite, reverse=True)
    return scored
