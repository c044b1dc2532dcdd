"""Term Normalization Utilities.

This module provides functions to normalize terms for consistent matching
and to derive the prefilter keys stored in the inverted index.
The normalization process:
1. Converts to uppercase
2. Removes punctuation
3. Removes common legal suffixes (INC, LLC, CORP, etc.)
4. Collapses whitespace

Examples:
    "NIKE, INC."            → "NIKE"
    "Morgan Stanley & Co."  → "MORGAN STANLEY"
    "ADIDAS AG"             → "ADIDAS AG"
"""

import re
from typing import List, Set


# Common legal suffixes removed during normalization
BUSINESS_SUFFIXES = {
    "INC", "INCORPORATED", "CORP", "CORPORATION", "CO", "COMPANY",
    "LLC", "LTD", "LIMITED", "LP", "LLP", "PLLC",
    "DBA", "AKA",
}

# Words that carry no matching signal
NOISE_WORDS = {
    "THE", "AND", "OF", "FOR", "A", "AN", "&",
}

# Prefilter key kinds
WORD_KEY = "w:"
ACRONYM_KEY = "a:"
INITIALS_KEY = "i:"
PHONETIC_KEY = "p:"
LEADING_KEY = "f:"

# Shortest string that can match as a prefix of a longer one, and the
# shortest shared leading run that scores without a full prefix
MIN_PREFIX_LENGTH = 2
MIN_PREFIX_RUN = 3

_PUNCTUATION = re.compile(r"[^\w\s&]", re.UNICODE)
_UNDERSCORE = re.compile(r"_+")
_SPACES = re.compile(r"\s+")

_SOUNDEX_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}


def normalize_term(text: str) -> str:
    """Normalize a term for matching.

    Args:
        text: Raw term from a caller or a source column

    Returns:
        Normalized uppercase string (may be empty)

    Examples:
        >>> normalize_term("NIKE, INC.")
        'NIKE'
        >>> normalize_term("  adidas   ag ")
        'ADIDAS AG'
    """
    if not text:
        return ""

    text = str(text).upper().strip()

    # Drop punctuation; dotted abbreviations collapse ("L.L.C." → "LLC")
    text = re.sub(r"(?<=\w)\.(?=\w)", "", text)
    text = _PUNCTUATION.sub(" ", text)
    text = _UNDERSCORE.sub(" ", text)

    tokens = text.split()
    filtered = [t for t in tokens if t not in BUSINESS_SUFFIXES and t != "&"]

    # A term made only of suffixes ("CO") keeps its words
    if not filtered:
        filtered = tokens

    return _SPACES.sub(" ", " ".join(filtered)).strip()


def tokenize_term(text: str) -> List[str]:
    """Split a normalized term into significant words.

    Noise words are dropped unless nothing else is left. Order is kept and
    duplicates are removed.

    Examples:
        >>> tokenize_term("BANK OF AMERICA")
        ['BANK', 'AMERICA']
    """
    if not text:
        return []

    tokens = text.upper().split()
    significant = [t for t in tokens if t not in NOISE_WORDS]
    if not significant:
        significant = [t for t in tokens if t != "&"]

    seen: Set[str] = set()
    result = []
    for t in significant:
        if t not in seen:
            seen.add(t)
            result.append(t)
    return result


def term_key(text: str) -> str:
    """Identity key of a term: case-folded with whitespace collapsed."""
    if not text:
        return ""
    return _SPACES.sub(" ", str(text).strip()).casefold()


def word_initials(words: List[str]) -> str:
    """First letter of each word ("MORGAN", "STANLEY" → "MS")."""
    return "".join(w[0] for w in words if w)


def soundex(word: str) -> str:
    """American Soundex code of a single word.

    Non-letters are ignored; returns "" when the word has no letters.

    Examples:
        >>> soundex("ADIDAS")
        'A332'
        >>> soundex("Robert")
        'R163'
    """
    letters = [c for c in word.upper() if "A" <= c <= "Z"]
    if not letters:
        return ""

    first = letters[0]
    code = [first]
    last = _SOUNDEX_CODES.get(first, "")
    for c in letters[1:]:
        digit = _SOUNDEX_CODES.get(c, "")
        if digit and digit != last:
            code.append(digit)
            if len(code) == 4:
                break
        # H and W do not separate letters with the same code
        if c not in "HW":
            last = digit
    return "".join(code).ljust(4, "0")


def phonetic_code(text: str) -> str:
    """Per-word Soundex codes of a normalized term, space separated."""
    codes = [soundex(w) for w in tokenize_term(text)]
    return " ".join(c for c in codes if c)


def prefilter_keys(text: str) -> Set[str]:
    """Index keys stored for a search term.

    Keys:
    - w:<word> for every word, noise words included
    - f:<first MIN_PREFIX_RUN characters> of the normalized term
    - a:<initials> for the significant words and for all words (2+ words)
    - i:<first two initials> of the same two readings (2+ words)
    - p:<soundex> for every significant word

    Args:
        text: Raw search term

    Returns:
        Set of prefilter keys (empty when the term has no words)
    """
    normalized = normalize_term(text)
    words = tokenize_term(normalized)
    all_words = normalized.split()
    keys: Set[str] = set()
    for w in all_words:
        if w != "&":
            keys.add(WORD_KEY + w)
    for w in words:
        code = soundex(w)
        if code:
            keys.add(PHONETIC_KEY + code)
    if len(normalized) >= MIN_PREFIX_RUN:
        keys.add(LEADING_KEY + normalized[:MIN_PREFIX_RUN])
    if len(words) >= 2:
        initials = word_initials(words)
        keys.add(ACRONYM_KEY + initials)
        keys.add(INITIALS_KEY + initials[:2])
    # "BANK OF AMERICA" is also BOA
    if len(all_words) >= 2:
        initials = word_initials(all_words)
        keys.add(ACRONYM_KEY + initials)
        keys.add(INITIALS_KEY + initials[:2])
    return keys


def query_keys(text: str) -> Set[str]:
    """Exact-match lookup keys for a query term.

    Besides the query's own keys this includes every prefix of each word
    (so a candidate that is a prefix of the query is found), and the query
    read as an acronym (so "MS" finds "MORGAN STANLEY").
    """
    normalized = normalize_term(text)
    all_words = normalized.split()
    keys = set(prefilter_keys(text))
    for w in all_words:
        for i in range(1, len(w)):
            keys.add(WORD_KEY + w[:i])
    if len(all_words) == 1:
        word = all_words[0]
        keys.add(ACRONYM_KEY + word)
        if len(word) >= 2:
            keys.add(INITIALS_KEY + word[:2])
    return keys


def query_prefixes(text: str, min_length: int = MIN_PREFIX_LENGTH) -> List[str]:
    """Word keys to scan as prefixes ("MIC" finds "MICROSOFT")."""
    words = [w for w in normalize_term(text).split() if w != "&"]
    return [WORD_KEY + w for w in dict.fromkeys(words) if len(w) >= min_length]
