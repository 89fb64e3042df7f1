"""
Text similarity between issue reports.

Reports are normalized (case, punctuation, street abbreviations, stopwords)
and compared with two Dice coefficients: one over word sets and one over
character bigrams of the whitespace-free text. The larger of the two is the
score, so both reworded and re-spelled reports are caught.
"""

import re
from collections import Counter
from typing import List

_ABBREVIATIONS = {
    "st": "street",
    "str": "street",
    "rd": "road",
    "ave": "avenue",
    "av": "avenue",
    "blvd": "boulevard",
    "dr": "drive",
    "ln": "lane",
    "hwy": "highway",
    "pkwy": "parkway",
    "ct": "court",
    "pl": "place",
    "sq": "square",
    "nr": "near",
    "xing": "crossing",
}

_STOPWORDS = frozenset({
    "a", "an", "the", "on", "at", "in", "of", "near", "by", "to", "is", "are",
    "and", "or", "there", "this", "that", "with", "for", "from", "it", "its",
    "has", "have", "been", "be", "was", "very", "please",
})

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    if not text:
        return []
    tokens = []
    for raw in _TOKEN_RE.findall(text.lower()):
        token = _ABBREVIATIONS.get(raw, raw)
        if token not in _STOPWORDS:
            tokens.append(token)
    return tokens


def normalize(text: str) -> str:
    return " ".join(tokenize(text))


def _bigrams(text: str) -> Counter:
    compact = text.replace(" ", "")
    return Counter(compact[i:i + 2] for i in range(len(compact) - 1))


def _dice(intersection: int, size_a: int, size_b: int) -> float:
    if size_a + size_b == 0:
        return 0.0
    return 2.0 * intersection / (size_a + size_b)


def token_dice(a: str, b: str) -> float:
    tokens_a, tokens_b = set(tokenize(a)), set(tokenize(b))
    return _dice(len(tokens_a & tokens_b), len(tokens_a), len(tokens_b))


def bigram_dice(a: str, b: str) -> float:
    grams_a, grams_b = _bigrams(normalize(a)), _bigrams(normalize(b))
    overlap = sum((grams_a & grams_b).values())
    return _dice(overlap, sum(grams_a.values()), sum(grams_b.values()))


def similarity(a: str, b: str) -> float:
    """
    Similarity of two texts on a 0-100 scale.

    Identical texts score 100; the score is symmetric.
    """
    if a == b:
        return 100.0
    if normalize(a) == normalize(b) and normalize(a):
        return 100.0
    return round(100.0 * max(token_dice(a, b), bigram_dice(a, b)), 2)


def report_text(title: str, description: str) -> str:
    return f"{title or ''} {description or ''}".strip()
