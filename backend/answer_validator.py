"""Fuzzy matching for free-text trivia answers."""
import re
import string
from typing import Iterable

_LEADING_ARTICLE = re.compile(r'^(the|a|an)\s+')
_PUNCTUATION = re.compile('[%s]' % re.escape(string.punctuation))
_WHITESPACE = re.compile(r'\s+')


def normalize_answer(text: str) -> str:
    """Lowercase, trim, drop one leading article, strip punctuation, collapse spaces."""
    t = (text or "").lower().strip()
    t = _LEADING_ARTICLE.sub('', t, count=1)
    t = _PUNCTUATION.sub('', t)
    return _WHITESPACE.sub(' ', t).strip()


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def typo_threshold(accepted: str) -> int:
    """Allowed edit distance for a normalized accepted answer."""
    if len(accepted) <= 3:
        return 0
    if len(accepted) <= 6:
        return 1
    return 2


def is_answer_correct(submitted: str, accepted_answers: Iterable[str]) -> bool:
    guess = normalize_answer(submitted)
    if not guess:
        return False
    for accepted in accepted_answers:
        target = normalize_answer(accepted)
        if not target:
            continue
        if guess == target:
            return True
        if edit_distance(guess, target) <= typo_threshold(target):
            return True
    return False
