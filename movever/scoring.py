"""Normalized [0, 1] similarity and compatibility scores used by ranking."""
from datetime import date
from typing import NamedTuple, Optional

from .models import SIZE_ORDINALS


class SpaceFit(NamedTuple):
    fits: bool
    score: float


def _normalize(s: Optional[str]) -> str:
    return " ".join((s or "").lower().split())


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j - 1] + cost, current[j - 1] + 1, previous[j] + 1))
        previous = current
    return previous[-1]


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Fuzzy similarity of two place names.

    Checked in order: exact match (1.0), containment (0.8), shared prefix
    (0.5 plus up to 0.3 by prefix length), then Levenshtein similarity.
    """
    s1 = _normalize(a)
    s2 = _normalize(b)
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 in s2 or s2 in s1:
        return 0.8

    max_len = max(len(s1), len(s2))
    prefix = 0
    for c1, c2 in zip(s1, s2):
        if c1 != c2:
            break
        prefix += 1
    if prefix > 0:
        return 0.5 + (prefix / max_len) * 0.3

    return 1.0 - levenshtein(s1, s2) / max_len


def date_proximity(d1: date, d2: date, flex_days: int = 3) -> float:
    diff = abs((d1 - d2).days)
    if diff == 0:
        return 1.0
    if diff <= flex_days:
        return 1.0 - diff / (flex_days * 2)
    return 0.1


def _minutes(t: str) -> int:
    parts = t.strip().split(":")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(t)
    return hours * 60 + minutes


def time_proximity(t1: Optional[str], t2: Optional[str]) -> float:
    """Closeness of two "HH:MM" (or "HH:MM:SS") times; 0.5 when unknown."""
    if not t1 or not t2:
        return 0.5
    try:
        diff = abs(_minutes(t1) - _minutes(t2))
    except (ValueError, IndexError):
        return 0.5
    if diff <= 30:
        return 1.0
    if diff <= 120:
        return 0.9
    if diff <= 240:
        return 0.7
    return max(0.3, 1.0 - diff / 1440)


def size_ordinal(size: Optional[str]) -> int:
    # unknown sizes rank as small
    return SIZE_ORDINALS.get(_normalize(size), 1)


def space_compatibility(request_size: Optional[str], available_size: Optional[str]) -> SpaceFit:
    """Tight fits score highest: small in small (1.0) beats small in large (0.8)."""
    need = size_ordinal(request_size)
    have = size_ordinal(available_size)
    if need <= have:
        return SpaceFit(True, 1.0 - 0.1 * (have - need))
    return SpaceFit(False, 0.0)
