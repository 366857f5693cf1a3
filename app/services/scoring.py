"""
Service: scoring.py
Barème sur 10 points par question :

    points = 10 × max(0, 1 − temps_réponse / temps_limite)   (arrondi au dixième)

- Réponse fausse → 0.
- Réponse juste → au moins 1 point (plancher), même hors délai.
- Temps de réponse ≤ 0 (décalage d'horloge) → 10.
"""
from __future__ import annotations

import math

BASE_POINTS = 10
MIN_POINTS = 1
DEFAULT_TIME_LIMIT = 30  # secondes


def _round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def score(response_time_ms: float, is_correct: bool, time_limit_s: float = DEFAULT_TIME_LIMIT) -> float:
    """Points gagnés pour une réponse (0 ≤ résultat ≤ 10)."""
    if not is_correct:
        return 0
    response_time_s = response_time_ms / 1000
    if response_time_s <= 0:
        return BASE_POINTS
    limit = time_limit_s if time_limit_s and time_limit_s > 0 else DEFAULT_TIME_LIMIT
    time_factor = max(0.0, 1 - (response_time_s / limit))
    points = _round_half_up(BASE_POINTS * time_factor * 10) / 10
    return max(points, MIN_POINTS)


def rank_suffix(rank: int) -> str:
    if 11 <= rank % 100 <= 13:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(rank % 10, "th")


def format_score(value) -> str:
    """Entier sans décimale, sinon une décimale (ex: 9.7)."""
    try:
        num = float(value or 0)
    except (TypeError, ValueError):
        num = 0.0
    if num.is_integer():
        return str(int(num))
    return f"{num:.1f}"


def format_time(ms: float) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    return f"{ms / 1000:.1f}s"
