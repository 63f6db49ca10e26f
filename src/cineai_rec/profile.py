"""
Behavioral profile maths: how signals move genre affinity, how ratings
seed affinity for users with no signals yet, and how recent behaviour
nudges the weight vector for a single request.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from .config import (
    ACTION_WEIGHTS,
    AFFINITY_STEP,
    HIGH_RATING_AVERAGE,
    HIGH_RATING_SIGNAL_MIN,
    MAX_RECENT_SIGNALS,
    RATING_NEUTRAL_STARS,
    RATING_POSITIVE_STARS,
    SKIP_RATE_THRESHOLD,
    WATCH_COMPLETE_MINUTES,
    WEIGHT_ADJUSTMENT_STEP,
)
from .models import BehavioralProfile, CandidateMovie, LearningSignal, SignalAction
from .scoring_config import WeightVector, normalize_weights

logger = logging.getLogger(__name__)

# Actions after which the movie should not be recommended again
SEEN_ACTIONS = {SignalAction.RATE, SignalAction.WATCH_TIME, SignalAction.REMOVE}

# Confidence ramp for ratings-derived affinity: full weight at this many ratings per genre
RATINGS_FOR_FULL_CONFIDENCE = 3


def to_stars(value: float) -> float:
    """Ratings above 5 are treated as a ten-point scale."""
    return value / 2.0 if value > 5 else value


def signal_strength(action: SignalAction, value: float | None) -> float:
    """
    Signed strength in [-1, 1] of a learning signal.

    Positive moves affinity up, negative moves it down, 0 leaves it alone.
    """
    if action == SignalAction.RATE:
        if value is None:
            return ACTION_WEIGHTS['rate']
        offset = to_stars(value) - RATING_NEUTRAL_STARS
        if abs(offset) < RATING_POSITIVE_STARS - RATING_NEUTRAL_STARS:
            return 0.0
        return max(-1.0, min(1.0, offset / 2.0))

    base = ACTION_WEIGHTS[action.value]
    if value is None:
        return base

    if action == SignalAction.WATCH_TIME:
        return base * max(0.0, min(1.0, value / WATCH_COMPLETE_MINUTES))

    return base * max(0.0, min(1.0, value))


def update_affinity(current: float, strength: float, step: float = AFFINITY_STEP) -> float:
    """
    Incremental update that never overshoots [0, 1].

    Increases close a fraction of the gap to 1; decreases remove the same
    fraction of the current value, so a single negative signal can never
    wipe an affinity to 0.
    """
    if strength > 0:
        return current + step * strength * (1.0 - current)
    if strength < 0:
        return current - step * (-strength) * current
    return current


def apply_signal(
    profile: BehavioralProfile,
    signal: LearningSignal,
    movie: CandidateMovie | None,
    max_signals: int = MAX_RECENT_SIGNALS,
) -> BehavioralProfile:
    """Mutate the profile in place with one signal and return it."""
    strength = signal_strength(signal.action, signal.value)

    if movie is not None and strength != 0:
        for genre in movie.genres:
            known = genre in profile.genre_affinity
            if not known and strength < 0:
                # Nothing learned yet to decrease
                continue
            current = profile.genre_affinity.get(genre, 0.0)
            profile.genre_affinity[genre] = update_affinity(current, strength)

    if signal.action in SEEN_ACTIONS:
        profile.seen_movie_ids.add(signal.movie_id)

    profile.append_signal(signal, max_signals)
    profile.updated_at = signal.timestamp
    return profile


def derive_genre_affinity(
    ratings: dict[str, float],
    movies: dict[str, CandidateMovie],
) -> dict[str, float]:
    """
    Seed affinity from explicit ratings.

    Per genre: mean rating on [0, 1], scaled down until the genre has
    RATINGS_FOR_FULL_CONFIDENCE ratings behind it.
    """
    totals: dict[str, list[float]] = defaultdict(list)
    for movie_id, rating in ratings.items():
        movie = movies.get(movie_id)
        if movie is None or rating is None:
            continue
        normalized = max(0.0, min(1.0, to_stars(rating) / 5.0))
        for genre in movie.genres:
            totals[genre].append(normalized)

    affinity = {}
    for genre, values in totals.items():
        confidence = min(1.0, len(values) / RATINGS_FOR_FULL_CONFIDENCE)
        affinity[genre] = (sum(values) / len(values)) * confidence
    return affinity


def effective_profile(
    user_id: str,
    stored: BehavioralProfile | None,
    ratings: dict[str, float],
    watchlist: list[str],
    rated_movies: dict[str, CandidateMovie],
) -> BehavioralProfile:
    """
    Per-request view of a user: the stored profile, with ratings-derived
    affinity filling genres the signals have not touched, and rated movies
    counted as seen. The stored profile object is not modified.
    """
    base = BehavioralProfile.from_dict(stored.to_dict()) if stored else BehavioralProfile(user_id=user_id)
    for genre, value in derive_genre_affinity(ratings, rated_movies).items():
        base.genre_affinity.setdefault(genre, value)
    base.seen_movie_ids.update(ratings)
    return base


def preferred_genres(profile: BehavioralProfile, n: int) -> list[str]:
    return [g for g in profile.top_genres(n) if profile.genre_affinity.get(g, 0.0) > 0]


def adjust_weights_for_signals(weights: WeightVector, signals: list[LearningSignal]) -> WeightVector:
    """
    Per-request nudge of the weight vector from recent behaviour.

    A high skip rate shifts weight from preference towards exploration
    (popularity and semantic); consistently high ratings shift weight back
    towards preference. The result is renormalized; the input is unchanged.
    """
    if not signals:
        return weights

    adjusted = weights.as_dict()
    step = WEIGHT_ADJUSTMENT_STEP

    skips = sum(1 for s in signals if s.action == SignalAction.SKIP)
    if skips / len(signals) > SKIP_RATE_THRESHOLD:
        adjusted['preference'] -= step
        adjusted['popularity'] += step / 2
        adjusted['semantic'] += step / 2
        logger.debug(f"Skip rate {skips / len(signals):.2f}: favouring exploration")

    ratings = [to_stars(s.value) for s in signals if s.action == SignalAction.RATE and s.value is not None]
    if len(ratings) > HIGH_RATING_SIGNAL_MIN and sum(ratings) / len(ratings) > HIGH_RATING_AVERAGE:
        adjusted['preference'] += step
        adjusted['popularity'] -= step
        logger.debug(f"Average recent rating {sum(ratings) / len(ratings):.2f}: favouring preference")

    clamped = {name: max(0.0, min(1.0, value)) for name, value in adjusted.items()}
    if sum(clamped.values()) == 0:
        return weights
    return weights.with_weights(normalize_weights(clamped))
