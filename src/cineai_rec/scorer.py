"""
Multi-factor scoring of candidate movies.

Every factor is normalized to [0, 1] and combined with the current weight
vector, so with weights summing to 1 the score also stays in [0, 1].
Scoring is pure: no I/O, no mutation of the movie or the profile.
"""

from __future__ import annotations

import logging
from datetime import datetime

import numpy as np

from .config import (
    CONFIDENCE_MULTIPLIER,
    FALLBACK_CONFIDENCE_CEILING,
    PREFERENCE_CONFIDENCE_CEILING,
    RECENCY_HORIZON_YEARS,
    REFERENCE_POPULARITY,
    SAFE_PREFERENCE_THRESHOLD,
    SEMANTIC_CONFIDENCE_CAP,
    TOP_GENRES_N,
)
from .models import (
    BehavioralProfile,
    CandidateMovie,
    DiscoveryFactor,
    RecommendationMethod,
    ScoredRecommendation,
)
from .scoring_config import WEIGHT_NAMES, WeightVector

logger = logging.getLogger(__name__)


def normalize_rating(rating: float | None) -> float:
    if rating is None:
        return 0.0
    return max(0.0, min(1.0, rating / 10.0))


def normalize_popularity(popularity: float, reference: float = REFERENCE_POPULARITY) -> float:
    if popularity <= 0:
        return 0.0
    return min(popularity / reference, 1.0)


def normalize_recency(year: int | None, current_year: int, horizon: int = RECENCY_HORIZON_YEARS) -> float:
    """Linear decay from 1 (this year or later) to 0 at `horizon` years old."""
    if year is None:
        return 0.0
    age = current_year - year
    if age <= 0:
        return 1.0
    return max(0.0, 1.0 - age / horizon)


def preference_score(genres: frozenset[str], profile: BehavioralProfile | None) -> float:
    """Mean affinity over the movie's genres the profile knows about; 0 with no overlap."""
    if not genres or profile is None or not profile.genre_affinity:
        return 0.0
    known = [profile.genre_affinity[g] for g in genres if g in profile.genre_affinity]
    if not known:
        return 0.0
    return max(0.0, min(1.0, sum(known) / len(known)))


class MultiFactorScorer:
    """
    Turns (movie, similarity, profile) into a ScoredRecommendation.

    The weight vector is injected so the scorer never reads configuration
    storage itself.
    """

    def __init__(
        self,
        weights: WeightVector,
        current_year: int | None = None,
        reference_popularity: float = REFERENCE_POPULARITY,
        recency_horizon: int = RECENCY_HORIZON_YEARS,
        confidence_multiplier: float = CONFIDENCE_MULTIPLIER,
        top_genres_n: int = TOP_GENRES_N,
    ):
        self.weights = weights
        self.current_year = current_year or datetime.now().year
        self.reference_popularity = reference_popularity
        self.recency_horizon = recency_horizon
        self.confidence_multiplier = confidence_multiplier
        self.top_genres_n = top_genres_n
        self._weight_array = np.array([getattr(weights, name) for name in WEIGHT_NAMES], dtype=float)

    def factors(
        self,
        movie: CandidateMovie,
        similarity: float | None,
        profile: BehavioralProfile | None,
    ) -> dict[str, float]:
        return {
            "semantic": max(0.0, min(1.0, similarity)) if similarity is not None else 0.0,
            "rating": normalize_rating(movie.rating),
            "popularity": normalize_popularity(movie.popularity, self.reference_popularity),
            "recency": normalize_recency(movie.year, self.current_year, self.recency_horizon),
            "preference": preference_score(movie.genres, profile),
        }

    def confidence(self, score: float, has_similarity: bool, method: RecommendationMethod) -> float:
        raw = max(0.0, score * self.confidence_multiplier)
        if has_similarity:
            ceiling = SEMANTIC_CONFIDENCE_CAP
        elif method == RecommendationMethod.FALLBACK:
            ceiling = FALLBACK_CONFIDENCE_CEILING
        else:
            ceiling = PREFERENCE_CONFIDENCE_CEILING
        return min(ceiling, raw, 1.0)

    def classify(
        self,
        movie: CandidateMovie,
        preference: float,
        profile: BehavioralProfile | None,
        method: RecommendationMethod,
    ) -> DiscoveryFactor:
        """Discrete safe/stretch/adventure tier; boundary cases land on the safer tier."""
        known = set(profile.genre_affinity) if profile else set()
        if not movie.genres or not known:
            return DiscoveryFactor.ADVENTURE

        top = set(profile.top_genres(self.top_genres_n))
        if (
            method != RecommendationMethod.FALLBACK
            and movie.genres <= top
            and preference >= SAFE_PREFERENCE_THRESHOLD
        ):
            return DiscoveryFactor.SAFE
        if movie.genres & known:
            return DiscoveryFactor.STRETCH
        return DiscoveryFactor.ADVENTURE

    def score_batch(
        self,
        movies: list[CandidateMovie],
        similarities: dict[str, float],
        profile: BehavioralProfile | None,
        method: RecommendationMethod,
    ) -> list[ScoredRecommendation]:
        if not movies:
            return []

        factor_rows = [self.factors(m, similarities.get(m.id), profile) for m in movies]
        matrix = np.array([[row[name] for name in WEIGHT_NAMES] for row in factor_rows], dtype=float)
        scores = np.nan_to_num(matrix @ self._weight_array, nan=0.0, posinf=0.0, neginf=0.0)

        results = []
        for movie, row, raw_score in zip(movies, factor_rows, scores):
            score = max(0.0, float(raw_score))
            similarity = similarities.get(movie.id)
            results.append(ScoredRecommendation(
                movie=movie,
                score=score,
                confidence=self.confidence(score, similarity is not None, method),
                discovery_factor=self.classify(movie, row["preference"], profile, method),
                method=method,
                semantic_similarity=similarity,
                preference_score=row["preference"],
                factors=row,
            ))
        return results

    def score(
        self,
        movie: CandidateMovie,
        similarity: float | None,
        profile: BehavioralProfile | None,
        method: RecommendationMethod = RecommendationMethod.SEMANTIC,
    ) -> ScoredRecommendation:
        similarities = {movie.id: similarity} if similarity is not None else {}
        return self.score_batch([movie], similarities, profile, method)[0]


def rank(recommendations: list[ScoredRecommendation]) -> list[ScoredRecommendation]:
    """Best score first; ties broken by confidence then id so ordering is stable."""
    return sorted(recommendations, key=lambda r: (-r.score, -r.confidence, r.movie.id))
