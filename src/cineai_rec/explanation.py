"""
Short, single-reason explanations for recommendations.

Candidate reasons are checked in a fixed order (memory hit, storyline
match, primary reason) and the first one that applies is the one shown.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from .config import HIGH_RATING_THRESHOLD, SIMILARITY_BANDS
from .models import BehavioralProfile, DiscoveryFactor, RecommendationMethod, ScoredRecommendation


class ExplanationKind(str, Enum):
    MEMORY_HIT = "memory_hit"
    STORYLINE_MATCH = "storyline_match"
    PRIMARY_REASON = "primary_reason"


@dataclass(frozen=True)
class Badge:
    label: str
    color: str
    severity: str


_BADGES = {
    DiscoveryFactor.SAFE: Badge("Safe bet", "green", "low"),
    DiscoveryFactor.STRETCH: Badge("Stretch pick", "amber", "medium"),
    DiscoveryFactor.ADVENTURE: Badge("Adventure", "purple", "high"),
}


def badge_for(discovery_factor: DiscoveryFactor | str) -> Badge:
    return _BADGES[DiscoveryFactor(discovery_factor)]


@dataclass(frozen=True)
class Explanation:
    reason: str
    kind: ExplanationKind
    discovery_factor: DiscoveryFactor
    badge: Badge


def _display_genres(genres: frozenset[str], n: int = 2) -> str:
    return ", ".join(g.title() for g in sorted(genres)[:n])


class ExplanationSynthesizer:

    def memory_hit(
        self,
        rec: ScoredRecommendation,
        profile: BehavioralProfile | None,
        watchlist: set[str] | frozenset[str] = frozenset(),
    ) -> str | None:
        movie = rec.movie
        if movie.id in watchlist:
            return "You saved this to your watchlist."
        if profile is None or not profile.memory_keys:
            return None
        for genre in sorted(movie.genres):
            if profile.remembers("genre", genre):
                return f"You've said you love {genre.title()} movies."
        for actor in movie.cast:
            if profile.remembers("actor", actor):
                return f"You're a fan of {actor}."
        for director in sorted(movie.directors):
            if profile.remembers("director", director):
                return f"You've enjoyed films by {director}."
        return None

    def storyline_match(self, rec: ScoredRecommendation) -> str | None:
        similarity = rec.semantic_similarity
        if similarity is None:
            return None
        movie = rec.movie
        details = (
            _display_genres(movie.genres) or "your search",
            f"{movie.rating:.1f}/10 rated" if movie.rating is not None else "well reviewed",
            str(movie.year) if movie.year else "worth a look",
        )
        for (floor, label), detail in zip(SIMILARITY_BANDS, details):
            if similarity > floor:
                return f"{label} • {detail}"
        return None

    def primary_reason(self, rec: ScoredRecommendation, profile: BehavioralProfile | None) -> str:
        movie = rec.movie
        genres = _display_genres(movie.genres, n=1)
        if movie.rating is not None and movie.rating >= HIGH_RATING_THRESHOLD:
            return f"Highly rated • {movie.rating:.1f}/10"
        if rec.preference_score > 0 and genres:
            return f"Matches your taste for {genres}"
        if rec.method == RecommendationMethod.FALLBACK and (profile is None or not profile.genre_affinity) and genres:
            return f"Popular {genres} to help us learn your preferences"
        if genres:
            return f"Recommended for you • {genres}"
        return "Recommended for you"

    def explain(
        self,
        rec: ScoredRecommendation,
        profile: BehavioralProfile | None = None,
        watchlist: set[str] | frozenset[str] = frozenset(),
    ) -> Explanation:
        reason = self.memory_hit(rec, profile, watchlist)
        kind = ExplanationKind.MEMORY_HIT
        if reason is None:
            reason = self.storyline_match(rec)
            kind = ExplanationKind.STORYLINE_MATCH
        if reason is None:
            reason = self.primary_reason(rec, profile)
            kind = ExplanationKind.PRIMARY_REASON
        return Explanation(reason, kind, rec.discovery_factor, badge_for(rec.discovery_factor))

    def annotate(
        self,
        recs: list[ScoredRecommendation],
        profile: BehavioralProfile | None = None,
        watchlist: set[str] | frozenset[str] = frozenset(),
    ) -> list[ScoredRecommendation]:
        """Copies of recs with recommendation_reason filled in."""
        return [replace(rec, recommendation_reason=self.explain(rec, profile, watchlist).reason) for rec in recs]
