"""
Domain records shared by the scorer, orchestrator, learning and cache layers.

Movies arrive from several sources with inconsistent optional fields, so
CandidateMovie.from_record() applies every defaulting rule once at ingestion.
Nothing downstream should need to guess at a movie's shape.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)


class SignalAction(str, Enum):
    VIEW = "view"
    CLICK = "click"
    SAVE = "save"
    RATE = "rate"
    SKIP = "skip"
    REMOVE = "remove"
    WATCH_TIME = "watch_time"


class DiscoveryFactor(str, Enum):
    SAFE = "safe"
    STRETCH = "stretch"
    ADVENTURE = "adventure"


class RecommendationMethod(str, Enum):
    SEMANTIC = "semantic"
    PREFERENCE = "preference-based"
    FALLBACK = "fallback"


def _as_list(value: Any) -> list[str]:
    """Coerce list, JSON-list string, or comma-separated string into a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                logger.debug(f"Unparseable list field {text[:40]!r}, splitting on commas")
            else:
                return [str(v).strip() for v in parsed if str(v).strip()]
        return [part.strip() for part in text.split(",") if part.strip()]
    if isinstance(value, Iterable):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value)]


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result:  # NaN
        return None
    return result


def _as_year(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, str) and len(value) >= 4 and value[:4].isdigit():
        return int(value[:4])
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first(record: dict, *keys: str) -> Any:
    for key in keys:
        if record.get(key) not in (None, ""):
            return record[key]
    return None


@dataclass(frozen=True)
class CandidateMovie:
    """Immutable per-request snapshot of a catalog movie."""

    id: str
    title: str
    year: int | None = None
    genres: frozenset[str] = frozenset()
    directors: frozenset[str] = frozenset()
    rating: float | None = None
    popularity: float = 0.0
    plot: str = ""
    cast: tuple[str, ...] = ()

    @classmethod
    def from_record(cls, record: dict) -> "CandidateMovie":
        movie_id = _first(record, "id", "movie_id", "slug")
        if movie_id is None:
            raise ValueError("movie record has no id")

        rating = _as_float(_first(record, "rating", "imdb_rating", "vote_average"))
        if rating is not None:
            rating = max(0.0, min(10.0, rating))

        popularity = _as_float(_first(record, "popularity", "vote_count", "imdb_votes")) or 0.0

        return cls(
            id=str(movie_id),
            title=str(record.get("title") or movie_id),
            year=_as_year(_first(record, "year", "release_year", "release_date")),
            genres=frozenset(g.lower() for g in _as_list(_first(record, "genres", "genre"))),
            directors=frozenset(_as_list(_first(record, "directors", "director"))),
            rating=rating,
            popularity=max(0.0, popularity),
            plot=str(_first(record, "plot", "overview", "description") or ""),
            cast=tuple(_as_list(_first(record, "cast", "actors"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "genres": sorted(self.genres),
            "directors": sorted(self.directors),
            "rating": self.rating,
            "popularity": self.popularity,
            "plot": self.plot,
            "cast": list(self.cast),
        }


@dataclass(frozen=True)
class SimilarityMatch:
    movie_id: str
    similarity: float


@dataclass(frozen=True)
class SignalContext:
    page_type: str | None = None
    recommendation_type: str | None = None
    position_in_list: int | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_type": self.page_type,
            "recommendation_type": self.recommendation_type,
            "position_in_list": self.position_in_list,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, payload: dict | None) -> "SignalContext":
        payload = payload or {}
        return cls(
            page_type=payload.get("page_type"),
            recommendation_type=payload.get("recommendation_type"),
            position_in_list=payload.get("position_in_list"),
            session_id=payload.get("session_id"),
        )


@dataclass(frozen=True)
class LearningSignal:
    user_id: str
    movie_id: str
    action: SignalAction
    value: float | None = None
    context: SignalContext = field(default_factory=SignalContext)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "movie_id": self.movie_id,
            "action": self.action.value,
            "value": self.value,
            "context": self.context.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "LearningSignal":
        return cls(
            user_id=payload["user_id"],
            movie_id=payload["movie_id"],
            action=SignalAction(payload["action"]),
            value=payload.get("value"),
            context=SignalContext.from_dict(payload.get("context")),
            timestamp=datetime.fromisoformat(payload["timestamp"]),
        )


@dataclass
class BehavioralProfile:
    """
    Per-user learned state.

    genre_affinity values stay in [0, 1]; recent_signals keeps only the most
    recent entries (oldest first). memory_keys holds explicitly stated
    preferences, keyed by 'genre', 'director' or 'actor'.
    """

    user_id: str
    genre_affinity: dict[str, float] = field(default_factory=dict)
    seen_movie_ids: set[str] = field(default_factory=set)
    recent_signals: list[LearningSignal] = field(default_factory=list)
    memory_keys: dict[str, set[str]] = field(default_factory=dict)
    updated_at: datetime | None = None

    def top_genres(self, n: int) -> list[str]:
        ranked = sorted(self.genre_affinity.items(), key=lambda kv: (-kv[1], kv[0]))
        return [genre for genre, _ in ranked[:n]]

    def append_signal(self, signal: LearningSignal, cap: int) -> None:
        self.recent_signals.append(signal)
        overflow = len(self.recent_signals) - cap
        if overflow > 0:
            del self.recent_signals[:overflow]

    def remembers(self, kind: str, value: str) -> bool:
        return value.lower() in {v.lower() for v in self.memory_keys.get(kind, ())}

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "genre_affinity": dict(self.genre_affinity),
            "seen_movie_ids": sorted(self.seen_movie_ids),
            "recent_signals": [s.to_dict() for s in self.recent_signals],
            "memory_keys": {k: sorted(v) for k, v in self.memory_keys.items()},
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "BehavioralProfile":
        updated_at = payload.get("updated_at")
        return cls(
            user_id=payload["user_id"],
            genre_affinity={str(k): float(v) for k, v in payload.get("genre_affinity", {}).items()},
            seen_movie_ids=set(payload.get("seen_movie_ids", [])),
            recent_signals=[LearningSignal.from_dict(s) for s in payload.get("recent_signals", [])],
            memory_keys={k: set(v) for k, v in payload.get("memory_keys", {}).items()},
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass(frozen=True)
class ScoredRecommendation:
    movie: CandidateMovie
    score: float
    confidence: float
    discovery_factor: DiscoveryFactor
    method: RecommendationMethod
    semantic_similarity: float | None = None
    preference_score: float = 0.0
    recommendation_reason: str = ""
    factors: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "factors", MappingProxyType(dict(self.factors)))

    def to_dict(self) -> dict[str, Any]:
        payload = self.movie.to_dict()
        payload.update({
            "score": round(self.score, 6),
            "confidence": round(self.confidence, 6),
            "semanticSimilarity": self.semantic_similarity,
            "preferenceScore": round(self.preference_score, 6),
            "discoveryFactor": self.discovery_factor.value,
            "recommendationReason": self.recommendation_reason,
            "method": self.method.value,
        })
        return payload


@dataclass(frozen=True)
class RecommendationInsights:
    method: RecommendationMethod = RecommendationMethod.FALLBACK
    semantic_matches: int = 0
    total_candidates: int = 0
    diversity_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "semanticMatches": self.semantic_matches,
            "totalCandidates": self.total_candidates,
            "diversityScore": self.diversity_score,
        }


@dataclass(frozen=True)
class Pagination:
    current_page: int = 1
    limit: int = 10
    has_more: bool = False
    total_results: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "limit": self.limit,
            "hasMore": self.has_more,
            "totalResults": self.total_results,
        }


@dataclass(frozen=True)
class RecommendationResult:
    """
    One page of recommendations.

    Immutable; cached instances are shared between callers.
    """

    movies: tuple[ScoredRecommendation, ...] = ()
    insights: RecommendationInsights = field(default_factory=RecommendationInsights)
    pagination: Pagination = field(default_factory=Pagination)

    def __post_init__(self):
        object.__setattr__(self, "movies", tuple(self.movies))

    def to_dict(self) -> dict[str, Any]:
        return {
            "movies": [m.to_dict() for m in self.movies],
            "insights": self.insights.to_dict(),
            "pagination": self.pagination.to_dict(),
        }
