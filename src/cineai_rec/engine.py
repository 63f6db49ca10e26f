"""
Public entry point of the recommendation engine.

RecommendationEngine wires the stores, the weight config, the embedding
provider and the result cache together and exposes the operations callers
use: generate recommendations, record learning signals, read and tune the
scoring weights, and reset a user's learned state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping

from .cache import CacheKey, ResultCache
from .candidates import CandidateFetcher
from .config import (
    ADJUSTMENT_WINDOW,
    CACHE_SWEEP_INTERVAL,
    DEFAULT_LIMIT,
    DEFAULT_SEMANTIC_THRESHOLD,
    DIVERSIFY_DEFAULT,
)
from .embedding import EmbeddingProvider
from .errors import InvalidRequestError
from .explanation import ExplanationSynthesizer
from .learning import LearningSignalRecorder, is_anonymous
from .models import BehavioralProfile, RecommendationResult, SignalAction, SignalContext
from .orchestrator import FallbackOrchestrator, RecommendationRequest
from .profile import adjust_weights_for_signals, effective_profile
from .scoring_config import JsonScoringConfigStore, ScoringConfigStore, WeightVector
from .stores import MovieCatalogStore, SqliteInteractionStore, SqliteMovieCatalog, UserInteractionStore

logger = logging.getLogger(__name__)

RECOMMENDATIONS_NAMESPACE = "recommendations"
SIGNAL_LOOKBACK_DAYS = 7


class RecommendationEngine:

    def __init__(
        self,
        catalog: MovieCatalogStore,
        interactions: UserInteractionStore,
        config_store: ScoringConfigStore,
        provider: EmbeddingProvider | None = None,
        cache: ResultCache | None = None,
        explainer: ExplanationSynthesizer | None = None,
    ):
        self.catalog = catalog
        self.interactions = interactions
        self.config_store = config_store
        self.cache = cache or ResultCache()
        self.recorder = LearningSignalRecorder(interactions, catalog, self.cache)
        self.orchestrator = FallbackOrchestrator(CandidateFetcher(catalog), provider, explainer)

    async def __aenter__(self):
        self.cache.start_sweeper(CACHE_SWEEP_INTERVAL)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        await self.cache.aclose()

    async def generate_recommendations(
        self,
        user_id: str,
        query: str | None = None,
        preferred_genres: list[str] | None = None,
        mood: str | None = None,
        limit: int = DEFAULT_LIMIT,
        semantic_threshold: float | None = None,
        page: int = 1,
        exclude_seen: bool = True,
        diversify: bool = DIVERSIFY_DEFAULT,
    ) -> RecommendationResult:
        if user_id is None or not str(user_id).strip():
            raise InvalidRequestError("user_id is required")
        if not isinstance(limit, int) or limit < 1:
            raise InvalidRequestError(f"limit must be a positive integer, got {limit!r}")
        if not isinstance(page, int) or page < 1:
            raise InvalidRequestError(f"page must be a positive integer, got {page!r}")
        threshold = DEFAULT_SEMANTIC_THRESHOLD if semantic_threshold is None else semantic_threshold
        if not 0 <= threshold <= 1:
            raise InvalidRequestError(f"semantic_threshold must be between 0 and 1, got {threshold}")

        request = RecommendationRequest(
            user_id=str(user_id),
            query=query or None,
            preferred_genres=tuple(preferred_genres or ()),
            mood=mood or None,
            limit=limit,
            page=page,
            semantic_threshold=float(threshold),
            exclude_seen=exclude_seen,
            diversify=diversify,
        )
        key = CacheKey.create(RECOMMENDATIONS_NAMESPACE, request.user_id, request.cache_params())
        return await self.cache.get(key, lambda: self._compute(request))

    async def _compute(self, request: RecommendationRequest) -> RecommendationResult:
        user_id = request.user_id
        stored = await self.interactions.get_behavioral_profile(user_id)
        ratings = await self.interactions.get_ratings(user_id)
        watchlist = await self.interactions.get_watchlist(user_id)
        rated_movies = await self.catalog.find_by_ids(list(ratings)) if ratings else {}
        profile = effective_profile(user_id, stored, ratings, watchlist, rated_movies)

        weights = self.config_store.get()
        if weights.dynamic_weights_enabled:
            since = datetime.now() - timedelta(days=SIGNAL_LOOKBACK_DAYS)
            signals = await self.interactions.get_recent_signals(user_id, since, ADJUSTMENT_WINDOW)
            weights = adjust_weights_for_signals(weights, signals)

        return await self.orchestrator.run(request, profile, weights, set(watchlist))

    async def record_learning_signal(
        self,
        user_id: str | None,
        movie_id: str,
        action: SignalAction | str,
        value: float | None = None,
        context: SignalContext | dict | None = None,
    ) -> None:
        await self.recorder.record(user_id, movie_id, action, value, context)

    async def remember_preference(self, user_id: str, kind: str, value: str) -> BehavioralProfile:
        return await self.recorder.remember(user_id, kind, value)

    async def get_profile(self, user_id: str) -> BehavioralProfile | None:
        return await self.interactions.get_behavioral_profile(user_id)

    async def reset_user_data(self, user_id: str) -> None:
        if is_anonymous(user_id):
            raise InvalidRequestError("user_id is required")
        await self.recorder.reset(user_id)
        logger.info(f"Reset learned data for {user_id}")

    def get_weights(self) -> WeightVector:
        return self.config_store.get()

    def set_weights(self, partial: Mapping[str, Any], updated_by: str | None = None) -> WeightVector:
        vector = self.config_store.set(partial, updated_by)
        self.cache.invalidate(f"{RECOMMENDATIONS_NAMESPACE}:")
        return vector

    def set_dynamic_weights(self, enabled: bool) -> WeightVector:
        vector = self.config_store.set_dynamic_weights(enabled)
        self.cache.invalidate(f"{RECOMMENDATIONS_NAMESPACE}:")
        return vector

    def cache_stats(self) -> dict[str, int]:
        return self.cache.stats()


def create_sqlite_engine(
    provider: EmbeddingProvider | None = None,
    weights_path: str | Path | None = None,
    cache: ResultCache | None = None,
) -> RecommendationEngine:
    """Engine over the SQLite database at config.DB_PATH and a JSON weights file."""
    return RecommendationEngine(
        catalog=SqliteMovieCatalog(),
        interactions=SqliteInteractionStore(),
        config_store=JsonScoringConfigStore(weights_path),
        provider=provider,
        cache=cache,
    )
