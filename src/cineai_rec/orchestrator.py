"""
Tiered recommendation strategy: semantic, then preference-based, then fallback.

Each tier only runs when every earlier tier produced nothing. A semantic
tier that returns fewer results than asked for is padded from preference
candidates rather than abandoned. Provider trouble (errors, timeouts) is
treated as "no semantic matches"; catalog trouble propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .candidates import CandidateFetcher
from .config import (
    CANDIDATE_MULTIPLIER,
    CATALOG_FETCH_MULTIPLIER,
    DEFAULT_LIMIT,
    DEFAULT_SEMANTIC_THRESHOLD,
    DIVERSIFY_DEFAULT,
    MIN_SCORE,
    PROVIDER_TIMEOUT_SECONDS,
    TOP_GENRES_N,
)
from .embedding import EmbeddingProvider
from .explanation import ExplanationSynthesizer
from .models import (
    BehavioralProfile,
    Pagination,
    RecommendationInsights,
    RecommendationMethod,
    RecommendationResult,
    ScoredRecommendation,
    SimilarityMatch,
)
from .profile import preferred_genres
from .scorer import MultiFactorScorer, rank
from .scoring_config import WeightVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendationRequest:
    user_id: str
    query: str | None = None
    preferred_genres: tuple[str, ...] = ()
    mood: str | None = None
    limit: int = DEFAULT_LIMIT
    page: int = 1
    semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD
    exclude_seen: bool = True
    diversify: bool = DIVERSIFY_DEFAULT

    @property
    def search_text(self) -> str:
        return " ".join(part.strip() for part in (self.query, self.mood) if part and part.strip())

    def cache_params(self) -> dict:
        return {
            "query": self.query,
            "genres": sorted(g.lower() for g in self.preferred_genres),
            "mood": self.mood,
            "limit": self.limit,
            "page": self.page,
            "threshold": self.semantic_threshold,
            "exclude_seen": self.exclude_seen,
            "diversify": self.diversify,
        }


def diversity_score(recs: list[ScoredRecommendation]) -> float:
    """Distinct genres across the list divided by list length, 2 d.p.; 0 for an empty list."""
    if not recs:
        return 0.0
    genres = set()
    for rec in recs:
        genres.update(rec.movie.genres)
    return round(len(genres) / len(recs), 2)


def diversify(recs: list[ScoredRecommendation]) -> list[ScoredRecommendation]:
    """
    Greedy re-order: walk the ranked list taking items that add a genre or
    director not yet shown, then append the rest in score order.
    """
    seen_genres: set[str] = set()
    seen_directors: set[str] = set()
    novel, rest = [], []
    for rec in recs:
        movie = rec.movie
        if (movie.genres - seen_genres) or (movie.directors - seen_directors):
            novel.append(rec)
            seen_genres |= movie.genres
            seen_directors |= movie.directors
        else:
            rest.append(rec)
    return novel + rest


class FallbackOrchestrator:

    def __init__(
        self,
        fetcher: CandidateFetcher,
        provider: EmbeddingProvider | None = None,
        explainer: ExplanationSynthesizer | None = None,
        provider_timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        self.fetcher = fetcher
        self.provider = provider
        self.explainer = explainer or ExplanationSynthesizer()
        self.provider_timeout = provider_timeout

    async def _semantic_search(self, text: str, threshold: float, limit: int) -> list[SimilarityMatch]:
        try:
            return await asyncio.wait_for(
                self.provider.search_similar(text, threshold, limit),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Embedding provider timed out after {self.provider_timeout}s; treating as no matches")
        except Exception as exc:
            logger.warning(f"Embedding provider failed ({type(exc).__name__}: {exc}); treating as no matches")
        return []

    @staticmethod
    def _keep(recs: list[ScoredRecommendation]) -> list[ScoredRecommendation]:
        return [r for r in recs if r.score > MIN_SCORE]

    async def run(
        self,
        request: RecommendationRequest,
        profile: BehavioralProfile,
        weights: WeightVector,
        watchlist: set[str] | frozenset[str] = frozenset(),
    ) -> RecommendationResult:
        scorer = MultiFactorScorer(weights)
        exclude = set(profile.seen_movie_ids) if request.exclude_seen else set()
        wanted = request.limit * request.page

        method = RecommendationMethod.FALLBACK
        scored: list[ScoredRecommendation] = []
        semantic_matches = 0

        text = request.search_text
        if text and self.provider is not None:
            matches = await self._semantic_search(text, request.semantic_threshold, wanted * CANDIDATE_MULTIPLIER)
            if matches:
                movies = await self.fetcher.for_matches(matches, exclude)
                similarities = {m.movie_id: m.similarity for m in matches}
                scored = self._keep(scorer.score_batch(movies, similarities, profile, RecommendationMethod.SEMANTIC))
            if scored:
                method = RecommendationMethod.SEMANTIC
                semantic_matches = len(scored)
            logger.debug(f"Semantic tier: {len(matches)} matches, {len(scored)} usable")

        genres = [g.lower() for g in request.preferred_genres] or preferred_genres(profile, TOP_GENRES_N)

        if method == RecommendationMethod.SEMANTIC and len(scored) < wanted and genres:
            taken = exclude | {r.movie.id for r in scored}
            padding = await self.fetcher.by_genres(genres, wanted - len(scored), taken)
            scored += self._keep(scorer.score_batch(padding, {}, profile, RecommendationMethod.PREFERENCE))

        if not scored and genres:
            movies = await self.fetcher.by_genres(genres, wanted * CATALOG_FETCH_MULTIPLIER, exclude)
            scored = self._keep(scorer.score_batch(movies, {}, profile, RecommendationMethod.PREFERENCE))
            if scored:
                method = RecommendationMethod.PREFERENCE

        if not scored:
            movies = await self.fetcher.top_rated(wanted * CATALOG_FETCH_MULTIPLIER, exclude)
            scored = self._keep(scorer.score_batch(movies, {}, profile, RecommendationMethod.FALLBACK))
            method = RecommendationMethod.FALLBACK

        ranked = rank(scored)
        if request.diversify:
            ranked = diversify(ranked)

        start = (request.page - 1) * request.limit
        page_items = ranked[start:start + request.limit]
        page_items = self.explainer.annotate(page_items, profile, watchlist)

        logger.info(
            f"Recommendations for {request.user_id}: method={method.value}, "
            f"{len(ranked)} ranked, returning {len(page_items)}"
        )
        return RecommendationResult(
            movies=page_items,
            insights=RecommendationInsights(
                method=method,
                semantic_matches=semantic_matches,
                total_candidates=len(scored),
                diversity_score=diversity_score(page_items),
            ),
            pagination=Pagination(
                current_page=request.page,
                limit=request.limit,
                has_more=len(ranked) > start + request.limit,
                total_results=len(ranked),
            ),
        )
