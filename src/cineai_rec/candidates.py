"""Candidate retrieval for each recommendation tier."""

from __future__ import annotations

import logging

from .models import CandidateMovie, SimilarityMatch
from .stores import MovieCatalogStore

logger = logging.getLogger(__name__)


class CandidateFetcher:
    """
    Thin layer over the movie catalog that applies seen-movie exclusion.

    Catalog errors are not caught here; they are infrastructure failures
    and must reach the caller.
    """

    def __init__(self, catalog: MovieCatalogStore):
        self.catalog = catalog

    async def for_matches(
        self,
        matches: list[SimilarityMatch],
        exclude: set[str] | None = None,
    ) -> list[CandidateMovie]:
        """Movies for similarity matches, in match order; unknown ids are skipped."""
        exclude = exclude or set()
        wanted = [m.movie_id for m in matches if m.movie_id not in exclude]
        if not wanted:
            return []
        found = await self.catalog.find_by_ids(wanted)
        missing = len(wanted) - len(found)
        if missing:
            logger.debug(f"{missing} similarity matches not found in catalog")
        return [found[movie_id] for movie_id in wanted if movie_id in found]

    async def by_genres(
        self,
        genres: list[str],
        limit: int,
        exclude: set[str] | None = None,
    ) -> list[CandidateMovie]:
        if not genres:
            return []
        return await self.catalog.find_by_genre_overlap(genres, limit, exclude or set())

    async def top_rated(self, limit: int, exclude: set[str] | None = None) -> list[CandidateMovie]:
        return await self.catalog.find_top_rated(limit, exclude or set())
