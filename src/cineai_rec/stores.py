"""
Movie catalog and user interaction stores.

The engine only talks to the two Protocols below. The SQLite adapters run
the blocking database functions in a worker thread and translate sqlite
errors into the engine's infrastructure errors; the in-memory versions are
for embedding the engine in tests or notebooks.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Protocol

from . import database
from .errors import CatalogUnavailableError, ProfileStoreError
from .models import BehavioralProfile, CandidateMovie, LearningSignal

logger = logging.getLogger(__name__)


class MovieCatalogStore(Protocol):
    async def find_by_id(self, movie_id: str) -> CandidateMovie | None: ...

    async def find_by_ids(self, movie_ids: list[str]) -> dict[str, CandidateMovie]: ...

    async def find_by_genre_overlap(
        self, genres: list[str], limit: int, exclude: set[str] | None = None
    ) -> list[CandidateMovie]: ...

    async def find_top_rated(self, limit: int, exclude: set[str] | None = None) -> list[CandidateMovie]: ...

    async def upsert_movies(self, movies: list[CandidateMovie]) -> int: ...


class UserInteractionStore(Protocol):
    async def get_ratings(self, user_id: str) -> dict[str, float]: ...

    async def get_watchlist(self, user_id: str) -> list[str]: ...

    async def get_behavioral_profile(self, user_id: str) -> BehavioralProfile | None: ...

    async def save_behavioral_profile(self, profile: BehavioralProfile) -> None: ...

    async def append_signal(self, signal: LearningSignal) -> None: ...

    async def get_recent_signals(
        self, user_id: str, since: datetime | None = None, limit: int = 100
    ) -> list[LearningSignal]: ...

    async def reset_user_data(self, user_id: str) -> None: ...


def _to_movies(records: list[dict]) -> list[CandidateMovie]:
    return [CandidateMovie.from_record(r) for r in records]


class SqliteMovieCatalog:
    """MovieCatalogStore backed by the movies tables in database.py."""

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            logger.error(f"Catalog query {func.__name__} failed: {exc}")
            raise CatalogUnavailableError(f"Movie catalog unavailable: {exc}") from exc

    async def find_by_id(self, movie_id: str) -> CandidateMovie | None:
        record = await self._run(database.load_movie, movie_id)
        return CandidateMovie.from_record(record) if record else None

    async def find_by_ids(self, movie_ids: list[str]) -> dict[str, CandidateMovie]:
        records = await self._run(database.load_movies, list(movie_ids))
        return {movie_id: CandidateMovie.from_record(r) for movie_id, r in records.items()}

    async def find_by_genre_overlap(
        self, genres: list[str], limit: int, exclude: set[str] | None = None
    ) -> list[CandidateMovie]:
        return _to_movies(await self._run(database.load_movies_by_genres, list(genres), limit, exclude))

    async def find_top_rated(self, limit: int, exclude: set[str] | None = None) -> list[CandidateMovie]:
        return _to_movies(await self._run(database.load_top_rated, limit, exclude))

    async def all_movies(self) -> list[CandidateMovie]:
        return _to_movies(await self._run(database.load_all_movies))

    async def upsert_movies(self, movies: list[CandidateMovie]) -> int:
        return await self._run(database.upsert_movies, [m.to_dict() for m in movies])


class SqliteInteractionStore:
    """UserInteractionStore backed by ratings/watchlist/profile tables."""

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            logger.error(f"Interaction store call {func.__name__} failed: {exc}")
            raise ProfileStoreError(f"User interaction store unavailable: {exc}") from exc

    async def get_ratings(self, user_id: str) -> dict[str, float]:
        return await self._run(database.load_user_ratings, user_id)

    async def get_watchlist(self, user_id: str) -> list[str]:
        return await self._run(database.load_watchlist, user_id)

    async def get_behavioral_profile(self, user_id: str) -> BehavioralProfile | None:
        payload = await self._run(database.load_behavioral_profile, user_id)
        return BehavioralProfile.from_dict(payload) if payload else None

    async def save_behavioral_profile(self, profile: BehavioralProfile) -> None:
        await self._run(database.save_behavioral_profile, profile.user_id, profile.to_dict())

    async def append_signal(self, signal: LearningSignal) -> None:
        await self._run(database.append_behavior_signal, signal.to_dict())

    async def get_recent_signals(
        self, user_id: str, since: datetime | None = None, limit: int = 100
    ) -> list[LearningSignal]:
        rows = await self._run(database.load_behavior_signals, user_id, since, limit)
        return [LearningSignal.from_dict(row) for row in rows]

    async def reset_user_data(self, user_id: str) -> None:
        await self._run(database.delete_user_data, user_id)


class InMemoryMovieCatalog:
    def __init__(self, movies: list[CandidateMovie] | None = None):
        self.movies: dict[str, CandidateMovie] = {m.id: m for m in movies or []}

    @staticmethod
    def _by_rating(movie: CandidateMovie):
        return (movie.rating is None, -(movie.rating or 0.0), -movie.popularity, movie.id)

    async def find_by_id(self, movie_id: str) -> CandidateMovie | None:
        return self.movies.get(movie_id)

    async def find_by_ids(self, movie_ids: list[str]) -> dict[str, CandidateMovie]:
        return {mid: self.movies[mid] for mid in movie_ids if mid in self.movies}

    async def find_by_genre_overlap(
        self, genres: list[str], limit: int, exclude: set[str] | None = None
    ) -> list[CandidateMovie]:
        wanted = {g.lower() for g in genres}
        exclude = exclude or set()
        matches = [m for m in self.movies.values() if m.genres & wanted and m.id not in exclude]
        return sorted(matches, key=self._by_rating)[:max(limit, 0)]

    async def find_top_rated(self, limit: int, exclude: set[str] | None = None) -> list[CandidateMovie]:
        exclude = exclude or set()
        rated = [m for m in self.movies.values() if m.rating is not None and m.id not in exclude]
        return sorted(rated, key=self._by_rating)[:max(limit, 0)]

    async def all_movies(self) -> list[CandidateMovie]:
        return sorted(self.movies.values(), key=lambda m: m.id)

    async def upsert_movies(self, movies: list[CandidateMovie]) -> int:
        for movie in movies:
            self.movies[movie.id] = movie
        return len(movies)


class InMemoryInteractionStore:
    def __init__(self):
        self.ratings: dict[str, dict[str, float]] = {}
        self.watchlists: dict[str, list[str]] = {}
        self.profiles: dict[str, dict] = {}
        self.signals: list[LearningSignal] = []

    async def get_ratings(self, user_id: str) -> dict[str, float]:
        return dict(self.ratings.get(user_id, {}))

    async def get_watchlist(self, user_id: str) -> list[str]:
        return list(self.watchlists.get(user_id, []))

    async def get_behavioral_profile(self, user_id: str) -> BehavioralProfile | None:
        payload = self.profiles.get(user_id)
        # Round-trip through the dict form so callers never share mutable state
        return BehavioralProfile.from_dict(payload) if payload else None

    async def save_behavioral_profile(self, profile: BehavioralProfile) -> None:
        self.profiles[profile.user_id] = profile.to_dict()

    async def append_signal(self, signal: LearningSignal) -> None:
        self.signals.append(signal)

    async def get_recent_signals(
        self, user_id: str, since: datetime | None = None, limit: int = 100
    ) -> list[LearningSignal]:
        mine = [
            s for s in self.signals
            if s.user_id == user_id and (since is None or s.timestamp >= since)
        ]
        return list(reversed(mine))[:limit]

    async def reset_user_data(self, user_id: str) -> None:
        self.profiles.pop(user_id, None)
        self.signals = [s for s in self.signals if s.user_id != user_id]
