"""
Embedding / similarity providers.

Both providers answer the same two questions: which catalog movies are
close to a piece of free text, and which are close to a given movie.
HttpEmbeddingProvider asks a remote vector-search service;
TfidfEmbeddingIndex answers from an in-process TF-IDF matrix.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Protocol

import httpx
import numpy as np
from scipy import sparse

from .config import EMBEDDING_SERVICE_URL, HTTP_TIMEOUT, MAX_HTTP_RETRIES, TFIDF_MAX_FEATURES, TFIDF_MIN_DF
from .errors import EmbeddingProviderError
from .models import CandidateMovie, SimilarityMatch
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def search_similar(self, text: str, threshold: float, limit: int) -> list[SimilarityMatch]: ...

    async def similar_to_movie(self, movie_id: str, threshold: float, limit: int) -> list[SimilarityMatch]: ...


def _rank_matches(pairs, threshold: float, limit: int) -> list[SimilarityMatch]:
    """Clamp to [0,1], drop anything under threshold, best first."""
    matches = []
    for movie_id, similarity in pairs:
        sim = max(0.0, min(1.0, float(similarity)))
        if sim >= threshold:
            matches.append(SimilarityMatch(str(movie_id), sim))
    matches.sort(key=lambda m: (-m.similarity, m.movie_id))
    return matches[:max(limit, 0)]


class HttpEmbeddingProvider:
    """
    Client for a remote vector-search endpoint.

    POST {base_url}/search  {"text", "threshold", "limit"}
    POST {base_url}/similar {"movie_id", "threshold", "limit"}
    Both reply with {"matches": [{"movie_id": ..., "similarity": ...}, ...]}.
    """

    def __init__(
        self,
        base_url: str = EMBEDDING_SERVICE_URL,
        timeout: float = HTTP_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"User-Agent": "cineai-rec/1.0"},
                timeout=self.timeout,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
        return False

    @async_retry_with_backoff(
        max_retries=MAX_HTTP_RETRIES,
        initial_delay=0.5,
        exceptions=(httpx.TimeoutException,),
    )
    async def _post(self, path: str, payload: dict) -> dict:
        if self.client is None:
            raise RuntimeError("HttpEmbeddingProvider must be used as an async context manager")
        resp = await self.client.post(f"{self.base_url}{path}", json=payload)
        resp.raise_for_status()
        return resp.json()

    async def _query(self, path: str, payload: dict, threshold: float, limit: int) -> list[SimilarityMatch]:
        try:
            body = await self._post(path, payload)
        except httpx.TimeoutException as exc:
            raise EmbeddingProviderError(f"Embedding service timed out on {path}") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(f"HTTP {exc.response.status_code} from embedding service on {path}")
            raise EmbeddingProviderError(f"Embedding service returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error(f"Request error on {path}: {type(exc).__name__}: {exc}")
            raise EmbeddingProviderError(f"Embedding service unreachable: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingProviderError(f"Malformed response from embedding service: {exc}") from exc

        raw = body.get("matches", []) if isinstance(body, dict) else []
        pairs = []
        for item in raw:
            movie_id = item.get("movie_id", item.get("id"))
            similarity = item.get("similarity")
            if movie_id is None or similarity is None:
                continue
            pairs.append((movie_id, similarity))
        return _rank_matches(pairs, threshold, limit)

    async def search_similar(self, text: str, threshold: float, limit: int) -> list[SimilarityMatch]:
        payload = {"text": text, "threshold": threshold, "limit": limit}
        return await self._query("/search", payload, threshold, limit)

    async def similar_to_movie(self, movie_id: str, threshold: float, limit: int) -> list[SimilarityMatch]:
        payload = {"movie_id": movie_id, "threshold": threshold, "limit": limit}
        return await self._query("/similar", payload, threshold, limit)


_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "a an and are as at be but by for from has have in into is it its of on or that the "
    "their them then there these they this to was were when where which who will with".split()
)


def _words(text: str) -> list[str]:
    return [w for w in _WORD_RE.findall(text.lower()) if len(w) > 2 and w not in _STOPWORDS]


class TfidfEmbeddingIndex:
    """
    In-process TF-IDF index over title, plot and credits.

    Genres, directors and cast become prefixed whole tokens ("genre:drama")
    so a query word that names a genre also matches the genre field.
    """

    def __init__(self, movies: list[CandidateMovie]):
        self.movie_ids: list[str] = []
        self.vocab: dict[str, int] = {}
        self.idf = np.zeros(0)
        self.matrix = sparse.csr_matrix((0, 0))
        self._build(movies)

    @staticmethod
    def _tokenize(movie: CandidateMovie) -> list[str]:
        tokens = _words(movie.title) + _words(movie.plot)
        tokens.extend(f"genre:{g.lower()}" for g in movie.genres)
        tokens.extend(f"director:{d.lower()}" for d in movie.directors)
        tokens.extend(f"cast:{a.lower()}" for a in movie.cast)
        return tokens

    def _build(self, movies: list[CandidateMovie]) -> None:
        corpus = {m.id: self._tokenize(m) for m in movies}
        df_counts: dict[str, int] = {}
        for tokens in corpus.values():
            for tok in set(tokens):
                df_counts[tok] = df_counts.get(tok, 0) + 1

        n_docs = max(1, len(corpus))
        idf = {
            tok: math.log((n_docs + 1) / (df + 1)) + 1
            for tok, df in df_counts.items()
            if df >= TFIDF_MIN_DF
        }
        if len(idf) > TFIDF_MAX_FEATURES:
            idf = dict(sorted(idf.items(), key=lambda kv: (-kv[1], kv[0]))[:TFIDF_MAX_FEATURES])

        self.vocab = {tok: i for i, tok in enumerate(sorted(idf))}
        self.idf = np.array([idf[tok] for tok in sorted(idf)], dtype=float)
        self.movie_ids = list(corpus)

        rows, cols, data = [], [], []
        for row, movie_id in enumerate(self.movie_ids):
            for col, weight in self._weights(corpus[movie_id]).items():
                rows.append(row)
                cols.append(col)
                data.append(weight)
        self.matrix = sparse.csr_matrix(
            (data, (rows, cols)), shape=(len(self.movie_ids), len(self.vocab)), dtype=float
        )

        logger.debug(
            f"Built TF-IDF index: {len(self.movie_ids)} movies, {len(self.vocab)} features, "
            f"{self.matrix.nnz} non-zeros"
        )

    def _weights(self, tokens: list[str]) -> dict[int, float]:
        """L2-normalized TF-IDF weights keyed by vocabulary column."""
        counts: dict[int, int] = {}
        for tok in tokens:
            col = self.vocab.get(tok)
            if col is not None:
                counts[col] = counts.get(col, 0) + 1
        if not counts:
            return {}
        weights = {col: n / len(tokens) * self.idf[col] for col, n in counts.items()}
        norm = math.sqrt(sum(w * w for w in weights.values()))
        return {col: w / norm for col, w in weights.items()} if norm else weights

    def _vectorize(self, tokens: list[str]) -> np.ndarray:
        vec = np.zeros(len(self.vocab))
        for col, weight in self._weights(tokens).items():
            vec[col] = weight
        return vec

    def _query_tokens(self, text: str) -> list[str]:
        tokens = _words(text)
        tokens.extend(f"genre:{w}" for w in list(tokens) if f"genre:{w}" in self.vocab)
        return tokens

    def _rank(self, vector: np.ndarray, threshold: float, limit: int, skip: str | None = None):
        if not self.movie_ids or not vector.any():
            return []
        sims = np.asarray(self.matrix @ vector).ravel()
        pairs = [(mid, float(sims[i])) for i, mid in enumerate(self.movie_ids) if mid != skip and sims[i] > 0]
        return _rank_matches(pairs, threshold, limit)

    async def search_similar(self, text: str, threshold: float, limit: int) -> list[SimilarityMatch]:
        return self._rank(self._vectorize(self._query_tokens(text)), threshold, limit)

    async def similar_to_movie(self, movie_id: str, threshold: float, limit: int) -> list[SimilarityMatch]:
        try:
            row = self.movie_ids.index(movie_id)
        except ValueError:
            return []
        return self._rank(self.matrix.getrow(row).toarray().ravel(), threshold, limit, skip=movie_id)
