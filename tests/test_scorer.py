import pytest

from conftest import make_movie
from cineai_rec.models import BehavioralProfile, DiscoveryFactor, RecommendationMethod
from cineai_rec.scorer import (
    MultiFactorScorer,
    normalize_popularity,
    normalize_rating,
    normalize_recency,
    preference_score,
    rank,
)
from cineai_rec.scoring_config import WeightVector


@pytest.fixture
def weights():
    return WeightVector(semantic=0.4, rating=0.25, popularity=0.15, recency=0.1, preference=0.1)


@pytest.fixture
def scorer(weights):
    return MultiFactorScorer(weights, current_year=2025, reference_popularity=1000, recency_horizon=25)


@pytest.fixture
def horror_fan():
    return BehavioralProfile(user_id="u1", genre_affinity={"horror": 0.9, "sci-fi": 0.7, "drama": 0.2})


def test_normalizers():
    assert normalize_rating(None) == 0.0
    assert normalize_rating(8.0) == pytest.approx(0.8)
    assert normalize_popularity(0) == 0.0
    assert normalize_popularity(500, reference=1000) == pytest.approx(0.5)
    assert normalize_popularity(50000, reference=1000) == 1.0
    assert normalize_recency(None, 2025) == 0.0
    assert normalize_recency(2030, 2025) == 1.0
    assert normalize_recency(2015, 2025, horizon=25) == pytest.approx(0.6)
    assert normalize_recency(1950, 2025, horizon=25) == 0.0


def test_preference_is_mean_over_overlapping_genres(horror_fan):
    assert preference_score(frozenset({"horror", "sci-fi"}), horror_fan) == pytest.approx(0.8)
    assert preference_score(frozenset({"horror", "western"}), horror_fan) == pytest.approx(0.9)
    assert preference_score(frozenset({"western"}), horror_fan) == 0.0
    assert preference_score(frozenset({"horror"}), None) == 0.0


def test_score_is_weighted_sum(scorer, horror_fan):
    movie = make_movie("m", ["horror"], rating=8.0, year=2015, popularity=500)
    rec = scorer.score(movie, 0.75, horror_fan)

    expected = 0.75 * 0.4 + 0.8 * 0.25 + 0.5 * 0.15 + 0.6 * 0.1 + 0.9 * 0.1
    assert rec.score == pytest.approx(expected)
    assert rec.semantic_similarity == 0.75
    assert rec.preference_score == pytest.approx(0.9)


def test_batch_matches_single_scoring(scorer, horror_fan, sample_movies):
    sims = {"alien": 0.9, "heat": 0.72}
    batch = scorer.score_batch(sample_movies, sims, horror_fan, RecommendationMethod.SEMANTIC)
    for rec in batch:
        single = scorer.score(rec.movie, sims.get(rec.movie.id), horror_fan)
        assert rec.score == pytest.approx(single.score)


def test_semantic_confidence_is_capped(weights):
    scorer = MultiFactorScorer(weights, current_year=2025)
    movie = make_movie("m", ["horror"], rating=10, year=2025, popularity=10**6)
    rec = scorer.score(movie, 1.0, BehavioralProfile("u", {"horror": 1.0}))

    assert rec.score == pytest.approx(1.0)
    assert rec.confidence == pytest.approx(0.9)


def test_confidence_ceilings_by_tier(scorer):
    assert scorer.confidence(0.5, True, RecommendationMethod.SEMANTIC) == pytest.approx(0.6)
    assert scorer.confidence(0.5, False, RecommendationMethod.PREFERENCE) == pytest.approx(0.4)
    assert scorer.confidence(0.5, False, RecommendationMethod.FALLBACK) == pytest.approx(0.3)
    assert scorer.confidence(0.1, False, RecommendationMethod.PREFERENCE) == pytest.approx(0.12)


def test_confidence_is_monotone_and_bounded(scorer):
    for has_sim, method in [
        (True, RecommendationMethod.SEMANTIC),
        (False, RecommendationMethod.PREFERENCE),
        (False, RecommendationMethod.FALLBACK),
    ]:
        values = [scorer.confidence(s / 20, has_sim, method) for s in range(21)]
        assert values == sorted(values)
        assert all(0.0 <= v <= 1.0 for v in values)


def test_confidence_multiplier_is_configurable(weights):
    scorer = MultiFactorScorer(weights, confidence_multiplier=1.0)
    assert scorer.confidence(0.5, True, RecommendationMethod.SEMANTIC) == pytest.approx(0.5)


def test_discovery_classification(scorer, horror_fan):
    safe = make_movie("a", ["horror", "sci-fi"], rating=8)
    stretch = make_movie("b", ["horror", "western"], rating=8)
    adventure = make_movie("c", ["western"], rating=9)
    low_pref = make_movie("d", ["drama"], rating=8)

    semantic = RecommendationMethod.SEMANTIC
    assert scorer.score(safe, 0.8, horror_fan, semantic).discovery_factor == DiscoveryFactor.SAFE
    assert scorer.score(stretch, 0.8, horror_fan, semantic).discovery_factor == DiscoveryFactor.STRETCH
    assert scorer.score(adventure, 0.8, horror_fan, semantic).discovery_factor == DiscoveryFactor.ADVENTURE
    # Inside the top genres but weak preference is not a safe bet
    assert scorer.score(low_pref, 0.8, horror_fan, semantic).discovery_factor == DiscoveryFactor.STRETCH


def test_empty_profile_is_never_safe(scorer, sample_movies):
    empty = BehavioralProfile(user_id="new")
    results = scorer.score_batch(sample_movies, {}, empty, RecommendationMethod.FALLBACK)
    assert all(r.discovery_factor == DiscoveryFactor.ADVENTURE for r in results)


def test_fallback_tier_is_never_safe(scorer, horror_fan):
    movie = make_movie("a", ["horror"], rating=8)
    rec = scorer.score(movie, None, horror_fan, RecommendationMethod.FALLBACK)
    assert rec.discovery_factor == DiscoveryFactor.STRETCH


def test_movie_without_attributes_scores_zero(scorer):
    rec = scorer.score(make_movie("blank"), None, BehavioralProfile("u"), RecommendationMethod.PREFERENCE)
    assert rec.score == 0.0
    assert rec.confidence == 0.0


def test_rank_orders_by_score_then_id(scorer, sample_movies):
    results = scorer.score_batch(sample_movies, {}, None, RecommendationMethod.FALLBACK)
    ranked = rank(results)
    scores = [r.score for r in ranked]
    assert scores == sorted(scores, reverse=True)
    assert rank(list(reversed(results))) == ranked
