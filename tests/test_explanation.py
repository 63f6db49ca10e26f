import pytest

from conftest import make_movie
from cineai_rec.explanation import ExplanationKind, ExplanationSynthesizer, badge_for
from cineai_rec.models import BehavioralProfile, DiscoveryFactor, RecommendationMethod, ScoredRecommendation


def rec(movie, similarity=None, preference=0.0, method=RecommendationMethod.SEMANTIC,
        discovery=DiscoveryFactor.STRETCH):
    return ScoredRecommendation(
        movie=movie,
        score=0.5,
        confidence=0.5,
        discovery_factor=discovery,
        method=method,
        semantic_similarity=similarity,
        preference_score=preference,
    )


@pytest.fixture
def synth():
    return ExplanationSynthesizer()


@pytest.fixture
def alien():
    return make_movie("alien", ["horror", "sci-fi"], rating=6.9, year=1979, directors=["Ridley Scott"],
                      cast=["Sigourney Weaver"])


@pytest.mark.parametrize("similarity, expected", [
    (0.85, "Perfect match • Horror, Sci-Fi"),
    (0.7, "Great match • 6.9/10 rated"),
    (0.45, "Good match • 1979"),
])
def test_storyline_bands(synth, alien, similarity, expected):
    assert synth.storyline_match(rec(alien, similarity)) == expected


def test_storyline_band_floors_are_exclusive(synth, alien):
    assert synth.storyline_match(rec(alien, 0.8)).startswith("Great match")
    assert synth.storyline_match(rec(alien, 0.4)) is None
    assert synth.storyline_match(rec(alien, None)) is None


def test_watchlist_beats_everything(synth, alien):
    profile = BehavioralProfile("u", memory_keys={"genre": {"horror"}})
    explanation = synth.explain(rec(alien, 0.95), profile, watchlist={"alien"})

    assert explanation.reason == "You saved this to your watchlist."
    assert explanation.kind == ExplanationKind.MEMORY_HIT


def test_remembered_preferences(synth, alien):
    by_genre = BehavioralProfile("u", memory_keys={"genre": {"horror"}})
    by_actor = BehavioralProfile("u", memory_keys={"actor": {"sigourney weaver"}})
    by_director = BehavioralProfile("u", memory_keys={"director": {"Ridley Scott"}})

    assert synth.memory_hit(rec(alien), by_genre) == "You've said you love Horror movies."
    assert synth.memory_hit(rec(alien), by_actor) == "You're a fan of Sigourney Weaver."
    assert synth.memory_hit(rec(alien), by_director) == "You've enjoyed films by Ridley Scott."
    assert synth.memory_hit(rec(alien), BehavioralProfile("u")) is None


def test_storyline_used_when_no_memory_hit(synth, alien):
    explanation = synth.explain(rec(alien, 0.85), BehavioralProfile("u"))
    assert explanation.kind == ExplanationKind.STORYLINE_MATCH


def test_primary_reason_variants(synth):
    acclaimed = make_movie("a", ["drama"], rating=8.1)
    matched = make_movie("b", ["horror"], rating=6.0)
    popular = make_movie("c", ["comedy"], rating=6.5)
    plain = make_movie("d", ["western"], rating=5.0)

    assert synth.primary_reason(rec(acclaimed), None) == "Highly rated • 8.1/10"
    assert synth.primary_reason(rec(matched, preference=0.7), None) == "Matches your taste for Horror"
    assert (
        synth.primary_reason(rec(popular, method=RecommendationMethod.FALLBACK), BehavioralProfile("new"))
        == "Popular Comedy to help us learn your preferences"
    )
    assert synth.primary_reason(rec(plain, method=RecommendationMethod.PREFERENCE), None) == "Recommended for you • Western"
    assert synth.primary_reason(rec(make_movie("e")), None) == "Recommended for you"


def test_badges_follow_discovery_factor(synth, alien):
    assert badge_for(DiscoveryFactor.SAFE).label == "Safe bet"
    assert badge_for("adventure").color == "purple"

    explanation = synth.explain(rec(alien, discovery=DiscoveryFactor.SAFE))
    assert explanation.badge == badge_for(DiscoveryFactor.SAFE)
    assert explanation.discovery_factor == DiscoveryFactor.SAFE


def test_annotate_sets_reason_on_every_item(synth, sample_movies):
    recs = [rec(m, method=RecommendationMethod.FALLBACK) for m in sample_movies]
    annotated = synth.annotate(recs)

    assert all(r.recommendation_reason for r in annotated)
    assert [r.movie for r in annotated] == [r.movie for r in recs]
    assert not any(r.recommendation_reason for r in recs)
