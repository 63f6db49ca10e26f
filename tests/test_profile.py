from datetime import datetime

import pytest

from conftest import make_movie
from cineai_rec.models import BehavioralProfile, LearningSignal, SignalAction
from cineai_rec.profile import (
    adjust_weights_for_signals,
    apply_signal,
    derive_genre_affinity,
    effective_profile,
    preferred_genres,
    signal_strength,
    update_affinity,
)
from cineai_rec.scoring_config import WeightVector


def signal(action, movie_id="alien", value=None, user_id="u1"):
    return LearningSignal(user_id=user_id, movie_id=movie_id, action=SignalAction(action), value=value)


def test_signal_strength_direction():
    assert signal_strength(SignalAction.SAVE, None) > 0
    assert signal_strength(SignalAction.CLICK, None) > 0
    assert signal_strength(SignalAction.SKIP, None) < 0
    assert signal_strength(SignalAction.REMOVE, None) < 0


def test_rating_strength_scales_with_value():
    assert signal_strength(SignalAction.RATE, 5) == pytest.approx(1.0)
    assert signal_strength(SignalAction.RATE, 4) == pytest.approx(0.5)
    assert signal_strength(SignalAction.RATE, 3) == 0.0
    assert signal_strength(SignalAction.RATE, 1) == pytest.approx(-1.0)
    # Ten-point ratings are halved
    assert signal_strength(SignalAction.RATE, 8) == pytest.approx(0.5)


def test_watch_time_strength_is_proportional_to_minutes():
    half = signal_strength(SignalAction.WATCH_TIME, 45)
    full = signal_strength(SignalAction.WATCH_TIME, 90)
    assert 0 < half < full
    assert signal_strength(SignalAction.WATCH_TIME, 500) == full


def test_update_affinity_stays_in_bounds():
    value = 0.0
    for _ in range(200):
        value = update_affinity(value, 1.0)
        assert 0.0 <= value <= 1.0
    for _ in range(200):
        value = update_affinity(value, -1.0)
        assert 0.0 <= value <= 1.0


def test_save_strictly_increases_affinity():
    movie = make_movie("alien", ["horror", "sci-fi"])
    profile = BehavioralProfile("u1", genre_affinity={"horror": 0.4})

    apply_signal(profile, signal("save"), movie)

    assert profile.genre_affinity["horror"] > 0.4
    assert profile.genre_affinity["sci-fi"] > 0.0


def test_skip_after_save_moves_down_but_not_to_zero():
    movie = make_movie("alien", ["horror", "sci-fi"])
    profile = BehavioralProfile("u1")

    apply_signal(profile, signal("save"), movie)
    after_save = dict(profile.genre_affinity)
    apply_signal(profile, signal("skip"), movie)

    for genre in movie.genres:
        assert 0.0 < profile.genre_affinity[genre] < after_save[genre]


def test_negative_signal_on_unknown_genre_adds_nothing():
    profile = BehavioralProfile("u1")
    apply_signal(profile, signal("skip"), make_movie("x", ["western"]))
    assert profile.genre_affinity == {}
    assert len(profile.recent_signals) == 1


def test_rate_and_remove_mark_movie_seen():
    profile = BehavioralProfile("u1")
    movie = make_movie("alien", ["horror"])
    apply_signal(profile, signal("rate", value=4.5), movie)
    apply_signal(profile, signal("save", movie_id="heat"), make_movie("heat", ["crime"]))
    apply_signal(profile, signal("remove", movie_id="amelie"), None)

    assert profile.seen_movie_ids == {"alien", "amelie"}


def test_recent_signals_are_bounded():
    profile = BehavioralProfile("u1")
    for i in range(5):
        apply_signal(profile, signal("view", movie_id=f"m{i}"), None, max_signals=3)
    assert [s.movie_id for s in profile.recent_signals] == ["m2", "m3", "m4"]


def test_derive_genre_affinity_from_ratings():
    movies = {
        "a": make_movie("a", ["horror"]),
        "b": make_movie("b", ["horror"]),
        "c": make_movie("c", ["horror", "comedy"]),
    }
    affinity = derive_genre_affinity({"a": 5, "b": 4, "c": 3}, movies)

    assert affinity["horror"] == pytest.approx((1.0 + 0.8 + 0.6) / 3)
    # One rating only counts for a third
    assert affinity["comedy"] == pytest.approx(0.6 / 3)


def test_effective_profile_keeps_signal_affinity_and_adds_ratings():
    stored = BehavioralProfile("u1", genre_affinity={"horror": 0.2})
    movies = {"a": make_movie("a", ["horror", "drama"])}

    view = effective_profile("u1", stored, {"a": 5}, [], movies)

    assert view.genre_affinity["horror"] == 0.2
    assert view.genre_affinity["drama"] > 0
    assert "a" in view.seen_movie_ids
    assert "a" not in stored.seen_movie_ids


def test_preferred_genres_skips_zero_affinity():
    profile = BehavioralProfile("u1", genre_affinity={"horror": 0.6, "drama": 0.0, "comedy": 0.3})
    assert preferred_genres(profile, 5) == ["horror", "comedy"]


def test_adjust_weights_for_high_skip_rate():
    weights = WeightVector.defaults()
    signals = [signal("skip")] * 4 + [signal("view")] * 6

    adjusted = adjust_weights_for_signals(weights, signals)

    assert adjusted.preference < weights.preference
    assert adjusted.popularity > weights.popularity
    assert adjusted.total() == pytest.approx(1.0)
    assert weights.as_dict() == WeightVector.defaults().as_dict()


def test_adjust_weights_for_consistently_high_ratings():
    weights = WeightVector.defaults()
    signals = [signal("rate", value=5)] * 6

    adjusted = adjust_weights_for_signals(weights, signals)

    assert adjusted.preference > weights.preference
    assert adjusted.total() == pytest.approx(1.0)


def test_adjust_weights_without_signals_is_identity():
    weights = WeightVector.defaults()
    assert adjust_weights_for_signals(weights, []) is weights


def test_profile_round_trips_through_dict():
    profile = BehavioralProfile(
        "u1",
        genre_affinity={"horror": 0.5},
        seen_movie_ids={"a"},
        memory_keys={"director": {"John Carpenter"}},
        updated_at=datetime(2024, 5, 1, 12, 0),
    )
    apply_signal(profile, signal("save"), make_movie("alien", ["horror"]))

    restored = BehavioralProfile.from_dict(profile.to_dict())
    assert restored == profile
