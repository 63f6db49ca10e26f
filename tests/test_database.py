import json
from datetime import datetime, timedelta

from cineai_rec import database


def movie(movie_id, genres, rating=None, popularity=0.0, directors=()):
    return {
        "id": movie_id,
        "title": movie_id.title(),
        "year": 2000,
        "genres": list(genres),
        "directors": list(directors),
        "rating": rating,
        "popularity": popularity,
        "plot": "",
        "cast": [],
    }


def test_init_db_creates_expected_tables(fresh_db):
    db = fresh_db
    db.init_db()

    with db.get_db(read_only=True) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    expected = {
        "movies",
        "movie_genres",
        "movie_directors",
        "ratings",
        "watchlist",
        "behavioral_profiles",
        "behavior_signals",
    }
    assert expected.issubset(tables)


def test_nested_transactions_commit_once(fresh_db):
    db = fresh_db

    with db.get_db() as conn:
        conn.execute("INSERT INTO movies (id, title) VALUES (?, ?)", ("a", "A"))
        with db.get_db() as inner:
            inner.execute(
                "INSERT INTO ratings (user_id, movie_id, rating) VALUES (?, ?, ?)",
                ("alice", "a", 4.0),
            )

    with db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM ratings").fetchone()[0] == 1


def test_outer_failure_rolls_back_nested_work(fresh_db):
    db = fresh_db

    try:
        with db.get_db() as conn:
            conn.execute("INSERT INTO movies (id, title) VALUES (?, ?)", ("a", "A"))
            with db.get_db() as inner:
                inner.execute("INSERT INTO movies (id, title) VALUES (?, ?)", ("b", "B"))
            raise RuntimeError("abort")
    except RuntimeError:
        pass

    with db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM movies").fetchone()[0] == 0


def test_load_json_handles_invalid_payload():
    assert database.load_json("not-json") == []
    assert database.load_json(None) == []
    assert database.load_json('["a"]') == ["a"]


def test_upsert_and_query_by_genre(fresh_db):
    db = fresh_db
    db.upsert_movies([
        movie("a", ["horror"], rating=7.0),
        movie("b", ["horror", "comedy"], rating=9.0),
        movie("c", ["drama"], rating=8.0),
        movie("d", ["comedy"], rating=None),
    ])

    assert [m["id"] for m in db.load_movies_by_genres(["Horror"], 10)] == ["b", "a"]
    assert [m["id"] for m in db.load_movies_by_genres(["horror", "comedy"], 10)] == ["b", "a", "d"]
    assert [m["id"] for m in db.load_movies_by_genres(["horror"], 10, exclude={"b"})] == ["a"]
    assert db.load_movies_by_genres([], 10) == []


def test_upsert_replaces_genre_rows(fresh_db):
    db = fresh_db
    db.upsert_movies([movie("a", ["horror"], rating=7.0)])
    db.upsert_movies([movie("a", ["comedy"], rating=7.0)])

    assert db.load_movies_by_genres(["horror"], 10) == []
    assert db.load_movie("a")["genres"] == ["comedy"]


def test_top_rated_skips_unrated_and_excluded(fresh_db):
    db = fresh_db
    db.upsert_movies([
        movie("a", ["horror"], rating=7.0),
        movie("b", ["drama"], rating=9.0),
        movie("c", ["drama"], rating=None),
    ])

    assert [m["id"] for m in db.load_top_rated(5)] == ["b", "a"]
    assert [m["id"] for m in db.load_top_rated(5, exclude={"b"})] == ["a"]


def test_load_movies_batch(fresh_db):
    db = fresh_db
    db.upsert_movies([movie("a", ["horror"]), movie("b", ["drama"])])

    found = db.load_movies(["a", "b", "missing"])
    assert set(found) == {"a", "b"}
    assert db.load_movie("missing") is None


def test_ratings_and_watchlist(fresh_db):
    db = fresh_db
    db.save_rating("alice", "a", 4.0)
    db.save_rating("alice", "a", 5.0)
    db.add_to_watchlist("alice", "b")
    db.add_to_watchlist("alice", "b")

    assert db.load_user_ratings("alice") == {"a": 5.0}
    assert db.load_watchlist("alice") == ["b"]
    assert db.load_user_ratings("bob") == {}


def test_profile_round_trip_and_schema_mismatch(fresh_db):
    db = fresh_db
    db.save_behavioral_profile("alice", {"user_id": "alice", "genre_affinity": {"horror": 0.5}})

    assert db.load_behavioral_profile("alice")["genre_affinity"] == {"horror": 0.5}

    with db.get_db() as conn:
        conn.execute("UPDATE behavioral_profiles SET schema_version = 0 WHERE user_id = ?", ("alice",))

    assert db.load_behavioral_profile("alice") is None
    assert db.load_behavioral_profile("nobody") is None


def test_signals_newest_first_with_since(fresh_db):
    db = fresh_db
    now = datetime.now()
    for i, action in enumerate(["view", "click", "save"]):
        db.append_behavior_signal({
            "user_id": "alice",
            "movie_id": f"m{i}",
            "action": action,
            "value": None,
            "context": {"page_type": "home"},
            "timestamp": (now - timedelta(days=2 - i)).isoformat(),
        })

    signals = db.load_behavior_signals("alice")
    assert [s["action"] for s in signals] == ["save", "click", "view"]
    assert signals[0]["context"] == {"page_type": "home"}

    recent = db.load_behavior_signals("alice", since=now - timedelta(hours=1))
    assert [s["action"] for s in recent] == ["save"]
    assert len(db.load_behavior_signals("alice", limit=2)) == 2


def test_purge_old_signals(fresh_db):
    db = fresh_db
    old = (datetime.now() - timedelta(days=120)).isoformat()
    db.append_behavior_signal({"user_id": "a", "movie_id": "m", "action": "view", "timestamp": old})
    db.append_behavior_signal({"user_id": "a", "movie_id": "m", "action": "view", "timestamp": datetime.now().isoformat()})

    assert db.purge_old_signals(90) == 1
    assert len(db.load_behavior_signals("a")) == 1


def test_delete_user_data_keeps_other_users(fresh_db):
    db = fresh_db
    ts = datetime.now().isoformat()
    for user in ("alice", "bob"):
        db.save_behavioral_profile(user, {"user_id": user})
        db.append_behavior_signal({"user_id": user, "movie_id": "m", "action": "view", "timestamp": ts})
    db.save_rating("alice", "m", 4.0)

    db.delete_user_data("alice")

    assert db.load_behavioral_profile("alice") is None
    assert db.load_behavior_signals("alice") == []
    assert db.load_behavioral_profile("bob") == {"user_id": "bob"}
    # Explicit ratings are catalog data, not learned state
    assert db.load_user_ratings("alice") == {"m": 4.0}


def test_get_stats(fresh_db):
    db = fresh_db
    db.upsert_movies([movie("a", ["horror"])])
    db.save_rating("alice", "a", 4.0)

    stats = db.get_stats()
    assert stats["movies"] == 1
    assert stats["ratings"] == 1
    assert stats["behavior_signals"] == 0


def test_movie_row_keeps_json_fields(fresh_db):
    db = fresh_db
    db.upsert_movies([movie("a", ["horror", "sci-fi"], directors=["Ridley Scott"])])

    with db.get_db(read_only=True) as conn:
        raw = conn.execute("SELECT genres FROM movies WHERE id = 'a'").fetchone()[0]

    assert json.loads(raw) == ["horror", "sci-fi"]
    assert db.load_movie("a")["directors"] == ["Ridley Scott"]
