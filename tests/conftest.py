import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from cineai_rec.models import CandidateMovie  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock for cache tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_movie(movie_id, genres=(), rating=None, year=None, popularity=0.0, directors=(), title=None, plot="", cast=()):
    return CandidateMovie(
        id=movie_id,
        title=title or movie_id.replace("-", " ").title(),
        year=year,
        genres=frozenset(g.lower() for g in genres),
        directors=frozenset(directors),
        rating=rating,
        popularity=popularity,
        plot=plot,
        cast=tuple(cast),
    )


@pytest.fixture
def sample_movies():
    return [
        make_movie("alien", ["horror", "sci-fi"], rating=8.5, year=1979, popularity=900, directors=["Ridley Scott"],
                   plot="The crew of a commercial spacecraft encounters a deadly alien creature."),
        make_movie("the-thing", ["horror", "sci-fi"], rating=8.2, year=1982, popularity=600, directors=["John Carpenter"],
                   plot="Antarctic researchers face a shape-shifting alien organism."),
        make_movie("halloween", ["horror"], rating=7.7, year=1978, popularity=500, directors=["John Carpenter"],
                   plot="A masked killer stalks babysitters on Halloween night."),
        make_movie("amelie", ["comedy", "romance"], rating=8.3, year=2001, popularity=800, directors=["Jean-Pierre Jeunet"],
                   plot="A shy waitress in Paris decides to change the lives of those around her."),
        make_movie("heat", ["crime", "thriller"], rating=8.3, year=1995, popularity=700, directors=["Michael Mann"],
                   plot="A detective hunts a professional thief crew in Los Angeles."),
        make_movie("paddington-2", ["comedy", "family"], rating=7.8, year=2017, popularity=300, directors=["Paul King"],
                   plot="A bear is framed for stealing a pop-up book."),
    ]


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    monkeypatch.setenv("CINEAI_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("CINEAI_WEIGHTS_PATH", str(tmp_path / "weights.json"))
    import cineai_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    monkeypatch.setenv("CINEAI_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("CINEAI_WEIGHTS_PATH", str(tmp_path / "weights.json"))

    import cineai_rec.config as config
    import cineai_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()
