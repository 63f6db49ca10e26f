import importlib

import pytest

from cineai_rec import config


@pytest.fixture(autouse=True)
def restore_config(monkeypatch):
    yield
    monkeypatch.undo()
    importlib.reload(config)


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("CINEAI_CACHE_TTL", "30")
    monkeypatch.setenv("CINEAI_DEDUP_WINDOW", "-1")  # should clamp to min
    monkeypatch.setenv("CINEAI_MAX_RECENT_SIGNALS", "0")  # min clamp

    cfg = importlib.reload(config)

    assert cfg.CACHE_TTL_SECONDS == 30.0
    assert cfg.DEDUP_WINDOW_SECONDS == 0.0
    assert cfg.MAX_RECENT_SIGNALS == 1


def test_paths_respect_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CINEAI_DB", str(tmp_path / "custom.db"))
    monkeypatch.setenv("CINEAI_WEIGHTS_PATH", str(tmp_path / "w.json"))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == tmp_path / "custom.db"
    assert cfg.WEIGHTS_PATH == tmp_path / "w.json"


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("CINEAI_CONFIDENCE_MULTIPLIER", "not-a-float")
    monkeypatch.setenv("CINEAI_MAX_RECENT_SIGNALS", "bad-int")

    cfg = importlib.reload(config)

    assert cfg.CONFIDENCE_MULTIPLIER == 1.2
    assert cfg.MAX_RECENT_SIGNALS == 200


def test_dynamic_weights_flag(monkeypatch):
    monkeypatch.setenv("CINEAI_DYNAMIC_WEIGHTS", "yes")
    assert importlib.reload(config).DYNAMIC_WEIGHTS_DEFAULT is True

    monkeypatch.setenv("CINEAI_DYNAMIC_WEIGHTS", "off")
    assert importlib.reload(config).DYNAMIC_WEIGHTS_DEFAULT is False


def test_default_weights_sum_to_one(monkeypatch):
    for key in ("CINEAI_CACHE_TTL", "CINEAI_DEDUP_WINDOW", "CINEAI_MAX_RECENT_SIGNALS"):
        monkeypatch.delenv(key, raising=False)
    cfg = importlib.reload(config)
    assert abs(sum(cfg.DEFAULT_WEIGHTS.values()) - 1.0) < 1e-9
