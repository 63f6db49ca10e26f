"""
Configuration constants for the CineAI recommendation engine.

This module centralizes the tunable numbers used by scoring, caching and
learning. Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Storage
DB_PATH = Path(os.environ.get("CINEAI_DB", "data/cineai.db"))
WEIGHTS_PATH = Path(os.environ.get("CINEAI_WEIGHTS_PATH", "data/scoring_weights.json"))

# Default weight vector (sums to 1)
DEFAULT_WEIGHTS = {
    'semantic': 0.4,
    'rating': 0.25,
    'popularity': 0.15,
    'recency': 0.1,
    'preference': 0.1,
}
DYNAMIC_WEIGHTS_DEFAULT = _get_bool_env("CINEAI_DYNAMIC_WEIGHTS", False)

# Score normalization
REFERENCE_POPULARITY = _get_float_env("CINEAI_REFERENCE_POPULARITY", 1000.0, min_val=1.0)
RECENCY_HORIZON_YEARS = _get_int_env("CINEAI_RECENCY_HORIZON", 25, min_val=1)
MIN_SCORE = 0.0  # Scores must be strictly above this to be returned

# Confidence tiers
SEMANTIC_CONFIDENCE_CAP = 0.9
CONFIDENCE_MULTIPLIER = _get_float_env("CINEAI_CONFIDENCE_MULTIPLIER", 1.2, min_val=0.0)
PREFERENCE_CONFIDENCE_CEILING = _get_float_env("CINEAI_PREFERENCE_CEILING", 0.4, min_val=0.0)
FALLBACK_CONFIDENCE_CEILING = _get_float_env("CINEAI_FALLBACK_CEILING", 0.3, min_val=0.0)

# Discovery classification
TOP_GENRES_N = _get_int_env("CINEAI_TOP_GENRES", 5, min_val=1)
SAFE_PREFERENCE_THRESHOLD = 0.6

# Fallback orchestration
DEFAULT_LIMIT = 10
DEFAULT_SEMANTIC_THRESHOLD = _get_float_env("CINEAI_SEMANTIC_THRESHOLD", 0.7, min_val=0.0)
CANDIDATE_MULTIPLIER = _get_int_env("CINEAI_CANDIDATE_MULTIPLIER", 3, min_val=1)
CATALOG_FETCH_MULTIPLIER = 2
PROVIDER_TIMEOUT_SECONDS = _get_float_env("CINEAI_PROVIDER_TIMEOUT", 5.0, min_val=0.1)
DIVERSIFY_DEFAULT = True

# Explanations
SIMILARITY_BANDS = (
    (0.8, "Perfect match"),
    (0.6, "Great match"),
    (0.4, "Good match"),
)
HIGH_RATING_THRESHOLD = 7.5

# Result cache
CACHE_TTL_SECONDS = _get_float_env("CINEAI_CACHE_TTL", 300.0, min_val=0.0)
DEDUP_WINDOW_SECONDS = _get_float_env("CINEAI_DEDUP_WINDOW", 1.0, min_val=0.0)
CACHE_MAX_ENTRIES = _get_int_env("CINEAI_CACHE_MAX_ENTRIES", 5000, min_val=1)
CACHE_SWEEP_INTERVAL = _get_float_env("CINEAI_CACHE_SWEEP_INTERVAL", 60.0, min_val=1.0)
CIRCUIT_FAILURE_THRESHOLD = _get_int_env("CINEAI_CIRCUIT_FAILURES", 5, min_val=1)
CIRCUIT_OPEN_SECONDS = _get_float_env("CINEAI_CIRCUIT_OPEN_SECONDS", 60.0, min_val=0.0)

# Learning signals
MAX_RECENT_SIGNALS = _get_int_env("CINEAI_MAX_RECENT_SIGNALS", 200, min_val=1)
AFFINITY_STEP = _get_float_env("CINEAI_AFFINITY_STEP", 0.15, min_val=0.0)
SIGNAL_RETENTION_DAYS = _get_int_env("CINEAI_SIGNAL_RETENTION_DAYS", 90, min_val=1)

# Relative strength of each action (sign gives direction)
ACTION_WEIGHTS = {
    'view': 0.3,
    'click': 0.5,
    'save': 1.0,
    'rate': 1.0,
    'watch_time': 0.8,
    'skip': -0.6,
    'remove': -1.0,
}
# Ratings are on a 0-5 star scale unless the value exceeds 5
RATING_NEUTRAL_STARS = 3.0
RATING_POSITIVE_STARS = 3.5
WATCH_COMPLETE_MINUTES = 90.0

# Real-time weight adjustment from recent behaviour
ADJUSTMENT_WINDOW = 100
SKIP_RATE_THRESHOLD = 0.3
HIGH_RATING_SIGNAL_MIN = 5
HIGH_RATING_AVERAGE = 4.0
WEIGHT_ADJUSTMENT_STEP = 0.05

# Remote embedding service
EMBEDDING_SERVICE_URL = os.environ.get("CINEAI_EMBEDDING_URL", "")
HTTP_TIMEOUT = _get_float_env("CINEAI_HTTP_TIMEOUT", 10.0, min_val=0.1)
MAX_HTTP_RETRIES = _get_int_env("CINEAI_HTTP_RETRIES", 3, min_val=1)

# Local TF-IDF index
TFIDF_MIN_DF = 1
TFIDF_MAX_FEATURES = 20000

# CLI
IMPORT_CHUNK_SIZE = 500

# Profile schema versioning; bump when BehavioralProfile fields change
PROFILE_SCHEMA_VERSION = 1
