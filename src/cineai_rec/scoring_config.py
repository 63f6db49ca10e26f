"""
Scoring weight vector and the stores that hold it.

The weight vector always sums to 1. Every write goes through
normalize_weights(), which validates the whole map before anything is
stored, so a rejected update never leaves a half-applied vector behind.
"""

from __future__ import annotations

import json
import logging
import math
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from numbers import Real
from pathlib import Path
from typing import Any, Mapping, Protocol

from .config import DEFAULT_WEIGHTS, DYNAMIC_WEIGHTS_DEFAULT, WEIGHTS_PATH
from .errors import InvalidWeightsError

logger = logging.getLogger(__name__)

WEIGHT_NAMES = ("semantic", "rating", "popularity", "recency", "preference")

WEIGHT_DESCRIPTIONS = {
    "semantic": "Base semantic similarity score from embeddings",
    "rating": "IMDb/TMDB rating influence",
    "popularity": "Movie popularity/vote count influence",
    "recency": "Release year recency boost",
    "preference": "User preference genre matching boost",
}

# The persisted document keys preference under 'genreMatch', the rest under 'base'
_DOC_VALUE_KEY = {name: "base" for name in WEIGHT_NAMES}
_DOC_VALUE_KEY["preference"] = "genreMatch"

VERSION_MAJOR = 2
_REVISION_RE = re.compile(r'"revision"\s*:\s*(\d+)')


@dataclass(frozen=True)
class WeightVector:
    semantic: float
    rating: float
    popularity: float
    recency: float
    preference: float
    revision: int = 0
    version: str = f"{VERSION_MAJOR}.0-default"
    last_updated: datetime = field(default_factory=datetime.now)
    dynamic_weights_enabled: bool = False
    last_manual_update: datetime | None = None
    last_updated_by: str | None = None

    @classmethod
    def defaults(cls) -> "WeightVector":
        return cls(**DEFAULT_WEIGHTS, dynamic_weights_enabled=DYNAMIC_WEIGHTS_DEFAULT)

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in WEIGHT_NAMES}

    def total(self) -> float:
        return math.fsum(self.as_dict().values())

    def with_weights(self, weights: Mapping[str, float]) -> "WeightVector":
        """Copy with different raw weights; metadata is kept as-is."""
        return replace(self, **{name: float(weights[name]) for name in WEIGHT_NAMES})

    def to_document(self) -> dict[str, Any]:
        weights = {
            name: {_DOC_VALUE_KEY[name]: getattr(self, name), "description": WEIGHT_DESCRIPTIONS[name]}
            for name in WEIGHT_NAMES
        }
        return {
            "weights": weights,
            "meta": {
                "dynamicWeightsEnabled": self.dynamic_weights_enabled,
                "lastManualUpdate": self.last_manual_update.isoformat() if self.last_manual_update else None,
                "lastUpdatedBy": self.last_updated_by,
            },
            "version": self.version,
            "revision": self.revision,
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "WeightVector":
        raw = doc.get("weights", {})
        values = {}
        for name in WEIGHT_NAMES:
            entry = raw.get(name, {})
            value = entry.get(_DOC_VALUE_KEY[name]) if isinstance(entry, dict) else entry
            values[name] = 0.0 if value is None else value
        # Re-validate on load so a hand-edited file cannot break the sum invariant
        normalized = normalize_weights(values)
        meta = doc.get("meta", {})
        manual = meta.get("lastManualUpdate")
        last_updated = doc.get("lastUpdated")
        return cls(
            **normalized,
            revision=int(doc.get("revision", 0)),
            version=str(doc.get("version", f"{VERSION_MAJOR}.0-default")),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else datetime.now(),
            dynamic_weights_enabled=bool(meta.get("dynamicWeightsEnabled", False)),
            last_manual_update=datetime.fromisoformat(manual) if manual else None,
            last_updated_by=meta.get("lastUpdatedBy"),
        )


def normalize_weights(partial: Mapping[str, Any]) -> dict[str, float]:
    """
    Validate a (possibly partial) weight map and rescale it to sum to 1.

    Omitted weights become 0. Raises InvalidWeightsError when the map is
    empty, names an unknown weight, holds a non-numeric or out-of-range
    value, or sums to zero.
    """
    if not isinstance(partial, Mapping):
        raise InvalidWeightsError("Weights must be an object mapping weight names to numbers")
    if not partial:
        raise InvalidWeightsError("No weights provided")

    for key, value in partial.items():
        if key not in WEIGHT_NAMES:
            raise InvalidWeightsError(f"Unknown weight: {key}")
        if isinstance(value, bool) or not isinstance(value, Real) or math.isnan(value):
            raise InvalidWeightsError(f"Invalid weight for {key}: must be a number between 0 and 1")
        if value < 0 or value > 1:
            raise InvalidWeightsError(f"Invalid weight for {key}: must be between 0 and 1")

    total = math.fsum(float(v) for v in partial.values())
    if total == 0:
        raise InvalidWeightsError("Total weight cannot be zero")

    return {name: float(partial.get(name, 0.0)) / total for name in WEIGHT_NAMES}


def _defaults_after(text: str) -> WeightVector:
    """Default weights carrying the revision found in an unreadable weights document."""
    match = _REVISION_RE.search(text)
    revision = int(match.group(1)) if match else 0
    return replace(WeightVector.defaults(), revision=revision)


def _next_revision(
    current: WeightVector,
    normalized: dict[str, float],
    updated_by: str | None,
) -> WeightVector:
    now = datetime.now()
    revision = current.revision + 1
    return WeightVector(
        **normalized,
        revision=revision,
        version=f"{VERSION_MAJOR}.{revision}-manual-{now.date().isoformat()}",
        last_updated=now,
        dynamic_weights_enabled=current.dynamic_weights_enabled,
        last_manual_update=now,
        last_updated_by=updated_by,
    )


class ScoringConfigStore(Protocol):
    def get(self) -> WeightVector: ...

    def set(self, partial: Mapping[str, Any], updated_by: str | None = None) -> WeightVector: ...

    def set_dynamic_weights(self, enabled: bool) -> WeightVector: ...


class InMemoryScoringConfigStore:
    """Holds the weight vector in process memory."""

    def __init__(self, initial: WeightVector | None = None):
        self._lock = threading.Lock()
        self._current = initial or WeightVector.defaults()

    def get(self) -> WeightVector:
        return self._current

    def set(self, partial: Mapping[str, Any], updated_by: str | None = None) -> WeightVector:
        normalized = normalize_weights(partial)
        with self._lock:
            self._current = _next_revision(self._current, normalized, updated_by)
            return self._current

    def set_dynamic_weights(self, enabled: bool) -> WeightVector:
        with self._lock:
            self._current = replace(self._current, dynamic_weights_enabled=bool(enabled))
            return self._current


class JsonScoringConfigStore:
    """Weight vector persisted as a JSON document on disk."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else WEIGHTS_PATH
        self._lock = threading.Lock()

    def _load(self) -> WeightVector:
        if not self.path.exists():
            logger.debug(f"Weights file not found at {self.path}; using defaults")
            return WeightVector.defaults()
        try:
            text = self.path.read_text()
        except OSError as exc:
            logger.warning(f"Failed to read weights from {self.path}: {exc}; using defaults")
            return WeightVector.defaults()
        try:
            return WeightVector.from_document(json.loads(text))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(f"Failed to load weights from {self.path}: {exc}; using defaults")
            return _defaults_after(text)
        except InvalidWeightsError as exc:
            logger.warning(f"Stored weights at {self.path} are invalid ({exc}); using defaults")
            return _defaults_after(text)

    def _save(self, vector: WeightVector) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(vector.to_document(), indent=2))
        tmp.replace(self.path)

    def get(self) -> WeightVector:
        with self._lock:
            return self._load()

    def set(self, partial: Mapping[str, Any], updated_by: str | None = None) -> WeightVector:
        normalized = normalize_weights(partial)
        with self._lock:
            vector = _next_revision(self._load(), normalized, updated_by)
            self._save(vector)
        logger.info(f"Scoring weights updated to {vector.version} by {updated_by or 'unknown'}")
        return vector

    def set_dynamic_weights(self, enabled: bool) -> WeightVector:
        with self._lock:
            vector = replace(self._load(), dynamic_weights_enabled=bool(enabled))
            self._save(vector)
        return vector
