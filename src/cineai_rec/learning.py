"""
Real-time learning signal ingestion.

Signals are non-critical telemetry: anything that goes wrong while
recording one is reported on the `cineai_rec.telemetry` logger and
dropped, so the user-facing action that produced the signal never fails
because of it.
"""

from __future__ import annotations

import asyncio
import logging
import math
import weakref
from datetime import datetime

from .cache import ResultCache
from .config import MAX_RECENT_SIGNALS
from .errors import InvalidRequestError
from .models import BehavioralProfile, LearningSignal, SignalAction, SignalContext
from .profile import apply_signal
from .stores import MovieCatalogStore, UserInteractionStore

logger = logging.getLogger(__name__)
telemetry_logger = logging.getLogger("cineai_rec.telemetry")

ANONYMOUS_USER_IDS = {"", "anonymous", "anon", "guest"}
MEMORY_KINDS = ("genre", "director", "actor")


def is_anonymous(user_id: str | None) -> bool:
    return user_id is None or str(user_id).strip().lower() in ANONYMOUS_USER_IDS


def _parse_value(value) -> float | None:
    """Finite float for a signal value, or None when it is missing or unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class LearningSignalRecorder:
    """
    Applies signals to behavioral profiles.

    Updates for one user are serialized by a per-user asyncio.Lock, so
    concurrent signals cannot lose each other's read-modify-write.
    """

    def __init__(
        self,
        interactions: UserInteractionStore,
        catalog: MovieCatalogStore,
        cache: ResultCache | None = None,
        max_signals: int = MAX_RECENT_SIGNALS,
    ):
        self.interactions = interactions
        self.catalog = catalog
        self.cache = cache
        self.max_signals = max_signals
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _load_or_create(self, user_id: str) -> BehavioralProfile:
        profile = await self.interactions.get_behavioral_profile(user_id)
        return profile or BehavioralProfile(user_id=user_id)

    async def record(
        self,
        user_id: str | None,
        movie_id: str,
        action: SignalAction | str,
        value: float | None = None,
        context: SignalContext | dict | None = None,
    ) -> LearningSignal | None:
        """Record one signal; returns it, or None when the profile was not updated."""
        if is_anonymous(user_id):
            logger.debug("Ignoring learning signal from anonymous user")
            return None

        try:
            action = SignalAction(action)
        except ValueError:
            telemetry_logger.warning(f"Dropping signal with unknown action {action!r} for user {user_id}")
            return None

        number = _parse_value(value)
        if value is not None and number is None:
            telemetry_logger.warning(f"Dropping {action.value} signal with invalid value {value!r} for user {user_id}")
            return None

        if not isinstance(context, SignalContext):
            context = SignalContext.from_dict(context)

        signal = LearningSignal(
            user_id=user_id,
            movie_id=str(movie_id),
            action=action,
            value=number,
            context=context,
            timestamp=datetime.now(),
        )

        saved = False
        try:
            async with self._lock_for(user_id):
                profile = await self._load_or_create(user_id)
                movie = await self.catalog.find_by_id(signal.movie_id)
                if movie is None:
                    telemetry_logger.info(f"Signal for unknown movie {signal.movie_id}; affinity unchanged")
                apply_signal(profile, signal, movie, self.max_signals)
                await self.interactions.save_behavioral_profile(profile)
                saved = True
                await self.interactions.append_signal(signal)
        except Exception as exc:
            stage = "log" if saved else "record"
            telemetry_logger.warning(
                f"Failed to {stage} {action.value} signal for user {user_id} on {movie_id}: {exc}",
                exc_info=True,
            )

        # The profile changed even when only the signal log write failed
        if saved and self.cache is not None:
            self.cache.invalidate_user(user_id)
        return signal if saved else None

    async def reset(self, user_id: str) -> None:
        """Delete learned state, waiting out any signal being applied for the user."""
        async with self._lock_for(user_id):
            await self.interactions.reset_user_data(user_id)
        if self.cache is not None:
            self.cache.invalidate_user(user_id)

    async def remember(self, user_id: str, kind: str, value: str) -> BehavioralProfile:
        """Store an explicitly stated preference ("I love horror")."""
        if is_anonymous(user_id):
            raise InvalidRequestError("user_id is required")
        if kind not in MEMORY_KINDS:
            raise InvalidRequestError(f"Unknown preference kind: {kind} (expected one of {', '.join(MEMORY_KINDS)})")
        value = value.strip()
        if not value:
            raise InvalidRequestError("Preference value cannot be empty")
        if kind == "genre":
            value = value.lower()

        async with self._lock_for(user_id):
            profile = await self._load_or_create(user_id)
            profile.memory_keys.setdefault(kind, set()).add(value)
            profile.updated_at = datetime.now()
            await self.interactions.save_behavioral_profile(profile)

        if self.cache is not None:
            self.cache.invalidate_user(user_id)
        return profile
