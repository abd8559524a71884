from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from erasure.core.controllers import normalize_controller_key, resolve_controller
from erasure.core.errors import CircuitOpenError
from erasure.services.interfaces import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_OPEN,
    BreakerStore,
    CircuitState,
    utc_now,
)
from erasure.services.repository import RepositoryConflictError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BreakerDecision:
    allow: bool
    state: str
    recent_failures: int
    probe: bool = False


class CircuitBreaker:
    """Per-controller closed/open/half-open breaker persisted through a versioned store.

    Every transition is a compare-and-swap on ``CircuitState.version``; a lost
    race reloads the row and re-evaluates. Half-open admits a single probe: the
    caller whose swap sets ``probe_in_flight`` gets it, everyone else is blocked
    until the probe reports or goes stale after one cool-down.
    """

    def __init__(
        self,
        store: BreakerStore,
        *,
        failure_threshold: int,
        window_seconds: int,
        cooldown_seconds: int,
        max_cooldown_seconds: int,
        controller_overrides: dict[str, dict[str, Any]] | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_cas_attempts: int = 8,
    ) -> None:
        self._store = store
        self._failure_threshold = max(1, failure_threshold)
        self._window = timedelta(seconds=max(1, window_seconds))
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._max_cooldown_seconds = max(self._cooldown_seconds, max_cooldown_seconds)
        self._controller_overrides = controller_overrides or {}
        self._clock = clock
        self._max_cas_attempts = max(1, max_cas_attempts)

    def threshold_for(self, controller_key: str) -> int:
        meta = resolve_controller(controller_key, self._controller_overrides)
        return meta.failure_threshold or self._failure_threshold

    def cooldown_for_trip(self, trip_count: int) -> int:
        exponent = max(0, trip_count - 1)
        return min(self._cooldown_seconds * (2**exponent), self._max_cooldown_seconds)

    async def snapshot(self, controller_key: str) -> CircuitState:
        key = normalize_controller_key(controller_key)
        return await self._store.get_circuit(key) or CircuitState(controller_key=key)

    def would_allow(self, state: CircuitState) -> bool:
        """Read-only view of ``should_allow``; never claims the half-open probe."""
        if state.state == CIRCUIT_CLOSED:
            return True
        if state.opened_at is None:
            return True
        cooled_down = self._clock() >= state.opened_at + timedelta(seconds=state.cooldown_seconds)
        if state.state == CIRCUIT_OPEN:
            return cooled_down
        return cooled_down or not state.probe_in_flight

    async def should_allow(self, controller_key: str) -> BreakerDecision:
        key = normalize_controller_key(controller_key)
        for _ in range(self._max_cas_attempts):
            current = await self.snapshot(key)
            now = self._clock()

            if current.state == CIRCUIT_CLOSED:
                return BreakerDecision(allow=True, state=CIRCUIT_CLOSED, recent_failures=current.failure_count)

            cooled_down = current.opened_at is None or now >= current.opened_at + timedelta(
                seconds=current.cooldown_seconds
            )
            if current.state == CIRCUIT_OPEN and not cooled_down:
                return BreakerDecision(allow=False, state=CIRCUIT_OPEN, recent_failures=current.failure_count)
            if current.state == CIRCUIT_HALF_OPEN and current.probe_in_flight and not cooled_down:
                return BreakerDecision(allow=False, state=CIRCUIT_HALF_OPEN, recent_failures=current.failure_count)

            probing = replace(current, state=CIRCUIT_HALF_OPEN, probe_in_flight=True, opened_at=now)
            if await self._store.save_circuit(probing, expected_version=current.version):
                logger.info("circuit half-open probe granted controller=%s", key)
                return BreakerDecision(
                    allow=True,
                    state=CIRCUIT_HALF_OPEN,
                    recent_failures=current.failure_count,
                    probe=True,
                )
        raise RepositoryConflictError(f"circuit state for {key} kept changing")

    async def require_allowed(self, controller_key: str) -> BreakerDecision:
        decision = await self.should_allow(controller_key)
        if not decision.allow:
            raise CircuitOpenError(normalize_controller_key(controller_key), decision.recent_failures)
        return decision

    async def record_failure(self, controller_key: str, error_code: str, note: str | None = None) -> CircuitState:
        key = normalize_controller_key(controller_key)
        threshold = self.threshold_for(key)
        tripped = False

        def transition(current: CircuitState, now: datetime) -> CircuitState:
            nonlocal tripped
            tripped = False
            updated = replace(current, last_error_code=error_code, last_error_note=note)
            if current.state == CIRCUIT_OPEN:
                return updated
            if current.state == CIRCUIT_HALF_OPEN:
                tripped = True
                return self._trip(updated, now)

            window_expired = current.window_started_at is None or now - current.window_started_at >= self._window
            if window_expired:
                updated.failure_count = 1
                updated.window_started_at = now
            else:
                updated.failure_count = current.failure_count + 1
            if updated.failure_count >= threshold:
                tripped = True
                return self._trip(updated, now)
            return updated

        state = await self._apply(key, transition)
        if tripped:
            logger.warning(
                "circuit open controller=%s failures=%s cooldown=%ss error=%s",
                key,
                state.failure_count,
                state.cooldown_seconds,
                error_code,
            )
        return state

    async def record_success(self, controller_key: str) -> CircuitState:
        key = normalize_controller_key(controller_key)

        def transition(current: CircuitState, now: datetime) -> CircuitState | None:
            if current.state == CIRCUIT_CLOSED and current.failure_count == 0 and current.trip_count == 0:
                return None
            return CircuitState(controller_key=key, version=current.version)

        return await self._apply(key, transition)

    def _trip(self, state: CircuitState, now: datetime) -> CircuitState:
        trip_count = state.trip_count + 1
        return replace(
            state,
            state=CIRCUIT_OPEN,
            opened_at=now,
            trip_count=trip_count,
            cooldown_seconds=self.cooldown_for_trip(trip_count),
            probe_in_flight=False,
        )

    async def _apply(
        self,
        key: str,
        transition: Callable[[CircuitState, datetime], CircuitState | None],
    ) -> CircuitState:
        for _ in range(self._max_cas_attempts):
            current = await self.snapshot(key)
            updated = transition(replace(current), self._clock())
            if updated is None:
                return current
            if await self._store.save_circuit(updated, expected_version=current.version):
                return replace(updated, version=current.version + 1)
        raise RepositoryConflictError(f"circuit state for {key} kept changing")
