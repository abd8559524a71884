from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from erasure.core.errors import IdempotencyUnavailableError
from erasure.core.hashing import canonical_hash
from erasure.services.interfaces import IdempotencyStore, utc_now
from erasure.services.repository import RepositoryError

logger = logging.getLogger(__name__)

DEFAULT_ACTION_LABEL = "create_request_v1"
RETRY_ACTION_LABEL = "retry_request_v1"
IDEMPOTENCY_NEW = "new"
IDEMPOTENCY_EXISTS = "exists"
ANONYMOUS_SUBJECT = "anon"


def retry_action_label(entry_id: str) -> str:
    """Replays of one dead letter share a label; a later dead letter for the same subject does not."""
    return f"{RETRY_ACTION_LABEL}:{entry_id}"


def base_action_label(action_label: str) -> str:
    return action_label.split(":", 1)[0]


def stable_subject_identifier(subject: Any, subject_ref: str | None = None) -> str:
    """Pick the most stable identifier available for a subject.

    Order: internal subject ref, subject id, email, phone, handle, name.
    """
    if subject_ref and subject_ref.strip():
        return subject_ref.strip()
    for attribute in ("id", "email", "phone", "handle", "name"):
        value = _read(subject, attribute)
        if isinstance(value, str) and value.strip():
            cleaned = value.strip()
            return cleaned.lower() if attribute == "email" else cleaned
    return ANONYMOUS_SUBJECT


def build_idempotency_key(
    controller_key: str,
    subject: Any,
    action_label: str | None = None,
    *,
    subject_ref: str | None = None,
) -> str:
    parts = {
        "action": (action_label or DEFAULT_ACTION_LABEL).strip(),
        "controller": (controller_key or "").strip().lower(),
        "subject": stable_subject_identifier(subject, subject_ref),
    }
    return canonical_hash(parts)


class IdempotencyGuard:
    def __init__(
        self,
        store: IdempotencyStore,
        *,
        ttl_seconds: int,
        at_least_once_actions: set[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._ttl_seconds = max(1, ttl_seconds)
        self._at_least_once_actions = set(at_least_once_actions or ())
        self._clock = clock

    async def check_and_reserve(self, key: str, action_label: str) -> str:
        try:
            reserved = await self._store.reserve_idempotency_key(
                key,
                action_label=action_label,
                ttl_seconds=self._ttl_seconds,
                now=self._clock(),
            )
        except RepositoryError as exc:
            if base_action_label(action_label) in self._at_least_once_actions:
                logger.warning(
                    "idempotency store unavailable; proceeding at-least-once for action=%s",
                    action_label,
                )
                return IDEMPOTENCY_NEW
            raise IdempotencyUnavailableError("idempotency store unavailable") from exc
        return IDEMPOTENCY_NEW if reserved else IDEMPOTENCY_EXISTS

    async def release(self, key: str) -> bool:
        return await self._store.release_idempotency_key(key)


def _read(subject: Any, attribute: str) -> Any:
    if subject is None:
        return None
    if isinstance(subject, dict):
        return subject.get(attribute)
    return getattr(subject, attribute, None)
