from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any

CHANNEL_WEBFORM = "webform"
CHANNEL_EMAIL = "email"
CHANNEL_NOOP = "noop"


@dataclass(frozen=True, slots=True)
class ControllerMeta:
    key: str
    name: str
    preferred_channel: str = CHANNEL_WEBFORM
    form_url: str | None = None
    failure_threshold: int | None = None
    sla_target_minutes: int | None = None


CONTROLLER_DEFAULTS: dict[str, ControllerMeta] = {
    "truecaller": ControllerMeta(
        key="truecaller",
        name="Truecaller",
        preferred_channel=CHANNEL_WEBFORM,
        form_url="https://www.truecaller.com/privacy-center/request/unlist",
        sla_target_minutes=60,
    ),
    "naukri": ControllerMeta(key="naukri", name="Naukri", preferred_channel=CHANNEL_EMAIL, sla_target_minutes=180),
    "olx": ControllerMeta(key="olx", name="OLX", preferred_channel=CHANNEL_WEBFORM, sla_target_minutes=120),
    "foundit": ControllerMeta(key="foundit", name="foundit", preferred_channel=CHANNEL_EMAIL, sla_target_minutes=180),
    "shine": ControllerMeta(key="shine", name="Shine", preferred_channel=CHANNEL_EMAIL, sla_target_minutes=180),
    "timesjobs": ControllerMeta(
        key="timesjobs",
        name="TimesJobs",
        preferred_channel=CHANNEL_EMAIL,
        sla_target_minutes=180,
    ),
}

_OVERRIDE_FIELDS = {"name", "preferred_channel", "form_url", "failure_threshold", "sla_target_minutes"}


def normalize_controller_key(raw: str | None) -> str:
    return (raw or "").strip().lower()


def parse_controller_overrides(raw: str | None) -> dict[str, dict[str, Any]]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}

    parsed: dict[str, dict[str, Any]] = {}
    for raw_key, raw_fields in decoded.items():
        if not isinstance(raw_key, str) or not isinstance(raw_fields, dict):
            continue
        key = normalize_controller_key(raw_key)
        if not key:
            continue
        fields: dict[str, Any] = {}
        for field_name, value in raw_fields.items():
            if field_name not in _OVERRIDE_FIELDS:
                continue
            if field_name in {"failure_threshold", "sla_target_minutes"}:
                coerced = _coerce_positive_int(value)
                if coerced is not None:
                    fields[field_name] = coerced
            elif isinstance(value, str) and value.strip():
                fields[field_name] = value.strip()
        parsed[key] = fields
    return parsed


def resolve_controller(
    key: str,
    overrides: dict[str, dict[str, Any]] | None = None,
    *,
    fallback_name: str | None = None,
) -> ControllerMeta:
    normalized = normalize_controller_key(key)
    base = CONTROLLER_DEFAULTS.get(normalized) or ControllerMeta(
        key=normalized,
        name=fallback_name or normalized or "generic",
    )
    fields = (overrides or {}).get(normalized)
    if not fields:
        return base
    return replace(base, **fields)


def _coerce_positive_int(value: Any) -> int | None:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None
