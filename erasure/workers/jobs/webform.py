from __future__ import annotations

from typing import Any

import httpx

from erasure.core.errors import FetchError, FetchTimeout

WEBFORM_SUCCESS_STATUSES = range(200, 400)


def build_form_fields(dispatch: dict[str, Any]) -> dict[str, str]:
    """Flatten the dispatch payload into the form fields a controller's privacy form expects."""
    subject = dispatch.get("subject") if isinstance(dispatch.get("subject"), dict) else {}
    draft = dispatch.get("draft") if isinstance(dispatch.get("draft"), dict) else {}
    fields = {
        "name": subject.get("name"),
        "email": subject.get("email"),
        "phone": subject.get("phone"),
        "handle": subject.get("handle"),
        "subject": draft.get("subject"),
        "message": draft.get("body_text"),
        "locale": dispatch.get("locale"),
    }
    return {key: str(value) for key, value in fields.items() if value}


async def execute_webform_submit(
    job: dict[str, Any],
    *,
    client: httpx.AsyncClient | None = None,
    timeout_seconds: float = 8.0,
) -> dict[str, Any]:
    raw_metadata = job.get("metadata")
    metadata: dict[str, Any] = raw_metadata if isinstance(raw_metadata, dict) else {}
    raw_dispatch = metadata.get("dispatch")
    dispatch: dict[str, Any] = raw_dispatch if isinstance(raw_dispatch, dict) else {}

    target_url = job.get("target_url") or dispatch.get("form_url")
    if not target_url:
        raise ValueError("webform job has no target_url")

    fields = build_form_fields(dispatch)
    if client is not None:
        response = await _submit(client, target_url, fields)
    else:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
            response = await _submit(temp_client, target_url, fields)

    if response.status_code not in WEBFORM_SUCCESS_STATUSES:
        raise FetchError(f"webform rejected submission: http {response.status_code}")

    return {
        "handled": True,
        "kind": job.get("kind"),
        "url": str(response.url),
        "http_status": response.status_code,
        "html": response.text,
    }


async def _submit(client: httpx.AsyncClient, url: str, fields: dict[str, str]) -> httpx.Response:
    try:
        return await client.post(url, data=fields)
    except httpx.TimeoutException as exc:
        raise FetchTimeout(f"webform submit timed out: {url}") from exc
    except httpx.HTTPError as exc:
        raise FetchError(f"webform submit failed: {url}: {exc}") from exc
