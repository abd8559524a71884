from __future__ import annotations

import asyncio
import base64
from datetime import timedelta

import httpx

from erasure.services.blobs import LocalBlobStore
from erasure.core.hashing import sha256_hex
from erasure.services.capture import CaptureClient
from erasure.services.interfaces import SubjectProfile
from erasure.services.sweeper import VerificationSweeper, contains_identifier, identifier_needles

PROFILE = SubjectProfile(subject_ref="subj-1", name="Asha Verma", email="Asha@Example.com", phone="+91 98765-43210")
LISTING_URL = "https://olx.example/profile/asha"


async def _no_sleep(_: float) -> None:
    return None


def _seed_action(store, clock, *, target_url: str | None = LISTING_URL, status: str = "sent") -> str:
    store.add_subject_profile(PROFILE)

    async def run():
        action = await store.create_action(
            subject_ref="subj-1",
            controller_key="olx",
            target_url=target_url,
            status=status,
            subject_preview={},
            now=clock(),
        )
        return action.id

    return asyncio.run(run())


def _sweeper(store, clock, tmp_path, handler, **kwargs) -> VerificationSweeper:
    return VerificationSweeper(
        store,
        blobs=LocalBlobStore(tmp_path / "blobs"),
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleep=_no_sleep,
        **kwargs,
    )


def test_identifier_matching_normalizes_phone_and_case() -> None:
    assert identifier_needles(PROFILE) == ["asha@example.com", "asha verma", "919876543210", "543210"]
    assert contains_identifier("Call 98765 43210 now", PROFILE) is False
    assert contains_identifier("call 919876543210", PROFILE) is True
    assert contains_identifier("Contact asha@example.com", PROFILE) is True
    assert contains_identifier("nothing here", None) is False


def test_gone_listing_without_identifiers_is_verified(store, clock, tmp_path) -> None:
    action_id = _seed_action(store, clock)

    async def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == LISTING_URL
        return httpx.Response(status_code=410, text="<html>This listing has been removed</html>", request=request)

    summary = asyncio.run(_sweeper(store, clock, tmp_path, handler).sweep())

    assert summary.checked == 1
    assert summary.verified == 1
    assert store.actions[action_id].status == "verified"
    verification = store.verifications[-1]
    assert verification.data_found is False
    assert verification.confidence == 0.8
    assert verification.reason == "gone"
    assert verification.evidence.http_status == 410
    assert verification.evidence.html_hash is not None
    assert (tmp_path / "blobs" / verification.evidence.html_path).is_file()
    assert verification.next_verification_at == clock() + timedelta(hours=72)


def test_listing_still_showing_subject_needs_review(store, clock, tmp_path) -> None:
    action_id = _seed_action(store, clock)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, text="<p>Asha Verma - asha@example.com</p>", request=request)

    summary = asyncio.run(_sweeper(store, clock, tmp_path, handler).sweep())

    assert summary.needs_review == 1
    assert store.actions[action_id].status == "needs_review"
    assert store.verifications[-1].data_found is True
    assert store.verifications[-1].confidence == 0.9


def test_server_error_is_inconclusive_and_rescheduled(store, clock, tmp_path) -> None:
    action_id = _seed_action(store, clock)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=503, text="busy", request=request)

    sweeper = _sweeper(store, clock, tmp_path, handler)
    summary = asyncio.run(sweeper.sweep())
    again = asyncio.run(sweeper.sweep())

    assert summary.inconclusive == 1
    assert store.actions[action_id].status == "sent"
    verification = store.verifications[-1]
    assert verification.reason == "http_503"
    assert verification.confidence == 0.3
    assert verification.next_verification_at == clock() + timedelta(hours=6)
    assert again.checked == 0

    clock.advance(hours=6)
    assert asyncio.run(sweeper.sweep()).checked == 1


def test_fetch_timeout_is_inconclusive(store, clock, tmp_path) -> None:
    _seed_action(store, clock)

    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    summary = asyncio.run(_sweeper(store, clock, tmp_path, handler).sweep())

    assert summary.inconclusive == 1
    assert store.verifications[-1].reason == "fetch_timeout"
    assert store.verifications[-1].evidence.html_hash is None


def test_action_without_url_needs_review(store, clock, tmp_path) -> None:
    action_id = _seed_action(store, clock, target_url=None)

    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    summary = asyncio.run(_sweeper(store, clock, tmp_path, handler).sweep())

    assert summary.needs_review == 1
    assert store.actions[action_id].status == "needs_review"
    assert store.verifications[-1].reason == "no_url"


def test_discovered_url_takes_precedence(store, clock, tmp_path) -> None:
    _seed_action(store, clock)
    store.add_discovered_item(subject_ref="subj-1", controller_key="olx", url="https://olx.example/low", confidence=0.2)
    store.add_discovered_item(subject_ref="subj-1", controller_key="olx", url="https://olx.example/high", confidence=0.9)
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(status_code=404, request=request)

    asyncio.run(_sweeper(store, clock, tmp_path, handler).sweep())
    assert seen == ["https://olx.example/high"]


def test_only_dispatched_actions_are_swept(store, clock, tmp_path) -> None:
    _seed_action(store, clock, status="draft")
    _seed_action(store, clock, status="verified")

    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert asyncio.run(_sweeper(store, clock, tmp_path, handler).sweep()).checked == 0


def test_sweep_captures_screenshot_and_commits_proof(store, clock, tmp_path, make_ledger) -> None:
    _seed_action(store, clock)
    screenshot = b"\x89PNG fake screenshot"

    async def site(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, text="<p>profile not found</p>", request=request)

    async def capture_service(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/capture"
        return httpx.Response(
            status_code=200,
            json={"html": "<p>rendered: profile not found</p>", "screenshot_b64": base64.b64encode(screenshot).decode()},
            request=request,
        )

    ledger = make_ledger(store, clock)
    sweeper = _sweeper(
        store,
        clock,
        tmp_path,
        site,
        ledger=ledger,
        capture=CaptureClient("http://capture.local", transport=httpx.MockTransport(capture_service)),
    )
    summary = asyncio.run(sweeper.sweep())

    assert summary.verified == 1
    assert summary.committed == 1
    evidence = store.verifications[-1].evidence
    assert evidence.screenshot_path.endswith(".png")
    assert (tmp_path / "blobs" / evidence.screenshot_path).read_bytes() == screenshot
    record = store.ledger[-1]
    assert sorted(record.evidence_hashes) == sorted([evidence.html_hash, evidence.screenshot_hash])


def test_capture_failure_keeps_fetched_html(store, clock, tmp_path) -> None:
    _seed_action(store, clock)

    async def site(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, text="<p>gone</p>", request=request)

    async def capture_service(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=500, request=request)

    sweeper = _sweeper(
        store,
        clock,
        tmp_path,
        site,
        capture=CaptureClient("http://capture.local", transport=httpx.MockTransport(capture_service)),
    )
    asyncio.run(sweeper.sweep())

    evidence = store.verifications[-1].evidence
    assert evidence.html_hash is not None
    assert evidence.screenshot_hash is None


class DiskFullOnce(LocalBlobStore):
    def __init__(self, root) -> None:
        super().__init__(root)
        self.failures = 0

    async def put(self, path: str, data: bytes) -> str:
        if self.failures == 0:
            self.failures += 1
            raise OSError(28, "No space left on device")
        return await super().put(path, data)


def test_artifact_error_is_recorded_and_does_not_stop_the_sweep(store, clock, tmp_path, make_ledger) -> None:
    action_ids = [_seed_action(store, clock) for _ in range(7)]

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, text="<p>profile not found</p>", request=request)

    sweeper = VerificationSweeper(
        store,
        blobs=DiskFullOnce(tmp_path / "blobs"),
        ledger=make_ledger(store, clock),
        batch_size=5,
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleep=_no_sleep,
    )
    summary = asyncio.run(sweeper.sweep())

    assert summary.checked == 7
    assert summary.verified == 6
    assert summary.inconclusive == 1
    assert summary.committed == 1
    statuses = sorted(store.actions[action_id].status for action_id in action_ids)
    assert statuses == ["sent"] + ["verified"] * 6
    assert len(store.verifications) == 7
    failed = [row for row in store.verifications if row.reason == "artifact_error"]
    assert len(failed) == 1
    assert failed[0].confidence == 0.3
    assert failed[0].next_verification_at == clock() + timedelta(hours=6)


def test_identifiers_are_tested_against_the_captured_html(store, clock, tmp_path) -> None:
    action_id = _seed_action(store, clock)
    rendered = "<p>Asha Verma, asha@example.com</p>"

    async def site(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, text="<div id='app'></div>", request=request)

    async def capture_service(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json={"html": rendered}, request=request)

    sweeper = _sweeper(
        store,
        clock,
        tmp_path,
        site,
        capture=CaptureClient("http://capture.local", transport=httpx.MockTransport(capture_service)),
    )
    summary = asyncio.run(sweeper.sweep())

    assert summary.needs_review == 1
    assert store.actions[action_id].status == "needs_review"
    verification = store.verifications[-1]
    assert verification.data_found is True
    assert verification.evidence.html_hash == sha256_hex(rendered.encode("utf-8"))
