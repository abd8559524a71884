"""Signed Merkle commitments over a subject's verification evidence.

``commit`` folds every evidence digest recorded since the subject's previous
commit into a Merkle root and signs the raw root bytes. ``verify`` checks the
signature against the stored root and, for a full check, rebuilds the root from
the hashes kept on the record.

Proof bundles are ZIP archives holding ``pack.zip`` (the record and its hashes),
``manifest.json`` (which pins the SHA-256 of ``pack.zip``), ``signature.bin``
(a detached signature over the exact manifest bytes) and ``public_key.pem``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import json
import logging
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from opentelemetry import trace

from erasure.core.errors import (
    HashMismatchError,
    MissingKeyMaterialError,
    NoEvidenceError,
    SignatureInvalidError,
    UnsupportedAlgorithmError,
)
from erasure.core.hashing import merkle_root, merkle_root_hex, normalize_evidence_hashes, sha256_hex
from erasure.core.signing import PublicKeyResolver, Signer, verify_signature
from erasure.services.interfaces import LedgerRecord, LedgerStore, VerificationStore, utc_now
from erasure.services.repository import RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MANIFEST_SCHEMA = "erasure.proofpack.manifest@v1"
BUNDLE_REQUIRED_FILES = ("manifest.json", "signature.bin", "pack.zip")
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class LedgerBackingStore(LedgerStore, VerificationStore, Protocol):
    pass


@dataclass(slots=True)
class BundleVerification:
    ok: bool
    reason: str | None = None
    manifest: dict[str, Any] | None = None
    recomputed_sha256: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "reason": self.reason,
            "manifest": self.manifest,
            "recomputed_sha256": self.recomputed_sha256,
        }


def record_to_dict(record: LedgerRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "subject_ref": record.subject_ref,
        "created_at": record.created_at.isoformat(),
        "merkle_root_hex": record.merkle_root,
        "algorithm": record.algorithm,
        "key_id": record.key_id,
        "signature_b64": record.signature_b64,
        "evidence_count": record.evidence_count,
    }


class ProofLedger:
    def __init__(
        self,
        store: LedgerBackingStore,
        *,
        signer_provider: Callable[[], Signer],
        resolver_provider: Callable[[], PublicKeyResolver],
        backend: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._signer_provider = signer_provider
        self._resolver_provider = resolver_provider
        self._backend = backend
        self._clock = clock

    async def commit(self, subject_ref: str) -> LedgerRecord:
        with tracer.start_as_current_span("ledger.commit") as span:
            previous = await self._store.latest_ledger_record(subject_ref)
            now = self._clock()
            raw_hashes = await self._store.list_evidence_hashes(
                subject_ref,
                since=previous.created_at if previous else None,
                until=now,
            )
            hashes = normalize_evidence_hashes(raw_hashes)
            if not hashes:
                raise NoEvidenceError(f"no new evidence for subject {subject_ref}")

            root = merkle_root(hashes)
            signer = self._signer_provider()
            signed = await asyncio.to_thread(signer.sign, root)
            record = await self._store.insert_ledger_record(
                subject_ref=subject_ref,
                merkle_root=root.hex(),
                algorithm=signed.algorithm,
                key_id=signed.key_id,
                signature_b64=signed.signature_b64,
                evidence_hashes=hashes,
                now=now,
            )
            span.set_attribute("ledger.record_id", record.id)
            span.set_attribute("ledger.evidence_count", record.evidence_count)
        logger.info(
            "ledger commit id=%s evidence_count=%s algorithm=%s key_id=%s",
            record.id,
            record.evidence_count,
            record.algorithm,
            record.key_id,
        )
        return record

    async def get(self, record_id: str) -> LedgerRecord:
        record = await self._store.get_ledger_record(record_id)
        if record is None:
            raise RepositoryNotFoundError("ledger record not found")
        return record

    async def assert_valid(self, record: LedgerRecord, *, full: bool = False) -> None:
        if full:
            try:
                recomputed = merkle_root_hex(record.evidence_hashes)
            except ValueError:
                recomputed = None
            if recomputed != record.merkle_root.lower() or len(record.evidence_hashes) != record.evidence_count:
                raise HashMismatchError(record.merkle_root, recomputed)

        try:
            message = bytes.fromhex(record.merkle_root)
        except ValueError as exc:
            raise SignatureInvalidError("stored merkle root is not hex") from exc

        resolver = self._resolver_provider()
        public_key_pem = await asyncio.to_thread(resolver.public_key_pem, record.key_id)
        valid = verify_signature(
            algorithm=record.algorithm,
            message=message,
            signature_b64=record.signature_b64,
            public_key_pem=public_key_pem,
        )
        if not valid:
            raise SignatureInvalidError(f"signature does not verify for ledger record {record.id}")

    async def verify(self, record: LedgerRecord, *, full: bool = False) -> bool:
        try:
            await self.assert_valid(record, full=full)
        except (SignatureInvalidError, HashMismatchError) as exc:
            logger.warning("ledger verification failed id=%s error=%s", record.id, exc)
            return False
        return True

    async def export_bundle(self, record_id: str) -> bytes:
        record = await self.get(record_id)
        pack_bytes = _build_zip(
            {
                "record.json": _pretty_json(record_to_dict(record)),
                "evidence_hashes.json": _pretty_json(list(record.evidence_hashes)),
            }
        )

        signer = self._signer_provider()
        manifest = {
            "schema": MANIFEST_SCHEMA,
            "record_id": record.id,
            "subject_ref": record.subject_ref,
            "created_at": record.created_at.isoformat(),
            "signer": {"backend": self._backend, "key_id": signer.key_id, "alg": signer.algorithm},
            "assets": {"filename": "pack.zip", "sha256": sha256_hex(pack_bytes), "size": len(pack_bytes)},
            "meta": {"merkle_root_hex": record.merkle_root, "evidence_count": record.evidence_count},
        }
        manifest_bytes = _pretty_json(manifest)
        signed = await asyncio.to_thread(signer.sign, manifest_bytes)
        public_key_pem = await asyncio.to_thread(signer.public_key_pem)

        return _build_zip(
            {
                "manifest.json": manifest_bytes,
                "signature.bin": base64.b64decode(signed.signature_b64),
                "pack.zip": pack_bytes,
                "public_key.pem": public_key_pem.encode("utf-8"),
            }
        )

    async def verify_bundle(self, bundle: bytes) -> BundleVerification:
        try:
            with zipfile.ZipFile(io.BytesIO(bundle)) as archive:
                names = set(archive.namelist())
                if any(name not in names for name in BUNDLE_REQUIRED_FILES):
                    return BundleVerification(ok=False, reason="missing_required_files")
                manifest_bytes = archive.read("manifest.json")
                signature = archive.read("signature.bin")
                pack_bytes = archive.read("pack.zip")
                bundled_pem = archive.read("public_key.pem").decode("utf-8") if "public_key.pem" in names else None
        except (zipfile.BadZipFile, UnicodeDecodeError):
            return BundleVerification(ok=False, reason="invalid_bundle")

        try:
            manifest = json.loads(manifest_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return BundleVerification(ok=False, reason="invalid_manifest_json")
        if not isinstance(manifest, dict) or manifest.get("schema") != MANIFEST_SCHEMA:
            return BundleVerification(ok=False, reason="manifest_schema_mismatch")

        recomputed = sha256_hex(pack_bytes)
        assets = manifest.get("assets") if isinstance(manifest.get("assets"), dict) else {}
        if recomputed != str(assets.get("sha256") or "").lower():
            return BundleVerification(
                ok=False,
                reason="pack_hash_mismatch",
                manifest=manifest,
                recomputed_sha256=recomputed,
            )

        signer_info = manifest.get("signer") if isinstance(manifest.get("signer"), dict) else {}
        key_id = str(signer_info.get("key_id") or "")
        algorithm = str(signer_info.get("alg") or "")

        trusted_pem: str | None = None
        if key_id:
            try:
                trusted_pem = await asyncio.to_thread(self._resolver_provider().public_key_pem, key_id)
            except MissingKeyMaterialError:
                trusted_pem = None
        if trusted_pem and bundled_pem and trusted_pem.strip() != bundled_pem.strip():
            return BundleVerification(
                ok=False,
                reason="public_key_mismatch",
                manifest=manifest,
                recomputed_sha256=recomputed,
            )
        public_key_pem = trusted_pem or bundled_pem
        if not public_key_pem:
            return BundleVerification(
                ok=False,
                reason="missing_public_key_pem",
                manifest=manifest,
                recomputed_sha256=recomputed,
            )

        try:
            valid = verify_signature(
                algorithm=algorithm,
                message=manifest_bytes,
                signature_b64=base64.b64encode(signature).decode("ascii"),
                public_key_pem=public_key_pem,
            )
        except UnsupportedAlgorithmError:
            return BundleVerification(ok=False, reason="unknown_alg", manifest=manifest, recomputed_sha256=recomputed)
        except MissingKeyMaterialError:
            return BundleVerification(
                ok=False,
                reason="invalid_public_key",
                manifest=manifest,
                recomputed_sha256=recomputed,
            )

        if not valid:
            return BundleVerification(
                ok=False,
                reason="signature_invalid",
                manifest=manifest,
                recomputed_sha256=recomputed,
            )
        return BundleVerification(ok=True, manifest=manifest, recomputed_sha256=recomputed)


def decode_bundle_b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("bundle is not valid base64") from exc


def _pretty_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")


def _build_zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name in sorted(files):
            info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            archive.writestr(info, files[name])
    return buffer.getvalue()
