from __future__ import annotations

import base64
from types import SimpleNamespace
from typing import Any

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, utils

from erasure.core.errors import MissingKeyMaterialError, UnsupportedAlgorithmError
from erasure.core.hashing import merkle_root
from erasure.core.signing import (
    ALGORITHM_ED25519,
    ALGORITHM_RSA_PSS_SHA256,
    KmsRsaPssSigner,
    LocalEd25519Signer,
    PublicKeyResolver,
    build_public_key_resolver,
    build_signer,
    generate_ed25519_private_key_pem,
    verify_signature,
)

ROOT = merkle_root(["aa" * 32, "bb" * 32, "cc" * 32])


class FakeKmsClient:
    def __init__(self) -> None:
        self._key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.sign_calls: list[dict[str, Any]] = []

    def sign(self, **kwargs: Any) -> dict[str, Any]:
        self.sign_calls.append(kwargs)
        signature = self._key.sign(
            kwargs["Message"],
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32),
            utils.Prehashed(hashes.SHA256()),
        )
        return {"Signature": signature}

    def get_public_key(self, KeyId: str) -> dict[str, Any]:
        der = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return {"KeyId": KeyId, "PublicKey": der}


def _flip_bit(data: bytes, index: int = 0) -> bytes:
    flipped = bytearray(data)
    flipped[index] ^= 0x01
    return bytes(flipped)


def test_ed25519_signature_round_trip_and_bit_flips() -> None:
    signer = LocalEd25519Signer(generate_ed25519_private_key_pem(), "local-1")
    signed = signer.sign(ROOT)
    public_pem = signer.public_key_pem()

    assert signed.algorithm == ALGORITHM_ED25519
    assert verify_signature(algorithm=signed.algorithm, message=ROOT, signature_b64=signed.signature_b64, public_key_pem=public_pem)

    tampered_signature = base64.b64encode(_flip_bit(base64.b64decode(signed.signature_b64), 5)).decode("ascii")
    assert not verify_signature(
        algorithm=signed.algorithm,
        message=ROOT,
        signature_b64=tampered_signature,
        public_key_pem=public_pem,
    )
    assert not verify_signature(
        algorithm=signed.algorithm,
        message=_flip_bit(ROOT, 31),
        signature_b64=signed.signature_b64,
        public_key_pem=public_pem,
    )


def test_kms_signer_signs_digest_and_verifies_with_fetched_public_key() -> None:
    client = FakeKmsClient()
    signer = KmsRsaPssSigner("alias/erasure-ledger", None, client=client)
    signed = signer.sign(ROOT)

    assert signed.algorithm == ALGORITHM_RSA_PSS_SHA256
    assert client.sign_calls[0]["MessageType"] == "DIGEST"
    assert client.sign_calls[0]["SigningAlgorithm"] == "RSASSA_PSS_SHA_256"

    public_pem = signer.public_key_pem()
    assert verify_signature(algorithm=signed.algorithm, message=ROOT, signature_b64=signed.signature_b64, public_key_pem=public_pem)
    assert not verify_signature(
        algorithm=signed.algorithm,
        message=_flip_bit(ROOT, 0),
        signature_b64=signed.signature_b64,
        public_key_pem=public_pem,
    )


def test_signature_checked_against_wrong_key_type_fails() -> None:
    ed_signer = LocalEd25519Signer(generate_ed25519_private_key_pem(), "local-1")
    kms_signer = KmsRsaPssSigner("kms-1", None, client=FakeKmsClient())
    signed = ed_signer.sign(ROOT)
    assert not verify_signature(
        algorithm=ALGORITHM_ED25519,
        message=ROOT,
        signature_b64=signed.signature_b64,
        public_key_pem=kms_signer.public_key_pem(),
    )


def test_unknown_algorithm_is_rejected() -> None:
    with pytest.raises(UnsupportedAlgorithmError):
        verify_signature(algorithm="md5-rsa", message=ROOT, signature_b64="AA==", public_key_pem="")


def test_build_signer_requires_key_material_and_known_backend() -> None:
    settings = SimpleNamespace(
        signing_backend="local-ed25519",
        signing_private_key_pem=None,
        signing_public_key_pem=None,
        signing_key_id="k1",
        aws_region=None,
        aws_kms_key_id=None,
    )
    with pytest.raises(MissingKeyMaterialError):
        build_signer(settings)

    settings.signing_backend = "hsm-9000"
    with pytest.raises(UnsupportedAlgorithmError):
        build_signer(settings)

    settings.signing_backend = "aws-kms"
    with pytest.raises(MissingKeyMaterialError):
        build_signer(settings)


def test_public_key_resolver_prefers_explicit_key() -> None:
    signer = LocalEd25519Signer(generate_ed25519_private_key_pem(), "k1")
    other_pem = LocalEd25519Signer(generate_ed25519_private_key_pem(), "k1").public_key_pem()
    settings = SimpleNamespace(signing_public_key_pem=other_pem, signing_key_id="k1")

    resolver = build_public_key_resolver(settings, signer)
    assert resolver.public_key_pem("k1") == other_pem.strip()

    with pytest.raises(MissingKeyMaterialError):
        PublicKeyResolver(signer=signer).public_key_pem("unknown")
