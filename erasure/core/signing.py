"""Detached signatures over ledger roots and proof bundles.

Two backends are registered up front:

* ``local-ed25519`` signs with a PKCS#8 PEM private key held by the service.
* ``aws-kms`` asks AWS KMS for an RSASSA-PSS-SHA256 signature over the SHA-256
  digest; the private key never leaves KMS.

Verification only needs the algorithm name, the message bytes, the base64
signature and the signer's public key PEM, so any holder of the public key can
check a record independently of which backend produced it.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from erasure.core.errors import MissingKeyMaterialError, UnsupportedAlgorithmError

ALGORITHM_ED25519 = "ed25519"
ALGORITHM_RSA_PSS_SHA256 = "rsa-pss-sha256"
SUPPORTED_ALGORITHMS = {ALGORITHM_ED25519, ALGORITHM_RSA_PSS_SHA256}
KMS_SIGNING_ALGORITHM = "RSASSA_PSS_SHA_256"
PSS_SALT_LENGTH = 32


class SigningSettings(Protocol):
    signing_backend: str
    signing_private_key_pem: str | None
    signing_public_key_pem: str | None
    signing_key_id: str
    aws_region: str | None
    aws_kms_key_id: str | None


@dataclass(slots=True)
class SignResult:
    algorithm: str
    key_id: str
    signature_b64: str


class Signer(Protocol):
    @property
    def algorithm(self) -> str:
        ...

    @property
    def key_id(self) -> str:
        ...

    def sign(self, message: bytes) -> SignResult:
        ...

    def public_key_pem(self) -> str:
        ...


class LocalEd25519Signer:
    def __init__(self, private_key_pem: str, key_id: str) -> None:
        if not private_key_pem or not private_key_pem.strip():
            raise MissingKeyMaterialError("signing_private_key_pem is required for local-ed25519")
        try:
            key = serialization.load_pem_private_key(private_key_pem.strip().encode("utf-8"), password=None)
        except (ValueError, TypeError) as exc:
            raise MissingKeyMaterialError("signing_private_key_pem is not a valid PKCS#8 PEM key") from exc
        if not isinstance(key, Ed25519PrivateKey):
            raise UnsupportedAlgorithmError("local-ed25519 backend requires an Ed25519 private key")
        self._key = key
        self._key_id = key_id

    @property
    def algorithm(self) -> str:
        return ALGORITHM_ED25519

    @property
    def key_id(self) -> str:
        return self._key_id

    def sign(self, message: bytes) -> SignResult:
        signature = self._key.sign(message)
        return SignResult(
            algorithm=ALGORITHM_ED25519,
            key_id=self._key_id,
            signature_b64=base64.b64encode(signature).decode("ascii"),
        )

    def public_key_pem(self) -> str:
        return _public_pem(self._key.public_key())


class KmsRsaPssSigner:
    """Remote signer; only the signature and the public key ever come back from KMS."""

    def __init__(self, kms_key_id: str | None, region: str | None, *, client: Any | None = None) -> None:
        if not kms_key_id or (client is None and not region):
            raise MissingKeyMaterialError("aws_kms_key_id and aws_region are required for aws-kms")
        self._kms_key_id = kms_key_id
        self._client = client if client is not None else boto3.client("kms", region_name=region)
        self._public_pem: str | None = None

    @property
    def algorithm(self) -> str:
        return ALGORITHM_RSA_PSS_SHA256

    @property
    def key_id(self) -> str:
        return self._kms_key_id

    def sign(self, message: bytes) -> SignResult:
        digest = hashlib.sha256(message).digest()
        response = self._client.sign(
            KeyId=self._kms_key_id,
            Message=digest,
            MessageType="DIGEST",
            SigningAlgorithm=KMS_SIGNING_ALGORITHM,
        )
        signature = response.get("Signature") or b""
        if not signature:
            raise MissingKeyMaterialError("KMS returned an empty signature")
        return SignResult(
            algorithm=ALGORITHM_RSA_PSS_SHA256,
            key_id=self._kms_key_id,
            signature_b64=base64.b64encode(signature).decode("ascii"),
        )

    def public_key_pem(self) -> str:
        if self._public_pem is not None:
            return self._public_pem
        response = self._client.get_public_key(KeyId=self._kms_key_id)
        der = response.get("PublicKey") or b""
        if not der:
            raise MissingKeyMaterialError("KMS returned an empty public key")
        self._public_pem = _public_pem(serialization.load_der_public_key(der))
        return self._public_pem


@dataclass(frozen=True, slots=True)
class SignerBackend:
    key: str
    algorithm: str
    available: bool
    build: Callable[[SigningSettings], Signer]


def _build_local_signer(settings: SigningSettings) -> Signer:
    return LocalEd25519Signer(settings.signing_private_key_pem or "", settings.signing_key_id)


def _build_kms_signer(settings: SigningSettings) -> Signer:
    return KmsRsaPssSigner(settings.aws_kms_key_id, settings.aws_region)


SIGNER_BACKENDS: dict[str, SignerBackend] = {
    "local-ed25519": SignerBackend(
        key="local-ed25519",
        algorithm=ALGORITHM_ED25519,
        available=True,
        build=_build_local_signer,
    ),
    "aws-kms": SignerBackend(
        key="aws-kms",
        algorithm=ALGORITHM_RSA_PSS_SHA256,
        available=True,
        build=_build_kms_signer,
    ),
}


def build_signer(settings: SigningSettings) -> Signer:
    backend_key = (settings.signing_backend or "").strip().lower()
    backend = SIGNER_BACKENDS.get(backend_key)
    if backend is None:
        raise UnsupportedAlgorithmError(f"unsupported signing backend: {settings.signing_backend}")
    if not backend.available:
        raise MissingKeyMaterialError(f"signing backend {backend.key} is not available in this deployment")
    return backend.build(settings)


class PublicKeyResolver:
    """Maps a record's ``key_id`` to the PEM needed to verify it."""

    def __init__(self, *, signer: Signer | None = None, explicit_keys: dict[str, str] | None = None) -> None:
        self._signer = signer
        self._explicit_keys = {key: pem.strip() for key, pem in (explicit_keys or {}).items() if pem and pem.strip()}

    def public_key_pem(self, key_id: str) -> str:
        explicit = self._explicit_keys.get(key_id)
        if explicit:
            return explicit
        if self._signer is not None and self._signer.key_id == key_id:
            return self._signer.public_key_pem()
        raise MissingKeyMaterialError(f"no public key available for key_id={key_id}")


def build_public_key_resolver(settings: SigningSettings, signer: Signer | None) -> PublicKeyResolver:
    explicit: dict[str, str] = {}
    if settings.signing_public_key_pem:
        key_id = signer.key_id if signer is not None else settings.signing_key_id
        explicit[key_id] = settings.signing_public_key_pem
    return PublicKeyResolver(signer=signer, explicit_keys=explicit)


def verify_signature(*, algorithm: str, message: bytes, signature_b64: str, public_key_pem: str) -> bool:
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise UnsupportedAlgorithmError(f"unknown signature algorithm: {algorithm}")
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.strip().encode("utf-8"))
    except ValueError as exc:
        raise MissingKeyMaterialError("public key PEM could not be parsed") from exc

    try:
        if algorithm == ALGORITHM_ED25519:
            if not isinstance(public_key, Ed25519PublicKey):
                return False
            public_key.verify(signature, message)
            return True
        if not isinstance(public_key, RSAPublicKey):
            return False
        public_key.verify(
            signature,
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=PSS_SALT_LENGTH),
            hashes.SHA256(),
        )
        return True
    except InvalidSignature:
        return False


def generate_ed25519_private_key_pem() -> str:
    key = Ed25519PrivateKey.generate()
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(public_key: Any) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
