from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable
from typing import Any

HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{2,}$")
LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def canonical_hash(value: Any) -> str:
    return sha256_hex(canonical_json(value))


def normalize_evidence_hashes(hashes: Iterable[str]) -> list[str]:
    """Lowercase, trim, de-duplicate and sort evidence digests."""
    normalized: set[str] = set()
    for item in hashes:
        if not isinstance(item, str):
            continue
        candidate = item.strip().lower()
        if not candidate:
            continue
        if not HEX_DIGEST_RE.match(candidate) or len(candidate) % 2:
            raise ValueError(f"evidence hash is not a hex digest: {item!r}")
        normalized.add(candidate)
    return sorted(normalized)


def merkle_root(hashes: Iterable[str]) -> bytes:
    """Fold a set of hex digests into a Merkle root.

    The input is normalized first, so any permutation or duplication of the same
    set yields the same root. Leaves and inner nodes use distinct prefixes, and
    an odd node at any level is paired with itself.
    """
    leaves = normalize_evidence_hashes(hashes)
    if not leaves:
        raise ValueError("merkle_root requires at least one evidence hash")

    level = [hashlib.sha256(LEAF_PREFIX + bytes.fromhex(leaf)).digest() for leaf in leaves]
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [
            hashlib.sha256(NODE_PREFIX + level[index] + level[index + 1]).digest()
            for index in range(0, len(level), 2)
        ]
    return level[0]


def merkle_root_hex(hashes: Iterable[str]) -> str:
    return merkle_root(hashes).hex()
