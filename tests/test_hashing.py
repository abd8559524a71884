from __future__ import annotations

import hashlib
import random

import pytest

from erasure.core.hashing import canonical_hash, merkle_root, merkle_root_hex, normalize_evidence_hashes, sha256_hex

HASHES = [sha256_hex(f"artifact-{index}") for index in range(7)]


def test_merkle_root_is_invariant_under_permutation_and_duplicates() -> None:
    expected = merkle_root_hex(HASHES)
    shuffled = list(HASHES)
    random.Random(7).shuffle(shuffled)

    assert merkle_root_hex(shuffled) == expected
    assert merkle_root_hex(shuffled + HASHES[:3]) == expected
    assert merkle_root_hex([value.upper() for value in HASHES]) == expected


def test_changing_one_hash_changes_the_root() -> None:
    changed = list(HASHES)
    changed[3] = sha256_hex("something else")
    assert merkle_root_hex(changed) != merkle_root_hex(HASHES)


def test_single_leaf_root_is_prefixed_leaf_digest() -> None:
    leaf = HASHES[0]
    assert merkle_root([leaf]) == hashlib.sha256(b"\x00" + bytes.fromhex(leaf)).digest()


def test_odd_level_pairs_last_node_with_itself() -> None:
    leaves = sorted(HASHES[:3])
    nodes = [hashlib.sha256(b"\x00" + bytes.fromhex(leaf)).digest() for leaf in leaves]
    left = hashlib.sha256(b"\x01" + nodes[0] + nodes[1]).digest()
    right = hashlib.sha256(b"\x01" + nodes[2] + nodes[2]).digest()
    assert merkle_root(leaves) == hashlib.sha256(b"\x01" + left + right).digest()


def test_merkle_root_rejects_empty_and_non_hex_input() -> None:
    with pytest.raises(ValueError):
        merkle_root([])
    with pytest.raises(ValueError):
        merkle_root(["not-a-digest"])


def test_normalize_evidence_hashes_trims_and_sorts() -> None:
    assert normalize_evidence_hashes(["  AB ", "ab", "", "01"]) == ["01", "ab"]


def test_canonical_hash_ignores_key_order() -> None:
    assert canonical_hash({"a": 1, "b": [1, 2]}) == canonical_hash({"b": [1, 2], "a": 1})
