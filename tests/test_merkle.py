import hashlib

import pytest

from action_ledger.crypto import GENESIS_HASH
from action_ledger.merkle import InclusionProof, inclusion_proof, merkle_root


def _h(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


LEAVES = [_h(f"leaf-{i}") for i in range(7)]


def test_empty_tree_root_is_genesis():
    assert merkle_root([]) == GENESIS_HASH


def test_single_leaf_is_its_own_root():
    assert merkle_root([LEAVES[0]]) == LEAVES[0]


def test_pair_hashes_concatenated_hex():
    assert merkle_root(LEAVES[:2]) == _h(LEAVES[0] + LEAVES[1])


def test_odd_leaf_is_carried_up_not_duplicated():
    a, b, c = LEAVES[:3]
    assert merkle_root([a, b, c]) == _h(_h(a + b) + c)
    assert merkle_root([a, b, c]) != merkle_root([a, b, c, c])


def test_root_depends_on_order():
    assert merkle_root(LEAVES[:4]) != merkle_root(list(reversed(LEAVES[:4])))


@pytest.mark.parametrize("count", [1, 2, 3, 5, 7])
def test_every_inclusion_proof_verifies(count):
    leaves = LEAVES[:count]
    root = merkle_root(leaves)
    for i in range(count):
        proof = inclusion_proof(leaves, i)
        assert proof.verify(root)


def test_proof_fails_for_other_root_or_leaf():
    root = merkle_root(LEAVES)
    proof = inclusion_proof(LEAVES, 2)
    assert not proof.verify(merkle_root(LEAVES[:6]))
    forged = InclusionProof(leaf=_h("forged"), index=2, leaf_count=7, path=proof.path)
    assert not forged.verify(root)


def test_proof_dict_form_roundtrips():
    proof = inclusion_proof(LEAVES, 6)
    assert InclusionProof.from_dict(proof.to_dict()) == proof


def test_out_of_range_index():
    with pytest.raises(IndexError):
        inclusion_proof(LEAVES, 7)
